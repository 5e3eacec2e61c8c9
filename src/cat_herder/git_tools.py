"""Git helpers: per-task branch isolation and post-step checkpoint commits."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from cat_herder.errors import DirtyWorkingTreeError, GitError, MissingBaseBranchError

logger = logging.getLogger(__name__)

__all__ = [
    "GitCheckpoint",
    "GitError",
    "branch_exists",
    "checkpoint_message",
    "commit_checkpoint",
    "current_branch",
    "ensure_branch",
    "has_remote",
    "head_sha",
    "is_clean",
    "status_porcelain",
]

PULL_TIMEOUT_SECONDS = 5


def _git_subprocess_isolation_kwargs() -> dict[str, object]:
    """Return kwargs that prevent child console events from reaching the parent on Windows."""
    if os.name != "nt":
        return {}
    new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
    no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
    flags = new_pg | no_win
    return {"creationflags": flags} if flags else {}


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = 30,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    result = subprocess.run(
        cmd,
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=timeout,
        **_git_subprocess_isolation_kwargs(),
    )
    if check and result.returncode != 0:
        raise GitError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def status_porcelain(repo: str | Path) -> str:
    """Return ``git status --porcelain`` output."""
    return _run_git("status", "--porcelain", cwd=Path(repo)).stdout.strip()


def current_branch(repo: str | Path) -> str:
    """Return the name of the current branch."""
    return _run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=Path(repo)).stdout.strip()


def head_sha(repo: str | Path) -> str:
    """Return the short SHA of HEAD."""
    return _run_git("rev-parse", "--short", "HEAD", cwd=Path(repo)).stdout.strip()


def is_clean(repo: str | Path) -> bool:
    """Return True when the working tree is clean."""
    return status_porcelain(repo) == ""


def branch_exists(repo: str | Path, branch: str) -> bool:
    result = _run_git(
        "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=Path(repo), check=False
    )
    return result.returncode == 0


def has_remote(repo: str | Path, name: str = "origin") -> bool:
    result = _run_git("remote", cwd=Path(repo), check=False)
    return name in result.stdout.split()


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def ensure_git_identity(repo: str | Path) -> None:
    """Ensure the repo has a git identity configured for checkpoint commits."""
    cwd = Path(repo)
    for key, fallback in [
        ("user.name", "cat-herder"),
        ("user.email", "cat-herder@localhost"),
    ]:
        result = _run_git("config", key, cwd=cwd, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            _run_git("config", key, fallback, cwd=cwd)
            logger.info("Set %s = %s in %s", key, fallback, cwd)


def ensure_branch(repo: str | Path, branch: str, *, base_branch: str = "main") -> str:
    """Switch to *branch*, creating it from an up-to-date *base_branch* if needed.

    Calling this again while already on *branch* is a no-op.  Otherwise the
    working tree must be clean: the check runs right before the first
    checkout, since nothing else protects uncommitted work from being
    carried across branches.
    """
    cwd = Path(repo)
    if current_branch(cwd) == branch:
        logger.info("Already on branch %s", branch)
        return branch

    if not is_clean(cwd):
        raise DirtyWorkingTreeError(cwd)

    if _run_git("checkout", base_branch, cwd=cwd, check=False).returncode != 0:
        raise MissingBaseBranchError(base_branch)

    if has_remote(cwd):
        try:
            pulled = _run_git(
                "pull",
                "origin",
                base_branch,
                cwd=cwd,
                check=False,
                timeout=PULL_TIMEOUT_SECONDS,
            )
        except subprocess.TimeoutExpired:
            logger.warning(
                "git pull origin %s timed out; continuing with local %s",
                base_branch,
                base_branch,
            )
        else:
            if pulled.returncode != 0:
                logger.warning(
                    "git pull origin %s failed; continuing with local %s: %s",
                    base_branch,
                    base_branch,
                    pulled.stderr.strip(),
                )

    if branch_exists(cwd, branch):
        _run_git("checkout", branch, cwd=cwd)
        logger.info("Switched to existing branch %s", branch)
    else:
        _run_git("checkout", "-b", branch, cwd=cwd)
        logger.info("Created branch %s from %s", branch, base_branch)
    return branch


def checkpoint_message(step_name: str) -> str:
    return f"chore({step_name}): checkpoint"


def commit_checkpoint(repo: str | Path, step_name: str) -> str:
    """Stage everything and record a checkpoint commit.  Return the new short SHA."""
    cwd = Path(repo)
    ensure_git_identity(cwd)
    _run_git("add", "-A", cwd=cwd)
    _run_git("commit", "--allow-empty", "-m", checkpoint_message(step_name), cwd=cwd)
    sha = head_sha(cwd)
    logger.info("Checkpoint commit %s for step %s", sha, step_name)
    return sha


class GitCheckpoint:
    """Git operations bound to one repository and the run's git settings."""

    def __init__(
        self,
        repo: str | Path,
        *,
        manage_branch: bool = True,
        auto_commit: bool = False,
        base_branch: str = "main",
    ) -> None:
        self.repo = Path(repo)
        self.manage_branch = manage_branch
        self.auto_commit = auto_commit
        self.base_branch = base_branch

    def ensure_branch(self, branch: str) -> str:
        """Return the branch work happens on; switches only when managing branches."""
        if not self.manage_branch:
            existing = current_branch(self.repo)
            logger.info("Branch management disabled; staying on %s", existing)
            return existing
        return ensure_branch(self.repo, branch, base_branch=self.base_branch)

    def commit_checkpoint(self, step_name: str) -> str | None:
        """Commit a checkpoint when auto-commit is on; return the SHA or ``None``."""
        if not self.auto_commit:
            return None
        return commit_checkpoint(self.repo, step_name)
