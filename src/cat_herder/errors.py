"""Exception taxonomy for task and sequence runs."""

from __future__ import annotations

import datetime as dt
from pathlib import Path


class CatHerderError(RuntimeError):
    """Base class for every error the engine surfaces to the CLI."""


class ConfigError(CatHerderError):
    """Configuration or pipeline definition is unusable."""


class GitError(CatHerderError):
    """Raised when a git command fails unexpectedly."""


class PreconditionError(CatHerderError):
    """The environment is not in a state the run can start from."""


class DirtyWorkingTreeError(PreconditionError, GitError):
    def __init__(self, repo: Path) -> None:
        super().__init__(
            f"Git working directory {repo} is not clean. "
            "Please commit or stash your changes before running."
        )
        self.repo = repo


class MissingBaseBranchError(PreconditionError, GitError):
    def __init__(self, base_branch: str) -> None:
        super().__init__(
            f"A '{base_branch}' branch is required to create task branches. "
            f"Create it (git branch {base_branch}) or set baseBranch in the config."
        )
        self.base_branch = base_branch


class StepFailedError(CatHerderError):
    """A step reached a terminal failure; the task stops here."""

    def __init__(self, message: str, *, step: str = "") -> None:
        super().__init__(message)
        self.step = step


class RateLimitError(StepFailedError):
    def __init__(self, reset_at: dt.datetime, *, step: str = "") -> None:
        super().__init__(
            f"Claude API usage limit reached. Your limit will reset at "
            f"{reset_at.astimezone().strftime('%Y-%m-%d %H:%M:%S %Z')}. "
            "Set waitForRateLimitReset: true to pause and resume automatically.",
            step=step,
        )
        self.reset_at = reset_at


class AgentFailedError(StepFailedError):
    def __init__(self, step: str, exit_code: int, log_paths: list[Path]) -> None:
        logs = "\n".join(f"  - {p}" for p in log_paths)
        super().__init__(
            f'Agent failed for step "{step}" with exit code {exit_code}. '
            f"Check the logs for details:\n{logs}",
            step=step,
        )
        self.exit_code = exit_code
        self.log_paths = log_paths


class CheckFailedError(StepFailedError):
    def __init__(self, step: str, retries: int, output: str) -> None:
        super().__init__(
            f'Step "{step}" failed after {retries} retries. Final check error: {output}',
            step=step,
        )
        self.retries = retries
        self.attempts = retries + 1
        self.output = output


class TaskInterrupted(CatHerderError):
    """A cancel signal stopped the run; state is saved and resumable."""
