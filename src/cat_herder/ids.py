"""Deterministic task/sequence identifiers and branch names."""

from __future__ import annotations

import re
from pathlib import Path

BRANCH_PREFIX = "cat-herder"

_UNSAFE_CHARS = re.compile(r"[^a-z0-9-]", re.IGNORECASE)


def _sanitize(value: str) -> str:
    return _UNSAFE_CHARS.sub("-", value).lower()


def task_id_for(task_path: str | Path, project_root: str | Path) -> str:
    """Return ``task-<relative path>`` with path separators and odd characters dashed.

    >>> task_id_for("/repo/tasks/01 Add login.md", "/repo")
    'task-tasks-01-add-login'
    """
    path = Path(task_path).resolve()
    root = Path(project_root).resolve()
    try:
        relative = path.relative_to(root)
    except ValueError:
        relative = Path(path.name)
    stem = relative.as_posix()
    if stem.lower().endswith(".md"):
        stem = stem[:-3]
    return "task-" + _sanitize(stem.replace("/", "-"))


def sequence_id_for(folder: str | Path) -> str:
    return "sequence-" + _sanitize(Path(folder).resolve().name)


def task_branch_name(task_id: str) -> str:
    return f"{BRANCH_PREFIX}/{task_id.removeprefix('task-')}"


def sequence_branch_name(sequence_id: str) -> str:
    return f"{BRANCH_PREFIX}/{sequence_id}"
