"""Write guard for agent tool hooks (``cat-herder check-file-access``).

The agent's pre-write hook pipes a JSON payload naming the file it wants
to touch.  Writes are allowed unless the active task's current step has
``fileAccess.allowWrite`` globs and the file matches none of them.
"""

from __future__ import annotations

import fnmatch
import json
import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any

from cat_herder.config import ProjectConfig
from cat_herder.errors import ConfigError
from cat_herder.state_store import StateStore

logger = logging.getLogger(__name__)

BLOCKED_EXIT_CODE = 2


@dataclass(frozen=True)
class FileAccessDecision:
    allowed: bool
    message: str = ""


def parse_hook_payload(text: str) -> str:
    """Extract the target path from ``{"file_path"}`` or ``{"tool_input": {"file_path"}}``.

    Raises ValueError when the payload is not JSON or names no file.
    """
    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Could not parse hook payload as JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Hook payload must be a JSON object.")
    file_path = data.get("file_path")
    tool_input = data.get("tool_input")
    if not file_path and isinstance(tool_input, dict):
        file_path = tool_input.get("file_path") or tool_input.get("path")
    if not isinstance(file_path, str) or not file_path.strip():
        raise ValueError("Hook payload does not name a file_path.")
    return file_path.strip()


def relative_target(file_path: str, project_root: Path) -> str:
    """Return *file_path* relative to *project_root* in posix form when it lies inside it."""
    path = Path(file_path)
    if path.is_absolute():
        try:
            path = path.resolve().relative_to(project_root.resolve())
        except ValueError:
            return PurePosixPath(path).as_posix()
    return PurePosixPath(path.as_posix()).as_posix().removeprefix("./")


def is_write_allowed(target: str, patterns: list[str]) -> bool:
    return any(fnmatch.fnmatchcase(target, pattern) for pattern in patterns)


def check_file_access(config: ProjectConfig, store: StateStore, file_path: str) -> FileAccessDecision:
    """Decide whether the agent may write *file_path* during the active step."""
    active = store.find_active_task()
    if active is None:
        logger.debug("No active task in the journal; allowing %s", file_path)
        return FileAccessDecision(True)

    status = store.read_task(active.id)
    if not status.current_step:
        return FileAccessDecision(True)
    try:
        steps = config.get_pipeline(status.pipeline) if status.pipeline else []
    except ConfigError as exc:
        logger.warning("Cannot resolve pipeline for %s: %s", active.id, exc)
        return FileAccessDecision(True)

    step = next((s for s in steps if s.name == status.current_step), None)
    if step is None or step.file_access is None:
        return FileAccessDecision(True)

    patterns = step.file_access.allow_write
    target = relative_target(file_path, config.project_root)
    if is_write_allowed(target, patterns):
        return FileAccessDecision(True)
    allowed = ", ".join(f'"{p}"' for p in patterns)
    return FileAccessDecision(
        False,
        f"Blocked: The current step '{status.current_step}' only allows file modifications "
        f"matching [{allowed}]. Action on '{target}' denied.",
    )
