"""Abstract base class for coding-agent runners.

All agent runners (Claude Code, Codex CLI) implement the same interface
so the step runner can dispatch to any of them interchangeably.
"""

from __future__ import annotations

import abc
import threading
from dataclasses import dataclass
from pathlib import Path

from cat_herder.schemas import AgentResult


@dataclass(frozen=True, slots=True)
class AgentLogPaths:
    """Where one step's agent output is streamed."""

    log: Path
    reasoning: Path
    raw_json: Path

    @classmethod
    def for_step(cls, logs_dir: Path, index: int, step_name: str) -> AgentLogPaths:
        """Return ``NN-<step>.log`` / ``.reasoning.log`` / ``.raw.json.log`` under *logs_dir*."""
        stem = f"{index:02d}-{step_name}"
        return cls(
            log=logs_dir / f"{stem}.log",
            reasoning=logs_dir / f"{stem}.reasoning.log",
            raw_json=logs_dir / f"{stem}.raw.json.log",
        )

    def as_list(self) -> list[Path]:
        return [self.log, self.reasoning, self.raw_json]


class AgentRunner(abc.ABC):
    """Common interface for coding-agent CLI wrappers.

    Subclasses must implement :meth:`run` which accepts a repo path, a
    pipeline command, and a prompt and returns an :class:`AgentResult`.
    """

    #: Human-readable name used in log lines.
    name: str = "base"

    @abc.abstractmethod
    def run(
        self,
        repo_path: str | Path,
        prompt: str,
        *,
        command: str,
        logs: AgentLogPaths,
        model: str | None = None,
        extra_args: list[str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> AgentResult:
        """Execute a single agent invocation and return structured results.

        Parameters
        ----------
        repo_path:
            Working directory (the target git repository).
        prompt:
            Full step prompt, delivered on stdin.
        command:
            Pipeline command name the agent is asked to carry out.
        logs:
            Files the run's output is streamed into while it executes.
        model:
            Model override for this step; ``None`` keeps the agent default.
        extra_args:
            Additional CLI flags forwarded verbatim.
        cancel_event:
            Anything with ``is_set()``; once set the agent process is killed
            and the result is returned with ``cancelled=True``.
        """


# ── Registry ──────────────────────────────────────────────────────

_REGISTRY: dict[str, type[AgentRunner]] = {}


def register_agent(key: str, cls: type[AgentRunner]) -> None:
    """Register an agent runner class under a lookup key."""
    normalized_key = (key or "").strip()
    if not normalized_key:
        raise ValueError("Agent key must be a non-empty string")
    if not isinstance(cls, type) or not issubclass(cls, AgentRunner):
        raise TypeError("Registered agent must be an AgentRunner subclass")

    existing = _REGISTRY.get(normalized_key)
    if existing is not None and existing is not cls:
        raise ValueError(
            f"Agent '{normalized_key}' is already registered with {existing.__name__}"
        )

    _REGISTRY[normalized_key] = cls


def get_agent_class(key: str) -> type[AgentRunner]:
    """Look up a registered agent runner class by key."""
    normalized_key = (key or "").strip()
    if normalized_key not in _REGISTRY:
        available = ", ".join(sorted(_REGISTRY)) or "(none)"
        raise KeyError(f"Unknown agent '{normalized_key}'. Available: {available}")
    return _REGISTRY[normalized_key]


def list_agents() -> list[str]:
    """Return all registered agent keys."""
    return sorted(_REGISTRY)
