"""cat-herder - crash-safe execution of multi-step AI coding-agent pipelines."""

from importlib.metadata import PackageNotFoundError, version

# Importing the runner modules registers them with the agent registry.
from cat_herder import claude_code, codex_cli  # noqa: F401
from cat_herder.schemas import AgentResult, Phase, SequenceStatus, TaskStatus

__all__ = ["AgentResult", "Phase", "SequenceStatus", "TaskStatus"]

try:
    __version__ = version("cat-herder")
except PackageNotFoundError:
    __version__ = "0.0.0"
