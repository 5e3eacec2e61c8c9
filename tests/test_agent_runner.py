"""Tests for agent runner registry helpers."""

from __future__ import annotations

from pathlib import Path

import pytest

import cat_herder.agent_runner as agent_runner_module
from cat_herder.agent_runner import (
    AgentLogPaths,
    AgentRunner,
    get_agent_class,
    list_agents,
    register_agent,
)
from cat_herder.schemas import AgentResult

pytestmark = pytest.mark.unit


class _DummyRunner(AgentRunner):
    name = "dummy"

    def run(self, repo_path, prompt, *, command, logs, model=None, extra_args=None, cancel_event=None):
        return AgentResult(exit_code=0)


class _OtherRunner(_DummyRunner):
    pass


def test_builtin_agents_are_registered() -> None:
    assert {"claude_code", "codex"} <= set(list_agents())


def test_register_get_and_list_agents(monkeypatch) -> None:
    monkeypatch.setattr(agent_runner_module, "_REGISTRY", {})

    register_agent("b", _DummyRunner)
    register_agent(" a ", _DummyRunner)
    register_agent("a", _DummyRunner)

    assert get_agent_class("a") is _DummyRunner
    assert list_agents() == ["a", "b"]


def test_register_rejects_bad_input(monkeypatch) -> None:
    monkeypatch.setattr(agent_runner_module, "_REGISTRY", {})
    register_agent("dummy", _DummyRunner)

    with pytest.raises(ValueError, match="non-empty"):
        register_agent("  ", _DummyRunner)
    with pytest.raises(TypeError):
        register_agent("x", object)  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="already registered"):
        register_agent("dummy", _OtherRunner)


def test_get_agent_class_raises_helpful_error(monkeypatch) -> None:
    monkeypatch.setattr(agent_runner_module, "_REGISTRY", {})
    with pytest.raises(KeyError, match=r"Unknown agent 'missing'. Available: \(none\)"):
        get_agent_class("missing")

    register_agent("codex", _DummyRunner)
    with pytest.raises(KeyError, match=r"Available: codex"):
        get_agent_class("missing")


def test_log_paths_for_step(tmp_path: Path) -> None:
    logs = AgentLogPaths.for_step(tmp_path, 3, "review")
    assert logs.log == tmp_path / "03-review.log"
    assert logs.reasoning == tmp_path / "03-review.reasoning.log"
    assert logs.raw_json == tmp_path / "03-review.raw.json.log"
    assert logs.as_list() == [logs.log, logs.reasoning, logs.raw_json]
