"""Shared pytest configuration, marker registration and project fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from cat_herder.agent_runner import AgentRunner
from cat_herder.config import ProjectConfig
from cat_herder.pipeline.interaction import HumanInputChannel, answer_file_source
from cat_herder.pipeline.orchestrator import Orchestrator
from cat_herder.schemas import AgentResult, RateLimitInfo, TokenUsage


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: expensive tests that may call external APIs")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeAgent(AgentRunner):
    """Agent double: runs an optional per-command action, otherwise succeeds.

    An action receives ``(repo_path, prompt)`` and may return an
    :class:`AgentResult` to override the default successful one.
    """

    name = "fake"

    def __init__(self, output_tokens: int = 100) -> None:
        self.output_tokens = output_tokens
        self.actions: dict = {}
        self.calls: list[tuple[str, str]] = []

    @property
    def commands(self) -> list[str]:
        return [command for command, _ in self.calls]

    def run(self, repo_path, prompt, *, command, logs, model=None, extra_args=None, cancel_event=None):
        self.calls.append((command, prompt))
        action = self.actions.get(command)
        if action is not None:
            result = action(Path(repo_path), prompt)
            if result is not None:
                return result
        return AgentResult(
            exit_code=0,
            usage=TokenUsage(output_tokens=self.output_tokens),
            model_used="fake-model",
        )


class FakeGit:
    """Records branch switches and checkpoints instead of touching git."""

    def __init__(self) -> None:
        self.branches: list[str] = []
        self.checkpoints: list[str] = []

    def ensure_branch(self, branch: str) -> str:
        self.branches.append(branch)
        return branch

    def commit_checkpoint(self, step_name: str) -> str:
        self.checkpoints.append(step_name)
        return f"sha-{len(self.checkpoints)}"


class FakeClock:
    """Clock that only moves when told to; ``sleep`` advances it instead of blocking."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> bool:
        self.sleeps.append(seconds)
        self.now += seconds
        return False


def rate_limited_once(clock: FakeClock, pause: float, then=None, work_seconds: float = 10.0):
    """Agent action: every call takes *work_seconds*; the first one hits a *pause*-second limit."""
    calls: list[str] = []

    def _action(repo: Path, prompt: str) -> AgentResult | None:
        clock.advance(work_seconds)
        calls.append(prompt)
        if len(calls) == 1:
            return AgentResult(
                exit_code=1,
                model_used="fake-model",
                rate_limit=RateLimitInfo(reset_timestamp=int(clock.now + pause)),
            )
        return then(repo, prompt) if then is not None else None

    return _action


def _write_plan(repo: Path, _prompt: str) -> None:
    (repo / "PLAN.md").write_text("1. Add the login form\n", encoding="utf-8")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def project(tmp_path: Path) -> ProjectConfig:
    """A project with ``default`` (plan, implement) and ``docs`` pipelines."""
    repo = tmp_path / "repo"
    steps_dir = repo / ".cat-herder" / "steps"
    steps_dir.mkdir(parents=True)
    for command, text in {
        "plan": "Write PLAN.md for the task.",
        "implement": "Implement PLAN.md.",
        "docs": "Update the documentation.",
    }.items():
        (steps_dir / f"{command}.md").write_text(text, encoding="utf-8")

    config = ProjectConfig.model_validate(
        {
            "statePath": str(tmp_path / "state"),
            "logsPath": str(tmp_path / "logs"),
            "pipelines": {
                "default": [
                    {
                        "name": "plan",
                        "command": "plan",
                        "check": {"type": "fileExists", "path": "PLAN.md"},
                    },
                    {"name": "implement", "command": "implement"},
                ],
                "docs": [{"name": "docs", "command": "docs"}],
            },
            "defaultPipeline": "default",
        }
    )
    config.project_root = repo
    return config


@pytest.fixture
def fake_agent() -> FakeAgent:
    agent = FakeAgent()
    agent.actions["plan"] = _write_plan
    return agent


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limited(fake_clock: FakeClock):
    """Build agent actions that hit one rate limit of the given length on ``fake_clock``."""

    def _make(pause: float, then=None):
        return rate_limited_once(fake_clock, pause, then)

    return _make


@pytest.fixture
def orchestrator(project: ProjectConfig, fake_agent: FakeAgent, fake_git: FakeGit) -> Orchestrator:
    def _file_only_channel(store, task_id):
        return HumanInputChannel(
            [answer_file_source(store, task_id, interval=0.01)],
            announce=lambda *_: None,
        )

    return Orchestrator(
        project,
        agent=fake_agent,
        git=fake_git,
        input_channel_factory=_file_only_channel,
    )


@pytest.fixture
def write_task(project: ProjectConfig):
    """Create a Markdown task file under the project and return its path."""

    def _write(relative: str, body: str = "# Task\nAdd a login form.\n") -> Path:
        path = project.project_root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body, encoding="utf-8")
        return path

    return _write
