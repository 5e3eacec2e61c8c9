"""Tests for running a folder of tasks as one sequence."""

from __future__ import annotations

from pathlib import Path

import pytest

from cat_herder.errors import AgentFailedError, ConfigError
from cat_herder.pipeline.orchestrator import Orchestrator
from cat_herder.pipeline.sequence_runner import list_task_files, next_available_task
from cat_herder.schemas import AgentResult, JournalEventType, Phase, TokenUsage

pytestmark = pytest.mark.unit

SEQUENCE_ID = "sequence-sprint"
TOKENS = {"Task one": 100, "Task two": 250, "Task three": 50}


def _usage_by_task(_repo: Path, prompt: str) -> AgentResult:
    for marker, tokens in TOKENS.items():
        if marker in prompt:
            return AgentResult(
                exit_code=0, usage=TokenUsage(output_tokens=tokens), model_used="fake-model"
            )
    raise AssertionError("prompt names no known task")


@pytest.fixture
def sprint(write_task, fake_agent) -> Path:
    for name, body in [
        ("03-three.md", "Task three"),
        ("01-one.md", "Task one"),
        ("02-two.md", "Task two"),
        ("_notes.md", "Not a task"),
    ]:
        folder = write_task(f"tasks/sprint/{name}", f"---\npipeline: docs\n---\n{body}\n").parent
    write_task("tasks/sprint/README.txt", "not markdown")
    (folder / "drafts").mkdir()
    fake_agent.actions["docs"] = _usage_by_task
    return folder


def _task_prompts(fake_agent) -> list[str]:
    found = []
    for _, prompt in fake_agent.calls:
        found.extend(marker for marker in TOKENS if marker in prompt)
    return found


def test_list_task_files_sorts_and_skips_underscored(sprint: Path) -> None:
    assert [p.name for p in list_task_files(sprint)] == ["01-one.md", "02-two.md", "03-three.md"]


def test_next_available_task_skips_completed(sprint: Path) -> None:
    first = sprint.resolve() / "01-one.md"
    assert next_available_task(sprint, []) == first
    assert next_available_task(sprint, [str(first)]).name == "02-two.md"
    assert next_available_task(sprint, [str(p) for p in list_task_files(sprint)]) is None


def test_runs_every_task_in_order_and_sums_usage(
    orchestrator, fake_agent, fake_git, sprint: Path
) -> None:
    status = orchestrator.run_sequence(sprint)

    assert _task_prompts(fake_agent) == ["Task one", "Task two", "Task three"]
    assert status.phase == Phase.DONE
    assert status.sequence_id == SEQUENCE_ID
    assert status.branch == "cat-herder/sequence-sprint"
    assert status.current_task_path is None
    assert len(status.completed_tasks) == 3
    assert status.stats.total_token_usage["fake-model"].output_tokens == 400
    assert fake_git.branches == ["cat-herder/sequence-sprint"]

    task = orchestrator.store.read_task("task-tasks-sprint-02-two")
    assert task.parent_sequence_id == SEQUENCE_ID
    assert task.branch == "cat-herder/sequence-sprint"
    assert task.phase == Phase.DONE


def test_sequence_prompt_mentions_the_folder(orchestrator, fake_agent, sprint: Path) -> None:
    orchestrator.run_sequence(sprint)
    assert str(sprint.resolve()) in fake_agent.calls[0][1]


def test_journal_records_nested_task_events(orchestrator, sprint: Path) -> None:
    orchestrator.run_sequence(sprint)

    events = orchestrator.store.read_journal()
    assert events[0].event_type == JournalEventType.SEQUENCE_STARTED
    assert events[-1].event_type == JournalEventType.SEQUENCE_FINISHED
    assert events[-1].status == "done"
    task_events = [e for e in events if e.event_type == JournalEventType.TASK_FINISHED]
    assert [e.status for e in task_events] == ["done", "done", "done"]
    assert {e.parent_id for e in task_events} == {SEQUENCE_ID}
    assert orchestrator.store.find_active_sequence() is None
    assert orchestrator.store.find_active_task() is None


def test_failing_task_stops_sequence_and_keeps_partial_usage(
    orchestrator, fake_agent, sprint: Path
) -> None:
    def _two_fails(repo: Path, prompt: str) -> AgentResult:
        if "Task two" in prompt:
            return AgentResult(exit_code=1, usage=TokenUsage(output_tokens=30), model_used="fake-model")
        return _usage_by_task(repo, prompt)

    fake_agent.actions["docs"] = _two_fails

    with pytest.raises(AgentFailedError):
        orchestrator.run_sequence(sprint)

    assert _task_prompts(fake_agent) == ["Task one", "Task two"]
    status = orchestrator.store.read_sequence(SEQUENCE_ID)
    assert status.phase == Phase.FAILED
    assert [Path(p).name for p in status.completed_tasks] == ["01-one.md"]
    assert status.stats.total_token_usage["fake-model"].output_tokens == 130
    assert orchestrator.store.read_task("task-tasks-sprint-03-three").task_id == ""
    assert orchestrator.store.read_journal()[-1].status == "failed"


def test_rerun_skips_completed_tasks_without_double_counting(
    orchestrator, fake_agent, sprint: Path
) -> None:
    def _two_fails(repo: Path, prompt: str) -> AgentResult:
        if "Task two" in prompt:
            return AgentResult(exit_code=1, usage=TokenUsage(output_tokens=30), model_used="fake-model")
        return _usage_by_task(repo, prompt)

    fake_agent.actions["docs"] = _two_fails
    with pytest.raises(AgentFailedError):
        orchestrator.run_sequence(sprint)

    fake_agent.actions["docs"] = _usage_by_task
    fake_agent.calls.clear()
    status = orchestrator.run_sequence(sprint)

    assert _task_prompts(fake_agent) == ["Task two", "Task three"]
    assert status.phase == Phase.DONE
    assert len(status.completed_tasks) == 3
    # 100 (one) + 30 + 250 (two, failed then passed) + 50 (three)
    assert status.stats.total_token_usage["fake-model"].output_tokens == 430


def test_interrupt_stops_sequence_and_returns_record(
    orchestrator, fake_agent, sprint: Path
) -> None:
    def _cancel_on_two(repo: Path, prompt: str) -> AgentResult:
        if "Task two" in prompt:
            orchestrator.token.cancel()
            return AgentResult(exit_code=-1, cancelled=True)
        return _usage_by_task(repo, prompt)

    fake_agent.actions["docs"] = _cancel_on_two

    status = orchestrator.run_sequence(sprint)

    assert status.phase == Phase.INTERRUPTED
    assert _task_prompts(fake_agent) == ["Task one", "Task two"]
    assert orchestrator.store.read_task("task-tasks-sprint-02-two").phase == Phase.INTERRUPTED
    assert orchestrator.store.read_journal()[-1].status == "interrupted"


def test_missing_folder_is_a_config_error(orchestrator, tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Sequence folder not found"):
        orchestrator.run_sequence(tmp_path / "nope")


def test_pauses_from_separate_tasks_accumulate_on_the_sequence(
    project, fake_agent, fake_git, fake_clock, rate_limited, write_task
) -> None:
    project.wait_for_rate_limit_reset = True
    for name, body in [("01-one.md", "Task one"), ("02-two.md", "Task two")]:
        folder = write_task(f"tasks/paced/{name}", f"---\npipeline: docs\n---\n{body}\n").parent
    limits = {"Task one": rate_limited(15), "Task two": rate_limited(20)}

    def _docs(repo: Path, prompt: str) -> AgentResult | None:
        marker = next(m for m in limits if m in prompt)
        return limits[marker](repo, prompt)

    fake_agent.actions["docs"] = _docs
    orchestrator = Orchestrator(
        project, agent=fake_agent, git=fake_git, clock=fake_clock, sleeper=fake_clock.sleep
    )

    status = orchestrator.run_sequence(folder)

    assert fake_clock.sleeps == [15.0, 20.0]
    assert status.phase == Phase.DONE
    assert status.stats.total_pause_time == 35.0
    assert status.stats.total_duration == 75.0
    assert status.stats.total_duration_excluding_pauses == 40.0

    first = orchestrator.store.read_task("task-tasks-paced-01-one").stats
    second = orchestrator.store.read_task("task-tasks-paced-02-two").stats
    assert (first.total_pause_time, first.total_duration) == (15.0, 35.0)
    assert (second.total_pause_time, second.total_duration) == (20.0, 40.0)
