"""Tests for running a task's pipeline end to end with a fake agent."""

from __future__ import annotations

import pytest

from cat_herder.errors import AgentFailedError, CheckFailedError, ConfigError
from cat_herder.pipeline.orchestrator import Orchestrator
from cat_herder.schemas import AgentResult, Interaction, Phase

pytestmark = pytest.mark.unit


def test_runs_steps_in_order_and_finishes(orchestrator, fake_agent, fake_git, write_task) -> None:
    task = write_task("tasks/login.md")

    status = orchestrator.run_task(task)

    assert fake_agent.commands == ["plan", "implement"]
    assert status.phase == Phase.DONE
    assert status.steps == {"plan": Phase.DONE, "implement": Phase.DONE}
    assert status.pipeline == "default"
    assert status.branch == "cat-herder/tasks-login"
    assert status.current_step == ""
    assert status.last_commit == "sha-2"
    assert status.token_usage["fake-model"].output_tokens == 200
    assert fake_git.branches == ["cat-herder/tasks-login"]
    assert fake_git.checkpoints == ["plan", "implement"]


def test_prompts_carry_task_plan_and_instructions(orchestrator, fake_agent, write_task) -> None:
    task = write_task("tasks/login.md", "---\npipeline: default\n---\nAdd a login form.\n")

    orchestrator.run_task(task)

    plan_prompt = fake_agent.calls[0][1]
    implement_prompt = fake_agent.calls[1][1]
    assert "--- TASK DEFINITION ---\nAdd a login form." in plan_prompt
    assert "pipeline: default" not in plan_prompt
    assert "PLAN CONTENT" not in plan_prompt
    assert "Write PLAN.md for the task." in plan_prompt
    assert "--- PLAN CONTENT ---\n1. Add the login form" in implement_prompt
    assert "Implement PLAN.md." in implement_prompt


def test_rerun_of_finished_task_calls_no_agent(orchestrator, fake_agent, write_task) -> None:
    task = write_task("tasks/login.md")
    orchestrator.run_task(task)
    fake_agent.calls.clear()

    status = orchestrator.run_task(task)

    assert fake_agent.calls == []
    assert status.phase == Phase.DONE


def test_front_matter_selects_pipeline(orchestrator, fake_agent, write_task) -> None:
    task = write_task("tasks/readme.md", "---\npipeline: docs\n---\nDocument the API.\n")

    status = orchestrator.run_task(task)

    assert fake_agent.commands == ["docs"]
    assert status.pipeline == "docs"
    assert list(status.steps) == ["docs"]


def test_pipeline_option_overrides_front_matter(orchestrator, fake_agent, write_task) -> None:
    task = write_task("tasks/readme.md", "---\npipeline: docs\n---\nDocument the API.\n")

    orchestrator.run_task(task, pipeline_name="default")

    assert fake_agent.commands == ["plan", "implement"]


def test_unknown_pipeline_fails_task(orchestrator, write_task) -> None:
    task = write_task("tasks/login.md")

    with pytest.raises(ConfigError, match="Pipeline 'nope' not found"):
        orchestrator.run_task(task, pipeline_name="nope")

    status = orchestrator.store.read_task("task-tasks-login")
    assert status.phase == Phase.FAILED


def test_failed_step_resumes_from_where_it_stopped(orchestrator, fake_agent, write_task) -> None:
    task = write_task("tasks/login.md")
    fake_agent.actions["implement"] = lambda _repo, _prompt: AgentResult(exit_code=1)

    with pytest.raises(AgentFailedError):
        orchestrator.run_task(task)

    failed = orchestrator.store.read_task("task-tasks-login")
    assert failed.phase == Phase.FAILED
    assert failed.steps == {"plan": Phase.DONE, "implement": Phase.FAILED}

    del fake_agent.actions["implement"]
    fake_agent.calls.clear()
    status = orchestrator.run_task(task)

    assert fake_agent.commands == ["implement"]
    assert status.phase == Phase.DONE


def test_failed_check_stops_pipeline(orchestrator, fake_agent, write_task) -> None:
    task = write_task("tasks/login.md")
    fake_agent.actions["plan"] = lambda _repo, _prompt: None

    with pytest.raises(CheckFailedError, match="PLAN.md"):
        orchestrator.run_task(task)

    assert fake_agent.commands == ["plan"]
    status = orchestrator.store.read_task("task-tasks-login")
    assert status.steps["implement"] == Phase.PENDING


def test_interaction_history_reaches_later_steps(orchestrator, fake_agent, write_task) -> None:
    task = write_task("tasks/login.md")
    orchestrator.store.mutate_task(
        "task-tasks-login",
        lambda s: s.interaction_history.append(Interaction(question="OAuth?", answer="No")),
    )

    orchestrator.run_task(task)

    assert "Q1: OAuth?\nA1: No" in fake_agent.calls[0][1]


def test_stats_are_finalized(orchestrator, write_task) -> None:
    task = write_task("tasks/login.md")

    status = orchestrator.run_task(task)

    assert status.start_time is not None
    assert status.stats.total_duration >= 0
    assert status.stats.total_duration_excluding_pauses <= status.stats.total_duration


def test_pauses_in_two_steps_accumulate(
    project, fake_agent, fake_git, fake_clock, rate_limited, write_task
) -> None:
    project.wait_for_rate_limit_reset = True
    fake_agent.actions["plan"] = rate_limited(15, then=fake_agent.actions["plan"])
    fake_agent.actions["implement"] = rate_limited(20)
    orchestrator = Orchestrator(
        project, agent=fake_agent, git=fake_git, clock=fake_clock, sleeper=fake_clock.sleep
    )

    status = orchestrator.run_task(write_task("tasks/login.md"))

    assert fake_clock.sleeps == [15.0, 20.0]
    assert fake_agent.commands == ["plan", "plan", "implement", "implement"]
    assert status.phase == Phase.DONE
    # four agent calls of 10 s each plus 35 s of waiting
    assert status.stats.total_pause_time == 35.0
    assert status.stats.total_duration == 75.0
    assert status.stats.total_duration_excluding_pauses == 40.0
