"""Drive one pipeline step to ``done`` or a terminal failure.

A step is a loop of attempts.  Each attempt receives its input explicitly
(:class:`AttemptInput`: attempt number plus any feedback from the previous
attempt) and returns the next attempt's input, or ``None`` once the step
is done.  Human questions and rate-limit pauses re-run the *same* attempt
number; only a failed check consumes a retry.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from cat_herder.agent_runner import AgentLogPaths, AgentRunner
from cat_herder.cancellation import CancelToken, race
from cat_herder.check_runner import CheckEvaluator
from cat_herder.config import PipelineStep
from cat_herder.errors import (
    AgentFailedError,
    CheckFailedError,
    RateLimitError,
    TaskInterrupted,
)
from cat_herder.git_tools import GitCheckpoint
from cat_herder.pipeline.interaction import (
    QUESTION_POLL_SECONDS,
    HumanInputChannel,
    question_poller,
)
from cat_herder.pipeline.prompt_builder import (
    answer_feedback,
    build_step_prompt,
    check_failure_feedback,
    extract_previous_reasoning,
    rate_limit_resume_feedback,
)
from cat_herder.schemas import (
    AgentResult,
    Interaction,
    PendingQuestion,
    Phase,
    SequenceStatus,
    TaskStatus,
    parse_iso,
)
from cat_herder.state_store import StateStore

logger = logging.getLogger(__name__)

LONG_RATE_LIMIT_WAIT_SECONDS = 8 * 60 * 60


@dataclass(frozen=True, slots=True)
class AttemptInput:
    """Everything an attempt needs beyond the step definition."""

    number: int
    prior_feedback: str | None = None


@dataclass(frozen=True, slots=True)
class StepRequest:
    task_id: str
    step: PipelineStep
    prompt: str
    logs: AgentLogPaths


class StepRunner:
    """Runs attempts for one step and records every transition in the state store.

    Parameters
    ----------
    clock:
        Returns the current epoch time in seconds; compared against
        rate-limit reset timestamps and used to measure pauses.
    sleeper:
        ``sleeper(seconds)`` waits for a rate-limit reset and returns True
        if the wait was cancelled.  Defaults to waiting on *token*.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        agent: AgentRunner,
        checks: CheckEvaluator,
        input_channel: HumanInputChannel,
        token: CancelToken,
        project_root: Path,
        git: GitCheckpoint | None = None,
        wait_for_rate_limit_reset: bool = False,
        sequence_id: str | None = None,
        default_model: str | None = None,
        clock: Callable[[], float] = time.time,
        sleeper: Callable[[float], bool] | None = None,
        question_poll_interval: float = QUESTION_POLL_SECONDS,
    ) -> None:
        self.store = store
        self.agent = agent
        self.checks = checks
        self.input_channel = input_channel
        self.token = token
        self.project_root = Path(project_root)
        self.git = git
        self.wait_for_rate_limit_reset = wait_for_rate_limit_reset
        self.sequence_id = sequence_id
        self.default_model = default_model
        self.clock = clock
        self.sleeper = sleeper or token.wait
        self.question_poll_interval = question_poll_interval

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, request: StepRequest) -> None:
        """Run *request* until the step is done; raise on terminal failure."""
        try:
            attempt: AttemptInput | None = self._resume_pending_reset(request)
            while attempt is not None:
                attempt = self._run_attempt(request, attempt)
        except TaskInterrupted:
            self._mark_terminal(request, Phase.INTERRUPTED)
            raise
        except Exception:
            self._mark_terminal(request, Phase.FAILED)
            raise

    # ------------------------------------------------------------------
    # Attempt
    # ------------------------------------------------------------------

    def _run_attempt(self, request: StepRequest, attempt: AttemptInput) -> AttemptInput | None:
        step = request.step
        prompt = build_step_prompt(
            request.prompt,
            previous_reasoning=extract_previous_reasoning(request.logs.reasoning),
            feedback=attempt.prior_feedback,
        )
        self._set_running(request)
        logger.info(
            "[step] %s: attempt %d/%d%s",
            step.name,
            attempt.number,
            step.retry + 1,
            " (with feedback)" if attempt.prior_feedback else "",
        )

        result, question = self._invoke_agent(request, prompt)
        self._record_usage(request, result)
        if self.token.is_set():
            raise TaskInterrupted(f'Step "{step.name}" was interrupted.')

        if question:
            return AttemptInput(attempt.number, self._ask_human(request, question))

        if result.rate_limit is not None:
            if not self.wait_for_rate_limit_reset:
                raise RateLimitError(result.rate_limit.reset_at, step=step.name)
            wait_seconds = max(0.0, result.rate_limit.reset_timestamp - self.clock())
            self._pause_for_reset(request, result.rate_limit.reset_at, wait_seconds)
            return AttemptInput(attempt.number, rate_limit_resume_feedback())

        if result.exit_code != 0:
            for error in result.errors:
                logger.error("[step] %s: %s", step.name, error)
            raise AgentFailedError(step.name, result.exit_code, request.logs.as_list())

        check = self.checks.evaluate(step.checks, self.project_root)
        if check.success:
            self._complete(request)
            return None

        logger.warning(
            "[step] %s: check failed on attempt %d/%d",
            step.name,
            attempt.number,
            step.retry + 1,
        )
        if attempt.number > step.retry:
            raise CheckFailedError(step.name, step.retry, check.output)
        return AttemptInput(
            attempt.number + 1,
            check_failure_feedback(request.prompt, check.output),
        )

    def _invoke_agent(self, request: StepRequest, prompt: str) -> tuple[AgentResult, str | None]:
        """Race the agent against the question poller; return (result, question)."""

        def _agent(token: CancelToken) -> AgentResult:
            return self.agent.run(
                self.project_root,
                prompt,
                command=request.step.command,
                logs=request.logs,
                model=request.step.model or self.default_model,
                cancel_event=token,
            )

        outcome = race(
            _agent,
            question_poller(self.store, request.task_id, self.question_poll_interval),
            parent=self.token,
        )
        if outcome.index == 0:
            result: AgentResult = outcome.value
            late = outcome.losers.get(1)
            if isinstance(late, str) and late:
                # Consumed as the poller was cancelled; leave it for the next attempt.
                logger.info("Re-filing question for %s: %s", request.task_id, late)
                self.store.write_question(request.task_id, late)
            question = result.needs_input.question if result.needs_input else None
            return result, question
        stopped = outcome.losers.get(0)
        if not isinstance(stopped, AgentResult):
            stopped = AgentResult(exit_code=-1, cancelled=True)
        return stopped, outcome.value

    # ------------------------------------------------------------------
    # Pauses
    # ------------------------------------------------------------------

    def _ask_human(self, request: StepRequest, question: str) -> str:
        name = request.step.name
        logger.info("[step] %s: waiting for human input", name)

        def _wait(status: TaskStatus) -> None:
            status.set_step_phase(name, Phase.WAITING_FOR_INPUT)
            status.set_phase(Phase.WAITING_FOR_INPUT)
            status.pending_question = PendingQuestion(question=question)

        self.store.mutate_task(request.task_id, _wait)
        self._update_sequence(lambda seq: seq.set_phase(Phase.WAITING_FOR_INPUT))

        started = self.clock()
        try:
            answer = self.input_channel.ask(request.task_id, question, self.token)
        finally:
            paused = max(0.0, self.clock() - started)
            self.store.mutate_task(request.task_id, lambda s: s.stats.add_pause(paused))
            self._update_sequence(lambda seq: seq.stats.add_pause(paused))

        def _answered(status: TaskStatus) -> None:
            status.interaction_history.append(Interaction(question=question, answer=answer))
            status.pending_question = None
            status.set_step_phase(name, Phase.RUNNING)
            status.set_phase(Phase.RUNNING)

        self.store.mutate_task(request.task_id, _answered)
        self._update_sequence(lambda seq: seq.set_phase(Phase.RUNNING))
        return answer_feedback(question, answer)

    def _pause_for_reset(
        self,
        request: StepRequest,
        reset_at: dt.datetime,
        wait_seconds: float,
    ) -> None:
        if wait_seconds > LONG_RATE_LIMIT_WAIT_SECONDS:
            logger.warning(
                "[step] %s: rate limit resets in %.1f hours; the process will stay resident "
                "until %s (rerun later to resume if you stop it)",
                request.step.name,
                wait_seconds / 3600,
                reset_at.isoformat(),
            )
        else:
            logger.info(
                "[step] %s: rate limit reached, waiting %.0fs until %s",
                request.step.name,
                wait_seconds,
                reset_at.isoformat(),
            )

        def _waiting(status: TaskStatus) -> None:
            status.set_phase(Phase.WAITING_FOR_RESET)
            status.rate_limit_reset_at = reset_at.isoformat()

        self.store.mutate_task(request.task_id, _waiting)
        self._update_sequence(lambda seq: seq.set_phase(Phase.WAITING_FOR_RESET))

        started = self.clock()
        cancelled = False
        try:
            cancelled = self.sleeper(wait_seconds) if wait_seconds > 0 else self.token.is_set()
        finally:
            paused = max(0.0, self.clock() - started)
            self.store.mutate_task(request.task_id, lambda s: s.stats.add_pause(paused))
            self._update_sequence(lambda seq: seq.stats.add_pause(paused))
        if cancelled:
            raise TaskInterrupted(f'Step "{request.step.name}" interrupted during rate-limit wait.')

        def _resumed(status: TaskStatus) -> None:
            status.rate_limit_reset_at = None
            status.set_phase(Phase.RUNNING)

        self.store.mutate_task(request.task_id, _resumed)
        self._update_sequence(lambda seq: seq.set_phase(Phase.RUNNING))

    def _resume_pending_reset(self, request: StepRequest) -> AttemptInput:
        """Finish a rate-limit wait that an earlier process did not live to complete."""
        status = self.store.read_task(request.task_id)
        reset_at = parse_iso(status.rate_limit_reset_at)
        if reset_at is None:
            return AttemptInput(1)
        remaining = max(0.0, reset_at.timestamp() - self.clock())
        logger.info(
            "[step] %s: resuming an unfinished rate-limit wait (%.0fs left)",
            request.step.name,
            remaining,
        )
        self._pause_for_reset(request, reset_at, remaining)
        return AttemptInput(1, rate_limit_resume_feedback())

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _set_running(self, request: StepRequest) -> None:
        name = request.step.name

        def _running(status: TaskStatus) -> None:
            status.current_step = name
            status.set_step_phase(name, Phase.RUNNING)
            status.set_phase(Phase.RUNNING)

        self.store.mutate_task(request.task_id, _running)

    def _record_usage(self, request: StepRequest, result: AgentResult) -> None:
        if result.usage.is_empty():
            return
        model = (
            result.model_used or request.step.model or self.default_model or "default"
        )
        self.store.mutate_task(request.task_id, lambda s: s.add_usage(model, result.usage))

    def _complete(self, request: StepRequest) -> None:
        name = request.step.name
        sha = self.git.commit_checkpoint(name) if self.git is not None else None

        def _done(status: TaskStatus) -> None:
            status.set_step_phase(name, Phase.DONE)
            status.set_phase(Phase.PENDING)
            if sha:
                status.last_commit = sha

        self.store.mutate_task(request.task_id, _done)
        logger.info("[step] %s: done%s", name, f" (checkpoint {sha})" if sha else "")

    def _mark_terminal(self, request: StepRequest, phase: Phase) -> None:
        name = request.step.name

        def _terminal(status: TaskStatus) -> None:
            if status.steps.get(name) != Phase.DONE:
                status.set_step_phase(name, phase)
            status.set_phase(phase)
            status.pending_question = None
            if phase == Phase.FAILED:
                status.rate_limit_reset_at = None

        self.store.mutate_task(request.task_id, _terminal)
        logger.info("[step] %s: %s", name, phase.value)

    def _update_sequence(self, fn: Callable[[SequenceStatus], None]) -> None:
        if self.sequence_id:
            self.store.mutate_sequence(self.sequence_id, fn)
