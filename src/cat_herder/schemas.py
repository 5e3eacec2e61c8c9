"""Pydantic models for status records, journal events, and agent results."""

from __future__ import annotations

import datetime as dt
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def utc_from_timestamp(seconds: float) -> dt.datetime:
    return dt.datetime.fromtimestamp(seconds, tz=dt.timezone.utc)


def parse_iso(value: str | None) -> dt.datetime | None:
    """Parse an ISO-8601 timestamp, returning ``None`` for blanks or garbage."""
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        parsed = dt.datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


class _CamelModel(BaseModel):
    """Base for records persisted as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


class Phase(str, Enum):
    """Lifecycle phase shared by steps, tasks, and sequences."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    WAITING_FOR_RESET = "waiting_for_reset"
    WAITING_FOR_INPUT = "waiting_for_input"


class InvalidTransitionError(ValueError):
    """Raised when a phase change is not present in the transition table."""


STEP_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.PENDING: frozenset({Phase.RUNNING, Phase.INTERRUPTED, Phase.FAILED}),
    Phase.RUNNING: frozenset(
        {Phase.WAITING_FOR_INPUT, Phase.DONE, Phase.FAILED, Phase.INTERRUPTED}
    ),
    Phase.WAITING_FOR_INPUT: frozenset({Phase.RUNNING, Phase.FAILED, Phase.INTERRUPTED}),
    Phase.WAITING_FOR_RESET: frozenset({Phase.RUNNING, Phase.FAILED, Phase.INTERRUPTED}),
    Phase.INTERRUPTED: frozenset({Phase.RUNNING, Phase.FAILED}),
    Phase.FAILED: frozenset({Phase.RUNNING}),
    Phase.DONE: frozenset(),
}

RUN_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.PENDING: frozenset({Phase.RUNNING, Phase.DONE, Phase.FAILED, Phase.INTERRUPTED}),
    Phase.RUNNING: frozenset(
        {
            Phase.PENDING,
            Phase.WAITING_FOR_INPUT,
            Phase.WAITING_FOR_RESET,
            Phase.DONE,
            Phase.FAILED,
            Phase.INTERRUPTED,
        }
    ),
    Phase.WAITING_FOR_INPUT: frozenset({Phase.RUNNING, Phase.FAILED, Phase.INTERRUPTED}),
    Phase.WAITING_FOR_RESET: frozenset({Phase.RUNNING, Phase.FAILED, Phase.INTERRUPTED}),
    Phase.INTERRUPTED: frozenset({Phase.PENDING, Phase.RUNNING, Phase.FAILED}),
    Phase.FAILED: frozenset({Phase.PENDING, Phase.RUNNING}),
    Phase.DONE: frozenset({Phase.RUNNING}),
}


def check_transition(
    current: Phase,
    target: Phase,
    table: dict[Phase, frozenset[Phase]],
    *,
    subject: str = "phase",
) -> Phase:
    """Return *target* if ``current -> target`` is allowed, else raise."""
    if current == target or target in table[current]:
        return target
    raise InvalidTransitionError(
        f"Invalid {subject} transition: {current.value} -> {target.value}"
    )


# ---------------------------------------------------------------------------
# Usage + stats
# ---------------------------------------------------------------------------


class TokenUsage(_CamelModel):
    """Cumulative token counters for one model."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cache_creation_input_tokens: int = Field(default=0, ge=0)
    cache_read_input_tokens: int = Field(default=0, ge=0)

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_input_tokens
            + self.cache_read_input_tokens
        )

    def is_empty(self) -> bool:
        return self.total_tokens == 0


def merge_token_usage(
    target: dict[str, TokenUsage],
    source: dict[str, TokenUsage],
) -> dict[str, TokenUsage]:
    """Add every model's counters from *source* into *target* in place."""
    for model, usage in source.items():
        target.setdefault(model, TokenUsage()).add(usage)
    return target


class RunStats(_CamelModel):
    """Duration bookkeeping in seconds."""

    total_duration: float = Field(default=0.0, ge=0)
    total_pause_time: float = Field(default=0.0, ge=0)
    total_duration_excluding_pauses: float = Field(default=0.0, ge=0)

    def add_pause(self, seconds: float) -> None:
        self.total_pause_time += max(0.0, float(seconds))

    def finalize(self, start: dt.datetime, end: dt.datetime) -> None:
        """Derive the total and pause-free durations from *start* and *end*."""
        self.total_duration = max(0.0, (end - start).total_seconds())
        self.total_duration_excluding_pauses = max(
            0.0, self.total_duration - self.total_pause_time
        )


class SequenceStats(RunStats):
    total_token_usage: dict[str, TokenUsage] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Status records
# ---------------------------------------------------------------------------


class PendingQuestion(_CamelModel):
    question: str
    timestamp: str = Field(default_factory=utc_now_iso)


class Interaction(_CamelModel):
    question: str
    answer: str
    timestamp: str = Field(default_factory=utc_now_iso)


class TaskStatus(_CamelModel):
    """Persisted state of one task; mutated only by the step and pipeline runners."""

    version: int = 2
    task_id: str = ""
    task_path: str = ""
    start_time: str | None = None
    branch: str = ""
    pipeline: str | None = None
    parent_sequence_id: str | None = None
    current_step: str = ""
    phase: Phase = Phase.PENDING
    steps: dict[str, Phase] = Field(default_factory=dict)
    last_commit: str = ""
    last_update: str = Field(default_factory=utc_now_iso)
    pr_url: str | None = None
    stats: RunStats = Field(default_factory=RunStats)
    token_usage: dict[str, TokenUsage] = Field(default_factory=dict)
    pending_question: PendingQuestion | None = None
    interaction_history: list[Interaction] = Field(default_factory=list)
    rate_limit_reset_at: str | None = None

    def set_phase(self, target: Phase) -> None:
        self.phase = check_transition(self.phase, target, RUN_TRANSITIONS, subject="task")

    def set_step_phase(self, step: str, target: Phase) -> None:
        current = self.steps.get(step, Phase.PENDING)
        self.steps[step] = check_transition(
            current, target, STEP_TRANSITIONS, subject=f"step '{step}'"
        )

    def is_complete(self, step_names: list[str]) -> bool:
        return bool(step_names) and all(self.steps.get(n) == Phase.DONE for n in step_names)

    def add_usage(self, model: str, usage: TokenUsage) -> None:
        self.token_usage.setdefault(model or "default", TokenUsage()).add(usage)


class SequenceStatus(_CamelModel):
    """Persisted state of one sequence; mutated only by the sequence runner."""

    version: int = 1
    sequence_id: str = ""
    folder_path: str = ""
    start_time: str | None = None
    branch: str = ""
    phase: Phase = Phase.PENDING
    current_task_path: str | None = None
    completed_tasks: list[str] = Field(default_factory=list)
    last_update: str = Field(default_factory=utc_now_iso)
    stats: SequenceStats = Field(default_factory=SequenceStats)

    def set_phase(self, target: Phase) -> None:
        self.phase = check_transition(self.phase, target, RUN_TRANSITIONS, subject="sequence")

    def mark_completed(self, task_path: str) -> None:
        if task_path not in self.completed_tasks:
            self.completed_tasks.append(task_path)


# ---------------------------------------------------------------------------
# Journal
# ---------------------------------------------------------------------------


class JournalEventType(str, Enum):
    TASK_STARTED = "task_started"
    TASK_FINISHED = "task_finished"
    SEQUENCE_STARTED = "sequence_started"
    SEQUENCE_FINISHED = "sequence_finished"


class JournalEvent(_CamelModel):
    """One append-only line of the run journal."""

    timestamp: str = Field(default_factory=utc_now_iso)
    event_type: JournalEventType
    id: str
    parent_id: str | None = None
    status: str | None = None

    def to_line(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Agent + check results
# ---------------------------------------------------------------------------


class RateLimitInfo(BaseModel):
    reset_timestamp: int
    """Epoch seconds at which the provider quota resets."""

    @property
    def reset_at(self) -> dt.datetime:
        return dt.datetime.fromtimestamp(self.reset_timestamp, tz=dt.timezone.utc)


class NeedsInput(BaseModel):
    question: str


class AgentResult(BaseModel):
    """Aggregated result of one agent invocation."""

    exit_code: int = -1
    captured_output: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model_used: str | None = None
    rate_limit: RateLimitInfo | None = None
    needs_input: NeedsInput | None = None
    cancelled: bool = False
    timed_out: bool = False
    errors: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.cancelled and not self.timed_out


class CheckResult(BaseModel):
    """Outcome of evaluating one check or an ordered list of checks."""

    success: bool
    output: str = ""
