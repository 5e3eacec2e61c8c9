"""Durable task/sequence status records plus the append-only run journal.

Status records are one JSON file per task or sequence under the state
directory, always replaced atomically.  The journal is a JSONL file of
``task_started`` / ``task_finished`` / ``sequence_started`` /
``sequence_finished`` events that lets a restarted process work out what
was running when it last died, without trusting any single mutable
status file.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from cat_herder.file_io import (
    append_line,
    atomic_write_text,
    consume_text,
    locked_path,
    read_text_if_exists,
)
from cat_herder.schemas import (
    JournalEvent,
    JournalEventType,
    SequenceStatus,
    TaskStatus,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

JOURNAL_FILE = "run-journal.jsonl"
STATUS_SUFFIX = ".state.json"
ANSWER_SUFFIX = ".answer"
QUESTION_SUFFIX = ".question"

_RecordT = TypeVar("_RecordT", TaskStatus, SequenceStatus)


class StateStore:
    """Read/mutate status records and append/replay journal events."""

    def __init__(self, state_dir: str | Path, journal_path: str | Path | None = None) -> None:
        self.state_dir = Path(state_dir)
        self.journal_path = Path(journal_path) if journal_path else self.state_dir / JOURNAL_FILE

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def status_path(self, record_id: str) -> Path:
        return self.state_dir / f"{record_id}{STATUS_SUFFIX}"

    def answer_path(self, task_id: str) -> Path:
        return self.state_dir / f"{task_id}{ANSWER_SUFFIX}"

    def question_path(self, task_id: str) -> Path:
        return self.state_dir / f"{task_id}{QUESTION_SUFFIX}"

    # ------------------------------------------------------------------
    # Status records
    # ------------------------------------------------------------------

    def _read(self, record_id: str, model: type[_RecordT]) -> _RecordT:
        path = self.status_path(record_id)
        raw = read_text_if_exists(path)
        if raw is None or not raw.strip():
            return model()
        try:
            return model.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Could not load status file %s: %s", path, exc)
            return model()

    def _mutate(
        self,
        record_id: str,
        model: type[_RecordT],
        fn: Callable[[_RecordT], None],
    ) -> _RecordT:
        path = self.status_path(record_id)
        with locked_path(path):
            record = self._read(record_id, model)
            fn(record)
            record.last_update = utc_now_iso()
            atomic_write_text(path, record.to_json())
        return record

    def read_task(self, task_id: str) -> TaskStatus:
        """Return the task record, or a fresh default when none is stored."""
        return self._read(task_id, TaskStatus)

    def mutate_task(self, task_id: str, fn: Callable[[TaskStatus], None]) -> TaskStatus:
        """Apply *fn* to the stored task record and persist it atomically."""
        return self._mutate(task_id, TaskStatus, fn)

    def read_sequence(self, sequence_id: str) -> SequenceStatus:
        return self._read(sequence_id, SequenceStatus)

    def mutate_sequence(
        self,
        sequence_id: str,
        fn: Callable[[SequenceStatus], None],
    ) -> SequenceStatus:
        return self._mutate(sequence_id, SequenceStatus, fn)

    def list_task_statuses(self) -> list[TaskStatus]:
        """Return every stored task record, newest update first."""
        if not self.state_dir.is_dir():
            return []
        records: list[TaskStatus] = []
        for path in self.state_dir.glob(f"task-*{STATUS_SUFFIX}"):
            record = self.read_task(path.name[: -len(STATUS_SUFFIX)])
            if record.task_id:
                records.append(record)
        records.sort(key=lambda r: r.last_update, reverse=True)
        return records

    # ------------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------------

    def append_journal_event(
        self,
        event_type: JournalEventType,
        record_id: str,
        *,
        parent_id: str | None = None,
        status: str | None = None,
    ) -> JournalEvent:
        event = JournalEvent(
            event_type=event_type,
            id=record_id,
            parent_id=parent_id,
            status=status,
        )
        append_line(self.journal_path, event.to_line())
        return event

    def read_journal(self) -> list[JournalEvent]:
        """Return all parseable events; torn or corrupt lines are skipped."""
        raw = read_text_if_exists(self.journal_path)
        if not raw:
            return []
        events: list[JournalEvent] = []
        for line in raw.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                events.append(JournalEvent.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as ex:
                logger.warning("Skip invalid journal line: %s", ex)
        return events

    def _find_active(
        self,
        started: JournalEventType,
        finished: JournalEventType,
    ) -> JournalEvent | None:
        in_flight: dict[str, JournalEvent] = {}
        for event in self.read_journal():
            if event.event_type == started:
                # Re-insert so a restarted id moves to the most-recent position.
                in_flight.pop(event.id, None)
                in_flight[event.id] = event
            elif event.event_type == finished:
                in_flight.pop(event.id, None)
        if not in_flight:
            return None
        return next(reversed(in_flight.values()))

    def find_active_task(self) -> JournalEvent | None:
        """Return the ``task_started`` event of the task still in flight, if any."""
        return self._find_active(JournalEventType.TASK_STARTED, JournalEventType.TASK_FINISHED)

    def find_active_sequence(self) -> JournalEvent | None:
        return self._find_active(
            JournalEventType.SEQUENCE_STARTED, JournalEventType.SEQUENCE_FINISHED
        )

    def find_last_finished_task(self) -> JournalEvent | None:
        for event in reversed(self.read_journal()):
            if event.event_type == JournalEventType.TASK_FINISHED:
                return event
        return None

    # ------------------------------------------------------------------
    # Human-input IPC files
    # ------------------------------------------------------------------

    def write_answer(self, task_id: str, answer: str) -> Path:
        path = self.answer_path(task_id)
        atomic_write_text(path, answer)
        return path

    def consume_answer(self, task_id: str) -> str | None:
        """Return and delete a pending answer file's contents."""
        text = consume_text(self.answer_path(task_id))
        return text.strip() if text is not None else None

    def write_question(self, task_id: str, question: str) -> Path:
        path = self.question_path(task_id)
        atomic_write_text(path, question)
        return path

    def consume_question(self, task_id: str) -> str | None:
        text = consume_text(self.question_path(task_id))
        if text is None:
            return None
        return text.strip() or None


def dump_record(record: BaseModel) -> dict:
    """Return a camelCase dict for printing a record."""
    return record.model_dump(mode="json", by_alias=True)
