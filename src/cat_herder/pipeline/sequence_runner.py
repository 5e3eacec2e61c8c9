"""Run every task file in a folder, one after another, on a shared branch."""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from cat_herder.errors import ConfigError, TaskInterrupted
from cat_herder.ids import sequence_branch_name, sequence_id_for, task_id_for
from cat_herder.schemas import (
    JournalEventType,
    Phase,
    SequenceStatus,
    TokenUsage,
    merge_token_usage,
    parse_iso,
    utc_from_timestamp,
)
from cat_herder.state_store import StateStore

if TYPE_CHECKING:
    from cat_herder.pipeline.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


def list_task_files(folder: Path) -> list[Path]:
    """Markdown task files directly in *folder*, ``_``-prefixed ones excluded, sorted by name."""
    return sorted(
        path.resolve()
        for path in folder.iterdir()
        if path.is_file() and path.suffix == ".md" and not path.name.startswith("_")
    )


def next_available_task(folder: Path, completed: list[str]) -> Path | None:
    done = set(completed)
    for path in list_task_files(folder):
        if str(path) not in done:
            return path
    return None


class SequenceRunner:
    """Executes a folder of tasks back-to-back and keeps the sequence record current.

    The first task failure (or interruption) stops the whole sequence;
    already completed tasks are skipped when the sequence is run again.
    """

    def __init__(self, orchestrator: Orchestrator) -> None:
        self.orchestrator = orchestrator
        self.store: StateStore = orchestrator.store

    def run(self, folder: str | Path) -> SequenceStatus:
        folder = Path(folder).resolve()
        if not folder.is_dir():
            raise ConfigError(f"Sequence folder not found: {folder}")
        sequence_id = sequence_id_for(folder)
        branch = self.orchestrator.git.ensure_branch(sequence_branch_name(sequence_id))

        def _start(seq: SequenceStatus) -> None:
            if not seq.sequence_id:
                seq.sequence_id = sequence_id
                seq.start_time = self._now().isoformat()
            seq.folder_path = str(folder)
            seq.branch = branch
            seq.set_phase(Phase.RUNNING)

        self.store.mutate_sequence(sequence_id, _start)
        self.store.append_journal_event(JournalEventType.SEQUENCE_STARTED, sequence_id)
        logger.info("[sequence] %s: started on branch %s", sequence_id, branch)

        outcome = Phase.FAILED
        try:
            while True:
                completed = self.store.read_sequence(sequence_id).completed_tasks
                task_path = next_available_task(folder, completed)
                if task_path is None:
                    break
                self._run_one(sequence_id, folder, task_path, branch)

            def _finish(seq: SequenceStatus) -> None:
                seq.set_phase(Phase.DONE)
                seq.current_task_path = None
                start = parse_iso(seq.start_time)
                if start is not None:
                    seq.stats.finalize(start, self._now())

            final = self.store.mutate_sequence(sequence_id, _finish)
            outcome = Phase.DONE
            logger.info(
                "[sequence] %s: done, %d task(s) completed",
                sequence_id,
                len(final.completed_tasks),
            )
            return final
        except TaskInterrupted:
            outcome = Phase.INTERRUPTED
            logger.info("[sequence] %s: interrupted; rerun to resume", sequence_id)
            return self.store.read_sequence(sequence_id)
        finally:
            self.store.append_journal_event(
                JournalEventType.SEQUENCE_FINISHED, sequence_id, status=outcome.value
            )

    def _now(self) -> dt.datetime:
        return utc_from_timestamp(self.orchestrator.clock())

    def _run_one(self, sequence_id: str, folder: Path, task_path: Path, branch: str) -> None:
        task_id = task_id_for(task_path, self.orchestrator.config.project_root)
        logger.info("[sequence] %s: starting %s", sequence_id, task_path.name)

        def _current(seq: SequenceStatus) -> None:
            seq.set_phase(Phase.RUNNING)
            seq.current_task_path = str(task_path)

        self.store.mutate_sequence(sequence_id, _current)
        try:
            self.orchestrator.execute_task(
                task_path,
                task_id=task_id,
                branch=branch,
                parent_sequence_id=sequence_id,
                sequence_folder=str(folder),
            )
        except TaskInterrupted:
            self._absorb_usage(sequence_id, task_id, lambda seq: seq.set_phase(Phase.INTERRUPTED))
            raise
        except Exception:
            self._absorb_usage(sequence_id, task_id, lambda seq: seq.set_phase(Phase.FAILED))
            raise

        def _completed(seq: SequenceStatus) -> None:
            seq.mark_completed(str(task_path))
            seq.current_task_path = None

        self._absorb_usage(sequence_id, task_id, _completed)

    def _absorb_usage(
        self,
        sequence_id: str,
        task_id: str,
        then: Callable[[SequenceStatus], None],
    ) -> None:
        """Recompute the sequence token total from its tasks' records, then apply *then*.

        The total is rebuilt from every task the sequence has touched rather
        than incremented, so a task that failed, was merged, and later
        resumed is not counted twice.
        """
        root = self.orchestrator.config.project_root

        def _merge(seq: SequenceStatus) -> None:
            then(seq)
            task_ids = [task_id_for(path, root) for path in seq.completed_tasks]
            if task_id not in task_ids:
                task_ids.append(task_id)
            total: dict[str, TokenUsage] = {}
            for tid in task_ids:
                merge_token_usage(total, self.store.read_task(tid).token_usage)
            seq.stats.total_token_usage = total

        self.store.mutate_sequence(sequence_id, _merge)
