"""Human-in-the-loop plumbing: question detection and answer collection.

An agent that needs a person signals it either through an ``ask_human``
tool call in its own output or by someone running ``cat-herder ask``,
which drops a ``<taskId>.question`` file next to the task's status.  The
answer comes from whichever arrives first: a line typed at the terminal
or a ``<taskId>.answer`` file (what ``cat-herder answer`` writes).
"""

from __future__ import annotations

import logging
import select
import sys
from collections.abc import Callable
from typing import TextIO

from cat_herder.cancellation import CancelToken, race
from cat_herder.errors import TaskInterrupted
from cat_herder.state_store import StateStore

logger = logging.getLogger(__name__)

QUESTION_POLL_SECONDS = 0.5
ANSWER_POLL_SECONDS = 1.0

AnswerSource = Callable[[CancelToken], str | None]


def question_poller(
    store: StateStore,
    task_id: str,
    interval: float = QUESTION_POLL_SECONDS,
) -> Callable[[CancelToken], str | None]:
    """Return a race competitor that resolves to a question once one is filed."""

    def _poll(token: CancelToken) -> str | None:
        while not token.is_set():
            question = store.consume_question(task_id)
            if question:
                logger.info("Question received for %s: %s", task_id, question)
                return question
            token.wait(interval)
        return None

    return _poll


def answer_file_source(
    store: StateStore,
    task_id: str,
    interval: float = ANSWER_POLL_SECONDS,
) -> AnswerSource:
    """Race competitor that resolves to the contents of ``<taskId>.answer``."""

    def _poll(token: CancelToken) -> str | None:
        while not token.is_set():
            answer = store.consume_answer(task_id)
            if answer:
                return answer
            token.wait(interval)
        return None

    return _poll


def console_source(
    stream: TextIO | None = None,
    interval: float = 0.25,
) -> AnswerSource | None:
    """Race competitor that reads one non-empty line from an interactive terminal.

    Returns ``None`` when *stream* is not a TTY or cannot be polled (for
    example Windows consoles), leaving the answer file as the only channel.
    """
    stream = stream if stream is not None else sys.stdin
    try:
        if not stream.isatty():
            return None
        select.select([stream], [], [], 0)
    except (AttributeError, OSError, ValueError):
        return None

    def _read(token: CancelToken) -> str | None:
        while not token.is_set():
            ready, _, _ = select.select([stream], [], [], interval)
            if not ready:
                continue
            line = stream.readline()
            if line == "":
                # EOF: the terminal went away, keep waiting for the answer file.
                token.wait()
                return None
            if line.strip():
                return line.strip()
        return None

    return _read


class HumanInputChannel:
    """Collects an answer to a question from the first channel that delivers one."""

    def __init__(
        self,
        sources: list[AnswerSource],
        *,
        announce: Callable[[str, str], None] | None = None,
    ) -> None:
        if not sources:
            raise ValueError("HumanInputChannel needs at least one answer source")
        self.sources = sources
        self.announce = announce or _print_question

    @classmethod
    def default(cls, store: StateStore, task_id: str) -> HumanInputChannel:
        sources: list[AnswerSource] = [answer_file_source(store, task_id)]
        console = console_source()
        if console is not None:
            sources.insert(0, console)
        return cls(sources)

    def ask(self, task_id: str, question: str, token: CancelToken) -> str:
        """Block until answered; raise :class:`TaskInterrupted` if *token* fires first."""
        self.announce(task_id, question)
        outcome = race(*self.sources, parent=token)
        if token.is_set() or outcome.value is None:
            raise TaskInterrupted(f"Interrupted while waiting for an answer on {task_id}")
        return outcome.value


def _print_question(task_id: str, question: str) -> None:
    print(
        f"\n[cat-herder] The agent needs your input for {task_id}:\n\n  {question}\n\n"
        f"Type your answer and press Enter, or run: cat-herder answer {task_id} \"<answer>\"",
        flush=True,
    )
