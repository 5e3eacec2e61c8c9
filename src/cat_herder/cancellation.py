"""Cancellation tokens and a select primitive that cancels the losers.

A :class:`CancelToken` is threaded through every suspension point of a
run (agent subprocess, pollers, console input, rate-limit sleep).  It
quacks like :class:`threading.Event` (``is_set``/``wait``) so the
subprocess helpers can poll it directly.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Cooperative cancellation flag with parent -> child propagation."""

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._event = threading.Event()
        self._children: list[CancelToken] = []
        self._lock = threading.Lock()
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: CancelToken) -> None:
        with self._lock:
            self._children.append(child)
            cancelled = self._event.is_set()
        if cancelled:
            child.cancel()

    def child(self) -> CancelToken:
        """Return a token cancelled together with this one (but not vice versa)."""
        return CancelToken(parent=self)

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel()

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep up to *timeout* seconds; return True if cancelled meanwhile."""
        return self._event.wait(timeout)


@dataclass(slots=True)
class RaceResult(Generic[T]):
    """Outcome of :func:`race`.

    ``losers`` maps each losing competitor's index to the value it returned
    after being cancelled (exceptions raised by losers are logged and left
    out).
    """

    index: int
    value: T
    losers: dict[int, Any] = field(default_factory=dict)


def race(
    *competitors: Callable[[CancelToken], T],
    parent: CancelToken | None = None,
) -> RaceResult[T]:
    """Run *competitors* concurrently and return the first to finish.

    Each competitor receives its own child token.  As soon as one returns
    (or raises), every other token is cancelled and the call blocks until
    the losers have unwound, so no timer, poller, or child process
    outlives the race.  A winner's exception is re-raised.
    """
    if not competitors:
        raise ValueError("race() needs at least one competitor")
    root = parent if parent is not None else CancelToken()
    tokens = [root.child() for _ in competitors]

    with ThreadPoolExecutor(
        max_workers=len(competitors), thread_name_prefix="cat-herder-race"
    ) as pool:
        futures: list[Future[T]] = [
            pool.submit(fn, token) for fn, token in zip(competitors, tokens, strict=True)
        ]
        done, _ = wait(futures, return_when=FIRST_COMPLETED)
        winner = min(futures.index(f) for f in done)
        for index, token in enumerate(tokens):
            if index != winner:
                token.cancel()
        wait(futures)

    losers: dict[int, Any] = {}
    for index, future in enumerate(futures):
        if index == winner:
            continue
        exc = future.exception()
        if exc is not None:
            logger.warning("Cancelled race competitor %d raised: %s", index, exc)
            continue
        losers[index] = future.result()
    return RaceResult(index=winner, value=futures[winner].result(), losers=losers)
