"""Shared helpers for agent CLI runners: streaming subprocess + step log files."""

from __future__ import annotations

import datetime as dt
import logging
import math
import os
import queue
import shutil
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

from cat_herder.agent_runner import AgentLogPaths

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

_DEFAULT_MAX_CAPTURED_STDOUT_LINES = 20_000
_DEFAULT_MAX_CAPTURED_STDERR_LINES = 10_000

#: Opens every run section in a reasoning log; prompt assembly scans back to it.
LOG_SEPARATOR = "=" * 60
#: Footer prefix written when the agent process exits.
LOG_FOOTER_PREFIX = "--- Process finished at:"


def _streaming_process_isolation_kwargs() -> dict[str, object]:
    """Return subprocess kwargs that isolate child signal/control handling.

    On Windows the child gets its own process group and no console, so a
    terminating child cannot send CTRL_C_EVENT back to the engine.  On
    POSIX a new session gives the same isolation and lets the whole
    process group be signalled on cancel.
    """
    if os.name == "nt":
        new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
        flags = new_pg | no_win
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        # Accept copy/paste paths wrapped in shell quotes.
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    resolved = shutil.which(expanded)
    if resolved:
        return resolved
    return expanded


def coerce_int(value: Any) -> int:
    """Best-effort integer coercion for loosely typed CLI payloads."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return 0
        return int(value)
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        if not cleaned:
            return 0
        try:
            return int(cleaned)
        except ValueError:
            try:
                return int(float(cleaned))
            except (TypeError, ValueError, OverflowError):
                return 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


class AnySet:
    """Reports set when any of the wrapped events/tokens is set."""

    def __init__(self, *events: Any) -> None:
        self._events = [event for event in events if event is not None]

    def is_set(self) -> bool:
        return any(event.is_set() for event in self._events)


# ---------------------------------------------------------------------------
# Step log files
# ---------------------------------------------------------------------------


class StepLogWriter:
    """Streams one agent run into the step's log, reasoning and raw JSON files.

    The reasoning log is appended to across runs; each run opens with
    :data:`LOG_SEPARATOR` so a resumed step can recover the latest run's
    reasoning.  The other two files are rewritten per run.
    """

    def __init__(self, paths: AgentLogPaths) -> None:
        self.paths = paths
        self._lock = threading.Lock()
        self._log: TextIO | None = None
        self._reasoning: TextIO | None = None
        self._raw: TextIO | None = None

    def open(self, *, command: list[str], cwd: Path, model: str | None) -> None:
        for path in self.paths.as_list():
            path.parent.mkdir(parents=True, exist_ok=True)
        started = dt.datetime.now().isoformat(timespec="seconds")
        header = (
            f"Command: {' '.join(command)}\n"
            f"Working directory: {cwd}\n"
            f"Model: {model or 'default'}\n"
            f"Started at: {started}\n"
        )
        self._log = self.paths.log.open("w", encoding="utf-8")
        self._raw = self.paths.raw_json.open("w", encoding="utf-8")
        self._reasoning = self.paths.reasoning.open("a", encoding="utf-8")
        self._log.write(header + "-" * 60 + "\n")
        self._reasoning.write(f"\n{LOG_SEPARATOR}\n{header}{LOG_SEPARATOR}\n")
        self._flush()

    def stdout_line(self, line: str) -> None:
        with self._lock:
            if self._raw is not None:
                self._raw.write(line + "\n")
                self._raw.flush()

    def stderr_line(self, line: str) -> None:
        self.output(f"[stderr] {line}")

    def output(self, text: str) -> None:
        with self._lock:
            if self._log is not None:
                self._log.write(text.rstrip("\n") + "\n")
                self._log.flush()

    def reasoning(self, text: str) -> None:
        with self._lock:
            if self._reasoning is not None:
                self._reasoning.write(text.rstrip("\n") + "\n")
                self._reasoning.flush()

    def close(self, exit_code: int) -> None:
        finished = dt.datetime.now().isoformat(timespec="seconds")
        footer = f"\n{LOG_FOOTER_PREFIX} {finished} with exit code {exit_code} ---\n"
        with self._lock:
            for handle in (self._log, self._reasoning):
                if handle is not None:
                    with suppress(OSError):
                        handle.write(footer)
            for handle in (self._log, self._reasoning, self._raw):
                if handle is not None:
                    with suppress(OSError):
                        handle.close()
            self._log = self._reasoning = self._raw = None

    def _flush(self) -> None:
        for handle in (self._log, self._reasoning, self._raw):
            if handle is not None:
                handle.flush()


# ---------------------------------------------------------------------------
# Streaming subprocess execution
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class StreamExecutionResult:
    """Captured output and metadata from a runner subprocess."""

    raw_lines: list[str]
    stderr_lines: list[str]
    exit_code: int
    timed_out: bool
    cancelled: bool = False

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.stderr_lines).strip()


def execute_streaming_command(
    *,
    cmd: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: int,
    on_stdout_line: Callable[[str], None],
    process_name: str,
    on_stderr_line: Callable[[str], None] | None = None,
    stdin_text: str | None = None,
    cancel_event: Any = None,
    max_stdout_lines: int = _DEFAULT_MAX_CAPTURED_STDOUT_LINES,
    max_stderr_lines: int = _DEFAULT_MAX_CAPTURED_STDERR_LINES,
) -> StreamExecutionResult:
    """Run a subprocess, handing each output line to the callbacks as it arrives.

    *cancel_event* is polled between lines (anything with ``is_set()``);
    once set, the process group is terminated and then killed.  A positive
    *timeout_seconds* kills the process after that long without output.
    """
    proc = subprocess.Popen(
        cmd,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        text=True,
        encoding="utf-8",
        errors="replace",
        env=env,
        **_streaming_process_isolation_kwargs(),
    )
    if proc.stdout is None or proc.stderr is None:
        raise RuntimeError(f"{process_name} subprocess pipes are unexpectedly unavailable")

    raw_lines: deque[str] = deque(maxlen=max(1, max_stdout_lines))
    stderr_lines: deque[str] = deque(maxlen=max(1, max_stderr_lines))
    stream_queue: queue.Queue[tuple[str, str | object]] = queue.Queue()
    done_sentinel = object()

    def _pump_stream(stream_name: str, stream: Any) -> None:
        try:
            for line in stream:
                stream_queue.put((stream_name, line.rstrip("\n\r")))
        finally:
            stream_queue.put((stream_name, done_sentinel))

    def _pump_stdin(stream: Any, text: str) -> None:
        try:
            stream.write(text)
            if text and not text.endswith("\n"):
                stream.write("\n")
            stream.flush()
        except OSError:
            logger.debug("%s stdin write failed", process_name)
        finally:
            with suppress(OSError):
                stream.close()

    def _dispatch(stream_name: str, line: str) -> None:
        if stream_name == "stdout":
            raw_lines.append(line)
            try:
                on_stdout_line(line)
            except Exception:  # pragma: no cover - parser isolation
                logger.warning("Failed to handle %s stdout line; preserving raw output", process_name)
        else:
            stderr_lines.append(line)
            if on_stderr_line is not None:
                on_stderr_line(line)

    stdin_thread: threading.Thread | None = None
    if stdin_text is not None and proc.stdin is not None:
        stdin_thread = threading.Thread(
            target=_pump_stdin,
            args=(proc.stdin, stdin_text),
            daemon=True,
        )
        stdin_thread.start()

    stdout_thread = threading.Thread(target=_pump_stream, args=("stdout", proc.stdout), daemon=True)
    stderr_thread = threading.Thread(target=_pump_stream, args=("stderr", proc.stderr), daemon=True)
    stdout_thread.start()
    stderr_thread.start()

    inactivity_timeout = timeout_seconds if timeout_seconds > 0 else None
    last_activity = time.monotonic()
    closed_streams: set[str] = set()
    timed_out = False
    cancelled = False

    try:
        while len(closed_streams) < 2:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                _terminate_process_with_fallback(
                    proc,
                    process_name=process_name,
                    reason="cancel request",
                )
                break

            if (
                inactivity_timeout is not None
                and (time.monotonic() - last_activity) >= inactivity_timeout
            ):
                timed_out = True
                break

            wait_seconds = 0.25
            if inactivity_timeout is not None:
                remaining = inactivity_timeout - (time.monotonic() - last_activity)
                wait_seconds = max(0.05, min(0.5, remaining))

            try:
                stream_name, payload = stream_queue.get(timeout=wait_seconds)
            except queue.Empty:
                if (
                    proc.poll() is not None
                    and not stdout_thread.is_alive()
                    and not stderr_thread.is_alive()
                ):
                    break
                continue

            if payload is done_sentinel:
                closed_streams.add(stream_name)
                continue

            last_activity = time.monotonic()
            if payload:
                _dispatch(stream_name, str(payload))

        if timed_out:
            _terminate_process_with_fallback(
                proc,
                process_name=process_name,
                reason="inactivity timeout",
            )

        _wait_for_process(proc)

        # Drain buffered lines produced just before process exit.
        while True:
            try:
                stream_name, payload = stream_queue.get_nowait()
            except queue.Empty:
                break
            if payload is done_sentinel or not payload:
                continue
            _dispatch(stream_name, str(payload))

        return StreamExecutionResult(
            raw_lines=list(raw_lines),
            stderr_lines=list(stderr_lines),
            exit_code=proc.returncode if proc.returncode is not None else -1,
            timed_out=timed_out,
            cancelled=cancelled,
        )
    finally:
        if stdin_thread is not None:
            stdin_thread.join(timeout=1.0)
        stdout_thread.join(timeout=1.0)
        stderr_thread.join(timeout=1.0)
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is not None and not stream.closed:
                with suppress(OSError):
                    stream.close()


def _wait_for_process(proc: subprocess.Popen[str]) -> None:
    """Wait for child process exit and force-kill if it refuses to terminate."""
    try:
        proc.wait(timeout=5.0)
    except subprocess.TimeoutExpired:  # pragma: no cover - stubborn child
        proc.kill()
        proc.wait(timeout=5.0)


def _terminate_process_with_fallback(
    proc: subprocess.Popen[str],
    *,
    process_name: str,
    reason: str,
    terminate_timeout_seconds: float = 1.5,
) -> None:
    """Request graceful terminate first, then force-kill if still alive."""
    if proc.poll() is not None:
        return

    _signal_process(proc, graceful=True)
    try:
        proc.wait(timeout=max(0.1, float(terminate_timeout_seconds)))
        return
    except subprocess.TimeoutExpired:
        logger.warning(
            "%s did not exit after terminate during %s; forcing kill.",
            process_name,
            reason,
        )

    _signal_process(proc, graceful=False)
    try:
        proc.wait(timeout=5.0)
    except subprocess.TimeoutExpired:  # pragma: no cover - extreme edge case
        logger.warning("%s ignored kill during %s.", process_name, reason)


def _signal_process(proc: subprocess.Popen[str], *, graceful: bool) -> None:
    """Signal the child and, on POSIX, its whole process group."""
    if os.name != "nt":
        pid = int(getattr(proc, "pid", 0) or 0)
        if pid > 0:
            with suppress(OSError):
                os.killpg(os.getpgid(pid), signal.SIGTERM if graceful else signal.SIGKILL)
    with suppress(OSError):
        if graceful:
            proc.terminate()
        else:
            proc.kill()
