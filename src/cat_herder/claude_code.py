"""Interface to Anthropic Claude Code CLI (``claude``)."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from pathlib import Path
from typing import Any

from cat_herder.agent_runner import AgentLogPaths, AgentRunner, register_agent
from cat_herder.runner_common import (
    AnySet,
    StepLogWriter,
    coerce_int,
    execute_streaming_command,
    resolve_binary,
)
from cat_herder.schemas import AgentResult, NeedsInput, RateLimitInfo, TokenUsage

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 600  # 10 minutes of inactivity
ASK_HUMAN_TOOL_SUFFIX = "ask_human"
_RATE_LIMIT_RE = re.compile(r"usage limit reached\|(\d{9,})", re.IGNORECASE)


class ClaudeCodeRunner(AgentRunner):
    """Spawn ``claude -p /project:<command>`` and parse its stream-json output.

    The step prompt is written to stdin; the slash command selects the
    project's command file.  While the process runs, assistant text and
    tool calls go to the step log, thinking and text to the reasoning log,
    and every raw JSON line to the raw log.

    Parameters
    ----------
    claude_binary:
        Path or name of the Claude Code CLI binary.
    timeout:
        Maximum seconds without stdout/stderr activity before the child
        process is killed. ``0`` disables the timeout.
    env_overrides:
        Extra environment variables forwarded to the child process.
    max_turns:
        Maximum agent turns (``--max-turns``).  ``0`` means unlimited.
    """

    name = "Claude Code"

    def __init__(
        self,
        claude_binary: str = "claude",
        timeout: int = DEFAULT_TIMEOUT,
        env_overrides: dict[str, str] | None = None,
        max_turns: int = 0,
    ) -> None:
        self.claude_binary = claude_binary
        self.timeout = max(0, coerce_int(timeout))
        self.env_overrides = env_overrides or {}
        self.max_turns = max(0, coerce_int(max_turns))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        repo_path: str | Path,
        prompt: str,
        *,
        command: str,
        logs: AgentLogPaths,
        model: str | None = None,
        extra_args: list[str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> AgentResult:
        """Execute a single Claude Code invocation and return results."""
        repo_path = Path(repo_path).resolve()
        if not repo_path.is_dir():
            return AgentResult(exit_code=-1, errors=[f"repo_path does not exist: {repo_path}"])

        cmd = self._build_command(command, model=model, extra_args=extra_args)
        logger.info(
            "Running Claude Code /project:%s (cwd=%s, model=%s, prompt_len=%s)",
            command,
            repo_path,
            model or "default",
            len(prompt),
        )

        writer = StepLogWriter(logs)
        parser = ClaudeStreamParser(writer, default_model=model)
        start = time.monotonic()
        writer.open(command=cmd, cwd=repo_path, model=model)
        exit_code = -1
        try:
            execution = execute_streaming_command(
                cmd=cmd,
                cwd=repo_path,
                env={**os.environ, **self.env_overrides},
                timeout_seconds=self.timeout,
                on_stdout_line=parser.feed,
                on_stderr_line=parser.feed_stderr,
                process_name="Claude Code",
                stdin_text=prompt,
                cancel_event=AnySet(cancel_event, parser.stop_event),
            )
            exit_code = execution.exit_code
        except OSError as exc:
            writer.output(f"Failed to execute claude: {exc}")
            return AgentResult(
                exit_code=-1,
                errors=[f"Failed to execute claude: {exc}"],
                duration_seconds=time.monotonic() - start,
            )
        finally:
            writer.close(exit_code)

        result = parser.result(
            exit_code=execution.exit_code,
            cancelled=execution.cancelled and not parser.stop_event.is_set(),
            timed_out=execution.timed_out,
            stderr=execution.stderr_text,
        )
        if execution.timed_out:
            result.errors.append(
                f"Claude Code process timed out after {self.timeout}s with no output activity"
            )
        result.duration_seconds = time.monotonic() - start
        return result

    # ------------------------------------------------------------------
    # Command building
    # ------------------------------------------------------------------

    def _build_command(
        self,
        command: str,
        *,
        model: str | None,
        extra_args: list[str] | None,
    ) -> list[str]:
        cmd = [
            resolve_binary(self.claude_binary),
            "-p",
            f"/project:{command}",
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if self.max_turns > 0:
            cmd.extend(["--max-turns", str(self.max_turns)])

        has_model_override = False
        if extra_args:
            for arg in extra_args:
                normalized = (arg or "").strip().lower()
                if normalized in {"--model", "-m"} or normalized.startswith("--model="):
                    has_model_override = True
                    break

        model = (model or "").strip()
        if model and not has_model_override:
            cmd.extend(["--model", model])
        if extra_args:
            cmd.extend(extra_args)
        return cmd


class ClaudeStreamParser:
    """Incrementally folds Claude stream-json lines into an :class:`AgentResult`.

    Claude Code's ``stream-json`` format emits objects like::

        {"type": "system", "subtype": "init", "model": "...", ...}
        {"type": "assistant", "message": {"content": [...]}, ...}
        {"type": "result", "result": "...", "usage": {...}, ...}

    An ``ask_human`` tool call sets :attr:`stop_event` so the caller can
    stop the process and hand the question to a person.
    """

    def __init__(self, writer: StepLogWriter | None = None, *, default_model: str | None = None):
        self.writer = writer
        self.stop_event = threading.Event()
        self.model_used: str | None = None
        self.default_model = default_model
        self.final_message = ""
        self.usage = TokenUsage()
        self._usage_message_ids: set[str] = set()
        self.rate_limit: RateLimitInfo | None = None
        self.needs_input: NeedsInput | None = None
        self.errors: list[str] = []

    # ------------------------------------------------------------------
    # Line handlers
    # ------------------------------------------------------------------

    def feed(self, line: str) -> None:
        if self.writer is not None:
            self.writer.stdout_line(line)
        self._scan_rate_limit(line)
        try:
            data: Any = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Non-JSON line from claude: %s", line[:200])
            self._output(line)
            return
        if not isinstance(data, dict):
            return

        etype = str(data.get("type") or "").lower()
        if etype == "system":
            model = data.get("model")
            if isinstance(model, str) and model:
                self.model_used = model
        elif etype == "assistant":
            self._handle_assistant(data)
        elif etype == "result":
            self._handle_result(data)
        elif etype == "error" or "error" in data:
            message = _error_text(data)
            if message:
                self.errors.append(message)
                self._output(f"[error] {message}")

    def feed_stderr(self, line: str) -> None:
        self._scan_rate_limit(line)
        if self.writer is not None:
            self.writer.stderr_line(line)

    def _handle_assistant(self, data: dict[str, Any]) -> None:
        message = data.get("message")
        if not isinstance(message, dict):
            return
        model = message.get("model")
        if isinstance(model, str) and model and not model.startswith("<"):
            self.model_used = model
        self._add_message_usage(message)
        content = message.get("content")
        if isinstance(content, str):
            self._output(content)
            self._reason(content)
            return
        if not isinstance(content, list):
            return
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text = str(block.get("text") or "")
                self._output(text)
                self._reason(text)
            elif block_type == "thinking":
                self._reason(str(block.get("thinking") or ""))
            elif block_type == "tool_use":
                self._handle_tool_use(block)

    def _add_message_usage(self, message: dict[str, Any]) -> None:
        """Accumulate per-message usage so a killed run still reports tokens."""
        raw = message.get("usage")
        if not isinstance(raw, dict):
            return
        message_id = message.get("id")
        if isinstance(message_id, str) and message_id:
            # Each content block of one message repeats the same usage.
            if message_id in self._usage_message_ids:
                return
            self._usage_message_ids.add(message_id)
        self.usage.add(_usage_from_raw(raw))

    def _handle_tool_use(self, block: dict[str, Any]) -> None:
        tool_name = str(block.get("name") or "unknown")
        tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
        if tool_name.lower().endswith(ASK_HUMAN_TOOL_SUFFIX):
            question = str(tool_input.get("question") or "").strip()
            if question:
                self.needs_input = NeedsInput(question=question)
                self._output(f"[needs input] {question}")
                self.stop_event.set()
            return
        path = tool_input.get("file_path") or tool_input.get("path") or ""
        cmd = tool_input.get("command") or ""
        if path:
            self._output(f"[{tool_name}: {path}]")
        elif cmd:
            self._output(f"[{tool_name}: {str(cmd)[:100]}]")
        else:
            self._output(f"[{tool_name}]")

    def _handle_result(self, data: dict[str, Any]) -> None:
        result = data.get("result")
        if isinstance(result, str):
            self.final_message = result
        elif isinstance(result, dict):
            self.final_message = str(result.get("text") or result.get("content") or "")
        final_usage = _extract_claude_usage(data)
        if final_usage is not None:
            self.usage = final_usage
        model_usage = data.get("modelUsage")
        if isinstance(model_usage, dict) and model_usage:
            self.model_used = str(next(iter(model_usage)))
        if data.get("is_error") and self.final_message:
            self.errors.append(self.final_message[:500])

    def _scan_rate_limit(self, text: str) -> None:
        match = _RATE_LIMIT_RE.search(text)
        if match:
            self.rate_limit = RateLimitInfo(reset_timestamp=int(match.group(1)))

    def _output(self, text: str) -> None:
        if self.writer is not None and text:
            self.writer.output(text)

    def _reason(self, text: str) -> None:
        if self.writer is not None and text:
            self.writer.reasoning(text)

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def result(
        self,
        *,
        exit_code: int,
        cancelled: bool = False,
        timed_out: bool = False,
        stderr: str = "",
    ) -> AgentResult:
        errors = list(self.errors)
        if stderr:
            errors.append(stderr)
        if exit_code != 0 and not errors and not cancelled and self.needs_input is None:
            errors.append(
                f"Claude Code exited with status {exit_code} but produced no explicit error output"
            )
        if self.needs_input is not None and exit_code != 0:
            # We stopped the process ourselves to ask the question.
            exit_code = 0
        return AgentResult(
            exit_code=exit_code,
            captured_output=self.final_message,
            usage=self.usage,
            model_used=self.model_used or self.default_model,
            rate_limit=self.rate_limit,
            needs_input=self.needs_input,
            cancelled=cancelled,
            timed_out=timed_out,
            errors=errors,
        )


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------


def _extract_claude_usage(data: dict[str, Any]) -> TokenUsage | None:
    """Extract token usage from a Claude Code result event, or None when absent."""
    # Usage can be at top level or nested in the result
    usage_raw: dict[str, Any] = {}
    top_level_usage = data.get("usage")
    if isinstance(top_level_usage, dict):
        usage_raw = top_level_usage
    if not usage_raw:
        result = data.get("result")
        if isinstance(result, dict):
            nested_usage = result.get("usage")
            if isinstance(nested_usage, dict):
                usage_raw = nested_usage

    if not usage_raw:
        return None
    return _usage_from_raw(usage_raw)


def _usage_from_raw(usage_raw: dict[str, Any]) -> TokenUsage:
    return TokenUsage(
        input_tokens=max(0, coerce_int(usage_raw.get("input_tokens", 0))),
        output_tokens=max(0, coerce_int(usage_raw.get("output_tokens", 0))),
        cache_creation_input_tokens=max(
            0, coerce_int(usage_raw.get("cache_creation_input_tokens", 0))
        ),
        cache_read_input_tokens=max(0, coerce_int(usage_raw.get("cache_read_input_tokens", 0))),
    )


def _error_text(data: dict[str, Any]) -> str | None:
    for key in ("error", "message", "text"):
        val = data.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
        if isinstance(val, dict):
            nested = val.get("message") or val.get("text")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
    return None


# ── Register with the agent registry ─────────────────────────────
register_agent("claude_code", ClaudeCodeRunner)
