"""Interface to the OpenAI Codex CLI (``codex exec``)."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any

from cat_herder.agent_runner import AgentLogPaths, AgentRunner, register_agent
from cat_herder.runner_common import (
    StepLogWriter,
    coerce_int,
    execute_streaming_command,
    resolve_binary,
)
from cat_herder.schemas import AgentResult, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600  # 10 minutes
SANDBOX_MODE = "workspace-write"


class CodexRunner(AgentRunner):
    """Spawn ``codex exec --json`` with the prompt on stdin and parse its JSONL stream.

    Codex has no project slash commands, so *command* only labels the run;
    the step instructions already sit inside the prompt.
    """

    name = "Codex"

    def __init__(
        self,
        codex_binary: str = "codex",
        timeout: int = DEFAULT_TIMEOUT,
        env_overrides: dict[str, str] | None = None,
    ) -> None:
        self.codex_binary = codex_binary
        self.timeout = max(0, coerce_int(timeout))
        self.env_overrides = env_overrides or {}

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
        repo_path = Path(repo_path).resolve()
        if not repo_path.is_dir():
            return AgentResult(exit_code=-1, errors=[f"repo_path does not exist: {repo_path}"])

        cmd = self._build_command(repo_path, model=model, extra_args=extra_args)
        logger.info("Running Codex for %s (cwd=%s, model=%s)", command, repo_path, model or "default")

        writer = StepLogWriter(logs)
        parser = CodexStreamParser(writer, default_model=model)
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
                on_stderr_line=writer.stderr_line,
                process_name="Codex",
                stdin_text=prompt,
                cancel_event=cancel_event,
            )
            exit_code = execution.exit_code
        except OSError as exc:
            return AgentResult(
                exit_code=-1,
                errors=[f"Failed to execute codex: {exc}"],
                duration_seconds=time.monotonic() - start,
            )
        finally:
            writer.close(exit_code)

        errors = list(parser.errors)
        if execution.stderr_text:
            errors.append(execution.stderr_text)
        if execution.timed_out:
            errors.append(f"Codex process timed out after {self.timeout}s with no output activity")
        return AgentResult(
            exit_code=execution.exit_code,
            captured_output=parser.final_message,
            usage=parser.usage,
            model_used=parser.model_used,
            cancelled=execution.cancelled,
            timed_out=execution.timed_out,
            errors=errors,
            duration_seconds=time.monotonic() - start,
        )

    def _build_command(
        self,
        repo_path: Path,
        *,
        model: str | None,
        extra_args: list[str] | None,
    ) -> list[str]:
        cmd = [resolve_binary(self.codex_binary), "exec"]
        # Explicit workspace so sandbox allows writes in this directory
        cmd.extend(["--cd", str(repo_path), "--json", "--full-auto", "--sandbox", SANDBOX_MODE])
        model = (model or "").strip()
        if model:
            cmd.extend(["--model", model])
        if extra_args:
            cmd.extend(extra_args)
        cmd.append("-")
        return cmd


class CodexStreamParser:
    """Folds ``codex exec --json`` events into usage, final text and log lines.

    Codex CLI 0.98+ uses a nested structure::

        {"type": "item.completed", "item": {"type": "agent_message", ...}}
        {"type": "turn.completed", "usage": {...}}
    """

    def __init__(self, writer: StepLogWriter | None = None, *, default_model: str | None = None):
        self.writer = writer
        self.model_used = default_model
        self.final_message = ""
        self.usage = TokenUsage()
        self.errors: list[str] = []

    def feed(self, line: str) -> None:
        if self.writer is not None:
            self.writer.stdout_line(line)
        try:
            data: Any = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Non-JSON line from codex: %s", line[:200])
            self._output(line)
            return
        if not isinstance(data, dict):
            return

        etype = str(data.get("type") or "").lower()
        if etype == "item.completed":
            self._handle_item(data.get("item") or {})
        elif etype == "turn.completed":
            # Each turn reports its own usage; the run total is their sum.
            self.usage.add(_extract_usage(data))
        elif etype in ("error", "turn.failed"):
            error = data.get("error")
            message = data.get("message") or (
                error.get("message") if isinstance(error, dict) else error
            )
            if isinstance(message, str) and message.strip():
                self.errors.append(message.strip())
                self._output(f"[error] {message.strip()}")

    def _handle_item(self, item: dict[str, Any]) -> None:
        item_type = str(item.get("type") or "").lower()
        text = item.get("text")
        if item_type == "agent_message" and isinstance(text, str):
            self.final_message = text
            self._output(text)
            self._reason(text)
        elif item_type == "reasoning" and isinstance(text, str):
            self._reason(text)
        elif item_type == "command_execution":
            command = str(item.get("command", ""))[:200]
            self._output(f"[exec: {command}] (exit {item.get('exit_code', '?')})")
        elif item_type == "file_change":
            for change in item.get("changes") or []:
                if isinstance(change, dict):
                    self._output(f"[{change.get('kind', 'edit')}: {change.get('path', '')}]")

    def _output(self, text: str) -> None:
        if self.writer is not None and text:
            self.writer.output(text)

    def _reason(self, text: str) -> None:
        if self.writer is not None and text:
            self.writer.reasoning(text)


def _extract_usage(data: dict[str, Any]) -> TokenUsage:
    """Extract token usage from a turn.completed event."""
    usage_raw = data.get("usage")
    if not isinstance(usage_raw, dict):
        return TokenUsage()
    return TokenUsage(
        input_tokens=max(0, coerce_int(usage_raw.get("input_tokens", 0))),
        output_tokens=max(0, coerce_int(usage_raw.get("output_tokens", 0))),
        cache_read_input_tokens=max(0, coerce_int(usage_raw.get("cached_input_tokens", 0))),
    )


register_agent("codex", CodexRunner)
