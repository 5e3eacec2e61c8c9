"""Unit tests for the Claude Code runner and stream parser."""

from __future__ import annotations

import json
from pathlib import Path

import cat_herder.claude_code as claude_module
from cat_herder.agent_runner import AgentLogPaths, get_agent_class
from cat_herder.claude_code import ClaudeCodeRunner, ClaudeStreamParser, _extract_claude_usage
from cat_herder.runner_common import StreamExecutionResult


def _line(payload: dict) -> str:
    return json.dumps(payload)


class TestBuildCommand:
    def test_invalid_timeout_and_max_turns_are_coerced(self):
        runner = ClaudeCodeRunner(timeout="abc", max_turns=-3)  # type: ignore[arg-type]
        assert runner.timeout == 0
        assert runner.max_turns == 0

    def test_basic(self):
        runner = ClaudeCodeRunner(claude_binary="claude")
        cmd = runner._build_command("implement", model=None, extra_args=None)
        assert cmd[1:] == [
            "-p",
            "/project:implement",
            "--output-format",
            "stream-json",
            "--verbose",
        ]

    def test_model_and_max_turns(self):
        runner = ClaudeCodeRunner(max_turns=5)
        cmd = runner._build_command("plan", model=" claude-sonnet ", extra_args=None)
        assert cmd[-4:] == ["--max-turns", "5", "--model", "claude-sonnet"]

    def test_extra_args_model_override_skips_model(self):
        runner = ClaudeCodeRunner()
        cmd = runner._build_command("plan", model="a", extra_args=["--model=b"])
        assert "--model" not in cmd
        assert cmd[-1] == "--model=b"

    def test_registered_under_claude_code(self):
        assert get_agent_class("claude_code") is ClaudeCodeRunner


class TestStreamParser:
    def test_collects_model_text_and_usage(self):
        parser = ClaudeStreamParser()
        parser.feed(_line({"type": "system", "subtype": "init", "model": "claude-init"}))
        parser.feed(
            _line(
                {
                    "type": "assistant",
                    "message": {
                        "model": "claude-sonnet",
                        "content": [{"type": "text", "text": "working"}],
                    },
                }
            )
        )
        parser.feed(
            _line(
                {
                    "type": "result",
                    "result": "all done",
                    "usage": {
                        "input_tokens": 10,
                        "output_tokens": 20,
                        "cache_creation_input_tokens": 3,
                        "cache_read_input_tokens": 4,
                    },
                }
            )
        )

        result = parser.result(exit_code=0)
        assert result.success
        assert result.captured_output == "all done"
        assert result.model_used == "claude-sonnet"
        assert result.usage.total_tokens == 37

    def test_model_usage_key_wins(self):
        parser = ClaudeStreamParser(default_model="fallback")
        parser.feed(_line({"type": "result", "result": "", "modelUsage": {"claude-opus": {}}}))
        assert parser.result(exit_code=0).model_used == "claude-opus"

    def test_default_model_when_stream_names_none(self):
        parser = ClaudeStreamParser(default_model="fallback")
        assert parser.result(exit_code=0).model_used == "fallback"

    def test_rate_limit_line_sets_reset_timestamp(self):
        parser = ClaudeStreamParser()
        parser.feed("Claude AI usage limit reached|1767225600")
        result = parser.result(exit_code=1)
        assert result.rate_limit is not None
        assert result.rate_limit.reset_timestamp == 1767225600

    def test_rate_limit_detected_on_stderr(self):
        parser = ClaudeStreamParser()
        parser.feed_stderr("Claude AI usage limit reached|1767225600")
        assert parser.rate_limit is not None

    def test_ask_human_tool_sets_needs_input_and_stops(self):
        parser = ClaudeStreamParser()
        parser.feed(
            _line(
                {
                    "type": "assistant",
                    "message": {
                        "content": [
                            {
                                "type": "tool_use",
                                "name": "mcp__cat_herder__ask_human",
                                "input": {"question": "Which database?"},
                            }
                        ]
                    },
                }
            )
        )
        assert parser.stop_event.is_set()
        result = parser.result(exit_code=-15)
        assert result.exit_code == 0
        assert result.needs_input is not None
        assert result.needs_input.question == "Which database?"

    def test_nonzero_exit_without_output_records_error(self):
        result = ClaudeStreamParser().result(exit_code=2)
        assert result.errors
        assert "status 2" in result.errors[0]

    def test_is_error_result_is_recorded(self):
        parser = ClaudeStreamParser()
        parser.feed(_line({"type": "result", "is_error": True, "result": "boom"}))
        assert parser.result(exit_code=1).errors == ["boom"]

    def test_killed_run_keeps_usage_from_assistant_messages(self):
        parser = ClaudeStreamParser()
        parser.feed(_line({"type": "system", "subtype": "init", "model": "claude-init"}))
        for block in ("reading", "editing"):
            parser.feed(
                _line(
                    {
                        "type": "assistant",
                        "message": {
                            "id": "msg_1",
                            "content": [{"type": "text", "text": block}],
                            "usage": {"input_tokens": 1200, "output_tokens": 300},
                        },
                    }
                )
            )
        parser.feed(
            _line(
                {
                    "type": "assistant",
                    "message": {
                        "id": "msg_2",
                        "content": [{"type": "text", "text": "more"}],
                        "usage": {"input_tokens": 100, "output_tokens": 50},
                    },
                }
            )
        )

        result = parser.result(exit_code=-15, cancelled=True)
        assert result.cancelled
        assert result.usage.input_tokens == 1300
        assert result.usage.output_tokens == 350

    def test_result_totals_replace_running_sum(self):
        parser = ClaudeStreamParser()
        parser.feed(
            _line(
                {
                    "type": "assistant",
                    "message": {"id": "msg_1", "content": [], "usage": {"output_tokens": 40}},
                }
            )
        )
        parser.feed(_line({"type": "result", "result": "ok", "usage": {"output_tokens": 55}}))
        assert parser.result(exit_code=0).usage.output_tokens == 55

    def test_non_json_lines_are_tolerated(self):
        parser = ClaudeStreamParser()
        parser.feed("not json at all")
        assert parser.result(exit_code=0).success


class TestUsageExtraction:
    def test_string_usage_values_are_coerced(self):
        usage = _extract_claude_usage({"usage": {"input_tokens": "12", "output_tokens": "x"}})
        assert usage.input_tokens == 12
        assert usage.output_tokens == 0

    def test_nested_usage_in_result(self):
        usage = _extract_claude_usage({"result": {"usage": {"output_tokens": 9}}})
        assert usage.output_tokens == 9

    def test_malformed_usage_payload_is_safe(self):
        assert _extract_claude_usage({"usage": "garbage"}) is None


def test_run_streams_prompt_and_writes_logs(monkeypatch, tmp_path: Path):
    captured: dict = {}

    def fake_execute(**kwargs):
        captured.update(kwargs)
        kwargs["on_stdout_line"](
            _line(
                {
                    "type": "assistant",
                    "message": {"content": [{"type": "thinking", "thinking": "plan it"}]},
                }
            )
        )
        kwargs["on_stdout_line"](
            _line({"type": "result", "result": "ok", "usage": {"output_tokens": 5}})
        )
        return StreamExecutionResult(raw_lines=[], stderr_lines=[], exit_code=0, timed_out=False)

    monkeypatch.setattr(claude_module, "execute_streaming_command", fake_execute)
    logs = AgentLogPaths.for_step(tmp_path / "logs", 1, "plan")

    result = ClaudeCodeRunner().run(tmp_path, "PROMPT", command="plan", logs=logs)

    assert result.success
    assert result.usage.output_tokens == 5
    assert captured["stdin_text"] == "PROMPT"
    assert "/project:plan" in captured["cmd"]
    assert "plan it" in logs.reasoning.read_text(encoding="utf-8")
    assert logs.raw_json.read_text(encoding="utf-8").count("\n") == 2


def test_run_reports_missing_repo(tmp_path: Path):
    logs = AgentLogPaths.for_step(tmp_path / "logs", 1, "plan")
    result = ClaudeCodeRunner().run(tmp_path / "nope", "p", command="plan", logs=logs)
    assert result.exit_code == -1
    assert "does not exist" in result.errors[0]
