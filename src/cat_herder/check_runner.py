"""Check evaluation: decide whether a step's work is acceptable."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

from cat_herder.config import CheckSpec
from cat_herder.schemas import CheckResult

logger = logging.getLogger(__name__)

DEFAULT_CHECK_TIMEOUT = 300


class CheckEvaluator:
    """Run ``none`` / ``fileExists`` / ``shell`` checks against a project.

    Parameters
    ----------
    timeout:
        Maximum seconds a single shell check may run.
    """

    def __init__(self, timeout: int = DEFAULT_CHECK_TIMEOUT) -> None:
        self.timeout = timeout

    def evaluate(
        self,
        checks: CheckSpec | Sequence[CheckSpec],
        cwd: str | Path,
    ) -> CheckResult:
        """Run *checks* in order; the first failure decides the result."""
        cwd = Path(cwd).resolve()
        specs = [checks] if isinstance(checks, CheckSpec) else list(checks)
        outputs: list[str] = []
        for spec in specs:
            result = self._evaluate_one(spec, cwd)
            if not result.success:
                return result
            if result.output:
                outputs.append(result.output)
        return CheckResult(success=True, output="\n".join(outputs))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _evaluate_one(self, spec: CheckSpec, cwd: Path) -> CheckResult:
        if spec.type == "none":
            return CheckResult(success=True)
        if spec.type == "fileExists":
            return self._file_exists(spec.path or "", cwd)
        return self._shell(spec.command or "", spec.expect, cwd)

    @staticmethod
    def _file_exists(raw_path: str, cwd: Path) -> CheckResult:
        path = Path(raw_path)
        if not path.is_absolute():
            path = cwd / path
        if path.exists():
            logger.info("Check passed: %s exists", raw_path)
            return CheckResult(success=True, output=f"File exists: {raw_path}")
        logger.info("Check failed: %s is missing", raw_path)
        return CheckResult(success=False, output=f"Check failed: File \"{raw_path}\" not found.")

    def _shell(self, command: str, expect: str, cwd: Path) -> CheckResult:
        """Run *command* with the system shell, honouring *expect*."""
        if not command.strip():
            return CheckResult(success=False, output="Check failed: empty shell command.")

        logger.info("Running check: %s (cwd=%s, expect=%s)", command, cwd, expect)
        try:
            proc = subprocess.run(
                command,
                shell=True,
                cwd=cwd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return CheckResult(
                success=False,
                output=f"Check command \"{command}\" timed out after {self.timeout}s",
            )

        combined = _summarise_output((proc.stdout + "\n" + proc.stderr).strip())
        passed = proc.returncode == 0
        if expect == "fail":
            if passed:
                return CheckResult(
                    success=False,
                    output=(
                        f"Check failed: \"{command}\" was expected to fail but exited 0.\n"
                        f"{combined}"
                    ).strip(),
                )
            return CheckResult(success=True, output=combined)
        if passed:
            return CheckResult(success=True, output=combined)
        return CheckResult(
            success=False,
            output=(
                f"Check failed: \"{command}\" exited with code {proc.returncode}.\n{combined}"
            ).strip(),
        )


def _summarise_output(text: str, max_lines: int = 60) -> str:
    """Truncate check output, keeping the head and the tail."""
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text
    head = lines[:20]
    tail = lines[-40:]
    skipped = len(lines) - 60
    return "\n".join([*head, f"  ... ({skipped} lines omitted) ...", *tail])
