"""Prompt assembly for pipeline steps, retries, and resumptions."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import yaml

from cat_herder.config import PipelineStep
from cat_herder.errors import ConfigError
from cat_herder.runner_common import LOG_FOOTER_PREFIX, LOG_SEPARATOR
from cat_herder.schemas import Interaction

logger = logging.getLogger(__name__)

COMMAND_DIRS = (Path(".cat-herder") / "steps", Path(".claude") / "commands")

AUTONOMY_INTROS: dict[int, str] = {
    0: (
        "Work only from the instructions below. Do not ask questions; make reasonable "
        "assumptions and note them in your output."
    ),
    1: (
        "Work autonomously. Only ask the human (via the ask_human tool) when the task "
        "is impossible to complete without information you cannot discover yourself."
    ),
    2: (
        "Work mostly autonomously. Ask the human (via the ask_human tool) before making "
        "irreversible or architecture-level decisions."
    ),
    3: (
        "Ask the human (via the ask_human tool) whenever requirements are ambiguous or "
        "several reasonable approaches exist."
    ),
    4: (
        "Check in with the human (via the ask_human tool) before each significant change "
        "and whenever you are unsure."
    ),
    5: (
        "Collaborate closely with the human: confirm your plan and every non-trivial "
        "decision via the ask_human tool before acting on it."
    ),
}

CONTINUE_INSTRUCTION = (
    "Analyze the information above and continue executing the plan until this step is complete. "
    "Do not repeat work that is already done."
)


# ---------------------------------------------------------------------------
# Task files + command files
# ---------------------------------------------------------------------------


def parse_task_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split a ``---`` YAML front-matter block off a task file.

    Returns ``({}, content)`` when there is no front matter or it is not a
    mapping.
    """
    if not content.startswith("---"):
        return {}, content
    lines = content.splitlines(keepends=True)
    for index in range(1, len(lines)):
        if lines[index].strip() == "---":
            block = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            try:
                meta = yaml.safe_load(block) or {}
            except yaml.YAMLError as exc:
                logger.warning("Ignoring unparsable task front matter: %s", exc)
                return {}, content
            if not isinstance(meta, dict):
                return {}, content
            return meta, body.lstrip("\n")
    return {}, content


def command_file_candidates(project_root: Path, command: str) -> list[Path]:
    return [project_root / directory / f"{command}.md" for directory in COMMAND_DIRS]


def load_command_instructions(project_root: Path, command: str) -> str:
    """Read the instructions for *command* from the first command directory that has it."""
    for candidate in command_file_candidates(project_root, command):
        if candidate.is_file():
            return candidate.read_text(encoding="utf-8")
    searched = ", ".join(str(p) for p in command_file_candidates(project_root, command))
    raise ConfigError(f"Instructions for command '{command}' not found. Looked in: {searched}")


# ---------------------------------------------------------------------------
# Reasoning log recovery
# ---------------------------------------------------------------------------


def extract_previous_reasoning(reasoning_log: Path) -> str | None:
    """Return the latest run's reasoning from *reasoning_log*, or ``None``.

    Scans backward from the end of the file until the run separator,
    dropping footer lines.
    """
    try:
        text = reasoning_log.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None
    collected: list[str] = []
    for line in reversed(text.splitlines()):
        if line.strip() == LOG_SEPARATOR:
            break
        if line.startswith(LOG_FOOTER_PREFIX) or line.startswith("[debug"):
            continue
        collected.append(line)
    reasoning = "\n".join(reversed(collected)).strip()
    return reasoning or None


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------


def check_failure_feedback(instructions: str, check_output: str) -> str:
    return (
        "Your previous attempt did not pass the automated check.\n\n"
        "--- ORIGINAL INSTRUCTIONS ---\n"
        f"{instructions.strip()}\n"
        "--- END ORIGINAL INSTRUCTIONS ---\n\n"
        "--- ERROR OUTPUT ---\n"
        f"{check_output.strip()}\n"
        "--- END ERROR OUTPUT ---\n\n"
        "Fix the problems above so the check passes. Do not modify the tests or checks."
    )


def answer_feedback(question: str, answer: str) -> str:
    return (
        f'You previously asked: "{question}". The user responded: "{answer}". '
        "Continue your work based on this answer."
    )


def rate_limit_resume_feedback() -> str:
    return (
        "You are resuming an automated task that was interrupted by an API usage limit. "
        "The limit has now reset. Review the current state of the files and the previous "
        "actions log, then continue the step from where it stopped."
    )


def build_step_prompt(
    base_prompt: str,
    *,
    previous_reasoning: str | None = None,
    feedback: str | None = None,
) -> str:
    """Combine the step prompt with recovered reasoning and pending feedback."""
    parts = [base_prompt.rstrip()]
    if previous_reasoning:
        parts.append(
            "--- PREVIOUS ACTIONS LOG ---\n"
            "This step was started before. Your actions from the last run were:\n\n"
            f"{previous_reasoning}\n"
            "--- END PREVIOUS ACTIONS LOG ---"
        )
    if feedback:
        parts.append(f"--- FEEDBACK ---\n{feedback.strip()}\n--- END FEEDBACK ---")
    parts.append(CONTINUE_INSTRUCTION)
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Step prompt
# ---------------------------------------------------------------------------


def render_interaction_history(history: Sequence[Interaction]) -> str:
    lines = []
    for index, item in enumerate(history, start=1):
        lines.append(f"Q{index}: {item.question}\nA{index}: {item.answer}")
    return "\n\n".join(lines)


def assemble_prompt(
    pipeline: Sequence[PipelineStep],
    current_step: str,
    context: dict[str, str],
    command_instructions: str,
    *,
    autonomy_level: int = 0,
    sequence_folder: str | None = None,
) -> str:
    """Build the full prompt for *current_step* of *pipeline*.

    *context* maps section keys (``taskDefinition``, ``planContent``,
    ``interactionHistory``) to their text; empty sections are left out.
    """
    intro = "You are an autonomous software engineer executing one step of an automated pipeline."
    if sequence_folder:
        intro += (
            f" This task is part of a sequence; its task files live in {sequence_folder}. "
            "Only work on the current task."
        )
    autonomy = AUTONOMY_INTROS.get(autonomy_level, AUTONOMY_INTROS[0])
    overview = "\n".join(f"{i}. {step.name}" for i, step in enumerate(pipeline, start=1))

    sections = [
        intro,
        autonomy,
        f"The full pipeline is:\n{overview}",
        f'You are responsible for executing step "{current_step}" only.',
    ]
    for key, value in context.items():
        if value and value.strip():
            sections.append(f"--- {_section_title(key)} ---\n{value.strip()}")
    sections.append(
        f'--- YOUR INSTRUCTIONS FOR THE "{current_step.upper()}" STEP ---\n'
        f"{command_instructions.strip()}"
    )
    return "\n\n".join(sections)


def _section_title(key: str) -> str:
    words: list[str] = []
    current = ""
    for ch in key:
        if ch.isupper() and current:
            words.append(current)
            current = ch
        else:
            current += ch
    if current:
        words.append(current)
    return " ".join(words).upper()
