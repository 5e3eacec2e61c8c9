"""Static checks for a project's pipeline definitions (``cat-herder validate``)."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from cat_herder.agent_runner import list_agents
from cat_herder.config import PipelineStep, ProjectConfig, find_config_file
from cat_herder.pipeline.prompt_builder import command_file_candidates

logger = logging.getLogger(__name__)


def _format_validation_error(exc: ValidationError) -> list[str]:
    problems: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        problems.append(f"{location or 'config'}: {error.get('msg', 'invalid value')}")
    return problems


def _validate_step(pipeline: str, index: int, step: PipelineStep, project_root: Path) -> list[str]:
    where = f"pipelines.{pipeline}[{index}] ({step.name or '?'})"
    problems: list[str] = []
    if not step.name.strip():
        problems.append(f"{where}: step name must not be empty")
    if not step.command.strip():
        problems.append(f"{where}: command must not be empty")
        return problems
    candidates = command_file_candidates(project_root, step.command)
    if not any(path.is_file() for path in candidates):
        searched = ", ".join(str(path) for path in candidates)
        problems.append(
            f"{where}: instructions for command '{step.command}' not found (looked in {searched})"
        )
    if step.file_access is not None:
        for pattern in step.file_access.allow_write:
            if not pattern.strip():
                problems.append(f"{where}: fileAccess.allowWrite contains an empty pattern")
    return problems


def validate_pipelines(config: ProjectConfig) -> list[str]:
    """Return human-readable problems with *config*'s pipelines; empty when valid."""
    problems: list[str] = []
    if not config.pipelines:
        return ["No pipelines are defined in the configuration."]
    if config.default_pipeline and config.default_pipeline not in config.pipelines:
        problems.append(
            f"defaultPipeline '{config.default_pipeline}' is not defined in pipelines "
            f"(available: {', '.join(sorted(config.pipelines))})"
        )
    if config.agent not in list_agents():
        problems.append(
            f"agent '{config.agent}' is not a known agent (available: {', '.join(list_agents())})"
        )

    for name, steps in config.pipelines.items():
        if not steps:
            problems.append(f"pipelines.{name}: pipeline has no steps")
            continue
        seen: set[str] = set()
        for index, step in enumerate(steps):
            if step.name in seen:
                problems.append(f"pipelines.{name}: duplicate step name '{step.name}'")
            seen.add(step.name)
            problems.extend(_validate_step(name, index, step, config.project_root))

    for problem in problems:
        logger.debug("Validation problem: %s", problem)
    return problems


def validate_config_file(path: str | Path | None = None) -> list[str]:
    """Load the config at *path* (or the discovered one) and validate it.

    Schema errors are reported as problems instead of being raised.
    """
    config_path = Path(path).resolve() if path else find_config_file()
    if config_path is None or not config_path.is_file():
        return ["No cat-herder config file found."]
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        return [f"Could not read config {config_path}: {exc}"]
    if not isinstance(raw, dict):
        return [f"Config {config_path} must be a mapping at the top level."]
    try:
        config = ProjectConfig.model_validate(raw)
    except ValidationError as exc:
        return _format_validation_error(exc)
    config.project_root = config_path.parent
    return validate_pipelines(config)
