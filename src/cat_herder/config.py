"""Project configuration: pipelines, step definitions, and run settings.

The config lives in a YAML file at the project root (``cat-herder.yaml``,
``cat-herder.yml`` or ``.cat-herder.yaml``), found by walking up from the
working directory, or at the path named by ``CAT_HERDER_CONFIG``.  Keys may
be written camelCase or snake_case.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from cat_herder.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("cat-herder.yaml", "cat-herder.yml", ".cat-herder.yaml")
CONFIG_ENV_VAR = "CAT_HERDER_CONFIG"

CheckType = Literal["none", "fileExists", "shell"]


class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class CheckSpec(_ConfigModel):
    """One validation rule run after a step's agent finishes."""

    type: CheckType = "none"
    path: str | None = None
    command: str | None = None
    expect: Literal["pass", "fail"] = "pass"

    @model_validator(mode="after")
    def _require_type_fields(self) -> CheckSpec:
        if self.type == "fileExists" and not (self.path or "").strip():
            raise ValueError("fileExists check requires 'path'")
        if self.type == "shell" and not (self.command or "").strip():
            raise ValueError("shell check requires 'command'")
        return self


class FileAccess(_ConfigModel):
    allow_write: list[str] = Field(default_factory=list)


class PipelineStep(_ConfigModel):
    """A single step: which command the agent runs and how success is judged."""

    name: str
    command: str
    check: CheckSpec | list[CheckSpec] = Field(default_factory=CheckSpec)
    retry: int = Field(default=0, ge=0)
    model: str | None = None
    file_access: FileAccess | None = None

    @property
    def checks(self) -> list[CheckSpec]:
        return list(self.check) if isinstance(self.check, list) else [self.check]


class ProjectConfig(_ConfigModel):
    """Settings shared by every task and sequence in a project."""

    task_folder: str = "cat-herder-tasks"
    state_path: str = "~/.cat-herder/state"
    logs_path: str = "~/.cat-herder/logs"
    journal_path: str | None = None
    manage_git_branch: bool = True
    auto_commit: bool = False
    wait_for_rate_limit_reset: bool = False
    autonomy_level: int = Field(default=0, ge=0, le=5)
    base_branch: str = "main"
    agent: str = "claude_code"
    agent_binary: str | None = None
    # Inactivity timeout for one agent run in seconds; 0 disables it.
    agent_timeout: int = Field(default=600, ge=0)
    pipelines: dict[str, list[PipelineStep]] = Field(default_factory=dict)
    default_pipeline: str | None = None

    # Set by load_config, never read from the file.
    project_root: Path = Field(default_factory=Path.cwd, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_pipeline(cls, data: Any) -> Any:
        if isinstance(data, dict) and "pipeline" in data:
            data = dict(data)
            legacy = data.pop("pipeline")
            data.setdefault("pipelines", {"default": legacy})
            data.setdefault("defaultPipeline", "default")
        return data

    # ------------------------------------------------------------------
    # Path resolution
    # ------------------------------------------------------------------

    def _resolve(self, raw: str) -> Path:
        path = Path(os.path.expanduser(raw))
        if not path.is_absolute():
            path = self.project_root / path
        return path.resolve()

    @property
    def state_dir(self) -> Path:
        return self._resolve(self.state_path)

    @property
    def logs_dir(self) -> Path:
        return self._resolve(self.logs_path)

    @property
    def journal_file(self) -> Path:
        if self.journal_path:
            return self._resolve(self.journal_path)
        return self.state_dir / "run-journal.jsonl"

    @property
    def task_dir(self) -> Path:
        return self._resolve(self.task_folder)

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def resolve_pipeline_name(self, requested: str | None = None) -> str:
        """Pick a pipeline: *requested* > ``default_pipeline`` > first defined."""
        if not self.pipelines:
            raise ConfigError("No pipelines are defined in the configuration.")
        if requested:
            if requested not in self.pipelines:
                available = ", ".join(sorted(self.pipelines))
                raise ConfigError(
                    f"Pipeline '{requested}' not found in config. Available pipelines: {available}"
                )
            return requested
        if self.default_pipeline:
            if self.default_pipeline not in self.pipelines:
                raise ConfigError(
                    f"defaultPipeline '{self.default_pipeline}' is not defined in pipelines."
                )
            return self.default_pipeline
        return next(iter(self.pipelines))

    def get_pipeline(self, name: str) -> list[PipelineStep]:
        return self.pipelines[self.resolve_pipeline_name(name)]


def find_config_file(start: str | Path | None = None) -> Path | None:
    """Return the config named by ``CAT_HERDER_CONFIG`` or the nearest config file above *start*."""
    override = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if override:
        path = Path(os.path.expanduser(override)).resolve()
        return path if path.is_file() else None
    current = Path(start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        for name in CONFIG_FILENAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None


def load_config(path: str | Path | None = None, *, start: str | Path | None = None) -> ProjectConfig:
    """Load and validate the project config.

    Raises :class:`ConfigError` when no file is found or it does not parse.
    """
    config_path = Path(path).resolve() if path else find_config_file(start)
    if config_path is None or not config_path.is_file():
        raise ConfigError(
            "No cat-herder config found. Create cat-herder.yaml at the project root "
            f"or point {CONFIG_ENV_VAR} at one."
        )
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not read config {config_path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Config {config_path} must be a mapping at the top level.")
    try:
        config = ProjectConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config {config_path}:\n{exc}") from exc
    config.project_root = config_path.parent
    logger.debug("Loaded config %s", config_path)
    return config
