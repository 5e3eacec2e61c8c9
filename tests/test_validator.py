"""Tests for ``cat-herder validate`` pipeline checks."""

from __future__ import annotations

from pathlib import Path

import pytest

from cat_herder.config import FileAccess
from cat_herder.pipeline.validator import validate_config_file, validate_pipelines

pytestmark = pytest.mark.unit


def test_valid_project_has_no_problems(project) -> None:
    assert validate_pipelines(project) == []


def test_missing_instruction_file_is_reported(project) -> None:
    (project.project_root / ".cat-herder" / "steps" / "docs.md").unlink()

    problems = validate_pipelines(project)

    assert len(problems) == 1
    assert problems[0].startswith("pipelines.docs[0] (docs): instructions for command 'docs'")


def test_pipeline_level_problems(project) -> None:
    project.default_pipeline = "release"
    project.agent = "nope"
    project.pipelines["empty"] = []
    project.pipelines["default"].append(project.pipelines["default"][0])

    problems = validate_pipelines(project)

    assert any("defaultPipeline 'release' is not defined" in p for p in problems)
    assert any("agent 'nope' is not a known agent" in p for p in problems)
    assert "pipelines.empty: pipeline has no steps" in problems
    assert "pipelines.default: duplicate step name 'plan'" in problems


def test_no_pipelines(project) -> None:
    project.pipelines = {}
    assert validate_pipelines(project) == ["No pipelines are defined in the configuration."]


def test_empty_allow_write_pattern(project) -> None:
    project.pipelines["docs"][0].file_access = FileAccess(allow_write=["docs/**", " "])

    assert validate_pipelines(project) == [
        "pipelines.docs[0] (docs): fileAccess.allowWrite contains an empty pattern"
    ]


def test_validate_config_file_reports_schema_errors(tmp_path: Path) -> None:
    config = tmp_path / "cat-herder.yaml"
    config.write_text(
        "pipelines:\n  default:\n    - name: plan\n      retry: -1\n",
        encoding="utf-8",
    )

    problems = validate_config_file(config)

    assert any(p.startswith("pipelines.default.0.command") for p in problems)
    assert any(p.startswith("pipelines.default.0.retry") for p in problems)


def test_validate_config_file_checks_instructions_relative_to_config(tmp_path: Path) -> None:
    config = tmp_path / "cat-herder.yaml"
    config.write_text(
        "pipelines:\n  default:\n    - name: plan\n      command: plan\n",
        encoding="utf-8",
    )
    assert len(validate_config_file(config)) == 1

    steps = tmp_path / ".claude" / "commands"
    steps.mkdir(parents=True)
    (steps / "plan.md").write_text("Plan it.", encoding="utf-8")
    assert validate_config_file(config) == []


def test_validate_config_file_handles_bad_yaml_and_missing_file(tmp_path: Path) -> None:
    bad = tmp_path / "cat-herder.yaml"
    bad.write_text("pipelines: [unclosed\n", encoding="utf-8")

    assert validate_config_file(bad)[0].startswith("Could not read config")
    assert validate_config_file(tmp_path / "missing.yaml") == ["No cat-herder config file found."]
