"""Run a task's pipeline steps in order, skipping steps already done."""

from __future__ import annotations

import datetime as dt
import logging
from pathlib import Path

from cat_herder.agent_runner import AgentLogPaths
from cat_herder.config import PipelineStep, ProjectConfig
from cat_herder.pipeline.prompt_builder import (
    assemble_prompt,
    load_command_instructions,
    parse_task_frontmatter,
    render_interaction_history,
)
from cat_herder.pipeline.step_runner import StepRequest, StepRunner
from cat_herder.schemas import Phase, TaskStatus, parse_iso, utc_from_timestamp
from cat_herder.state_store import StateStore

logger = logging.getLogger(__name__)

PLAN_STEP = "plan"
PLAN_FILE = "PLAN.md"


class PipelineRunner:
    """Executes one task's pipeline through a :class:`StepRunner`.

    Re-running a finished task is a no-op: every step already ``done`` is
    skipped without invoking the agent.  Step errors propagate unchanged.
    """

    def __init__(
        self,
        *,
        config: ProjectConfig,
        store: StateStore,
        step_runner: StepRunner,
        sequence_folder: str | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.step_runner = step_runner
        self.sequence_folder = sequence_folder

    def select_pipeline(self, task_path: Path, requested: str | None = None) -> str:
        """Option > task front matter > ``defaultPipeline`` > first pipeline."""
        if requested:
            return self.config.resolve_pipeline_name(requested)
        meta, _ = parse_task_frontmatter(task_path.read_text(encoding="utf-8"))
        from_task = meta.get("pipeline")
        return self.config.resolve_pipeline_name(str(from_task) if from_task else None)

    def run(
        self,
        task_path: Path,
        task_id: str,
        *,
        pipeline_name: str | None = None,
        branch: str = "",
        parent_sequence_id: str | None = None,
    ) -> TaskStatus:
        name = self.select_pipeline(task_path, pipeline_name)
        steps = self.config.pipelines[name]
        step_names = [step.name for step in steps]

        existing = self.store.read_task(task_id)
        if existing.is_complete(step_names) and existing.phase == Phase.DONE:
            logger.info("[pipeline] %s: all steps already done, nothing to run", task_id)
            return existing

        def _start(status: TaskStatus) -> None:
            if not status.task_id:
                status.task_id = task_id
                status.start_time = self._now().isoformat()
            status.task_path = str(task_path)
            status.pipeline = name
            status.parent_sequence_id = parent_sequence_id
            if branch:
                status.branch = branch
            for step_name in step_names:
                status.steps.setdefault(step_name, Phase.PENDING)
            status.set_phase(Phase.RUNNING)

        self.store.mutate_task(task_id, _start)
        logger.info("[pipeline] %s: running pipeline '%s' (%d steps)", task_id, name, len(steps))

        _, task_definition = parse_task_frontmatter(task_path.read_text(encoding="utf-8"))
        logs_dir = self.config.logs_dir / task_id
        for index, step in enumerate(steps, start=1):
            status = self.store.read_task(task_id)
            if status.steps.get(step.name) == Phase.DONE:
                logger.info("[pipeline] %s: skipping done step %s", task_id, step.name)
                continue
            context = self._build_context(steps, index, task_definition, status)
            prompt = assemble_prompt(
                steps,
                step.name,
                context,
                load_command_instructions(self.config.project_root, step.command),
                autonomy_level=self.config.autonomy_level,
                sequence_folder=self.sequence_folder,
            )
            self.step_runner.run(
                StepRequest(
                    task_id=task_id,
                    step=step,
                    prompt=prompt,
                    logs=AgentLogPaths.for_step(logs_dir, index, step.name),
                )
            )

        def _finish(status: TaskStatus) -> None:
            status.set_phase(Phase.DONE)
            status.current_step = ""
            start = parse_iso(status.start_time)
            if start is not None:
                status.stats.finalize(start, self._now())

        final = self.store.mutate_task(task_id, _finish)
        logger.info("[pipeline] %s: all steps done", task_id)
        return final

    def _now(self) -> dt.datetime:
        return utc_from_timestamp(self.step_runner.clock())

    def _build_context(
        self,
        steps: list[PipelineStep],
        index: int,
        task_definition: str,
        status: TaskStatus,
    ) -> dict[str, str]:
        context = {"taskDefinition": task_definition}
        plan_positions = [i for i, s in enumerate(steps, start=1) if s.name == PLAN_STEP]
        if plan_positions and index > plan_positions[0]:
            plan_path = self.config.project_root / PLAN_FILE
            if plan_path.is_file():
                context["planContent"] = plan_path.read_text(encoding="utf-8")
            else:
                logger.warning("[pipeline] %s not found after the plan step", plan_path)
        if status.interaction_history:
            context["interactionHistory"] = render_interaction_history(status.interaction_history)
        return context
