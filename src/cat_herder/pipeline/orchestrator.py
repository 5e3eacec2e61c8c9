"""Engine wiring: builds the runners for ``run`` and ``run-sequence``.

:class:`Orchestrator` owns the pieces shared by every task of a run (the
state store, the agent, the check evaluator, the git checkpoint and the
cancellation token) and journals each task's start and finish so a
restarted process can tell what was in flight.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from cat_herder.agent_runner import AgentRunner, get_agent_class
from cat_herder.cancellation import CancelToken
from cat_herder.check_runner import CheckEvaluator
from cat_herder.config import ProjectConfig
from cat_herder.errors import ConfigError, TaskInterrupted
from cat_herder.git_tools import GitCheckpoint
from cat_herder.ids import task_branch_name, task_id_for
from cat_herder.pipeline.interaction import HumanInputChannel
from cat_herder.pipeline.pipeline_runner import PipelineRunner
from cat_herder.pipeline.sequence_runner import SequenceRunner
from cat_herder.pipeline.step_runner import StepRunner
from cat_herder.schemas import JournalEventType, Phase, SequenceStatus, TaskStatus
from cat_herder.state_store import StateStore

logger = logging.getLogger(__name__)

InputChannelFactory = Callable[[StateStore, str], HumanInputChannel]

_SETTLED = frozenset({Phase.DONE, Phase.FAILED, Phase.INTERRUPTED})


def build_agent(config: ProjectConfig) -> AgentRunner:
    """Instantiate the agent runner registered under ``config.agent``."""
    try:
        agent_cls = get_agent_class(config.agent)
    except KeyError as exc:
        raise ConfigError(str(exc.args[0])) from exc
    if config.agent_binary:
        return agent_cls(config.agent_binary, timeout=config.agent_timeout)
    return agent_cls(timeout=config.agent_timeout)


class Orchestrator:
    """Runs single tasks and task sequences for one project.

    Parameters
    ----------
    config:
        Loaded project configuration; ``project_root`` is the working tree
        agents and checks run in.
    token:
        Root cancellation token.  Cancelling it interrupts the current step
        and leaves every record resumable.
    default_model:
        Model used for steps that do not name one.
    """

    def __init__(
        self,
        config: ProjectConfig,
        *,
        token: CancelToken | None = None,
        store: StateStore | None = None,
        agent: AgentRunner | None = None,
        checks: CheckEvaluator | None = None,
        git: GitCheckpoint | None = None,
        input_channel_factory: InputChannelFactory | None = None,
        default_model: str | None = None,
        clock: Callable[[], float] = time.time,
        sleeper: Callable[[float], bool] | None = None,
    ) -> None:
        self.config = config
        self.token = token or CancelToken()
        self.store = store or StateStore(config.state_dir, config.journal_file)
        self.agent = agent or build_agent(config)
        self.checks = checks or CheckEvaluator()
        self.git = git or GitCheckpoint(
            config.project_root,
            manage_branch=config.manage_git_branch,
            auto_commit=config.auto_commit,
            base_branch=config.base_branch,
        )
        self.input_channel_factory = input_channel_factory or HumanInputChannel.default
        self.default_model = default_model
        self.clock = clock
        self.sleeper = sleeper

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_task(self, task_path: str | Path, pipeline_name: str | None = None) -> TaskStatus:
        """Run one task on its own ``cat-herder/<name>`` branch."""
        path = self._resolve_task(task_path)
        task_id = task_id_for(path, self.config.project_root)
        branch = self.git.ensure_branch(task_branch_name(task_id))
        return self.execute_task(path, task_id=task_id, branch=branch, pipeline_name=pipeline_name)

    def run_sequence(self, folder: str | Path) -> SequenceStatus:
        return SequenceRunner(self).run(folder)

    def execute_task(
        self,
        task_path: str | Path,
        *,
        task_id: str | None = None,
        branch: str = "",
        pipeline_name: str | None = None,
        parent_sequence_id: str | None = None,
        sequence_folder: str | None = None,
    ) -> TaskStatus:
        """Run a task's pipeline on the current branch, journaling start and finish."""
        path = self._resolve_task(task_path)
        task_id = task_id or task_id_for(path, self.config.project_root)
        step_runner = StepRunner(
            store=self.store,
            agent=self.agent,
            checks=self.checks,
            input_channel=self.input_channel_factory(self.store, task_id),
            token=self.token,
            project_root=self.config.project_root,
            git=self.git,
            wait_for_rate_limit_reset=self.config.wait_for_rate_limit_reset,
            sequence_id=parent_sequence_id,
            default_model=self.default_model,
            clock=self.clock,
            sleeper=self.sleeper,
        )
        runner = PipelineRunner(
            config=self.config,
            store=self.store,
            step_runner=step_runner,
            sequence_folder=sequence_folder,
        )

        self.store.append_journal_event(
            JournalEventType.TASK_STARTED, task_id, parent_id=parent_sequence_id
        )
        outcome = Phase.FAILED
        try:
            status = runner.run(
                path,
                task_id,
                pipeline_name=pipeline_name,
                branch=branch,
                parent_sequence_id=parent_sequence_id,
            )
            outcome = status.phase
            return status
        except TaskInterrupted:
            outcome = Phase.INTERRUPTED
            logger.info("[pipeline] %s: interrupted; rerun to resume", task_id)
            raise
        except Exception:
            self._ensure_failed(task_id, path)
            raise
        finally:
            self.store.append_journal_event(
                JournalEventType.TASK_FINISHED,
                task_id,
                parent_id=parent_sequence_id,
                status=outcome.value,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_task(self, task_path: str | Path) -> Path:
        path = Path(task_path)
        if not path.is_absolute():
            path = Path.cwd() / path
        path = path.resolve()
        if not path.is_file():
            raise ConfigError(f"Task file not found: {path}")
        return path

    def _ensure_failed(self, task_id: str, task_path: Path) -> None:
        """Record a failure that happened outside any step (config or prompt errors)."""

        def _fail(status: TaskStatus) -> None:
            if not status.task_id:
                status.task_id = task_id
                status.task_path = str(task_path)
            if status.phase not in _SETTLED:
                status.set_phase(Phase.FAILED)

        self.store.mutate_task(task_id, _fail)
