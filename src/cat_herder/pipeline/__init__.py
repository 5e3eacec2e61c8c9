"""Task execution engine.

A task runs through a pipeline of steps; each step hands its prompt to a
coding agent and is validated by a check before the next one starts::

    Sequence Runner -> Pipeline Runner -> Step Runner -> agent + check

Every transition is written to the state store first, so a run that is
interrupted (crash, Ctrl+C, rate limit, unanswered question) picks up at
the same step when it is started again.

Usage::

    from cat_herder.config import load_config
    from cat_herder.pipeline import Orchestrator

    orchestrator = Orchestrator(load_config())
    status = orchestrator.run_task("cat-herder-tasks/01-add-login.md")
"""

from cat_herder.pipeline.orchestrator import Orchestrator
from cat_herder.pipeline.pipeline_runner import PipelineRunner
from cat_herder.pipeline.sequence_runner import SequenceRunner
from cat_herder.pipeline.step_runner import AttemptInput, StepRequest, StepRunner

__all__ = [
    "AttemptInput",
    "Orchestrator",
    "PipelineRunner",
    "SequenceRunner",
    "StepRequest",
    "StepRunner",
]
