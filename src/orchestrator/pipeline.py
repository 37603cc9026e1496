"""Ordered step pipeline with fatal and advisory steps.

Replaces ad hoc "ignore this failure" chaining. Each step is tagged:

- FATAL: an OrchestratorError stops the pipeline and propagates.
- ADVISORY: a failure is logged as a warning and the pipeline continues.

A step can also end the pipeline early and successfully by raising
StopPipeline (plan-only mode, a declined confirmation, nothing to do).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from .errors import OrchestratorError

logger = logging.getLogger(__name__)


class StepKind(str, Enum):
    FATAL = "fatal"
    ADVISORY = "advisory"


class StopPipeline(Exception):
    """Raised by a step to end the pipeline without error."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass
class Step:
    name: str
    action: Callable[[], None]
    kind: StepKind = StepKind.FATAL


@dataclass
class PipelineRun:
    """What happened when a pipeline ran."""

    completed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stopped_at: str | None = None
    stop_reason: str | None = None

    @property
    def stopped_early(self) -> bool:
        return self.stopped_at is not None


class Pipeline:
    """Runs steps strictly in order."""

    def __init__(self, name: str, steps: list[Step] | None = None) -> None:
        self.name = name
        self._steps: list[Step] = list(steps or [])

    def add(
        self, name: str, action: Callable[[], None], kind: StepKind = StepKind.FATAL
    ) -> Pipeline:
        self._steps.append(Step(name=name, action=action, kind=kind))
        return self

    def fatal(self, name: str, action: Callable[[], None]) -> Pipeline:
        return self.add(name, action, StepKind.FATAL)

    def advisory(self, name: str, action: Callable[[], None]) -> Pipeline:
        return self.add(name, action, StepKind.ADVISORY)

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self._steps]

    def run(self) -> PipelineRun:
        """Execute all steps.

        Raises:
            OrchestratorError: From the first failing FATAL step.
        """
        run = PipelineRun()
        for step in self._steps:
            logger.debug(
                "Running step",
                extra={"pipeline": self.name, "step": step.name, "kind": step.kind.value},
            )
            try:
                step.action()
            except StopPipeline as stop:
                run.completed.append(step.name)
                run.stopped_at = step.name
                run.stop_reason = stop.reason
                return run
            except OrchestratorError as e:
                if step.kind is StepKind.FATAL:
                    raise
                logger.warning(
                    "%s: %s",
                    step.name,
                    e.message,
                    extra={"pipeline": self.name, "step": step.name, "remediation": e.remediation},
                )
                run.warnings.append(step.name)
                continue
            run.completed.append(step.name)
        return run
