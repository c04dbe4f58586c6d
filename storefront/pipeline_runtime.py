from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger("storefront.pipeline")

StepFn = Callable[[object], None]
StepGuard = Callable[[object], bool]


@dataclass
class PipelineStep:
    """One named stage of the chat pipeline.

    skip_if is evaluated right before the step, after earlier steps have
    mutated the context. always_run steps ignore skip_if.
    """
    name: str
    fn: StepFn
    skip_if: Optional[StepGuard] = None
    always_run: bool = False

    def should_skip(self, context: object) -> bool:
        if self.always_run or self.skip_if is None:
            return False
        return bool(self.skip_if(context))


@dataclass
class StepRecord:
    name: str
    status: str
    elapsed_ms: float = 0.0


class StepRunner:
    """Runs PipelineSteps in order against a shared mutable context."""

    def __init__(self, steps: List[PipelineStep]) -> None:
        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate pipeline step names: {names}")
        self._steps = list(steps)

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self._steps]

    def run(self, context: object) -> List[StepRecord]:
        """Purpose: Execute every step once, in order, honoring skip rules.
        Inputs/Outputs: Input is the mutable context; output is one StepRecord per
            step with status "ran" or "skipped".
        Failure Modes: A failing step is logged and its exception propagates; later
            steps do not run.
        If Removed: The chat agent's steps never execute.
        Testing Notes: Combine skip_if and always_run on simple recording steps.
        """
        # skip_if is checked lazily so earlier steps can influence it.
        records: List[StepRecord] = []
        for step in self._steps:
            if step.should_skip(context):
                records.append(StepRecord(step.name, "skipped"))
                logger.debug("step=%s skipped", step.name)
                continue
            started = time.perf_counter()
            try:
                step.fn(context)
            except Exception:
                logger.error("step=%s raised", step.name)
                raise
            elapsed = (time.perf_counter() - started) * 1000
            records.append(StepRecord(step.name, "ran", round(elapsed, 2)))
            logger.debug("step=%s elapsed_ms=%.2f", step.name, elapsed)
        return records
