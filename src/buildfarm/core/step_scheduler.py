"""Ordered, fail-fast execution of pipeline steps."""

import logging
from collections.abc import Sequence

from ..models import FilterSet, PipelineOutcome, StepResult, StepSpec
from ..services.commands import CommandError
from .run_context import RunContext

logger = logging.getLogger(__name__)


class StepScheduler:
    """Runs a pipeline in order and stops at the first failing step.

    A group step applies the same contract to its children: the group's own
    filter and predicate gate every child, and the children run inside the
    group's scope.
    """

    def wanted(self, step: StepSpec, filters: FilterSet, ctx: RunContext) -> bool:
        if not filters.wants(step.name):
            return False
        if not all(filters.wants(name) for name in step.requires):
            return False
        return step.predicate(ctx)

    def run(
        self,
        pipeline: Sequence[StepSpec],
        filters: FilterSet,
        ctx: RunContext,
        completed: list[str] | None = None,
    ) -> PipelineOutcome:
        """Execute a pipeline.

        Args:
            pipeline: Steps in execution order
            filters: Skip/only filters
            ctx: Run context handed to predicates and actions
            completed: List that successful step labels are appended to

        Returns:
            PipelineOutcome naming the failed stage, if any
        """
        outcome = PipelineOutcome(completed=completed if completed is not None else [])
        self._run_steps(pipeline, filters, ctx, outcome)
        return outcome

    def _run_steps(
        self,
        steps: Sequence[StepSpec],
        filters: FilterSet,
        ctx: RunContext,
        outcome: PipelineOutcome,
    ) -> bool:
        for step in steps:
            if not self.wanted(step, filters, ctx):
                logger.debug(f"Skipping {step.stage}")
                continue
            if step.is_group:
                with step.scope(ctx):
                    if not self._run_steps(step.children, filters, ctx, outcome):
                        return False
                continue
            if not self._execute(step, ctx, outcome):
                return False
        return True

    def _execute(self, step: StepSpec, ctx: RunContext, outcome: PipelineOutcome) -> bool:
        label = step.stage
        logger.info(f"running {label} ...")
        if step.action is None:
            raise ValueError(f"step {label} has neither an action nor children")
        try:
            result = step.action(ctx)
        except (CommandError, OSError) as e:
            result = StepResult(status=1, log=[f"{e}\n"])

        ctx.logs.write(label, result.log)
        if ctx.verbose > 1:
            logger.debug(f"======== {label} log ===========\n{''.join(result.log)}")

        if not result.passed:
            logger.info(f"{label} failed with status {result.status}")
            outcome.failed_stage = label
            outcome.result = result
            return False
        if step.record:
            outcome.completed.append(label)
        return True
