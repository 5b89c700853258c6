"""Pipeline step models.

A pipeline is a fixed, ordered tuple of StepSpec objects. The scheduler
filters membership with a FilterSet and each step's predicate, runs the
survivors in order, and stops at the first failing StepResult.
"""

from collections.abc import Callable, Iterable
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Self

from pydantic import BaseModel, Field, model_validator

if TYPE_CHECKING:
    from ..core.run_context import RunContext


class StepResult(BaseModel):
    """Exit status and whole captured output of one executed step."""

    status: int = Field(description="Exit code (0 = success)")
    log: list[str] = Field(default_factory=list, description="Captured output lines")

    @property
    def passed(self) -> bool:
        return self.status == 0

    def extend(self, lines: Iterable[str]) -> None:
        self.log.extend(lines)


class FilterSet(BaseModel):
    """Mutually exclusive skip/only step-name sets.

    Names that don't match any step are accepted and simply never match.
    """

    skip: frozenset[str] = frozenset()
    only: frozenset[str] = frozenset()

    @model_validator(mode="after")
    def check_exclusive(self) -> Self:
        if self.skip and self.only:
            raise ValueError("only one of skip and only step sets allowed")
        return self

    @classmethod
    def from_strings(cls, skip: str = "", only: str = "") -> "FilterSet":
        """Build from whitespace-separated step lists."""
        return cls(skip=frozenset(skip.split()), only=frozenset(only.split()))

    def wants(self, name: str) -> bool:
        """Return True if a step with this name may run."""
        if self.only:
            return name in self.only
        return name not in self.skip


def _always(_ctx: "RunContext") -> bool:
    return True


def _no_scope(_ctx: "RunContext") -> AbstractContextManager[Any]:
    return nullcontext()


@dataclass(frozen=True)
class StepSpec:
    """One named, independently skippable unit of the pipeline.

    Attributes:
        name: Step vocabulary name used for skip/only filtering.
        action: Runs the step and returns its result. Unused for groups.
        predicate: Extra run condition evaluated against the run context.
        requires: Other step names that must also be wanted.
        children: Nested steps; a step with children is a group.
        scope: Context manager wrapped around a group's children.
        record: Whether success is appended to the completed sequence.
        label: Name used for logs and reporting (defaults to name).
    """

    name: str
    action: Callable[["RunContext"], StepResult] | None = None
    predicate: Callable[["RunContext"], bool] = _always
    requires: tuple[str, ...] = ()
    children: tuple["StepSpec", ...] = ()
    scope: Callable[["RunContext"], AbstractContextManager[Any]] = _no_scope
    record: bool = True
    label: str = ""

    @property
    def stage(self) -> str:
        return self.label or self.name

    @property
    def is_group(self) -> bool:
        return bool(self.children)


@dataclass
class PipelineOutcome:
    """How far a pipeline got.

    ``failed_stage`` and ``result`` are set only when a step failed.
    """

    completed: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    result: StepResult | None = None

    @property
    def succeeded(self) -> bool:
        return self.failed_stage is None
