"""
Job and step conditions.

A condition is a small tree of frozen dataclasses evaluated against typed
outputs. Nothing is ever parsed from a string, so a ref name or a commit
message can never change what a condition means.

    is_true(needs_output("release", "release_created"))
    succeeded("lint") & ~skipped("docs")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Optional

from .model import JobResult, JobStatus

NEEDS = "needs"
STEPS = "steps"


@dataclass(frozen=True)
class OutputRef:
    """Points at one output: of an upstream job (`needs`) or of an earlier step (`steps`)."""
    scope: str
    source: str
    name: str

    def __post_init__(self) -> None:
        if self.scope not in (NEEDS, STEPS):
            raise ValueError(f"OutputRef scope must be '{NEEDS}' or '{STEPS}', got {self.scope!r}")

    def __str__(self) -> str:
        return f"{self.scope}.{self.source}.outputs.{self.name}"


class ConditionContext:
    """What a condition may look at: upstream job results and this job's step outputs so far."""

    def __init__(
        self,
        results: Mapping[str, JobResult],
        steps: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ):
        self.results = results
        self.steps = steps or {}

    def lookup(self, ref: OutputRef) -> Any:
        if ref.scope == NEEDS:
            result = self.results.get(ref.source)
            if result is None:
                return None
            return result.outputs.get(ref.name)
        return self.steps.get(ref.source, {}).get(ref.name)

    def status_of(self, job_id: str) -> Optional[JobStatus]:
        result = self.results.get(job_id)
        return None if result is None else result.status


class Condition:
    def evaluate(self, ctx: ConditionContext) -> bool:
        raise NotImplementedError

    def refs(self) -> Iterator[OutputRef]:
        """Every output this condition reads."""
        return iter(())

    def jobs(self) -> Iterator[str]:
        """Every upstream job whose status this condition reads."""
        return iter(())

    def tests_skip(self) -> bool:
        """True if the condition explicitly handles a skipped dependency."""
        return False

    def __and__(self, other: "Condition") -> "Condition":
        return AllOf((self, other))

    def __or__(self, other: "Condition") -> "Condition":
        return AnyOf((self, other))

    def __invert__(self) -> "Condition":
        return Not(self)


@dataclass(frozen=True)
class Always(Condition):
    def evaluate(self, ctx: ConditionContext) -> bool:
        return True


@dataclass(frozen=True)
class Truthy(Condition):
    ref: OutputRef

    def evaluate(self, ctx: ConditionContext) -> bool:
        return bool(ctx.lookup(self.ref))

    def refs(self) -> Iterator[OutputRef]:
        yield self.ref


@dataclass(frozen=True)
class Equals(Condition):
    ref: OutputRef
    value: Any

    def evaluate(self, ctx: ConditionContext) -> bool:
        return ctx.lookup(self.ref) == self.value

    def refs(self) -> Iterator[OutputRef]:
        yield self.ref


@dataclass(frozen=True)
class Succeeded(Condition):
    job: str

    def evaluate(self, ctx: ConditionContext) -> bool:
        return ctx.status_of(self.job) is JobStatus.SUCCEEDED

    def jobs(self) -> Iterator[str]:
        yield self.job


@dataclass(frozen=True)
class Skipped(Condition):
    job: str

    def evaluate(self, ctx: ConditionContext) -> bool:
        return ctx.status_of(self.job) is JobStatus.SKIPPED

    def jobs(self) -> Iterator[str]:
        yield self.job

    def tests_skip(self) -> bool:
        return True


@dataclass(frozen=True)
class Not(Condition):
    inner: Condition

    def evaluate(self, ctx: ConditionContext) -> bool:
        return not self.inner.evaluate(ctx)

    def refs(self) -> Iterator[OutputRef]:
        return self.inner.refs()

    def jobs(self) -> Iterator[str]:
        return self.inner.jobs()

    def tests_skip(self) -> bool:
        return self.inner.tests_skip()


@dataclass(frozen=True)
class AllOf(Condition):
    items: tuple[Condition, ...]

    def evaluate(self, ctx: ConditionContext) -> bool:
        return all(c.evaluate(ctx) for c in self.items)

    def refs(self) -> Iterator[OutputRef]:
        for c in self.items:
            yield from c.refs()

    def jobs(self) -> Iterator[str]:
        for c in self.items:
            yield from c.jobs()

    def tests_skip(self) -> bool:
        return any(c.tests_skip() for c in self.items)


@dataclass(frozen=True)
class AnyOf(Condition):
    items: tuple[Condition, ...]

    def evaluate(self, ctx: ConditionContext) -> bool:
        return any(c.evaluate(ctx) for c in self.items)

    def refs(self) -> Iterator[OutputRef]:
        for c in self.items:
            yield from c.refs()

    def jobs(self) -> Iterator[str]:
        for c in self.items:
            yield from c.jobs()

    def tests_skip(self) -> bool:
        return any(c.tests_skip() for c in self.items)
