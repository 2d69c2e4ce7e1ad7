# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .actions.cache import cache_restore_step, cache_save_step
from .actions.checkout import checkout_step
from .actions.lint import lint_step
from .actions.publish import publish_step
from .actions.release import release_step
from .actions.test import test_step
from .actions.toolchain import toolchain_step
from .conditions import (
    NEEDS,
    STEPS,
    AllOf,
    Always,
    AnyOf,
    Condition,
    Equals,
    Not,
    OutputRef,
    Skipped,
    Succeeded,
    Truthy,
)
from .model import CacheSpec, EventKind, Job, Pipeline, Secret, Step
from .triggers import TriggerPolicy


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    env: Optional[Mapping[str, Any]] = None,
    outputs: Sequence[str] = (),
    condition: Condition | None = None,
) -> Step:
    """Shell step. `outputs` lists the names the command writes to $PIPEGATE_OUTPUT."""
    return Step(
        name=name,
        action="run",
        params={"run": cmd},
        id=id,
        cwd=cwd,
        env=dict(env or {}),
        outputs=tuple(outputs),
        condition=condition,
    )


def step(
    name: str,
    action: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    env: Optional[Mapping[str, Any]] = None,
    outputs: Sequence[str] = (),
    condition: Condition | None = None,
    **params: Any,
) -> Step:
    """Any registered action: step("Publish", "publish", command="twine upload dist/*", ...)."""
    return Step(
        name=name,
        action=action,
        params=params,
        id=id,
        cwd=cwd,
        env=dict(env or {}),
        outputs=tuple(outputs),
        condition=condition,
    )


def when(s: Step, condition: Condition) -> Step:
    """Attach a condition to an already built step."""
    return replace(s, condition=condition)


def secret(name: str) -> Secret:
    return Secret(name)


# ---------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------

def needs_output(job_id: str, name: str) -> OutputRef:
    return OutputRef(NEEDS, job_id, name)


def step_output(step_id: str, name: str) -> OutputRef:
    return OutputRef(STEPS, step_id, name)


def is_true(ref: OutputRef) -> Condition:
    return Truthy(ref)


def equals(ref: OutputRef, value: Any) -> Condition:
    return Equals(ref, value)


def succeeded(job_id: str) -> Condition:
    return Succeeded(job_id)


def skipped(job_id: str) -> Condition:
    return Skipped(job_id)


def not_(condition: Condition) -> Condition:
    return Not(condition)


def all_of(*conditions: Condition) -> Condition:
    return AllOf(tuple(conditions))


def any_of(*conditions: Condition) -> Condition:
    return AnyOf(tuple(conditions))


def always() -> Condition:
    return Always()


# ---------------------------------------------------------------------
# Jobs / pipelines
# ---------------------------------------------------------------------

def cache(
    *paths: str,
    key_files: Sequence[str] = (),
    prefix: str = "v0",
    partition: str | None = None,
    keep: int = 3,
) -> CacheSpec:
    return CacheSpec(paths=tuple(paths), key_files=tuple(key_files), prefix=prefix, partition=partition, keep=keep)


def job(
    id: str,
    *steps: Step,  # allow job("x", sh(...), sh(...))
    needs: Optional[Iterable[str]] = None,
    condition: Condition | None = None,
    permissions: Optional[Iterable[str]] = None,
    outputs: Optional[Mapping[str, OutputRef]] = None,
    env: Optional[Mapping[str, str]] = None,
    cache: CacheSpec | None = None,
    title: str | None = None,
    cwd: str | None = None,  # default cwd for steps
) -> Job:
    if not steps:
        raise ValueError(f"job({id!r}) must have at least one step")

    steps_final = list(steps)
    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        id=id,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        condition=condition,
        permissions=frozenset(permissions or ()),
        outputs=dict(outputs or {}),
        env={k: str(v) for k, v in (env or {}).items()},
        cache=cache,
        title=title,
    )


def pipeline(
    name: str,
    *jobs: Job,
    trigger: EventKind | str = EventKind.PUSH,
    requires: Optional[Iterable[str]] = None,
    env: Optional[Mapping[str, Any]] = None,
) -> Pipeline:
    if not jobs:
        raise ValueError(f"pipeline({name!r}) must have at least one job")
    return Pipeline(
        name=name,
        jobs=tuple(jobs),
        trigger=EventKind(trigger),
        requires=tuple(requires or ()),
        env={k: str(v) for k, v in (env or {}).items()},
    )


def policy(
    repository: str,
    *,
    main_branch: str = "main",
    read_credentials: Iterable[str] = (),
    release_credentials: Iterable[str] = (),
) -> TriggerPolicy:
    return TriggerPolicy(
        repository=repository,
        main_branch=main_branch,
        read_credentials=frozenset(read_credentials),
        release_credentials=frozenset(release_credentials),
    )


def workflow(*pipelines: Pipeline) -> List[Pipeline]:
    """
    Workflow definition helper.

        def pipelines():
            return workflow(
                pipeline("ci", ...),
                pipeline("release", ..., trigger="push-main", requires=["ci"]),
            )
    """
    return list(pipelines)


__all__ = [
    "sh",
    "step",
    "when",
    "secret",
    "needs_output",
    "step_output",
    "is_true",
    "equals",
    "succeeded",
    "skipped",
    "not_",
    "all_of",
    "any_of",
    "always",
    "cache",
    "job",
    "pipeline",
    "policy",
    "workflow",
    "cache_restore_step",
    "cache_save_step",
    "checkout_step",
    "lint_step",
    "publish_step",
    "release_step",
    "test_step",
    "toolchain_step",
]
