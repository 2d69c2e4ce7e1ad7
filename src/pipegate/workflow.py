# workflow.py
from __future__ import annotations

import runpy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Set

from .actions import ActionRegistry, default_registry
from .conditions import NEEDS, STEPS, Condition
from .dag import job_waves, pipeline_order
from .errors import ConfigError
from .model import EventKind, Job, Pipeline
from .triggers import TriggerPolicy

DEFAULT_WORKFLOW_FILE = "pipegate_workflow.py"


@dataclass(frozen=True)
class Workflow:
    """A validated set of pipelines plus the trigger policy that goes with them."""
    pipelines: tuple[Pipeline, ...]
    policy: TriggerPolicy
    # pipeline name -> waves of job ids
    waves: Mapping[str, List[List[str]]] = field(default_factory=dict)
    # pipeline names, every pipeline after the ones it requires
    order: tuple[str, ...] = ()
    path: Optional[Path] = None

    def pipeline(self, name: str) -> Pipeline:
        for p in self.pipelines:
            if p.name == name:
                return p
        raise KeyError(name)

    def ordered(self, names: Iterable[str]) -> List[Pipeline]:
        wanted = set(names)
        return [self.pipeline(n) for n in self.order if n in wanted]


# ----------------------------------------------------------------------
# Validation (runs once, at load)
# ----------------------------------------------------------------------

def _check_condition(
    cond: Condition,
    where: str,
    jobs: Mapping[str, Job],
    needs: Iterable[str],
    step_outputs: Optional[Mapping[str, Set[str]]],
) -> None:
    needs = set(needs)
    for job_id in cond.jobs():
        if job_id not in needs:
            raise ConfigError(f"{where}: condition tests job '{job_id}', which is not in needs {sorted(needs)}")

    for ref in cond.refs():
        if ref.scope == NEEDS:
            if ref.source not in needs:
                raise ConfigError(f"{where}: condition reads {ref}, but '{ref.source}' is not in needs {sorted(needs)}")
            if ref.name not in jobs[ref.source].outputs:
                raise ConfigError(
                    f"{where}: condition reads {ref}, but job '{ref.source}' declares outputs "
                    f"{sorted(jobs[ref.source].outputs)}"
                )
        elif ref.scope == STEPS:
            if step_outputs is None:
                raise ConfigError(f"{where}: a job condition cannot read step outputs ({ref})")
            if ref.source not in step_outputs:
                raise ConfigError(f"{where}: condition reads {ref}, but no earlier step has id '{ref.source}'")
            if ref.name not in step_outputs[ref.source]:
                raise ConfigError(
                    f"{where}: condition reads {ref}, but step '{ref.source}' declares outputs "
                    f"{sorted(step_outputs[ref.source])}"
                )


def _validate_job(p: Pipeline, job: Job, registry: ActionRegistry) -> None:
    where = f"{p.name}/{job.id}"
    if not job.steps:
        raise ConfigError(f"{where}: job has no steps")

    jobs = p.job_map
    if job.condition is not None:
        _check_condition(job.condition, where, jobs, job.needs, None)

    seen: Dict[str, Set[str]] = {}
    for s in job.steps:
        registry.get(s.action)  # raises ConfigError for unknown actions
        if s.condition is not None:
            _check_condition(s.condition, f"{where} step '{s.name}'", jobs, job.needs, seen)
        if s.id is not None:
            if s.id in seen:
                raise ConfigError(f"{where}: duplicate step id '{s.id}'")
            seen[s.id] = registry.declared_outputs(s)

    for name, ref in job.outputs.items():
        if ref.scope != STEPS:
            raise ConfigError(f"{where}: job output '{name}' must come from one of its steps, got {ref}")
        if ref.source not in seen:
            raise ConfigError(f"{where}: job output '{name}' reads unknown step id '{ref.source}'")
        if ref.name not in seen[ref.source]:
            raise ConfigError(
                f"{where}: job output '{name}' reads {ref}, but step '{ref.source}' declares outputs "
                f"{sorted(seen[ref.source])}"
            )


def validate(
    pipelines: Iterable[Pipeline],
    policy: Optional[TriggerPolicy] = None,
    *,
    registry: Optional[ActionRegistry] = None,
    path: Optional[Path] = None,
) -> Workflow:
    """
    Check every static invariant; raise ConfigError (or CycleDetected) on the first violation.

      - unique pipeline names, `requires` exist and are acyclic
      - a required pipeline runs for every event its dependent runs for
      - unique job ids, `needs` exist and are acyclic
      - conditions only read declared outputs of jobs in `needs` / earlier steps
      - job outputs come from declared step outputs
      - every step action is registered
    """
    pipelines = tuple(pipelines)
    registry = registry or default_registry()
    for p in pipelines:
        if not isinstance(p, Pipeline):
            raise ConfigError(f"Expected Pipeline objects, got {type(p).__name__}")

    order = pipeline_order(pipelines)
    by_name = {p.name: p for p in pipelines}

    waves: Dict[str, List[List[str]]] = {}
    for p in pipelines:
        for req in p.requires:
            required = by_name[req]
            if required.trigger is not EventKind.PUSH and required.trigger is not p.trigger:
                raise ConfigError(
                    f"Pipeline '{p.name}' (on {p.trigger.value}) requires '{req}', "
                    f"which only runs on {required.trigger.value}"
                )
        waves[p.name] = job_waves(p)
        for j in p.jobs:
            _validate_job(p, j, registry)

    return Workflow(
        pipelines=pipelines,
        policy=policy or TriggerPolicy(),
        waves=waves,
        order=tuple(order),
        path=path,
    )


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path, *, registry: Optional[ActionRegistry] = None) -> Workflow:
    """
    Load and validate a workflow from a python file path.

    The file must define either:
      - pipelines() -> List[Pipeline]
      - PIPELINES = [Pipeline, ...]
    and may define:
      - POLICY = TriggerPolicy(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ConfigError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"pipegate_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if "pipelines" in globals_dict and callable(globals_dict["pipelines"]):
        pipelines = globals_dict["pipelines"]()
    elif "PIPELINES" in globals_dict:
        pipelines = globals_dict["PIPELINES"]
    else:
        raise ConfigError(
            f"{wf_path.name} defines no pipelines. "
            "Define pipelines() -> List[Pipeline] or PIPELINES = [Pipeline, ...]."
        )

    if not isinstance(pipelines, (list, tuple)) or not all(isinstance(p, Pipeline) for p in pipelines):
        raise ConfigError("Workflow must return/define a list of Pipeline objects.")

    policy = globals_dict.get("POLICY")
    if policy is not None and not isinstance(policy, TriggerPolicy):
        raise ConfigError(f"POLICY must be a TriggerPolicy, got {type(policy).__name__}")

    return validate(pipelines, policy, registry=registry, path=wf_path)
