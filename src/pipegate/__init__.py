from .dsl import cache, job, needs_output, pipeline, policy, sh, step, step_output, workflow
from .model import Event, EventKind, Job, JobStatus, Pipeline, RunStatus, Step
from .runner import PipelineExecutor, run_event
from .triggers import RawEvent, TriggerPolicy, resolve
from .workflow import Workflow, load_workflow, validate

__all__ = [
    "cache",
    "job",
    "needs_output",
    "pipeline",
    "policy",
    "sh",
    "step",
    "step_output",
    "workflow",
    "Event",
    "EventKind",
    "Job",
    "JobStatus",
    "Pipeline",
    "RunStatus",
    "Step",
    "PipelineExecutor",
    "run_event",
    "RawEvent",
    "TriggerPolicy",
    "resolve",
    "Workflow",
    "load_workflow",
    "validate",
]
