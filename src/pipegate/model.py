# model.py
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

if TYPE_CHECKING:
    from .conditions import Condition, OutputRef


# ---------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------

class EventKind(str, Enum):
    PUSH = "push"              # push to any branch (also tags, pull requests)
    PUSH_MAIN = "push-main"    # push to the release branch of the canonical repo


@dataclass(frozen=True)
class Event:
    """A resolved trigger event. Created by `triggers.resolve`, consumed once."""
    kind: EventKind
    ref: str
    repository: str = ""
    actor: str = ""
    sha: Optional[str] = None

    @property
    def branch(self) -> Optional[str]:
        if self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        return None


# ---------------------------------------------------------------------
# Definitions (static, loaded once)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Secret:
    """Placeholder for a credential value; resolved only inside a job that is granted it."""
    name: str

    def __str__(self) -> str:
        return f"<secret:{self.name}>"


@dataclass(frozen=True)
class Step:
    """A single action invocation inside a job."""
    name: str
    action: str = "run"
    params: Mapping[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    condition: Optional["Condition"] = None
    env: Mapping[str, Any] = field(default_factory=dict)
    # Output names a generic `run` step promises to write to $PIPEGATE_OUTPUT.
    outputs: tuple[str, ...] = ()
    cwd: Optional[str] = None


@dataclass(frozen=True)
class CacheSpec:
    """
    Job-level cache: restored before the first step, saved after the last one.

    key = "{prefix}-{partition}-{hash(key_files)}"
    partition defaults to the job id.
    """
    paths: tuple[str, ...]
    key_files: tuple[str, ...] = ()
    prefix: str = "v0"
    partition: Optional[str] = None
    keep: int = 3


@dataclass(frozen=True)
class Job:
    """
    A CI job: steps + dependencies + condition + the credentials it may receive.

    `outputs` maps an exported name to a step output, e.g.
        {"release_created": step_output("release", "release_created")}
    """
    id: str
    steps: tuple[Step, ...]
    needs: tuple[str, ...] = ()
    condition: Optional["Condition"] = None
    permissions: frozenset[str] = frozenset()
    outputs: Mapping[str, "OutputRef"] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    cache: Optional[CacheSpec] = None
    title: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.title or self.id


@dataclass(frozen=True)
class Pipeline:
    """A statically declared DAG of jobs, bound to one trigger kind."""
    name: str
    jobs: tuple[Job, ...]
    trigger: EventKind = EventKind.PUSH
    # Pipelines that must succeed for the same event before this one starts.
    requires: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def job_map(self) -> Dict[str, Job]:
        return {j.id: j for j in self.jobs}

    def applies_to(self, event: Event) -> bool:
        # `push` pipelines run on every push, main included.
        return self.trigger is EventKind.PUSH or self.trigger is event.kind


# ---------------------------------------------------------------------
# Results (owned by the executor)
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SKIPPED = "skipped"
    BLOCKED = "blocked"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {JobStatus.SKIPPED, JobStatus.BLOCKED, JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED}
)


@dataclass
class JobResult:
    job: str
    status: JobStatus = JobStatus.PENDING
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    reason: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def start(self, now: Optional[float] = None) -> None:
        if self.status is not JobStatus.PENDING:
            raise RuntimeError(f"job '{self.job}' cannot start from status {self.status.value}")
        self.status = JobStatus.RUNNING
        self.started_at = time.time() if now is None else now

    def finish(
        self,
        status: JobStatus,
        *,
        outputs: Optional[Mapping[str, Any]] = None,
        error: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[float] = None,
    ) -> None:
        if self.terminal:
            raise RuntimeError(f"job '{self.job}' is already {self.status.value}")
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is not a terminal status")
        self.status = status
        self.outputs = dict(outputs or {})
        self.error = error
        self.reason = reason
        self.finished_at = time.time() if now is None else now
        if self.started_at is None:
            self.started_at = self.finished_at


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PipelineRun:
    pipeline: str
    event: Event
    results: Dict[str, JobResult]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    cancelled: bool = False

    @property
    def status(self) -> RunStatus:
        statuses = [r.status for r in self.results.values()]
        if self.cancelled or JobStatus.CANCELLED in statuses:
            return RunStatus.CANCELLED
        if any(s not in TERMINAL_STATUSES for s in statuses):
            return RunStatus.RUNNING
        if all(s in (JobStatus.SUCCEEDED, JobStatus.SKIPPED) for s in statuses):
            return RunStatus.SUCCEEDED
        return RunStatus.FAILED

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass
class TriggeredRun:
    """Every pipeline run started by one event."""
    event: Event
    granted: frozenset[str]
    runs: List[PipelineRun] = field(default_factory=list)

    @property
    def status(self) -> RunStatus:
        statuses = [r.status for r in self.runs]
        if RunStatus.CANCELLED in statuses:
            return RunStatus.CANCELLED
        if RunStatus.FAILED in statuses:
            return RunStatus.FAILED
        if RunStatus.RUNNING in statuses:
            return RunStatus.RUNNING
        return RunStatus.SUCCEEDED

    def run_for(self, pipeline: str) -> Optional[PipelineRun]:
        for r in self.runs:
            if r.pipeline == pipeline:
                return r
        return None
