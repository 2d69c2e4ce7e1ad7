# runner.py
from __future__ import annotations

import os
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .actions import ActionRegistry, StepContext, default_registry
from .actions.base import OUTPUT_ENV
from .actions.cache import restore_for_job, save_for_job
from .cache import CacheStore, DEFAULT_CACHE_DIR
from .conditions import ConditionContext
from .credentials import CredentialScope, JobCredentials, SecretStore, base_environment, scope_job
from .errors import Cancelled, PermissionDenied, StepFailure
from .model import Event, Job, JobResult, JobStatus, Pipeline, PipelineRun, RunStatus, Step, TriggeredRun
from .report import run_report, write_report
from .supervisor import CancelToken, RunSupervisor
from .triggers import RawEvent, resolve
from .ui.console import Console, get_console
from .workflow import Workflow, validate

DEFAULT_WORK_DIR = ".pipegate/work"

# A dependency in one of these states blocks its dependents outright.
NOT_SUCCEEDED = (JobStatus.FAILED, JobStatus.BLOCKED, JobStatus.CANCELLED)


@dataclass
class JobOutcome:
    """What a worker thread hands back; the executor applies it to the JobResult."""
    status: JobStatus
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    reason: Optional[str] = None


def _failure_text(e: StepFailure) -> str:
    tail = (e.stderr or e.stdout or "").strip()
    return f"{e}\n{tail}" if tail else str(e)


class PipelineExecutor:
    """
    Runs pipelines wave by wave.

    - jobs inside a wave run in parallel on a thread pool
    - the next wave starts only when every job of the current one is terminal
    - steps inside a job run strictly in order; the first failing step fails the job
    - a failed job never stops its siblings; its dependents become `blocked`
    """

    def __init__(
        self,
        *,
        registry: Optional[ActionRegistry] = None,
        cache: Optional[CacheStore] = None,
        secrets: Optional[SecretStore] = None,
        work_root: str | Path = DEFAULT_WORK_DIR,
        workspace: str | Path | None = None,
        max_workers: Optional[int] = None,
        report_dir: str | Path | None = None,
        environ: Optional[Mapping[str, str]] = None,
        console: Optional[Console] = None,
    ):
        self.registry = registry or default_registry()
        self.cache = cache or CacheStore(DEFAULT_CACHE_DIR)
        self.secrets = secrets or SecretStore.from_env()
        self.work_root = Path(work_root).resolve()
        # Shared workspace (local runs in a checkout) instead of one fresh dir per job.
        self.workspace = Path(workspace).resolve() if workspace is not None else None
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.max_workers = max_workers
        self.report_dir = Path(report_dir) if report_dir is not None else None
        self.environ = environ
        self._console = console

    @property
    def console(self) -> Console:
        return self._console or get_console()

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def dispatch(
        self,
        workflow: Workflow,
        pipelines: List[str],
        event: Event,
        scope: CredentialScope,
        *,
        cancel: Optional[CancelToken] = None,
        run_ids: Optional[Mapping[str, str]] = None,
    ) -> TriggeredRun:
        """
        Run every selected pipeline for one event, required pipelines first.
        A pipeline whose required pipeline did not succeed is blocked as a whole.
        `run_ids` pins the id of a pipeline's run (pipeline name -> id).
        """
        cancel = cancel or CancelToken()
        triggered = TriggeredRun(event=event, granted=scope.granted)

        for p in workflow.ordered(pipelines):
            blocked_reason = None
            for req in p.requires:
                req_run = triggered.run_for(req)
                if req_run is None:
                    blocked_reason = f"required pipeline '{req}' did not run"
                elif req_run.status is not RunStatus.SUCCEEDED:
                    blocked_reason = f"required pipeline '{req}' {req_run.status.value}"
                if blocked_reason:
                    break
            triggered.runs.append(
                self.execute(
                    p,
                    event,
                    scope,
                    cancel=cancel,
                    blocked_reason=blocked_reason,
                    run_id=(run_ids or {}).get(p.name),
                    waves=workflow.waves[p.name],
                )
            )
        return triggered

    def execute(
        self,
        pipeline: Pipeline,
        event: Event,
        scope: Optional[CredentialScope] = None,
        *,
        cancel: Optional[CancelToken] = None,
        blocked_reason: Optional[str] = None,
        run_id: Optional[str] = None,
        waves: Optional[List[List[str]]] = None,
    ) -> PipelineRun:
        """
        Run one pipeline to completion.

        `waves` comes from a validated Workflow. Without it the pipeline is
        validated here first, so an invalid definition raises ConfigError
        before any job starts.
        """
        if waves is None:
            # `requires` is resolved by dispatch, not per pipeline
            waves = validate([replace(pipeline, requires=())], registry=self.registry).waves[pipeline.name]
        scope = scope or CredentialScope()
        cancel = cancel or CancelToken()
        console = self.console
        run = PipelineRun(
            pipeline=pipeline.name,
            event=event,
            results={j.id: JobResult(j.id) for j in pipeline.jobs},
        )
        if run_id is not None:
            run.id = run_id
        console.print_run_started(pipeline.name, event.ref, len(pipeline.jobs))

        if blocked_reason and not cancel.cancelled:
            for result in run.results.values():
                result.finish(JobStatus.BLOCKED, reason=blocked_reason)
                console.print_job_blocked(result.job, blocked_reason)
        else:
            self._run_waves(pipeline, waves, run, scope, cancel)

        if cancel.cancelled:
            run.cancelled = True
            for result in run.results.values():
                if not result.terminal:
                    result.finish(JobStatus.CANCELLED, reason=cancel.reason or "cancelled")
                    console.print_job_cancelled(result.job, cancel.reason or "cancelled")

        run.finished_at = time.time()
        report = run_report(run)
        console.print_results(report)
        if self.report_dir is not None:
            write_report(report, self.report_dir)
        return run

    def _run_waves(
        self,
        pipeline: Pipeline,
        waves: List[List[str]],
        run: PipelineRun,
        scope: CredentialScope,
        cancel: CancelToken,
    ) -> None:
        jobs = pipeline.job_map
        for index, wave in enumerate(waves):
            if cancel.cancelled:
                return
            self.console.print_wave(index, wave)

            runnable: List[Job] = []
            for job_id in wave:
                job = jobs[job_id]
                gate = self._gate(job, run.results)
                if gate is None:
                    runnable.append(job)
                    continue
                status, reason = gate
                run.results[job_id].finish(status, reason=reason)
                if status is JobStatus.BLOCKED:
                    self.console.print_job_blocked(job_id, reason)
                else:
                    self.console.print_job_skipped(job_id, reason)

            if not runnable:
                continue

            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = {}
                for job in runnable:
                    run.results[job.id].start()
                    deps = {d: run.results[d] for d in job.needs}
                    futures[pool.submit(self._run_job, pipeline, job, run, deps, scope, cancel)] = job.id

                # join barrier: the wave is done when every future is
                for future in as_completed(futures):
                    outcome: JobOutcome = future.result()
                    run.results[futures[future]].finish(
                        outcome.status,
                        outputs=outcome.outputs,
                        error=outcome.error,
                        reason=outcome.reason,
                    )

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @staticmethod
    def _gate(job: Job, results: Mapping[str, JobResult]) -> Optional[Tuple[JobStatus, str]]:
        """None -> run the job; otherwise the terminal status it gets without running."""
        deps = {d: results[d] for d in job.needs}

        not_ok = [d for d, r in deps.items() if r.status in NOT_SUCCEEDED]
        if not_ok:
            return JobStatus.BLOCKED, f"dependency not succeeded: {', '.join(sorted(not_ok))}"

        skipped = [d for d, r in deps.items() if r.status is JobStatus.SKIPPED]
        if skipped and not (job.condition is not None and job.condition.tests_skip()):
            return JobStatus.SKIPPED, f"dependency skipped: {', '.join(sorted(skipped))}"

        if job.condition is not None and not job.condition.evaluate(ConditionContext(deps)):
            return JobStatus.SKIPPED, "condition not met"
        return None

    def _workdir(self, run: PipelineRun, job: Job) -> Path:
        if self.workspace is not None:
            return self.workspace
        d = self.work_root / run.id / job.id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def _job_env(self, pipeline: Pipeline, job: Job, run: PipelineRun, workdir: Path) -> Dict[str, str]:
        env = base_environment(self.environ)
        env.update(pipeline.env)
        env.update(job.env)
        event = run.event
        env.update(
            {
                "CI": "true",
                "PIPEGATE": "true",
                "PIPEGATE_PIPELINE": pipeline.name,
                "PIPEGATE_JOB": job.id,
                "PIPEGATE_RUN_ID": run.id,
                "PIPEGATE_EVENT": event.kind.value,
                "PIPEGATE_REF": event.ref,
                "PIPEGATE_SHA": event.sha or "",
                "PIPEGATE_REPOSITORY": event.repository,
                "PIPEGATE_ACTOR": event.actor,
                "PIPEGATE_WORKSPACE": str(workdir),
            }
        )
        return env

    def _run_job(
        self,
        pipeline: Pipeline,
        job: Job,
        run: PipelineRun,
        deps: Mapping[str, JobResult],
        scope: CredentialScope,
        cancel: CancelToken,
    ) -> JobOutcome:
        """
        Runs in a worker thread. Never raises: every failure becomes a JobOutcome.
        """
        console = self.console
        console.print_job_start(job.display_name)

        # Preflight: no step runs unless every credential the job touches is allowed.
        try:
            creds = scope_job(job, scope, self.secrets)
        except PermissionDenied as e:
            console.print_failure(job.id, str(e), is_job=True)
            return JobOutcome(JobStatus.FAILED, error=str(e), reason="permission denied")

        step_outputs: Dict[str, Dict[str, Any]] = {}
        cache_restored = False
        current: Optional[Step] = None

        try:
            workdir = self._workdir(run, job)
            env = self._job_env(pipeline, job, run, workdir)
            for s in job.steps:
                current = s
                if cancel.cancelled:
                    raise Cancelled(job=job.id, step=s.name)

                # Job cache goes in after checkout, so lock files exist and the clone dir is empty.
                if job.cache is not None and not cache_restored and s.action != "checkout":
                    restore_for_job(self.cache, job.cache, job, workdir, console)
                    cache_restored = True

                if s.condition is not None and not s.condition.evaluate(ConditionContext(deps, step_outputs)):
                    console.print_step_skipped(job.id, s.name, "condition not met")
                    continue

                console.print_step(job.id, s.name)
                outputs = self._run_step(job, s, workdir, env, creds, run.event, cancel)
                if s.id is not None:
                    step_outputs[s.id] = outputs

            if job.cache is not None:
                try:
                    save_for_job(self.cache, job.cache, job, workdir, console)
                except OSError as e:
                    console.print_info(f"[{job.id}] CACHE: save failed, continuing ({e})")

        except Cancelled as e:
            return JobOutcome(JobStatus.CANCELLED, error=str(e), reason=cancel.reason or "cancelled")
        except StepFailure as e:
            console.print_failure(f"{job.id} / {e.step}", _failure_text(e), exit_code=e.exit_code)
            return JobOutcome(JobStatus.FAILED, error=_failure_text(e), reason=f"step '{e.step}' failed")
        except PermissionDenied as e:
            console.print_failure(job.id, str(e), is_job=True)
            return JobOutcome(JobStatus.FAILED, error=str(e), reason="permission denied")
        except Exception as e:
            # A broken action or job setup fails this job only, never the executor.
            console.print_exception(e)
            return JobOutcome(
                JobStatus.FAILED,
                error=f"{type(e).__name__}: {e}",
                reason=f"step '{current.name}' raised" if current is not None else "job setup failed",
            )

        outputs = {name: step_outputs.get(ref.source, {}).get(ref.name) for name, ref in job.outputs.items()}
        console.print_success(job.id)
        return JobOutcome(JobStatus.SUCCEEDED, outputs=outputs)

    def _run_step(
        self,
        job: Job,
        s: Step,
        workdir: Path,
        env: Mapping[str, str],
        creds: JobCredentials,
        event: Event,
        cancel: CancelToken,
    ) -> Dict[str, Any]:
        spec = self.registry.get(s.action)
        params = creds.resolve(dict(s.params))
        step_env = dict(env)
        step_env.update({k: str(v) for k, v in creds.resolve(dict(s.env)).items()})

        with tempfile.TemporaryDirectory(prefix="pipegate-step-") as tmp:
            output_file = Path(tmp) / "outputs"
            output_file.touch()
            step_env[OUTPUT_ENV] = str(output_file)
            ctx = StepContext(
                job=job,
                step=s,
                params=params,
                env=step_env,
                workdir=workdir,
                event=event,
                cache=self.cache,
                cancel=cancel,
                console=self.console,
                output_file=output_file,
            )
            result = spec.fn(ctx)
        return dict(result or {})


# ----------------------------------------------------------------------
# Event entry point
# ----------------------------------------------------------------------

def run_event(
    raw: RawEvent,
    workflow: Workflow,
    executor: PipelineExecutor,
    *,
    supervisor: Optional[RunSupervisor] = None,
) -> TriggeredRun:
    """
    Resolve a raw event and run everything it selects.

    With a supervisor, an in-flight run on the same ref is cancelled first.
    """
    resolution = resolve(raw, workflow.policy, workflow.pipelines)
    executor.console.print_event_resolved(
        resolution.event.kind.value,
        resolution.event.ref,
        resolution.pipelines,
        resolution.scope.granted,
    )
    if supervisor is None:
        return executor.dispatch(workflow, list(resolution.pipelines), resolution.event, resolution.scope)

    token = supervisor.begin(resolution.event)
    try:
        return executor.dispatch(
            workflow, list(resolution.pipelines), resolution.event, resolution.scope, cancel=token
        )
    finally:
        supervisor.end(resolution.event, token)
