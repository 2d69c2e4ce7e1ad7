"""
HTTP front door: webhook-style events in, pipeline run records out.

    uvicorn --factory pipegate.server.app:create_app
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel

from pipegate.cache import CacheStore
from pipegate.model import RunStatus
from pipegate.report import run_report
from pipegate.runner import PipelineExecutor
from pipegate.supervisor import CancelToken, RunSupervisor
from pipegate.triggers import RawEvent, Resolution, resolve
from pipegate.ui.console import get_console
from pipegate.workflow import Workflow, load_workflow

from .db import make_engine, make_sessionmaker
from .models import Base, PipelineRunRecord
from .settings import Settings, load_settings

# -------------------- Schemas --------------------

class EventIn(BaseModel):
    event: str = "push"
    ref: str
    repository: str = ""
    actor: str = ""
    sha: Optional[str] = None


class EventOut(BaseModel):
    kind: str
    ref: str
    pipelines: list[str]
    run_ids: dict[str, str]


class RunOut(BaseModel):
    id: str
    pipeline: str
    event_kind: str
    ref: str
    repository: str
    actor: str
    sha: Optional[str]
    status: str
    report: Optional[dict[str, Any]]
    created_at: datetime
    finished_at: Optional[datetime]


class CancelOut(BaseModel):
    id: str
    cancelled: bool


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _run_out(rec: PipelineRunRecord) -> RunOut:
    return RunOut(
        id=rec.id,
        pipeline=rec.pipeline,
        event_kind=rec.event_kind,
        ref=rec.ref,
        repository=rec.repository,
        actor=rec.actor,
        sha=rec.sha,
        status=rec.status,
        report=rec.report,
        created_at=rec.created_at,
        finished_at=rec.finished_at,
    )


# -------------------- App --------------------

def create_app(
    settings: Optional[Settings] = None,
    *,
    workflow: Optional[Workflow] = None,
    executor: Optional[PipelineExecutor] = None,
    supervisor: Optional[RunSupervisor] = None,
) -> FastAPI:
    settings = settings or load_settings()
    workflow = workflow or load_workflow(settings.workflow)
    executor = executor or PipelineExecutor(
        cache=CacheStore(settings.cache_dir),
        work_root=settings.work_dir,
        report_dir=settings.report_dir,
        max_workers=settings.max_workers,
    )
    supervisor = supervisor or RunSupervisor()

    engine = make_engine(settings.database_url)
    Base.metadata.create_all(engine)
    SessionLocal = make_sessionmaker(engine)

    app = FastAPI(title="pipegate")
    app.state.settings = settings
    app.state.workflow = workflow
    app.state.executor = executor
    app.state.supervisor = supervisor
    app.state.engine = engine
    # run id -> token of the dispatch that owns it, while that dispatch is in flight
    inflight: Dict[str, CancelToken] = {}
    app.state.inflight = inflight
    inflight_lock = threading.Lock()

    def dispatch(resolution: Resolution, run_ids: Dict[str, str], token: CancelToken) -> None:
        event = resolution.event
        try:
            triggered = executor.dispatch(
                workflow,
                list(resolution.pipelines),
                event,
                resolution.scope,
                cancel=token,
                run_ids=run_ids,
            )
        except Exception as e:
            get_console().print_exception(e)
            with SessionLocal() as s, s.begin():
                for run_id in run_ids.values():
                    rec = s.get(PipelineRunRecord, run_id)
                    rec.status = RunStatus.FAILED.value
                    rec.report = {"error": f"{type(e).__name__}: {e}"}
                    rec.finished_at = now_utc()
            raise
        finally:
            supervisor.end(event, token)
            with inflight_lock:
                for run_id in run_ids.values():
                    inflight.pop(run_id, None)

        with SessionLocal() as s, s.begin():
            for run in triggered.runs:
                rec = s.get(PipelineRunRecord, run.id)
                rec.status = run.status.value
                rec.report = run_report(run)
                rec.finished_at = now_utc()

    # -------------------- Endpoints --------------------

    @app.post("/events", response_model=EventOut)
    def receive_event(req: EventIn, background: BackgroundTasks):
        raw = RawEvent(name=req.event, ref=req.ref, repository=req.repository, actor=req.actor, sha=req.sha)
        resolution = resolve(raw, workflow.policy, workflow.pipelines)
        event = resolution.event
        get_console().print_event_resolved(
            event.kind.value, event.ref, resolution.pipelines, resolution.scope.granted
        )

        run_ids: Dict[str, str] = {}
        if resolution.pipelines:
            with SessionLocal() as s, s.begin():
                for p in workflow.ordered(resolution.pipelines):
                    rec = PipelineRunRecord(
                        id=uuid.uuid4().hex,
                        pipeline=p.name,
                        event_kind=event.kind.value,
                        ref=event.ref,
                        repository=event.repository,
                        actor=event.actor,
                        sha=event.sha,
                        status=RunStatus.RUNNING.value,
                        created_at=now_utc(),
                    )
                    s.add(rec)
                    run_ids[p.name] = rec.id

            # Supersede at arrival, so an older run on this ref stops as soon as a newer event lands.
            token = supervisor.begin(event)
            with inflight_lock:
                inflight.update(dict.fromkeys(run_ids.values(), token))
            background.add_task(dispatch, resolution, run_ids, token)

        return EventOut(
            kind=event.kind.value,
            ref=event.ref,
            pipelines=list(resolution.pipelines),
            run_ids=run_ids,
        )

    @app.get("/runs/{run_id}", response_model=RunOut)
    def get_run(run_id: str):
        with SessionLocal() as s:
            rec = s.get(PipelineRunRecord, run_id)
            if not rec:
                raise HTTPException(status_code=404, detail="Run not found")
            return _run_out(rec)

    @app.get("/runs", response_model=List[RunOut])
    def list_runs(ref: Optional[str] = None, pipeline: Optional[str] = None, limit: int = 50):
        q = sa.select(PipelineRunRecord).order_by(PipelineRunRecord.created_at.desc()).limit(limit)
        if ref is not None:
            q = q.where(PipelineRunRecord.ref == ref)
        if pipeline is not None:
            q = q.where(PipelineRunRecord.pipeline == pipeline)
        with SessionLocal() as s:
            return [_run_out(rec) for rec in s.scalars(q)]

    @app.post("/runs/{run_id}/cancel", response_model=CancelOut)
    def cancel_run(run_id: str):
        with SessionLocal() as s:
            rec = s.get(PipelineRunRecord, run_id)
            if not rec:
                raise HTTPException(status_code=404, detail="Run not found")
            if rec.status != RunStatus.RUNNING.value:
                raise HTTPException(status_code=409, detail=f"Run already {rec.status}")

        with inflight_lock:
            token = inflight.get(run_id)
        if token is None:
            raise HTTPException(status_code=409, detail="Run is not in flight")
        # Cancels every pipeline the same event started; they share one token.
        token.cancel(f"cancelled via API (run {run_id})")
        return CancelOut(id=run_id, cancelled=True)

    return app
