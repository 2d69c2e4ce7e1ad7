# report.py
from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .model import Event, JobResult, PipelineRun, TriggeredRun


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


def event_report(event: Event) -> Dict[str, Any]:
    return {
        "kind": event.kind.value,
        "ref": event.ref,
        "repository": event.repository,
        "actor": event.actor,
        "sha": event.sha,
    }


def job_report(result: JobResult) -> Dict[str, Any]:
    return {
        "status": result.status.value,
        "started_at": _iso(result.started_at),
        "finished_at": _iso(result.finished_at),
        "duration": result.duration,
        "outputs": _jsonable(result.outputs),
        "error": result.error,
        "reason": result.reason,
    }


def run_report(run: PipelineRun) -> Dict[str, Any]:
    """The externally observable result of one pipeline run."""
    return {
        "run_id": run.id,
        "pipeline": run.pipeline,
        "status": run.status.value,
        "event": event_report(run.event),
        "started_at": _iso(run.started_at),
        "finished_at": _iso(run.finished_at),
        "duration": run.duration,
        "jobs": {job_id: job_report(r) for job_id, r in run.results.items()},
    }


def triggered_report(triggered: TriggeredRun) -> Dict[str, Any]:
    return {
        "status": triggered.status.value,
        "event": event_report(triggered.event),
        "credentials": sorted(triggered.granted),
        "runs": [run_report(r) for r in triggered.runs],
    }


def write_report(report: Dict[str, Any], directory: str | Path, name: Optional[str] = None) -> Path:
    """Write one report as <directory>/<name or run_id>.json and return the path."""
    out_dir = Path(directory)
    out_dir.mkdir(parents=True, exist_ok=True)
    name = name or report.get("run_id") or "report"
    path = out_dir / f"{name}.json"
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(report, indent=2, sort_keys=True), encoding="utf-8")
    tmp.replace(path)
    return path
