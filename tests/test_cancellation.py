from __future__ import annotations

import threading
import time

from pipegate.dsl import job, pipeline, sh, step
from pipegate.model import Event, EventKind, JobStatus, RunStatus
from pipegate.runner import run_event
from pipegate.supervisor import CancelToken, RunSupervisor
from pipegate.triggers import RawEvent
from pipegate.workflow import validate

EVENT = Event(EventKind.PUSH, "refs/heads/feature", "acme/app")


def _cancel_after(token: CancelToken, seconds: float, reason: str = "stop") -> threading.Timer:
    t = threading.Timer(seconds, token.cancel, args=(reason,))
    t.start()
    return t


def test_cancelled_before_start_runs_nothing(executor, recorder):
    token = CancelToken()
    token.cancel("superseded")
    run = executor.execute(pipeline("ci", job("a", step("a", "ok")), job("b", step("b", "ok"), needs=["a"])), EVENT, cancel=token)

    assert recorder.calls == []
    assert run.cancelled
    assert run.status is RunStatus.CANCELLED
    assert {r.status for r in run.results.values()} == {JobStatus.CANCELLED}
    assert run.results["a"].reason == "superseded"


def test_cancel_mid_wave_stops_later_waves(executor, recorder):
    p = pipeline(
        "ci",
        job("a", step("a", "wait", seconds=10)),
        job("b", step("b", "ok"), needs=["a"]),
    )
    token = CancelToken()
    _cancel_after(token, 0.2)
    run = executor.execute(p, EVENT, cancel=token)

    assert run.results["a"].status is JobStatus.CANCELLED
    assert run.results["b"].status is JobStatus.CANCELLED
    assert recorder.count("b") == 0
    assert run.status is RunStatus.CANCELLED


def test_cancel_terminates_a_running_process(executor):
    token = CancelToken()
    _cancel_after(token, 0.3)
    started = time.monotonic()
    run = executor.execute(pipeline("ci", job("slow", sh("sleep", "sleep 30"))), EVENT, cancel=token)

    assert time.monotonic() - started < 10
    assert run.results["slow"].status is JobStatus.CANCELLED


def test_supervisor_supersedes_same_ref_only():
    sup = RunSupervisor()
    first = sup.begin(EVENT)
    other = sup.begin(Event(EventKind.PUSH, "refs/heads/other", "acme/app"))

    second = sup.begin(Event(EventKind.PUSH, "refs/heads/feature", "ACME/app"))
    assert first.cancelled
    assert "superseded" in first.reason
    assert not other.cancelled
    assert not second.cancelled

    sup.end(EVENT, first)  # stale token must not evict the newer one
    assert sup.active(EVENT) is second
    sup.end(EVENT, second)
    assert sup.active(EVENT) is None
    assert not sup.cancel(EVENT)


def test_newer_event_cancels_in_flight_run(executor, registry, recorder):
    wf = validate([pipeline("ci", job("a", step("a", "wait", seconds=10)))], registry=registry)
    sup = RunSupervisor()
    raw = RawEvent(name="push", ref="feature", repository="acme/app")
    results = []

    t = threading.Thread(target=lambda: results.append(run_event(raw, wf, executor, supervisor=sup)))
    t.start()
    deadline = time.monotonic() + 5
    while recorder.count("a") == 0 and time.monotonic() < deadline:
        time.sleep(0.02)

    newer = sup.begin(EVENT)
    t.join(timeout=10)

    assert not t.is_alive()
    assert results[0].status is RunStatus.CANCELLED
    assert results[0].runs[0].results["a"].status is JobStatus.CANCELLED
    assert sup.active(EVENT) is newer
