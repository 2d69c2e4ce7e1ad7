"""End-to-end: raw event in, triggered run out."""

from __future__ import annotations

import pytest

from pipegate.dsl import (
    is_true,
    job,
    needs_output,
    pipeline,
    policy,
    publish_step,
    step,
    step_output,
)
from pipegate.model import EventKind, JobStatus, RunStatus
from pipegate.runner import run_event
from pipegate.triggers import RawEvent
from pipegate.workflow import validate

POLICY = policy("acme/app", release_credentials=["PYPI_TOKEN"])


def _workflow(registry, *, ci_action="ok", release_created=True):
    ci = pipeline(
        "ci",
        job("lint", step("ruff", ci_action)),
        job("test", step("pytest", "ok"), needs=["lint"]),
    )
    release = pipeline(
        "release",
        job(
            "release",
            step(
                "compute",
                "emit",
                id="compute",
                outputs=["release_created", "tag_name"],
                values={"release_created": release_created, "tag_name": "v1.2.0" if release_created else ""},
            ),
            outputs={
                "release_created": step_output("compute", "release_created"),
                "tag_name": step_output("compute", "tag_name"),
            },
        ),
        job(
            "publish",
            publish_step(
                "Upload",
                'test "$TWINE_PASSWORD" = pypi-secret-value',
                credential="PYPI_TOKEN",
                token_env="TWINE_PASSWORD",
            ),
            needs=["release"],
            condition=is_true(needs_output("release", "release_created")),
            permissions=["PYPI_TOKEN"],
        ),
        trigger="push-main",
        requires=["ci"],
    )
    return validate([ci, release], POLICY, registry=registry)


def _push(ref, repository="acme/app"):
    return RawEvent(name="push", ref=ref, repository=repository, actor="dev")


def test_feature_push_runs_ci_only(executor, registry, recorder):
    triggered = run_event(_push("refs/heads/feature"), _workflow(registry), executor)

    assert [r.pipeline for r in triggered.runs] == ["ci"]
    assert triggered.event.kind is EventKind.PUSH
    assert triggered.granted == frozenset()
    assert triggered.status is RunStatus.SUCCEEDED
    assert "release" not in recorder.jobs()


def test_main_push_releases_and_publishes(executor, registry):
    triggered = run_event(_push("refs/heads/main"), _workflow(registry), executor)

    assert [r.pipeline for r in triggered.runs] == ["ci", "release"]
    release = triggered.run_for("release")
    assert release.results["release"].outputs == {"release_created": True, "tag_name": "v1.2.0"}
    assert release.results["publish"].status is JobStatus.SUCCEEDED
    assert triggered.status is RunStatus.SUCCEEDED


def test_failed_ci_blocks_the_release_pipeline(executor, registry, recorder):
    triggered = run_event(_push("refs/heads/main"), _workflow(registry, ci_action="fail"), executor)

    ci = triggered.run_for("ci")
    release = triggered.run_for("release")
    assert ci.results["lint"].status is JobStatus.FAILED
    assert ci.results["test"].status is JobStatus.BLOCKED
    assert {r.status for r in release.results.values()} == {JobStatus.BLOCKED}
    assert release.results["release"].reason == "required pipeline 'ci' failed"
    assert "release" not in recorder.jobs()
    assert triggered.status is RunStatus.FAILED


def test_no_release_warranted_skips_publish(executor, registry):
    triggered = run_event(_push("main"), _workflow(registry, release_created=False), executor)

    release = triggered.run_for("release")
    assert release.results["release"].status is JobStatus.SUCCEEDED
    assert release.results["publish"].status is JobStatus.SKIPPED
    assert triggered.status is RunStatus.SUCCEEDED


@pytest.mark.parametrize("ref, repository", [("refs/heads/main", "mallory/app"), ("refs/heads/main-x", "acme/app")])
def test_lookalike_pushes_never_reach_release(executor, registry, recorder, ref, repository):
    triggered = run_event(_push(ref, repository), _workflow(registry), executor)

    assert [r.pipeline for r in triggered.runs] == ["ci"]
    assert "PYPI_TOKEN" not in triggered.granted
    assert "publish" not in recorder.jobs()


def test_credentialed_job_outside_main_is_denied(executor, registry, recorder):
    wf = validate(
        [pipeline("ci", job("sneaky", step("upload", "ok"), permissions=["PYPI_TOKEN"]))],
        POLICY,
        registry=registry,
    )
    triggered = run_event(_push("refs/heads/feature"), wf, executor)

    result = triggered.run_for("ci").results["sneaky"]
    assert result.status is JobStatus.FAILED
    assert result.reason == "permission denied"
    assert recorder.calls == []
