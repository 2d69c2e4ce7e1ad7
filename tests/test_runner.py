from __future__ import annotations

import json

import pytest

from pipegate.credentials import CredentialScope
from pipegate.dsl import (
    cache,
    equals,
    is_true,
    job,
    needs_output,
    pipeline,
    secret,
    sh,
    skipped,
    step,
    step_output,
    when,
)
from pipegate.errors import ConfigError
from pipegate.model import Event, EventKind, JobStatus, RunStatus

EVENT = Event(EventKind.PUSH, "refs/heads/feature", "acme/app", actor="dev", sha="abc123")


def _status(run):
    return {job_id: r.status for job_id, r in run.results.items()}


def test_steps_run_in_order_and_stop_at_first_failure(executor, recorder):
    p = pipeline("ci", job("build", step("one", "ok"), step("two", "fail"), step("three", "ok")))
    run = executor.execute(p, EVENT)

    assert recorder.calls == [("build", "one"), ("build", "two")]
    result = run.results["build"]
    assert result.status is JobStatus.FAILED
    assert result.reason == "step 'two' failed"
    assert "exit=1" in result.error
    assert run.status is RunStatus.FAILED


def test_failed_job_blocks_dependents_but_not_siblings(executor, recorder):
    p = pipeline(
        "ci",
        job("a", step("a", "fail")),
        job("b", step("b", "wait", seconds=0.3)),
        job("c", step("c", "ok"), needs=["a"]),
        job("d", step("d", "ok"), needs=["b"]),
        job("e", step("e", "ok"), needs=["c"]),
    )
    run = executor.execute(p, EVENT)

    assert _status(run) == {
        "a": JobStatus.FAILED,
        "b": JobStatus.SUCCEEDED,
        "c": JobStatus.BLOCKED,
        "d": JobStatus.SUCCEEDED,
        "e": JobStatus.BLOCKED,
    }
    assert recorder.count("c") == 0 and recorder.count("e") == 0
    assert run.results["c"].reason == "dependency not succeeded: a"
    assert run.results["e"].reason == "dependency not succeeded: c"
    assert run.status is RunStatus.FAILED


def test_next_wave_waits_for_the_whole_wave(executor, recorder):
    p = pipeline(
        "ci",
        job("slow", step("slow", "wait", seconds=0.3)),
        job("fast", step("fast", "ok")),
        job("after", step("after", "ok"), needs=["fast"]),
    )
    executor.execute(p, EVENT)
    assert recorder.jobs().index("after") > recorder.jobs().index("slow")
    assert recorder.jobs()[-1] == "after"


def test_false_condition_skips_without_running(executor, recorder):
    p = pipeline(
        "release",
        job(
            "release",
            step("tag", "emit", id="tag", outputs=["release_created"], values={"release_created": False}),
            outputs={"release_created": step_output("tag", "release_created")},
        ),
        job(
            "publish",
            step("upload", "ok"),
            needs=["release"],
            condition=is_true(needs_output("release", "release_created")),
        ),
        job("announce", step("announce", "ok"), needs=["publish"]),
        job("cleanup", step("cleanup", "ok"), needs=["publish"], condition=skipped("publish")),
    )
    run = executor.execute(p, EVENT)

    assert _status(run) == {
        "release": JobStatus.SUCCEEDED,
        "publish": JobStatus.SKIPPED,
        "announce": JobStatus.SKIPPED,
        "cleanup": JobStatus.SUCCEEDED,
    }
    assert recorder.count("publish") == 0
    assert recorder.count("announce") == 0
    assert run.results["publish"].reason == "condition not met"
    assert run.results["announce"].reason == "dependency skipped: publish"
    assert run.status is RunStatus.SUCCEEDED


def test_true_condition_runs_the_job(executor, recorder):
    p = pipeline(
        "release",
        job(
            "release",
            step("tag", "emit", id="tag", outputs=["release_created"], values={"release_created": True}),
            outputs={"release_created": step_output("tag", "release_created")},
        ),
        job(
            "publish",
            step("upload", "ok"),
            needs=["release"],
            condition=is_true(needs_output("release", "release_created")),
        ),
    )
    run = executor.execute(p, EVENT)
    assert run.results["publish"].status is JobStatus.SUCCEEDED
    assert run.results["release"].outputs == {"release_created": True}


def test_step_conditions_read_earlier_step_outputs(executor, recorder):
    p = pipeline(
        "ci",
        job(
            "build",
            step("detect", "emit", id="detect", outputs=["lang"], values={"lang": "python"}),
            when(step("python", "ok"), equals(step_output("detect", "lang"), "python")),
            when(step("rust", "ok"), equals(step_output("detect", "lang"), "rust")),
        ),
    )
    run = executor.execute(p, EVENT)
    assert ("build", "python") in recorder.calls
    assert ("build", "rust") not in recorder.calls
    assert run.results["build"].status is JobStatus.SUCCEEDED


def test_permission_denied_fails_before_any_step(executor, recorder):
    p = pipeline(
        "release",
        job("publish", step("upload", "ok", env={"TOKEN": secret("PYPI_TOKEN")}), permissions=["PYPI_TOKEN"]),
    )
    run = executor.execute(p, EVENT, CredentialScope())

    assert recorder.calls == []
    assert run.results["publish"].status is JobStatus.FAILED
    assert run.results["publish"].reason == "permission denied"
    assert "PYPI_TOKEN" in run.results["publish"].error


def test_granted_secret_reaches_only_its_step(executor, recorder):
    p = pipeline(
        "release",
        job(
            "publish",
            step("build", "ok"),
            step("upload", "ok", env={"TOKEN": secret("PYPI_TOKEN")}),
            permissions=["PYPI_TOKEN"],
        ),
    )
    run = executor.execute(p, EVENT, CredentialScope(frozenset({"PYPI_TOKEN"})))

    assert run.results["publish"].status is JobStatus.SUCCEEDED
    assert recorder.envs[("publish", "upload")]["TOKEN"] == "pypi-secret-value"
    assert "TOKEN" not in recorder.envs[("publish", "build")]
    for env in recorder.envs.values():
        assert "PIPEGATE_SECRET_PYPI_TOKEN" not in env


def test_job_env_carries_event_metadata(executor, recorder):
    p = pipeline("ci", job("build", step("a", "ok"), env={"JOB_VAR": "1"}), env={"PIPE_VAR": "2"})
    run = executor.execute(p, EVENT)

    env = recorder.envs[("build", "a")]
    assert env["CI"] == "true"
    assert env["PIPEGATE_PIPELINE"] == "ci"
    assert env["PIPEGATE_JOB"] == "build"
    assert env["PIPEGATE_REF"] == "refs/heads/feature"
    assert env["PIPEGATE_SHA"] == "abc123"
    assert env["PIPEGATE_RUN_ID"] == run.id
    assert env["JOB_VAR"] == "1" and env["PIPE_VAR"] == "2"


def test_action_exception_fails_only_its_job(executor, recorder):
    p = pipeline("ci", job("bad", step("x", "explode")), job("good", step("y", "ok")))
    run = executor.execute(p, EVENT)
    assert run.results["bad"].status is JobStatus.FAILED
    assert "RuntimeError: action bug" in run.results["bad"].error
    assert run.results["good"].status is JobStatus.SUCCEEDED


def test_shell_steps_write_outputs(executor):
    p = pipeline(
        "ci",
        job(
            "detect",
            sh("detect", 'echo "lang=python" >> "$PIPEGATE_OUTPUT"; echo "ok=true" >> "$PIPEGATE_OUTPUT"', id="d", outputs=["lang", "ok"]),
            outputs={"lang": step_output("d", "lang"), "ok": step_output("d", "ok")},
        ),
    )
    run = executor.execute(p, EVENT)
    assert run.results["detect"].outputs == {"lang": "python", "ok": True}


def test_shell_failure_reports_exit_code(executor):
    p = pipeline("ci", job("build", sh("broken", "echo nope >&2; exit 3")))
    run = executor.execute(p, EVENT)
    assert run.results["build"].status is JobStatus.FAILED
    assert "exit=3" in run.results["build"].error
    assert "nope" in run.results["build"].error


def test_job_cache_is_restored_on_the_next_run(executor, recorder):
    spec = cache("deps", key_files=["deps.lock"], prefix="v1")
    first = pipeline("ci", job("build", step("install", "write", path="deps/lib.txt", text="built"), cache=spec))
    run = executor.execute(first, EVENT)
    assert run.results["build"].status is JobStatus.SUCCEEDED
    assert executor.cache.entries()

    second = pipeline("ci", job("build", sh("check", "test -f deps/lib.txt"), cache=spec))
    run = executor.execute(second, EVENT)
    assert run.results["build"].status is JobStatus.SUCCEEDED


def test_report_is_written(executor, tmp_path):
    executor.report_dir = tmp_path / "reports"
    run = executor.execute(pipeline("ci", job("a", step("a", "ok"))), EVENT)

    report = json.loads((tmp_path / "reports" / f"{run.id}.json").read_text(encoding="utf-8"))
    assert report["status"] == "succeeded"
    assert report["jobs"]["a"]["status"] == "succeeded"
    assert report["event"]["ref"] == "refs/heads/feature"


def test_blocked_pipeline_never_runs(executor, recorder):
    run = executor.execute(
        pipeline("release", job("a", step("a", "ok"))),
        EVENT,
        blocked_reason="required pipeline 'ci' failed",
    )
    assert recorder.calls == []
    assert run.results["a"].status is JobStatus.BLOCKED
    assert run.status is RunStatus.FAILED


def test_unvalidated_pipeline_is_rejected_before_any_job(executor, recorder):
    p = pipeline(
        "release",
        job("a", step("a", "ok")),
        job("b", step("b", "ok"), needs=["a"], condition=is_true(needs_output("a", "nope"))),
    )
    with pytest.raises(ConfigError, match="nope"):
        executor.execute(p, EVENT)
    assert recorder.calls == []


def test_job_setup_error_fails_the_job_and_finishes_the_run(executor, recorder, tmp_path):
    # job directories cannot be created under a regular file
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    executor.work_root = blocker
    executor.report_dir = tmp_path / "reports"

    p = pipeline("ci", job("a", step("a", "ok")), job("b", step("b", "ok")), job("c", step("c", "ok"), needs=["a"]))
    run = executor.execute(p, EVENT)

    assert recorder.calls == []
    assert run.results["a"].status is JobStatus.FAILED
    assert run.results["a"].reason == "job setup failed"
    assert run.results["b"].status is JobStatus.FAILED
    assert run.results["c"].status is JobStatus.BLOCKED
    assert run.status is RunStatus.FAILED
    assert (tmp_path / "reports" / f"{run.id}.json").exists()
