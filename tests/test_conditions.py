from __future__ import annotations

import pytest

from pipegate.conditions import ConditionContext, OutputRef
from pipegate.dsl import always, equals, is_true, needs_output, not_, skipped, step_output, succeeded
from pipegate.model import JobResult, JobStatus


def _done(job_id, status=JobStatus.SUCCEEDED, **outputs):
    r = JobResult(job_id)
    r.finish(status, outputs=outputs)
    return r


def test_truthy_reads_upstream_output():
    ctx = ConditionContext({"release": _done("release", release_created=True)})
    assert is_true(needs_output("release", "release_created")).evaluate(ctx)


def test_missing_output_is_false():
    ctx = ConditionContext({"release": _done("release")})
    assert not is_true(needs_output("release", "release_created")).evaluate(ctx)


def test_string_false_is_not_truthy_after_parsing():
    # "false" is coerced to False when outputs are parsed; a raw bool False must not pass.
    ctx = ConditionContext({"release": _done("release", release_created=False)})
    assert not is_true(needs_output("release", "release_created")).evaluate(ctx)


def test_equals_and_step_outputs():
    ctx = ConditionContext({}, {"detect": {"lang": "python"}})
    assert equals(step_output("detect", "lang"), "python").evaluate(ctx)
    assert not equals(step_output("detect", "lang"), "rust").evaluate(ctx)


def test_operators_compose():
    ctx = ConditionContext(
        {
            "lint": _done("lint"),
            "docs": _done("docs", JobStatus.SKIPPED),
        }
    )
    assert (succeeded("lint") & skipped("docs")).evaluate(ctx)
    assert not (succeeded("docs") | not_(succeeded("lint"))).evaluate(ctx)
    assert (~succeeded("docs")).evaluate(ctx)
    assert always().evaluate(ctx)


def test_tests_skip_propagates_through_composites():
    assert skipped("a").tests_skip()
    assert (succeeded("a") | skipped("b")).tests_skip()
    assert not_(skipped("a")).tests_skip()
    assert not succeeded("a").tests_skip()
    assert not is_true(needs_output("a", "x")).tests_skip()


def test_refs_and_jobs_are_collected():
    cond = is_true(needs_output("release", "release_created")) & succeeded("build")
    assert [str(r) for r in cond.refs()] == ["needs.release.outputs.release_created"]
    assert list(cond.jobs()) == ["build"]


def test_output_ref_scope_is_validated():
    with pytest.raises(ValueError):
        OutputRef("env", "x", "y")
