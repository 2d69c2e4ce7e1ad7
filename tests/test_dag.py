from __future__ import annotations

import pytest

from pipegate.dag import build_dag, job_waves, pipeline_order, topo_levels
from pipegate.dsl import job, pipeline, step
from pipegate.errors import ConfigError, CycleDetected


def _job(job_id, needs=()):
    return job(job_id, step("noop", "ok"), needs=needs)


def test_diamond_runs_in_three_waves():
    p = pipeline(
        "ci",
        _job("d", ["b", "c"]),
        _job("b", ["a"]),
        _job("c", ["a"]),
        _job("a"),
    )
    assert job_waves(p) == [["a"], ["b", "c"], ["d"]]


def test_independent_jobs_share_the_first_wave():
    p = pipeline("ci", _job("z"), _job("y"), _job("x"))
    assert job_waves(p) == [["x", "y", "z"]]


def test_missing_dependency_is_rejected():
    p = pipeline("ci", _job("test", ["lint"]))
    with pytest.raises(ConfigError, match="missing job 'lint'"):
        job_waves(p)


def test_duplicate_job_ids_are_rejected():
    with pytest.raises(ConfigError, match="Duplicate job ids"):
        build_dag([_job("a"), _job("a")])


def test_cycle_reports_the_actual_cycle():
    p = pipeline("ci", _job("a", ["b"]), _job("b", ["a"]), _job("c"))
    with pytest.raises(CycleDetected) as exc:
        job_waves(p)
    assert exc.value.cycle == ["a", "b", "a"]
    assert "a -> b -> a" in str(exc.value)
    assert "pipeline 'ci'" in str(exc.value)


def test_self_dependency_is_a_cycle():
    p = pipeline("ci", _job("a", ["a"]))
    with pytest.raises(CycleDetected):
        job_waves(p)


def test_topo_levels_does_not_mutate_indegrees():
    adj, indeg = build_dag([_job("a"), _job("b", ["a"])])
    before = dict(indeg)
    topo_levels(adj, indeg)
    assert indeg == before


def test_pipeline_order_puts_required_pipelines_first():
    release = pipeline("release", _job("r"), trigger="push-main", requires=["ci"])
    ci = pipeline("ci", _job("t"))
    assert pipeline_order([release, ci]) == ["ci", "release"]


def test_pipeline_order_rejects_unknown_requirement():
    with pytest.raises(ConfigError, match="missing pipeline 'ci'"):
        pipeline_order([pipeline("release", _job("r"), requires=["ci"])])


def test_pipeline_order_rejects_duplicate_names():
    with pytest.raises(ConfigError, match="Duplicate pipeline names"):
        pipeline_order([pipeline("ci", _job("a")), pipeline("ci", _job("b"))])


def test_pipeline_requirement_cycle():
    a = pipeline("a", _job("x"), requires=["b"])
    b = pipeline("b", _job("y"), requires=["a"])
    with pytest.raises(CycleDetected, match="workflow has a dependency cycle"):
        pipeline_order([a, b])
