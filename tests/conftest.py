from __future__ import annotations

import io
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pytest

from pipegate.actions import ActionRegistry, StepContext, default_registry
from pipegate.cache import CacheStore
from pipegate.credentials import SecretStore
from pipegate.errors import Cancelled, StepFailure
from pipegate.runner import PipelineExecutor
from pipegate.ui.console import Console, set_console


class Recorder:
    """Thread-safe log of which (job, step) actually ran, and with what env."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.calls: List[Tuple[str, str]] = []
        self.envs: Dict[Tuple[str, str], Dict[str, str]] = {}
        self.params: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def record(self, ctx: StepContext) -> None:
        with self._lock:
            key = (ctx.job.id, ctx.step.name)
            self.calls.append(key)
            self.envs[key] = dict(ctx.env)
            self.params[key] = dict(ctx.params)

    def jobs(self) -> List[str]:
        return [job for job, _ in self.calls]

    def count(self, job: str) -> int:
        return sum(1 for j, _ in self.calls if j == job)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def registry(recorder: Recorder) -> ActionRegistry:
    reg = default_registry().copy()

    @reg.register("ok")
    def ok(ctx: StepContext):
        recorder.record(ctx)
        return {}

    @reg.register("fail")
    def fail(ctx: StepContext):
        recorder.record(ctx)
        raise StepFailure(job=ctx.job.id, step=ctx.step.name, cmd="fail", exit_code=1, stderr="boom")

    @reg.register("emit", dynamic_outputs=True)
    def emit(ctx: StepContext):
        recorder.record(ctx)
        return dict(ctx.params.get("values", {}))

    @reg.register("wait")
    def wait(ctx: StepContext):
        # Blocks until cancelled or `seconds` pass.
        recorder.record(ctx)
        if ctx.cancel.wait(float(ctx.params.get("seconds", 5))):
            raise Cancelled(job=ctx.job.id, step=ctx.step.name)
        return {}

    @reg.register("write")
    def write(ctx: StepContext):
        recorder.record(ctx)
        target = ctx.cwd / ctx.params["path"]
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(ctx.params.get("text", "x"), encoding="utf-8")
        return {}

    @reg.register("explode")
    def explode(ctx: StepContext):
        recorder.record(ctx)
        raise RuntimeError("action bug")

    return reg


@pytest.fixture
def console() -> Console:
    c = Console(stream=io.StringIO())
    set_console(c)
    return c


@pytest.fixture
def secrets() -> SecretStore:
    return SecretStore({"PYPI_TOKEN": "pypi-secret-value", "READ_TOKEN": "read-value"})


@pytest.fixture
def executor(tmp_path: Path, registry: ActionRegistry, secrets: SecretStore, console: Console) -> PipelineExecutor:
    return PipelineExecutor(
        registry=registry,
        cache=CacheStore(tmp_path / "cache"),
        secrets=secrets,
        work_root=tmp_path / "work",
        max_workers=4,
        environ={"PATH": os.environ.get("PATH", ""), "PIPEGATE_SECRET_PYPI_TOKEN": "leak"},
        console=console,
    )
