# actions/base.py
from __future__ import annotations

import os
import signal
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from ..cache import CacheStore
from ..errors import Cancelled, ConfigError, StepFailure
from ..model import Event, Job, Step
from ..supervisor import CancelToken
from ..ui.console import Console, get_console

OUTPUT_ENV = "PIPEGATE_OUTPUT"

# Seconds between cancellation checks while a step process runs.
POLL_INTERVAL = 0.2


@dataclass
class ProcessResult:
    exit_code: int
    stdout: str
    stderr: str


@dataclass
class StepContext:
    """Everything one step invocation may use. Built by the executor per step."""
    job: Job
    step: Step
    params: Dict[str, Any]
    env: Dict[str, str]
    workdir: Path
    event: Event
    cache: CacheStore
    cancel: CancelToken = field(default_factory=CancelToken)
    console: Console = field(default_factory=get_console)
    output_file: Optional[Path] = None

    @property
    def cwd(self) -> Path:
        return (self.workdir / (self.step.cwd or ".")).resolve()

    def param(self, name: str, default: Any = None) -> Any:
        return self.params.get(name, default)

    def require(self, name: str) -> Any:
        if name not in self.params or self.params[name] in (None, ""):
            raise StepFailure(
                job=self.job.id,
                step=self.step.name,
                cmd=self.step.action,
                exit_code=2,
                stderr=f"missing required parameter '{name}'",
            )
        return self.params[name]

    def run(
        self,
        cmd: Union[str, Sequence[str]],
        *,
        extra_env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> ProcessResult:
        env = dict(self.env)
        env.update(extra_env or {})
        return run_process(
            cmd,
            cwd=cwd or self.cwd,
            env=env,
            cancel=self.cancel,
            job=self.job.id,
            step=self.step.name,
        )

    def read_outputs(self) -> Dict[str, Any]:
        if self.output_file is None:
            return {}
        return parse_outputs(self.output_file)


def _signal(proc: subprocess.Popen, sig: int) -> None:
    if os.name != "posix":
        proc.terminate()
        return
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def run_process(
    cmd: Union[str, Sequence[str]],
    *,
    cwd: Path,
    env: Mapping[str, str],
    cancel: CancelToken,
    job: str,
    step: str,
) -> ProcessResult:
    """
    Run one step process. Exit code 0 = pass; anything else raises StepFailure.
    A cancelled token terminates the process and raises Cancelled.
    """
    if not cwd.exists():
        raise StepFailure(job=job, step=step, cmd=str(cmd), exit_code=2, stderr=f"cwd not found: {cwd}")

    shell = isinstance(cmd, str)
    display = cmd if shell else " ".join(cmd)
    try:
        proc = subprocess.Popen(
            cmd,
            shell=shell,
            cwd=str(cwd),
            env=dict(env),
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            # own process group, so cancelling also stops whatever the shell spawned
            start_new_session=(os.name == "posix"),
        )
    except FileNotFoundError as e:
        raise StepFailure(job=job, step=step, cmd=display, exit_code=127, stderr=str(e)) from e

    while True:
        try:
            stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel.cancelled:
                _signal(proc, signal.SIGTERM)
                try:
                    proc.communicate(timeout=5)
                except subprocess.TimeoutExpired:
                    _signal(proc, signal.SIGKILL if os.name == "posix" else signal.SIGTERM)
                    proc.communicate()
                raise Cancelled(job=job, step=step, details={"reason": cancel.reason})

    if proc.returncode != 0:
        raise StepFailure(
            job=job,
            step=step,
            cmd=display,
            exit_code=proc.returncode,
            stdout=(stdout or "")[-4000:],
            stderr=(stderr or "")[-4000:],
        )
    return ProcessResult(exit_code=0, stdout=stdout or "", stderr=stderr or "")


def _coerce(value: str) -> Any:
    if value == "true":
        return True
    if value == "false":
        return False
    return value


def parse_outputs(path: Path) -> Dict[str, Any]:
    """
    Parse a step output file.

    Accepts `name=value` lines and multi-line values written as

        name<<DELIM
        ...
        DELIM

    The literals "true" / "false" become booleans.
    """
    if not path.exists():
        return {}
    out: Dict[str, Any] = {}
    lines = path.read_text(encoding="utf-8").splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delim = line.split("<<", 1)
            body: List[str] = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            i += 1  # skip the delimiter
            out[name.strip()] = "\n".join(body)
            continue
        if "=" not in line:
            continue
        name, value = line.split("=", 1)
        out[name.strip()] = _coerce(value.strip())
    return out


ActionFn = Callable[[StepContext], Optional[Mapping[str, Any]]]


@dataclass(frozen=True)
class ActionSpec:
    name: str
    fn: ActionFn
    outputs: tuple[str, ...] = ()
    # `run`-style actions: the step itself lists the outputs it writes.
    dynamic_outputs: bool = False


class ActionRegistry:
    """Name -> action. Steps refer to actions by name; the workflow loader checks they exist."""

    def __init__(self) -> None:
        self._actions: Dict[str, ActionSpec] = {}

    def register(
        self,
        name: str,
        fn: Optional[ActionFn] = None,
        *,
        outputs: Iterable[str] = (),
        dynamic_outputs: bool = False,
    ):
        def deco(f: ActionFn) -> ActionFn:
            self._actions[name] = ActionSpec(
                name=name, fn=f, outputs=tuple(outputs), dynamic_outputs=dynamic_outputs
            )
            return f

        if fn is not None:
            return deco(fn)
        return deco

    def get(self, name: str) -> ActionSpec:
        try:
            return self._actions[name]
        except KeyError:
            raise ConfigError(f"Unknown action '{name}'. Known actions: {sorted(self._actions)}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def names(self) -> List[str]:
        return sorted(self._actions)

    def declared_outputs(self, step: Step) -> Set[str]:
        spec = self.get(step.action)
        names = set(spec.outputs)
        if spec.dynamic_outputs:
            names.update(step.outputs)
        return names

    def copy(self) -> "ActionRegistry":
        other = ActionRegistry()
        other._actions = dict(self._actions)
        return other
