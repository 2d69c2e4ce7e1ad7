# actions/test.py
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from ..errors import StepFailure
from ..model import Step
from .base import StepContext
from .lint import check_tool_available

# framework -> (install command, test command, tool that must exist)
FRAMEWORKS = {
    "pytest": ("python -m pip install -e .", "python -m pytest", "python"),
    "cargo": ("", "cargo test", "cargo"),
    "npm": ("npm ci", "npm test", "npm"),
}


def test_step(
    name: str,
    framework: str = "pytest",
    args: str = "",
    *,
    install: bool = False,
    command: str | None = None,
    id: str | None = None,
    cwd: str | None = None,
    env: Optional[Mapping[str, Any]] = None,
) -> Step:
    """Create a test step. `command` overrides the framework's default test command."""
    params: Dict[str, Any] = {"framework": framework, "args": args, "install": install}
    if command:
        params["command"] = command
    return Step(name=name, action="test", params=params, id=id, cwd=cwd, env=dict(env or {}))


# pytest would otherwise collect the helper above as a test
test_step.__test__ = False  # type: ignore[attr-defined]


def commands_for(params: Mapping[str, Any]) -> List[str]:
    """Turn test params into the shell commands to run, in order."""
    framework = params.get("framework") or "pytest"
    args = (params.get("args") or "").strip()
    command = params.get("command")

    if command:
        return [f"{command} {args}".strip()]

    if framework not in FRAMEWORKS:
        raise ValueError(f"Unknown test framework: {framework!r}. Known: {sorted(FRAMEWORKS)}")

    install_cmd, test_cmd, _tool = FRAMEWORKS[framework]
    out: List[str] = []
    if params.get("install") and install_cmd:
        out.append(install_cmd)
    out.append(f"{test_cmd} {args}".strip())
    return out


def run_step(ctx: StepContext) -> Dict[str, Any]:
    try:
        cmds = commands_for(ctx.params)
    except ValueError as e:
        raise StepFailure(job=ctx.job.id, step=ctx.step.name, cmd="test", exit_code=2, stderr=str(e)) from e

    framework = ctx.param("framework") or "pytest"
    if not ctx.param("command") and framework in FRAMEWORKS:
        check_tool_available(ctx, FRAMEWORKS[framework][2])

    for cmd in cmds:
        ctx.run(cmd)
    return {}
