# actions/lint.py
from __future__ import annotations

import shlex
import shutil
from typing import Any, Dict, List, Mapping, Optional

from ..errors import StepFailure
from ..model import Step
from .base import StepContext

TOOL_HINTS = {
    "ruff": "Install ruff (e.g., pip install ruff).",
    "flake8": "Install flake8 (e.g., pip install flake8).",
    "mypy": "Install mypy (e.g., pip install mypy).",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "cargo": "Install a Rust toolchain (rustup) or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


# ---------------------------------------------------------------------
# Lint step helper
# ---------------------------------------------------------------------

def lint_step(
    name: str,
    tool: str,
    args: str | None = None,
    *,
    id: str | None = None,
    cwd: str | None = None,
    files: List[str] | None = None,
    env: Optional[Mapping[str, Any]] = None,
) -> Step:
    """Create a lint step that runs a linting tool and reports pass/fail."""
    params: Dict[str, Any] = {"tool": tool}
    if args:
        params["args"] = args
    if files:
        params["files"] = list(files)
    return Step(name=name, action="lint", params=params, id=id, cwd=cwd, env=dict(env or {}))


# ---------------------------------------------------------------------
# Lint step execution
# ---------------------------------------------------------------------

def check_tool_available(ctx: StepContext, tool: str) -> None:
    """Fail the step with a hint when `tool` is not on PATH."""
    if shutil.which(tool, path=ctx.env.get("PATH")) is None:
        hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
        raise StepFailure(
            job=ctx.job.id,
            step=ctx.step.name,
            cmd=tool,
            exit_code=127,
            stderr=f"{tool} is not available. {hint}",
        )


def run_step(ctx: StepContext) -> Dict[str, Any]:
    tool = ctx.require("tool")
    check_tool_available(ctx, tool)

    cmd_parts = [tool]
    args = ctx.param("args")
    if args:
        cmd_parts.extend(shlex.split(args))

    files = ctx.param("files")
    if files:
        cmd_parts.extend(files)

    ctx.run(cmd_parts)
    return {}
