# actions/shell.py
from __future__ import annotations

from typing import Any, Dict

from .base import StepContext


def run_step(ctx: StepContext) -> Dict[str, Any]:
    """
    Run `params["run"]` through the shell.

    The command may write `name=value` lines to $PIPEGATE_OUTPUT; those become
    the step's outputs.
    """
    cmd = ctx.require("run")
    proc = ctx.run(cmd)
    if ctx.console.debug and proc.stdout:
        ctx.console.print_debug(f"[{ctx.job.id}] {ctx.step.name} stdout:\n{proc.stdout.rstrip()}")
    return ctx.read_outputs()
