# actions/publish.py
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from ..errors import StepFailure
from ..model import Secret, Step
from .base import StepContext


def publish_step(
    name: str,
    command: str,
    *,
    credential: str,
    token_env: str,
    id: str | None = None,
    env: Optional[Mapping[str, Any]] = None,
) -> Step:
    """
    Create a publish step.

    The credential is handed to `command` as the environment variable
    `token_env` and nowhere else. The job must list `credential` in its
    permissions.
    """
    return Step(
        name=name,
        action="publish",
        params={"command": command, "token_env": token_env, "token": Secret(credential)},
        id=id,
        env=dict(env or {}),
    )


def run_step(ctx: StepContext) -> Dict[str, Any]:
    command = ctx.require("command")
    token_env = ctx.param("token_env")
    token = ctx.param("token")

    extra_env: Dict[str, str] = {}
    if token_env:
        if not token:
            raise StepFailure(
                job=ctx.job.id,
                step=ctx.step.name,
                cmd=command,
                exit_code=2,
                stderr=f"publish needs a credential for {token_env}",
            )
        extra_env[token_env] = token

    ctx.run(command, extra_env=extra_env)
    return {"published": True}
