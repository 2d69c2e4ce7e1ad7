# actions/release.py
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from ..model import Step
from .base import StepContext

RELEASE_OUTPUTS = ("release_created", "tag_name", "version")


def release_step(
    name: str,
    command: str,
    *,
    id: str = "release",
    env: Optional[Mapping[str, Any]] = None,
) -> Step:
    """
    Create a release-compute step.

    `command` decides whether a release is warranted (and creates it). It
    reports back by writing to $PIPEGATE_OUTPUT:

        release_created=true
        tag_name=v1.4.0
        version=1.4.0
    """
    return Step(name=name, action="release", params={"command": command}, id=id, env=dict(env or {}))


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def normalize(raw: Mapping[str, Any]) -> Dict[str, Any]:
    created = _as_bool(raw.get("release_created", False))
    out: Dict[str, Any] = {"release_created": created}
    out["tag_name"] = str(raw.get("tag_name") or "") if created else ""
    out["version"] = str(raw.get("version") or "") if created else ""
    return out


def run_step(ctx: StepContext) -> Dict[str, Any]:
    ctx.run(ctx.require("command"))
    outputs = normalize(ctx.read_outputs())
    if outputs["release_created"]:
        ctx.console.print_info(f"[{ctx.job.id}] release created: {outputs['tag_name'] or outputs['version']}")
    else:
        ctx.console.print_info(f"[{ctx.job.id}] no release warranted")
    return outputs
