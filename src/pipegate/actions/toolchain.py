# actions/toolchain.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from ..model import Step
from .base import StepContext
from .lint import check_tool_available

# toolchain -> binary whose presence proves the install
PROBES = {
    "rust": "cargo",
    "python": "python",
    "node": "node",
}


def toolchain_step(
    name: str,
    toolchain: str,
    version: str | None = None,
    *,
    components: Sequence[str] = (),
    profile: str | None = None,
    install: str | None = None,
    id: str | None = None,
) -> Step:
    """
    Create a toolchain step.

    `install` is a shell command run before probing; rust gets a rustup
    command built from version/components/profile when no install is given.
    """
    params: Dict[str, Any] = {"toolchain": toolchain}
    if version:
        params["version"] = version
    if components:
        params["components"] = list(components)
    if profile:
        params["profile"] = profile
    if install:
        params["install"] = install
    return Step(name=name, action="toolchain", params=params, id=id)


def install_commands(params: Dict[str, Any]) -> List[str]:
    if params.get("install"):
        return [params["install"]]
    if params.get("toolchain") == "rust" and params.get("version"):
        version = params["version"]
        cmd = f"rustup toolchain install {version}"
        if params.get("profile"):
            cmd += f" --profile {params['profile']}"
        components = params.get("components") or []
        if components:
            cmd += f" --component {','.join(components)}"
        return [cmd, f"rustup override set {version}"]
    return []


def run_step(ctx: StepContext) -> Dict[str, Any]:
    toolchain = ctx.require("toolchain")
    for cmd in install_commands(ctx.params):
        ctx.run(cmd)

    probe: Optional[str] = PROBES.get(toolchain, toolchain)
    check_tool_available(ctx, probe)
    proc = ctx.run([probe, "--version"])
    text = (proc.stdout or proc.stderr).strip()
    return {"version": text.splitlines()[0] if text else ""}
