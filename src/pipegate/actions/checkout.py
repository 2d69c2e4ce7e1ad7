# actions/checkout.py
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any, Dict

from ..errors import StepFailure
from ..git_facts.git import clone, head_sha, update_checkout
from ..model import Step
from .base import StepContext

DEFAULT_SERVER = "https://github.com"


def checkout_step(
    name: str = "Checkout",
    *,
    repository: str | None = None,
    ref: str | None = None,
    depth: int = 1,
    path: str = ".",
    id: str | None = None,
) -> Step:
    params: Dict[str, Any] = {"depth": depth, "path": path}
    if repository:
        params["repository"] = repository
    if ref:
        params["ref"] = ref
    return Step(name=name, action="checkout", params=params, id=id)


def clone_url(repository: str, server: str = DEFAULT_SERVER) -> str:
    """
    "owner/repo" -> "<server>/owner/repo.git"; URLs and local paths pass through.

    The URL never carries a token: nothing is persisted into the clone's
    git config that a later step could reuse.
    """
    if "://" in repository or repository.startswith(("git@", "/", ".", "~")):
        return repository
    if Path(repository).exists():
        return repository
    return f"{server.rstrip('/')}/{repository}.git"


def run_step(ctx: StepContext) -> Dict[str, Any]:
    repository = ctx.param("repository") or ctx.event.repository
    if not repository:
        raise StepFailure(
            job=ctx.job.id,
            step=ctx.step.name,
            cmd="checkout",
            exit_code=2,
            stderr="no repository to check out (event has none and no 'repository' param)",
        )
    ref = ctx.param("ref") or ctx.event.sha or ctx.event.ref
    dest = (ctx.workdir / (ctx.param("path") or ".")).resolve()
    url = clone_url(repository, ctx.param("server", DEFAULT_SERVER))

    try:
        if (dest / ".git").exists():
            update_checkout(dest, ref)
        else:
            clone(url, dest, ref=ref, depth=ctx.param("depth", 1))
        sha = head_sha(cwd=dest)
    except subprocess.CalledProcessError as e:
        raise StepFailure(
            job=ctx.job.id,
            step=ctx.step.name,
            cmd=" ".join(str(a) for a in e.cmd),
            exit_code=e.returncode,
            stderr=(e.stderr or "")[-4000:],
        ) from e
    except FileNotFoundError as e:
        raise StepFailure(job=ctx.job.id, step=ctx.step.name, cmd="git", exit_code=127, stderr=str(e)) from e

    return {"sha": sha, "path": str(dest)}
