# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError if git exits non-zero.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Full ref of the current checkout: "refs/heads/<branch>", or the bare
    commit SHA when HEAD is detached.
    """
    try:
        return _git(["symbolic-ref", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def get_remote_url(name: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", name], cwd=cwd)


def repository_slug(url: str) -> str:
    """
    "git@github.com:owner/repo.git" / "https://github.com/owner/repo" -> "owner/repo".
    Anything else is returned unchanged.
    """
    u = url.strip().rstrip("/")
    if u.endswith(".git"):
        u = u[: -len(".git")]
    if u.startswith("git@") and ":" in u:
        return u.split(":", 1)[1]
    if "://" in u:
        parts = u.split("://", 1)[1].split("/", 1)
        if len(parts) == 2:
            return parts[1]
    return url


def short_ref(ref: str) -> str:
    """refs/heads/x -> x, refs/tags/v1 -> v1, anything else unchanged."""
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def clone(url: str, dest: str | Path, *, ref: Optional[str] = None, depth: Optional[int] = 1) -> Path:
    """
    Clone `url` into `dest` at `ref`.

    Branch and tag refs are cloned directly; anything else (a SHA) is
    fetched after a full clone and checked out detached.
    """
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)

    named = ref is not None and ref.startswith(("refs/heads/", "refs/tags/"))
    args = ["clone", "--quiet"]
    if depth and (ref is None or named):
        args += ["--depth", str(depth)]
    if named:
        args += ["--branch", short_ref(ref)]
    args += [url, str(dest)]
    _git(args)

    if ref is not None and not named:
        _git(["checkout", "--quiet", ref], cwd=dest)
    return dest


def update_checkout(path: str | Path, ref: str) -> Path:
    """Fetch and check out `ref` in an existing clone."""
    _git(["fetch", "--quiet", "origin"], cwd=path)
    _git(["checkout", "--quiet", short_ref(ref)], cwd=path)
    return Path(path)
