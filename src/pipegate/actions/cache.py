# actions/cache.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from ..cache import CacheStore, cache_key, restore_prefixes
from ..model import CacheSpec, Job, Step
from ..ui.console import Console
from .base import StepContext


def cache_restore_step(
    name: str = "Restore cache",
    *,
    paths: Sequence[str],
    key_files: Sequence[str] = (),
    prefix: str = "v0",
    partition: str | None = None,
    id: str | None = None,
) -> Step:
    return Step(
        name=name,
        action="cache-restore",
        params=_params(paths, key_files, prefix, partition),
        id=id,
    )


def cache_save_step(
    name: str = "Save cache",
    *,
    paths: Sequence[str],
    key_files: Sequence[str] = (),
    prefix: str = "v0",
    partition: str | None = None,
    id: str | None = None,
) -> Step:
    return Step(
        name=name,
        action="cache-save",
        params=_params(paths, key_files, prefix, partition),
        id=id,
    )


def _params(paths, key_files, prefix, partition) -> Dict[str, Any]:
    params: Dict[str, Any] = {"paths": list(paths), "key_files": list(key_files), "prefix": prefix}
    if partition:
        params["partition"] = partition
    return params


def spec_from_params(params: Dict[str, Any]) -> CacheSpec:
    return CacheSpec(
        paths=tuple(params.get("paths") or ()),
        key_files=tuple(params.get("key_files") or ()),
        prefix=params.get("prefix") or "v0",
        partition=params.get("partition"),
    )


def key_for(spec: CacheSpec, job: Job, workdir: Path) -> str:
    return cache_key(spec.prefix, spec.partition or job.id, spec.key_files, workdir)


# ---------------------------------------------------------------------
# Shared by the actions below and by job-level `cache=` in the executor
# ---------------------------------------------------------------------

def restore_for_job(
    store: CacheStore,
    spec: CacheSpec,
    job: Job,
    workdir: Path,
    console: Console,
) -> Dict[str, Any]:
    key = key_for(spec, job, workdir)
    entry = store.restore(key, restore_prefixes(spec.prefix, spec.partition or job.id), into=workdir)
    if entry is None:
        console.print_cache_miss(job.id, key)
        return {"cache_hit": False, "cache_key": key, "matched_key": ""}
    console.print_cache_hit(job.id, key, entry.key)
    return {"cache_hit": entry.key == key, "cache_key": key, "matched_key": entry.key}


def save_for_job(
    store: CacheStore,
    spec: CacheSpec,
    job: Job,
    workdir: Path,
    console: Console,
    key: Optional[str] = None,
) -> Dict[str, Any]:
    key = key or key_for(spec, job, workdir)
    result = store.save(key, spec.paths, root=workdir)
    console.print_cache_saved(job.id, key, result.written)
    if result.written:
        store.prune(spec.keep, prefix=f"{spec.prefix}-{spec.partition or job.id}-")
    return {"cache_key": key, "saved": result.written}


def restore_step(ctx: StepContext) -> Dict[str, Any]:
    return restore_for_job(ctx.cache, spec_from_params(ctx.params), ctx.job, ctx.workdir, ctx.console)


def save_step(ctx: StepContext) -> Dict[str, Any]:
    return save_for_job(ctx.cache, spec_from_params(ctx.params), ctx.job, ctx.workdir, ctx.console)
