from __future__ import annotations

from . import cache, checkout, lint, publish, release, shell, test, toolchain
from .base import ActionRegistry, ActionSpec, ProcessResult, StepContext, parse_outputs, run_process


def default_registry() -> ActionRegistry:
    """A fresh registry holding every built-in action."""
    registry = ActionRegistry()
    registry.register("run", shell.run_step, dynamic_outputs=True)
    registry.register("checkout", checkout.run_step, outputs=("sha", "path"))
    registry.register("toolchain", toolchain.run_step, outputs=("version",))
    registry.register("cache-restore", cache.restore_step, outputs=("cache_hit", "cache_key", "matched_key"))
    registry.register("cache-save", cache.save_step, outputs=("cache_key", "saved"))
    registry.register("lint", lint.run_step)
    registry.register("test", test.run_step)
    registry.register("release", release.run_step, outputs=release.RELEASE_OUTPUTS)
    registry.register("publish", publish.run_step, outputs=("published",))
    return registry


__all__ = [
    "ActionRegistry",
    "ActionSpec",
    "ProcessResult",
    "StepContext",
    "default_registry",
    "parse_outputs",
    "run_process",
]
