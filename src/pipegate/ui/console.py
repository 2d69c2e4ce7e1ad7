"""
Human-readable run output.

Everything pipegate prints goes through one `Console`. Jobs of a wave print
from worker threads, so each call writes its lines under a lock.
"""

from __future__ import annotations

import sys
import threading
import traceback
from typing import Iterable, Mapping, Optional


class Console:
    def __init__(self, debug: bool = False, stream=None):
        """
        Args:
            debug: show full tracebacks and untruncated errors
            stream: normal output target; sys.stdout (looked up per write) when None
        """
        self.debug = debug
        self._stream = stream
        self._lock = threading.Lock()

    @property
    def out(self):
        return self._stream or sys.stdout

    def _emit(self, *lines: str) -> None:
        with self._lock:
            for line in lines:
                print(line, file=self.out)

    def _emit_err(self, *lines: str) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr)

    # -------------------- events & runs --------------------

    def print_event_resolved(
        self,
        kind: str,
        ref: str,
        pipelines: Iterable[str],
        credentials: Iterable[str],
    ) -> None:
        pipelines = list(pipelines)
        self._emit(
            "",
            "EVENT",
            f"Kind: {kind}",
            f"Ref: {ref}",
            f"Pipelines: {', '.join(pipelines) if pipelines else '(none)'}",
            f"Credentials granted: {', '.join(sorted(credentials)) or '(none)'}",
        )

    def print_run_started(self, pipeline: str, ref: str, job_count: int) -> None:
        self._emit("", "RUN STARTED", f"Pipeline: {pipeline}", f"Ref: {ref}", f"Jobs: {job_count}")

    def print_wave(self, index: int, jobs: Iterable[str]) -> None:
        self._emit(f"=== Wave {index + 1}: {list(jobs)} ===")

    def print_plan(self, pipeline: str, trigger: str, waves: list[list[str]], requires: Iterable[str] = ()) -> None:
        """Wave layout of one pipeline, as `pipegate plan` shows it."""
        requires = list(requires)
        lines = ["", f"PIPELINE: {pipeline} (on {trigger})"]
        if requires:
            lines.append(f"  requires: {', '.join(requires)}")
        for i, wave in enumerate(waves):
            lines.append(f"  wave {i + 1}: {', '.join(wave)}")
        self._emit(*lines)

    def print_results(self, report: Mapping) -> None:
        """Summary table for a finished pipeline run (takes a `report.run_report` dict)."""
        lines = ["", "=" * 40, f"RESULTS: {report['pipeline']} ({report['status'].upper()})", "=" * 40]
        for job_id, job in report["jobs"].items():
            line = f"  {job_id}: {job['status'].upper()}"
            if job.get("duration") is not None:
                line += f" ({job['duration']:.1f}s)"
            if job.get("reason"):
                line += f" - {job['reason']}"
            lines.append(line)
            for key, value in (job.get("outputs") or {}).items():
                lines.append(f"      {key} = {value}")
        self._emit(*lines)

    # -------------------- jobs & steps --------------------

    def print_job_start(self, name: str) -> None:
        self._emit(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._emit(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str, reason: str) -> None:
        self._emit(f"[{job}] STEP SKIPPED: {name} ({reason})")

    def print_success(self, job: str) -> None:
        self._emit(f"[{job}] STATUS: success")

    def print_job_skipped(self, job: str, reason: str) -> None:
        self._emit(f"[{job}] STATUS: skipped ({reason})")

    def print_job_blocked(self, job: str, reason: str) -> None:
        self._emit(f"[{job}] STATUS: blocked ({reason})")

    def print_job_cancelled(self, job: str, reason: str) -> None:
        self._emit(f"[{job}] STATUS: cancelled ({reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        A failed step (or, with is_job, a job that failed before any step ran).

        Outside debug mode only the first line of `reason` is shown; the full
        text still lands in the run report.
        """
        lines = [f"{'JOB' if is_job else 'STEP'} FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            first = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {first}")
        self._emit(*lines)

    # -------------------- cache --------------------

    def print_cache_hit(self, job: str, key: str, matched: str) -> None:
        if key == matched:
            self._emit(f"[{job}] CACHE: hit ({key})")
        else:
            self._emit(f"[{job}] CACHE: partial hit ({matched} for {key})")

    def print_cache_miss(self, job: str, key: str) -> None:
        self._emit(f"[{job}] CACHE: miss ({key}), cold start")

    def print_cache_saved(self, job: str, key: str, written: bool) -> None:
        self._emit(f"[{job}] CACHE: {'saved' if written else 'unchanged'} ({key})")

    # -------------------- errors --------------------

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """CLI-level error block on stderr: title, message, detail lines, then a suggestion."""
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or ())
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit_err(*lines)

    def print_exception(self, exc: BaseException) -> None:
        if self.debug:
            self._emit_err("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip())
        else:
            self._emit_err(f"Error: {type(exc).__name__}: {exc}")

    def print_info(self, message: str) -> None:
        self._emit(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            self._emit_err(f"[DEBUG] {message}")


# Set by the CLI; library callers get a default console on first use.
_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
