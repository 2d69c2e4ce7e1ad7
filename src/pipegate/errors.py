# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class PipegateError(Exception):
    """Base class for every error raised by pipegate."""


class ConfigError(PipegateError):
    """
    A workflow definition is malformed.

    Raised once, at load time, before any job runs:
      - duplicate job / step / pipeline ids
      - `needs` or `requires` pointing at something that does not exist
      - conditions referencing outputs nobody produces
      - unknown actions
    """


class CycleDetected(ConfigError):
    def __init__(self, cycle: list[str], *, where: str = "pipeline"):
        self.cycle = list(cycle)
        self.where = where
        super().__init__(f"{where} has a dependency cycle: {' -> '.join(self.cycle)}")


@dataclass
class PermissionDenied(PipegateError):
    """A job asked for a credential it is not allowed to receive."""
    job: str
    credential: str
    reason: str

    def __str__(self) -> str:
        return f"[{self.job}] permission denied for credential '{self.credential}': {self.reason}"


@dataclass
class StepFailure(PipegateError):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class Cancelled(PipegateError):
    """The run was superseded or cancelled while this job was in flight."""
    job: str
    step: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        if self.step:
            return f"[{self.job}] cancelled during step '{self.step}'"
        return f"[{self.job}] cancelled"
