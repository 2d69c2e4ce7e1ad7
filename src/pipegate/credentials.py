# credentials.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Mapping, Optional, Set

from .errors import PermissionDenied
from .model import Job, Secret

# Secret values are read from PIPEGATE_SECRET_<NAME>. These variables are
# stripped from every step environment; a step only ever sees the values
# its job was granted, under the names its env mapping gives them.
SECRET_ENV_PREFIX = "PIPEGATE_SECRET_"


@dataclass(frozen=True)
class CredentialScope:
    """The credentials a triggered run may hand out. Decided by the trigger, never by a job."""
    granted: frozenset[str] = frozenset()

    def allows(self, name: str) -> bool:
        return name in self.granted


class SecretStore:
    """Read-only source of credential values."""

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values = dict(values or {})

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        prefix: str = SECRET_ENV_PREFIX,
    ) -> "SecretStore":
        environ = os.environ if environ is None else environ
        return cls({k[len(prefix):]: v for k, v in environ.items() if k.startswith(prefix)})

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __repr__(self) -> str:
        return f"SecretStore(names={sorted(self._values)})"


def _iter_secrets(value: Any) -> Iterator[Secret]:
    if isinstance(value, Secret):
        yield value
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from _iter_secrets(v)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for v in value:
            yield from _iter_secrets(v)


def referenced_secrets(job: Job) -> Set[str]:
    """Names of every Secret marker placed in the job's steps (env and params)."""
    names: Set[str] = set()
    for step in job.steps:
        for s in _iter_secrets(step.env):
            names.add(s.name)
        for s in _iter_secrets(step.params):
            names.add(s.name)
    return names


@dataclass(frozen=True)
class JobCredentials:
    """Credential values resolved for exactly one job, for that job's lifetime."""
    job: str
    values: Mapping[str, str] = field(default_factory=dict, repr=False)

    def resolve(self, value: Any) -> Any:
        """Replace Secret markers with their values (recursively)."""
        if isinstance(value, Secret):
            if value.name not in self.values:
                raise PermissionDenied(self.job, value.name, "not in this job's credential scope")
            return self.values[value.name]
        if isinstance(value, Mapping):
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(v) for v in value]
        if isinstance(value, tuple):
            return tuple(self.resolve(v) for v in value)
        return value

    def __repr__(self) -> str:
        return f"JobCredentials(job={self.job!r}, names={sorted(self.values)})"


def scope_job(job: Job, scope: CredentialScope, secrets: SecretStore) -> JobCredentials:
    """
    Preflight for one job. Runs before any step; raises PermissionDenied when:
      - the job declares a credential the trigger did not grant
      - a step references a credential the job did not declare
      - a granted credential has no configured value
    """
    for name in sorted(job.permissions):
        if not scope.allows(name):
            raise PermissionDenied(job.id, name, "not granted to this trigger")

    for name in sorted(referenced_secrets(job)):
        if name not in job.permissions:
            raise PermissionDenied(job.id, name, "used by a step but not declared in the job's permissions")

    values: Dict[str, str] = {}
    for name in sorted(job.permissions):
        value = secrets.get(name)
        if value is None:
            raise PermissionDenied(job.id, name, "no value configured")
        values[name] = value

    return JobCredentials(job=job.id, values=values)


def base_environment(
    environ: Optional[Mapping[str, str]] = None,
    prefix: str = SECRET_ENV_PREFIX,
) -> Dict[str, str]:
    """Process environment minus every secret-holding variable."""
    environ = os.environ if environ is None else environ
    return {k: v for k, v in environ.items() if not k.startswith(prefix)}
