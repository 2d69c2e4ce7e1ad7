"""
Event trigger: raw event -> (event kind, pipelines to run, credential scope).

This is the security-relevant decision point. It is a pure function of the
raw event, the static policy and the static pipeline set; nothing computed by
a job can widen the scope it returns.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .credentials import CredentialScope
from .model import Event, EventKind, Pipeline


@dataclass(frozen=True)
class RawEvent:
    """Untrusted trigger input, as received from the CLI or the webhook."""
    name: str                   # "push", "pull_request", ...
    ref: str
    repository: str = ""
    actor: str = ""
    sha: Optional[str] = None


@dataclass(frozen=True)
class TriggerPolicy:
    """
    Static trigger -> credential mapping.

    Release credentials are granted only to a push to `main_branch` of
    `repository`. An empty `repository` never matches, so release
    credentials stay locked until the canonical repository is configured.
    """
    repository: str = ""
    main_branch: str = "main"
    read_credentials: frozenset[str] = frozenset()
    release_credentials: frozenset[str] = frozenset()


@dataclass(frozen=True)
class Resolution:
    event: Event
    pipelines: tuple[str, ...]
    scope: CredentialScope


def normalize_ref(ref: str) -> str:
    ref = ref.strip()
    if ref.startswith("refs/"):
        return ref
    return f"refs/heads/{ref}"


def classify(raw: RawEvent, policy: TriggerPolicy) -> EventKind:
    if raw.name != "push":
        return EventKind.PUSH
    if not policy.repository or raw.repository.lower() != policy.repository.lower():
        return EventKind.PUSH
    # Exact full-ref comparison: "main-x", "refs/heads/main/x" and tags named main do not qualify.
    if normalize_ref(raw.ref) != f"refs/heads/{policy.main_branch}":
        return EventKind.PUSH
    return EventKind.PUSH_MAIN


def grant(kind: EventKind, policy: TriggerPolicy) -> CredentialScope:
    if kind is EventKind.PUSH_MAIN:
        return CredentialScope(frozenset(policy.read_credentials) | frozenset(policy.release_credentials))
    return CredentialScope(frozenset(policy.read_credentials))


def resolve(raw: RawEvent, policy: TriggerPolicy, pipelines: Iterable[Pipeline]) -> Resolution:
    kind = classify(raw, policy)
    event = Event(
        kind=kind,
        ref=normalize_ref(raw.ref),
        repository=raw.repository,
        actor=raw.actor,
        sha=raw.sha,
    )
    names = tuple(p.name for p in pipelines if p.applies_to(event))
    return Resolution(event=event, pipelines=names, scope=grant(kind, policy))
