from __future__ import annotations

import pytest

from pipegate.credentials import (
    CredentialScope,
    JobCredentials,
    SecretStore,
    base_environment,
    referenced_secrets,
    scope_job,
)
from pipegate.dsl import job, secret, sh, step
from pipegate.errors import PermissionDenied


def _publish_job(permissions=("PYPI_TOKEN",)):
    return job(
        "publish",
        step("upload", "publish", command="twine upload", token_env="TWINE_PASSWORD", token=secret("PYPI_TOKEN")),
        permissions=permissions,
    )


def test_secret_store_from_env_strips_prefix():
    store = SecretStore.from_env({"PIPEGATE_SECRET_PYPI_TOKEN": "abc", "HOME": "/root"})
    assert store.get("PYPI_TOKEN") == "abc"
    assert "HOME" not in store
    assert "abc" not in repr(store)


def test_base_environment_drops_secret_variables():
    env = base_environment({"PIPEGATE_SECRET_PYPI_TOKEN": "abc", "PATH": "/bin"})
    assert env == {"PATH": "/bin"}


def test_referenced_secrets_walks_params_and_env():
    j = job(
        "x",
        sh("a", "true", env={"TOKEN": secret("A")}),
        step("b", "run", run="true", nested={"list": [secret("B")]}),
    )
    assert referenced_secrets(j) == {"A", "B"}


def test_scope_job_grants_declared_and_allowed_credentials():
    creds = scope_job(_publish_job(), CredentialScope(frozenset({"PYPI_TOKEN"})), SecretStore({"PYPI_TOKEN": "v"}))
    assert creds.values == {"PYPI_TOKEN": "v"}
    assert "v" not in repr(creds)


def test_scope_job_denies_credentials_the_trigger_did_not_grant():
    with pytest.raises(PermissionDenied) as exc:
        scope_job(_publish_job(), CredentialScope(), SecretStore({"PYPI_TOKEN": "v"}))
    assert exc.value.credential == "PYPI_TOKEN"
    assert "not granted" in str(exc.value)


def test_scope_job_denies_undeclared_secret_use():
    with pytest.raises(PermissionDenied, match="not declared"):
        scope_job(_publish_job(permissions=()), CredentialScope(frozenset({"PYPI_TOKEN"})), SecretStore({"PYPI_TOKEN": "v"}))


def test_scope_job_denies_missing_value():
    with pytest.raises(PermissionDenied, match="no value configured"):
        scope_job(_publish_job(), CredentialScope(frozenset({"PYPI_TOKEN"})), SecretStore())


def test_resolve_replaces_markers_recursively():
    creds = JobCredentials("publish", {"A": "1"})
    assert creds.resolve({"x": [secret("A"), "plain"], "y": (secret("A"),)}) == {"x": ["1", "plain"], "y": ("1",)}


def test_resolve_rejects_out_of_scope_marker():
    with pytest.raises(PermissionDenied):
        JobCredentials("publish", {}).resolve(secret("A"))
