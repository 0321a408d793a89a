"""Unit tests for gitops_provisioner.secret_stores."""

from __future__ import annotations

import subprocess
from typing import Any
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from gitops_provisioner import secret_stores
from gitops_provisioner.exceptions import PropagationError, ProviderError
from gitops_provisioner.secret_stores import (
    PUBLISHED_KEYS,
    GitHubSecretStore,
    MemorySecretStore,
    SecretPropagator,
    SecretsManagerStore,
)

_CREDENTIALS = {
    "DIGITALOCEAN_SPACES_ACCESS_KEY": "DO00KEY",
    "DIGITALOCEAN_SPACES_SECRET_KEY": "do-secret",  # pragma: allowlist secret
    "AWS_SES_SMTP_USERNAME": "AKIAEXAMPLE",
    "AWS_SES_SMTP_PASSWORD": "smtp-password",  # pragma: allowlist secret
}


class _FlakyStore(MemorySecretStore):
    def __init__(self, failing: set[str]) -> None:
        super().__init__()
        self.failing = failing

    def upsert(self, key: str, value: str) -> str:
        if key in self.failing:
            raise ProviderError(f"{key} rejected", operation="test:Upsert")
        return super().upsert(key, value)


def test_exactly_four_published_keys() -> None:
    assert PUBLISHED_KEYS == tuple(_CREDENTIALS)


def test_memory_store_reports_created_then_updated() -> None:
    store = MemorySecretStore()
    assert store.upsert("A", "1") == "created"
    assert store.upsert("A", "2") == "updated"
    assert store.values == {"A": "2"}
    assert "2" not in repr(store)


# ---------------------------------------------------------------------------
# GitHubSecretStore
# ---------------------------------------------------------------------------


def test_github_store_passes_value_on_stdin(monkeypatch: pytest.MonkeyPatch) -> None:
    run = MagicMock(return_value=subprocess.CompletedProcess([], 0, stdout="", stderr=""))
    monkeypatch.setattr(secret_stores.subprocess, "run", run)

    outcome = GitHubSecretStore(repo="acme/cluster").upsert("AWS_SES_SMTP_PASSWORD", "pw")

    assert outcome == "updated"
    command = run.call_args.args[0]
    assert command == ["gh", "secret", "set", "AWS_SES_SMTP_PASSWORD", "--repo", "acme/cluster"]
    assert "pw" not in command
    assert run.call_args.kwargs["input"] == "pw"


def test_github_store_failure_raises_provider_error(monkeypatch: pytest.MonkeyPatch) -> None:
    run = MagicMock(
        return_value=subprocess.CompletedProcess([], 1, stdout="", stderr="HTTP 404")
    )
    monkeypatch.setattr(secret_stores.subprocess, "run", run)

    with pytest.raises(ProviderError) as excinfo:
        GitHubSecretStore().upsert("AWS_SES_SMTP_USERNAME", "AKIA")

    assert excinfo.value.operation == "github:SetSecret"
    assert "HTTP 404" in str(excinfo.value)


def test_github_store_availability_checks(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(secret_stores.shutil, "which", lambda _name: None)
    run = MagicMock(return_value=subprocess.CompletedProcess([], 0, stdout="", stderr=""))
    monkeypatch.setattr(secret_stores.subprocess, "run", run)
    store = GitHubSecretStore()

    assert store.available() is False
    assert store.authenticated() is True
    assert run.call_args.args[0] == ["gh", "auth", "status"]


# ---------------------------------------------------------------------------
# SecretsManagerStore
# ---------------------------------------------------------------------------


@mock_aws
def test_secrets_manager_create_then_update() -> None:
    client = boto3.client("secretsmanager", region_name="us-east-1")
    store = SecretsManagerStore(client, prefix="/gitops/", deployment_id="demo")

    first = store.upsert("AWS_SES_SMTP_USERNAME", "AKIA-1")
    second = store.upsert("AWS_SES_SMTP_USERNAME", "AKIA-2")

    assert (first, second) == ("created", "updated")
    value = client.get_secret_value(SecretId="gitops/demo/AWS_SES_SMTP_USERNAME")
    assert value["SecretString"] == "AKIA-2"


def test_secrets_manager_errors_become_provider_errors() -> None:
    client: Any = MagicMock()
    client.create_secret.side_effect = ClientError(
        {"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "CreateSecret"
    )
    store = SecretsManagerStore(client, prefix="gitops", deployment_id="demo")

    with pytest.raises(ProviderError):
        store.upsert("AWS_SES_SMTP_USERNAME", "AKIA")
    client.put_secret_value.assert_not_called()


# ---------------------------------------------------------------------------
# SecretPropagator
# ---------------------------------------------------------------------------


def test_propagator_publishes_every_key() -> None:
    store = MemorySecretStore()

    result = SecretPropagator().publish(store, _CREDENTIALS)

    assert store.values == _CREDENTIALS
    assert result.created == list(_CREDENTIALS)
    assert result.published == list(_CREDENTIALS)


def test_partial_failure_reports_pending_and_published() -> None:
    store = _FlakyStore(failing={"AWS_SES_SMTP_PASSWORD", "DIGITALOCEAN_SPACES_SECRET_KEY"})

    with pytest.raises(PropagationError) as excinfo:
        SecretPropagator().publish(store, _CREDENTIALS)

    assert excinfo.value.pending == ["DIGITALOCEAN_SPACES_SECRET_KEY", "AWS_SES_SMTP_PASSWORD"]
    assert excinfo.value.published == [
        "DIGITALOCEAN_SPACES_ACCESS_KEY",
        "AWS_SES_SMTP_USERNAME",
    ]
    assert set(excinfo.value.errors) == set(excinfo.value.pending)
    assert set(store.values) == {"DIGITALOCEAN_SPACES_ACCESS_KEY", "AWS_SES_SMTP_USERNAME"}
