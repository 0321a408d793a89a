"""Shared fixtures for gitops_provisioner unit tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from gitops_provisioner.journal import JournalStore
from gitops_provisioner.models import ProvisioningRequest

_REGION = "us-east-1"


@pytest.fixture(autouse=True)
def aws_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Fake credentials so moto intercepts every boto3 call."""
    monkeypatch.setenv("AWS_DEFAULT_REGION", _REGION)
    monkeypatch.setenv("AWS_REGION", _REGION)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")  # pragma: allowlist secret
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")


@pytest.fixture
def provisioning_request() -> ProvisioningRequest:
    return ProvisioningRequest(
        deployment_id="demo",
        domain="example.com",
        spaces_region="nyc3",
        ses_region=_REGION,
        digitalocean_token="do-token",  # pragma: allowlist secret
        aws_access_key_id="testing",
        aws_secret_access_key="testing",  # pragma: allowlist secret
        spaces_access_key_id="spaces-admin",
        spaces_secret_access_key="spaces-admin-secret",  # pragma: allowlist secret
        secret_store="memory",
    )


@pytest.fixture
def store(tmp_path: Path) -> JournalStore:
    return JournalStore(tmp_path / "state")
