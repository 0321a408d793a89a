"""
gitops_provisioner.secret_stores — Secret stores and the Secret Propagator.

Stores upsert one key at a time (create if absent, overwrite if present):

    GitHubSecretStore      repository secrets via the `gh` CLI (value on stdin)
    SecretsManagerStore    AWS Secrets Manager, <prefix>/<deployment>/<key>
    MemorySecretStore      in-process dict for dry runs and tests

The propagator publishes every key independently and reports which keys are
still pending, so a rerun only has to publish the remainder.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from gitops_provisioner.exceptions import PropagationError, ProviderError

logger = logging.getLogger(__name__)

SPACES_ACCESS_KEY = "DIGITALOCEAN_SPACES_ACCESS_KEY"
SPACES_SECRET_KEY = "DIGITALOCEAN_SPACES_SECRET_KEY"  # pragma: allowlist secret
SMTP_USERNAME = "AWS_SES_SMTP_USERNAME"
SMTP_PASSWORD = "AWS_SES_SMTP_PASSWORD"  # pragma: allowlist secret

PUBLISHED_KEYS: tuple[str, ...] = (
    SPACES_ACCESS_KEY,
    SPACES_SECRET_KEY,
    SMTP_USERNAME,
    SMTP_PASSWORD,
)


class SecretStore(Protocol):
    name: str

    def upsert(self, key: str, value: str) -> str:
        """Write ``value`` under ``key``; return 'created' or 'updated'."""
        ...


# ---------------------------------------------------------------------------
# GitHub repository secrets
# ---------------------------------------------------------------------------


class GitHubSecretStore:
    name = "github"

    def __init__(self, *, repo: str | None = None, gh_binary: str = "gh") -> None:
        self._repo = repo
        self._gh = gh_binary

    def available(self) -> bool:
        return shutil.which(self._gh) is not None

    def authenticated(self) -> bool:
        result = subprocess.run(
            [self._gh, "auth", "status"],
            check=False,
            capture_output=True,
            text=True,
        )
        return result.returncode == 0

    def upsert(self, key: str, value: str) -> str:
        command = [self._gh, "secret", "set", key]
        if self._repo:
            command.extend(["--repo", self._repo])
        # gh reads the body from stdin when --body is absent; keeps it out of argv.
        result = subprocess.run(
            command,
            input=value,
            check=False,
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            raise ProviderError(
                f"gh secret set {key} failed ({result.returncode}): {result.stderr.strip()}",
                operation="github:SetSecret",
                code=str(result.returncode),
            )
        # gh does not say whether the secret already existed.
        return "updated"


# ---------------------------------------------------------------------------
# AWS Secrets Manager
# ---------------------------------------------------------------------------


class SecretsManagerStore:
    name = "secretsmanager"

    def __init__(self, client: Any, *, prefix: str, deployment_id: str) -> None:
        self._client = client
        self._prefix = prefix.strip("/")
        self._deployment_id = deployment_id

    def secret_name(self, key: str) -> str:
        return f"{self._prefix}/{self._deployment_id}/{key}"

    def upsert(self, key: str, value: str) -> str:
        secret_name = self.secret_name(key)
        try:
            try:
                self._client.create_secret(
                    Name=secret_name,
                    SecretString=value,
                    Description=f"GitOps bootstrap secret ({self._deployment_id}): {key}",
                )
                return "created"
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code", "")
                if code != "ResourceExistsException":
                    raise

            self._client.put_secret_value(SecretId=secret_name, SecretString=value)
            return "updated"
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError(
                f"Could not publish {secret_name}: {exc}",
                operation="secretsmanager:PutSecretValue",
            ) from exc


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


@dataclass
class MemorySecretStore:
    name: str = "memory"
    values: dict[str, str] = field(default_factory=dict, repr=False)

    def upsert(self, key: str, value: str) -> str:
        outcome = "updated" if key in self.values else "created"
        self.values[key] = value
        return outcome


# ---------------------------------------------------------------------------
# Propagator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PublishResult:
    created: list[str]
    updated: list[str]

    @property
    def published(self) -> list[str]:
        return [*self.created, *self.updated]


class SecretPropagator:
    """Publishes a credential map to a store, one independent upsert per key."""

    def publish(self, store: SecretStore, credentials: Mapping[str, str]) -> PublishResult:
        created: list[str] = []
        updated: list[str] = []
        errors: dict[str, str] = {}

        for key, value in credentials.items():
            try:
                outcome = store.upsert(key, value)
            except ProviderError as exc:
                errors[key] = str(exc)
                logger.error("Publishing %s to %s failed: %s", key, store.name, exc)
                continue
            (created if outcome == "created" else updated).append(key)
            logger.info("Published %s to %s (%s)", key, store.name, outcome)

        if errors:
            raise PropagationError(
                pending=[key for key in credentials if key in errors],
                published=[*created, *updated],
                errors=errors,
            )
        return PublishResult(created=created, updated=updated)
