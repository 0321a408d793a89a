"""
gitops_provisioner.config — Environment-driven configuration.

Values come from the environment first; CLI flags override them. Missing
credentials are not an error here: the Coordinator's validation phase
reports them so the operator sees exactly which prerequisite is absent.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from botocore.config import Config

from gitops_provisioner.models import ProvisioningRequest, validate_deployment_id

DEFAULT_SPACES_REGION = "nyc3"
DEFAULT_SES_REGION = "us-east-1"
DEFAULT_SECRET_STORE = "github"
DEFAULT_SECRET_PREFIX = "gitops"
DEFAULT_STATE_DIR = "~/.gitops-provisioner"

SECRET_STORE_CHOICES: tuple[str, ...] = ("github", "secretsmanager")

DEFAULT_CALL_TIMEOUT_SECONDS = 30.0
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff applied inside every driver call."""

    attempts: int = DEFAULT_RETRY_ATTEMPTS
    base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS

    def delay_for(self, attempt: int) -> float:
        """Delay after the 1-indexed ``attempt`` failed: base, 2*base, 4*base..."""
        return self.base_delay * (2 ** (attempt - 1))

    def botocore_config(self, **overrides: Any) -> Config:
        # Retries are ours; botocore makes a single attempt per call.
        return Config(
            connect_timeout=self.timeout,
            read_timeout=self.timeout,
            retries={"max_attempts": 1, "mode": "standard"},
            **overrides,
        )


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def resolve_state_dir(override: str | None = None) -> Path:
    raw = override or _env("GITOPS_STATE_DIR") or DEFAULT_STATE_DIR
    return Path(raw).expanduser()


def request_from_env(
    *,
    deployment_id: str | None = None,
    domain: str | None = None,
    spaces_region: str | None = None,
    ses_region: str | None = None,
    secret_store: str | None = None,
    github_repo: str | None = None,
) -> ProvisioningRequest:
    """Build a ProvisioningRequest from the environment plus explicit overrides."""
    resolved_deployment = deployment_id or _env("SETUP_REPO_CLUSTER_NAME")
    if not resolved_deployment:
        raise ValueError("A deployment id is required (argument or SETUP_REPO_CLUSTER_NAME)")
    validate_deployment_id(resolved_deployment)

    store = secret_store or _env("GITOPS_SECRET_STORE", DEFAULT_SECRET_STORE)
    if store not in SECRET_STORE_CHOICES:
        raise ValueError(f"Unknown secret store {store!r}; expected one of {SECRET_STORE_CHOICES}")

    return ProvisioningRequest(
        deployment_id=resolved_deployment,
        domain=domain or _env("SETUP_REPO_DOMAIN"),
        spaces_region=spaces_region or _env("SETUP_REPO_SPACES_REGION", DEFAULT_SPACES_REGION),
        ses_region=ses_region or _env("SETUP_REPO_SES_REGION", DEFAULT_SES_REGION),
        digitalocean_token=_env("DIGITALOCEAN_TOKEN"),
        aws_access_key_id=_env("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=_env("AWS_SECRET_ACCESS_KEY"),
        spaces_access_key_id=_env("SPACES_ACCESS_KEY_ID"),
        spaces_secret_access_key=_env("SPACES_SECRET_ACCESS_KEY"),
        secret_store=store,
        github_repo=github_repo or _env("GITOPS_GITHUB_REPO") or None,
        secret_prefix=_env("GITOPS_SECRET_PREFIX", DEFAULT_SECRET_PREFIX),
    )
