"""
gitops_provisioner.models — Data model for a provisioning run.

ResourceRecord   one externally created resource, enough to delete it later
Journal          ordered, durable log of ResourceRecords for one deployment
ProvisioningRequest  operator input, read-only for the whole run
DerivedCredential    SMTP credential computed from an IAM secret key
NameCandidate        ephemeral <base>-<suffix> name under negotiation
RunOutcome           terminal state reported back to the operator layer
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

# ---------------------------------------------------------------------------
# Naming conventions shared by drivers and the dry-run planner
# ---------------------------------------------------------------------------
BUCKET_NAME_INFIX = "tf"
SMTP_USER_SUFFIX = "ses-smtp"
SMTP_POLICY_SUFFIX = "ses-policy"

# Prefixes bucket and IAM names and names the journal file, so it must be
# safe in all three.
DEPLOYMENT_ID_PATTERN = re.compile(r"[a-z0-9][a-z0-9-]{1,48}")


def validate_deployment_id(deployment_id: str) -> str:
    if not DEPLOYMENT_ID_PATTERN.fullmatch(deployment_id):
        raise ValueError(
            f"Invalid deployment id {deployment_id!r}: use 2-49 lowercase letters, digits"
            " or hyphens, starting with a letter or digit"
        )
    return deployment_id


def now_utc() -> datetime:
    return datetime.now(UTC)


def iso8601_utc(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Enums — constrained vocabulary
# ---------------------------------------------------------------------------


class ResourceKind(StrEnum):
    OBJECT_BUCKET = "object_bucket"
    OBJECT_ACCESS_KEY = "object_access_key"
    IDENTITY_USER = "identity_user"
    IDENTITY_POLICY = "identity_policy"
    IDENTITY_ACCESS_KEY = "identity_access_key"


class ReusePolicy(StrEnum):
    """How a driver treats a resource that may already exist."""

    NEGOTIATE = "negotiate"  # always a fresh, unused name
    ADOPT = "adopt"  # same name already present -> reuse it
    ISSUE = "issue"  # every create issues a new credential


class ProvisioningState(StrEnum):
    INIT = "init"
    VALIDATING = "validating"
    CREATING = "creating"
    COMMITTING = "committing"
    COMMITTED = "committed"
    COMMIT_PENDING = "commit_pending"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED_ROLLBACK = "failed_rollback"
    ABORTED = "aborted"


TERMINAL_STATES: frozenset[ProvisioningState] = frozenset(
    {
        ProvisioningState.COMMITTED,
        ProvisioningState.COMMIT_PENDING,
        ProvisioningState.ROLLED_BACK,
        ProvisioningState.FAILED_ROLLBACK,
        ProvisioningState.ABORTED,
    }
)

EXIT_CODES: dict[ProvisioningState, int] = {
    ProvisioningState.COMMITTED: 0,
    ProvisioningState.ABORTED: 2,
    ProvisioningState.ROLLED_BACK: 3,
    ProvisioningState.FAILED_ROLLBACK: 4,
    ProvisioningState.COMMIT_PENDING: 5,
}
EXIT_LOCKED = 6


# ---------------------------------------------------------------------------
# Journal contents
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResourceRecord:
    """One created resource.

    ``scope`` is the owning resource id where the provider needs it to delete
    (bucket name for a Spaces key, user name for an IAM access key).
    ``secret`` is only set on access-key kinds and never appears in repr.
    """

    kind: ResourceKind
    id: str
    created_at: str  # ISO 8601 UTC
    scope: str | None = None
    secret: str | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "id": self.id,
            "createdAt": self.created_at,
        }
        if self.scope is not None:
            data["scope"] = self.scope
        if self.secret is not None:
            data["secret"] = self.secret
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceRecord:
        return cls(
            kind=ResourceKind(str(data["kind"])),
            id=str(data["id"]),
            created_at=str(data["createdAt"]),
            scope=str(data["scope"]) if data.get("scope") else None,
            secret=str(data["secret"]) if data.get("secret") else None,
        )

    def describe(self) -> str:
        """Operator-facing one-liner; never includes the secret."""
        if self.scope:
            return f"{self.kind.value}: {self.id} (scope {self.scope})"
        return f"{self.kind.value}: {self.id}"


@dataclass
class Journal:
    """Ordered log of created resources for one deployment.

    Reading ``records`` front to back is a valid creation order, so reading
    it back to front is a valid deletion order.
    """

    deployment_id: str
    started_at: str
    records: list[ResourceRecord] = field(default_factory=list)
    published: list[str] = field(default_factory=list)

    def find(self, kind: ResourceKind) -> ResourceRecord | None:
        for record in self.records:
            if record.kind == kind:
                return record
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "deploymentId": self.deployment_id,
            "startedAt": self.started_at,
            "records": [record.to_dict() for record in self.records],
            "published": list(self.published),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Journal:
        records = data.get("records", [])
        published = data.get("published", [])
        return cls(
            deployment_id=str(data["deploymentId"]),
            started_at=str(data["startedAt"]),
            records=[ResourceRecord.from_dict(item) for item in records],
            published=[str(item) for item in published],
        )


# ---------------------------------------------------------------------------
# Run input / derived values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProvisioningRequest:
    """Operator-supplied input for one provisioning run."""

    deployment_id: str
    domain: str
    spaces_region: str
    ses_region: str
    digitalocean_token: str = field(repr=False)
    aws_access_key_id: str = field(repr=False)
    aws_secret_access_key: str = field(repr=False)
    spaces_access_key_id: str = field(default="", repr=False)
    spaces_secret_access_key: str = field(default="", repr=False)
    secret_store: str = "github"
    github_repo: str | None = None
    secret_prefix: str = "gitops"

    @property
    def bucket_base(self) -> str:
        return f"{self.deployment_id}-{BUCKET_NAME_INFIX}"

    @property
    def smtp_user_name(self) -> str:
        return f"{self.deployment_id}-{SMTP_USER_SUFFIX}"

    @property
    def policy_name(self) -> str:
        return f"{self.deployment_id}-{SMTP_POLICY_SUFFIX}"


@dataclass(frozen=True)
class DerivedCredential:
    username: str
    secret_key: str = field(repr=False)
    derived_password: str = field(repr=False)


@dataclass(frozen=True)
class NameCandidate:
    base: str
    suffix: str

    @property
    def name(self) -> str:
        return f"{self.base}-{self.suffix}"


@dataclass(frozen=True)
class DnsRecord:
    """DNS record the operator must add for SES domain verification."""

    record_type: str
    name: str
    value: str


@dataclass
class RunOutcome:
    """Terminal result of one Coordinator run."""

    deployment_id: str
    state: ProvisioningState
    message: str = ""
    missing_prerequisite: str | None = None
    remaining: list[ResourceRecord] = field(default_factory=list)
    pending_secrets: list[str] = field(default_factory=list)
    bucket_name: str | None = None
    dns_records: list[DnsRecord] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.state, 1)

    @property
    def needs_manual_cleanup(self) -> bool:
        return self.state == ProvisioningState.FAILED_ROLLBACK
