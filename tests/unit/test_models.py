"""Unit tests for gitops_provisioner.models."""

from __future__ import annotations

from datetime import UTC, datetime

from gitops_provisioner.models import (
    EXIT_CODES,
    Journal,
    ProvisioningState,
    ResourceKind,
    ResourceRecord,
    RunOutcome,
    iso8601_utc,
)


def test_iso8601_utc_uses_z_suffix() -> None:
    assert iso8601_utc(datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)) == "2026-01-02T03:04:05Z"


def test_record_serialization_omits_empty_optionals() -> None:
    record = ResourceRecord(
        kind=ResourceKind.IDENTITY_USER, id="demo-ses-smtp", created_at="2026-01-01T00:00:00Z"
    )
    assert record.to_dict() == {
        "kind": "identity_user",
        "id": "demo-ses-smtp",
        "createdAt": "2026-01-01T00:00:00Z",
    }
    assert ResourceRecord.from_dict(record.to_dict()) == record


def test_record_secret_is_hidden_from_repr_and_describe() -> None:
    record = ResourceRecord(
        kind=ResourceKind.IDENTITY_ACCESS_KEY,
        id="AKIAEXAMPLE",
        created_at="2026-01-01T00:00:00Z",
        scope="demo-ses-smtp",
        secret="super-secret",  # pragma: allowlist secret
    )
    assert "super-secret" not in repr(record)
    assert record.describe() == "identity_access_key: AKIAEXAMPLE (scope demo-ses-smtp)"
    assert ResourceRecord.from_dict(record.to_dict()).secret == "super-secret"


def test_journal_find_and_dict_shape() -> None:
    bucket = ResourceRecord(
        kind=ResourceKind.OBJECT_BUCKET, id="demo-tf-abc123", created_at="2026-01-01T00:00:00Z"
    )
    journal = Journal(
        deployment_id="demo",
        started_at="2026-01-01T00:00:00Z",
        records=[bucket],
        published=["AWS_SES_SMTP_USERNAME"],
    )

    data = journal.to_dict()
    assert set(data) == {"deploymentId", "startedAt", "records", "published"}
    assert journal.find(ResourceKind.OBJECT_BUCKET) == bucket
    assert journal.find(ResourceKind.IDENTITY_USER) is None
    assert Journal.from_dict(data) == journal


def test_exit_codes() -> None:
    assert EXIT_CODES[ProvisioningState.COMMITTED] == 0
    assert RunOutcome("demo", ProvisioningState.FAILED_ROLLBACK).exit_code == 4
    assert RunOutcome("demo", ProvisioningState.FAILED_ROLLBACK).needs_manual_cleanup
    assert RunOutcome("demo", ProvisioningState.CREATING).exit_code == 1
