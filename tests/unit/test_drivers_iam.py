"""Unit tests for gitops_provisioner.drivers.iam (moto-backed)."""

from __future__ import annotations

import json
from typing import Any

import boto3
import pytest
from moto import mock_aws

from gitops_provisioner.config import RetryPolicy
from gitops_provisioner.drivers.iam import (
    SES_SEND_POLICY_DOCUMENT,
    IdentityAccessKeyDriver,
    IdentityPolicyDriver,
    IdentityUserDriver,
    caller_account_id,
)
from gitops_provisioner.exceptions import ProviderError
from gitops_provisioner.models import ResourceKind, ResourceRecord, ReusePolicy

_POLICY = RetryPolicy(attempts=1, base_delay=0)
_USER = "demo-ses-smtp"


def _iam() -> Any:
    return boto3.client("iam")


def _drivers(
    client: Any,
) -> tuple[IdentityUserDriver, IdentityPolicyDriver, IdentityAccessKeyDriver]:
    return (
        IdentityUserDriver(client, retry_policy=_POLICY),
        IdentityPolicyDriver(client, retry_policy=_POLICY),
        IdentityAccessKeyDriver(client, retry_policy=_POLICY),
    )


def test_reuse_policies() -> None:
    assert IdentityUserDriver.reuse_policy == ReusePolicy.ADOPT
    assert IdentityPolicyDriver.reuse_policy == ReusePolicy.ADOPT
    assert IdentityAccessKeyDriver.reuse_policy == ReusePolicy.ISSUE


@mock_aws
def test_user_create_exists_delete() -> None:
    client = _iam()
    users, _, _ = _drivers(client)

    record = users.create(_USER)

    assert record.kind == ResourceKind.IDENTITY_USER
    assert record.id == _USER
    assert users.exists(record)
    tags = client.list_user_tags(UserName=_USER)["Tags"]
    assert {"Key": "managed-by", "Value": "gitops-provisioner"} in tags

    users.delete(record)
    assert not users.exists(record)
    users.delete(record)


@mock_aws
def test_existing_user_is_adopted() -> None:
    client = _iam()
    client.create_user(UserName=_USER)
    users, _, _ = _drivers(client)

    record = users.create(_USER)

    assert record.id == _USER
    assert len(client.list_users()["Users"]) == 1


@mock_aws
def test_user_delete_strips_keys_and_policies() -> None:
    client = _iam()
    users, policies, keys = _drivers(client)
    user = users.create(_USER)
    policies.create("demo-ses-policy", _USER)
    keys.create(_USER)
    client.put_user_policy(
        UserName=_USER, PolicyName="inline", PolicyDocument=json.dumps(SES_SEND_POLICY_DOCUMENT)
    )

    users.delete(user)

    assert not users.exists(user)


@mock_aws
def test_policy_create_attaches_to_user() -> None:
    client = _iam()
    users, policies, _ = _drivers(client)
    users.create(_USER)

    record = policies.create("demo-ses-policy", _USER)

    assert record.kind == ResourceKind.IDENTITY_POLICY
    assert record.id.endswith(":policy/demo-ses-policy")
    assert record.scope == _USER
    attached = client.list_attached_user_policies(UserName=_USER)["AttachedPolicies"]
    assert [p["PolicyArn"] for p in attached] == [record.id]
    version = client.get_policy_version(PolicyArn=record.id, VersionId="v1")
    document = version["PolicyVersion"]["Document"]
    if isinstance(document, str):
        document = json.loads(document)
    assert document["Statement"][0]["Action"] == ["ses:SendEmail", "ses:SendRawEmail"]


@mock_aws
def test_existing_policy_is_adopted_by_name() -> None:
    client = _iam()
    existing = client.create_policy(
        PolicyName="demo-ses-policy", PolicyDocument=json.dumps(SES_SEND_POLICY_DOCUMENT)
    )["Policy"]["Arn"]
    users, policies, _ = _drivers(client)
    users.create(_USER)

    record = policies.create("demo-ses-policy", _USER)

    assert record.id == existing


@mock_aws
def test_attach_failure_removes_fresh_policy() -> None:
    client = _iam()
    _, policies, _ = _drivers(client)

    with pytest.raises(ProviderError) as excinfo:
        policies.create("demo-ses-policy", "no-such-user")

    assert excinfo.value.code == "NoSuchEntity"
    assert client.list_policies(Scope="Local")["Policies"] == []


@mock_aws
def test_policy_delete_detaches_first() -> None:
    client = _iam()
    users, policies, _ = _drivers(client)
    users.create(_USER)
    record = policies.create("demo-ses-policy", _USER)

    policies.delete(record)

    assert not policies.exists(record)
    assert client.list_attached_user_policies(UserName=_USER)["AttachedPolicies"] == []
    policies.delete(record)


@mock_aws
def test_access_key_issue_and_delete() -> None:
    client = _iam()
    users, _, keys = _drivers(client)
    users.create(_USER)

    record = keys.create(_USER)

    assert record.kind == ResourceKind.IDENTITY_ACCESS_KEY
    assert record.scope == _USER
    assert record.secret
    assert keys.exists(record)

    keys.delete(record)
    assert not keys.exists(record)
    keys.delete(record)


@mock_aws
def test_access_key_of_missing_user_does_not_exist() -> None:
    _, _, keys = _drivers(_iam())
    record = ResourceRecord(
        kind=ResourceKind.IDENTITY_ACCESS_KEY,
        id="AKIAGONE",
        created_at="2026-01-01T00:00:00Z",
        scope="gone-user",
    )
    assert not keys.exists(record)


def test_driver_rejects_foreign_record() -> None:
    users = IdentityUserDriver(object(), retry_policy=_POLICY)
    record = ResourceRecord(
        kind=ResourceKind.OBJECT_BUCKET, id="demo-tf-abc123", created_at="2026-01-01T00:00:00Z"
    )
    with pytest.raises(ValueError):
        users.delete(record)


@mock_aws
def test_caller_account_id() -> None:
    account = caller_account_id(boto3.client("sts"), _POLICY)
    assert account.isdigit()
    assert len(account) == 12
