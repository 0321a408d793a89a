"""
gitops_provisioner.drivers.iam — AWS IAM drivers for the SES SMTP principal.

IdentityUserDriver        <deployment>-ses-smtp user (adopted if it already exists)
IdentityPolicyDriver      send-only SES policy, attached to that user
IdentityAccessKeyDriver   access key whose id/secret become the SMTP credential

IAM refuses to delete a user that still has keys or attached policies, and a
policy that is still attached anywhere, so each delete() strips dependents
first. Entities that are already gone count as deleted.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

import boto3

from gitops_provisioner.config import RetryPolicy
from gitops_provisioner.drivers.base import ResourceDriver, call_with_retry, response_field
from gitops_provisioner.exceptions import ProviderError
from gitops_provisioner.models import (
    ResourceKind,
    ResourceRecord,
    ReusePolicy,
    iso8601_utc,
    now_utc,
)

logger = logging.getLogger(__name__)

MANAGED_BY_TAG = {"Key": "managed-by", "Value": "gitops-provisioner"}

SES_SEND_POLICY_DOCUMENT: dict[str, Any] = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Action": [
                "ses:SendEmail",
                "ses:SendRawEmail",
            ],
            "Resource": "*",
        }
    ],
}


def iam_client(
    *,
    access_key_id: str,
    secret_access_key: str,
    retry_policy: RetryPolicy | None = None,
) -> Any:
    policy = retry_policy or RetryPolicy()
    return boto3.client(
        "iam",
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        config=policy.botocore_config(),
    )


def _missing(exc: ProviderError) -> bool:
    return exc.code == "NoSuchEntity"


class _IamDriver(ResourceDriver):
    def __init__(
        self,
        client: Any,
        *,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(retry_policy=retry_policy, sleep=sleep)
        self._iam = client


# ---------------------------------------------------------------------------
# IdentityUserDriver
# ---------------------------------------------------------------------------


class IdentityUserDriver(_IamDriver):
    kind = ResourceKind.IDENTITY_USER
    reuse_policy = ReusePolicy.ADOPT

    def create(self, user_name: str) -> ResourceRecord:
        try:
            self._call(
                "iam:CreateUser",
                lambda: self._iam.create_user(UserName=user_name, Tags=[MANAGED_BY_TAG]),
            )
            logger.info("Created IAM user %s", user_name)
        except ProviderError as exc:
            if exc.code != "EntityAlreadyExists":
                raise
            self._call("iam:GetUser", lambda: self._iam.get_user(UserName=user_name))
            logger.info("IAM user %s already exists, adopting it", user_name)
        return ResourceRecord(kind=self.kind, id=user_name, created_at=iso8601_utc(now_utc()))

    def exists(self, record: ResourceRecord) -> bool:
        self._check_kind(record)
        try:
            self._call("iam:GetUser", lambda: self._iam.get_user(UserName=record.id))
        except ProviderError as exc:
            if _missing(exc):
                return False
            raise
        return True

    def delete(self, record: ResourceRecord) -> None:
        self._check_kind(record)
        user_name = record.id
        if not self.exists(record):
            logger.info("IAM user %s already gone", user_name)
            return

        keys = self._call(
            "iam:ListAccessKeys", lambda: self._iam.list_access_keys(UserName=user_name)
        ).get("AccessKeyMetadata", [])
        for key in keys:
            access_key_id = str(key["AccessKeyId"])
            self._call(
                "iam:DeleteAccessKey",
                lambda access_key_id=access_key_id: self._iam.delete_access_key(
                    UserName=user_name, AccessKeyId=access_key_id
                ),
            )

        attached = self._call(
            "iam:ListAttachedUserPolicies",
            lambda: self._iam.list_attached_user_policies(UserName=user_name),
        ).get("AttachedPolicies", [])
        for policy in attached:
            arn = str(policy["PolicyArn"])
            self._call(
                "iam:DetachUserPolicy",
                lambda arn=arn: self._iam.detach_user_policy(UserName=user_name, PolicyArn=arn),
            )

        inline = self._call(
            "iam:ListUserPolicies", lambda: self._iam.list_user_policies(UserName=user_name)
        ).get("PolicyNames", [])
        for policy_name in inline:
            name = str(policy_name)
            self._call(
                "iam:DeleteUserPolicy",
                lambda name=name: self._iam.delete_user_policy(UserName=user_name, PolicyName=name),
            )

        self._call("iam:DeleteUser", lambda: self._iam.delete_user(UserName=user_name))
        logger.info(
            "Deleted IAM user %s (%d access keys, %d attached policies removed)",
            user_name,
            len(keys),
            len(attached),
        )


# ---------------------------------------------------------------------------
# IdentityPolicyDriver
# ---------------------------------------------------------------------------


class IdentityPolicyDriver(_IamDriver):
    kind = ResourceKind.IDENTITY_POLICY
    reuse_policy = ReusePolicy.ADOPT

    def create(self, policy_name: str, user_name: str) -> ResourceRecord:
        created = False
        try:
            response = self._call(
                "iam:CreatePolicy",
                lambda: self._iam.create_policy(
                    PolicyName=policy_name,
                    PolicyDocument=json.dumps(SES_SEND_POLICY_DOCUMENT),
                    Description="Send-only SES access for cluster SMTP relay",
                ),
            )
            arn = response_field(response, "Policy", "Arn")
            created = True
            logger.info("Created IAM policy %s", arn)
        except ProviderError as exc:
            if exc.code != "EntityAlreadyExists":
                raise
            arn = self._find_policy_arn(policy_name)
            logger.info("IAM policy %s already exists, adopting it", arn)

        try:
            self._call(
                "iam:AttachUserPolicy",
                lambda: self._iam.attach_user_policy(UserName=user_name, PolicyArn=arn),
            )
        except ProviderError:
            # Not journaled yet, so nothing else would clean it up.
            if created:
                try:
                    self._delete_policy(arn)
                except ProviderError:
                    logger.exception("Could not remove unattached IAM policy %s", arn)
            raise

        return ResourceRecord(
            kind=self.kind,
            id=arn,
            created_at=iso8601_utc(now_utc()),
            scope=user_name,
        )

    def exists(self, record: ResourceRecord) -> bool:
        self._check_kind(record)
        try:
            self._call("iam:GetPolicy", lambda: self._iam.get_policy(PolicyArn=record.id))
        except ProviderError as exc:
            if _missing(exc):
                return False
            raise
        return True

    def delete(self, record: ResourceRecord) -> None:
        self._check_kind(record)
        if not self.exists(record):
            logger.info("IAM policy %s already gone", record.id)
            return
        self._delete_policy(record.id)

    def _find_policy_arn(self, policy_name: str) -> str:
        def _scan() -> str | None:
            paginator = self._iam.get_paginator("list_policies")
            for page in paginator.paginate(Scope="Local"):
                for policy in page.get("Policies", []):
                    if policy.get("PolicyName") == policy_name:
                        return str(policy["Arn"])
            return None

        arn = self._call("iam:ListPolicies", _scan)
        if arn is None:
            raise ProviderError(
                f"IAM reported {policy_name} as existing but it is not listed",
                operation="iam:ListPolicies",
            )
        return arn

    def _delete_policy(self, arn: str) -> None:
        entities = self._call(
            "iam:ListEntitiesForPolicy",
            lambda: self._iam.list_entities_for_policy(PolicyArn=arn),
        )
        for user in entities.get("PolicyUsers", []):
            name = str(user["UserName"])
            self._call(
                "iam:DetachUserPolicy",
                lambda name=name: self._iam.detach_user_policy(UserName=name, PolicyArn=arn),
            )
        for group in entities.get("PolicyGroups", []):
            name = str(group["GroupName"])
            self._call(
                "iam:DetachGroupPolicy",
                lambda name=name: self._iam.detach_group_policy(GroupName=name, PolicyArn=arn),
            )
        for role in entities.get("PolicyRoles", []):
            name = str(role["RoleName"])
            self._call(
                "iam:DetachRolePolicy",
                lambda name=name: self._iam.detach_role_policy(RoleName=name, PolicyArn=arn),
            )

        versions = self._call(
            "iam:ListPolicyVersions", lambda: self._iam.list_policy_versions(PolicyArn=arn)
        ).get("Versions", [])
        for version in versions:
            if version.get("IsDefaultVersion"):
                continue
            version_id = str(version["VersionId"])
            self._call(
                "iam:DeletePolicyVersion",
                lambda version_id=version_id: self._iam.delete_policy_version(
                    PolicyArn=arn, VersionId=version_id
                ),
            )

        self._call("iam:DeletePolicy", lambda: self._iam.delete_policy(PolicyArn=arn))
        logger.info("Deleted IAM policy %s", arn)


# ---------------------------------------------------------------------------
# IdentityAccessKeyDriver
# ---------------------------------------------------------------------------


class IdentityAccessKeyDriver(_IamDriver):
    kind = ResourceKind.IDENTITY_ACCESS_KEY
    reuse_policy = ReusePolicy.ISSUE

    def create(self, user_name: str) -> ResourceRecord:
        response = self._call(
            "iam:CreateAccessKey", lambda: self._iam.create_access_key(UserName=user_name)
        )
        access_key_id = response_field(response, "AccessKey", "AccessKeyId")
        secret = response_field(response, "AccessKey", "SecretAccessKey")
        logger.info("Created IAM access key %s for %s", access_key_id, user_name)
        return ResourceRecord(
            kind=self.kind,
            id=access_key_id,
            created_at=iso8601_utc(now_utc()),
            scope=user_name,
            secret=secret,
        )

    def exists(self, record: ResourceRecord) -> bool:
        self._check_kind(record)
        try:
            keys = self._call(
                "iam:ListAccessKeys", lambda: self._iam.list_access_keys(UserName=record.scope)
            ).get("AccessKeyMetadata", [])
        except ProviderError as exc:
            if _missing(exc):
                return False
            raise
        return any(str(key.get("AccessKeyId")) == record.id for key in keys)

    def delete(self, record: ResourceRecord) -> None:
        self._check_kind(record)
        try:
            self._call(
                "iam:DeleteAccessKey",
                lambda: self._iam.delete_access_key(UserName=record.scope, AccessKeyId=record.id),
            )
        except ProviderError as exc:
            if _missing(exc):
                logger.info("IAM access key %s already gone", record.id)
                return
            raise
        logger.info("Deleted IAM access key %s", record.id)


def caller_account_id(sts_client: Any, retry_policy: RetryPolicy | None = None) -> str:
    """Account id of the configured AWS credentials (validation probe)."""
    identity = call_with_retry(
        "sts:GetCallerIdentity",
        sts_client.get_caller_identity,
        retry_policy or RetryPolicy(),
    )
    return response_field(identity, "Account")
