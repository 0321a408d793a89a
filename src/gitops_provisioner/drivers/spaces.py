"""
gitops_provisioner.drivers.spaces — DigitalOcean Spaces drivers.

ObjectBucketDriver      private Terraform-state bucket via the S3-compatible API
ObjectAccessKeyDriver   bucket-scoped Spaces key via the DigitalOcean REST API

Bucket names share one global namespace, so create() negotiates a free
<deployment>-tf-<hex> name first. Spaces keys are always issued fresh; the
secret is only ever returned by the create call.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import boto3
import requests
from botocore.exceptions import ClientError

from gitops_provisioner.config import RetryPolicy
from gitops_provisioner.drivers.base import ResourceDriver, error_code
from gitops_provisioner.exceptions import ProviderError
from gitops_provisioner.models import (
    ResourceKind,
    ResourceRecord,
    ReusePolicy,
    iso8601_utc,
    now_utc,
)
from gitops_provisioner.naming import DEFAULT_MAX_ATTEMPTS, reserve

logger = logging.getLogger(__name__)

DIGITALOCEAN_API_URL = "https://api.digitalocean.com/v2"
SPACES_KEY_PERMISSION = "readwrite"


def spaces_endpoint(region: str) -> str:
    return f"https://{region}.digitaloceanspaces.com"


def spaces_s3_client(
    region: str,
    *,
    access_key_id: str,
    secret_access_key: str,
    retry_policy: RetryPolicy | None = None,
) -> Any:
    """S3 client pointed at the Spaces endpoint for ``region``."""
    policy = retry_policy or RetryPolicy()
    return boto3.client(
        "s3",
        region_name=region,
        endpoint_url=spaces_endpoint(region),
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        config=policy.botocore_config(),
    )


def digitalocean_session(token: str) -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
    )
    return session


# ---------------------------------------------------------------------------
# ObjectBucketDriver
# ---------------------------------------------------------------------------


class ObjectBucketDriver(ResourceDriver):
    kind = ResourceKind.OBJECT_BUCKET
    reuse_policy = ReusePolicy.NEGOTIATE

    def __init__(
        self,
        s3_client: Any,
        *,
        region: str,
        max_name_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(retry_policy=retry_policy, sleep=sleep)
        self._s3 = s3_client
        self._region = region
        self._max_name_attempts = max_name_attempts

    def name_taken(self, name: str) -> bool:
        """True when any account already owns a bucket called ``name``."""

        def _head() -> bool:
            try:
                self._s3.head_bucket(Bucket=name)
            except ClientError as exc:
                code = error_code(exc)
                if code in {"404", "NoSuchBucket", "NotFound"}:
                    return False
                if code in {"403", "AccessDenied", "Forbidden"}:
                    # Owned by another account.
                    return True
                raise
            return True

        return self._call("s3:HeadBucket", _head)

    def create(self, base: str) -> ResourceRecord:
        name = reserve(base, self.name_taken, self._max_name_attempts)
        attempts = 0

        def _create() -> None:
            nonlocal attempts
            attempts += 1
            try:
                self._s3.create_bucket(Bucket=name, ACL="private")
            except ClientError as exc:
                # An earlier attempt succeeded but its response was lost.
                if attempts > 1 and error_code(exc) == "BucketAlreadyOwnedByYou":
                    logger.info("Spaces bucket %s was created by an earlier attempt", name)
                    return
                raise

        self._call("s3:CreateBucket", _create)
        logger.info("Created Spaces bucket %s in %s", name, self._region)
        return ResourceRecord(
            kind=self.kind,
            id=name,
            created_at=iso8601_utc(now_utc()),
            scope=self._region,
        )

    def exists(self, record: ResourceRecord) -> bool:
        self._check_kind(record)
        return self.name_taken(record.id)

    def delete(self, record: ResourceRecord) -> None:
        self._check_kind(record)
        bucket = record.id
        try:
            self._empty_bucket(bucket)
            self._call("s3:DeleteBucket", lambda: self._s3.delete_bucket(Bucket=bucket))
        except ProviderError as exc:
            if exc.code in {"NoSuchBucket", "404", "NotFound"}:
                logger.info("Spaces bucket %s already gone", bucket)
                return
            raise
        logger.info("Deleted Spaces bucket %s", bucket)

    def _empty_bucket(self, bucket: str) -> None:
        def _list_keys() -> list[str]:
            keys: list[str] = []
            paginator = self._s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket):
                keys.extend(str(item["Key"]) for item in page.get("Contents", []))
            return keys

        keys = self._call("s3:ListObjectsV2", _list_keys)
        for start in range(0, len(keys), 1000):
            batch = [{"Key": key} for key in keys[start : start + 1000]]
            self._call(
                "s3:DeleteObjects",
                lambda batch=batch: self._s3.delete_objects(
                    Bucket=bucket, Delete={"Objects": batch, "Quiet": True}
                ),
            )


# ---------------------------------------------------------------------------
# ObjectAccessKeyDriver
# ---------------------------------------------------------------------------


class ObjectAccessKeyDriver(ResourceDriver):
    kind = ResourceKind.OBJECT_ACCESS_KEY
    reuse_policy = ReusePolicy.ISSUE

    def __init__(
        self,
        session: Any,
        *,
        api_url: str = DIGITALOCEAN_API_URL,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(retry_policy=retry_policy, sleep=sleep)
        self._session = session
        self._api_url = api_url.rstrip("/")

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = self._session.request(
            method,
            f"{self._api_url}{path}",
            timeout=self._retry_policy.timeout,
            **kwargs,
        )
        response.raise_for_status()
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def create(self, bucket_name: str) -> ResourceRecord:
        body = {
            "name": f"{bucket_name}-key",
            "grants": [{"bucket": bucket_name, "permission": SPACES_KEY_PERMISSION}],
        }
        payload = self._call(
            "spaces:CreateKey", lambda: self._request("POST", "/spaces/keys", json=body)
        )
        key = payload.get("key") if isinstance(payload, dict) else None
        if not isinstance(key, dict):
            raise ProviderError("Spaces key response missing 'key'", operation="spaces:CreateKey")
        access_key = key.get("access_key") or key.get("access_key_id")
        secret_key = key.get("secret_key") or key.get("secret_access_key")
        if not access_key or not secret_key:
            raise ProviderError(
                "Spaces key response missing access/secret key",
                operation="spaces:CreateKey",
            )
        logger.info("Created Spaces access key %s for %s", access_key, bucket_name)
        return ResourceRecord(
            kind=self.kind,
            id=str(access_key),
            created_at=iso8601_utc(now_utc()),
            scope=bucket_name,
            secret=str(secret_key),
        )

    def exists(self, record: ResourceRecord) -> bool:
        self._check_kind(record)
        try:
            self._call("spaces:GetKey", lambda: self._request("GET", f"/spaces/keys/{record.id}"))
        except ProviderError as exc:
            if exc.code == "404":
                return False
            raise
        return True

    def delete(self, record: ResourceRecord) -> None:
        self._check_kind(record)
        try:
            self._call(
                "spaces:DeleteKey",
                lambda: self._request("DELETE", f"/spaces/keys/{record.id}"),
            )
        except ProviderError as exc:
            if exc.code == "404":
                logger.info("Spaces access key %s already gone", record.id)
                return
            raise
        logger.info("Deleted Spaces access key %s", record.id)

    def verify_token(self) -> str:
        """Return the account email for the configured token (validation probe)."""
        payload = self._call("digitalocean:GetAccount", lambda: self._request("GET", "/account"))
        account = payload.get("account", {}) if isinstance(payload, dict) else {}
        return str(account.get("email", "unknown"))


__all__ = [
    "ObjectAccessKeyDriver",
    "ObjectBucketDriver",
    "digitalocean_session",
    "spaces_endpoint",
    "spaces_s3_client",
]
