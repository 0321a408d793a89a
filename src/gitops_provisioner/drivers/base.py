"""
gitops_provisioner.drivers.base — Shared driver contract and retry policy.

Every driver exposes exists(record) and delete(record) so the Coordinator can
roll back any ResourceRecord by kind alone; create() signatures differ per
kind because each step consumes the previous step's identifier.

Provider calls go through ``call_with_retry``: transient failures (throttling,
5xx, connection errors, timeouts) are retried with exponential backoff and
never leave the driver; anything else becomes a ProviderError at once.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, TypeVar

import requests
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    HTTPClientError,
)
from botocore.exceptions import ConnectionError as BotoConnectionError

from gitops_provisioner.config import RetryPolicy
from gitops_provisioner.exceptions import ProviderError
from gitops_provisioner.models import ResourceKind, ResourceRecord, ReusePolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_CODES: frozenset[str] = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "RequestThrottled",
        "TooManyRequestsException",
        "SlowDown",
        "ServiceUnavailable",
        "ServiceFailure",
        "InternalError",
        "InternalFailure",
        "RequestTimeout",
    }
)

NOT_FOUND_CODES: frozenset[str] = frozenset({"NoSuchEntity", "NoSuchBucket", "NotFound", "404"})


def error_code(exc: BaseException) -> str:
    """Provider error code for ClientError/HTTPError, empty string otherwise."""
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", ""))
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return str(exc.response.status_code)
    return ""


def is_not_found(exc: BaseException) -> bool:
    return error_code(exc) in NOT_FOUND_CODES


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ClientError):
        if error_code(exc) in RETRYABLE_CODES:
            return True
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return status == 429 or status >= 500
    if isinstance(exc, (BotoConnectionError, HTTPClientError)):
        return True
    if isinstance(exc, requests.HTTPError):
        if exc.response is None:
            return False
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, (requests.Timeout, requests.ConnectionError))


def call_with_retry(
    operation: str,
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` under the retry policy, converting failures to ProviderError."""
    attempt = 1
    while True:
        try:
            return fn()
        except ProviderError:
            raise
        except (ClientError, BotoCoreError, requests.RequestException) as exc:
            retryable = is_retryable(exc)
            if not retryable or attempt >= policy.attempts:
                raise ProviderError(
                    f"{operation} failed after {attempt} attempt(s): {exc}",
                    operation=operation,
                    code=error_code(exc) or None,
                    retryable=retryable,
                ) from exc
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                operation,
                attempt,
                policy.attempts,
                delay,
                exc,
            )
            sleep(delay)
            attempt += 1


class ResourceDriver(ABC):
    """Create/exists/delete for one resource kind."""

    kind: ResourceKind
    reuse_policy: ReusePolicy

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        return call_with_retry(operation, fn, self._retry_policy, sleep=self._sleep)

    def _check_kind(self, record: ResourceRecord) -> None:
        if record.kind != self.kind:
            raise ValueError(f"{type(self).__name__} cannot handle {record.kind.value} records")

    @abstractmethod
    def exists(self, record: ResourceRecord) -> bool:
        """Return True when the resource described by ``record`` is still present."""

    @abstractmethod
    def delete(self, record: ResourceRecord) -> None:
        """Delete the resource; a resource that is already gone counts as deleted."""


def response_field(response: Any, *path: str) -> str:
    """Pull a nested string out of a provider response, failing loudly."""
    value: Any = response
    for key in path:
        if not isinstance(value, dict) or key not in value:
            raise ProviderError(
                f"Provider response missing {'.'.join(path)}",
                operation="parse-response",
            )
        value = value[key]
    return str(value)
