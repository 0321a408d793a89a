"""Unit tests for gitops_provisioner.drivers.base retry handling."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest
import requests
from botocore.exceptions import ClientError, EndpointConnectionError

from gitops_provisioner.config import RetryPolicy
from gitops_provisioner.drivers.base import call_with_retry, error_code, is_retryable
from gitops_provisioner.exceptions import ProviderError


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "TestOperation",
    )


def _http_error(status: int) -> requests.HTTPError:
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f"{status} error", response=response)


def test_delay_doubles_per_attempt() -> None:
    policy = RetryPolicy(attempts=4, base_delay=0.5)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]


def test_botocore_config_disables_builtin_retries() -> None:
    config = RetryPolicy(timeout=12).botocore_config()
    assert config.connect_timeout == 12
    assert config.read_timeout == 12
    assert config.retries["max_attempts"] == 1


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (_client_error("Throttling"), True),
        (_client_error("SlowDown", 503), True),
        (_client_error("SomethingOdd", 500), True),
        (_client_error("AccessDenied", 403), False),
        (_client_error("EntityAlreadyExists", 409), False),
        (_http_error(429), True),
        (_http_error(502), True),
        (_http_error(404), False),
        (requests.Timeout("slow"), True),
        (requests.ConnectionError("reset"), True),
        (EndpointConnectionError(endpoint_url="https://nyc3.digitaloceanspaces.com"), True),
    ],
)
def test_is_retryable(exc: BaseException, expected: bool) -> None:
    assert is_retryable(exc) is expected


def test_error_code_from_client_and_http_errors() -> None:
    assert error_code(_client_error("NoSuchEntity", 404)) == "NoSuchEntity"
    assert error_code(_http_error(404)) == "404"
    assert error_code(ValueError("x")) == ""


def test_transient_failure_is_retried_then_succeeds() -> None:
    sleeps: list[float] = []
    fn = MagicMock(side_effect=[_client_error("Throttling"), _http_error(503), "ok"])

    result = call_with_retry("iam:GetUser", fn, RetryPolicy(base_delay=1.0), sleep=sleeps.append)

    assert result == "ok"
    assert fn.call_count == 3
    assert sleeps == [1.0, 2.0]


def test_retries_are_bounded() -> None:
    sleeps: list[float] = []
    fn = MagicMock(side_effect=_client_error("Throttling"))

    with pytest.raises(ProviderError) as excinfo:
        call_with_retry("iam:GetUser", fn, RetryPolicy(attempts=3), sleep=sleeps.append)

    assert fn.call_count == 3
    assert len(sleeps) == 2
    assert excinfo.value.retryable is True
    assert excinfo.value.code == "Throttling"
    assert excinfo.value.operation == "iam:GetUser"


def test_permanent_failure_is_not_retried() -> None:
    sleeps: list[Any] = []
    fn = MagicMock(side_effect=_client_error("AccessDenied", 403))

    with pytest.raises(ProviderError) as excinfo:
        call_with_retry("iam:CreateUser", fn, RetryPolicy(), sleep=sleeps.append)

    assert fn.call_count == 1
    assert sleeps == []
    assert excinfo.value.retryable is False
    assert excinfo.value.code == "AccessDenied"


def test_provider_error_passes_through_unchanged() -> None:
    original = ProviderError("bad payload", operation="parse-response")

    def _fail() -> None:
        raise original

    with pytest.raises(ProviderError) as excinfo:
        call_with_retry("spaces:CreateKey", _fail, RetryPolicy(), sleep=lambda _s: None)
    assert excinfo.value is original
