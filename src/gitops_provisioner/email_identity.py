"""
gitops_provisioner.email_identity — SES domain verification records.

After the SMTP principal exists, SES still has to trust the sending domain.
This requests domain verification and DKIM and returns the DNS records the
operator has to publish. Nothing here is journaled: both calls are idempotent
on the SES side.
"""

from __future__ import annotations

import logging
from typing import Any

import boto3

from gitops_provisioner.config import RetryPolicy
from gitops_provisioner.drivers.base import call_with_retry
from gitops_provisioner.models import DnsRecord

logger = logging.getLogger(__name__)


def ses_client(
    region: str,
    *,
    access_key_id: str,
    secret_access_key: str,
    retry_policy: RetryPolicy | None = None,
) -> Any:
    policy = retry_policy or RetryPolicy()
    return boto3.client(
        "ses",
        region_name=region,
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        config=policy.botocore_config(),
    )


def request_domain_verification(
    client: Any,
    domain: str,
    retry_policy: RetryPolicy | None = None,
) -> list[DnsRecord]:
    """Start SES verification for ``domain``; return the DNS records to add."""
    policy = retry_policy or RetryPolicy()

    verification = call_with_retry(
        "ses:VerifyDomainIdentity",
        lambda: client.verify_domain_identity(Domain=domain),
        policy,
    )
    records = [
        DnsRecord(
            record_type="TXT",
            name=f"_amazonses.{domain}",
            value=str(verification["VerificationToken"]),
        )
    ]

    dkim = call_with_retry(
        "ses:VerifyDomainDkim",
        lambda: client.verify_domain_dkim(Domain=domain),
        policy,
    )
    for token in dkim.get("DkimTokens", []):
        records.append(
            DnsRecord(
                record_type="CNAME",
                name=f"{token}._domainkey.{domain}",
                value=f"{token}.dkim.amazonses.com",
            )
        )

    logger.info("Requested SES verification for %s (%d DNS records)", domain, len(records))
    return records
