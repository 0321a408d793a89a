"""
gitops_provisioner.credentials — SES SMTP password derivation.

SES validates SMTP passwords independently, so the transform must stay
bit-exact: base64(HMAC-SHA256(key=0x04 || secret_key, msg="SendRawEmail")).
Changing either constant breaks every issued password; bump them only in step
with a new SES signature version.
"""

from __future__ import annotations

import base64
import hashlib
import hmac

from gitops_provisioner.models import DerivedCredential

SMTP_SIGNATURE_VERSION = 4
SMTP_SIGNATURE_MESSAGE = "SendRawEmail"


def derive_smtp_password(secret_key: str) -> str:
    """Derive the SES SMTP password for an IAM secret access key."""
    key = SMTP_SIGNATURE_VERSION.to_bytes(1, byteorder="big") + secret_key.encode("utf-8")
    signature = hmac.new(
        key=key,
        msg=SMTP_SIGNATURE_MESSAGE.encode("utf-8"),
        digestmod=hashlib.sha256,
    ).digest()
    return base64.b64encode(signature).decode("utf-8")


def derive_smtp_credential(access_key_id: str, secret_key: str) -> DerivedCredential:
    """Build the SMTP username/password pair for an IAM access key."""
    return DerivedCredential(
        username=access_key_id,
        secret_key=secret_key,
        derived_password=derive_smtp_password(secret_key),
    )
