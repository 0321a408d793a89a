"""Resource drivers, one per ResourceKind."""

from gitops_provisioner.drivers.base import ResourceDriver, call_with_retry, is_retryable
from gitops_provisioner.drivers.iam import (
    IdentityAccessKeyDriver,
    IdentityPolicyDriver,
    IdentityUserDriver,
)
from gitops_provisioner.drivers.spaces import ObjectAccessKeyDriver, ObjectBucketDriver

__all__ = [
    "IdentityAccessKeyDriver",
    "IdentityPolicyDriver",
    "IdentityUserDriver",
    "ObjectAccessKeyDriver",
    "ObjectBucketDriver",
    "ResourceDriver",
    "call_with_retry",
    "is_retryable",
]
