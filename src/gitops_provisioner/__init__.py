"""Provision the object storage, identity and secrets a GitOps cluster bootstrap needs."""

from gitops_provisioner.coordinator import Coordinator, Drivers, Prerequisite
from gitops_provisioner.credentials import derive_smtp_password
from gitops_provisioner.journal import JournalStore
from gitops_provisioner.models import (
    Journal,
    ProvisioningRequest,
    ProvisioningState,
    ResourceKind,
    ResourceRecord,
    RunOutcome,
)
from gitops_provisioner.secret_stores import SecretPropagator

__all__ = [
    "Coordinator",
    "Drivers",
    "Journal",
    "JournalStore",
    "Prerequisite",
    "ProvisioningRequest",
    "ProvisioningState",
    "ResourceKind",
    "ResourceRecord",
    "RunOutcome",
    "SecretPropagator",
    "derive_smtp_password",
]
