"""
gitops_provisioner.exceptions — Error taxonomy for a provisioning run.

The Coordinator is the only place that turns these into state transitions:

    ValidationError      prerequisite missing; nothing created, run aborts
    ProviderError        driver call failed after its own retries; rollback
    UniquenessExhausted  no free bucket name found; rollback
    RollbackError        a delete failed during rollback; sweep continues
    PropagationError     secret publish failed; resources kept, rerun retries
    JournalError         journal could not be flushed; run cannot continue
    JournalLockedError   another run holds the deployment lock
"""

from __future__ import annotations

from collections.abc import Sequence


class ProvisioningError(RuntimeError):
    """Base class for provisioning failures."""


class ValidationError(ProvisioningError):
    """Raised when a required credential, tool or provider identity is missing."""

    def __init__(self, *, prerequisite: str, detail: str) -> None:
        self.prerequisite = prerequisite
        self.detail = detail
        super().__init__(f"Missing prerequisite {prerequisite}: {detail}")


class ProviderError(ProvisioningError):
    """
    Raised when a provider call fails and will not be retried.

    Attributes:
        operation: Driver operation that failed (e.g. "iam:CreateUser").
        code:      Provider error code when one was returned.
        retryable: True when the failure was transient but retries ran out.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        code: str | None = None,
        retryable: bool = False,
    ) -> None:
        self.operation = operation
        self.code = code
        self.retryable = retryable
        super().__init__(message)


class UniquenessExhausted(ProvisioningError):
    """Raised when every generated name candidate was already taken."""

    def __init__(self, *, base: str, attempts: int) -> None:
        self.base = base
        self.attempts = attempts
        super().__init__(f"No unused name for {base!r} after {attempts} attempts")


class RollbackError(ProvisioningError):
    """Raised by the rollback sweep when one or more deletions failed."""

    def __init__(self, *, failures: Sequence[tuple[str, str, str]]) -> None:
        # (kind, id, error message)
        self.failures = list(failures)
        super().__init__(f"{len(self.failures)} resource(s) could not be deleted")


class PropagationError(ProvisioningError):
    """Raised when one or more secrets could not be published."""

    def __init__(
        self,
        *,
        pending: Sequence[str],
        published: Sequence[str],
        errors: dict[str, str],
    ) -> None:
        self.pending = list(pending)
        self.published = list(published)
        self.errors = dict(errors)
        super().__init__(f"Secrets still pending publication: {', '.join(self.pending)}")


class JournalError(ProvisioningError):
    """Raised when the journal cannot be read or durably written."""


class JournalLockedError(JournalError):
    """Raised when another run already holds the journal lock."""

    def __init__(self, *, deployment_id: str, holder: str) -> None:
        self.deployment_id = deployment_id
        self.holder = holder
        super().__init__(f"Deployment {deployment_id!r} is locked by {holder}")


class ProvisioningCancelled(ProvisioningError):
    """Raised between steps when the operator interrupted the run."""
