"""
gitops_provisioner.coordinator — Transaction coordinator for one deployment.

    INIT -> VALIDATING -> CREATING -> COMMITTING -> COMMITTED
                |            |            \\-> COMMIT_PENDING
                v            v
             ABORTED    ROLLING_BACK -> ROLLED_BACK | FAILED_ROLLBACK

The coordinator is the only component that decides state transitions. Drivers
raise, the coordinator catches. Every resource is journaled the moment it is
created, so a crash at any point leaves a journal the next run can either
resume from or roll back.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from gitops_provisioner.credentials import derive_smtp_credential
from gitops_provisioner.drivers.base import ResourceDriver
from gitops_provisioner.exceptions import (
    JournalError,
    PropagationError,
    ProviderError,
    ProvisioningCancelled,
    ProvisioningError,
    RollbackError,
    ValidationError,
)
from gitops_provisioner.journal import JournalStore
from gitops_provisioner.models import (
    DnsRecord,
    Journal,
    ProvisioningRequest,
    ProvisioningState,
    ResourceKind,
    ResourceRecord,
    ReusePolicy,
    RunOutcome,
)
from gitops_provisioner.secret_stores import (
    PUBLISHED_KEYS,
    SMTP_PASSWORD,
    SMTP_USERNAME,
    SPACES_ACCESS_KEY,
    SPACES_SECRET_KEY,
    SecretPropagator,
    SecretStore,
)

logger = logging.getLogger(__name__)

STEP_ORDER: tuple[ResourceKind, ...] = (
    ResourceKind.OBJECT_BUCKET,
    ResourceKind.OBJECT_ACCESS_KEY,
    ResourceKind.IDENTITY_USER,
    ResourceKind.IDENTITY_POLICY,
    ResourceKind.IDENTITY_ACCESS_KEY,
)


@dataclass(frozen=True)
class Drivers:
    """One driver per resource kind, in creation order."""

    bucket: ResourceDriver
    object_key: ResourceDriver
    user: ResourceDriver
    policy: ResourceDriver
    identity_key: ResourceDriver

    def for_kind(self, kind: ResourceKind) -> ResourceDriver:
        by_kind = {
            ResourceKind.OBJECT_BUCKET: self.bucket,
            ResourceKind.OBJECT_ACCESS_KEY: self.object_key,
            ResourceKind.IDENTITY_USER: self.user,
            ResourceKind.IDENTITY_POLICY: self.policy,
            ResourceKind.IDENTITY_ACCESS_KEY: self.identity_key,
        }
        return by_kind[kind]


@dataclass(frozen=True)
class Prerequisite:
    """A named validation probe.

    ``check`` returns False (or raises a ProvisioningError) when the
    prerequisite is not met; ``detail`` is shown to the operator.
    """

    name: str
    check: Callable[[], bool]
    detail: str = "not available"


class Coordinator:
    """Runs the provisioning transaction for one ProvisioningRequest."""

    def __init__(
        self,
        request: ProvisioningRequest,
        *,
        store: JournalStore,
        drivers: Drivers,
        secret_store: SecretStore,
        propagator: SecretPropagator | None = None,
        prerequisites: Sequence[Prerequisite] = (),
        domain_verifier: Callable[[str], list[DnsRecord]] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._request = request
        self._store = store
        self._drivers = drivers
        self._secret_store = secret_store
        self._propagator = propagator or SecretPropagator()
        self._prerequisites = list(prerequisites)
        self._domain_verifier = domain_verifier
        self._cancel_event = cancel_event or threading.Event()
        self._journal: Journal | None = None
        self.history: list[ProvisioningState] = [ProvisioningState.INIT]

    @property
    def state(self) -> ProvisioningState:
        return self.history[-1]

    @property
    def journal(self) -> Journal:
        if self._journal is None:
            raise JournalError("Journal accessed before it was loaded")
        return self._journal

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self) -> RunOutcome:
        """Provision (or resume provisioning) every resource, then publish secrets."""
        deployment_id = self._request.deployment_id
        with self._store.locked(deployment_id):
            loaded = self._store.load(deployment_id)
            if loaded is not None:
                logger.info(
                    "Resuming %s from journal with %d record(s)", deployment_id, len(loaded.records)
                )
            self._journal = loaded or self._store.create(deployment_id)

            aborted = self._validate()
            if aborted is not None:
                return aborted

            self._transition(ProvisioningState.CREATING)
            try:
                self._create_all()
            except (ProvisioningError, KeyboardInterrupt) as exc:
                logger.error("Provisioning %s failed, rolling back: %s", deployment_id, exc)
                return self._rollback(reason=str(exc) or type(exc).__name__)
            except Exception:
                logger.exception("Unexpected error provisioning %s, rolling back", deployment_id)
                self._rollback(reason="unexpected error")
                raise

            return self._commit()

    def cleanup(self) -> RunOutcome:
        """Roll back whatever an earlier run left in the journal."""
        deployment_id = self._request.deployment_id
        with self._store.locked(deployment_id):
            loaded = self._store.load(deployment_id)
            if loaded is None:
                self._transition(ProvisioningState.ABORTED)
                return RunOutcome(
                    deployment_id=deployment_id,
                    state=ProvisioningState.ABORTED,
                    message=f"No journal found for {deployment_id}; nothing to clean up",
                )
            self._journal = loaded

            aborted = self._validate()
            if aborted is not None:
                return aborted
            return self._rollback(reason="cleanup requested")

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _validate(self) -> RunOutcome | None:
        self._transition(ProvisioningState.VALIDATING)
        for prerequisite in self._prerequisites:
            try:
                ok = prerequisite.check()
                detail = prerequisite.detail
            except ValidationError as exc:
                ok, detail = False, exc.detail
            except ProvisioningError as exc:
                ok, detail = False, str(exc)
            if ok:
                continue

            logger.error("Missing prerequisite %s: %s", prerequisite.name, detail)
            self._transition(ProvisioningState.ABORTED)
            return RunOutcome(
                deployment_id=self._request.deployment_id,
                state=ProvisioningState.ABORTED,
                message=detail,
                missing_prerequisite=prerequisite.name,
            )
        return None

    def _create_all(self) -> None:
        request = self._request
        creators: dict[ResourceKind, Callable[[], ResourceRecord]] = {
            ResourceKind.OBJECT_BUCKET: lambda: self._drivers.bucket.create(request.bucket_base),
            ResourceKind.OBJECT_ACCESS_KEY: lambda: self._drivers.object_key.create(
                self._created(ResourceKind.OBJECT_BUCKET).id
            ),
            ResourceKind.IDENTITY_USER: lambda: self._drivers.user.create(request.smtp_user_name),
            ResourceKind.IDENTITY_POLICY: lambda: self._drivers.policy.create(
                request.policy_name, self._created(ResourceKind.IDENTITY_USER).id
            ),
            ResourceKind.IDENTITY_ACCESS_KEY: lambda: self._drivers.identity_key.create(
                self._created(ResourceKind.IDENTITY_USER).id
            ),
        }

        for kind in STEP_ORDER:
            self._check_cancelled()
            if self._reusable(kind):
                logger.info("%s already provisioned, skipping", kind.value)
                continue
            record = creators[kind]()
            self._store.append(self.journal, record)
            logger.info("Journaled %s %s", kind.value, record.id)
        self._check_cancelled()

    def _reusable(self, kind: ResourceKind) -> bool:
        """True when a journaled record for ``kind`` can be kept as-is.

        Otherwise that record and every record journaled after it are torn
        down so the journal keeps creation order when the step is redone.
        """
        prior = self.journal.find(kind)
        if prior is None:
            return False

        driver = self._drivers.for_kind(kind)
        present = driver.exists(prior)
        if present and (driver.reuse_policy != ReusePolicy.ISSUE or prior.secret):
            return True

        logger.info(
            "Journaled %s %s cannot be reused (present=%s), recreating",
            kind.value,
            prior.id,
            present,
        )
        start = self.journal.records.index(prior)
        for record in reversed(self.journal.records[start:]):
            self._drivers.for_kind(record.kind).delete(record)
            self._store.discard(self.journal, record)
        return False

    def _rollback(self, *, reason: str) -> RunOutcome:
        self._transition(ProvisioningState.ROLLING_BACK)
        deployment_id = self._request.deployment_id
        try:
            self._sweep()
        except RollbackError as exc:
            for kind, resource_id, error in exc.failures:
                logger.error("Could not delete %s %s: %s", kind, resource_id, error)
            self._transition(ProvisioningState.FAILED_ROLLBACK)
            return RunOutcome(
                deployment_id=deployment_id,
                state=ProvisioningState.FAILED_ROLLBACK,
                message=f"{reason}; {exc}",
                remaining=list(self.journal.records),
            )

        self._store.clear(deployment_id)
        self._transition(ProvisioningState.ROLLED_BACK)
        return RunOutcome(
            deployment_id=deployment_id,
            state=ProvisioningState.ROLLED_BACK,
            message=reason,
        )

    def _sweep(self) -> None:
        """Delete every journaled record newest first; never stop early."""
        failures: list[tuple[str, str, str]] = []
        for record in reversed(list(self.journal.records)):
            try:
                self._drivers.for_kind(record.kind).delete(record)
            except ProvisioningError as exc:
                failures.append((record.kind.value, record.id, str(exc)))
                continue
            try:
                self._store.discard(self.journal, record)
            except JournalError as exc:
                # The resource is gone; only the on-disk journal is behind.
                logger.warning(
                    "Deleted %s %s but could not update the journal: %s",
                    record.kind.value,
                    record.id,
                    exc,
                )
                continue
            logger.info("Rolled back %s %s", record.kind.value, record.id)
        if failures:
            raise RollbackError(failures=failures)

    def _commit(self) -> RunOutcome:
        self._transition(ProvisioningState.COMMITTING)
        deployment_id = self._request.deployment_id
        bucket = self._created(ResourceKind.OBJECT_BUCKET)
        spaces_key = self._created(ResourceKind.OBJECT_ACCESS_KEY)
        iam_key = self._created(ResourceKind.IDENTITY_ACCESS_KEY)
        if not spaces_key.secret or not iam_key.secret:
            raise JournalError("Access key secret missing from journal; cannot publish")

        smtp = derive_smtp_credential(iam_key.id, iam_key.secret)
        credentials = {
            SPACES_ACCESS_KEY: spaces_key.id,
            SPACES_SECRET_KEY: spaces_key.secret,
            SMTP_USERNAME: smtp.username,
            SMTP_PASSWORD: smtp.derived_password,
        }
        pending = {
            key: credentials[key] for key in PUBLISHED_KEYS if key not in self.journal.published
        }
        if len(pending) < len(credentials):
            logger.info("Already published: %s", ", ".join(self.journal.published))

        try:
            self._propagator.publish(self._secret_store, pending)
        except PropagationError as exc:
            self._store.mark_published(self.journal, exc.published)
            self._transition(ProvisioningState.COMMIT_PENDING)
            return RunOutcome(
                deployment_id=deployment_id,
                state=ProvisioningState.COMMIT_PENDING,
                message=str(exc),
                pending_secrets=exc.pending,
                bucket_name=bucket.id,
            )

        self._store.clear(deployment_id)
        self._transition(ProvisioningState.COMMITTED)
        return RunOutcome(
            deployment_id=deployment_id,
            state=ProvisioningState.COMMITTED,
            message="All resources provisioned and secrets published",
            bucket_name=bucket.id,
            dns_records=self._verify_domain(),
        )

    def _verify_domain(self) -> list[DnsRecord]:
        domain = self._request.domain
        if not domain or self._domain_verifier is None:
            return []
        try:
            return self._domain_verifier(domain)
        except ProviderError as exc:
            logger.warning("SES domain verification for %s failed: %s", domain, exc)
            return []

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _created(self, kind: ResourceKind) -> ResourceRecord:
        record = self.journal.find(kind)
        if record is None:
            raise JournalError(f"No journaled {kind.value} record")
        return record

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise ProvisioningCancelled("Run cancelled by operator")

    def _transition(self, state: ProvisioningState) -> None:
        logger.info("%s -> %s", self.state.value, state.value)
        self.history.append(state)


def plan_actions(request: ProvisioningRequest, secret_store: str) -> list[str]:
    """Human-readable description of what a run would do; calls no provider."""
    target = secret_store
    if secret_store == "github" and request.github_repo:
        target = f"github ({request.github_repo})"
    lines = [
        f"Create Spaces bucket {request.bucket_base}-<6 hex> in {request.spaces_region}",
        "Create Spaces access key with readwrite access to that bucket",
        f"Create or adopt IAM user {request.smtp_user_name}",
        f"Create or adopt IAM policy {request.policy_name} (ses:SendEmail, ses:SendRawEmail)"
        f" and attach it to {request.smtp_user_name}",
        f"Create IAM access key for {request.smtp_user_name} and derive the SES SMTP password",
    ]
    lines.extend(f"Publish secret {key} to {target}" for key in PUBLISHED_KEYS)
    if request.domain:
        lines.append(
            f"Request SES verification and DKIM for {request.domain} in {request.ses_region}"
        )
    return lines
