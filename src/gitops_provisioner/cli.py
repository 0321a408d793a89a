"""
gitops_provisioner.cli — Operator entry point.

    gitops-provision provision [DEPLOYMENT] [--dry-run] [--domain D] ...
    gitops-provision cleanup DEPLOYMENT
    gitops-provision status DEPLOYMENT

Exit codes: 0 committed, 2 aborted, 3 rolled back, 4 rollback incomplete
(manual cleanup needed), 5 secrets pending, 6 deployment locked, 1 other error.
The CLI never retries; rerun against the same deployment to resume.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import boto3

from gitops_provisioner.config import (
    SECRET_STORE_CHOICES,
    RetryPolicy,
    request_from_env,
    resolve_state_dir,
)
from gitops_provisioner.coordinator import Coordinator, Drivers, Prerequisite, plan_actions
from gitops_provisioner.drivers.iam import (
    IdentityAccessKeyDriver,
    IdentityPolicyDriver,
    IdentityUserDriver,
    caller_account_id,
    iam_client,
)
from gitops_provisioner.drivers.spaces import (
    ObjectAccessKeyDriver,
    ObjectBucketDriver,
    digitalocean_session,
    spaces_s3_client,
)
from gitops_provisioner.email_identity import request_domain_verification, ses_client
from gitops_provisioner.exceptions import JournalLockedError, ProvisioningError
from gitops_provisioner.journal import JournalStore
from gitops_provisioner.models import (
    EXIT_LOCKED,
    ProvisioningRequest,
    ProvisioningState,
    RunOutcome,
)
from gitops_provisioner.secret_stores import GitHubSecretStore, SecretsManagerStore, SecretStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_secret_store(request: ProvisioningRequest, retry_policy: RetryPolicy) -> SecretStore:
    if request.secret_store == "secretsmanager":
        client = boto3.client(
            "secretsmanager",
            region_name=request.ses_region,
            aws_access_key_id=request.aws_access_key_id,
            aws_secret_access_key=request.aws_secret_access_key,
            config=retry_policy.botocore_config(),
        )
        return SecretsManagerStore(
            client, prefix=request.secret_prefix, deployment_id=request.deployment_id
        )
    return GitHubSecretStore(repo=request.github_repo)


def build_prerequisites(
    request: ProvisioningRequest,
    *,
    object_key_driver: ObjectAccessKeyDriver,
    sts_client: Any,
    secret_store: SecretStore,
    retry_policy: RetryPolicy,
    publishing: bool = True,
) -> list[Prerequisite]:
    """Cheap local checks first so provider probes never run without credentials.

    Secret-store checks apply only when the run will publish; cleanup never does.
    """
    prerequisites = [
        Prerequisite(
            "DIGITALOCEAN_TOKEN",
            lambda: bool(request.digitalocean_token),
            "DigitalOcean API token is not set",
        ),
        Prerequisite(
            "SPACES_ACCESS_KEY_ID",
            lambda: bool(request.spaces_access_key_id and request.spaces_secret_access_key),
            "Spaces admin key (SPACES_ACCESS_KEY_ID / SPACES_SECRET_ACCESS_KEY) is not set",
        ),
        Prerequisite(
            "AWS_ACCESS_KEY_ID",
            lambda: bool(request.aws_access_key_id and request.aws_secret_access_key),
            "AWS credentials (AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY) are not set",
        ),
    ]
    if publishing and isinstance(secret_store, GitHubSecretStore):
        prerequisites.extend(
            [
                Prerequisite("gh", secret_store.available, "GitHub CLI (gh) is not installed"),
                Prerequisite(
                    "gh auth",
                    secret_store.authenticated,
                    "GitHub CLI is not authenticated; run 'gh auth login'",
                ),
            ]
        )
    prerequisites.extend(
        [
            Prerequisite(
                "DigitalOcean account",
                lambda: bool(object_key_driver.verify_token()),
                "DigitalOcean token was rejected",
            ),
            Prerequisite(
                "AWS account",
                lambda: bool(caller_account_id(sts_client, retry_policy)),
                "AWS credentials were rejected",
            ),
        ]
    )
    return prerequisites


def build_coordinator(
    request: ProvisioningRequest,
    *,
    state_dir: Path,
    cancel_event: threading.Event | None = None,
    publishing: bool = True,
) -> Coordinator:
    retry_policy = RetryPolicy()
    aws_keys = {
        "access_key_id": request.aws_access_key_id,
        "secret_access_key": request.aws_secret_access_key,
    }
    iam = iam_client(retry_policy=retry_policy, **aws_keys)
    sts = boto3.client(
        "sts",
        region_name=request.ses_region,
        aws_access_key_id=request.aws_access_key_id,
        aws_secret_access_key=request.aws_secret_access_key,
        config=retry_policy.botocore_config(),
    )
    s3 = spaces_s3_client(
        request.spaces_region,
        access_key_id=request.spaces_access_key_id,
        secret_access_key=request.spaces_secret_access_key,
        retry_policy=retry_policy,
    )
    object_key_driver = ObjectAccessKeyDriver(
        digitalocean_session(request.digitalocean_token), retry_policy=retry_policy
    )
    drivers = Drivers(
        bucket=ObjectBucketDriver(s3, region=request.spaces_region, retry_policy=retry_policy),
        object_key=object_key_driver,
        user=IdentityUserDriver(iam, retry_policy=retry_policy),
        policy=IdentityPolicyDriver(iam, retry_policy=retry_policy),
        identity_key=IdentityAccessKeyDriver(iam, retry_policy=retry_policy),
    )
    secret_store = build_secret_store(request, retry_policy)
    ses = ses_client(request.ses_region, retry_policy=retry_policy, **aws_keys)

    return Coordinator(
        request,
        store=JournalStore(state_dir),
        drivers=drivers,
        secret_store=secret_store,
        prerequisites=build_prerequisites(
            request,
            object_key_driver=object_key_driver,
            sts_client=sts,
            secret_store=secret_store,
            retry_policy=retry_policy,
            publishing=publishing,
        ),
        domain_verifier=lambda domain: request_domain_verification(ses, domain, retry_policy),
        cancel_event=cancel_event,
    )


@contextmanager
def cancellation_signals(event: threading.Event) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into ``event`` so the run stops between steps."""

    def _handler(signum: int, _frame: Any) -> None:
        name = signal.Signals(signum).name
        logger.warning("%s received, stopping after the current step", name)
        event.set()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def report(outcome: RunOutcome) -> None:
    state = outcome.state
    if state == ProvisioningState.COMMITTED:
        print(f"Provisioning committed for {outcome.deployment_id}")
        if outcome.bucket_name:
            print(f"bucket={outcome.bucket_name}")
        if outcome.dns_records:
            print("Add these DNS records to verify the sending domain with SES:")
            for record in outcome.dns_records:
                print(f"  {record.record_type}\t{record.name}\t{record.value}")
    elif state == ProvisioningState.ABORTED:
        if outcome.missing_prerequisite:
            print(
                f"Aborted: missing prerequisite {outcome.missing_prerequisite}: {outcome.message}",
                file=sys.stderr,
            )
        else:
            print(f"Aborted: {outcome.message}", file=sys.stderr)
    elif state == ProvisioningState.ROLLED_BACK:
        print(f"Rolled back: {outcome.message}", file=sys.stderr)
    elif state == ProvisioningState.FAILED_ROLLBACK:
        print(
            "Rollback incomplete. Delete these resources manually, newest first:",
            file=sys.stderr,
        )
        for record in outcome.remaining:
            print(f"  {record.kind.value}\t{record.id}", file=sys.stderr)
    elif state == ProvisioningState.COMMIT_PENDING:
        print(
            "Resources exist but these secrets were not published: "
            f"{', '.join(outcome.pending_secrets)}. Rerun to publish the remainder.",
            file=sys.stderr,
        )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Provision GitOps bootstrap cloud resources")
    parser.add_argument("--state-dir", default=None, help="Journal directory (GITOPS_STATE_DIR)")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (GITOPS_LOG_LEVEL, default INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    provision = subparsers.add_parser("provision", help="Create or resume provisioning")
    provision.add_argument(
        "deployment", nargs="?", default=None, help="Deployment id (SETUP_REPO_CLUSTER_NAME)"
    )
    provision.add_argument("--domain", default=None, help="Sending domain (SETUP_REPO_DOMAIN)")
    provision.add_argument("--spaces-region", default=None, help="Spaces region (default nyc3)")
    provision.add_argument("--ses-region", default=None, help="SES region (default us-east-1)")
    provision.add_argument(
        "--secret-store",
        default=None,
        choices=SECRET_STORE_CHOICES,
        help="Where to publish secrets (GITOPS_SECRET_STORE, default github)",
    )
    provision.add_argument("--github-repo", default=None, help="owner/repo for gh secret set")
    provision.add_argument(
        "--dry-run", action="store_true", help="Print the planned actions and exit"
    )

    cleanup = subparsers.add_parser("cleanup", help="Roll back a previous run from its journal")
    cleanup.add_argument("deployment", help="Deployment id whose journal to roll back")

    status = subparsers.add_parser("status", help="Show the journal for a deployment")
    status.add_argument("deployment", help="Deployment id")

    return parser.parse_args(argv)


def cmd_provision(args: argparse.Namespace) -> int:
    request = request_from_env(
        deployment_id=args.deployment,
        domain=args.domain,
        spaces_region=args.spaces_region,
        ses_region=args.ses_region,
        secret_store=args.secret_store,
        github_repo=args.github_repo,
    )
    if args.dry_run:
        print(f"Dry run for {request.deployment_id}; no provider will be called.")
        for line in plan_actions(request, request.secret_store):
            print(f"  - {line}")
        return 0

    event = threading.Event()
    coordinator = build_coordinator(
        request, state_dir=resolve_state_dir(args.state_dir), cancel_event=event
    )
    with cancellation_signals(event):
        outcome = coordinator.run()
    report(outcome)
    return outcome.exit_code


def cmd_cleanup(args: argparse.Namespace) -> int:
    request = request_from_env(deployment_id=args.deployment)
    coordinator = build_coordinator(
        request, state_dir=resolve_state_dir(args.state_dir), publishing=False
    )
    outcome = coordinator.cleanup()
    report(outcome)
    return outcome.exit_code


def cmd_status(args: argparse.Namespace) -> int:
    store = JournalStore(resolve_state_dir(args.state_dir))
    journal = store.load(args.deployment)
    if journal is None:
        print(f"No journal for {args.deployment}")
        return 0
    print(f"deployment={journal.deployment_id} started_at={journal.started_at}")
    for record in journal.records:
        print(f"  {record.created_at}\t{record.describe()}")
    if journal.published:
        print(f"published={','.join(journal.published)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level or os.environ.get("GITOPS_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    commands = {
        "provision": cmd_provision,
        "cleanup": cmd_cleanup,
        "status": cmd_status,
    }
    try:
        return commands[args.command](args)
    except JournalLockedError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_LOCKED
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    except ProvisioningError as exc:
        logger.error("Provisioning run failed: %s", exc)
        print(str(exc), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
