"""
gitops_provisioner.journal — Crash-durable resource journal.

One JSON file per deployment id under the state directory:

    <state_dir>/<deployment_id>.json   serialized Journal (0600, holds key secrets)
    <state_dir>/<deployment_id>.lock   advisory lock + holder metadata

Every append/discard/clear is a synchronous write (temp file, fsync, rename)
so a crash loses at most the step that was in flight. The lock is an flock on
the .lock file; the kernel drops it when the holder dies, so a killed run
never blocks its own resume.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import socket
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO
from uuid import uuid4

from gitops_provisioner.exceptions import JournalError, JournalLockedError
from gitops_provisioner.models import (
    Journal,
    ResourceRecord,
    iso8601_utc,
    now_utc,
    validate_deployment_id,
)

logger = logging.getLogger(__name__)

JOURNAL_FILE_MODE = 0o600


@dataclass(frozen=True)
class LockRecord:
    deployment_id: str
    lock_id: str
    acquired_by: str
    acquired_at: str
    pid: int


def default_owner() -> str:
    user = os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
    host = socket.gethostname() or "unknown-host"
    return f"gitops-provisioner:{user}@{host}"


class JournalStore:
    """File-backed journal persistence for every deployment under ``state_dir``."""

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def path_for(self, deployment_id: str) -> Path:
        validate_deployment_id(deployment_id)
        return self._state_dir / f"{deployment_id}.json"

    def lock_path_for(self, deployment_id: str) -> Path:
        validate_deployment_id(deployment_id)
        return self._state_dir / f"{deployment_id}.lock"

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def locked(self, deployment_id: str, *, owner: str | None = None) -> Iterator[LockRecord]:
        """Hold the advisory lock for ``deployment_id``; refuse if already held."""
        lock_path = self.lock_path_for(deployment_id)
        self._ensure_state_dir()
        handle = open(lock_path, "a+", encoding="utf-8")  # noqa: SIM115
        try:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                raise JournalLockedError(
                    deployment_id=deployment_id,
                    holder=_describe_holder(handle),
                ) from exc

            record = LockRecord(
                deployment_id=deployment_id,
                lock_id=str(uuid4()),
                acquired_by=owner or default_owner(),
                acquired_at=iso8601_utc(now_utc()),
                pid=os.getpid(),
            )
            _write_lock_metadata(handle, record)
            logger.debug("Acquired journal lock %s for %s", record.lock_id, deployment_id)
            try:
                yield record
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    # ------------------------------------------------------------------
    # Journal operations
    # ------------------------------------------------------------------

    def load(self, deployment_id: str) -> Journal | None:
        """Return the persisted journal, or None when no prior run left one."""
        path = self.path_for(deployment_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            journal = Journal.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise JournalError(f"Unreadable journal {path}: {exc}") from exc
        if journal.deployment_id != deployment_id:
            raise JournalError(
                f"Journal {path} belongs to {journal.deployment_id!r}, not {deployment_id!r}"
            )
        return journal

    def create(self, deployment_id: str) -> Journal:
        """Start an empty journal; it reaches disk with the first append."""
        return Journal(deployment_id=deployment_id, started_at=iso8601_utc(now_utc()))

    def append(self, journal: Journal, record: ResourceRecord) -> None:
        """Add ``record`` and flush before returning.

        The record stays in memory even when the flush fails so rollback
        still sees the resource.
        """
        journal.records.append(record)
        self._flush(journal)

    def discard(self, journal: Journal, record: ResourceRecord) -> None:
        """Drop a record that was deleted or found missing, and flush."""
        journal.records = [item for item in journal.records if item != record]
        self._flush(journal)

    def mark_published(self, journal: Journal, keys: Iterable[str]) -> None:
        for key in keys:
            if key not in journal.published:
                journal.published.append(key)
        self._flush(journal)

    def clear(self, deployment_id: str) -> None:
        path = self.path_for(deployment_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise JournalError(f"Could not remove journal {path}: {exc}") from exc
        logger.info("Cleared journal %s", path)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_state_dir(self) -> None:
        try:
            self._state_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        except OSError as exc:
            raise JournalError(
                f"Could not create state directory {self._state_dir}: {exc}"
            ) from exc

    def _flush(self, journal: Journal) -> None:
        self._ensure_state_dir()
        path = self.path_for(journal.deployment_id)
        tmp_path = path.with_suffix(f".json.tmp.{os.getpid()}")
        payload = json.dumps(journal.to_dict(), indent=2, sort_keys=True) + "\n"
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, JOURNAL_FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
            _fsync_directory(path.parent)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise JournalError(f"Could not write journal {path}: {exc}") from exc


def _fsync_directory(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _write_lock_metadata(handle: IO[str], record: LockRecord) -> None:
    handle.seek(0)
    handle.truncate()
    handle.write(
        json.dumps(
            {
                "deploymentId": record.deployment_id,
                "lockId": record.lock_id,
                "acquiredBy": record.acquired_by,
                "acquiredAt": record.acquired_at,
                "pid": record.pid,
            },
            indent=2,
        )
        + "\n"
    )
    handle.flush()


def _describe_holder(handle: IO[str]) -> str:
    handle.seek(0)
    try:
        data = json.loads(handle.read() or "{}")
    except ValueError:
        return "an unknown process"
    acquired_by = data.get("acquiredBy", "unknown")
    pid = data.get("pid", "?")
    acquired_at = data.get("acquiredAt", "?")
    return f"{acquired_by} (pid {pid}, since {acquired_at})"
