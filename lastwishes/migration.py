"""
Moves a visitor's pre-signup pledge into their permanent patron record.

The routine runs in the background of a sign-in: it logs what goes wrong and
returns an outcome, but never raises into the auth flow that triggered it.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence
from urllib.parse import unquote, urlparse

from lastwishes.db import DbClient
from lastwishes.errors import BackendError, NotFoundError
from lastwishes.identity import AuthEvent, AuthSession
from lastwishes.pledge import PledgeForm
from lastwishes.queue import JobQueue, MigrationRetryJob
from lastwishes.session_store import SessionStore
from lastwishes.storage import MEMORIES_BUCKET, StorageClient

logger = logging.getLogger(__name__)

MIGRATION_MARKER_PREFIX = "migration_done_"


class MigrationOutcome(str, Enum):
    NOTHING_TO_MIGRATE = "nothing_to_migrate"
    LOOKUP_FAILED = "lookup_failed"
    INVALID_PAYLOAD = "invalid_payload"
    MIGRATED = "migrated"
    RECORD_WRITE_FAILED = "record_write_failed"
    CLEANUP_FAILED = "cleanup_failed"
    FAILED = "failed"


@dataclass
class MigrationResult:
    outcome: MigrationOutcome
    relocated_urls: list[str] = field(default_factory=list)
    dropped_urls: list[str] = field(default_factory=list)
    retry_scheduled: bool = False


def _url_segments(url: str) -> list[str]:
    segments = [unquote(part) for part in urlparse(url).path.split("/") if part]
    if len(segments) < 2:
        raise ValueError(f"Not a storage object URL: {url}")
    return segments


def temp_path_for(url: str) -> str:
    """``temp/<folder>/<name>`` from a temporary memory file's public URL."""
    segments = _url_segments(url)
    return f"temp/{segments[-2]}/{segments[-1]}"


def permanent_path_for(user_id: str, url: str) -> str:
    return f"{user_id}/{_url_segments(url)[-1]}"


def relocate_files(
    user_id: str,
    urls: Sequence[str],
    *,
    storage: StorageClient,
    max_workers: int = 8,
) -> tuple[list[str], list[str]]:
    """
    Move every temporary file under the user's folder in parallel.

    Returns ``(relocated_urls, dropped_urls)``; relocated URLs keep the input
    order. A file already at its destination (an earlier attempt moved it)
    counts as relocated.
    """
    if not urls:
        return [], []

    def _relocate(url: str) -> Optional[str]:
        try:
            src = temp_path_for(url)
            dest = permanent_path_for(user_id, url)
        except ValueError as exc:
            logger.error("Skipping memory file: %s", exc)
            return None
        try:
            storage.move(MEMORIES_BUCKET, src, dest)
        except BackendError as exc:
            if storage.exists(MEMORIES_BUCKET, dest):
                return storage.public_url(MEMORIES_BUCKET, dest)
            logger.error("Failed to move %s: %s", src, exc.message)
            return None
        return storage.public_url(MEMORIES_BUCKET, dest)

    with ThreadPoolExecutor(max_workers=min(max_workers, len(urls))) as executor:
        results = list(executor.map(_relocate, urls))

    relocated = [new for new in results if new]
    dropped = [old for old, new in zip(urls, results) if not new]
    return relocated, dropped


def _schedule_retry(
    queue: Optional[JobQueue],
    user_id: str,
    email: str,
    attempt: int,
    max_attempts: int,
) -> bool:
    if attempt >= max_attempts:
        logger.critical(
            "Migration for user_id=%s gave up after %d attempts; pledge data remains in temp_patrons",
            user_id,
            attempt,
        )
        return False
    if queue is None:
        logger.error("No retry queue configured; migration for user_id=%s not retried", user_id)
        return False
    try:
        queue.enqueue(MigrationRetryJob(user_id=user_id, email=email, attempt=attempt + 1))
    except Exception:
        logger.exception("Failed to enqueue migration retry for user_id=%s", user_id)
        return False
    logger.info("Queued migration retry %d for user_id=%s", attempt + 1, user_id)
    return True


def migrate_patron_data(
    user_id: str,
    email: Optional[str],
    *,
    db: DbClient,
    storage: StorageClient,
    queue: Optional[JobQueue] = None,
    attempt: int = 1,
    max_attempts: int = 5,
    max_workers: int = 8,
) -> MigrationResult:
    if not email:
        return MigrationResult(MigrationOutcome.NOTHING_TO_MIGRATE)

    try:
        record = db.get_temp_patron_by_email(email)
    except NotFoundError:
        record = None
    except BackendError as exc:
        logger.error("Error checking temp data for user_id=%s: %s", user_id, exc.message)
        return MigrationResult(MigrationOutcome.LOOKUP_FAILED)
    if record is None:
        return MigrationResult(MigrationOutcome.NOTHING_TO_MIGRATE)

    logger.info("Found temporary pledge for user_id=%s, migrating", user_id)
    try:
        form, temp_urls = PledgeForm.from_payload(record.form_data or {})
    except (TypeError, ValueError) as exc:
        logger.error("Unreadable pledge payload %s: %s", record.id, exc)
        return MigrationResult(MigrationOutcome.INVALID_PAYLOAD)

    try:
        relocated, dropped = relocate_files(
            user_id, temp_urls, storage=storage, max_workers=max_workers
        )

        try:
            db.upsert_patron(form.to_patron_row(user_id, email, relocated))
        except BackendError as exc:
            logger.error(
                "Error saving patron record for user_id=%s: %s", user_id, exc.message
            )
            scheduled = _schedule_retry(queue, user_id, email, attempt, max_attempts)
            return MigrationResult(
                MigrationOutcome.RECORD_WRITE_FAILED,
                relocated_urls=relocated,
                dropped_urls=dropped,
                retry_scheduled=scheduled,
            )

        try:
            db.delete_temp_patron(record.id)
        except BackendError as exc:
            logger.error("Failed to delete temp record %s: %s", record.id, exc.message)
            return MigrationResult(
                MigrationOutcome.CLEANUP_FAILED,
                relocated_urls=relocated,
                dropped_urls=dropped,
            )
    except Exception:
        logger.exception("Migration failed for user_id=%s", user_id)
        return MigrationResult(MigrationOutcome.FAILED)

    logger.info(
        "Migrated pledge for user_id=%s (%d file(s) moved, %d dropped)",
        user_id,
        len(relocated),
        len(dropped),
    )
    return MigrationResult(
        MigrationOutcome.MIGRATED, relocated_urls=relocated, dropped_urls=dropped
    )


class MigrationTrigger:
    """
    Auth-event listener that runs the migration once per user per portal
    session, tracked by ``migration_done_<user_id>`` markers.
    """

    def __init__(
        self,
        portal_id: str,
        markers: SessionStore,
        migrate: Callable[[str, Optional[str]], object],
    ):
        self.portal_id = portal_id
        self.markers = markers
        self.migrate = migrate

    def __call__(self, event: AuthEvent, session: Optional[AuthSession]) -> None:
        if event == AuthEvent.SIGNED_IN and session is not None:
            self.run_once(session.user.id, session.user.email)
        elif event == AuthEvent.SIGNED_OUT:
            self.clear_markers()

    @staticmethod
    def marker_key(user_id: str) -> str:
        return f"{MIGRATION_MARKER_PREFIX}{user_id}"

    def run_once(self, user_id: str, email: Optional[str]) -> bool:
        key = self.marker_key(user_id)
        if self.markers.get(self.portal_id, key):
            return False
        try:
            self.migrate(user_id, email)
        except Exception:
            logger.exception("Migration raised for user_id=%s", user_id)
        finally:
            self.markers.set(self.portal_id, key, "true")
        return True

    def clear_markers(self) -> None:
        for key in self.markers.keys(self.portal_id):
            if key.startswith(MIGRATION_MARKER_PREFIX):
                self.markers.delete(self.portal_id, key)
