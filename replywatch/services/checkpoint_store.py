"""Per-mailbox change-stream checkpoints.

The stored position is the last cursor whose every change has been recorded.
It only moves through ``advance``, a compare-and-set on the position the
caller read, so two workers scanning the same mailbox can never move it
backwards or skip a range: the loser of the race simply leaves it alone and
the range is re-read later (at-least-once).

Reads go through a small process-wide cache (TTL + LRU). Every write through
the store invalidates the entry; a stale read can only cause an extra re-scan,
never a skipped one, because ``advance`` checks the database value.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replywatch.config import get_settings
from replywatch.db.types import utcnow
from replywatch.errors import NotFoundError
from replywatch.models.anomaly import (
    ANOMALY_SYNC_ERRORS,
    ANOMALY_TOKEN_EXPIRED,
    SEVERITY_HIGH,
    SEVERITY_MEDIUM,
)
from replywatch.models.mailbox_checkpoint import (
    SYNC_STATUS_ACTIVE,
    SYNC_STATUS_ERROR,
    SYNC_STATUS_PAUSED,
    SYNC_STATUS_TOKEN_EXPIRED,
    UNSCHEDULABLE_SYNC_STATUSES,
    MailboxCheckpoint,
)
from replywatch.services.anomalies import raise_anomaly

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(frozen=True)
class CheckpointSnapshot:
    """Detached view of a MailboxCheckpoint row; safe to cache across sessions."""

    tenant_id: int
    provider: str
    mailbox_address: str
    last_position: str | None
    last_checked_at: datetime | None
    sync_status: str
    consecutive_errors: int
    error_message: str | None

    @classmethod
    def from_row(cls, row: MailboxCheckpoint) -> CheckpointSnapshot:
        return cls(
            tenant_id=row.tenant_id,
            provider=row.provider,
            mailbox_address=row.mailbox_address,
            last_position=row.last_position,
            last_checked_at=row.last_checked_at,
            sync_status=row.sync_status,
            consecutive_errors=row.consecutive_errors,
            error_message=row.error_message,
        )

    @property
    def schedulable(self) -> bool:
        return self.sync_status not in UNSCHEDULABLE_SYNC_STATUSES


class CheckpointCache:
    """Thread-safe TTL cache with an LRU bound. Caches misses (None) too."""

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[tuple[str, str], tuple[float, CheckpointSnapshot | None]] = (
            OrderedDict()
        )
        self._lock = threading.Lock()

    def get(self, key: tuple[str, str]):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return _MISSING
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return _MISSING
            self._entries.move_to_end(key)
            return value

    def put(self, key: tuple[str, str], value: CheckpointSnapshot | None) -> None:
        if self.max_entries <= 0 or self.ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, key: tuple[str, str]) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


_settings = get_settings()
checkpoint_cache = CheckpointCache(
    ttl_seconds=_settings.checkpoint_cache_ttl_seconds,
    max_entries=_settings.checkpoint_cache_max_entries,
)


def _key(provider: str, mailbox_address: str) -> tuple[str, str]:
    return provider, mailbox_address.strip().lower()


class CheckpointStore:
    """Checkpoint reads and writes for one database session."""

    def __init__(
        self,
        db: Session,
        cache: CheckpointCache | None = None,
        error_threshold: int | None = None,
    ) -> None:
        self.db = db
        self.cache = cache if cache is not None else checkpoint_cache
        self.error_threshold = error_threshold or get_settings().checkpoint_error_threshold

    def _row(self, provider: str, mailbox_address: str) -> MailboxCheckpoint | None:
        provider, mailbox = _key(provider, mailbox_address)
        return self.db.scalar(
            select(MailboxCheckpoint).where(
                MailboxCheckpoint.provider == provider,
                MailboxCheckpoint.mailbox_address == mailbox,
            )
        )

    def get(self, provider: str, mailbox_address: str) -> CheckpointSnapshot | None:
        key = _key(provider, mailbox_address)
        cached = self.cache.get(key)
        if cached is not _MISSING:
            return cached
        row = self._row(provider, mailbox_address)
        snapshot = CheckpointSnapshot.from_row(row) if row is not None else None
        self.cache.put(key, snapshot)
        return snapshot

    def initialize(
        self, tenant_id: int, provider: str, mailbox_address: str, position: str
    ) -> CheckpointSnapshot:
        """Create the checkpoint at position, or set it if the row has no position yet.

        An existing position is never overwritten.
        """
        key = _key(provider, mailbox_address)
        self.cache.invalidate(key)
        row = self._row(provider, mailbox_address)
        if row is None:
            row = MailboxCheckpoint(
                tenant_id=tenant_id,
                provider=key[0],
                mailbox_address=key[1],
                last_position=position,
                last_checked_at=utcnow(),
                sync_status=SYNC_STATUS_ACTIVE,
            )
            try:
                with self.db.begin_nested():
                    self.db.add(row)
            except IntegrityError:
                # Created concurrently; keep the other writer's row
                row = self._row(provider, mailbox_address)
        elif row.last_position is None:
            self.db.execute(
                update(MailboxCheckpoint)
                .where(
                    MailboxCheckpoint.id == row.id,
                    MailboxCheckpoint.last_position.is_(None),
                )
                .values(last_position=position, last_checked_at=utcnow(), updated_at=utcnow())
            )
        self.db.commit()
        self.db.refresh(row)
        logger.info(
            "Checkpoint initialized: provider=%s mailbox=%s position=%s",
            key[0],
            key[1],
            row.last_position,
        )
        return CheckpointSnapshot.from_row(row)

    def advance(
        self,
        provider: str,
        mailbox_address: str,
        expected_position: str | None,
        new_position: str,
    ) -> bool:
        """Move the position from expected_position to new_position. False if it moved meanwhile."""
        key = _key(provider, mailbox_address)
        self.cache.invalidate(key)
        if expected_position is None:
            position_matches = MailboxCheckpoint.last_position.is_(None)
        else:
            position_matches = MailboxCheckpoint.last_position == expected_position
        now = utcnow()
        result = self.db.execute(
            update(MailboxCheckpoint)
            .where(
                MailboxCheckpoint.provider == key[0],
                MailboxCheckpoint.mailbox_address == key[1],
                position_matches,
            )
            .values(
                last_position=new_position,
                last_checked_at=now,
                consecutive_errors=0,
                error_message=None,
                updated_at=now,
            )
        )
        if result.rowcount:
            # Successful sync clears error states; an operator pause stays in place
            self.db.execute(
                update(MailboxCheckpoint)
                .where(
                    MailboxCheckpoint.provider == key[0],
                    MailboxCheckpoint.mailbox_address == key[1],
                    MailboxCheckpoint.sync_status != SYNC_STATUS_PAUSED,
                )
                .values(sync_status=SYNC_STATUS_ACTIVE)
            )
        self.db.commit()
        advanced = bool(result.rowcount)
        if not advanced:
            logger.info(
                "Checkpoint advance lost: provider=%s mailbox=%s expected=%s",
                key[0],
                key[1],
                expected_position,
            )
        return advanced

    def touch(self, provider: str, mailbox_address: str, position: str) -> None:
        """Record a read that found the position unchanged."""
        key = _key(provider, mailbox_address)
        self.cache.invalidate(key)
        self.db.execute(
            update(MailboxCheckpoint)
            .where(
                MailboxCheckpoint.provider == key[0],
                MailboxCheckpoint.mailbox_address == key[1],
                MailboxCheckpoint.last_position == position,
            )
            .values(last_checked_at=utcnow())
        )
        self.db.commit()

    def record_error(
        self,
        provider: str,
        mailbox_address: str,
        message: str,
        *,
        auth_error: bool = False,
        tenant_id: int | None = None,
        job_id: int | None = None,
    ) -> CheckpointSnapshot:
        """Count a sync failure. Auth errors expire the token; repeated errors stop scheduling."""
        key = _key(provider, mailbox_address)
        self.cache.invalidate(key)
        row = self._row(provider, mailbox_address)
        if row is None:
            row = MailboxCheckpoint(
                tenant_id=tenant_id or 0,
                provider=key[0],
                mailbox_address=key[1],
                last_position=None,
                consecutive_errors=0,
                sync_status=SYNC_STATUS_ACTIVE,
            )
            self.db.add(row)
        previous_status = row.sync_status
        row.consecutive_errors = (row.consecutive_errors or 0) + 1
        row.error_message = message[:2000]
        if auth_error:
            row.sync_status = SYNC_STATUS_TOKEN_EXPIRED
        elif (
            row.consecutive_errors >= self.error_threshold
            and row.sync_status not in (SYNC_STATUS_PAUSED, SYNC_STATUS_TOKEN_EXPIRED)
        ):
            row.sync_status = SYNC_STATUS_ERROR
        self.db.flush()

        details = {
            "mailbox_address": key[1],
            "consecutive_errors": row.consecutive_errors,
            "error": message,
        }
        if row.sync_status != previous_status:
            logger.warning(
                "Checkpoint status changed: provider=%s mailbox=%s %s -> %s errors=%d",
                key[0],
                key[1],
                previous_status,
                row.sync_status,
                row.consecutive_errors,
            )
            if row.sync_status == SYNC_STATUS_TOKEN_EXPIRED:
                raise_anomaly(
                    self.db,
                    ANOMALY_TOKEN_EXPIRED,
                    SEVERITY_HIGH,
                    tenant_id=row.tenant_id,
                    provider=key[0],
                    job_id=job_id,
                    details=details,
                    requires_manual_review=True,
                    commit=False,
                )
            elif row.sync_status == SYNC_STATUS_ERROR:
                raise_anomaly(
                    self.db,
                    ANOMALY_SYNC_ERRORS,
                    SEVERITY_MEDIUM,
                    tenant_id=row.tenant_id,
                    provider=key[0],
                    job_id=job_id,
                    details=details,
                    commit=False,
                )
        self.db.commit()
        return CheckpointSnapshot.from_row(row)

    def reset_position(self, provider: str, mailbox_address: str) -> None:
        """Drop the position after a history gap; the next scan re-initializes at the head."""
        key = _key(provider, mailbox_address)
        self.cache.invalidate(key)
        self.db.execute(
            update(MailboxCheckpoint)
            .where(
                MailboxCheckpoint.provider == key[0],
                MailboxCheckpoint.mailbox_address == key[1],
            )
            .values(last_position=None, updated_at=utcnow())
        )
        self.db.commit()

    def is_schedulable(self, provider: str, mailbox_address: str) -> bool:
        snapshot = self.get(provider, mailbox_address)
        return snapshot is None or snapshot.schedulable

    def unschedulable_mailboxes(self) -> set[tuple[str, str]]:
        """(provider, mailbox) pairs that must not receive new job runs."""
        rows = self.db.execute(
            select(MailboxCheckpoint.provider, MailboxCheckpoint.mailbox_address).where(
                MailboxCheckpoint.sync_status.in_(UNSCHEDULABLE_SYNC_STATUSES)
            )
        ).all()
        return {(provider, mailbox) for provider, mailbox in rows}

    def set_paused(self, provider: str, mailbox_address: str, paused: bool = True) -> CheckpointSnapshot:
        row = self._row(provider, mailbox_address)
        if row is None:
            raise NotFoundError(f"No checkpoint for {provider}:{mailbox_address}")
        self.cache.invalidate(_key(provider, mailbox_address))
        row.sync_status = SYNC_STATUS_PAUSED if paused else SYNC_STATUS_ACTIVE
        self.db.commit()
        return CheckpointSnapshot.from_row(row)

    def resume(self, provider: str, mailbox_address: str) -> CheckpointSnapshot:
        """Re-enable a mailbox after re-authorization or operator review."""
        row = self._row(provider, mailbox_address)
        if row is None:
            raise NotFoundError(f"No checkpoint for {provider}:{mailbox_address}")
        self.cache.invalidate(_key(provider, mailbox_address))
        row.sync_status = SYNC_STATUS_ACTIVE
        row.consecutive_errors = 0
        row.error_message = None
        self.db.commit()
        logger.info("Checkpoint resumed: provider=%s mailbox=%s", row.provider, row.mailbox_address)
        return CheckpointSnapshot.from_row(row)
