"""Database-backed action queue with atomic batch claiming.

Items move ``pending -> processing -> completed | failed``. Claiming is a single
transaction per batch: the oldest pending rows are selected with
``FOR UPDATE SKIP LOCKED`` (a no-op on SQLite, where the write lock serializes
claimers) and each row is flipped to ``processing`` by a conditional update
that only succeeds while the row is still pending. Either mechanism alone keeps
a second claimer from taking the same row; together they hold on every
supported backend.
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from config import settings
from models import QueueItem
from services.database import get_sync_session
from time_utils import ensure_aware

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "failed"})


class QueueError(Exception):
    """Raised when a queue transition is not permitted."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class QueueItemSnapshot:
    """Immutable view of a queue item handed to workers."""

    id: int
    event_type: str
    payload: dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    last_error: str | None
    worker_id: str | None
    created_at: datetime
    claimed_at: datetime | None
    completed_at: datetime | None

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempts, 0)


class ActionQueue:
    """Enqueue, claim and settle pipeline work items."""

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        default_max_attempts: int | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory or get_sync_session
        self._default_max_attempts = (
            default_max_attempts
            if default_max_attempts is not None
            else settings.queue.default_max_attempts
        )
        self._now = now or (lambda: datetime.now(timezone.utc))

    def enqueue(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        max_attempts: int | None = None,
    ) -> int:
        """Persist a new pending item and return its id."""
        if not event_type:
            raise QueueError("invalid_event_type", "event_type is required.")
        resolved_max = max_attempts if max_attempts is not None else self._default_max_attempts
        if resolved_max < 1:
            raise QueueError("invalid_max_attempts", "max_attempts must be >= 1.")

        def handler(session: Session) -> int:
            item = QueueItem(
                event_type=event_type,
                payload=dict(payload),
                status="pending",
                attempts=0,
                max_attempts=resolved_max,
                created_at=self._now(),
            )
            session.add(item)
            session.flush()
            return item.id

        item_id = self._execute(handler)
        logger.debug("Enqueued %s item %s", event_type, item_id)
        return item_id

    def claim_batch(self, worker_id: str, limit: int) -> list[QueueItemSnapshot]:
        """Atomically claim up to ``limit`` pending items for a worker.

        Items are taken oldest first. Every claim increments ``attempts``.
        """
        if limit < 1:
            return []
        claimed_at = self._now()

        def handler(session: Session) -> list[QueueItemSnapshot]:
            candidate_ids = [
                row.id
                for row in (
                    session.query(QueueItem.id)
                    .filter(
                        QueueItem.status == "pending",
                        QueueItem.attempts < QueueItem.max_attempts,
                    )
                    .order_by(QueueItem.created_at.asc(), QueueItem.id.asc())
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                    .all()
                )
            ]
            claimed: list[QueueItemSnapshot] = []
            for item_id in candidate_ids:
                result = session.execute(
                    update(QueueItem)
                    .where(QueueItem.id == item_id, QueueItem.status == "pending")
                    .values(
                        status="processing",
                        attempts=QueueItem.attempts + 1,
                        worker_id=worker_id,
                        claimed_at=claimed_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                item = session.get(QueueItem, item_id, populate_existing=True)
                claimed.append(_snapshot(item))
            return claimed

        claimed = self._execute(handler)
        if claimed:
            logger.info("Worker %s claimed %d item(s)", worker_id, len(claimed))
        return claimed

    def renew_claim(self, item_id: int, worker_id: str) -> bool:
        """Refresh the lease on a claimed item.

        Returns ``False`` when the worker no longer holds the claim, for example
        after ``reset_stale_claims`` handed the item to another worker.
        """

        def handler(session: Session) -> bool:
            result = session.execute(
                update(QueueItem)
                .where(
                    QueueItem.id == item_id,
                    QueueItem.status == "processing",
                    QueueItem.worker_id == worker_id,
                )
                .values(claimed_at=self._now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        renewed = self._execute(handler)
        if not renewed:
            logger.warning("Worker %s lost its claim on queue item %s", worker_id, item_id)
        return renewed

    def mark_completed(self, item_id: int, worker_id: str | None = None) -> QueueItemSnapshot:
        """Settle a processing item as completed.

        When ``worker_id`` is given the item must still be claimed by that worker.
        """

        def handler(session: Session) -> QueueItemSnapshot:
            item = _fetch_claimed(session, item_id, worker_id)
            item.status = "completed"
            item.completed_at = self._now()
            item.worker_id = None
            return _snapshot(item)

        return self._execute(handler)

    def mark_failed(
        self, item_id: int, error: str, worker_id: str | None = None
    ) -> QueueItemSnapshot:
        """Record a failed attempt.

        The item returns to ``pending`` while attempts remain, otherwise it is
        dead-lettered as terminal ``failed`` and never claimed again.
        """

        def handler(session: Session) -> QueueItemSnapshot:
            item = _fetch_claimed(session, item_id, worker_id)
            _settle_failure(item, error, self._now())
            return _snapshot(item)

        snapshot = self._execute(handler)
        if snapshot.status == "failed":
            logger.error(
                "Queue item %s dead-lettered after %d attempt(s): %s",
                item_id,
                snapshot.attempts,
                error,
            )
        else:
            logger.warning(
                "Queue item %s failed attempt %d/%d: %s",
                item_id,
                snapshot.attempts,
                snapshot.max_attempts,
                error,
            )
        return snapshot

    def release(self, item_id: int, worker_id: str | None = None) -> QueueItemSnapshot:
        """Return a claimed but unprocessed item to ``pending``.

        Used on shutdown; the claim is not counted as an attempt.
        """

        def handler(session: Session) -> QueueItemSnapshot:
            item = _fetch_claimed(session, item_id, worker_id)
            item.status = "pending"
            item.attempts = max((item.attempts or 0) - 1, 0)
            item.worker_id = None
            item.claimed_at = None
            return _snapshot(item)

        snapshot = self._execute(handler)
        logger.info("Released queue item %s without processing", item_id)
        return snapshot

    def reset_stale_claims(self, older_than: timedelta | None = None) -> int:
        """Release items left in ``processing`` by a crashed worker.

        The abandoned claim already consumed an attempt; items with no attempts
        left are dead-lettered instead of released.
        """
        lease = older_than or timedelta(seconds=settings.queue.stale_claim_seconds)
        now = self._now()
        cutoff = now - lease

        def handler(session: Session) -> int:
            stale = (
                session.query(QueueItem)
                .filter(QueueItem.status == "processing")
                .with_for_update(skip_locked=True)
                .all()
            )
            released = 0
            for item in stale:
                claimed_at = ensure_aware(item.claimed_at)
                if claimed_at is not None and claimed_at > cutoff:
                    continue
                _settle_failure(item, "claim expired without completion", now)
                released += 1
            return released

        released = self._execute(handler)
        if released:
            logger.warning("Reset %d stale queue claim(s)", released)
        return released

    def requeue(self, item_id: int) -> QueueItemSnapshot:
        """Operator action: return a dead-lettered item to pending with fresh attempts."""

        def handler(session: Session) -> QueueItemSnapshot:
            item = _fetch_item(session, item_id)
            if item.status != "failed":
                raise QueueError(
                    "invalid_transition",
                    f"Only failed items can be requeued; {item_id} is {item.status}.",
                )
            item.status = "pending"
            item.attempts = 0
            item.completed_at = None
            item.claimed_at = None
            return _snapshot(item)

        snapshot = self._execute(handler)
        logger.info("Requeued dead-lettered item %s", item_id)
        return snapshot

    def get(self, item_id: int) -> QueueItemSnapshot | None:
        """Return a snapshot of an item, if present."""

        def handler(session: Session) -> QueueItemSnapshot | None:
            item = session.get(QueueItem, item_id)
            return _snapshot(item) if item is not None else None

        return self._execute(handler)

    def backlog(self, limit: int = 50) -> list[QueueItemSnapshot]:
        """Return dead-lettered items, most recent first."""

        def handler(session: Session) -> list[QueueItemSnapshot]:
            items = (
                session.query(QueueItem)
                .filter(QueueItem.status == "failed")
                .order_by(QueueItem.completed_at.desc(), QueueItem.id.desc())
                .limit(limit)
                .all()
            )
            return [_snapshot(item) for item in items]

        return self._execute(handler)

    def stats(self) -> dict[str, int]:
        """Return item counts per status."""

        def handler(session: Session) -> dict[str, int]:
            rows = (
                session.query(QueueItem.status, func.count(QueueItem.id))
                .group_by(QueueItem.status)
                .all()
            )
            counts = {status: 0 for status in ("pending", "processing", "completed", "failed")}
            counts.update({status: int(count) for status, count in rows})
            return counts

        return self._execute(handler)

    def _execute(self, handler):
        """Execute queue work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _fetch_item(session: Session, item_id: int) -> QueueItem:
    """Return a queue item or raise when missing."""
    item = session.get(QueueItem, item_id)
    if item is None:
        raise QueueError("not_found", f"Queue item not found: {item_id}")
    return item


def _fetch_claimed(session: Session, item_id: int, worker_id: str | None) -> QueueItem:
    """Return a processing item, checking the claim holder when one is named."""
    item = session.get(QueueItem, item_id, with_for_update=True)
    if item is None:
        raise QueueError("not_found", f"Queue item not found: {item_id}")
    if item.status != "processing":
        raise QueueError(
            "invalid_transition",
            f"Queue item {item_id} is {item.status}, not processing.",
        )
    if worker_id is not None and item.worker_id != worker_id:
        raise QueueError(
            "claim_lost",
            f"Queue item {item_id} is claimed by {item.worker_id}, not {worker_id}.",
        )
    return item


def _settle_failure(item: QueueItem, error: str, now: datetime) -> None:
    """Apply the attempt-count retry policy to a failed attempt."""
    item.last_error = error
    item.worker_id = None
    if item.attempts < item.max_attempts:
        item.status = "pending"
        return
    item.status = "failed"
    item.completed_at = now


def _snapshot(item: QueueItem) -> QueueItemSnapshot:
    return QueueItemSnapshot(
        id=item.id,
        event_type=item.event_type,
        payload=dict(item.payload or {}),
        status=item.status,
        attempts=item.attempts,
        max_attempts=item.max_attempts,
        last_error=item.last_error,
        worker_id=item.worker_id,
        created_at=ensure_aware(item.created_at),
        claimed_at=ensure_aware(item.claimed_at),
        completed_at=ensure_aware(item.completed_at),
    )
