import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from fastapi import Depends
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from polly.config.settings import settings
from polly.db.models import NotificationQueueEntry, NotificationType, QueueStatus
from polly.db.session import get_sync_session
from polly.utils.datetime_utils import to_naive_utc, utc_now, naive_utc_now, to_utc
from polly.utils.errors import (
    DuplicateNotificationError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from polly.utils.logging import get_logger

logger = get_logger()

ON_CONFLICT_IGNORE = "ignore"
ON_CONFLICT_RAISE = "raise"


class NotificationQueueService:
    """
    Durable queue of scheduled notifications.

    Status moves scheduled -> processing -> sent | failed | cancelled. The only
    backwards move is processing -> scheduled, used to defer an entry past the
    recipient's quiet hours. Every transition is a conditional UPDATE on the
    expected source status, so a concurrent run can never move an entry twice.
    """

    def __init__(self, db_session: Session, stale_grace_minutes: Optional[int] = None):
        self.db = db_session
        self.stale_grace_minutes = (
            stale_grace_minutes
            if stale_grace_minutes is not None
            else settings.NOTIFICATION_STALE_GRACE_MINUTES
        )

    # Enqueue
    async def _find_existing(
        self,
        user_id: str,
        poll_id: Optional[str],
        notification_type: NotificationType,
    ) -> Optional[NotificationQueueEntry]:
        query = select(NotificationQueueEntry).where(
            NotificationQueueEntry.user_id == user_id,
            NotificationQueueEntry.notification_type == notification_type,
        )
        if poll_id is None:
            query = query.where(NotificationQueueEntry.poll_id.is_(None))
        else:
            query = query.where(NotificationQueueEntry.poll_id == poll_id)

        return self.db.execute(query).scalars().first()

    @staticmethod
    def _resolve_duplicate(existing: NotificationQueueEntry, on_conflict: str) -> int:
        if on_conflict == ON_CONFLICT_RAISE:
            raise DuplicateNotificationError(existing.id)
        return existing.id

    async def enqueue(
        self,
        user_id: str,
        notification_type: NotificationType,
        scheduled_for: datetime,
        poll_id: Optional[str] = None,
        template_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        on_conflict: str = ON_CONFLICT_IGNORE,
    ) -> int:
        """
        Insert a `scheduled` entry and return its id.

        Args:
            on_conflict: "ignore" returns the id of an entry already queued
                under the same (user, poll, type) key; "raise" raises
                DuplicateNotificationError instead.

        Raises:
            ValidationError: `scheduled_for` lies further in the past than the
                stale grace window.
        """
        if on_conflict not in (ON_CONFLICT_IGNORE, ON_CONFLICT_RAISE):
            raise ValueError(f"Unsupported on_conflict mode: {on_conflict}")

        now = to_utc(now) if now else utc_now()
        scheduled_for = to_utc(scheduled_for)
        if scheduled_for < now - timedelta(minutes=self.stale_grace_minutes):
            raise ValidationError(
                f"Refusing to enqueue stale notification scheduled for {scheduled_for.isoformat()}",
                error_code="STALE_SCHEDULE",
            )

        existing = await self._find_existing(user_id, poll_id, notification_type)
        if existing is not None:
            return self._resolve_duplicate(existing, on_conflict)

        entry = NotificationQueueEntry(
            user_id=user_id,
            poll_id=poll_id,
            notification_type=notification_type,
            scheduled_for=to_naive_utc(scheduled_for),
            status=QueueStatus.SCHEDULED,
            template_data=dict(template_data or {}),
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = await self._find_existing(user_id, poll_id, notification_type)
            if existing is None:
                raise
            return self._resolve_duplicate(existing, on_conflict)

        logger.debug(
            "Enqueued notification",
            entry_id=entry.id,
            user_id=user_id,
            poll_id=poll_id,
            notification_type=notification_type.value,
            scheduled_for=scheduled_for.isoformat(),
        )
        return entry.id

    # Claim
    async def _candidate_ids(self, now: datetime, limit: int) -> List[int]:
        result = self.db.execute(
            select(NotificationQueueEntry.id)
            .where(
                NotificationQueueEntry.status == QueueStatus.SCHEDULED,
                NotificationQueueEntry.scheduled_for <= to_naive_utc(now),
            )
            .order_by(NotificationQueueEntry.scheduled_for, NotificationQueueEntry.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def _claim(
        self,
        entry_ids: Sequence[int],
        claim_token: str,
        claimed_at: Optional[datetime] = None,
    ) -> int:
        """Move still-scheduled entries to processing under `claim_token`."""
        claimed_at = to_naive_utc(claimed_at) if claimed_at else naive_utc_now()
        result = self.db.execute(
            update(NotificationQueueEntry)
            .where(
                NotificationQueueEntry.id.in_(entry_ids),
                NotificationQueueEntry.status == QueueStatus.SCHEDULED,
            )
            .values(
                status=QueueStatus.PROCESSING,
                claim_token=claim_token,
                claimed_at=claimed_at,
            ),
            execution_options={"synchronize_session": False},
        )
        self.db.commit()
        return result.rowcount

    async def _claimed_entries(self, claim_token: str) -> List[NotificationQueueEntry]:
        result = self.db.execute(
            select(NotificationQueueEntry)
            .where(
                NotificationQueueEntry.claim_token == claim_token,
                NotificationQueueEntry.status == QueueStatus.PROCESSING,
            )
            .order_by(NotificationQueueEntry.scheduled_for, NotificationQueueEntry.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def claim_due_batch(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[NotificationQueueEntry]:
        """
        Atomically take ownership of up to `limit` due entries.

        Entries are selected oldest first, then claimed with a conditional
        UPDATE that only matches rows still `scheduled`. Rows another run
        claimed in between are simply not returned.
        """
        now = now or utc_now()
        limit = limit or settings.NOTIFICATION_BATCH_SIZE

        candidate_ids = await self._candidate_ids(now, limit)
        if not candidate_ids:
            self.db.commit()
            return []

        claim_token = uuid.uuid4().hex
        claimed_count = await self._claim(candidate_ids, claim_token, claimed_at=now)
        if claimed_count == 0:
            return []

        entries = await self._claimed_entries(claim_token)
        logger.info(
            "Claimed notification batch",
            claim_token=claim_token,
            candidates=len(candidate_ids),
            claimed=len(entries),
        )
        return entries

    # Transitions
    async def _transition(
        self,
        entry_id: int,
        allowed_from: Sequence[QueueStatus],
        target: QueueStatus,
        commit: bool = True,
        **values: Any,
    ) -> None:
        result = self.db.execute(
            update(NotificationQueueEntry)
            .where(
                NotificationQueueEntry.id == entry_id,
                NotificationQueueEntry.status.in_(allowed_from),
            )
            .values(status=target, **values),
            execution_options={"synchronize_session": False},
        )

        if result.rowcount == 0:
            entry = self.db.get(NotificationQueueEntry, entry_id, populate_existing=True)
            if entry is None:
                raise NotFoundError(
                    f"Queue entry not found: {entry_id}", "QUEUE_ENTRY_NOT_FOUND"
                )
            raise InvalidStateTransitionError(
                entry_id, entry.status.value, target.value
            )

        if commit:
            self.db.commit()

    async def mark_sent(self, entry_id: int, commit: bool = True) -> None:
        await self._transition(
            entry_id,
            (QueueStatus.PROCESSING,),
            QueueStatus.SENT,
            commit=commit,
            processed_at=naive_utc_now(),
        )

    async def mark_failed(self, entry_id: int, commit: bool = True) -> None:
        await self._transition(
            entry_id,
            (QueueStatus.PROCESSING,),
            QueueStatus.FAILED,
            commit=commit,
            processed_at=naive_utc_now(),
        )

    async def mark_cancelled(self, entry_id: int, commit: bool = True) -> None:
        await self._transition(
            entry_id,
            (QueueStatus.PROCESSING, QueueStatus.SCHEDULED),
            QueueStatus.CANCELLED,
            commit=commit,
            processed_at=naive_utc_now(),
        )

    async def reschedule(
        self, entry_id: int, new_time: datetime, commit: bool = True
    ) -> None:
        """Return a claimed entry to `scheduled` at `new_time`."""
        await self._transition(
            entry_id,
            (QueueStatus.PROCESSING,),
            QueueStatus.SCHEDULED,
            commit=commit,
            scheduled_for=to_naive_utc(new_time),
            claim_token=None,
            claimed_at=None,
        )

    async def release_claim(self, entry_id: int, commit: bool = True) -> None:
        """Return an abandoned claim to `scheduled`, keeping its fire time."""
        await self._transition(
            entry_id,
            (QueueStatus.PROCESSING,),
            QueueStatus.SCHEDULED,
            commit=commit,
            claim_token=None,
            claimed_at=None,
        )

    # Reads
    async def get_entry(self, entry_id: int) -> NotificationQueueEntry:
        entry = self.db.get(NotificationQueueEntry, entry_id, populate_existing=True)
        if entry is None:
            raise NotFoundError(
                f"Queue entry not found: {entry_id}", "QUEUE_ENTRY_NOT_FOUND"
            )
        return entry

    async def list_stale_claims(
        self, claimed_before: datetime
    ) -> List[NotificationQueueEntry]:
        """Entries still `processing` under a claim taken before `claimed_before`."""
        result = self.db.execute(
            select(NotificationQueueEntry)
            .where(
                NotificationQueueEntry.status == QueueStatus.PROCESSING,
                NotificationQueueEntry.claimed_at < to_naive_utc(claimed_before),
            )
            .order_by(NotificationQueueEntry.claimed_at, NotificationQueueEntry.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_upcoming(
        self, user_id: str, limit: int = 50
    ) -> List[NotificationQueueEntry]:
        """Entries still waiting to fire for a user, soonest first."""
        result = self.db.execute(
            select(NotificationQueueEntry)
            .where(
                NotificationQueueEntry.user_id == user_id,
                NotificationQueueEntry.status == QueueStatus.SCHEDULED,
            )
            .order_by(NotificationQueueEntry.scheduled_for, NotificationQueueEntry.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())


# Dependency injection for service provider
def get_queue_service(
    db: Session = Depends(get_sync_session),
) -> NotificationQueueService:
    """Dependency to provide NotificationQueueService instance"""
    return NotificationQueueService(db)
