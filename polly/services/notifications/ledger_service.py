from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from polly.db.models import DeliveryStatus, EmailNotification, NotificationType
from polly.db.session import get_sync_session
from polly.schemas.notification_schemas import DeliverySummary
from polly.utils.datetime_utils import naive_utc_now, to_naive_utc


class DeliveryLedgerService:
    """Append-only history of delivery attempts, one row per attempt."""

    def __init__(self, db_session: Session):
        self.db = db_session

    async def _prior_attempts(self, queue_entry_id: Optional[int]) -> int:
        if queue_entry_id is None:
            return 0
        result = self.db.execute(
            select(func.count(EmailNotification.id)).where(
                EmailNotification.queue_entry_id == queue_entry_id
            )
        )
        return result.scalar_one()

    async def record_attempt(
        self,
        user_id: str,
        notification_type: NotificationType,
        status: DeliveryStatus,
        template_data: Optional[Dict[str, Any]] = None,
        email_address: Optional[str] = None,
        subject: Optional[str] = None,
        poll_id: Optional[str] = None,
        queue_entry_id: Optional[int] = None,
        email_provider_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        attempted_at: Optional[datetime] = None,
    ) -> EmailNotification:
        """
        Add a ledger record for one send attempt and flush it.

        The record joins the caller's transaction; committing is left to the
        caller so the attempt and the queue transition land together.
        """
        attempted_at = to_naive_utc(attempted_at) if attempted_at else naive_utc_now()

        record = EmailNotification(
            queue_entry_id=queue_entry_id,
            user_id=user_id,
            poll_id=poll_id,
            notification_type=notification_type,
            email_address=email_address,
            subject=subject,
            template_name=notification_type.value,
            template_data=dict(template_data or {}),
            status=status,
            sent_at=attempted_at if status == DeliveryStatus.SENT else None,
            failed_at=attempted_at if status == DeliveryStatus.FAILED else None,
            retry_count=await self._prior_attempts(queue_entry_id),
            failure_reason=failure_reason,
            email_provider_id=email_provider_id,
        )
        self.db.add(record)
        self.db.flush()
        return record

    async def latest_attempt(
        self, queue_entry_id: int
    ) -> Optional[EmailNotification]:
        result = self.db.execute(
            select(EmailNotification)
            .where(EmailNotification.queue_entry_id == queue_entry_id)
            .order_by(EmailNotification.id.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def list_history(
        self, user_id: str, limit: int = 20, offset: int = 0
    ) -> List[EmailNotification]:
        result = self.db.execute(
            select(EmailNotification)
            .where(EmailNotification.user_id == user_id)
            .order_by(EmailNotification.created_at.desc(), EmailNotification.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def count_history(self, user_id: str) -> int:
        result = self.db.execute(
            select(func.count(EmailNotification.id)).where(
                EmailNotification.user_id == user_id
            )
        )
        return result.scalar_one()

    async def summarize(self, user_id: Optional[str] = None) -> DeliverySummary:
        """Attempt counts grouped by status and by notification type."""
        by_status_query = select(
            EmailNotification.status, func.count(EmailNotification.id)
        ).group_by(EmailNotification.status)
        by_type_query = select(
            EmailNotification.notification_type, func.count(EmailNotification.id)
        ).group_by(EmailNotification.notification_type)

        if user_id is not None:
            by_status_query = by_status_query.where(EmailNotification.user_id == user_id)
            by_type_query = by_type_query.where(EmailNotification.user_id == user_id)

        by_status = {
            status.value: count for status, count in self.db.execute(by_status_query)
        }
        by_type = {
            notification_type.value: count
            for notification_type, count in self.db.execute(by_type_query)
        }
        return DeliverySummary(
            total=sum(by_status.values()), by_status=by_status, by_type=by_type
        )


# Dependency injection for service provider
def get_ledger_service(
    db: Session = Depends(get_sync_session),
) -> DeliveryLedgerService:
    """Dependency to provide DeliveryLedgerService instance"""
    return DeliveryLedgerService(db)
