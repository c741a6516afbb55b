import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from polly.config.settings import settings
from polly.db.models import (
    DeliveryStatus,
    EmailNotification,
    NotificationQueueEntry,
    NotificationType,
)
from polly.schemas.notification_schemas import BatchResult, DirectoryUser
from polly.services.notifications.directories import PollDirectory, UserDirectory
from polly.services.notifications.email_client import EmailClient
from polly.services.notifications.ledger_service import DeliveryLedgerService
from polly.services.notifications.preference_service import (
    NotificationPreferenceService,
    should_deliver,
)
from polly.services.notifications.queue_service import NotificationQueueService
from polly.services.notifications.quiet_hours import (
    is_in_quiet_hours,
    next_delivery_time,
)
from polly.services.notifications.renderer import (
    EmailTemplateRenderer,
    sample_template_data,
    validate_template_data,
)
from polly.utils.datetime_utils import to_utc, utc_now
from polly.utils.errors import (
    BusinessLogicError,
    DeliveryError,
    NotFoundError,
    ValidationError,
)
from polly.utils.logging import get_logger

logger = get_logger()

OUTCOME_SENT = "sent"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


class DeliveryProcessor:
    """
    Periodic batch job that dispatches due queue entries.

    For every claimed entry the recipient's current preferences decide the
    outcome: disabled types are cancelled, entries inside quiet hours are
    pushed to the end of the window, everything else is rendered and sent.
    Each send attempt leaves one ledger record, committed before the queue
    transition. Failures are recorded, never retried automatically.
    """

    def __init__(
        self,
        db_session: Session,
        queue: NotificationQueueService,
        preferences: NotificationPreferenceService,
        ledger: DeliveryLedgerService,
        users: UserDirectory,
        polls: PollDirectory,
        renderer: EmailTemplateRenderer,
        email_client: EmailClient,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        chunk_delay_seconds: Optional[float] = None,
        claim_timeout_minutes: Optional[int] = None,
    ):
        self.db = db_session
        self.queue = queue
        self.preferences = preferences
        self.ledger = ledger
        self.users = users
        self.polls = polls
        self.renderer = renderer
        self.email_client = email_client
        self.batch_size = batch_size or settings.NOTIFICATION_BATCH_SIZE
        self.concurrency = max(1, concurrency or settings.NOTIFICATION_SEND_CONCURRENCY)
        self.chunk_delay_seconds = (
            chunk_delay_seconds
            if chunk_delay_seconds is not None
            else settings.NOTIFICATION_SEND_CHUNK_DELAY_SECONDS
        )
        self.claim_timeout_minutes = (
            claim_timeout_minutes
            if claim_timeout_minutes is not None
            else settings.NOTIFICATION_CLAIM_TIMEOUT_MINUTES
        )

    async def run_batch(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> BatchResult:
        """
        Claim due entries and process them in bounded concurrent chunks.

        Errors inside a single entry are isolated and counted; failing to claim
        from the queue store propagates to the caller.
        """
        now = to_utc(now) if now else utc_now()
        await self.recover_stale_claims(now)
        entries = await self.queue.claim_due_batch(now, limit or self.batch_size)

        result = BatchResult()
        for start in range(0, len(entries), self.concurrency):
            if start and self.chunk_delay_seconds > 0:
                await asyncio.sleep(self.chunk_delay_seconds)

            chunk = entries[start : start + self.concurrency]
            outcomes = await asyncio.gather(
                *(self._process_entry(entry, now) for entry in chunk)
            )
            for outcome in outcomes:
                setattr(result, outcome, getattr(result, outcome) + 1)

        logger.info(
            "Notification batch processed",
            claimed=len(entries),
            sent=result.sent,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result

    async def recover_stale_claims(self, now: Optional[datetime] = None) -> int:
        """
        Settle entries left `processing` by a run that died mid-batch.

        An entry whose last ledger attempt is recorded takes that outcome;
        an entry with no attempt goes back to `scheduled` for the next claim.
        """
        now = to_utc(now) if now else utc_now()
        cutoff = now - timedelta(minutes=self.claim_timeout_minutes)
        entries = await self.queue.list_stale_claims(cutoff)

        for entry in entries:
            attempt = await self.ledger.latest_attempt(entry.id)
            if attempt is None:
                await self.queue.release_claim(entry.id)
            elif attempt.status == DeliveryStatus.SENT:
                await self.queue.mark_sent(entry.id)
            else:
                await self.queue.mark_failed(entry.id)

        if entries:
            logger.warning(
                "Recovered abandoned notification claims",
                count=len(entries),
                claimed_before=cutoff.isoformat(),
            )
        return len(entries)

    async def _process_entry(self, entry: NotificationQueueEntry, now: datetime) -> str:
        entry_id = entry.id
        user_id = entry.user_id
        poll_id = entry.poll_id
        notification_type = entry.notification_type
        template_data = dict(entry.template_data or {})

        log = logger.bind(
            entry_id=entry_id,
            user_id=user_id,
            notification_type=notification_type.value,
        )

        delivered = False
        try:
            prefs = await self.preferences.get_effective_preferences(user_id)

            if not should_deliver(prefs, notification_type):
                await self.queue.mark_cancelled(entry_id)
                log.info("Notification cancelled by recipient preferences")
                return OUTCOME_SKIPPED

            if is_in_quiet_hours(prefs, now):
                deliver_at = next_delivery_time(prefs, now)
                await self.queue.reschedule(entry_id, deliver_at)
                log.info(
                    "Notification deferred past quiet hours",
                    deliver_at=deliver_at.isoformat(),
                )
                return OUTCOME_SKIPPED

            record = await self._deliver(
                user_id,
                notification_type,
                template_data,
                poll_id=poll_id,
                queue_entry_id=entry_id,
                attempted_at=now,
                verify_poll=True,
            )
            self.db.commit()
            delivered = record.status == DeliveryStatus.SENT

            if delivered:
                await self.queue.mark_sent(entry_id)
                return OUTCOME_SENT

            await self.queue.mark_failed(entry_id)
            return OUTCOME_FAILED

        except Exception:
            log.exception("Unexpected error while processing notification")
            self.db.rollback()
            if delivered:
                # The email went out; the claim is settled by recover_stale_claims
                return OUTCOME_SENT
            try:
                await self.queue.mark_failed(entry_id)
            except Exception:
                log.exception("Could not mark notification as failed")
            return OUTCOME_FAILED

    async def _deliver(
        self,
        user_id: str,
        notification_type: NotificationType,
        template_data: Dict[str, Any],
        poll_id: Optional[str] = None,
        queue_entry_id: Optional[int] = None,
        subject: Optional[str] = None,
        user: Optional[DirectoryUser] = None,
        attempted_at: Optional[datetime] = None,
        verify_poll: bool = False,
    ) -> EmailNotification:
        """
        Resolve, render and send one email, then record the attempt.

        Delivery problems become a `failed` ledger record rather than an
        exception. With `verify_poll`, a poll missing from the poll directory
        is one of those problems. The record is flushed but not committed.
        """
        email_address = user.email if user else None
        subject_line = subject
        merged = dict(template_data)

        try:
            if verify_poll and poll_id and await self.polls.get_poll(poll_id) is None:
                raise NotFoundError(f"Poll not found: {poll_id}", "POLL_NOT_FOUND")
            if user is None:
                user = await self.users.get_user(user_id)
            email_address = user.email
            merged.update(
                user_name=user.display_name or user.email,
                user_email=user.email,
            )

            rendered = self.renderer.render(notification_type, merged)
            subject_line = subject or rendered.subject

            tags = {"notification_type": notification_type.value}
            if poll_id:
                tags["poll_id"] = str(poll_id)

            message_id = await self.email_client.send(
                email_address, subject_line, rendered.html, tags=tags
            )

        except (NotFoundError, DeliveryError) as e:
            failure_reason = e.message
        except (KeyError, ValueError, TypeError) as e:
            failure_reason = f"Template rendering failed: {e}"
        else:
            return await self.ledger.record_attempt(
                user_id=user_id,
                notification_type=notification_type,
                status=DeliveryStatus.SENT,
                template_data=merged,
                email_address=email_address,
                subject=subject_line,
                poll_id=poll_id,
                queue_entry_id=queue_entry_id,
                email_provider_id=message_id,
                attempted_at=attempted_at,
            )

        logger.warning(
            "Notification delivery failed",
            user_id=user_id,
            notification_type=notification_type.value,
            queue_entry_id=queue_entry_id,
            reason=failure_reason,
        )
        return await self.ledger.record_attempt(
            user_id=user_id,
            notification_type=notification_type,
            status=DeliveryStatus.FAILED,
            template_data=merged,
            email_address=email_address,
            subject=subject_line,
            poll_id=poll_id,
            queue_entry_id=queue_entry_id,
            failure_reason=failure_reason,
            attempted_at=attempted_at,
        )

    async def send_test(
        self,
        user_id: str,
        notification_type: NotificationType,
        template_data: Optional[Dict[str, Any]] = None,
        subject: Optional[str] = None,
    ) -> EmailNotification:
        """
        Send sample content of `notification_type` to the user right away.

        Preferences, quiet hours and the queue are bypassed.
        """
        data = {**sample_template_data(notification_type), **(template_data or {})}
        record = await self._deliver(
            user_id, notification_type, data, subject=subject
        )
        self.db.commit()

        logger.info(
            "Test notification attempted",
            user_id=user_id,
            notification_type=notification_type.value,
            status=record.status.value,
        )
        return record

    async def send_immediate(
        self,
        user_id: str,
        notification_type: NotificationType,
        template_data: Dict[str, Any],
        poll_id: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> EmailNotification:
        """
        Send one notification now, outside the queue.

        The recipient's master switch and type flag are honoured; quiet hours
        are not.

        Raises:
            BusinessLogicError: the recipient has this notification turned off
            NotFoundError: the recipient does not exist
            ValidationError: the template data is incomplete
        """
        prefs = await self.preferences.get_effective_preferences(user_id)
        if not should_deliver(prefs, notification_type):
            raise BusinessLogicError(
                f"User {user_id} has disabled {notification_type.value} notifications",
                error_code="NOTIFICATIONS_DISABLED",
            )

        user = await self.users.get_user(user_id)
        data = dict(template_data)
        if poll_id and not data.get("poll_id"):
            data["poll_id"] = poll_id

        errors = validate_template_data(
            notification_type, {**data, "user_email": user.email}
        )
        if errors:
            raise ValidationError(
                "Invalid template data",
                error_code="INVALID_TEMPLATE_DATA",
                errors=[{"field": "templateData", "message": error} for error in errors],
            )

        poll_id = poll_id or data.get("poll_id")
        record = await self._deliver(
            user_id,
            notification_type,
            data,
            poll_id=str(poll_id) if poll_id else None,
            subject=subject,
            user=user,
        )
        self.db.commit()
        return record
