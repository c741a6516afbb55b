from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from polly.db.models import NotificationType
from polly.schemas.notification_schemas import PollCreatedEvent, ScheduleResult
from polly.services.notifications.directories import PollDirectory
from polly.services.notifications.preference_service import (
    NotificationPreferenceService,
    should_deliver,
)
from polly.services.notifications.queue_service import (
    ON_CONFLICT_RAISE,
    NotificationQueueService,
)
from polly.utils.datetime_utils import isoformat_utc, to_utc, utc_now
from polly.utils.errors import DuplicateNotificationError, NotFoundError, ValidationError
from polly.utils.logging import get_logger

logger = get_logger()

# (type, lead time before end_time, human readable lead)
CLOSING_SCHEDULE: Tuple[Tuple[NotificationType, timedelta, str], ...] = (
    (NotificationType.POLL_CLOSING_24H, timedelta(hours=24), "24 hours"),
    (NotificationType.POLL_CLOSING_1H, timedelta(hours=1), "1 hour"),
    (NotificationType.POLL_CLOSED, timedelta(0), "now"),
)


def plan_fire_times(
    end_time: datetime, now: datetime
) -> List[Tuple[NotificationType, datetime, str]]:
    """
    Fire times for the closing notifications of a poll ending at `end_time`.

    A warning is planned only when the poll ends strictly later than its lead
    time from `now`; the closed notice is always planned.
    """
    end_time = to_utc(end_time)
    now = to_utc(now)

    plan = []
    for notification_type, lead, label in CLOSING_SCHEDULE:
        if lead and end_time <= now + lead:
            continue
        plan.append((notification_type, end_time - lead, label))
    return plan


class NotificationScheduler:
    """Turns poll lifecycle events into queue entries."""

    def __init__(
        self,
        queue: NotificationQueueService,
        preferences: NotificationPreferenceService,
        polls: PollDirectory,
    ):
        self.queue = queue
        self.preferences = preferences
        self.polls = polls

    async def _candidate_recipients(self, poll: PollCreatedEvent) -> List[str]:
        """Creator, current voters and new-poll subscribers, de-duplicated in that order."""
        voters = await self.polls.list_voter_ids(poll.id)
        subscribers = await self.preferences.list_new_poll_subscriber_ids()
        return list(dict.fromkeys([poll.creator_id, *voters, *subscribers]))

    @staticmethod
    def _template_data(
        poll: PollCreatedEvent, end_time: datetime, time_until_close: str
    ) -> Dict[str, Any]:
        return {
            "poll_id": poll.id,
            "poll_question": poll.question,
            "poll_options": list(poll.options),
            "closing_time": isoformat_utc(end_time),
            "time_until_close": time_until_close,
        }

    async def on_poll_created(
        self, poll: PollCreatedEvent, now: Optional[datetime] = None
    ) -> ScheduleResult:
        """
        Queue closing warnings and the closed notice for a new poll.

        Safe to call more than once for the same poll: entries already queued
        under the (user, poll, type) key are counted as duplicates.
        """
        result = ScheduleResult(poll_id=poll.id)
        if poll.end_time is None:
            logger.info("Poll has no end time, nothing to schedule", poll_id=poll.id)
            return result

        now = to_utc(now) if now else utc_now()
        plan = plan_fire_times(poll.end_time, now)
        recipients = await self._candidate_recipients(poll)
        prefs_by_user = await self.preferences.get_effective_preferences_many(
            recipients
        )

        for notification_type, fire_time, time_until_close in plan:
            template_data = self._template_data(poll, poll.end_time, time_until_close)

            for user_id in recipients:
                if not should_deliver(prefs_by_user[user_id], notification_type):
                    result.skipped += 1
                    continue

                try:
                    entry_id = await self.queue.enqueue(
                        user_id=user_id,
                        notification_type=notification_type,
                        scheduled_for=fire_time,
                        poll_id=poll.id,
                        template_data=template_data,
                        now=now,
                        on_conflict=ON_CONFLICT_RAISE,
                    )
                except DuplicateNotificationError:
                    result.duplicates += 1
                    continue
                except ValidationError as e:
                    logger.warning(
                        "Skipped stale notification",
                        poll_id=poll.id,
                        user_id=user_id,
                        notification_type=notification_type.value,
                        reason=e.message,
                    )
                    result.skipped += 1
                    continue

                result.created += 1
                result.entry_ids.append(entry_id)

        logger.info(
            "Scheduled poll notifications",
            poll_id=poll.id,
            recipients=len(recipients),
            created=result.created,
            duplicates=result.duplicates,
            skipped=result.skipped,
        )
        return result

    async def schedule_for_poll_id(
        self, poll_id: str, now: Optional[datetime] = None
    ) -> ScheduleResult:
        """Look the poll up in the directory, then run `on_poll_created`."""
        poll = await self.polls.get_poll(poll_id)
        if poll is None:
            raise NotFoundError(f"Poll not found: {poll_id}", "POLL_NOT_FOUND")
        return await self.on_poll_created(poll, now=now)
