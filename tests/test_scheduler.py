import pytest
from datetime import datetime, timedelta, timezone

from polly.db.models import NotificationType, QueueStatus
from polly.schemas.notification_schemas import PollCreatedEvent
from polly.services.notifications.scheduler import plan_fire_times
from polly.utils.errors import NotFoundError

T = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


def make_poll(end_time, poll_id="p1", creator_id="creator") -> PollCreatedEvent:
    return PollCreatedEvent(
        id=poll_id,
        question="Best snack?",
        options=["Chips", "Fruit"],
        creator_id=creator_id,
        end_time=end_time,
    )


async def scheduled_entries(queue, user_id):
    entries = await queue.list_upcoming(user_id)
    return {entry.notification_type: entry for entry in entries}


class TestPlanFireTimes:
    """Which closing notifications are still worth sending."""

    def test_far_end_time_plans_all_three(self):
        plan = plan_fire_times(T + timedelta(hours=48), T)

        assert [(kind, fire) for kind, fire, _ in plan] == [
            (NotificationType.POLL_CLOSING_24H, T + timedelta(hours=24)),
            (NotificationType.POLL_CLOSING_1H, T + timedelta(hours=47)),
            (NotificationType.POLL_CLOSED, T + timedelta(hours=48)),
        ]

    def test_end_time_within_an_hour_plans_only_closed(self):
        plan = plan_fire_times(T + timedelta(minutes=30), T)
        assert [kind for kind, _, _ in plan] == [NotificationType.POLL_CLOSED]

    def test_end_time_exactly_at_lead_is_skipped(self):
        plan = plan_fire_times(T + timedelta(hours=24), T)

        assert [kind for kind, _, _ in plan] == [
            NotificationType.POLL_CLOSING_1H,
            NotificationType.POLL_CLOSED,
        ]


class TestOnPollCreated:
    """Turning a new poll into queue entries."""

    @pytest.mark.asyncio
    async def test_two_day_poll_queues_three_entries_for_creator(
        self, scheduler, queue
    ):
        result = await scheduler.on_poll_created(
            make_poll(T + timedelta(hours=48)), now=T
        )

        assert result.created == 3
        entries = await scheduled_entries(queue, "creator")
        assert entries[NotificationType.POLL_CLOSING_24H].scheduled_for == datetime(
            2025, 3, 11, 9, 0
        )
        assert entries[NotificationType.POLL_CLOSING_1H].scheduled_for == datetime(
            2025, 3, 12, 8, 0
        )
        assert entries[NotificationType.POLL_CLOSED].scheduled_for == datetime(
            2025, 3, 12, 9, 0
        )
        assert all(entry.status == QueueStatus.SCHEDULED for entry in entries.values())

    @pytest.mark.asyncio
    async def test_short_poll_queues_only_closed_notice(self, scheduler, queue):
        result = await scheduler.on_poll_created(
            make_poll(T + timedelta(minutes=30)), now=T
        )

        assert result.created == 1
        entries = await scheduled_entries(queue, "creator")
        assert list(entries) == [NotificationType.POLL_CLOSED]

    @pytest.mark.asyncio
    async def test_template_data_describes_the_poll(self, scheduler, queue):
        await scheduler.on_poll_created(make_poll(T + timedelta(hours=48)), now=T)

        entries = await scheduled_entries(queue, "creator")
        data = entries[NotificationType.POLL_CLOSING_1H].template_data
        assert data["poll_id"] == "p1"
        assert data["poll_question"] == "Best snack?"
        assert data["poll_options"] == ["Chips", "Fruit"]
        assert data["time_until_close"] == "1 hour"
        assert data["closing_time"] == "2025-03-12T09:00:00+00:00"

    @pytest.mark.asyncio
    async def test_rerun_creates_no_duplicates(self, scheduler, queue):
        poll = make_poll(T + timedelta(hours=48))

        first = await scheduler.on_poll_created(poll, now=T)
        second = await scheduler.on_poll_created(poll, now=T)

        assert first.created == 3
        assert second.created == 0
        assert second.duplicates == 3
        assert len(await queue.list_upcoming("creator")) == 3

    @pytest.mark.asyncio
    async def test_disabled_types_are_not_queued(
        self, scheduler, queue, store_preferences
    ):
        store_preferences("creator", poll_closing_24h=False)

        result = await scheduler.on_poll_created(
            make_poll(T + timedelta(hours=48)), now=T
        )

        assert result.created == 2
        assert result.skipped == 1
        entries = await scheduled_entries(queue, "creator")
        assert NotificationType.POLL_CLOSING_24H not in entries

    @pytest.mark.asyncio
    async def test_email_disabled_user_gets_nothing(
        self, scheduler, queue, store_preferences
    ):
        store_preferences("creator", email_enabled=False)

        result = await scheduler.on_poll_created(
            make_poll(T + timedelta(hours=48)), now=T
        )

        assert result.created == 0
        assert result.skipped == 3
        assert await queue.list_upcoming("creator") == []

    @pytest.mark.asyncio
    async def test_voters_and_subscribers_are_recipients(
        self, scheduler, queue, polls, store_preferences
    ):
        store_preferences("fan", new_poll_notifications=True)
        poll = make_poll(T + timedelta(minutes=30))
        polls.add(poll, voters=["voter", "creator"])

        result = await scheduler.on_poll_created(poll, now=T)

        assert result.created == 3
        for user_id in ("creator", "voter", "fan"):
            assert len(await queue.list_upcoming(user_id)) == 1

    @pytest.mark.asyncio
    async def test_poll_without_end_time_schedules_nothing(self, scheduler):
        result = await scheduler.on_poll_created(make_poll(None), now=T)

        assert result.created == 0
        assert result.entry_ids == []


class TestScheduleForPollId:
    """Scheduling from the poll directory."""

    @pytest.mark.asyncio
    async def test_looks_up_poll(self, scheduler, polls):
        polls.add(make_poll(T + timedelta(hours=48)))

        result = await scheduler.schedule_for_poll_id("p1", now=T)

        assert result.poll_id == "p1"
        assert result.created == 3

    @pytest.mark.asyncio
    async def test_unknown_poll(self, scheduler):
        with pytest.raises(NotFoundError) as exc_info:
            await scheduler.schedule_for_poll_id("missing", now=T)

        assert exc_info.value.error_code == "POLL_NOT_FOUND"
