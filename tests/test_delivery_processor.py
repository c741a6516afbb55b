import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

from polly.db.models import DeliveryStatus, NotificationType, QueueStatus
from polly.schemas.notification_schemas import PollCreatedEvent
from polly.utils.errors import BusinessLogicError, NotFoundError, ValidationError

# 14:05 in New York (UTC-5 in January)
AFTERNOON = datetime(2025, 1, 15, 19, 5, tzinfo=timezone.utc)
# 23:00 in New York
LATE_NIGHT = datetime(2025, 1, 16, 4, 0, tzinfo=timezone.utc)

POLL_DATA = {
    "poll_id": "p1",
    "poll_question": "Best snack?",
    "poll_options": ["Chips", "Fruit"],
    "closing_time": "2025-01-16T09:00:00+00:00",
    "time_until_close": "24 hours",
}


@pytest.fixture(autouse=True)
def known_poll(polls):
    polls.add(
        PollCreatedEvent(
            id="p1",
            question="Best snack?",
            options=["Chips", "Fruit"],
            creator_id="creator",
            end_time=datetime(2025, 1, 16, 9, 0, tzinfo=timezone.utc),
        )
    )


async def queue_entry(queue, now, user_id="voter", notification_type=None):
    return await queue.enqueue(
        user_id=user_id,
        notification_type=notification_type or NotificationType.POLL_CLOSING_24H,
        scheduled_for=now,
        poll_id="p1",
        template_data=POLL_DATA,
        now=now,
    )


class TestRunBatch:
    """Dispatch of due queue entries."""

    @pytest.mark.asyncio
    async def test_due_entry_outside_quiet_hours_is_sent(
        self, processor, queue, ledger, email_client, store_preferences
    ):
        store_preferences("voter", timezone="America/New_York")
        entry_id = await queue_entry(queue, AFTERNOON)

        result = await processor.run_batch(now=AFTERNOON)

        assert (result.sent, result.failed, result.skipped) == (1, 0, 0)
        assert (await queue.get_entry(entry_id)).status == QueueStatus.SENT

        [record] = await ledger.list_history("voter")
        assert record.status == DeliveryStatus.SENT
        assert record.queue_entry_id == entry_id
        assert record.email_address == "voter@example.com"
        assert record.email_provider_id == "msg-1"
        assert record.sent_at == datetime(2025, 1, 15, 19, 5)
        assert record.failed_at is None
        assert record.retry_count == 0

        [message] = email_client.sent
        assert message["to"] == "voter@example.com"
        assert message["subject"] == "Poll closing in 24 hours: Best snack?"
        assert message["tags"] == {
            "notification_type": "poll_closing_24h",
            "poll_id": "p1",
        }

    @pytest.mark.asyncio
    async def test_entry_in_quiet_hours_is_deferred(
        self, processor, queue, ledger, email_client, store_preferences
    ):
        store_preferences("voter", timezone="America/New_York")
        entry_id = await queue_entry(queue, LATE_NIGHT)

        result = await processor.run_batch(now=LATE_NIGHT)

        assert (result.sent, result.failed, result.skipped) == (0, 0, 1)
        entry = await queue.get_entry(entry_id)
        assert entry.status == QueueStatus.SCHEDULED
        # 08:00 the next New York morning
        assert entry.scheduled_for == datetime(2025, 1, 16, 13, 0)
        assert email_client.sent == []
        assert await ledger.list_history("voter") == []

    @pytest.mark.asyncio
    async def test_deferred_entry_is_sent_after_quiet_hours(
        self, processor, queue, ledger, store_preferences
    ):
        store_preferences("voter", timezone="America/New_York")
        entry_id = await queue_entry(queue, LATE_NIGHT)
        await processor.run_batch(now=LATE_NIGHT)

        morning = datetime(2025, 1, 16, 13, 0, tzinfo=timezone.utc)
        result = await processor.run_batch(now=morning)

        assert result.sent == 1
        assert (await queue.get_entry(entry_id)).status == QueueStatus.SENT

    @pytest.mark.asyncio
    async def test_email_disabled_entry_is_cancelled_without_sending(
        self, processor, queue, ledger, email_client, store_preferences
    ):
        store_preferences("voter", email_enabled=False)
        entry_id = await queue_entry(queue, AFTERNOON)

        result = await processor.run_batch(now=AFTERNOON)

        assert (result.sent, result.failed, result.skipped) == (0, 0, 1)
        assert (await queue.get_entry(entry_id)).status == QueueStatus.CANCELLED
        assert email_client.sent == []
        assert await ledger.list_history("voter") == []

    @pytest.mark.asyncio
    async def test_type_disabled_after_enqueue_is_cancelled(
        self, processor, queue, preferences
    ):
        entry_id = await queue_entry(queue, AFTERNOON)
        await preferences.update_preferences("voter", {"poll_closing_24h": False})

        result = await processor.run_batch(now=AFTERNOON)

        assert result.skipped == 1
        assert (await queue.get_entry(entry_id)).status == QueueStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_provider_error_marks_entry_failed(
        self, processor, queue, ledger, email_client, store_preferences
    ):
        store_preferences("voter", timezone="America/New_York")
        email_client.reject.add("voter@example.com")
        entry_id = await queue_entry(queue, AFTERNOON)

        result = await processor.run_batch(now=AFTERNOON)

        assert (result.sent, result.failed, result.skipped) == (0, 1, 0)
        assert (await queue.get_entry(entry_id)).status == QueueStatus.FAILED

        [record] = await ledger.list_history("voter")
        assert record.status == DeliveryStatus.FAILED
        assert record.failure_reason == "Provider rejected voter@example.com"
        assert record.failed_at == datetime(2025, 1, 15, 19, 5)
        assert record.sent_at is None

    @pytest.mark.asyncio
    async def test_unknown_recipient_is_recorded_as_failure(
        self, processor, queue, ledger, store_preferences
    ):
        store_preferences("ghost", timezone="America/New_York")
        entry_id = await queue_entry(queue, AFTERNOON, user_id="ghost")

        result = await processor.run_batch(now=AFTERNOON)

        assert result.failed == 1
        assert (await queue.get_entry(entry_id)).status == QueueStatus.FAILED
        [record] = await ledger.list_history("ghost")
        assert record.failure_reason == "User not found: ghost"
        assert record.email_address is None

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(
        self, processor, queue, email_client, store_preferences
    ):
        for user_id in ("creator", "voter", "fan"):
            store_preferences(user_id, timezone="America/New_York")
            await queue_entry(queue, AFTERNOON, user_id=user_id)
        email_client.reject.add("voter@example.com")

        result = await processor.run_batch(now=AFTERNOON)

        assert (result.sent, result.failed, result.skipped) == (2, 1, 0)
        assert result.processed == 3

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(
        self, processor, queue, store_preferences
    ):
        store_preferences("voter", timezone="America/New_York")
        entry_id = await queue_entry(queue, AFTERNOON)
        processor.renderer.render = Mock(side_effect=RuntimeError("boom"))

        result = await processor.run_batch(now=AFTERNOON)

        assert result.failed == 1
        assert (await queue.get_entry(entry_id)).status == QueueStatus.FAILED

    @pytest.mark.asyncio
    async def test_entries_are_processed_in_chunks(
        self, processor, queue, store_preferences, monkeypatch
    ):
        sleep = AsyncMock()
        monkeypatch.setattr(
            "polly.services.notifications.delivery_processor.asyncio.sleep", sleep
        )
        processor.concurrency = 2
        processor.chunk_delay_seconds = 0.5
        for user_id in ("creator", "voter", "fan"):
            store_preferences(user_id, timezone="America/New_York")
            await queue_entry(queue, AFTERNOON, user_id=user_id)

        result = await processor.run_batch(now=AFTERNOON)

        assert result.sent == 3
        sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_nothing_due(self, processor):
        result = await processor.run_batch(now=AFTERNOON)
        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_entry_for_deleted_poll_is_failed(
        self, processor, queue, ledger, email_client, polls, store_preferences
    ):
        store_preferences("voter", timezone="America/New_York")
        del polls.polls["p1"]
        entry_id = await queue_entry(
            queue, AFTERNOON, notification_type=NotificationType.POLL_CLOSED
        )

        result = await processor.run_batch(now=AFTERNOON)

        assert (result.sent, result.failed, result.skipped) == (0, 1, 0)
        assert (await queue.get_entry(entry_id)).status == QueueStatus.FAILED
        [record] = await ledger.list_history("voter")
        assert record.status == DeliveryStatus.FAILED
        assert record.failure_reason == "Poll not found: p1"
        assert email_client.sent == []

    @pytest.mark.asyncio
    async def test_sent_record_survives_failed_queue_update(
        self, processor, queue, ledger, email_client, store_preferences
    ):
        store_preferences("voter", timezone="America/New_York")
        entry_id = await queue_entry(queue, AFTERNOON)
        queue.mark_sent = AsyncMock(side_effect=RuntimeError("connection lost"))

        result = await processor.run_batch(now=AFTERNOON)

        assert (result.sent, result.failed) == (1, 0)
        [record] = await ledger.list_history("voter")
        assert record.status == DeliveryStatus.SENT
        assert (await queue.get_entry(entry_id)).status == QueueStatus.PROCESSING

        # The next run past the claim timeout settles the entry without resending
        del queue.mark_sent
        await processor.run_batch(now=AFTERNOON + timedelta(minutes=20))

        assert (await queue.get_entry(entry_id)).status == QueueStatus.SENT
        assert len(email_client.sent) == 1
        assert len(await ledger.list_history("voter")) == 1


class TestRecoverStaleClaims:
    """Entries left `processing` by a run that died mid-batch."""

    @pytest.mark.asyncio
    async def test_abandoned_claim_is_requeued_and_sent(
        self, processor, queue, email_client, store_preferences
    ):
        store_preferences("voter", timezone="America/New_York")
        entry_id = await queue_entry(queue, AFTERNOON)
        await queue.claim_due_batch(AFTERNOON)

        result = await processor.run_batch(now=AFTERNOON + timedelta(minutes=20))

        assert result.sent == 1
        entry = await queue.get_entry(entry_id)
        assert entry.status == QueueStatus.SENT
        assert entry.claimed_at is not None
        assert len(email_client.sent) == 1

    @pytest.mark.asyncio
    async def test_recent_claim_is_left_alone(self, processor, queue, store_preferences):
        store_preferences("voter", timezone="America/New_York")
        entry_id = await queue_entry(queue, AFTERNOON)
        await queue.claim_due_batch(AFTERNOON)

        recovered = await processor.recover_stale_claims(
            AFTERNOON + timedelta(minutes=5)
        )

        assert recovered == 0
        assert (await queue.get_entry(entry_id)).status == QueueStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_claim_with_failed_attempt_is_marked_failed(
        self, processor, queue, ledger, db_session
    ):
        entry_id = await queue_entry(queue, AFTERNOON)
        await queue.claim_due_batch(AFTERNOON)
        await ledger.record_attempt(
            user_id="voter",
            notification_type=NotificationType.POLL_CLOSING_24H,
            status=DeliveryStatus.FAILED,
            queue_entry_id=entry_id,
            failure_reason="Provider rejected voter@example.com",
        )
        db_session.commit()

        recovered = await processor.recover_stale_claims(
            AFTERNOON + timedelta(minutes=20)
        )

        assert recovered == 1
        assert (await queue.get_entry(entry_id)).status == QueueStatus.FAILED


class TestSendTest:
    """Sample sends bypass preferences and the queue."""

    @pytest.mark.asyncio
    async def test_sends_sample_content_even_when_disabled(
        self, processor, email_client, store_preferences
    ):
        store_preferences("voter", email_enabled=False)

        record = await processor.send_test("voter", NotificationType.POLL_CLOSED)

        assert record.status == DeliveryStatus.SENT
        assert record.queue_entry_id is None
        [message] = email_client.sent
        assert "Test Poll" in message["subject"]

    @pytest.mark.asyncio
    async def test_overrides_and_subject(self, processor, email_client):
        record = await processor.send_test(
            "voter",
            NotificationType.NEW_POLL,
            template_data={"poll_question": "Custom?"},
            subject="Preview",
        )

        assert record.subject == "Preview"
        assert "Custom?" in email_client.sent[0]["html"]


class TestSendImmediate:
    """One-off sends honour preferences but not quiet hours."""

    @pytest.mark.asyncio
    async def test_sends_and_records(self, processor, ledger):
        record = await processor.send_immediate(
            "voter", NotificationType.VOTING_REMINDER, dict(POLL_DATA)
        )

        assert record.status == DeliveryStatus.SENT
        assert record.poll_id == "p1"
        assert len(await ledger.list_history("voter")) == 1

    @pytest.mark.asyncio
    async def test_disabled_type_is_refused(self, processor, store_preferences):
        store_preferences("voter", voting_reminders=False)

        with pytest.raises(BusinessLogicError) as exc_info:
            await processor.send_immediate(
                "voter", NotificationType.VOTING_REMINDER, dict(POLL_DATA)
            )

        assert exc_info.value.error_code == "NOTIFICATIONS_DISABLED"

    @pytest.mark.asyncio
    async def test_incomplete_template_data(self, processor):
        with pytest.raises(ValidationError) as exc_info:
            await processor.send_immediate("voter", NotificationType.POLL_CLOSED, {})

        assert exc_info.value.error_code == "INVALID_TEMPLATE_DATA"
        assert len(exc_info.value.errors) == 2

    @pytest.mark.asyncio
    async def test_unknown_user(self, processor):
        with pytest.raises(NotFoundError):
            await processor.send_immediate(
                "ghost", NotificationType.POLL_CLOSED, dict(POLL_DATA)
            )
