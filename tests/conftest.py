import pytest
from datetime import time
from typing import Dict, Generator, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from polly.db.models import Base, NotificationPreferences
from polly.schemas.notification_schemas import DirectoryUser, PollCreatedEvent
from polly.services.notifications.delivery_processor import DeliveryProcessor
from polly.services.notifications.ledger_service import DeliveryLedgerService
from polly.services.notifications.preference_service import (
    NotificationPreferenceService,
)
from polly.services.notifications.queue_service import NotificationQueueService
from polly.services.notifications.renderer import EmailTemplateRenderer
from polly.services.notifications.scheduler import NotificationScheduler
from polly.utils.errors import NotFoundError, PermanentDeliveryError


# Test database setup
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture
def test_engine():
    """Create a fresh in-memory database per test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a database session for each test."""
    session_maker = sessionmaker(bind=test_engine, expire_on_commit=False)
    session = session_maker()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# Collaborator fakes
class FakeUserDirectory:
    def __init__(self, users: Optional[Dict[str, DirectoryUser]] = None):
        self.users = dict(users or {})

    def add(self, user_id: str, email: str, display_name: Optional[str] = None):
        self.users[user_id] = DirectoryUser(
            id=user_id, email=email, display_name=display_name
        )

    async def get_user(self, user_id: str) -> DirectoryUser:
        if user_id not in self.users:
            raise NotFoundError(f"User not found: {user_id}", "USER_NOT_FOUND")
        return self.users[user_id]


class FakePollDirectory:
    def __init__(self):
        self.polls: Dict[str, PollCreatedEvent] = {}
        self.voters: Dict[str, List[str]] = {}

    def add(self, poll: PollCreatedEvent, voters: Optional[List[str]] = None):
        self.polls[poll.id] = poll
        self.voters[poll.id] = list(voters or [])

    async def get_poll(self, poll_id: str) -> Optional[PollCreatedEvent]:
        return self.polls.get(poll_id)

    async def list_voter_ids(self, poll_id: str) -> List[str]:
        return list(self.voters.get(poll_id, []))


class FakeEmailClient:
    """Records sends; addresses listed in `reject` fail permanently."""

    def __init__(self):
        self.sent: List[dict] = []
        self.reject: set = set()

    async def send(self, to, subject, html, tags=None) -> str:
        if to in self.reject:
            raise PermanentDeliveryError(f"Provider rejected {to}")
        message_id = f"msg-{len(self.sent) + 1}"
        self.sent.append(
            {"id": message_id, "to": to, "subject": subject, "html": html, "tags": tags}
        )
        return message_id


@pytest.fixture
def users() -> FakeUserDirectory:
    directory = FakeUserDirectory()
    directory.add("creator", "creator@example.com", "Creator")
    directory.add("voter", "voter@example.com", "Voter")
    directory.add("fan", "fan@example.com")
    return directory


@pytest.fixture
def polls() -> FakePollDirectory:
    return FakePollDirectory()


@pytest.fixture
def email_client() -> FakeEmailClient:
    return FakeEmailClient()


@pytest.fixture
def queue(db_session) -> NotificationQueueService:
    return NotificationQueueService(db_session, stale_grace_minutes=60)


@pytest.fixture
def preferences(db_session) -> NotificationPreferenceService:
    return NotificationPreferenceService(db_session)


@pytest.fixture
def ledger(db_session) -> DeliveryLedgerService:
    return DeliveryLedgerService(db_session)


@pytest.fixture
def renderer() -> EmailTemplateRenderer:
    return EmailTemplateRenderer(base_url="https://polly.test")


@pytest.fixture
def scheduler(queue, preferences, polls) -> NotificationScheduler:
    return NotificationScheduler(queue=queue, preferences=preferences, polls=polls)


@pytest.fixture
def processor(
    db_session, queue, preferences, ledger, users, polls, renderer, email_client
) -> DeliveryProcessor:
    return DeliveryProcessor(
        db_session=db_session,
        queue=queue,
        preferences=preferences,
        ledger=ledger,
        users=users,
        polls=polls,
        renderer=renderer,
        email_client=email_client,
        batch_size=50,
        concurrency=10,
        chunk_delay_seconds=0,
    )


# Test data factories
@pytest.fixture
def store_preferences(db_session):
    """Persist a preferences record with the given overrides."""

    def _store(user_id: str, **overrides) -> NotificationPreferences:
        values = {
            "email_enabled": True,
            "quiet_hours_start": time(22, 0, 0),
            "quiet_hours_end": time(8, 0, 0),
            "timezone": "UTC",
        }
        values.update(overrides)
        prefs = NotificationPreferences(user_id=user_id, **values)
        db_session.add(prefs)
        db_session.commit()
        return prefs

    return _store