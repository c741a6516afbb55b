from typing import List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from polly.db.models import Poll, User, Vote
from polly.schemas.notification_schemas import DirectoryUser, PollCreatedEvent
from polly.utils.datetime_utils import to_utc
from polly.utils.errors import NotFoundError


class UserDirectory(Protocol):
    async def get_user(self, user_id: str) -> DirectoryUser: ...


class PollDirectory(Protocol):
    async def get_poll(self, poll_id: str) -> Optional[PollCreatedEvent]: ...

    async def list_voter_ids(self, poll_id: str) -> List[str]: ...


class SqlUserDirectory:
    """User lookups against the `users` mirror table"""

    def __init__(self, db_session: Session):
        self.db = db_session

    async def get_user(self, user_id: str) -> DirectoryUser:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}", "USER_NOT_FOUND")

        return DirectoryUser(
            id=user.id,
            email=user.email,
            display_name=user.display_name,
        )


class SqlPollDirectory:
    """Poll and vote lookups against the `polls` and `votes` mirror tables"""

    def __init__(self, db_session: Session):
        self.db = db_session

    async def get_poll(self, poll_id: str) -> Optional[PollCreatedEvent]:
        poll = self.db.get(Poll, poll_id)
        if poll is None:
            return None

        return PollCreatedEvent(
            id=poll.id,
            question=poll.question,
            options=list(poll.options or []),
            creator_id=poll.creator_id,
            end_time=to_utc(poll.end_time) if poll.end_time else None,
        )

    async def list_voter_ids(self, poll_id: str) -> List[str]:
        result = self.db.execute(
            select(Vote.voter_id).where(Vote.poll_id == poll_id).distinct()
        )
        return list(result.scalars().all())
