import re
from datetime import time
from typing import Any, Dict, Iterable, List, Mapping, Union

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from polly.db.models import (
    DEFAULT_NOTIFICATION_PREFERENCES,
    NotificationFrequency,
    NotificationPreferences,
    NotificationType,
)
from polly.db.session import get_sync_session
from polly.utils.datetime_utils import parse_time_of_day
from polly.utils.errors import ValidationError
from polly.utils.logging import get_logger

logger = get_logger()

TIME_OF_DAY_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]:[0-5][0-9]$")

BOOLEAN_FIELDS = (
    "email_enabled",
    "poll_closing_24h",
    "poll_closing_1h",
    "poll_closed_immediately",
    "new_poll_notifications",
    "voting_reminders",
    "results_announcements",
    "admin_notifications",
)
UPDATABLE_FIELDS = set(DEFAULT_NOTIFICATION_PREFERENCES)

TYPE_PREFERENCE_FLAGS = {
    NotificationType.POLL_CLOSING_24H: "poll_closing_24h",
    NotificationType.POLL_CLOSING_1H: "poll_closing_1h",
    NotificationType.POLL_CLOSED: "poll_closed_immediately",
    NotificationType.NEW_POLL: "new_poll_notifications",
    NotificationType.VOTING_REMINDER: "voting_reminders",
    NotificationType.RESULTS_ANNOUNCEMENT: "results_announcements",
}


def is_type_enabled(
    prefs: NotificationPreferences, notification_type: NotificationType
) -> bool:
    """Whether the per-type flag for `notification_type` is on."""
    return bool(getattr(prefs, TYPE_PREFERENCE_FLAGS[notification_type]))


def should_deliver(
    prefs: NotificationPreferences, notification_type: NotificationType
) -> bool:
    """Master switch and per-type flag, as checked before enqueue and dispatch."""
    return bool(prefs.email_enabled) and is_type_enabled(prefs, notification_type)


def build_default_preferences(user_id: str) -> NotificationPreferences:
    """Unsaved record carrying the system defaults."""
    return NotificationPreferences(user_id=user_id, **DEFAULT_NOTIFICATION_PREFERENCES)


def validate_preference_updates(updates: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Validate a preference patch and convert it to column values.

    Raises:
        ValidationError: listing every offending field
    """
    errors: List[Dict[str, Any]] = []
    cleaned: Dict[str, Any] = {}

    for field, value in updates.items():
        if field not in UPDATABLE_FIELDS:
            errors.append({"field": field, "message": "Unknown preference field"})
            continue

        if field in BOOLEAN_FIELDS:
            if not isinstance(value, bool):
                errors.append({"field": field, "message": "Must be a boolean"})
                continue
            cleaned[field] = value

        elif field == "notification_frequency":
            try:
                cleaned[field] = (
                    value
                    if isinstance(value, NotificationFrequency)
                    else NotificationFrequency(value)
                )
            except ValueError:
                errors.append(
                    {
                        "field": field,
                        "message": "Must be one of immediate, daily, weekly",
                    }
                )

        elif field in ("quiet_hours_start", "quiet_hours_end"):
            if isinstance(value, time):
                cleaned[field] = value
            elif isinstance(value, str) and TIME_OF_DAY_PATTERN.match(value):
                cleaned[field] = parse_time_of_day(value)
            else:
                errors.append({"field": field, "message": "Must use HH:MM:SS format"})

        elif field == "timezone":
            try:
                ZoneInfo(value)
                cleaned[field] = value
            except (ZoneInfoNotFoundError, ValueError, TypeError):
                errors.append({"field": field, "message": "Unknown IANA timezone"})

    if errors:
        raise ValidationError(
            "Invalid notification preferences",
            error_code="INVALID_PREFERENCES",
            errors=errors,
        )
    return cleaned


class NotificationPreferenceService:
    """Per-user notification settings. Absence of a record means system defaults."""

    def __init__(self, db_session: Session):
        self.db = db_session

    async def _get_record(self, user_id: str) -> Union[NotificationPreferences, None]:
        result = self.db.execute(
            select(NotificationPreferences).where(
                NotificationPreferences.user_id == user_id
            )
        )
        return result.scalar_one_or_none()

    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        """Return the stored record, creating the defaults on first access."""
        prefs = await self._get_record(user_id)
        if prefs is not None:
            return prefs
        return await self.create_default_preferences(user_id)

    async def get_effective_preferences(self, user_id: str) -> NotificationPreferences:
        """Stored record or an unsaved default one. Never writes."""
        prefs = await self._get_record(user_id)
        return prefs if prefs is not None else build_default_preferences(user_id)

    async def get_effective_preferences_many(
        self, user_ids: Iterable[str]
    ) -> Dict[str, NotificationPreferences]:
        user_ids = list(dict.fromkeys(user_ids))
        if not user_ids:
            return {}

        result = self.db.execute(
            select(NotificationPreferences).where(
                NotificationPreferences.user_id.in_(user_ids)
            )
        )
        stored = {prefs.user_id: prefs for prefs in result.scalars().all()}
        return {
            user_id: stored.get(user_id) or build_default_preferences(user_id)
            for user_id in user_ids
        }

    async def create_default_preferences(self, user_id: str) -> NotificationPreferences:
        """Persist the defaults for a user, e.g. on registration."""
        prefs = build_default_preferences(user_id)
        try:
            self.db.add(prefs)
            self.db.commit()
        except IntegrityError:
            # Another request created the record first
            self.db.rollback()
            existing = await self._get_record(user_id)
            if existing is None:
                raise
            return existing

        self.db.refresh(prefs)
        logger.info("Created default notification preferences", user_id=user_id)
        return prefs

    async def update_preferences(
        self, user_id: str, updates: Mapping[str, Any]
    ) -> NotificationPreferences:
        """Apply a partial update, creating the record if needed."""
        cleaned = validate_preference_updates(updates)

        prefs = await self._get_record(user_id)
        if prefs is None:
            prefs = build_default_preferences(user_id)
            self.db.add(prefs)

        for field, value in cleaned.items():
            setattr(prefs, field, value)

        self.db.commit()
        self.db.refresh(prefs)

        logger.info(
            "Updated notification preferences",
            user_id=user_id,
            fields=sorted(cleaned),
        )
        return prefs

    async def replace_preferences(
        self, user_id: str, values: Mapping[str, Any]
    ) -> NotificationPreferences:
        """Reset to the defaults, then apply `values`."""
        cleaned = validate_preference_updates(values)
        return await self.update_preferences(
            user_id, {**DEFAULT_NOTIFICATION_PREFERENCES, **cleaned}
        )

    async def list_new_poll_subscriber_ids(self) -> List[str]:
        result = self.db.execute(
            select(NotificationPreferences.user_id).where(
                NotificationPreferences.new_poll_notifications.is_(True),
                NotificationPreferences.email_enabled.is_(True),
            )
        )
        return list(result.scalars().all())


# Dependency injection for service provider
def get_preference_service(
    db: Session = Depends(get_sync_session),
) -> NotificationPreferenceService:
    """Dependency to provide NotificationPreferenceService instance"""
    return NotificationPreferenceService(db)
