from typing import List, Optional
from datetime import datetime, time
from sqlalchemy import (
    JSON,
    String,
    Boolean,
    Integer,
    Text,
    ForeignKey,
    Enum,
    Index,
    UniqueConstraint,
    CheckConstraint,
    DateTime,
    Time,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import enum

from polly.utils.datetime_utils import naive_utc_now


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls):
    # Persist the lowercase values instead of the member names
    return [member.value for member in enum_cls]


# Enums
class NotificationType(enum.Enum):
    POLL_CLOSING_24H = "poll_closing_24h"
    POLL_CLOSING_1H = "poll_closing_1h"
    POLL_CLOSED = "poll_closed"
    NEW_POLL = "new_poll"
    VOTING_REMINDER = "voting_reminder"
    RESULTS_ANNOUNCEMENT = "results_announcement"


class NotificationFrequency(enum.Enum):
    IMMEDIATE = "immediate"
    DAILY = "daily"
    WEEKLY = "weekly"


class QueueStatus(enum.Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DeliveryStatus(enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RETRY = "retry"


DEFAULT_NOTIFICATION_PREFERENCES = {
    "email_enabled": True,
    "poll_closing_24h": True,
    "poll_closing_1h": True,
    "poll_closed_immediately": True,
    "new_poll_notifications": False,
    "voting_reminders": True,
    "results_announcements": True,
    "admin_notifications": False,
    "notification_frequency": NotificationFrequency.IMMEDIATE,
    "quiet_hours_start": time(22, 0, 0),
    "quiet_hours_end": time(8, 0, 0),
    "timezone": "UTC",
}


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, onupdate=naive_utc_now, nullable=False
    )


# Models
class NotificationPreferences(Base, AuditMixin):
    __tablename__ = "notification_preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    poll_closing_24h: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    poll_closing_1h: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    poll_closed_immediately: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    new_poll_notifications: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    voting_reminders: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    results_announcements: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    admin_notifications: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    notification_frequency: Mapped[NotificationFrequency] = mapped_column(
        Enum(NotificationFrequency, values_callable=_enum_values),
        default=NotificationFrequency.IMMEDIATE,
        nullable=False,
    )
    # Wall-clock times interpreted in `timezone`; start > end wraps midnight
    quiet_hours_start: Mapped[time] = mapped_column(
        Time, default=time(22, 0, 0), nullable=False
    )
    quiet_hours_end: Mapped[time] = mapped_column(
        Time, default=time(8, 0, 0), nullable=False
    )
    timezone: Mapped[str] = mapped_column(String(64), default="UTC", nullable=False)

    # Constraints
    __table_args__ = (Index("idx_notif_prefs_new_poll", "new_poll_notifications"),)


class NotificationQueueEntry(Base, AuditMixin):
    __tablename__ = "notification_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    poll_id: Mapped[Optional[str]] = mapped_column(String(64))
    notification_type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, values_callable=_enum_values), nullable=False
    )
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[QueueStatus] = mapped_column(
        Enum(QueueStatus, values_callable=_enum_values),
        default=QueueStatus.SCHEDULED,
        nullable=False,
    )
    template_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    # Set when a processor run claims the entry, cleared on requeue
    claim_token: Mapped[Optional[str]] = mapped_column(String(64))
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    attempts: Mapped[List["EmailNotification"]] = relationship(
        back_populates="queue_entry"
    )

    # Constraints
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "poll_id",
            "notification_type",
            name="uq_notif_queue_user_poll_type",
        ),
        Index("idx_notif_queue_status_scheduled", "status", "scheduled_for"),
        Index("idx_notif_queue_user_status", "user_id", "status"),
        Index("idx_notif_queue_claim_token", "claim_token"),
        Index("idx_notif_queue_status_claimed", "status", "claimed_at"),
    )


class EmailNotification(Base, AuditMixin):
    __tablename__ = "email_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_entry_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("notification_queue.id", ondelete="SET NULL")
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    poll_id: Mapped[Optional[str]] = mapped_column(String(64))
    notification_type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, values_callable=_enum_values), nullable=False
    )
    # Unknown when the recipient no longer exists or rendering failed
    email_address: Mapped[Optional[str]] = mapped_column(String(320))
    subject: Mapped[Optional[str]] = mapped_column(String(500))
    template_name: Mapped[str] = mapped_column(String(100), nullable=False)
    template_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus, values_callable=_enum_values),
        default=DeliveryStatus.PENDING,
        nullable=False,
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    email_provider_id: Mapped[Optional[str]] = mapped_column(String(255))
    # Engagement tracking, written by an external webhook consumer
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    queue_entry: Mapped[Optional["NotificationQueueEntry"]] = relationship(
        back_populates="attempts"
    )

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "sent_at IS NULL OR failed_at IS NULL",
            name="ck_email_notif_sent_xor_failed",
        ),
        Index("idx_email_notif_user_created", "user_id", "created_at"),
        Index("idx_email_notif_status", "status"),
        Index("idx_email_notif_type", "notification_type"),
        Index("idx_email_notif_queue_entry", "queue_entry_id"),
    )


# Read-only mirrors of data owned by the auth provider and the poll CRUD layer
class User(Base, AuditMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(200))


class Poll(Base, AuditMixin):
    __tablename__ = "polls"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    options: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    votes: Mapped[List["Vote"]] = relationship(
        back_populates="poll", cascade="all, delete-orphan"
    )

    # Constraints
    __table_args__ = (Index("idx_polls_creator_id", "creator_id"),)


class Vote(Base, AuditMixin):
    __tablename__ = "votes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    poll_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("polls.id", ondelete="CASCADE"), nullable=False
    )
    voter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    option_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Relationships
    poll: Mapped["Poll"] = relationship(back_populates="votes")

    # Constraints
    __table_args__ = (
        UniqueConstraint("poll_id", "voter_id", name="uq_votes_poll_voter"),
        Index("idx_votes_poll_id", "poll_id"),
    )
