from datetime import datetime, time
from typing import Any, Dict, List, Optional
from pydantic import ConfigDict, Field

from polly.db.models import (
    DeliveryStatus,
    NotificationFrequency,
    NotificationType,
    QueueStatus,
)
from polly.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


# Collaborator payloads
class DirectoryUser(BaseModel):
    id: str = Field(..., description="User ID")
    email: str = Field(..., description="Delivery address")
    display_name: Optional[str] = Field(None, description="Name shown in emails")


class PollCreatedEvent(BaseModel):
    id: str = Field(..., description="Poll ID")
    question: str = Field(..., description="Poll question")
    options: List[str] = Field(default_factory=list, description="Poll options")
    creator_id: str = Field(..., description="User who created the poll")
    end_time: Optional[datetime] = Field(None, description="When voting closes")


# Preferences
class NotificationPreferencesResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str = Field(..., description="Owner of the preferences")
    email_enabled: bool = Field(..., description="Master switch for email")
    poll_closing_24h: bool
    poll_closing_1h: bool
    poll_closed_immediately: bool
    new_poll_notifications: bool
    voting_reminders: bool
    results_announcements: bool
    admin_notifications: bool
    notification_frequency: NotificationFrequency
    quiet_hours_start: time
    quiet_hours_end: time
    timezone: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UpdatePreferencesRequest(BaseModel):
    """Partial preference update; omitted fields keep their current value"""

    model_config = ConfigDict(extra="forbid")

    email_enabled: Optional[bool] = None
    poll_closing_24h: Optional[bool] = None
    poll_closing_1h: Optional[bool] = None
    poll_closed_immediately: Optional[bool] = None
    new_poll_notifications: Optional[bool] = None
    voting_reminders: Optional[bool] = None
    results_announcements: Optional[bool] = None
    admin_notifications: Optional[bool] = None
    notification_frequency: Optional[str] = Field(
        None, description="immediate, daily or weekly"
    )
    quiet_hours_start: Optional[str] = Field(None, description="HH:MM:SS")
    quiet_hours_end: Optional[str] = Field(None, description="HH:MM:SS")
    timezone: Optional[str] = Field(None, description="IANA timezone name")


# Queue and ledger views
class QueueEntryItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    poll_id: Optional[str] = None
    notification_type: NotificationType
    scheduled_for: datetime
    status: QueueStatus
    template_data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    processed_at: Optional[datetime] = None


class EmailNotificationItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    queue_entry_id: Optional[int] = None
    user_id: str
    poll_id: Optional[str] = None
    notification_type: NotificationType
    email_address: Optional[str] = None
    subject: Optional[str] = None
    template_name: str
    status: DeliveryStatus
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    retry_count: int = 0
    failure_reason: Optional[str] = None
    email_provider_id: Optional[str] = None
    opened_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
    created_at: datetime


class DeliverySummary(BaseModel):
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_type: Dict[str, int] = Field(default_factory=dict)


# Job results
class BatchResult(BaseModel):
    sent: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def processed(self) -> int:
        return self.sent + self.failed + self.skipped


class ScheduleResult(BaseModel):
    poll_id: str
    created: int = 0
    duplicates: int = 0
    skipped: int = 0
    entry_ids: List[int] = Field(default_factory=list)


# Requests
class SendTestRequest(BaseModel):
    notification_type: NotificationType = Field(..., description="Type to preview")
    template_data: Optional[Dict[str, Any]] = Field(
        None, description="Overrides for the sample poll data"
    )
    subject: Optional[str] = Field(None, description="Subject override")


class SendNowRequest(BaseModel):
    user_id: str = Field(..., description="Recipient")
    notification_type: NotificationType
    template_data: Dict[str, Any] = Field(default_factory=dict)
    poll_id: Optional[str] = None
    subject: Optional[str] = None


class ProcessBatchRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=500, description="Batch size")


class PollCreatedRequest(BaseModel):
    """Trigger payload; when only `id` is given the poll is read from the directory"""

    id: str
    question: Optional[str] = None
    options: Optional[List[str]] = None
    creator_id: Optional[str] = None
    end_time: Optional[datetime] = None


class AvailableNotificationType(BaseModel):
    type: NotificationType
    name: str
    description: str
