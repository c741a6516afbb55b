from typing import Annotated, Optional
from fastapi import APIRouter, Body, Depends, Query, Request, status

from polly.db.models import DeliveryStatus
from polly.middlewares.auth_middleware import (
    AuthState,
    get_current_user,
    require_service,
    require_service_or_user,
)
from polly.schemas.notification_schemas import (
    AvailableNotificationType,
    EmailNotificationItem,
    NotificationPreferencesResponse,
    PollCreatedEvent,
    PollCreatedRequest,
    ProcessBatchRequest,
    QueueEntryItem,
    SendNowRequest,
    SendTestRequest,
    UpdatePreferencesRequest,
)
from polly.services.notifications.delivery_processor import DeliveryProcessor
from polly.services.notifications.factory import (
    get_delivery_processor,
    get_scheduler,
)
from polly.services.notifications.ledger_service import (
    DeliveryLedgerService,
    get_ledger_service,
)
from polly.services.notifications.preference_service import (
    NotificationPreferenceService,
    get_preference_service,
)
from polly.services.notifications.queue_service import (
    NotificationQueueService,
    get_queue_service,
)
from polly.services.notifications.renderer import format_notification_type
from polly.services.notifications.scheduler import NotificationScheduler
from polly.templates.email_templates import TEMPLATE_DESCRIPTIONS
from polly.utils.errors import AuthorizationError, DeliveryError, ValidationError
from polly.utils.logging import get_logger
from polly.utils.responses import ResponseBuilder

notifications_router = APIRouter()
logger = get_logger()


def _preferences_payload(prefs) -> dict:
    return NotificationPreferencesResponse.model_validate(prefs).model_dump(
        by_alias=True
    )


def _delivery_payload(record) -> dict:
    return EmailNotificationItem.model_validate(record).model_dump(by_alias=True)


# Preferences
@notifications_router.get("/preferences")
async def get_preferences(
    request: Request,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    preference_service: Annotated[
        NotificationPreferenceService, Depends(get_preference_service)
    ],
):
    """Current user's preferences; defaults are created on first read."""
    prefs = await preference_service.get_preferences(current_user.user_id)

    return ResponseBuilder.success(
        request=request,
        data=_preferences_payload(prefs),
        message="Notification preferences retrieved successfully",
    )


@notifications_router.patch("/preferences")
async def update_preferences(
    request: Request,
    body: UpdatePreferencesRequest,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    preference_service: Annotated[
        NotificationPreferenceService, Depends(get_preference_service)
    ],
):
    """
    Partially update the current user's preferences.

    Only the fields present in the body change. Quiet hours are `HH:MM:SS`
    strings and the timezone must be a valid IANA name.
    """
    updates = body.model_dump(exclude_unset=True)
    if not updates:
        raise ValidationError("No preference fields provided", "EMPTY_UPDATE")

    prefs = await preference_service.update_preferences(current_user.user_id, updates)

    return ResponseBuilder.success(
        request=request,
        data=_preferences_payload(prefs),
        message="Notification preferences updated successfully",
    )


@notifications_router.put("/preferences")
async def replace_preferences(
    request: Request,
    body: UpdatePreferencesRequest,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    preference_service: Annotated[
        NotificationPreferenceService, Depends(get_preference_service)
    ],
):
    """Replace the current user's preferences; omitted fields reset to defaults."""
    prefs = await preference_service.replace_preferences(
        current_user.user_id, body.model_dump(exclude_unset=True)
    )

    return ResponseBuilder.success(
        request=request,
        data=_preferences_payload(prefs),
        message="Notification preferences replaced successfully",
    )


# Delivery history and queue
@notifications_router.get("/history")
async def get_delivery_history(
    request: Request,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    ledger_service: Annotated[DeliveryLedgerService, Depends(get_ledger_service)],
    page: int = Query(default=1, ge=1, description="Page number"),
    per_page: int = Query(default=20, ge=1, le=100, description="Items per page"),
):
    """Email attempts made for the current user, newest first."""
    records = await ledger_service.list_history(
        current_user.user_id, limit=per_page, offset=(page - 1) * per_page
    )
    total = await ledger_service.count_history(current_user.user_id)
    summary = await ledger_service.summarize(current_user.user_id)

    return ResponseBuilder.paginated(
        request=request,
        data=[_delivery_payload(record) for record in records],
        page=page,
        per_page=per_page,
        total=total,
        message=f"Retrieved {len(records)} notification deliveries",
        meta={"summary": summary.model_dump(by_alias=True)},
    )


@notifications_router.get("/upcoming")
async def get_upcoming_notifications(
    request: Request,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    queue_service: Annotated[NotificationQueueService, Depends(get_queue_service)],
    limit: int = Query(default=50, ge=1, le=100),
):
    """Queue entries still scheduled for the current user."""
    entries = await queue_service.list_upcoming(current_user.user_id, limit=limit)

    return ResponseBuilder.success(
        request=request,
        data=[
            QueueEntryItem.model_validate(entry).model_dump(by_alias=True)
            for entry in entries
        ],
        message=f"Retrieved {len(entries)} upcoming notifications",
    )


# Test sends
@notifications_router.get("/test")
async def list_test_notification_types(
    request: Request,
    current_user: Annotated[AuthState, Depends(get_current_user)],
):
    """Notification types that can be previewed with POST /test."""
    available = [
        AvailableNotificationType(
            type=notification_type,
            name=format_notification_type(notification_type),
            description=description,
        ).model_dump(by_alias=True)
        for notification_type, description in TEMPLATE_DESCRIPTIONS.items()
    ]

    return ResponseBuilder.success(
        request=request,
        data={"availableTypes": available},
        message="Available test notification types",
    )


@notifications_router.post("/test")
async def send_test_notification(
    request: Request,
    body: SendTestRequest,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    processor: Annotated[DeliveryProcessor, Depends(get_delivery_processor)],
):
    """Email sample content to the current user, ignoring preferences."""
    record = await processor.send_test(
        current_user.user_id,
        body.notification_type,
        template_data=body.template_data,
        subject=body.subject,
    )
    if record.status != DeliveryStatus.SENT:
        raise DeliveryError(
            record.failure_reason or "Failed to send test notification",
            "TEST_SEND_FAILED",
        )

    return ResponseBuilder.success(
        request=request,
        data=_delivery_payload(record),
        message=f"Test {format_notification_type(body.notification_type)} notification sent",
    )


@notifications_router.post("/send")
async def send_notification_now(
    request: Request,
    body: SendNowRequest,
    caller: Annotated[AuthState, Depends(require_service_or_user)],
    processor: Annotated[DeliveryProcessor, Depends(get_delivery_processor)],
):
    """
    Send one notification immediately, outside the queue.

    Users may only target themselves; the service credential may target anyone.
    The delivery outcome is returned either way and recorded in the history.
    """
    if not caller.is_service and caller.user_id != body.user_id:
        raise AuthorizationError("Users can only send notifications to themselves")

    record = await processor.send_immediate(
        body.user_id,
        body.notification_type,
        body.template_data,
        poll_id=body.poll_id,
        subject=body.subject,
    )

    sent = record.status == DeliveryStatus.SENT
    return ResponseBuilder.success(
        request=request,
        data=_delivery_payload(record),
        message="Notification sent" if sent else "Notification delivery failed",
        status_code=status.HTTP_200_OK if sent else status.HTTP_202_ACCEPTED,
    )


# Service hooks
@notifications_router.post("/process")
async def process_notification_queue(
    request: Request,
    caller: Annotated[AuthState, Depends(require_service_or_user)],
    processor: Annotated[DeliveryProcessor, Depends(get_delivery_processor)],
    body: Optional[ProcessBatchRequest] = Body(default=None),
):
    """Run one delivery batch now."""
    limit = body.limit if body else None
    result = await processor.run_batch(limit=limit)

    logger.info(
        "Processed notification batch on demand",
        caller=caller.user_id,
        sent=result.sent,
        failed=result.failed,
        skipped=result.skipped,
    )
    return ResponseBuilder.success(
        request=request,
        data={**result.model_dump(by_alias=True), "processed": result.processed},
        message=f"Processed {result.processed} notifications",
    )


@notifications_router.post("/polls/created")
async def handle_poll_created(
    request: Request,
    body: PollCreatedRequest,
    _: Annotated[AuthState, Depends(require_service)],
    scheduler: Annotated[NotificationScheduler, Depends(get_scheduler)],
):
    """
    Queue closing notifications for a newly created poll.

    A full payload is scheduled as given; a bare `id` is looked up in the
    poll directory first.
    """
    if body.question is not None and body.creator_id is not None:
        result = await scheduler.on_poll_created(
            PollCreatedEvent(
                id=body.id,
                question=body.question,
                options=body.options or [],
                creator_id=body.creator_id,
                end_time=body.end_time,
            )
        )
    else:
        result = await scheduler.schedule_for_poll_id(body.id)

    return ResponseBuilder.success(
        request=request,
        data=result.model_dump(by_alias=True),
        message=f"Scheduled {result.created} notifications for poll {body.id}",
        status_code=status.HTTP_201_CREATED,
    )
