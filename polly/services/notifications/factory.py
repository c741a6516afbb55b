from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from polly.db.session import get_sync_session
from polly.services.notifications.delivery_processor import DeliveryProcessor
from polly.services.notifications.directories import (
    PollDirectory,
    SqlPollDirectory,
    SqlUserDirectory,
    UserDirectory,
)
from polly.services.notifications.email_client import EmailClient, get_email_client
from polly.services.notifications.ledger_service import DeliveryLedgerService
from polly.services.notifications.preference_service import (
    NotificationPreferenceService,
)
from polly.services.notifications.queue_service import NotificationQueueService
from polly.services.notifications.renderer import EmailTemplateRenderer
from polly.services.notifications.scheduler import NotificationScheduler


def build_delivery_processor(
    db_session: Session,
    email_client: Optional[EmailClient] = None,
    users: Optional[UserDirectory] = None,
    polls: Optional[PollDirectory] = None,
    renderer: Optional[EmailTemplateRenderer] = None,
) -> DeliveryProcessor:
    """Wire a DeliveryProcessor with the configured collaborators"""
    return DeliveryProcessor(
        db_session=db_session,
        queue=NotificationQueueService(db_session),
        preferences=NotificationPreferenceService(db_session),
        ledger=DeliveryLedgerService(db_session),
        users=users or SqlUserDirectory(db_session),
        polls=polls or SqlPollDirectory(db_session),
        renderer=renderer or EmailTemplateRenderer(),
        email_client=email_client or get_email_client(),
    )


def build_scheduler(
    db_session: Session, polls: Optional[PollDirectory] = None
) -> NotificationScheduler:
    """Wire a NotificationScheduler with the configured collaborators"""
    return NotificationScheduler(
        queue=NotificationQueueService(db_session),
        preferences=NotificationPreferenceService(db_session),
        polls=polls or SqlPollDirectory(db_session),
    )


# Dependency injection for service providers
def get_delivery_processor(
    db: Session = Depends(get_sync_session),
) -> DeliveryProcessor:
    """Dependency to provide DeliveryProcessor instance"""
    return build_delivery_processor(db)


def get_scheduler(
    db: Session = Depends(get_sync_session),
) -> NotificationScheduler:
    """Dependency to provide NotificationScheduler instance"""
    return build_scheduler(db)
