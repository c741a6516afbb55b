from .preference_service import NotificationPreferenceService, is_type_enabled
from .quiet_hours import is_in_quiet_hours, next_delivery_time
from .queue_service import NotificationQueueService
from .ledger_service import DeliveryLedgerService
from .scheduler import NotificationScheduler
from .delivery_processor import DeliveryProcessor
from .factory import build_delivery_processor, build_scheduler

__all__ = [
    "NotificationPreferenceService",
    "is_type_enabled",
    "is_in_quiet_hours",
    "next_delivery_time",
    "NotificationQueueService",
    "DeliveryLedgerService",
    "NotificationScheduler",
    "DeliveryProcessor",
    "build_delivery_processor",
    "build_scheduler",
]
