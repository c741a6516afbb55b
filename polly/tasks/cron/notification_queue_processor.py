import asyncio
from typing import Optional

from polly.celery import celery
from polly.db.session import get_sync_session
from polly.services.notifications.factory import build_delivery_processor
from polly.utils.context import request_context
from polly.utils.logging import get_logger


@celery.task(bind=True, max_retries=0)
def process_notification_queue_task(self, request_id: str, limit: Optional[int] = None):
    """
    Periodic task that dispatches due notification queue entries.

    Runs every PROCESSOR_INTERVAL_MINUTES from Celery Beat. Each run claims one
    batch; runs overlapping in time never claim the same entry.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
        limit: Optional batch size override
    """
    return asyncio.run(_async_process_notification_queue(request_id, limit))


async def _async_process_notification_queue(request_id: str, limit: Optional[int]):
    logger = get_logger().bind(request_id=request_id)

    with request_context(request_id):
        for db_session in get_sync_session():
            try:
                processor = build_delivery_processor(db_session)
                result = await processor.run_batch(limit=limit)

                logger.info(
                    "Notification queue processing completed",
                    sent=result.sent,
                    failed=result.failed,
                    skipped=result.skipped,
                )

                return {
                    "success": True,
                    "sent": result.sent,
                    "failed": result.failed,
                    "skipped": result.skipped,
                    "request_id": request_id,
                }

            except Exception as e:
                logger.error(
                    "Notification queue processor task exception",
                    error=str(e),
                )
                raise
