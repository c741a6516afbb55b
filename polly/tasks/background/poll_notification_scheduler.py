import asyncio

from polly.celery import celery
from polly.db.session import get_sync_session
from polly.services.notifications.factory import build_scheduler
from polly.utils.context import request_context
from polly.utils.errors import NotFoundError
from polly.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def schedule_poll_notifications_task(self, request_id: str, poll_id: str):
    """
    Celery task to queue the closing notifications of a newly created poll.

    Safe to redeliver: entries already queued for the poll are left alone.

    Args:
        request_id: The request ID from the original HTTP request
        poll_id: ID of the poll that was just created
    """
    try:
        return asyncio.run(_async_schedule_poll_notifications(request_id, poll_id))
    except NotFoundError as e:
        return {
            "success": False,
            "error": e.message,
            "poll_id": poll_id,
            "request_id": request_id,
        }
    except Exception as e:
        raise self.retry(exc=e)


async def _async_schedule_poll_notifications(request_id: str, poll_id: str):
    logger = get_logger().bind(request_id=request_id)

    with request_context(request_id):
        for db_session in get_sync_session():
            try:
                scheduler = build_scheduler(db_session)
                result = await scheduler.schedule_for_poll_id(poll_id)

                return {
                    "success": True,
                    "poll_id": poll_id,
                    "created": result.created,
                    "duplicates": result.duplicates,
                    "skipped": result.skipped,
                    "request_id": request_id,
                }

            except NotFoundError:
                logger.warning("Poll to schedule was not found", poll_id=poll_id)
                raise
            except Exception as e:
                logger.error(
                    "Poll notification scheduling task exception",
                    poll_id=poll_id,
                    error=str(e),
                )
                raise
