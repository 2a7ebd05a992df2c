from celery import shared_task
import logging

logger = logging.getLogger(__name__)


@shared_task
def expire_pending_approvals():
    """
    Mark PENDING approval requests as EXPIRED if expires_at < now.

    Runs every minute via Celery Beat.

    Returns:
        str: Status message with count of expired requests
    """
    from .services import AuthorizationService

    try:
        count = AuthorizationService.expire_pending()
        message = f"Expired {count} pending approval requests"
        logger.info(message)
        return message
    except Exception as e:
        logger.error(f"Error expiring pending approval requests: {e}", exc_info=True)
        raise
