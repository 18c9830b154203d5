import logging

from paygate.engine import get_engine
from paygate.workers.celery_app import celery

logger = logging.getLogger(__name__)


@celery.task(name="paygate.sweep_expired_transactions")
def sweep_expired_transactions():
    """Expire stale pending transactions and lapsed subscriptions."""
    expired = get_engine().sweep_expired()
    logger.info("Expiry sweep finished", extra={"expired_count": len(expired)})
    return {"expired": expired}
