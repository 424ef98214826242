import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from paybill.core.config import settings
from paybill.core.database import SessionLocal
from paybill.services.mpesa_gateway import get_mpesa_gateway
from paybill.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)


async def reconcile_stale_payments_task(ctx: dict[str, Any]) -> int:
    """Background task: poll M-Pesa for pending payments whose callback never arrived.

    Runs every 10 minutes and feeds results through the same reconciliation
    path as the callback endpoint.
    """
    db = SessionLocal()
    try:
        service = PaymentService(db, get_mpesa_gateway())
        count = service.reconcile_stale()
        if count > 0:
            logger.info("Resolved %d stale pending payments", count)
        return count
    finally:
        db.close()


class WorkerSettings:
    functions = [reconcile_stale_payments_task]
    cron_jobs = [
        cron(reconcile_stale_payments_task, minute={0, 10, 20, 30, 40, 50}),
    ]
    redis_settings = redis_settings
