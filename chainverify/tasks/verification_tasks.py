"""
Verification tasks

The beat schedule fires one tick per interval. A Redis lock keeps ticks
from overlapping across workers: a tick that finds the lock taken waits
for it, so a long tick delays the next one. A waiter still locked out
after a whole interval gives way, since beat has queued a newer tick
behind it by then.
"""
import logging
from datetime import datetime
from typing import Any, Dict

from chainverify.celery_app import celery_app
from chainverify.config import get_settings
from chainverify.services.payment_verification import build_verification_service
from chainverify.tasks.base import record_task_result, run_async, task_session_factory
from chainverify.utils.redis_client import create_redis_client

logger = logging.getLogger(__name__)

TICK_LOCK_NAME = "chainverify:verification-tick"


async def run_verification_tick() -> Dict[str, Any]:
    """
    One tick under the cross-worker lock

    Returns:
        tick summary, or {"skipped": True} when the lock stayed taken for a whole interval
    """
    settings = get_settings()
    redis_client = create_redis_client()
    lock = redis_client.lock(TICK_LOCK_NAME, timeout=settings.verification_lock_ttl_seconds)
    try:
        acquired = await lock.acquire(
            blocking=True,
            blocking_timeout=settings.verification_interval_seconds,
        )
        if not acquired:
            logger.info("Verification tick lock held for a full interval; leaving it to the next tick")
            return {"skipped": True}
        try:
            async with task_session_factory() as session_factory:
                service = build_verification_service(settings, session_factory)
                try:
                    return await service.run_once()
                finally:
                    await service.aclose()
        finally:
            await lock.release()
    finally:
        await redis_client.aclose()


@celery_app.task(
    name="chainverify.tasks.verification_tasks.verify_pending_payments_task",
    bind=True,
)
def verify_pending_payments_task(self) -> Dict[str, Any]:
    """Scheduled verification tick"""
    task_id = self.request.id
    start_time = datetime.now()

    logger.info(f"[{task_id}] Starting verification tick")

    try:
        result = run_async(run_verification_tick)
        duration = (datetime.now() - start_time).total_seconds()
        return record_task_result(
            task_id=task_id,
            task_name="verify_pending_payments",
            status="skipped" if result.get("skipped") else "success",
            result=result,
            duration=duration,
        )
    except Exception as e:
        logger.error(f"[{task_id}] Verification tick failed: {e}")
        duration = (datetime.now() - start_time).total_seconds()
        record_task_result(
            task_id=task_id,
            task_name="verify_pending_payments",
            status="failed",
            error=str(e),
            duration=duration,
        )
        raise
