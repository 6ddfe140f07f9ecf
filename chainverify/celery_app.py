"""
Celery application

Queues:
- verification: chain verification ticks
- default: everything else

Run a worker and beat instead of the embedded scheduler:
    celery -A chainverify.celery_app worker -Q verification,default
    celery -A chainverify.celery_app beat
"""
from celery import Celery

from chainverify.config import get_settings

settings = get_settings()

celery_app = Celery(
    "chainverify",
    broker=settings.celery_broker_url,
    backend=settings.celery_backend_url,
    include=[
        "chainverify.tasks.verification_tasks",
    ]
)

celery_app.conf.update(
    result_expires=86400,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # a tick never outlives the lock that guards it
    task_time_limit=settings.verification_lock_ttl_seconds,
    task_soft_time_limit=max(settings.verification_lock_ttl_seconds - 60, 30),
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "chainverify.tasks.verification_tasks.*": {"queue": "verification"},
    },
    task_reject_on_worker_lost=True,
    beat_schedule={
        "verify-pending-payments": {
            "task": "chainverify.tasks.verification_tasks.verify_pending_payments_task",
            "schedule": float(settings.verification_interval_seconds),
        },
    },
)

celery_app.conf.worker_max_tasks_per_child = 1000
celery_app.conf.worker_concurrency = settings.celery_worker_concurrency

if __name__ == "__main__":
    celery_app.start()
