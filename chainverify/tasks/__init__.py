"""
Celery tasks

- verification_tasks: scheduled chain verification ticks
"""
from chainverify.celery_app import celery_app

__all__ = ["celery_app"]
