"""
Celery task helpers

- task-scoped database sessions
- async bridge for sync workers
- task result records
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from asgiref.sync import async_to_sync
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from chainverify.config import get_settings

logger = logging.getLogger(__name__)


def run_async(func, *args, **kwargs):
    """
    Run an async callable from a sync Celery task

    async_to_sync owns the event loop, so asyncpg and redis connections
    opened inside func must not outlive the call.
    """
    return async_to_sync(func)(*args, **kwargs)


@asynccontextmanager
async def task_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """
    Session factory bound to an engine that lives for one task run

    Worker processes run each task on a fresh event loop; pooled asyncpg
    connections cannot cross loops, hence NullPool and dispose on exit.
    """
    settings = get_settings()
    engine = create_async_engine(
        settings.database_url.replace("postgresql://", "postgresql+asyncpg://"),
        poolclass=NullPool,
    )
    try:
        yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()


def record_task_result(
    task_id: str,
    task_name: str,
    status: str,
    result: Optional[Any] = None,
    error: Optional[str] = None,
    duration: float = 0,
) -> Dict[str, Any]:
    """
    Log a task outcome

    Args:
        task_id: Celery task id
        task_name: short task name
        status: success / failed / skipped
        result: task result
        error: error message
        duration: seconds

    Returns:
        the logged record
    """
    log_data = {
        "task_id": task_id,
        "task_name": task_name,
        "status": status,
        "duration": f"{duration:.2f}s",
        "timestamp": datetime.now().isoformat(),
    }

    if error:
        log_data["error"] = error
        logger.error(f"Task failed: {log_data}")
    else:
        log_data["result"] = result
        logger.info(f"Task completed: {log_data}")

    return log_data
