"""
Job Queue Management
====================

Redis Queue (RQ) integration for background fan-out.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from redis import Redis
from rq import Queue, Retry

from ..config import get_settings

logger = logging.getLogger(__name__)


def get_redis_connection() -> Redis:
    """Get Redis connection"""
    return Redis.from_url(get_settings().redis_url)


def get_queue(queue_name: str, connection: Optional[Redis] = None) -> Queue:
    """Get RQ queue by name"""
    return Queue(queue_name, connection=connection or get_redis_connection())


def enqueue_job(
    func: Callable,
    *args,
    queue_name: str = "default",
    timeout: int = 60,
    retry: int = 3,
    connection: Optional[Redis] = None,
    **kwargs
) -> Dict[str, Any]:
    """
    Enqueue a job for async processing.

    Args:
        func: Function to execute
        *args: Positional arguments for function
        queue_name: Queue to use
        timeout: Job timeout in seconds
        retry: Number of retries on failure
        connection: Redis connection (defaults to REDIS_URL)
        **kwargs: Keyword arguments for function

    Returns:
        Dict with job_id and status
    """
    queue = get_queue(queue_name, connection)
    retry_policy = Retry(max=retry, interval=[5, 15, 30]) if retry > 0 else None

    job = queue.enqueue(
        func,
        *args,
        job_timeout=timeout,
        retry=retry_policy,
        **kwargs
    )
    logger.info(f"Enqueued {func.__name__} as job {job.id} on {queue_name}")

    return {
        "job_id": job.id,
        "status": job.get_status(),
        "queue": queue_name,
        "enqueued_at": datetime.utcnow().isoformat()
    }
