"""
Job Queue Package
=================

Background notification fan-out with Redis Queue (RQ).
"""

from .queue import enqueue_job
from .tasks import task_fanout_notifications

__all__ = [
    # Queue management
    "enqueue_job",
    # Tasks
    "task_fanout_notifications",
]
