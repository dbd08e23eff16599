"""
Background tasks executed by the rq worker.
"""

import logging
from typing import Any, Dict

from ..notifications import Notice, NotificationFanout
from ..realtime import get_realtime_channel

logger = logging.getLogger(__name__)


def task_fanout_notifications(notice_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Persist one notification per recipient for a committed case event.

    rq retries the whole task on an unexpected crash; recipients that already
    got their row may then get a second one (at-least-once).
    """
    notice = Notice.from_dict(notice_data)
    fanout = NotificationFanout(channel=get_realtime_channel())
    result = fanout.deliver(notice)
    logger.info(
        f"Fan-out {notice.category.value} for case {notice.case_id}: "
        f"delivered={len(result.delivered)} failed={len(result.failed)}"
    )
    return {"delivered": result.delivered, "failed": result.failed}
