"""
Notification Fan-out
====================

Turns one logical event into one persisted notification per recipient.

Each recipient row is an independent write: a failure for one recipient is
logged and does not affect the others (at-least-once per recipient, no
all-or-nothing batch). After a row commits, a ``notification`` event is pushed
to that user's realtime topic.

Fan-out always runs after the triggering state change has committed. With
FANOUT_MODE=rq the work is handed to an rq worker instead of running inline.
"""

import logging
from contextlib import AbstractContextManager
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from .auth import AuthContext
from .config import FanoutMode, get_settings
from .db.models import Notification, NotificationCategory, User
from .db.session import get_db_session
from .errors import NotFound
from .policy import require_admin
from .realtime import EVENT_NOTIFICATION, RealtimeChannel, build_message, user_topic

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager]


@dataclass(frozen=True)
class Notice:
    """One logical event addressed to a recipient set."""
    category: NotificationCategory
    recipients: Tuple[str, ...]
    title: str
    message: str
    case_id: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["category"] = self.category.value
        data["recipients"] = list(self.recipients)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "Notice":
        return cls(
            category=NotificationCategory(data["category"]),
            recipients=tuple(data.get("recipients") or ()),
            title=data["title"],
            message=data["message"],
            case_id=data.get("case_id"),
        )


def make_notice(
    category: NotificationCategory,
    recipients: Iterable[str],
    title: str,
    message: str,
    case_id: Optional[str] = None,
) -> Notice:
    """Build a notice with recipients de-duplicated, order preserved."""
    unique: List[str] = []
    for rid in recipients:
        if rid and rid not in unique:
            unique.append(rid)
    return Notice(category, tuple(unique), title, message, case_id)


@dataclass
class FanoutResult:
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class NotificationFanout:
    """Persists notifications, one transaction per recipient."""

    def __init__(
        self,
        channel: Optional[RealtimeChannel] = None,
        session_factory: SessionFactory = get_db_session,
        mode: Optional[FanoutMode] = None,
    ):
        self.channel = channel
        self.session_factory = session_factory
        self.mode = mode or get_settings().fanout_mode

    def notify(
        self,
        category: NotificationCategory,
        recipients: Iterable[str],
        title: str,
        message: str,
        case_id: Optional[str] = None,
    ) -> FanoutResult:
        return self.deliver(make_notice(category, recipients, title, message, case_id))

    def deliver(self, notice: Notice) -> FanoutResult:
        result = FanoutResult()
        for recipient in notice.recipients:
            try:
                notification_id = self._persist_one(recipient, notice)
            except Exception as e:
                logger.error(f"Notification for {recipient} ({notice.category.value}) failed: {e}")
                result.failed.append(recipient)
                continue
            result.delivered.append(recipient)
            self._push(recipient, notification_id, notice)

        if result.failed:
            logger.warning(
                f"Fan-out {notice.category.value}: {len(result.delivered)} delivered, "
                f"{len(result.failed)} failed"
            )
        return result

    def _persist_one(self, recipient: str, notice: Notice) -> str:
        with self.session_factory() as db:
            row = Notification(
                user_id=recipient,
                category=notice.category,
                title=notice.title,
                message=notice.message,
                case_id=notice.case_id,
            )
            db.add(row)
            db.flush()
            return row.id

    def _push(self, recipient: str, notification_id: str, notice: Notice) -> None:
        if self.channel is None:
            return
        topic = user_topic(recipient)
        try:
            self.channel.publish(topic, build_message(
                topic, EVENT_NOTIFICATION,
                case_id=notice.case_id,
                message=notice.message,
                title=notice.title,
                category=notice.category.value,
                notification_id=notification_id,
            ))
        except Exception as e:
            logger.warning(f"Realtime push to {topic} failed: {e}")

    def dispatch(self, notice: Notice) -> None:
        """
        Run fan-out for a committed change. Never raises.

        Inline mode delivers now; rq mode enqueues ``task_fanout_notifications``.
        """
        if not notice.recipients:
            return
        try:
            if self.mode == FanoutMode.RQ:
                from .jobs.queue import enqueue_job
                from .jobs.tasks import task_fanout_notifications

                settings = get_settings()
                enqueue_job(
                    task_fanout_notifications,
                    notice.to_dict(),
                    queue_name=settings.fanout_queue,
                    timeout=settings.fanout_job_timeout,
                )
            else:
                self.deliver(notice)
        except Exception as e:
            logger.error(f"Fan-out dispatch for {notice.category.value} failed: {e}", exc_info=True)


# =============================================================================
# Inbox
# =============================================================================

class NotificationService:
    """Recipient-side reads and the read flag."""

    def __init__(self, db: Session, fanout: Optional[NotificationFanout] = None):
        self.db = db
        self.fanout = fanout

    def list_for(self, auth: AuthContext, unread_only: bool = False, page: int = 1, limit: int = 20) -> Dict:
        query = self.db.query(Notification).filter(Notification.user_id == auth.user_id)
        if unread_only:
            query = query.filter(Notification.is_read == False)  # noqa: E712

        total = query.count()
        items = (
            query.order_by(Notification.created_at.desc(), Notification.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        unread = (
            self.db.query(Notification)
            .filter(Notification.user_id == auth.user_id, Notification.is_read == False)  # noqa: E712
            .count()
        )
        return {
            "notifications": items,
            "total": total,
            "unread_count": unread,
            "page": page,
            "limit": limit,
            "pages": (total + limit - 1) // limit if limit else 0,
        }

    def mark_read(self, auth: AuthContext, notification_id: str) -> Notification:
        row = (
            self.db.query(Notification)
            .filter(Notification.id == notification_id, Notification.user_id == auth.user_id)
            .first()
        )
        if not row:
            raise NotFound("Notification not found")
        row.is_read = True
        self.db.commit()
        return row

    def mark_all_read(self, auth: AuthContext) -> int:
        count = (
            self.db.query(Notification)
            .filter(Notification.user_id == auth.user_id, Notification.is_read == False)  # noqa: E712
            .update({Notification.is_read: True}, synchronize_session=False)
        )
        self.db.commit()
        return count

    def verify_user(self, auth: AuthContext, user_id: str, is_verified: bool) -> User:
        """Flip a user's verification flag and tell that user."""
        require_admin(auth, "verify users")
        user = self.db.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        user.is_verified = is_verified
        self.db.commit()
        logger.info(f"User {user_id} verification set to {is_verified} by {auth.user_id}")

        if self.fanout is not None:
            if is_verified:
                title = "Account Verified"
                message = "Your account has been verified. You can now register cases."
            else:
                title = "Account Verification Revoked"
                message = "Your account verification has been revoked."
            self.fanout.dispatch(make_notice(NotificationCategory.SYSTEM, [user_id], title, message))
        return user
