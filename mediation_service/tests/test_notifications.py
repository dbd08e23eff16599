"""
Notification Tests
==================

Per-recipient fan-out, rq hand-off, and the recipient inbox.
"""

from contextlib import contextmanager

import pytest

from mediation_service.config import FanoutMode
from mediation_service.db.models import Notification, NotificationCategory, User
from mediation_service.db.session import get_db_session
from mediation_service.errors import AccessDenied, NotFound
from mediation_service.notifications import (
    Notice, NotificationFanout, NotificationService, make_notice,
)
from mediation_service.realtime import EVENT_NOTIFICATION, user_topic


# =============================================================================
# Notices
# =============================================================================

class TestNotice:
    """Notice construction and wire form"""

    def test_recipients_deduplicated_in_order(self):
        notice = make_notice(NotificationCategory.SYSTEM, ["b", "a", "b", None, "a", "c"], "T", "M")
        assert notice.recipients == ("b", "a", "c")

    def test_dict_form(self):
        notice = make_notice(NotificationCategory.CASE_UPDATE, ["u1", "u2"], "Title", "Body", "case-1")
        data = notice.to_dict()
        assert data["category"] == "case_update"
        assert data["recipients"] == ["u1", "u2"]
        assert Notice.from_dict(data) == notice


# =============================================================================
# Fan-out
# =============================================================================

class TestFanout:
    """One row per recipient, independent writes"""

    def test_one_row_per_recipient(self, fanout, user_ids, count_rows):
        recipients = [user_ids["plaintiff"], user_ids["defendant"], user_ids["plaintiff"]]
        result = fanout.notify(NotificationCategory.SYSTEM, recipients, "Hello", "World")

        assert result.delivered == [user_ids["plaintiff"], user_ids["defendant"]]
        assert result.failed == []
        assert count_rows(Notification) == 2

    def test_partial_failure_isolated(self, channel, user_ids, count_rows):
        calls = {"n": 0}

        @contextmanager
        def flaky_session():
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("connection reset")
            with get_db_session() as session:
                yield session

        fanout = NotificationFanout(channel=channel, session_factory=flaky_session, mode=FanoutMode.INLINE)
        recipients = [user_ids["plaintiff"], user_ids["defendant"], user_ids["admin"]]
        result = fanout.notify(NotificationCategory.SYSTEM, recipients, "Hello", "World")

        assert result.delivered == [user_ids["plaintiff"], user_ids["admin"]]
        assert result.failed == [user_ids["defendant"]]
        assert count_rows(Notification) == 2
        assert count_rows(Notification, Notification.user_id == user_ids["defendant"]) == 0

    def test_push_after_persist(self, fanout, channel, user_ids):
        sub = channel.subscribe([user_topic(user_ids["plaintiff"])])
        fanout.notify(NotificationCategory.CASE_UPDATE, [user_ids["plaintiff"]], "Title", "Body", None)

        messages = sub.drain()
        assert len(messages) == 1
        assert messages[0]["event"] == EVENT_NOTIFICATION
        assert messages[0]["title"] == "Title"
        assert messages[0]["notification_id"]

    def test_failed_recipient_not_pushed(self, channel, user_ids):
        @contextmanager
        def broken_session():
            raise RuntimeError("database down")
            yield

        fanout = NotificationFanout(channel=channel, session_factory=broken_session, mode=FanoutMode.INLINE)
        sub = channel.subscribe([user_topic(user_ids["plaintiff"])])
        result = fanout.notify(NotificationCategory.SYSTEM, [user_ids["plaintiff"]], "T", "M")

        assert result.failed == [user_ids["plaintiff"]]
        assert sub.drain() == []

    def test_dispatch_never_raises(self, channel, user_ids):
        @contextmanager
        def broken_session():
            raise RuntimeError("database down")
            yield

        fanout = NotificationFanout(channel=channel, session_factory=broken_session, mode=FanoutMode.INLINE)
        fanout.dispatch(make_notice(NotificationCategory.SYSTEM, [user_ids["admin"]], "T", "M"))

    def test_dispatch_rq_enqueues(self, channel, user_ids, monkeypatch, count_rows):
        from mediation_service.jobs import queue as job_queue
        from mediation_service.jobs.tasks import task_fanout_notifications

        enqueued = []

        def fake_enqueue(func, *args, **kwargs):
            enqueued.append((func, args, kwargs))
            return {"job_id": "job-1", "status": "queued"}

        monkeypatch.setattr(job_queue, "enqueue_job", fake_enqueue)
        fanout = NotificationFanout(channel=channel, mode=FanoutMode.RQ)
        notice = make_notice(NotificationCategory.SYSTEM, [user_ids["admin"]], "T", "M")
        fanout.dispatch(notice)

        assert count_rows(Notification) == 0
        func, args, kwargs = enqueued[0]
        assert func is task_fanout_notifications
        assert args == (notice.to_dict(),)
        assert kwargs["queue_name"] == "notifications"

    def test_dispatch_rq_enqueue_failure_swallowed(self, channel, user_ids, monkeypatch):
        from mediation_service.jobs import queue as job_queue

        def redis_down(*args, **kwargs):
            raise ConnectionError("redis unreachable")

        monkeypatch.setattr(job_queue, "enqueue_job", redis_down)
        fanout = NotificationFanout(channel=channel, mode=FanoutMode.RQ)
        fanout.dispatch(make_notice(NotificationCategory.SYSTEM, [user_ids["admin"]], "T", "M"))

    def test_worker_task_delivers(self, user_ids, count_rows):
        from mediation_service.jobs.tasks import task_fanout_notifications

        notice = make_notice(
            NotificationCategory.CASE_RESOLVED, [user_ids["plaintiff"], user_ids["defendant"]], "Done", "Resolved",
        )
        result = task_fanout_notifications(notice.to_dict())

        assert sorted(result["delivered"]) == sorted([user_ids["plaintiff"], user_ids["defendant"]])
        assert count_rows(Notification, Notification.category == NotificationCategory.CASE_RESOLVED) == 2


# =============================================================================
# Inbox
# =============================================================================

@pytest.fixture
def inbox(db, fanout):
    return NotificationService(db, fanout=fanout)


class TestInbox:
    """list_for, mark_read, mark_all_read"""

    def _seed(self, fanout, user_id, n=3):
        for i in range(n):
            fanout.notify(NotificationCategory.SYSTEM, [user_id], f"Title {i}", f"Message {i}")

    def test_list_counts(self, inbox, fanout, actors):
        self._seed(fanout, actors["plaintiff"].user_id)
        self._seed(fanout, actors["defendant"].user_id, n=1)

        page = inbox.list_for(actors["plaintiff"], limit=2)
        assert page["total"] == 3
        assert page["unread_count"] == 3
        assert page["pages"] == 2
        assert len(page["notifications"]) == 2

    def test_mark_read(self, inbox, fanout, actors):
        self._seed(fanout, actors["plaintiff"].user_id)
        first = inbox.list_for(actors["plaintiff"])["notifications"][0]

        row = inbox.mark_read(actors["plaintiff"], first.id)
        assert row.is_read
        assert inbox.list_for(actors["plaintiff"])["unread_count"] == 2
        assert inbox.list_for(actors["plaintiff"], unread_only=True)["total"] == 2

    def test_cannot_mark_someone_elses(self, inbox, fanout, actors):
        self._seed(fanout, actors["plaintiff"].user_id, n=1)
        row = inbox.list_for(actors["plaintiff"])["notifications"][0]
        with pytest.raises(NotFound):
            inbox.mark_read(actors["defendant"], row.id)

    def test_mark_all_read(self, inbox, fanout, actors):
        self._seed(fanout, actors["plaintiff"].user_id)
        self._seed(fanout, actors["defendant"].user_id, n=2)

        assert inbox.mark_all_read(actors["plaintiff"]) == 3
        assert inbox.list_for(actors["plaintiff"])["unread_count"] == 0
        assert inbox.list_for(actors["defendant"])["unread_count"] == 2


class TestVerifyUser:
    """Admin verification and its SYSTEM notice"""

    def test_verify_sends_system_notice(self, inbox, actors, user_ids, db, count_rows):
        user = inbox.verify_user(actors["admin"], user_ids["unverified"], True)
        assert user.is_verified
        rows = count_rows(
            Notification,
            Notification.user_id == user_ids["unverified"],
            Notification.category == NotificationCategory.SYSTEM,
        )
        assert rows == 1

    def test_revoke(self, inbox, actors, user_ids):
        user = inbox.verify_user(actors["admin"], user_ids["plaintiff"], False)
        assert not user.is_verified

    def test_admin_only(self, inbox, actors, user_ids):
        with pytest.raises(AccessDenied):
            inbox.verify_user(actors["plaintiff"], user_ids["unverified"], True)

    def test_unknown_user(self, inbox, actors):
        with pytest.raises(NotFound):
            inbox.verify_user(actors["admin"], "missing", True)

    def test_verified_user_can_then_file(self, inbox, actors, user_ids, db, services):
        from mediation_service.auth import AuthContext
        from mediation_service.db.models import CaseType

        inbox.verify_user(actors["admin"], user_ids["unverified"], True)
        auth = AuthContext.from_user(db.get(User, user_ids["unverified"], populate_existing=True))
        case = services.cases.file_case(auth, CaseType.PROPERTY, "Fence dispute", {"name": "Neighbour"})
        assert case.plaintiff_id == user_ids["unverified"]
