"""
Realtime Channel Tests
======================

Topic routing, at-most-once delivery, bounded queues and the Redis bridge.
"""

import json

from mediation_service.realtime import (
    ADMIN_TOPIC, RealtimeChannel, RedisBridge, build_message, case_topic, mediation_topic, user_topic,
)


class FakeRedis:
    """Records PUBLISH calls."""

    def __init__(self):
        self.published = []

    def publish(self, channel, data):
        self.published.append((channel, data))
        return 1


class BrokenRedis:
    def publish(self, channel, data):
        raise ConnectionError("redis down")


# =============================================================================
# Local channel
# =============================================================================

class TestRealtimeChannel:
    """In-process topics"""

    def test_topic_names(self):
        assert user_topic("u1") == "user:u1"
        assert case_topic("c1") == "case:c1"
        assert mediation_topic("c1") == "mediation:c1"

    def test_message_shape(self):
        msg = build_message("case:c1", "caseUpdate", case_id="c1", status="accepted", message="ok", extra=1)
        assert {"topic", "event", "case_id", "status", "message", "published_at", "extra"} <= set(msg)

    def test_publish_reaches_only_topic_subscribers(self):
        channel = RealtimeChannel()
        case_sub = channel.subscribe([case_topic("c1")])
        other_sub = channel.subscribe([case_topic("c2")])

        delivered = channel.publish(case_topic("c1"), {"event": "caseUpdate"})

        assert delivered == 1
        assert case_sub.drain() == [{"event": "caseUpdate"}]
        assert other_sub.drain() == []

    def test_no_subscriber_means_no_delivery(self):
        channel = RealtimeChannel()
        assert channel.publish(ADMIN_TOPIC, {"event": "caseFiled"}) == 0

        late = channel.subscribe([ADMIN_TOPIC])
        assert late.get(timeout=0.01) is None

    def test_full_queue_drops(self):
        channel = RealtimeChannel(queue_size=2)
        sub = channel.subscribe(["admin"])
        for i in range(5):
            channel.publish("admin", {"n": i})

        assert [m["n"] for m in sub.drain()] == [0, 1]
        assert sub.dropped == 3

    def test_join_and_leave(self):
        channel = RealtimeChannel()
        sub = channel.subscribe()
        sub.join(case_topic("c1"))
        assert channel.subscriber_count(case_topic("c1")) == 1

        sub.leave(case_topic("c1"))
        assert channel.subscriber_count(case_topic("c1")) == 0
        channel.publish(case_topic("c1"), {"event": "caseUpdate"})
        assert sub.drain() == []

    def test_stale_version_dropped(self):
        channel = RealtimeChannel()
        sub = channel.subscribe([case_topic("c1")])

        channel.publish(case_topic("c1"), {"event": "caseUpdate", "status": "accepted", "version": 3})
        assert channel.publish(case_topic("c1"), {"event": "caseUpdate", "status": "awaiting", "version": 2}) == 0
        channel.publish(case_topic("c1"), {"event": "caseUpdate", "status": "accepted", "version": 3})
        channel.publish(case_topic("c1"), {"event": "caseUpdate", "status": "panel", "version": 4})
        channel.publish(case_topic("c2"), {"event": "caseUpdate", "status": "other", "version": 1})

        assert [m["version"] for m in sub.drain()] == [3, 4]

    def test_unversioned_messages_always_delivered(self):
        channel = RealtimeChannel()
        sub = channel.subscribe([ADMIN_TOPIC])
        channel.publish(ADMIN_TOPIC, {"event": "caseFiled"})
        channel.publish(ADMIN_TOPIC, {"event": "caseFiled"})
        assert len(sub.drain()) == 2

    def test_exclude_sender(self):
        channel = RealtimeChannel()
        sender = channel.subscribe([mediation_topic("c1")])
        other = channel.subscribe([mediation_topic("c1")])

        assert channel.publish(mediation_topic("c1"), {"event": "userTyping"}, exclude=sender) == 1
        assert sender.drain() == []
        assert other.drain() == [{"event": "userTyping"}]

    def test_unsubscribe_closes(self):
        channel = RealtimeChannel()
        sub = channel.subscribe([user_topic("u1"), ADMIN_TOPIC])
        sub.close()

        assert sub.closed
        assert channel.subscriber_count(ADMIN_TOPIC) == 0
        assert not sub.offer({"event": "late"})


# =============================================================================
# Redis bridge
# =============================================================================

class TestRedisBridge:
    """Cross-process mirroring"""

    def test_publish_forwards_to_redis(self):
        redis = FakeRedis()
        bridge = RedisBridge(redis, prefix="test:")
        channel = RealtimeChannel(bridge=bridge)

        channel.publish(case_topic("c1"), {"event": "caseUpdate"})

        name, data = redis.published[0]
        assert name == "test:case:c1"
        envelope = json.loads(data)
        assert envelope["origin"] == bridge.origin
        assert envelope["message"] == {"event": "caseUpdate"}

    def test_remote_message_delivered_locally(self):
        bridge = RedisBridge(FakeRedis(), prefix="test:")
        channel = RealtimeChannel(bridge=bridge)
        sub = channel.subscribe([user_topic("u1")])

        raw = json.dumps({"origin": "worker-1", "topic": user_topic("u1"), "message": {"event": "notification"}})
        assert bridge.handle_raw(raw.encode("utf-8"))
        assert sub.drain() == [{"event": "notification"}]

    def test_own_echo_ignored(self):
        bridge = RedisBridge(FakeRedis(), prefix="test:")
        channel = RealtimeChannel(bridge=bridge)
        sub = channel.subscribe([ADMIN_TOPIC])

        raw = json.dumps({"origin": bridge.origin, "topic": ADMIN_TOPIC, "message": {"event": "caseFiled"}})
        assert not bridge.handle_raw(raw)
        assert sub.drain() == []

    def test_malformed_message_ignored(self):
        bridge = RedisBridge(FakeRedis())
        RealtimeChannel(bridge=bridge)
        assert not bridge.handle_raw(b"not json")

    def test_bridge_failure_does_not_block_local(self):
        channel = RealtimeChannel(bridge=RedisBridge(BrokenRedis()))
        sub = channel.subscribe([ADMIN_TOPIC])

        assert channel.publish(ADMIN_TOPIC, {"event": "caseFiled"}) == 1
        assert sub.drain() == [{"event": "caseFiled"}]
