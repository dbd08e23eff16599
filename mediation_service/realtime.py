"""
Realtime Channel
================

Topic-based publish/subscribe for connected clients.

Topics:
- user:{id}   personal notifications
- case:{id}   case room, joined by anyone currently viewing the case
- admin       broadcast room for connected admins
- mediation:{id}  live mediation session: presence, chat and typing relays

Delivery is fire-and-forget and at-most-once: a subscriber that is not
connected when a message is published never sees it. Durable delivery is the
job of the persisted notification rows.

Each subscription owns a bounded queue. Publishing never blocks; a full queue
drops the message. Messages carrying a ``version`` are delivered only if newer
than the last version seen on their topic, so a late stale event is dropped
rather than shown after a newer one.

With REALTIME_BACKEND=redis a RedisBridge mirrors every local publish onto
Redis pub/sub and re-delivers messages published by other processes (web
workers, rq workers) to the local subscribers.
"""

import json
import logging
import queue
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from redis import Redis

from .config import RealtimeBackend, get_settings

logger = logging.getLogger(__name__)

ADMIN_TOPIC = "admin"

# Event kinds
EVENT_CASE_UPDATE = "caseUpdate"
EVENT_CASE_FILED = "caseFiled"
EVENT_NOTIFICATION = "notification"

# Mediation session room
EVENT_USER_JOINED_SESSION = "userJoinedSession"
EVENT_USER_LEFT_SESSION = "userLeftSession"
EVENT_MEDIATION_MESSAGE = "newMediationMessage"
EVENT_USER_TYPING = "userTyping"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def case_topic(case_id: str) -> str:
    return f"case:{case_id}"


def mediation_topic(case_id: str) -> str:
    return f"mediation:{case_id}"


def build_message(
    topic: str,
    event: str,
    case_id: Optional[str] = None,
    status: Optional[str] = None,
    message: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Wire shape shared by every publisher."""
    payload = {
        "topic": topic,
        "event": event,
        "case_id": case_id,
        "status": status,
        "message": message,
        "published_at": datetime.utcnow().isoformat(),
    }
    payload.update(extra)
    return payload


class Subscription:
    """One connected client's view of the channel."""

    def __init__(self, channel: "RealtimeChannel", maxsize: int):
        self.id = str(uuid.uuid4())
        self._channel = channel
        self._queue: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=maxsize)
        self.topics: Set[str] = set()
        self.dropped = 0
        self.closed = False

    def join(self, topic: str) -> None:
        self._channel._attach(self, topic)

    def leave(self, topic: str) -> None:
        self._channel._detach(self, topic)

    def offer(self, message: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Realtime queue full for subscription {self.id}; dropped {message.get('event')}")
            return False

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Next message, or None when nothing arrives within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[Dict[str, Any]]:
        items = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def close(self) -> None:
        self._channel.unsubscribe(self)


class RealtimeChannel:
    """In-process topic bus. Thread-safe."""

    def __init__(self, queue_size: int = 256, bridge: Optional["RedisBridge"] = None):
        self._queue_size = queue_size
        self._topics: Dict[str, Set[Subscription]] = {}
        self._versions: Dict[str, int] = {}
        self._lock = threading.RLock()
        self.bridge = bridge
        if bridge is not None:
            bridge.attach(self)

    def subscribe(self, topics: Iterable[str] = ()) -> Subscription:
        sub = Subscription(self, self._queue_size)
        for topic in topics:
            sub.join(topic)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            for topic in list(sub.topics):
                self._detach(sub, topic)
            sub.closed = True

    def _attach(self, sub: Subscription, topic: str) -> None:
        with self._lock:
            self._topics.setdefault(topic, set()).add(sub)
            sub.topics.add(topic)

    def _detach(self, sub: Subscription, topic: str) -> None:
        with self._lock:
            subs = self._topics.get(topic)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._topics[topic]
            sub.topics.discard(topic)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._topics.get(topic, ()))

    def deliver_local(
        self,
        topic: str,
        message: Dict[str, Any],
        exclude: Optional[Subscription] = None,
    ) -> int:
        delivered = 0
        # Offers happen under the lock so versioned messages enqueue in version order
        with self._lock:
            version = message.get("version")
            if version is not None:
                last = self._versions.get(topic)
                if last is not None and version <= last:
                    logger.info(f"Realtime dropped stale {message.get('event')} v{version} on {topic} (at v{last})")
                    return 0
                self._versions[topic] = version
            for sub in list(self._topics.get(topic, ())):
                if sub is not exclude and sub.offer(message):
                    delivered += 1
        return delivered

    def publish(
        self,
        topic: str,
        message: Dict[str, Any],
        exclude: Optional[Subscription] = None,
    ) -> int:
        """
        Publish to a topic. Returns the number of local subscribers reached.

        ``exclude`` skips one local subscription (the sender). Never raises:
        bridge failures are logged.
        """
        delivered = self.deliver_local(topic, message, exclude)
        if self.bridge is not None:
            try:
                self.bridge.forward(topic, message)
            except Exception as e:
                logger.warning(f"Realtime bridge publish to {topic} failed: {e}")
        return delivered

    def close(self) -> None:
        if self.bridge is not None:
            self.bridge.stop()


class RedisBridge:
    """Mirrors topics across processes through Redis pub/sub."""

    def __init__(self, redis_client: Redis, prefix: str = "mediation:"):
        self.redis = redis_client
        self.prefix = prefix
        self.origin = str(uuid.uuid4())
        self._channel: Optional[RealtimeChannel] = None
        self._pubsub = None
        self._thread = None

    def attach(self, channel: RealtimeChannel) -> None:
        self._channel = channel

    def forward(self, topic: str, message: Dict[str, Any]) -> None:
        envelope = {"origin": self.origin, "topic": topic, "message": message}
        self.redis.publish(f"{self.prefix}{topic}", json.dumps(envelope, default=str))

    def handle_raw(self, data: Any) -> bool:
        """Deliver a message received from Redis; skip our own echoes."""
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            envelope = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("Realtime bridge received a malformed message")
            return False
        if envelope.get("origin") == self.origin or self._channel is None:
            return False
        self._channel.deliver_local(envelope.get("topic", ""), envelope.get("message") or {})
        return True

    def start(self) -> None:
        if self._thread is not None:
            return
        self._pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        self._pubsub.psubscribe(**{f"{self.prefix}*": self._on_message})
        self._thread = self._pubsub.run_in_thread(
            sleep_time=0.5, daemon=True,
            exception_handler=self._on_listener_error,
        )
        logger.info(f"Realtime bridge listening on {self.prefix}*")

    def _on_message(self, item: Dict[str, Any]) -> None:
        self.handle_raw(item.get("data"))

    def _on_listener_error(self, exc, pubsub, thread) -> None:
        logger.warning(f"Realtime bridge listener error: {exc}")

    def stop(self) -> None:
        if self._thread is not None:
            self._thread.stop()
            self._thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None


_channel: Optional[RealtimeChannel] = None
_channel_lock = threading.Lock()


def create_realtime_channel(start_bridge: bool = True) -> RealtimeChannel:
    settings = get_settings()
    bridge = None
    if settings.realtime_backend == RealtimeBackend.REDIS:
        bridge = RedisBridge(Redis.from_url(settings.redis_url), prefix=settings.realtime_redis_prefix)
    channel = RealtimeChannel(queue_size=settings.realtime_queue_size, bridge=bridge)
    if bridge is not None and start_bridge:
        bridge.start()
    return channel


def get_realtime_channel() -> RealtimeChannel:
    """Process-wide channel used by the API and workers."""
    global _channel
    with _channel_lock:
        if _channel is None:
            _channel = create_realtime_channel()
        return _channel


def reset_realtime_channel() -> None:
    global _channel
    with _channel_lock:
        if _channel is not None:
            _channel.close()
        _channel = None
