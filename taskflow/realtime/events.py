"""
Topic-based live event routing for connected observers.

Connections are anything with an async ``send_json`` (FastAPI WebSocket in
production). Delivery is "currently connected only": an observer that misses
an event reconciles from the durable notification records on reconnect.
"""
import logging
import threading
from typing import Any, Dict, List, Optional, Set

from taskflow.reminders.metrics import live_events_delivered_total

logger = logging.getLogger(__name__)

TOPIC_KINDS = ("user", "project", "channel")


def user_topic(user_id: Any) -> str:
    return f"user:{user_id}"


def project_topic(project_id: Any) -> str:
    return f"project:{project_id}"


def channel_topic(channel_id: Any) -> str:
    return f"channel:{channel_id}"


def parse_topic(topic: str):
    """Split ``kind:id``; raises ValueError for anything else."""
    kind, sep, ident = str(topic).partition(":")
    if not sep or kind not in TOPIC_KINDS or not ident:
        raise ValueError(f"Invalid topic: {topic!r}")
    return kind, ident


class EventRouter:
    def __init__(self):
        self._topics: Dict[str, Set[Any]] = {}
        self._memberships: Dict[Any, Set[str]] = {}
        self._lock = threading.Lock()

    def register(self, connection: Any) -> None:
        """Add a connection to the global scope without joining any topic."""
        with self._lock:
            self._memberships.setdefault(connection, set())

    def subscribe(self, connection: Any, topic: str) -> None:
        with self._lock:
            self._topics.setdefault(topic, set()).add(connection)
            self._memberships.setdefault(connection, set()).add(topic)

    def unsubscribe(self, connection: Any, topic: str) -> None:
        with self._lock:
            members = self._topics.get(topic)
            if members is not None:
                members.discard(connection)
                if not members:
                    del self._topics[topic]
            topics = self._memberships.get(connection)
            if topics is not None:
                topics.discard(topic)

    def disconnect(self, connection: Any) -> Set[str]:
        """Drop a connection from every topic and the global scope."""
        with self._lock:
            topics = self._memberships.pop(connection, set())
            for topic in topics:
                members = self._topics.get(topic)
                if members is None:
                    continue
                members.discard(connection)
                if not members:
                    del self._topics[topic]
            return topics

    def subscribers(self, topic: str) -> List[Any]:
        with self._lock:
            return list(self._topics.get(topic, ()))

    def has_subscribers(self, topic: str) -> bool:
        with self._lock:
            return bool(self._topics.get(topic))

    def topic_ids(self, kind: str) -> List[str]:
        """Ids of every ``kind:{id}`` topic with at least one subscriber."""
        prefix = f"{kind}:"
        with self._lock:
            return [topic[len(prefix):] for topic, members in self._topics.items() if topic.startswith(prefix) and members]

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._memberships)

    async def publish(self, topic: str, event: str, payload: Any, exclude: Optional[Any] = None) -> int:
        """Deliver to every current subscriber of ``topic``; returns the delivered count."""
        targets = self.subscribers(topic)
        if not targets:
            return 0
        message = {"event": event, "topic": topic, "data": payload}
        delivered = 0
        for connection in targets:
            if connection is exclude:
                continue
            if await self._send(connection, message):
                delivered += 1
        return delivered

    async def broadcast(self, event: str, payload: Any, exclude: Optional[Any] = None) -> int:
        with self._lock:
            targets = list(self._memberships)
        message = {"event": event, "topic": None, "data": payload}
        delivered = 0
        for connection in targets:
            if connection is exclude:
                continue
            if await self._send(connection, message):
                delivered += 1
        return delivered

    async def publish_presence(self, observer_id: str, state: Any) -> int:
        status = getattr(state, "value", state)
        return await self.broadcast("presence:update", {"userId": observer_id, "status": status})

    async def _send(self, connection: Any, message: dict) -> bool:
        try:
            await connection.send_json(message)
        except Exception as e:
            logger.warning("🔌 [EventRouter] Dropping connection after failed send of %s: %s", message.get("event"), e)
            self.disconnect(connection)
            return False
        live_events_delivered_total.inc()
        return True
