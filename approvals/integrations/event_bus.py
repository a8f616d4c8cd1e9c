"""
Workflow event bus.

Uses Redis Streams in production (``EVENT_BUS_URL=redis://…``) and falls back
to an in-process bus for development/testing.  Both backends give the same
at-least-once contract:

  - ``publish(topic, key, payload)`` appends a message.
  - ``read(topic, group, consumer)`` first returns this consumer's messages
    that were delivered but never acknowledged, then new ones.
  - ``ack(topic, group, message_id)`` removes a message from the pending set.

A consumer that crashes between ``read`` and ``ack`` sees the same message
again on its next ``read``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class BusMessage:
    id: str
    topic: str
    key: str | None
    payload: dict = field(default_factory=dict)


# ── In-memory backend ────────────────────────────────────────────────────

class MemoryBus:
    """In-process bus for dev/testing."""

    def __init__(self):
        self._streams: dict[str, list[BusMessage]] = {}
        # (topic, group) → {"offset": int, "pending": {message_id: consumer}}
        self._groups: dict[tuple[str, str], dict] = {}

    def publish(self, topic: str, key: str | None, payload: dict) -> str:
        stream = self._streams.setdefault(topic, [])
        message_id = f"{len(stream) + 1}-0"
        stream.append(BusMessage(id=message_id, topic=topic, key=key,
                                 payload=json.loads(json.dumps(payload, default=str))))
        return message_id

    def read(self, topic: str, group: str, consumer: str, count: int = 10) -> list[BusMessage]:
        state = self._groups.setdefault((topic, group), {"offset": 0, "pending": {}})
        stream = self._streams.get(topic, [])
        pending = [m for m in stream if state["pending"].get(m.id) == consumer]
        if pending:
            return pending[:count]
        batch = stream[state["offset"]:state["offset"] + count]
        state["offset"] += len(batch)
        for m in batch:
            state["pending"][m.id] = consumer
        return batch

    def ack(self, topic: str, group: str, message_id: str) -> None:
        state = self._groups.get((topic, group))
        if state:
            state["pending"].pop(message_id, None)

    def pending_count(self, topic: str, group: str) -> int:
        state = self._groups.get((topic, group))
        return len(state["pending"]) if state else 0

    def messages(self, topic: str) -> list[BusMessage]:
        return list(self._streams.get(topic, []))

    def ping(self) -> bool:
        return True


# ── Redis Streams backend ────────────────────────────────────────────────

class RedisStreamBus:
    """Redis Streams bus: one stream per topic, one consumer group per service."""

    def __init__(self, url: str, client=None):
        if client is None:
            import redis
            client = redis.from_url(url, decode_responses=True)
        self._redis = client
        self._known_groups: set[tuple[str, str]] = set()

    def publish(self, topic: str, key: str | None, payload: dict) -> str:
        fields = {"key": key or "", "payload": json.dumps(payload, default=str)}
        return self._redis.xadd(topic, fields)

    def _ensure_group(self, topic: str, group: str) -> None:
        if (topic, group) in self._known_groups:
            return
        import redis
        try:
            self._redis.xgroup_create(topic, group, id="0", mkstream=True)
        except redis.exceptions.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        self._known_groups.add((topic, group))

    def read(self, topic: str, group: str, consumer: str, count: int = 10) -> list[BusMessage]:
        self._ensure_group(topic, group)
        # "0" = this consumer's unacknowledged backlog, ">" = new messages
        for start in ("0", ">"):
            response = self._redis.xreadgroup(group, consumer, {topic: start}, count=count)
            messages = [
                self._decode(topic, message_id, fields)
                for _stream, entries in (response or [])
                for message_id, fields in entries
                if fields
            ]
            if messages:
                return messages
        return []

    def ack(self, topic: str, group: str, message_id: str) -> None:
        self._redis.xack(topic, group, message_id)

    def ping(self) -> bool:
        return bool(self._redis.ping())

    @staticmethod
    def _decode(topic: str, message_id: str, fields: dict) -> BusMessage:
        try:
            payload = json.loads(fields.get("payload") or "{}")
        except (TypeError, ValueError):
            logger.warning("Undecodable payload on %s message %s", topic, message_id)
            payload = {}
        return BusMessage(id=message_id, topic=topic, key=fields.get("key") or None,
                          payload=payload)


def build_event_bus(url: str | None):
    """Redis Streams for redis:// URLs, in-process bus otherwise."""
    if url and url.startswith(("redis://", "rediss://")):
        logger.info("Event bus: Redis Streams at %s", url.split("@")[-1])
        return RedisStreamBus(url)
    logger.info("Event bus: in-process")
    return MemoryBus()
