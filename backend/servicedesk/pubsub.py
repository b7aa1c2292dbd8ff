from __future__ import annotations

import json
import os
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from uuid import UUID

import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
ROOM_CHANNEL_PREFIX = "room:"
_redis = None

async def get_redis():
    global _redis
    if _redis is None:
        if os.getenv("TESTING") == "1":
            from fakeredis import aioredis
            _redis = aioredis.FakeRedis()
        else:
            _redis = redis.from_url(REDIS_URL)
    return _redis

def _json_default(value: Any) -> Any:
    # purpose: convert datetime and uuid values to strings for event payloads
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


def serialize_event(event: dict[str, Any]) -> str:
    # purpose: normalise event dictionaries into JSON strings for redis pub/sub
    return json.dumps(event, default=_json_default)


def room_envelope(origin: str, room: str, event_kind: str, payload: dict[str, Any] | None) -> dict[str, Any]:
    return {
        "origin": origin,
        "room": room,
        "event": event_kind,
        "data": payload or {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def publish_room_event(room: str, envelope: dict[str, Any]) -> None:
    """Publish a room broadcast so every service instance can fan it out locally."""

    r = await get_redis()
    await r.publish(f"{ROOM_CHANNEL_PREFIX}{room}", serialize_event(envelope))


async def iter_room_events() -> AsyncIterator[str]:
    """Yield raw room envelopes published by any instance."""

    # purpose: feed the realtime relay with broadcasts from other processes
    r = await get_redis()
    pattern = f"{ROOM_CHANNEL_PREFIX}*"
    listener = r.pubsub()
    await listener.psubscribe(pattern)
    try:
        async for message in listener.listen():
            if message.get("type") != "pmessage":
                continue
            data = message.get("data")
            if isinstance(data, bytes):
                yield data.decode()
            else:
                yield str(data)
    finally:
        with suppress(Exception):
            await listener.punsubscribe(pattern)
        with suppress(AttributeError):
            await listener.aclose()


class RedisBroadcaster:
    """Broadcast-only stand-in for the gateway in processes without live connections."""

    def __init__(self, origin: str = "worker"):
        self.origin = origin

    async def broadcast(self, room: str, event_kind: str, payload: dict[str, Any] | None = None) -> int:
        await publish_room_event(room, room_envelope(self.origin, room, event_kind, payload))
        return 0
