"""Live connection registry with room-scoped fan-out."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from contextlib import suppress
from typing import Any, Awaitable, Callable

from fastapi import Request
from prometheus_client import Gauge

from . import pubsub

# purpose: own websocket room membership and deliver broadcasts to every member
#   without letting one slow client hold up the rest of the room
# inputs: send callables for accepted connections, room names, event payloads
# outputs: per-connection FIFO delivery plus a redis mirror for other instances
# status: active

logger = logging.getLogger(__name__)

REALTIME_CONNECTIONS = Gauge("realtime_connections", "Open live connections")

SendCallable = Callable[[dict[str, Any]], Awaitable[None]]
CloseCallable = Callable[[int], Awaitable[None]]

# close codes used when the server ends a live connection
CLOSE_SERVER_ERROR = 1011
CLOSE_GOING_AWAY = 1001

DEFAULT_SEND_TIMEOUT = float(os.getenv("REALTIME_SEND_TIMEOUT", "5"))
DEFAULT_OUTBOX_SIZE = int(os.getenv("REALTIME_OUTBOX_SIZE", "256"))


def relay_enabled_from_env() -> bool:
    if os.getenv("TESTING") == "1":
        return False
    return os.getenv("REALTIME_RELAY", "1") != "0"


class ConnectionSession:
    """One live client: the rooms it joined and an outbox drained by its own writer."""

    def __init__(
        self,
        send: SendCallable,
        *,
        user_id: Any = None,
        close: CloseCallable | None = None,
        outbox_size: int = DEFAULT_OUTBOX_SIZE,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ):
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self.rooms: set[str] = set()
        self.closed = False
        self._send = send
        self._close_transport = close
        self._send_timeout = send_timeout
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=outbox_size)
        self._writer: asyncio.Task | None = None
        self._on_failure: Callable[[ConnectionSession], Awaitable[None]] | None = None

    def __repr__(self) -> str:
        return f"<ConnectionSession {self.id} user={self.user_id}>"

    def start(self, on_failure: Callable[[ConnectionSession], Awaitable[None]]) -> None:
        self._on_failure = on_failure
        self._writer = asyncio.create_task(self._drain(), name=f"realtime-writer-{self.id}")

    def enqueue(self, message: dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    async def flush(self) -> None:
        """Wait until everything enqueued so far has been sent or discarded."""

        await self._outbox.join()

    async def _drain(self) -> None:
        while True:
            message = await self._outbox.get()
            try:
                await asyncio.wait_for(self._send(message), timeout=self._send_timeout)
            except asyncio.CancelledError:
                self._outbox.task_done()
                raise
            except Exception as exc:
                self._outbox.task_done()
                logger.warning("Dropping connection %s after failed send: %s", self.id, exc)
                self._discard_pending()
                if self._on_failure is not None:
                    await self._on_failure(self)
                return
            self._outbox.task_done()

    def _discard_pending(self) -> None:
        while True:
            try:
                self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._outbox.task_done()

    async def close(self, code: int | None = CLOSE_SERVER_ERROR) -> None:
        """Stop the writer; with a ``code`` the underlying socket is closed as well."""

        self.closed = True
        writer = self._writer
        self._writer = None
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
            with suppress(asyncio.CancelledError):
                await writer
        self._discard_pending()
        if code is not None and self._close_transport is not None:
            try:
                await asyncio.wait_for(self._close_transport(code), timeout=self._send_timeout)
            except Exception as exc:
                logger.info("Could not close transport for %s: %s", self.id, exc)


class RealtimeGateway:
    """Room membership table and fan-out for live connections.

    Constructed once per process, started from the application lifespan and injected
    into handlers through ``app.state.gateway``. Broadcasts are delivered to the
    connections that are members of the room when ``broadcast`` is called; later
    joiners never see earlier messages. Each connection has its own bounded outbox,
    so delivery to one member never waits on another. With the relay enabled every
    broadcast is mirrored to Redis and broadcasts from other instances are fanned out
    to local members.
    """

    def __init__(
        self,
        *,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        outbox_size: int = DEFAULT_OUTBOX_SIZE,
        relay_enabled: bool = False,
        origin: str | None = None,
    ):
        self.send_timeout = send_timeout
        self.outbox_size = outbox_size
        self.relay_enabled = relay_enabled
        self.origin = origin or uuid.uuid4().hex
        self._rooms: dict[str, set[ConnectionSession]] = {}
        self._connections: dict[str, ConnectionSession] = {}
        self._lock = asyncio.Lock()
        self._relay_task: asyncio.Task | None = None

    async def start(self) -> None:
        if self.relay_enabled and self._relay_task is None:
            self._relay_task = asyncio.create_task(self._run_relay(), name="realtime-relay")
        logger.info("Realtime gateway started (relay=%s)", self.relay_enabled)

    async def stop(self) -> None:
        if self._relay_task is not None:
            self._relay_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._relay_task
            self._relay_task = None
        for connection in list(self._connections.values()):
            await self.on_disconnect(connection, code=CLOSE_GOING_AWAY)
        logger.info("Realtime gateway stopped")

    async def connect(
        self,
        send: SendCallable,
        *,
        user_id: Any = None,
        close: CloseCallable | None = None,
    ) -> ConnectionSession:
        connection = ConnectionSession(
            send,
            user_id=user_id,
            close=close,
            outbox_size=self.outbox_size,
            send_timeout=self.send_timeout,
        )
        async with self._lock:
            self._connections[connection.id] = connection
        connection.start(self.on_disconnect)
        REALTIME_CONNECTIONS.inc()
        return connection

    async def join(self, connection: ConnectionSession, room: str) -> bool:
        """Add ``connection`` to ``room``; returns ``False`` when it was already a member."""

        async with self._lock:
            if connection.closed:
                return False
            members = self._rooms.setdefault(room, set())
            if connection in members:
                return False
            members.add(connection)
            connection.rooms.add(room)
            return True

    async def leave(self, connection: ConnectionSession, room: str) -> bool:
        async with self._lock:
            return self._remove_from_room(connection, room)

    def _remove_from_room(self, connection: ConnectionSession, room: str) -> bool:
        members = self._rooms.get(room)
        connection.rooms.discard(room)
        if not members or connection not in members:
            return False
        members.discard(connection)
        if not members:
            del self._rooms[room]
        return True

    async def on_disconnect(
        self, connection: ConnectionSession, *, code: int | None = CLOSE_SERVER_ERROR
    ) -> None:
        """Forget ``connection``; pass ``code=None`` when the client already went away."""

        async with self._lock:
            if self._connections.pop(connection.id, None) is None:
                return
            for room in list(connection.rooms):
                self._remove_from_room(connection, room)
        await connection.close(code)
        REALTIME_CONNECTIONS.dec()

    async def broadcast(
        self, room: str, event_kind: str, payload: dict[str, Any] | None = None
    ) -> int:
        """Deliver to local members of ``room``; returns how many accepted the message."""

        envelope = pubsub.room_envelope(self.origin, room, event_kind, payload)
        delivered = await self._fan_out(room, envelope)
        if self.relay_enabled:
            try:
                await pubsub.publish_room_event(room, envelope)
            except Exception:
                logger.exception("Failed to mirror broadcast for room %s", room)
        return delivered

    async def _fan_out(self, room: str, envelope: dict[str, Any]) -> int:
        message = {
            "event": envelope["event"],
            "room": room,
            "data": envelope.get("data") or {},
            "timestamp": envelope.get("timestamp"),
        }
        overflowed: list[ConnectionSession] = []
        delivered = 0
        # enqueue under the lock so members see room messages in broadcast order
        async with self._lock:
            for connection in self._rooms.get(room, ()):
                if connection.enqueue(message):
                    delivered += 1
                else:
                    overflowed.append(connection)
        for connection in overflowed:
            logger.warning("Outbox full for %s, disconnecting", connection)
            await self.on_disconnect(connection)
        return delivered

    async def handle_relay_message(self, raw: str) -> int:
        try:
            envelope = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed relay payload")
            return 0
        if not isinstance(envelope, dict) or envelope.get("origin") == self.origin:
            return 0
        room = envelope.get("room")
        if not room or not envelope.get("event"):
            return 0
        return await self._fan_out(room, envelope)

    async def _run_relay(self) -> None:
        backoff = 1.0
        while True:
            try:
                async for raw in pubsub.iter_room_events():
                    backoff = 1.0
                    await self.handle_relay_message(raw)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Realtime relay lost its subscription, retrying in %.0fs", backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, 30.0)

    def members(self, room: str) -> set[ConnectionSession]:
        return set(self._rooms.get(room, ()))

    def connection_count(self) -> int:
        return len(self._connections)


def get_gateway(request: Request) -> RealtimeGateway:
    return request.app.state.gateway
