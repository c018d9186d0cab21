"""Live fan-out hub — relays positions, session changes and merged speed bumps.

The hub owns the registry of connected clients. It knows nothing about the
transport: a connection is a pair of ``send(text)`` / ``close()`` coroutines
supplied by the API layer.

Delivery is best-effort and at-most-once. Every connection has a bounded
outbox drained by its own writer task, so a broadcast only enqueues and
never waits on a slow client. A send that fails or times out removes the
connection. Messages that do not fit in a full outbox are dropped.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import math
import time
from typing import Any, Awaitable, Callable, TYPE_CHECKING

import structlog

from bumpmap_server.core.errors import ConnectionLost, MalformedMessage
from bumpmap_server.core.models import CandidateEvent, MergeResult
from bumpmap_server.core.stats import CHANNEL_LIVE

if TYPE_CHECKING:
    from bumpmap_server.core.aggregation import AggregationEngine
    from bumpmap_server.core.stats import ServerStats

log = structlog.get_logger()

SendFn = Callable[[str], Awaitable[None]]
CloseFn = Callable[[], Awaitable[None]]

MSG_JOIN = "join"
MSG_LOCATION_UPDATE = "location_update"
MSG_SPEED_BUMP = "speed_bump_detected"
MSG_SESSION_UPDATE = "session_update"
MSG_PING = "ping"
MSG_PONG = "pong"
MSG_ERROR = "error"
MSG_CONNECTED = "connected"

SESSION_STATUSES = ("started", "paused", "completed")


def now_ms() -> int:
    return int(time.time() * 1000)


def envelope(msg_type: str, **fields: Any) -> dict:
    """Outbound message with a ``type`` discriminator and a server timestamp."""
    msg = {"type": msg_type}
    msg.update(fields)
    msg.setdefault("timestamp", now_ms())
    return msg


def _dumps(message: dict) -> str:
    return json.dumps(message, separators=(",", ":"))


def parse_message(text: str | bytes) -> dict:
    """Decode an inbound message. Raises MalformedMessage."""
    try:
        message = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedMessage("invalid JSON") from exc
    if not isinstance(message, dict):
        raise MalformedMessage("message must be a JSON object")
    msg_type = message.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MalformedMessage("missing message type")
    return message


def _number(message: dict, key: str, required: bool = True) -> float | None:
    value = message.get(key)
    if value is None:
        if required:
            raise MalformedMessage(f"{key} is required")
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedMessage(f"{key} must be a number")
    if not math.isfinite(value):
        raise MalformedMessage(f"{key} must be a finite number")
    return value


def _request_ref(message: dict | None) -> dict:
    """The caller's ``requestId``, echoed on replies so acks can be matched."""
    request_id = message.get("requestId") if message else None
    if isinstance(request_id, bool) or not isinstance(request_id, (str, int)):
        return {}
    return {"requestId": request_id}


def _optional_str(message: dict, key: str) -> str | None:
    value = message.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise MalformedMessage(f"{key} must be a non-empty string")
    return value


class LiveConnection:
    """One attached client: identity, session affinity and outbound queue."""

    def __init__(self, conn_id: str, send: SendFn, close: CloseFn,
                 user_id: str | None = None, outbox_size: int = 100) -> None:
        self.id = conn_id
        self.user_id = user_id
        self.session_id: str | None = None
        self.alive = True
        self.closed = False
        self._send = send
        self._close = close
        self._outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=outbox_size)
        self._writer: asyncio.Task | None = None

    @property
    def contributor(self) -> str:
        return self.user_id or self.id

    def deliver(self, payload: str) -> bool:
        """Enqueue a payload without waiting. False if closed or the outbox is full."""
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(payload)
        except asyncio.QueueFull:
            return False
        return True

    def pending(self) -> int:
        return self._outbox.qsize()


class LiveHub:
    """Registry of live connections plus the message routing rules."""

    def __init__(
        self,
        engine: AggregationEngine,
        stats: ServerStats,
        outbox_size: int = 100,
        send_timeout_seconds: float = 5.0,
        heartbeat_interval_seconds: float = 30.0,
    ) -> None:
        self._engine = engine
        self._stats = stats
        self._outbox_size = outbox_size
        self._send_timeout = send_timeout_seconds
        self._heartbeat_interval = heartbeat_interval_seconds
        self._lock = asyncio.Lock()
        self._connections: dict[str, LiveConnection] = {}
        self._ids = itertools.count(1)
        self._handlers = {
            MSG_JOIN: self._on_join,
            MSG_LOCATION_UPDATE: self._on_location_update,
            MSG_SPEED_BUMP: self._on_speed_bump,
            MSG_SESSION_UPDATE: self._on_session_update,
            MSG_PING: self._on_ping,
            MSG_PONG: self._on_pong,
        }

    # -- registry ---------------------------------------------------------

    async def attach(self, send: SendFn, close: CloseFn,
                     user_id: str | None = None) -> LiveConnection:
        conn = LiveConnection(f"c{next(self._ids)}", send, close,
                              user_id=user_id, outbox_size=self._outbox_size)
        async with self._lock:
            self._connections[conn.id] = conn
        conn._writer = asyncio.create_task(self._write_loop(conn))
        self._stats.record_connection_opened()
        log.info("connection_attached", connection=conn.id, user=user_id)
        conn.deliver(_dumps(envelope(
            MSG_CONNECTED,
            connectionId=conn.id,
            message="Connected to BumpMap live server",
        )))
        return conn

    async def detach(self, conn: LiveConnection, reason: str = "closed") -> bool:
        """Remove a connection. Safe to call more than once."""
        async with self._lock:
            removed = self._connections.pop(conn.id, None)
        if removed is None:
            return False

        conn.closed = True
        writer = conn._writer
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
        self._stats.record_connection_closed()
        log.info("connection_removed", connection=conn.id, reason=reason,
                 pending=conn.pending())

        if reason != "closed":
            try:
                await conn._close()
            except Exception:
                log.debug("connection_close_failed", connection=conn.id, exc_info=True)
        return True

    async def connections(self) -> list[LiveConnection]:
        async with self._lock:
            return list(self._connections.values())

    def connection_count(self) -> int:
        return len(self._connections)

    async def _write_loop(self, conn: LiveConnection) -> None:
        while True:
            payload = await conn._outbox.get()
            try:
                await self._send_with_timeout(conn, payload)
            except ConnectionLost as exc:
                log.info("connection_lost", connection=conn.id, error=str(exc))
                await self.detach(conn, reason="send_failed")
                return

    async def _send_with_timeout(self, conn: LiveConnection, payload: str) -> None:
        try:
            await asyncio.wait_for(conn._send(payload), timeout=self._send_timeout)
        except asyncio.TimeoutError as exc:
            raise ConnectionLost(f"send timed out after {self._send_timeout}s") from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise ConnectionLost(repr(exc)) from exc

    # -- distribution -----------------------------------------------------

    async def broadcast(self, message: dict, *, session_id: str | None = None,
                        exclude: LiveConnection | None = None) -> int:
        """Enqueue a message to every matching connection. Returns the number reached.

        With ``session_id`` only connections currently in that session are
        targeted; otherwise every connection is.
        """
        payload = _dumps(message)
        delivered = dropped = 0
        async with self._lock:
            for conn in self._connections.values():
                if conn is exclude:
                    continue
                if session_id is not None and conn.session_id != session_id:
                    continue
                if conn.deliver(payload):
                    delivered += 1
                else:
                    dropped += 1
        self._stats.record_delivery(delivered, dropped)
        if dropped:
            log.warning("broadcast_dropped", type=message.get("type"), dropped=dropped)
        return delivered

    async def publish_speed_bump(self, event: CandidateEvent, result: MergeResult,
                                 contributor: str, session_id: str | None = None,
                                 exclude: LiveConnection | None = None) -> int:
        """Relay a merged speed bump to every connection except ``exclude``."""
        return await self.broadcast(envelope(
            MSG_SPEED_BUMP,
            latitude=event.latitude,
            longitude=event.longitude,
            intensity=event.intensity,
            sessionId=session_id,
            userId=contributor,
            recordId=result.record.id,
            created=result.created,
            verifications=result.verifications,
            timestamp=event.timestamp_ms,
        ), exclude=exclude)

    # -- inbound ----------------------------------------------------------

    def _reply(self, conn: LiveConnection, message: dict) -> None:
        if not conn.deliver(_dumps(message)):
            self._stats.record_delivery(0, 1)

    def _error(self, conn: LiveConnection, error: str, request: dict | None = None) -> None:
        self._reply(conn, envelope(MSG_ERROR, message=error, **_request_ref(request)))

    async def handle_text(self, conn: LiveConnection, text: str | bytes) -> None:
        """Route one inbound message and acknowledge it to its sender."""
        conn.alive = True
        message = None
        try:
            message = parse_message(text)
            handler = self._handlers.get(message["type"])
            if handler is None:
                raise MalformedMessage(f"unknown message type {message['type']!r}")
            await handler(conn, message)
        except MalformedMessage as exc:
            self._stats.record_message(malformed=True)
            log.info("message_malformed", connection=conn.id, error=str(exc))
            self._error(conn, str(exc), message)
            return
        self._stats.record_message()

    def _adopt_session(self, conn: LiveConnection, message: dict) -> None:
        session_id = _optional_str(message, "sessionId")
        if session_id is not None:
            conn.session_id = session_id

    async def _on_join(self, conn: LiveConnection, message: dict) -> None:
        session_id = _optional_str(message, "sessionId")
        if session_id is None:
            raise MalformedMessage("sessionId is required")
        user_id = _optional_str(message, "userId")
        conn.session_id = session_id
        if user_id is not None:
            conn.user_id = user_id
        log.debug("session_joined", connection=conn.id, session=session_id)
        self._reply(conn, envelope("join_ack", sessionId=session_id, connectionId=conn.id))

    async def _on_location_update(self, conn: LiveConnection, message: dict) -> None:
        latitude = _number(message, "latitude")
        longitude = _number(message, "longitude")
        speed = _number(message, "speed", required=False)
        self._adopt_session(conn, message)

        delivered = 0
        if conn.session_id is not None:
            delivered = await self.broadcast(envelope(
                MSG_LOCATION_UPDATE,
                sessionId=conn.session_id,
                latitude=latitude,
                longitude=longitude,
                speed=speed,
                userId=conn.contributor,
                timestamp=message.get("timestamp") or now_ms(),
            ), session_id=conn.session_id, exclude=conn)

        self._reply(conn, envelope("location_update_ack", sessionId=conn.session_id,
                                   delivered=delivered))

    async def _on_speed_bump(self, conn: LiveConnection, message: dict) -> None:
        latitude = _number(message, "latitude")
        longitude = _number(message, "longitude")
        intensity = _number(message, "intensity")
        timestamp = _number(message, "timestamp", required=False)
        confidence = _number(message, "confidence", required=False)
        detection_method = message.get("detectionMethod") or "sensor"
        self._adopt_session(conn, message)

        event = CandidateEvent(
            latitude=latitude,
            longitude=longitude,
            intensity=int(intensity),
            timestamp_ms=int(timestamp) if timestamp else now_ms(),
            confidence=int(confidence or 0),
        )
        try:
            result = self._engine.submit(event, contributor=conn.contributor,
                                         detection_method=detection_method)
        except ValueError as exc:
            self._stats.record_rejected()
            raise MalformedMessage(str(exc)) from exc
        self._stats.record_event(conn.contributor, result.created, channel=CHANNEL_LIVE)

        await self.publish_speed_bump(event, result, conn.contributor,
                                      session_id=conn.session_id, exclude=conn)
        self._reply(conn, envelope(
            "speed_bump_detected_ack",
            created=result.created,
            verifications=result.verifications,
            recordId=result.record.id,
            **_request_ref(message),
        ))

    async def _on_session_update(self, conn: LiveConnection, message: dict) -> None:
        status = message.get("status")
        if status is None and isinstance(message.get("data"), dict):
            status = message["data"].get("status")
        if status not in SESSION_STATUSES:
            raise MalformedMessage(f"status must be one of {', '.join(SESSION_STATUSES)}")
        self._adopt_session(conn, message)
        if conn.session_id is None:
            raise MalformedMessage("sessionId is required")

        delivered = await self.broadcast(envelope(
            MSG_SESSION_UPDATE,
            sessionId=conn.session_id,
            status=status,
            data=message.get("data"),
            userId=conn.contributor,
        ), session_id=conn.session_id, exclude=conn)
        log.info("session_status", connection=conn.id, session=conn.session_id, status=status)

        self._reply(conn, envelope("session_update_ack", sessionId=conn.session_id,
                                   status=status, delivered=delivered))

    async def _on_ping(self, conn: LiveConnection, message: dict) -> None:
        self._reply(conn, envelope(MSG_PONG))

    async def _on_pong(self, conn: LiveConnection, message: dict) -> None:
        # Liveness already recorded in handle_text.
        pass

    # -- liveness ---------------------------------------------------------

    async def heartbeat_once(self) -> int:
        """Drop connections silent since the last probe, probe the rest."""
        removed = 0
        for conn in await self.connections():
            if not conn.alive:
                if await self.detach(conn, reason="heartbeat_timeout"):
                    removed += 1
                continue
            conn.alive = False
            conn.deliver(_dumps(envelope(MSG_PING)))
        return removed

    async def run_heartbeat(self) -> None:
        """Probe connections every interval. Runs as a background task."""
        log.info("heartbeat_started", interval=self._heartbeat_interval)
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                removed = await self.heartbeat_once()
            except Exception:
                log.error("heartbeat_failed", exc_info=True)
                continue
            if removed:
                log.info("heartbeat_pruned", removed=removed,
                         remaining=self.connection_count())
