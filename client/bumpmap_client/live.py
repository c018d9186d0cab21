"""Live client — duplex connection to the server's fan-out hub.

Sends position updates, session changes and detected speed bumps; receives
other clients' broadcasts and dispatches them to registered handlers by
message ``type``. Reconnection is a plain bounded retry loop around
``run_once`` (see ``run_with_reconnect``).
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import time
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosedError, WebSocketException

from bumpmap_client.channel import SubmissionError, parse_merge_result
from bumpmap_client.models import CandidateEvent, MergeResult

log = structlog.get_logger()

Handler = Callable[[dict], Any]

SESSION_STATUSES = ("started", "paused", "completed")


class NotConnected(Exception):
    """A send was attempted while no live connection is open."""


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay for the ``attempt``-th consecutive failure (1-based), capped."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def run_with_reconnect(
    run_once: Callable[[], Awaitable[bool]],
    *,
    max_attempts: int = 5,
    base_delay: float = 3.0,
    max_delay: float = 30.0,
    retry_on: tuple[type[BaseException], ...] = (OSError, asyncio.TimeoutError),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """Keep a connection up with bounded retries.

    ``run_once`` returns True when the peer closed cleanly (stop), False when
    an established link dropped (reconnect, failure count reset) and raises
    one of ``retry_on`` when it could not connect. Gives up and returns False
    after ``max_attempts`` consecutive failures.
    """
    failures = 0
    while True:
        try:
            clean = await run_once()
        except retry_on as exc:
            failures += 1
            if failures >= max_attempts:
                log.error("reconnect_gave_up", attempts=failures, error=str(exc))
                return False
            delay = backoff_delay(failures, base_delay, max_delay)
            log.warning("reconnect_scheduled", attempt=failures, max_attempts=max_attempts,
                        delay=delay, error=str(exc))
            await sleep(delay)
            continue

        if clean:
            return True
        failures = 0
        await sleep(base_delay)


class LiveClient:
    def __init__(self, url: str, user_id: str | None = None, ack_timeout: float = 10.0,
                 connect: Callable[[str], Any] = ws_connect) -> None:
        self._url = f"{url}?{urlencode({'userId': user_id})}" if user_id else url
        self.user_id = user_id
        self.session_id: str | None = None
        self._ack_timeout = ack_timeout
        self._connect = connect
        self._ws: Any = None
        self._handlers: dict[str, list[Handler]] = {}
        self._request_ids = itertools.count(1)
        self._pending_acks: dict[int, asyncio.Future] = {}

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on(self, msg_type: str, handler: Handler) -> None:
        """Register a handler (plain or async callable) for one message type."""
        self._handlers.setdefault(msg_type, []).append(handler)

    # -- outbound ---------------------------------------------------------

    async def send(self, message: dict) -> None:
        if self._ws is None:
            raise NotConnected(f"cannot send {message.get('type')!r}: not connected")
        message.setdefault("timestamp", int(time.time() * 1000))
        await self._ws.send(json.dumps(message, separators=(",", ":")))

    async def join(self, session_id: str) -> None:
        self.session_id = session_id
        message = {"type": "join", "sessionId": session_id}
        if self.user_id:
            message["userId"] = self.user_id
        await self.send(message)

    async def send_location(self, latitude: float, longitude: float,
                            speed: float | None = None) -> None:
        await self.send({
            "type": "location_update",
            "sessionId": self.session_id,
            "latitude": latitude,
            "longitude": longitude,
            "speed": speed,
        })

    async def send_session_update(self, status: str, data: dict | None = None) -> None:
        if status not in SESSION_STATUSES:
            raise ValueError(f"status must be one of {SESSION_STATUSES}")
        await self.send({
            "type": "session_update",
            "sessionId": self.session_id,
            "status": status,
            "data": data,
        })

    async def submit(self, event: CandidateEvent) -> MergeResult:
        """Report a speed bump and wait for the server's merge result.

        Each report carries a ``requestId`` that the server echoes on its ack
        or error, so a rejected report never consumes another report's ack.
        """
        request_id = next(self._request_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending_acks[request_id] = future
        payload = event.to_payload()
        payload.update(type="speed_bump_detected", sessionId=self.session_id,
                       requestId=request_id)
        try:
            await self.send(payload)
        except (NotConnected, WebSocketException) as exc:
            del self._pending_acks[request_id]
            raise SubmissionError(str(exc)) from exc
        try:
            return await asyncio.wait_for(future, timeout=self._ack_timeout)
        except asyncio.TimeoutError as exc:
            raise SubmissionError("no acknowledgment from server") from exc
        finally:
            self._pending_acks.pop(request_id, None)

    # -- inbound ----------------------------------------------------------

    async def dispatch(self, raw: str | bytes) -> None:
        """Handle one inbound frame."""
        try:
            message = json.loads(raw)
            msg_type = message["type"]
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError):
            log.warning("live_message_unparsable", raw=str(raw)[:120])
            return

        if msg_type == "ping":
            await self.send({"type": "pong"})
        elif msg_type == "speed_bump_detected_ack":
            future = self._take_pending(message)
            if future is not None and not future.done():
                try:
                    future.set_result(parse_merge_result(message))
                except SubmissionError as exc:
                    future.set_exception(exc)
        elif msg_type == "error":
            log.warning("live_server_error", message=message.get("message"),
                        request_id=message.get("requestId"))
            future = self._take_pending(message, in_order=False)
            if future is not None and not future.done():
                future.set_exception(SubmissionError(str(message.get("message"))))

        for handler in self._handlers.get(msg_type, []):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.error("live_handler_failed", type=msg_type, exc_info=True)

    def _take_pending(self, message: dict, in_order: bool = True) -> asyncio.Future | None:
        request_id = message.get("requestId")
        if request_id is not None:
            if isinstance(request_id, int) and not isinstance(request_id, bool):
                return self._pending_acks.pop(request_id, None)
            return None
        # Servers that do not echo ids acknowledge in order.
        if in_order and self._pending_acks:
            return self._pending_acks.pop(next(iter(self._pending_acks)))
        return None

    def _fail_pending(self, reason: str) -> None:
        while self._pending_acks:
            _, future = self._pending_acks.popitem()
            if not future.done():
                future.set_exception(SubmissionError(reason))

    async def run_once(self) -> bool:
        """Connect, rejoin the current session and dispatch until the link closes.

        Returns True on a clean close and False when the link dropped.
        Connection failures propagate.
        """
        async with self._connect(self._url) as ws:
            self._ws = ws
            log.info("live_connected", url=self._url)
            try:
                if self.session_id is not None:
                    await self.join(self.session_id)
                async for raw in ws:
                    await self.dispatch(raw)
            except ConnectionClosedError as exc:
                log.warning("live_connection_dropped", error=str(exc))
                return False
            finally:
                self._ws = None
                self._fail_pending("connection closed")
        log.info("live_closed")
        return True

    async def run_forever(self, max_attempts: int = 5, base_delay: float = 3.0,
                          max_delay: float = 30.0) -> bool:
        return await run_with_reconnect(
            self.run_once,
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=max_delay,
            retry_on=(OSError, asyncio.TimeoutError, WebSocketException),
        )
