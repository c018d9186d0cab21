"""Event submission — carries detected events from the detector to the server.

``HttpSubmissionChannel`` uses one request per event. ``EventPump`` sits
between the detector's synchronous "just detected" hook and any channel:
``offer`` never blocks, and a background task submits each queued event
exactly once. Delivery is at-most-once; a failed submission is logged and
the event dropped.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import httpx
import structlog

from bumpmap_client.models import CandidateEvent, MergeResult

log = structlog.get_logger()


class SubmissionError(Exception):
    """The server refused or never answered a submission."""


class SubmissionChannel(Protocol):
    async def submit(self, event: CandidateEvent) -> MergeResult: ...


def parse_merge_result(data: dict) -> MergeResult:
    try:
        return MergeResult(
            created=bool(data["created"]),
            verifications=int(data["verifications"]),
            record_id=data.get("recordId"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise SubmissionError(f"unexpected response: {data!r}") from exc


class HttpSubmissionChannel:
    """Request/response submission over HTTP."""

    def __init__(self, base_url: str, user_id: str = "anonymous",
                 timeout: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self._user_id = user_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def submit(self, event: CandidateEvent) -> MergeResult:
        try:
            resp = await self._client.post(
                "/api/v1/community/speed-bumps",
                json=event.to_payload(),
                headers={"X-User-Id": self._user_id},
            )
        except httpx.HTTPError as exc:
            raise SubmissionError(f"request failed: {exc}") from exc

        if resp.status_code not in (200, 201):
            raise SubmissionError(f"HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise SubmissionError("response is not JSON") from exc
        return parse_merge_result(data)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class EventPump:
    """Bounded queue from the detector hook to a submission channel."""

    def __init__(self, channel: SubmissionChannel, max_pending: int = 100) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[CandidateEvent] = asyncio.Queue(maxsize=max_pending)
        self.submitted = 0
        self.failed = 0
        self.dropped = 0

    def offer(self, event: CandidateEvent) -> bool:
        """Detector listener. Drops the event if too many are already waiting."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning("event_dropped", reason="pump_full", pending=self._queue.qsize())
            return False
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    async def submit_next(self) -> MergeResult | None:
        """Take one queued event and submit it. None if the submission failed."""
        event = await self._queue.get()
        try:
            result = await self._channel.submit(event)
        except SubmissionError as exc:
            self.failed += 1
            log.warning("event_submit_failed", error=str(exc),
                        lat=round(event.latitude, 6), lon=round(event.longitude, 6))
            return None
        finally:
            self._queue.task_done()
        self.submitted += 1
        log.info("event_submitted", created=result.created,
                 verifications=result.verifications)
        return result

    async def run(self) -> None:
        """Submit queued events forever. Runs as a background task."""
        while True:
            await self.submit_next()

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()
