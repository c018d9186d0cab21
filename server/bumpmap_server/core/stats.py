"""Server statistics and active-contributor tracking.

Tracks in-memory counters and a sliding window of active contributors.
No framework dependencies.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass

CHANNEL_HTTP = "http"
CHANNEL_LIVE = "live"


@dataclass
class ContributorActivity:
    """Tracks a single contributor's recent activity."""
    last_seen: float          # time.monotonic() timestamp
    channel: str              # "http" or "live"
    events_sent: int = 0


class ServerStats:
    """Thread-safe server statistics with active-contributor tracking.

    A contributor is "active" if its last event or traffic sample arrived
    within ``active_window_seconds`` (default 120s). Each contributor is
    attributed to the channel it used last: ``http`` for request/response
    submissions, ``live`` for the websocket hub.
    """

    def __init__(self, active_window_seconds: float = 120.0) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()
        self._active_window = active_window_seconds

        # Aggregation counters
        self.events_received: int = 0
        self.events_rejected: int = 0
        self.records_created: int = 0
        self.records_reinforced: int = 0
        self.records_deleted: int = 0

        # Traffic pipeline counters
        self.traffic_samples_received: int = 0
        self.traffic_samples_stored: int = 0
        self.traffic_samples_dropped: int = 0
        self.storage_errors: int = 0
        self.queue_depth: int = 0
        self.queue_max_depth: int = 0

        # Hub counters
        self.connections_current: int = 0
        self.connections_total: int = 0
        self.connections_removed: int = 0
        self.messages_received: int = 0
        self.messages_malformed: int = 0
        self.messages_delivered: int = 0
        self.messages_dropped: int = 0

        # Contributor tracking: contributor id → ContributorActivity
        self._contributors: dict[str, ContributorActivity] = {}

    def _touch(self, contributor: str, channel: str, count: int, now: float) -> None:
        """Caller holds lock."""
        activity = self._contributors.get(contributor)
        if activity is None:
            self._contributors[contributor] = ContributorActivity(
                last_seen=now, channel=channel, events_sent=count,
            )
        else:
            activity.last_seen = now
            activity.channel = channel
            activity.events_sent += count

    def record_event(self, contributor: str, created: bool, channel: str = CHANNEL_HTTP) -> None:
        """Record a merged speed bump event."""
        now = time.monotonic()
        with self._lock:
            self.events_received += 1
            if created:
                self.records_created += 1
            else:
                self.records_reinforced += 1
            self._touch(contributor, channel, 1, now)

    def record_rejected(self, count: int = 1) -> None:
        with self._lock:
            self.events_rejected += count

    def record_deleted(self, count: int) -> None:
        with self._lock:
            self.records_deleted += count

    def record_traffic(self, contributor: str, channel: str = CHANNEL_HTTP) -> None:
        now = time.monotonic()
        with self._lock:
            self.traffic_samples_received += 1
            self._touch(contributor, channel, 0, now)

    def record_traffic_stored(self, count: int = 1) -> None:
        with self._lock:
            self.traffic_samples_stored += count

    def record_traffic_dropped(self, count: int = 1) -> None:
        with self._lock:
            self.traffic_samples_dropped += count

    def record_storage_error(self) -> None:
        with self._lock:
            self.storage_errors += 1

    def update_queue_depth(self, depth: int) -> None:
        with self._lock:
            self.queue_depth = depth
            if depth > self.queue_max_depth:
                self.queue_max_depth = depth

    def record_connection_opened(self) -> None:
        with self._lock:
            self.connections_current += 1
            self.connections_total += 1

    def record_connection_closed(self) -> None:
        with self._lock:
            self.connections_current = max(self.connections_current - 1, 0)
            self.connections_removed += 1

    def record_message(self, malformed: bool = False) -> None:
        with self._lock:
            self.messages_received += 1
            if malformed:
                self.messages_malformed += 1

    def record_delivery(self, delivered: int, dropped: int = 0) -> None:
        with self._lock:
            self.messages_delivered += delivered
            self.messages_dropped += dropped

    def _prune_stale_contributors(self, now: float) -> None:
        """Remove contributors not seen within the active window. Caller holds lock."""
        cutoff = now - self._active_window
        stale = [cid for cid, act in self._contributors.items() if act.last_seen < cutoff]
        for cid in stale:
            del self._contributors[cid]

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot of all stats."""
        now_mono = time.monotonic()
        with self._lock:
            self._prune_stale_contributors(now_mono)

            active_http = sum(
                1 for act in self._contributors.values()
                if act.channel == CHANNEL_HTTP
            )
            active_live = sum(
                1 for act in self._contributors.values()
                if act.channel == CHANNEL_LIVE
            )

            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "events_received": self.events_received,
                "events_rejected": self.events_rejected,
                "records_created": self.records_created,
                "records_reinforced": self.records_reinforced,
                "records_deleted": self.records_deleted,
                "traffic_samples_received": self.traffic_samples_received,
                "traffic_samples_stored": self.traffic_samples_stored,
                "traffic_samples_dropped": self.traffic_samples_dropped,
                "storage_errors": self.storage_errors,
                "queue_depth": self.queue_depth,
                "queue_max_depth_ever": self.queue_max_depth,
                "connections": {
                    "current": self.connections_current,
                    "total": self.connections_total,
                    "removed": self.connections_removed,
                },
                "messages": {
                    "received": self.messages_received,
                    "malformed": self.messages_malformed,
                    "delivered": self.messages_delivered,
                    "dropped": self.messages_dropped,
                },
                "active_contributors": {
                    "total": len(self._contributors),
                    "http": active_http,
                    "live": active_live,
                    "window_seconds": self._active_window,
                },
            }
