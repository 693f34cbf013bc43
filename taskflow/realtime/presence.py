"""
In-memory presence registry.

Each observer moves through online -> away -> offline as its last heartbeat
ages (< 5 min online, < 30 min away). A disconnect starts one debounce
timer per observer; reconnecting or heartbeating before it fires cancels it,
so quick reconnects never show up as offline.
"""
import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from taskflow.utils.timezone import utc_now

logger = logging.getLogger(__name__)


class PresenceState(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    OFFLINE = "offline"


@dataclass
class PresenceEntry:
    observer_id: str
    last_seen_at: datetime
    connections: int = 0
    # Grace period after the last disconnect has run out
    released: bool = False
    reported_state: PresenceState = PresenceState.ONLINE
    offline_timer: Optional[asyncio.TimerHandle] = None


class PresenceTracker:
    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        online_for: timedelta = timedelta(minutes=5),
        away_for: timedelta = timedelta(minutes=30),
        grace_seconds: float = 30.0,
        retention: timedelta = timedelta(hours=24),
    ):
        self._clock = clock
        self._online_for = online_for
        self._away_for = away_for
        self._grace_seconds = grace_seconds
        self._retention = retention
        self._entries: Dict[str, PresenceEntry] = {}
        self._lock = threading.Lock()
        self._pending: Set[asyncio.Future] = set()

    def _state_of(self, entry: Optional[PresenceEntry], now: datetime) -> PresenceState:
        if entry is None or entry.released:
            return PresenceState.OFFLINE
        elapsed = now - entry.last_seen_at
        if elapsed < self._online_for:
            return PresenceState.ONLINE
        if elapsed < self._away_for:
            return PresenceState.AWAY
        return PresenceState.OFFLINE

    def classify(self, observer_id: str) -> PresenceState:
        now = self._clock()
        with self._lock:
            return self._state_of(self._entries.get(observer_id), now)

    def heartbeat(self, observer_id: str) -> PresenceState:
        """Refresh last-seen; returns the state the observer was in before."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(observer_id)
            previous = self._state_of(entry, now)
            if entry is None:
                entry = self._entries[observer_id] = PresenceEntry(observer_id=observer_id, last_seen_at=now)
            entry.last_seen_at = now
            entry.released = False
            entry.reported_state = PresenceState.ONLINE
            self._cancel_timer(entry)
            return previous

    def connected(self, observer_id: str) -> PresenceState:
        previous = self.heartbeat(observer_id)
        with self._lock:
            self._entries[observer_id].connections += 1
        return previous

    def disconnected(self, observer_id: str, on_offline: Optional[Callable[[str], Any]] = None) -> None:
        """Start the debounce timer once the observer's last connection closes.

        Must be called from a running event loop.
        """
        with self._lock:
            entry = self._entries.get(observer_id)
            if entry is None:
                return
            entry.connections = max(0, entry.connections - 1)
            if entry.connections > 0:
                return
            self._cancel_timer(entry)
            loop = asyncio.get_running_loop()
            entry.offline_timer = loop.call_later(
                self._grace_seconds, self._grace_expired, observer_id, on_offline
            )

    def _grace_expired(self, observer_id: str, on_offline: Optional[Callable[[str], Any]]) -> None:
        with self._lock:
            entry = self._entries.get(observer_id)
            if entry is None or entry.connections > 0:
                return
            entry.offline_timer = None
            entry.released = True
            entry.reported_state = PresenceState.OFFLINE
        logger.info("[Presence] %s went offline after grace period", observer_id)
        if on_offline is None:
            return
        try:
            result = on_offline(observer_id)
        except Exception:
            logger.exception("[Presence] Offline callback failed for %s", observer_id)
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(self._pending.discard)

    @staticmethod
    def _cancel_timer(entry: PresenceEntry) -> None:
        if entry.offline_timer is not None:
            entry.offline_timer.cancel()
            entry.offline_timer = None

    def sweep(self) -> List[Tuple[str, PresenceState]]:
        """Advance every observer's state machine; returns the transitions.

        Observers offline and idle for longer than the retention period are
        dropped from the registry.
        """
        now = self._clock()
        transitions: List[Tuple[str, PresenceState]] = []
        with self._lock:
            for observer_id, entry in list(self._entries.items()):
                state = self._state_of(entry, now)
                if state != entry.reported_state:
                    entry.reported_state = state
                    transitions.append((observer_id, state))
                if (
                    state == PresenceState.OFFLINE
                    and entry.connections == 0
                    and entry.offline_timer is None
                    and now - entry.last_seen_at > self._retention
                ):
                    del self._entries[observer_id]
        return transitions

    def snapshot(self) -> Dict[str, str]:
        """Observers that are currently online or away."""
        now = self._clock()
        with self._lock:
            result = {}
            for observer_id, entry in self._entries.items():
                state = self._state_of(entry, now)
                if state != PresenceState.OFFLINE:
                    result[observer_id] = state.value
            return result

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
