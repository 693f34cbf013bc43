"""
Per-user notification preferences with a read-through cache.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from taskflow.db.session import SessionLocal
from taskflow.models.notification import Channel, PreferenceCategory, default_channel_matrix
from taskflow.utils.timezone import utc_now
from . import repository
from .config import reminder_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreferenceMatrix:
    """Immutable view of a user's channel x event-type opt-ins.

    In-app delivery is implicit; this only governs external channels.
    """
    user_id: str
    email_enabled: bool = True
    webhook_enabled: bool = True
    webhook_url: Optional[str] = None
    channels: Mapping[str, Mapping[str, bool]] = field(default_factory=default_channel_matrix)

    @classmethod
    def from_model(cls, prefs: Any) -> "PreferenceMatrix":
        # Unknown or malformed stored entries fall back to defaults
        matrix = default_channel_matrix()
        stored = getattr(prefs, "channels", None)
        if isinstance(stored, dict):
            for channel, events in stored.items():
                if channel not in matrix or not isinstance(events, dict):
                    continue
                for category, enabled in events.items():
                    if category in matrix[channel]:
                        matrix[channel][category] = bool(enabled)
        return cls(
            user_id=str(prefs.user_id),
            email_enabled=bool(prefs.email_enabled) if prefs.email_enabled is not None else True,
            webhook_enabled=bool(prefs.webhook_enabled) if prefs.webhook_enabled is not None else True,
            webhook_url=prefs.webhook_url or None,
            channels=matrix,
        )

    def allows(self, channel: Channel, category: PreferenceCategory) -> bool:
        if channel == Channel.EMAIL and not self.email_enabled:
            return False
        if channel == Channel.WEBHOOK and (not self.webhook_enabled or not self.webhook_url):
            return False
        return bool(self.channels.get(channel.value, {}).get(category.value, False))

    def enabled_channels(self, category: PreferenceCategory) -> List[Channel]:
        return [channel for channel in Channel if self.allows(channel, category)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email_enabled": self.email_enabled,
            "webhook_enabled": self.webhook_enabled,
            "webhook_url": self.webhook_url,
            "channels": {channel: dict(events) for channel, events in self.channels.items()},
        }


class PreferenceResolver:
    """Resolve preference matrices, creating default rows on first access.

    Cached matrices are replaced on update through this resolver and expire
    after ``cache_ttl`` so changes written by another process (the API versus
    a Celery worker) are picked up. A zero TTL disables caching. First access
    for a user is serialised in-process; across processes the store's
    upsert-by-key keeps a single row.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], datetime] = utc_now,
        cache_ttl: Optional[timedelta] = None,
    ):
        self._session_factory = session_factory
        self._clock = clock
        if cache_ttl is None:
            cache_ttl = timedelta(seconds=reminder_settings.PREFERENCE_CACHE_SECONDS)
        self.cache_ttl = cache_ttl
        self._cache: Dict[str, Tuple[PreferenceMatrix, datetime]] = {}
        self._lock = threading.Lock()
        self._user_locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.Lock()
            return lock

    def _cached(self, user_id: str) -> Optional[PreferenceMatrix]:
        entry = self._cache.get(user_id)
        if entry is None:
            return None
        matrix, expires_at = entry
        if self._clock() >= expires_at:
            return None
        return matrix

    def _store(self, matrix: PreferenceMatrix) -> None:
        if self.cache_ttl <= timedelta(0):
            return
        with self._lock:
            self._cache[matrix.user_id] = (matrix, self._clock() + self.cache_ttl)

    def resolve(self, user_id: str) -> PreferenceMatrix:
        cached = self._cached(user_id)
        if cached is not None:
            return cached
        with self._lock_for(user_id):
            cached = self._cached(user_id)
            if cached is not None:
                return cached
            db = self._session_factory()
            try:
                prefs = repository.get_or_create_preferences(db, user_id)
                matrix = PreferenceMatrix.from_model(prefs)
            finally:
                db.close()
            self._store(matrix)
            return matrix

    def update(self, user_id: str, fields: Mapping[str, Any]) -> PreferenceMatrix:
        with self._lock_for(user_id):
            db = self._session_factory()
            try:
                prefs = repository.update_preferences(db, user_id, fields)
                matrix = PreferenceMatrix.from_model(prefs)
            finally:
                db.close()
            self._store(matrix)
        logger.info("[Preferences] Updated preferences for user %s", user_id)
        return matrix
