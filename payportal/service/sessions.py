from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from payportal.config import Settings
from payportal.logging import get_logger
from payportal.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class SessionRegistry:
    """One advisory "logged in since / last seen" entry per user.

    The registry drives the idle countdown shown to clients and never gates
    access; a later login overwrites the earlier entry. Entries expire after
    the idle window plus the token lifetime.
    """

    def __init__(self, settings: Settings, cache: Optional[RedisCache] = None) -> None:
        self.settings = settings
        self.cache = cache
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(minutes=self.settings.session_idle_minutes)

    @property
    def _retention(self) -> timedelta:
        return self.idle_timeout + timedelta(minutes=self.settings.access_token_ttl_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _prune_locked(self, now: datetime) -> None:
        cutoff = now - self._retention
        for user_id, entry in list(self._entries.items()):
            if entry["lastActivity"] < cutoff:
                self._entries.pop(user_id, None)

    @staticmethod
    def _parse_record(record: Dict[str, str]) -> Dict[str, Any]:
        return {
            "sessionId": record.get("sessionId"),
            "loginTime": datetime.fromisoformat(record["loginTime"]),
            "lastActivity": datetime.fromisoformat(record["lastActivity"]),
        }

    async def create(self, user_id: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        now = self._now()
        entry = {
            "sessionId": session_id or str(uuid.uuid4()),
            "loginTime": now,
            "lastActivity": now,
        }
        if self.cache:
            await self.cache.save_user_session(
                user_id,
                {
                    "sessionId": entry["sessionId"],
                    "loginTime": now.isoformat(),
                    "lastActivity": now.isoformat(),
                },
                int(self._retention.total_seconds()),
            )
        else:
            with self._lock:
                self._prune_locked(now)
                self._entries[user_id] = entry
        logger.info("session_created", user_id=user_id, session_id=entry["sessionId"])
        return entry

    async def _get(self, user_id: str) -> Optional[Dict[str, Any]]:
        if self.cache:
            record = await self.cache.get_user_session(user_id)
            if not record:
                return None
            try:
                return self._parse_record(record)
            except (KeyError, ValueError):
                logger.warning("session_record_corrupt", user_id=user_id)
                return None
        with self._lock:
            self._prune_locked(self._now())
            entry = self._entries.get(user_id)
            return dict(entry) if entry else None

    async def touch(self, user_id: str) -> bool:
        if self.cache:
            return await self.cache.update_session_activity(
                user_id, int(self._retention.total_seconds())
            )
        with self._lock:
            entry = self._entries.get(user_id)
            if not entry:
                return False
            entry["lastActivity"] = self._now()
            return True

    async def remove(self, user_id: str) -> None:
        if self.cache:
            await self.cache.delete_user_session(user_id)
        else:
            with self._lock:
                self._entries.pop(user_id, None)
        logger.info("session_removed", user_id=user_id)

    async def remove_all(self, user_id: str) -> None:
        # Single entry per user, so "all" is that entry
        await self.remove(user_id)
        logger.info("all_sessions_removed", user_id=user_id)

    def _is_expired(self, entry: Dict[str, Any], now: datetime) -> bool:
        return now - entry["lastActivity"] > self.idle_timeout

    async def touch_or_recreate(self, user_id: str, session_id: Optional[str] = None) -> None:
        """Refresh activity for a request carrying a valid token.

        A missing or idle-expired entry is replaced with a fresh one so the
        countdown restarts for tokens that outlived their registry entry.
        """
        entry = await self._get(user_id)
        if entry is None or self._is_expired(entry, self._now()):
            await self.create(user_id, session_id)
            return
        await self.touch(user_id)

    async def info(self, user_id: str) -> Optional[Dict[str, Any]]:
        entry = await self._get(user_id)
        if entry is None:
            return None
        now = self._now()
        idle = now - entry["lastActivity"]
        remaining = max(self.idle_timeout - idle, timedelta(0))
        return {
            "sessionId": entry.get("sessionId"),
            "timeRemaining": int(remaining.total_seconds() * 1000),
            "loginTime": entry["loginTime"],
            "lastActivity": entry["lastActivity"],
            "isExpired": self._is_expired(entry, now),
        }
