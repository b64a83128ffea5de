"""Session persistence.

Stores hold whole Session records keyed by id. The manager owns expiry
semantics; stores only need to drop expired records when swept.
"""

import copy
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional

try:
    import redis.asyncio as redis
    HAS_REDIS = True
except ImportError:
    HAS_REDIS = False

from quizrag.config import RedisConfig, get_settings
from quizrag.models import Session, utcnow

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Abstract base class for session stores."""

    @abstractmethod
    async def save(self, session: Session) -> None:
        pass

    @abstractmethod
    async def load(self, session_id: str) -> Optional[Session]:
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def cleanup(self, now: Optional[datetime] = None) -> int:
        """Delete expired sessions.

        Returns:
            Number of sessions removed
        """
        pass


class InMemorySessionStore(SessionStore):
    """Process-local store. Saves and loads copies so callers never share state."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    async def save(self, session: Session) -> None:
        self._sessions[session.id] = copy.deepcopy(session)

    async def load(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session else None

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def cleanup(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        expired = [sid for sid, session in self._sessions.items() if session.is_expired(now)]
        for session_id in expired:
            del self._sessions[session_id]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


class RedisSessionStore(SessionStore):
    """Redis-backed store.

    Each session is a JSON document under ``<prefix><id>`` whose TTL is the
    time left until the session expires.
    """

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        client: Optional["redis.Redis"] = None,
    ):
        """Initialize the store.

        Args:
            config: Redis configuration
            client: Pre-initialized Redis client
        """
        self.config = config or get_settings().redis
        self._client = client
        self._initialized = client is not None

    async def _ensure_initialized(self):
        """Lazy initialization of Redis client."""
        if not self._initialized:
            if not HAS_REDIS:
                raise ImportError(
                    "redis package required. Install with: pip install redis"
                )
            logger.info(f"Connecting to Redis: {self.config.url}")
            self._client = redis.from_url(self.config.url)
            self._initialized = True

    def _key(self, session_id: str) -> str:
        return f"{self.config.session_prefix}{session_id}"

    async def save(self, session: Session) -> None:
        await self._ensure_initialized()
        ttl = int((session.expires_at - utcnow()).total_seconds())
        await self._client.setex(self._key(session.id), max(ttl, 1), json.dumps(session.to_dict()))

    async def load(self, session_id: str) -> Optional[Session]:
        await self._ensure_initialized()
        value = await self._client.get(self._key(session_id))
        if not value:
            return None
        return Session.from_dict(json.loads(value))

    async def delete(self, session_id: str) -> None:
        await self._ensure_initialized()
        await self._client.delete(self._key(session_id))

    async def cleanup(self, now: Optional[datetime] = None) -> int:
        """Remove expired sessions that Redis has not yet evicted."""
        await self._ensure_initialized()
        now = now or utcnow()

        expired = []
        async for key in self._client.scan_iter(match=f"{self.config.session_prefix}*"):
            value = await self._client.get(key)
            if value and Session.from_dict(json.loads(value)).is_expired(now):
                expired.append(key)

        if expired:
            await self._client.delete(*expired)
        return len(expired)

    async def close(self):
        """Close the Redis connection."""
        if self._client:
            await self._client.aclose()
            self._initialized = False
