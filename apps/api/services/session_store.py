"""Server-side session storage keyed by the opaque id carried in the cookie."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from config import Settings, settings as app_settings
from services.errors import SessionStoreUnavailable
from services.session_token import deserialize_session, serialize_session
from services.sessions import Session


logger = logging.getLogger(__name__)


class SessionStore(ABC):
    @abstractmethod
    async def load(self, session_id: str) -> Optional[Session]:
        raise NotImplementedError

    @abstractmethod
    async def save(self, session_id: str, session: Session, ttl_seconds: int) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    @staticmethod
    def _decode(session_id: str, raw: Optional[str]) -> Optional[Session]:
        if not raw:
            return None
        try:
            return deserialize_session(json.loads(raw))
        except ValueError as exc:
            logger.warning("Discarding unreadable stored session sid=%s: %s", session_id[:8], exc)
            return None


class RedisSessionStore(SessionStore):
    def __init__(self, url: str, key_prefix: str) -> None:
        self.url = url
        self.key_prefix = key_prefix
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        return self._client

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}:{session_id}"

    async def load(self, session_id: str) -> Optional[Session]:
        try:
            raw = await self.client.get(self._key(session_id))
        except (RedisError, OSError) as exc:
            logger.error("Session load failed: %s", exc)
            raise SessionStoreUnavailable() from exc
        return self._decode(session_id, raw)

    async def save(self, session_id: str, session: Session, ttl_seconds: int) -> None:
        payload = json.dumps(serialize_session(session), separators=(",", ":"))
        try:
            await self.client.set(self._key(session_id), payload, ex=ttl_seconds)
        except (RedisError, OSError) as exc:
            logger.error("Session save failed: %s", exc)
            raise SessionStoreUnavailable() from exc

    async def delete(self, session_id: str) -> None:
        try:
            await self.client.delete(self._key(session_id))
        except (RedisError, OSError) as exc:
            logger.error("Session delete failed: %s", exc)
            raise SessionStoreUnavailable() from exc

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class InMemorySessionStore(SessionStore):
    """Single-process store for local development and tests."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def load(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None:
                return None
            raw, expires_at = entry
            if time.time() >= expires_at:
                self._sessions.pop(session_id, None)
                return None
        return self._decode(session_id, raw)

    async def save(self, session_id: str, session: Session, ttl_seconds: int) -> None:
        payload = json.dumps(serialize_session(session), separators=(",", ":"))
        async with self._lock:
            self._sessions[session_id] = (payload, time.time() + ttl_seconds)

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            self._sessions.pop(session_id, None)


def build_session_store(config: Optional[Settings] = None) -> SessionStore:
    config = config or app_settings
    backend = str(config.SESSION_STORE_BACKEND or "redis").strip().lower()
    if backend == "memory":
        logger.warning("Using in-process session store; sessions are not shared between workers")
        return InMemorySessionStore()
    if backend != "redis":
        raise ValueError(f"Unknown SESSION_STORE_BACKEND: {backend}")
    return RedisSessionStore(config.REDIS_URL, config.SESSION_KEY_PREFIX)
