from __future__ import annotations

import asyncio
import time
from typing import Protocol

import redis.asyncio as redis_async


class SessionRegistry(Protocol):
    async def claim(self, interview_id: str, owner: str) -> bool:
        ...

    async def release(self, interview_id: str, owner: str) -> None:
        ...

    async def owner_of(self, interview_id: str) -> str | None:
        ...


class LocalSessionRegistry:
    """One live session per interview inside this process."""

    def __init__(self, lease_sec: float = 3 * 3600):
        self._lock = asyncio.Lock()
        self.lease_sec = max(60.0, float(lease_sec))
        self._owners: dict[str, tuple[str, float]] = {}

    async def claim(self, interview_id: str, owner: str) -> bool:
        if not interview_id or not owner:
            return False
        now_ts = time.time()
        async with self._lock:
            current = self._owners.get(interview_id)
            if current and current[0] != owner and now_ts - current[1] < self.lease_sec:
                return False
            self._owners[interview_id] = (owner, now_ts)
            return True

    async def release(self, interview_id: str, owner: str) -> None:
        async with self._lock:
            current = self._owners.get(interview_id)
            if current and current[0] == owner:
                self._owners.pop(interview_id, None)

    async def owner_of(self, interview_id: str) -> str | None:
        async with self._lock:
            current = self._owners.get(interview_id)
            if not current or time.time() - current[1] >= self.lease_sec:
                return None
            return current[0]

    def active_count(self) -> int:
        return len(self._owners)


class RedisSessionRegistry:
    """Redis-backed ownership across workers.

    Keys:
    - interview:{interview_id}:session (string owner, TTL = lease)
    """

    _RELEASE_SCRIPT = (
        "if redis.call('get', KEYS[1]) == ARGV[1] then "
        "return redis.call('del', KEYS[1]) else return 0 end"
    )

    def __init__(self, redis_url: str, lease_sec: float = 3 * 3600):
        self.lease_sec = max(60, int(lease_sec))
        self._redis = redis_async.from_url(redis_url, decode_responses=True)

    @staticmethod
    def _key(interview_id: str) -> str:
        return f"interview:{interview_id}:session"

    async def claim(self, interview_id: str, owner: str) -> bool:
        if not interview_id or not owner:
            return False
        key = self._key(interview_id)
        if await self._redis.set(key, owner, nx=True, ex=self.lease_sec):
            return True
        # same owner reclaiming extends its lease
        if await self._redis.get(key) == owner:
            await self._redis.expire(key, self.lease_sec)
            return True
        return False

    async def release(self, interview_id: str, owner: str) -> None:
        if not interview_id or not owner:
            return
        await self._redis.eval(self._RELEASE_SCRIPT, 1, self._key(interview_id), owner)

    async def owner_of(self, interview_id: str) -> str | None:
        if not interview_id:
            return None
        value = await self._redis.get(self._key(interview_id))
        return str(value) if value else None

    async def close(self) -> None:
        await self._redis.aclose()


def build_session_registry(settings) -> SessionRegistry:
    if not settings.use_redis_session_registry:
        return LocalSessionRegistry(settings.session_lease_sec)

    if not settings.redis_url:
        raise RuntimeError("USE_REDIS_SESSION_REGISTRY=true requires REDIS_URL")
    return RedisSessionRegistry(settings.redis_url, settings.session_lease_sec)
