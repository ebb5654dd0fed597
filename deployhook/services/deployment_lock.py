"""
Advisory deployment lock using Redis (SET NX EX).

Guards only the artifact-processing critical section. Acquisition never
blocks; the TTL bounds how long a crashed holder can keep the site locked.
"""
import redis.asyncio as redis
from deployhook.config import settings


# Delete only when the caller still owns the key
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

EXTEND_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
end
return 0
"""


class DeploymentLock:
    """Per-site, TTL-bounded lock keyed by holder id."""

    def __init__(self, redis_client=None, redis_url: str = None, ttl: int = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis = redis_client
        self.ttl = ttl or settings.LOCK_TTL_SECONDS

    async def get_redis(self):
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    @staticmethod
    def key(site_id: str) -> str:
        return f"deploy-lock:{site_id}"

    async def acquire(self, site_id: str, holder: str, ttl: int | None = None) -> bool:
        """
        Try to take the lock without waiting.

        Returns True when the lock was taken, or is already held by the
        same holder (TTL refreshed). False when another holder owns it.
        """
        r = await self.get_redis()
        ttl = ttl or self.ttl
        if await r.set(self.key(site_id), holder, nx=True, ex=ttl):
            return True
        current = await self.read(site_id)
        if current == holder:
            await self.extend(site_id, holder, ttl)
            return True
        return False

    async def read(self, site_id: str) -> str | None:
        """Current holder, or None when the lock is free."""
        r = await self.get_redis()
        value = await r.get(self.key(site_id))
        if isinstance(value, bytes):
            value = value.decode()
        return value

    async def extend(self, site_id: str, holder: str, ttl: int | None = None) -> bool:
        r = await self.get_redis()
        result = await r.eval(EXTEND_SCRIPT, 1, self.key(site_id), holder, ttl or self.ttl)
        return bool(result)

    async def release(self, site_id: str, holder: str) -> bool:
        """Release the lock if ``holder`` still owns it."""
        r = await self.get_redis()
        result = await r.eval(RELEASE_SCRIPT, 1, self.key(site_id), holder)
        return bool(result)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
