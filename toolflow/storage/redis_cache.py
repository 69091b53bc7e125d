from __future__ import annotations

import json
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from toolflow.logging import get_logger
from toolflow.storage.errors import StoreUnavailableError

logger = get_logger(__name__)


class RedisResultStore:
    """Redis-backed tool result store shared by every execution on the node."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds
    KEY_PREFIX = "toolflow:idemp:"

    # Compare-and-set: replace the claim only while the caller still owns it.
    _COMPLETE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
  return 0
end
local ok, decoded = pcall(cjson.decode, current)
if not ok or decoded['owner'] ~= ARGV[1] then
  return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))
return 1
"""

    _RELEASE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
  return 0
end
local ok, decoded = pcall(cjson.decode, current)
if ok and decoded['owner'] == ARGV[1] and decoded['status'] == 'in_progress' then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._complete = self.client.register_script(self._COMPLETE_SCRIPT)
        self._release = self.client.register_script(self._RELEASE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    @staticmethod
    def _decode(raw: Optional[str], key: str) -> Optional[Dict[str, Any]]:
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            raise StoreUnavailableError(
                "corrupted idempotency record", {"key": key}
            ) from exc

    async def acquire_slot(
        self, key: str, record: Dict[str, Any], ttl_seconds: int
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Atomically claim a slot using SET NX.

        Returns:
            Tuple of (acquired: bool, existing_record: Optional[dict])
            - If acquired=True, the slot was successfully claimed
            - If acquired=False, existing_record contains the current record
        """
        cache_key = self._key(key)
        try:
            acquired = await self.client.set(
                cache_key, json.dumps(record, default=str), ex=ttl_seconds, nx=True
            )
            if acquired:
                return (True, None)
            existing = await self.client.get(cache_key)
        except RedisError as exc:
            raise StoreUnavailableError("redis unavailable", {"op": "acquire"}) from exc
        return (False, self._decode(existing, key))

    async def get_record(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.client.get(self._key(key))
        except RedisError as exc:
            raise StoreUnavailableError("redis unavailable", {"op": "get"}) from exc
        return self._decode(raw, key)

    async def complete_slot(
        self, key: str, owner: str, record: Dict[str, Any], ttl_seconds: int
    ) -> bool:
        try:
            stored = await self._complete(
                keys=[self._key(key)],
                args=[owner, json.dumps(record, default=str), int(ttl_seconds)],
            )
        except RedisError as exc:
            raise StoreUnavailableError("redis unavailable", {"op": "complete"}) from exc
        if not stored:
            logger.warning("idempotency_claim_lost", key=key)
        return bool(stored)

    async def release_slot(self, key: str, owner: str) -> None:
        try:
            await self._release(keys=[self._key(key)], args=[owner])
        except RedisError as exc:
            raise StoreUnavailableError("redis unavailable", {"op": "release"}) from exc

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
