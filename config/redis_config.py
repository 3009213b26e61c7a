import os
import json
from typing import Optional, Any, Dict

import redis.asyncio as redis
from redis.exceptions import RedisError

REDIS_MAX_CONNECTIONS = int(os.getenv("REDIS_MAX_CONNECTIONS", "50"))
REDIS_SOCKET_TIMEOUT = int(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))
REDIS_SOCKET_CONNECT_TIMEOUT = int(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "5"))


class RedisConnectionPool:

    _clients: Dict[str, redis.Redis] = {}

    @classmethod
    def get_client(cls, url: str) -> redis.Redis:
        if url not in cls._clients:
            cls._clients[url] = redis.Redis.from_url(
                url,
                max_connections=REDIS_MAX_CONNECTIONS,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
                decode_responses=True,
                retry_on_timeout=True,
                health_check_interval=30,
            )
        return cls._clients[url]

    @classmethod
    async def close_all(cls):
        for client in cls._clients.values():
            await client.aclose()
        cls._clients.clear()


class JsonCache:
    """Key/value JSON cache on top of redis; errors degrade to cache misses."""

    def __init__(self, client: redis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except RedisError:
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            payload = json.dumps(value)
            if ttl:
                return bool(await self.client.setex(key, ttl, payload))
            return bool(await self.client.set(key, payload))
        except RedisError:
            return False


async def health_check(url: str) -> bool:
    try:
        return bool(await RedisConnectionPool.get_client(url).ping())
    except RedisError:
        return False
