"""Cross-instance tenant cache invalidation over Redis pub/sub.

Without Redis the local resolver is still invalidated directly; other instances fall
back to their cache TTL.
"""

import asyncio
import logging
from typing import Callable, Optional

import redis.asyncio as redis

from . import config

log = logging.getLogger(__name__)


class InvalidationBus:
    def __init__(self, redis_url: str | None = None, channel: str | None = None):
        self.redis_url = redis_url if redis_url is not None else config.REDIS_URL
        self.channel = channel or config.TENANT_INVALIDATION_CHANNEL
        self.redis_client: Optional[redis.Redis] = None
        self._listener: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        """Connect to Redis"""
        if not self.redis_url:
            log.info("REDIS_URL not set; tenant cache invalidation is local only")
            return
        try:
            self.redis_client = redis.from_url(self.redis_url)
            await self.redis_client.ping()
            log.info("Redis connected for tenant invalidation")
        except Exception as e:
            log.warning("Redis connection failed: %s", e)
            self.redis_client = None

    async def publish(self, tenant_id: int) -> None:
        if not self.redis_client:
            return
        try:
            await self.redis_client.publish(self.channel, str(int(tenant_id)))
        except Exception as e:
            log.warning("Could not publish invalidation for store %s: %s", tenant_id, e)

    def start(self, on_invalidate: Callable[[Optional[int]], None]) -> None:
        if not self.redis_client or self._listener is not None:
            return
        self._listener = asyncio.create_task(self._listen(on_invalidate))

    async def _listen(self, on_invalidate: Callable[[Optional[int]], None]) -> None:
        pubsub = self.redis_client.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                on_invalidate(parse_tenant_id(message.get("data")))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Invalidation listener stopped: %s", e)
        finally:
            try:
                await pubsub.unsubscribe(self.channel)
                await pubsub.close()
            except Exception:
                pass

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self.redis_client is not None:
            await self.redis_client.close()
            self.redis_client = None


def parse_tenant_id(data) -> Optional[int]:
    """Decode a pub/sub payload; anything unparseable means "drop every entry"."""
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8", "ignore")
    try:
        return int(str(data).strip())
    except (TypeError, ValueError):
        return None
