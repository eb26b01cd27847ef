"""Redis connection and signal stream bootstrap.

One connection pool is shared by the receiver (producer side) and the worker.
Stream and consumer group names come from settings so several orchestrators
can share a Redis instance.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

from orchestrator.config import settings

logger = logging.getLogger("orchestrator.queue")

STREAM_KEY = settings.signal_stream
CONSUMER_GROUP = settings.consumer_group

_client: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    """Return the shared client, connecting lazily on first use."""
    global _client
    if _client is None:
        _client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=settings.redis_max_connections,
        )
    return _client


async def ensure_group(r: aioredis.Redis) -> bool:
    """Create the signal stream and its consumer group. False if the group already existed.

    The group starts at id "0" so signals enqueued before the first worker came
    up are still matched.
    """
    try:
        await r.xgroup_create(STREAM_KEY, CONSUMER_GROUP, id="0", mkstream=True)
    except ResponseError as exc:
        if "BUSYGROUP" not in str(exc):
            raise
        return False
    logger.info("Created consumer group '%s' on stream '%s'", CONSUMER_GROUP, STREAM_KEY)
    return True


async def stream_stats(r: aioredis.Redis) -> dict:
    """Stream length and the matcher group's delivery state."""
    length = await r.xlen(STREAM_KEY)
    try:
        groups = await r.xinfo_groups(STREAM_KEY)
    except ResponseError:
        # stream not created yet
        groups = []

    group = next((g for g in groups if g.get("name") == CONSUMER_GROUP), None)
    return {
        "stream": STREAM_KEY,
        "stream_length": length,
        "consumer_group": {
            "name": CONSUMER_GROUP,
            "pending": group.get("pending", 0),
            "consumers": group.get("consumers", 0),
            "last_delivered_id": group.get("last-delivered-id", ""),
        } if group else {},
    }


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
