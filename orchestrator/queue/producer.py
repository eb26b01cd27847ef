"""Signal producer — push ingested signals onto the Redis stream for matching."""

from __future__ import annotations

import logging

from orchestrator.ingestion.models import Signal
from orchestrator.queue.redis_client import STREAM_KEY, get_redis

logger = logging.getLogger("orchestrator.queue")


async def enqueue_signal(signal: Signal) -> str:
    """Append a signal to the stream and return the stream message ID."""
    r = await get_redis()
    msg_id = await r.xadd(STREAM_KEY, {"signal_json": signal.model_dump_json()})
    logger.info("Signal enqueued: id=%s metric=%s stream_msg=%s", signal.id, signal.metric_name, msg_id)
    return msg_id
