"""Signal worker — pulls signals from the Redis stream with concurrency control."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from orchestrator.config import settings
from orchestrator.errors import LedgerWriteFailure
from orchestrator.ingestion.models import Signal
from orchestrator.queue.redis_client import CONSUMER_GROUP, STREAM_KEY, ensure_group, get_redis

logger = logging.getLogger("orchestrator.queue.worker")

CONSUMER_NAME = settings.consumer_name


class SignalWorker:
    """Consumes signals from the stream and hands each to the orchestrator with bounded concurrency.

    A message is acknowledged once its handler has finished, except after a
    ledger write failure: that message stays pending and is handed out again by the
    periodic backlog sweep (and on restart).
    """

    def __init__(self, handle_fn: Callable[[Signal], Awaitable[object]]) -> None:
        self._handle = handle_fn
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_signals)
        self._running = False
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._inflight_ids: set[str] = set()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        await ensure_group(await get_redis())

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            "Worker started: max_concurrent=%d, timeout=%ds",
            settings.max_concurrent_signals,
            settings.signal_processing_timeout_seconds,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Worker stopped")

    async def _poll_loop(self) -> None:
        """Main loop: read new signals, dispatch with concurrency limit.

        Every ``pending_redelivery_seconds`` the consumer's pending list is swept
        as well, so signals left unacknowledged by a ledger failure or a restart
        are retried without waiting for the next restart.
        """
        r = await get_redis()
        next_sweep = 0.0

        while self._running:
            try:
                if time.monotonic() >= next_sweep:
                    redelivered = await self._drain_backlog(r)
                    if redelivered:
                        logger.info("Redelivered %d pending signals", redelivered)
                    next_sweep = time.monotonic() + settings.pending_redelivery_seconds

                messages = await r.xreadgroup(
                    CONSUMER_GROUP, CONSUMER_NAME,
                    {STREAM_KEY: ">"},
                    count=1,
                    block=2000,
                )
                for _stream, entries in messages or []:
                    for msg_id, data in entries:
                        await self.dispatch(msg_id, data)

            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Worker poll error — retrying in 5s")
                await asyncio.sleep(5)

    async def _drain_backlog(self, r) -> int:
        """Dispatch every pending message of this consumer, page by page.

        Reading with an explicit id returns the consumer's own unacknowledged
        entries after that id; the cursor moves to the last id of each page until
        a page comes back empty. Messages still being handled are skipped.
        """
        cursor = "0"
        redelivered = 0
        while True:
            messages = await r.xreadgroup(
                CONSUMER_GROUP, CONSUMER_NAME,
                {STREAM_KEY: cursor},
                count=settings.backlog_batch_size,
            )
            entries = [e for _stream, batch in messages or [] for e in batch]
            if not entries:
                return redelivered
            for msg_id, data in entries:
                if msg_id in self._inflight_ids:
                    continue
                # entries trimmed from the stream come back without fields
                await self.dispatch(msg_id, data or {})
                redelivered += 1
            cursor = entries[-1][0]

    async def dispatch(self, msg_id: str, data: dict) -> None:
        signal_json = data.get("signal_json", "")
        if not signal_json:
            r = await get_redis()
            await r.xack(STREAM_KEY, CONSUMER_GROUP, msg_id)
            return

        signal = Signal.model_validate_json(signal_json)
        self._inflight_ids.add(msg_id)
        task = asyncio.create_task(self._run_with_guard(signal, msg_id))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_with_guard(self, signal: Signal, msg_id: str) -> None:
        """Process a signal with semaphore + timeout, then ACK."""
        async with self._semaphore:
            ack = True
            try:
                await asyncio.wait_for(
                    self._handle(signal),
                    timeout=settings.signal_processing_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.error(
                    "Signal processing timed out after %ds: signal=%s",
                    settings.signal_processing_timeout_seconds, signal.id,
                )
            except LedgerWriteFailure:
                ack = False
                logger.exception(
                    "Ledger write failed, leaving signal pending for redelivery: signal=%s", signal.id
                )
            except Exception:
                logger.exception("Signal processing failed: signal=%s", signal.id)
            finally:
                self._inflight_ids.discard(msg_id)
                if ack:
                    r = await get_redis()
                    await r.xack(STREAM_KEY, CONSUMER_GROUP, msg_id)
                    logger.debug("Message acknowledged: %s", msg_id)
