"""Broker consumer: decode, dispatch, retry, dead-letter, acknowledge.

One asyncio worker per owned partition processes that partition's messages
strictly in order. Each message goes through ``process``:

    decode ──► handler(envelope) ──► ack
      │              │
      │              ├─ retryable failure ──► backoff, try again (max_retries)
      │              └─ exhausted / fatal  ──► dead-letter + ack
      └─ malformed ──► backoff, decode again (max_retries) ──► dead-letter + ack

A message is acknowledged only after it was handled or dead-lettered, so a
crash mid-handling means redelivery; the idempotent event store and workflow
key make the redelivery harmless.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from eventid.automation.matcher import WorkspaceMatcher
from eventid.broker.log import LogMessage, PartitionedLog
from eventid.errors import MalformedEnvelopeError, classify_error, is_retryable
from eventid.observability.metrics import HANDLER_LATENCY, MetricsCollector
from eventid.schema.events import EventEnvelope, EventType
from eventid.store.event_store import EventStore
from eventid.workflows.engine import WorkflowEngine

logger = structlog.get_logger()

EventHandler = Callable[[EventEnvelope], Awaitable[None]]


class Outcome(str, Enum):
    """What happened to one message."""
    ACKED = "acked"
    DEAD_LETTERED = "dead_lettered"
    SKIPPED = "skipped"   # recognized type without a handler, acknowledged


class EventIngestor:
    """Consumes the regulatory-events topic and drives the pipeline."""

    def __init__(
        self,
        log: PartitionedLog,
        store: EventStore,
        matcher: WorkspaceMatcher,
        engine: WorkflowEngine,
        metrics: MetricsCollector,
        max_retries: int = 5,
        retry_base_delay_s: float = 0.5,
        retry_max_delay_s: float = 30.0,
        fetch_batch_size: int = 32,
        fetch_block_ms: int = 1000,
        assign_interval_s: float = 5.0,
    ) -> None:
        self._log = log
        self._store = store
        self._matcher = matcher
        self._engine = engine
        self._metrics = metrics
        self._max_retries = max_retries
        self._retry_base_delay_s = retry_base_delay_s
        self._retry_max_delay_s = retry_max_delay_s
        self._fetch_batch_size = fetch_batch_size
        self._fetch_block_ms = fetch_block_ms
        self._assign_interval_s = assign_interval_s

        self._handlers: dict[EventType, EventHandler] = {}
        self._workers: dict[int, asyncio.Task[None]] = {}
        self._stopping = asyncio.Event()

    # ═══════════════════════════════════════════════════════════════════════
    # HANDLER REGISTRY
    # ═══════════════════════════════════════════════════════════════════════

    def register_handler(self, event_type: EventType, handler: EventHandler) -> None:
        self._handlers[event_type] = handler

    def register_default_handlers(self) -> None:
        """Route every recognized event type through store → match → execute."""
        for event_type in EventType:
            self._handlers[event_type] = self.handle_event

    @property
    def handlers(self) -> dict[EventType, EventHandler]:
        return dict(self._handlers)

    async def handle_event(self, envelope: EventEnvelope) -> None:
        """Default pipeline handler.

        Matching and execution run even for a duplicate: a previous delivery
        may have stored the event and crashed before its workflows finished.
        Finished runs are returned unchanged; runs the crash left open are
        failed as interrupted by the engine.
        """
        if await self._store.store_event(envelope):
            await self._metrics.event_stored()
        else:
            await self._metrics.event_duplicate()

        matches = await self._matcher.match(envelope)
        if matches:
            await self._engine.execute_all(envelope, matches)

    # ═══════════════════════════════════════════════════════════════════════
    # MESSAGE PROCESSING
    # ═══════════════════════════════════════════════════════════════════════

    def _backoff(self, retry: int) -> float:
        return min(self._retry_base_delay_s * 2 ** retry, self._retry_max_delay_s)

    async def process(self, message: LogMessage) -> Outcome:
        """Handle one delivery to completion; never raises for handler failures."""
        await self._metrics.event_consumed()
        log = logger.bind(partition=message.partition, offset=message.offset)

        envelope = await self._decode(message, log)
        if envelope is None:
            return Outcome.DEAD_LETTERED

        log = log.bind(event_id=envelope.event_id, event_type=envelope.event_type.value)
        handler = self._handlers.get(envelope.event_type)
        if handler is None:
            log.warning("no_handler_registered")
            await self._metrics.error("no_handler")
            await self._log.ack(message)
            return Outcome.SKIPPED

        attempts = 0
        async with self._metrics.timer(HANDLER_LATENCY):
            while True:
                attempts += 1
                try:
                    await handler(envelope)
                    break
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    kind = classify_error(e)
                    await self._metrics.error(kind)
                    retries_left = self._max_retries - (attempts - 1)
                    if not is_retryable(e) or retries_left <= 0:
                        log.error(
                            "event_handler_failed",
                            error=str(e),
                            error_kind=kind,
                            attempts=attempts,
                            exc_info=not is_retryable(e),
                        )
                        await self._dead_letter(message, kind, str(e), attempts)
                        return Outcome.DEAD_LETTERED

                    delay = self._backoff(attempts - 1)
                    log.warning(
                        "event_handler_retry",
                        error=str(e),
                        error_kind=kind,
                        attempt=attempts,
                        delay_s=delay,
                    )
                    await self._metrics.handler_retried()
                    await asyncio.sleep(delay)

        await self._log.ack(message)
        log.debug("event_acked", attempts=attempts)
        return Outcome.ACKED

    async def _decode(self, message: LogMessage, log: Any) -> EventEnvelope | None:
        """Decode within the retry budget; dead-letters and returns None when it never decodes."""
        attempts = 0
        while True:
            attempts += 1
            try:
                return EventEnvelope.decode(message.value)
            except MalformedEnvelopeError as e:
                await self._metrics.error(e.kind)
                if attempts > self._max_retries:
                    log.error("malformed_envelope", error=str(e), attempts=attempts)
                    await self._dead_letter(message, e.kind, str(e), attempts)
                    return None
                delay = self._backoff(attempts - 1)
                log.warning("malformed_envelope_retry", error=str(e), attempt=attempts, delay_s=delay)
                await self._metrics.handler_retried()
                await asyncio.sleep(delay)

    async def _dead_letter(self, message: LogMessage, kind: str, error: str, attempts: int) -> None:
        await self._log.dead_letter(message, kind, error, attempts)
        await self._metrics.dead_lettered()
        logger.warning(
            "event_dead_lettered",
            partition=message.partition,
            offset=message.offset,
            error_kind=kind,
            attempts=attempts,
        )

    # ═══════════════════════════════════════════════════════════════════════
    # PARTITION WORKERS
    # ═══════════════════════════════════════════════════════════════════════

    async def _consume(self, partition: int) -> None:
        logger.info("partition_worker_started", partition=partition)
        while not self._stopping.is_set():
            messages = await self._log.fetch(partition, self._fetch_batch_size, self._fetch_block_ms)
            for message in messages:
                await self.process(message)

    async def _reconcile(self, owned: list[int]) -> None:
        """Start workers for gained partitions, stop workers for lost ones."""
        for partition in list(self._workers):
            if partition not in owned:
                task = self._workers.pop(partition)
                task.cancel()
                logger.info("partition_worker_stopped", partition=partition)

        for partition in owned:
            task = self._workers.get(partition)
            if task is not None and not task.done():
                continue
            if task is not None and not task.cancelled() and task.exception() is not None:
                logger.error(
                    "partition_worker_crashed",
                    partition=partition,
                    error=str(task.exception()),
                    error_kind=classify_error(task.exception()),
                )
                await self._metrics.error(classify_error(task.exception()))
                # Unacknowledged messages of the crashed worker come first.
                await self._log.rewind(partition)
            self._workers[partition] = asyncio.create_task(
                self._consume(partition), name=f"partition-{partition}"
            )

    async def run(self) -> None:
        """Supervise partition workers until ``stop()`` is called."""
        logger.info("event_ingestor_started", partitions=self._log.partitions)
        self._stopping.clear()
        try:
            while not self._stopping.is_set():
                try:
                    owned = await self._log.assign()
                except Exception as e:
                    logger.error("partition_assignment_failed", error=str(e))
                    await self._metrics.error(classify_error(e))
                    owned = []
                await self._reconcile(owned)
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self._assign_interval_s)
                except asyncio.TimeoutError:
                    pass
        finally:
            workers = list(self._workers.values())
            self._workers.clear()
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            logger.info("event_ingestor_stopped")

    def stop(self) -> None:
        self._stopping.set()
