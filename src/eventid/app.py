"""EventID service entry point.

Architecture:
- Redis Streams consumer (EventIngestor) running as a background task
- Async SQLAlchemy for the audit log, workspace registry and workflow history
- FastAPI (served by uvicorn) for health checks and metrics
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from eventid import __version__
from eventid.automation.matcher import WorkspaceMatcher
from eventid.broker.log import EventPublisher, PartitionedLog
from eventid.broker.redis_streams import RedisStreamLog
from eventid.config import Settings, settings
from eventid.db.session import create_engine, create_session_factory, init_db
from eventid.ingest.ingestor import EventIngestor
from eventid.observability.logging import configure_logging
from eventid.observability.metrics import MetricsCollector
from eventid.registry.workspaces import WorkspaceRegistry
from eventid.store.event_store import EventStore
from eventid.workflows.engine import WorkflowEngine
from eventid.workflows.runners import ActionRunner

logger = structlog.get_logger()

_SHUTDOWN_GRACE_S = 10.0


# ═══════════════════════════════════════════════════════════════════════════════
# PIPELINE WIRING
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Pipeline:
    """Every long-lived component of one running instance."""

    db_engine: AsyncEngine
    log: PartitionedLog
    http: httpx.AsyncClient
    metrics: MetricsCollector
    store: EventStore
    registry: WorkspaceRegistry
    matcher: WorkspaceMatcher
    workflows: WorkflowEngine
    ingestor: EventIngestor

    async def close(self) -> None:
        await self.log.close()
        await self.http.aclose()
        await self.db_engine.dispose()


def build_pipeline(
    cfg: Settings,
    metrics: MetricsCollector | None = None,
    log: PartitionedLog | None = None,
) -> Pipeline:
    """Construct the pipeline from settings; *log* replaces the Redis broker."""
    metrics = metrics or MetricsCollector()
    db_engine = create_engine(cfg.database_url, echo=cfg.db_echo)
    session_factory = create_session_factory(db_engine)

    if log is None:
        log = RedisStreamLog(
            cfg.broker_url,
            topic=cfg.topic,
            group=cfg.consumer_group,
            consumer=cfg.consumer_name,
            partitions=cfg.partitions,
            lease_ttl_s=cfg.lease_ttl_s,
        )
    http = httpx.AsyncClient(timeout=httpx.Timeout(cfg.action_timeout_s, connect=5.0))

    store = EventStore(session_factory)
    registry = WorkspaceRegistry(session_factory)
    matcher = WorkspaceMatcher(registry)
    runner = ActionRunner(EventPublisher(log), http, max_emit_depth=cfg.max_emit_depth)
    workflows = WorkflowEngine(
        session_factory,
        registry,
        runner,
        metrics,
        action_timeout_s=cfg.action_timeout_s,
        action_max_retries=cfg.action_max_retries,
        retry_delay_s=cfg.action_retry_delay_s,
        retry_max_delay_s=cfg.retry_max_delay_s,
    )
    ingestor = EventIngestor(
        log,
        store,
        matcher,
        workflows,
        metrics,
        max_retries=cfg.max_retries,
        retry_base_delay_s=cfg.retry_base_delay_s,
        retry_max_delay_s=cfg.retry_max_delay_s,
        fetch_batch_size=cfg.fetch_batch_size,
        fetch_block_ms=cfg.fetch_block_ms,
        assign_interval_s=cfg.lease_ttl_s / 3,
    )
    ingestor.register_default_handlers()

    return Pipeline(
        db_engine=db_engine,
        log=log,
        http=http,
        metrics=metrics,
        store=store,
        registry=registry,
        matcher=matcher,
        workflows=workflows,
        ingestor=ingestor,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# FASTAPI APP
# ═══════════════════════════════════════════════════════════════════════════════

def create_app(
    cfg: Settings | None = None,
    metrics: MetricsCollector | None = None,
    start_pipeline: bool = True,
) -> FastAPI:
    cfg = cfg or settings
    metrics = metrics or MetricsCollector()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("app_starting", env=cfg.env, topic=cfg.topic, group=cfg.consumer_group)
        if not start_pipeline:
            yield
            return

        pipeline = build_pipeline(cfg, metrics)
        app.state.pipeline = pipeline
        if cfg.env == "development":
            logger.info("database_initializing")
            await init_db(pipeline.db_engine)

        ingest_task = asyncio.create_task(pipeline.ingestor.run(), name="event-ingestor")
        try:
            yield
        finally:
            logger.info("app_shutting_down")
            pipeline.ingestor.stop()
            try:
                await asyncio.wait_for(ingest_task, timeout=_SHUTDOWN_GRACE_S)
            except asyncio.TimeoutError:
                logger.warning("ingestor_shutdown_timeout", grace_s=_SHUTDOWN_GRACE_S)
            await pipeline.close()

    app = FastAPI(
        title="EventID",
        version=__version__,
        description="Event-sourced compliance workspace automation",
        lifespan=lifespan,
    )
    app.state.metrics = metrics

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request) -> str:
        """Prometheus text exposition."""
        return await request.app.state.metrics.render_prometheus()

    @app.get("/metrics/json")
    async def metrics_json(request: Request) -> dict:
        """Counters and latency histograms (p50/p95/p99) as JSON."""
        return await request.app.state.metrics.snapshot()

    return app


def main() -> None:
    import uvicorn

    configure_logging(settings.log_level, settings.env)
    logger.info("starting_eventid", port=settings.metrics_port, consumer=settings.consumer_name)
    uvicorn.run(
        "eventid.app:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.metrics_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
