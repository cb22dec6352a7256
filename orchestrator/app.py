"""
Main FastAPI application — the entry point for the fleet controller.

Wires together:
- Shared pool store (in-memory or Redis)
- Resource client (EC2 + VM status probes)
- Pool manager (reconciliation, assignment, start/stop)
- Health monitor (probe loop, ERROR transitions, alerts)
- REST API routes and the /ws/pool event stream
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from health_monitor.alerts import AlertSink, LogAlertSink, SlackAlertSink
from health_monitor.monitor import HealthMonitor
from orchestrator.api.routes import broadcast_pool_event, router, set_dependencies
from orchestrator.services.config import Settings, configure_logging, get_settings
from orchestrator.services.events import EventBus
from resource_client.ec2_client import ResourceClient
from warm_pool.pool_manager import PoolManager
from warm_pool.store import InMemoryPoolStore, PoolStore, RedisPoolStore

logger = structlog.get_logger()


def build_store(settings: Settings) -> PoolStore:
    if settings.store_backend == "redis":
        return RedisPoolStore(settings.redis_url)
    if settings.store_backend != "memory":
        raise ValueError(f"Unknown store backend: {settings.store_backend}")
    return InMemoryPoolStore()


def build_alert_sink(settings: Settings) -> AlertSink:
    if settings.slack_bot_token and settings.slack_alert_channel:
        return SlackAlertSink(token=settings.slack_bot_token, channel=settings.slack_alert_channel)
    return LogAlertSink()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    settings = get_settings()
    configure_logging(settings.log_level)

    store = build_store(settings)
    resource_client = ResourceClient(settings)
    events = EventBus()
    pool_manager = PoolManager(resource_client, store, settings=settings, events=events)
    health_monitor: Optional[HealthMonitor] = None

    unsubscribe = events.subscribe(broadcast_pool_event)

    await pool_manager.initialize_pool()

    if settings.health_monitor_enabled:
        health_monitor = HealthMonitor(
            pool_manager,
            resource_client,
            build_alert_sink(settings),
            settings=settings,
            events=events,
        )
        await health_monitor.start()

    set_dependencies(pool_manager, health_monitor)
    app.state.pool_manager = pool_manager
    app.state.health_monitor = health_monitor

    # ── Production safety checks ─────────────────────────────────
    for w in settings.validate_production_settings():
        await logger.awarning(w)

    await logger.ainfo(
        "Fleet controller started",
        env=settings.env,
        store=settings.store_backend,
        region=settings.aws_region,
        vm_count=pool_manager.get_pool_status().counts.total,
        health_monitor=health_monitor is not None,
    )

    yield

    # Shutdown
    if health_monitor:
        await health_monitor.shutdown()
    await pool_manager.shutdown()
    unsubscribe()
    set_dependencies(None, None)
    await resource_client.close()
    await store.close()
    await logger.ainfo("Fleet controller shut down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="showfleet",
        description="Warm-pool VM fleet controller for live-production workloads",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS: override allowed origins with FLEET_CORS_ORIGINS
    allowed_origins = os.getenv(
        "FLEET_CORS_ORIGINS", "http://localhost:3000,http://localhost:8000"
    ).split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.include_router(router)
    return app


# For running with uvicorn directly
app = create_app()


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("orchestrator.app:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
