"""
Typed publish/subscribe for pool lifecycle events.

Producers (pool manager, health monitor) publish ``PoolEvent`` objects;
consumers (WebSocket broadcast, dashboards, tests) subscribe with an optional
set of event types. A failing handler is logged and never affects the
publisher or the other handlers.
"""

from __future__ import annotations

import inspect
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Optional

import structlog
from pydantic import BaseModel, Field

from orchestrator.models.vm import utcnow

logger = structlog.get_logger()


class PoolEventType(str, Enum):
    POOL_INITIALIZED = "pool_initialized"
    POOL_SYNCED = "pool_synced"
    POOL_MAINTENANCE = "pool_maintenance"
    CONFIG_UPDATED = "config_updated"
    VM_LAUNCHED = "vm_launched"
    VM_ASSIGNED = "vm_assigned"
    VM_RELEASED = "vm_released"
    VM_IN_USE = "vm_in_use"
    VM_STARTING = "vm_starting"
    VM_READY = "vm_ready"
    VM_STOPPING = "vm_stopping"
    VM_STOPPED = "vm_stopped"
    VM_ERROR = "vm_error"
    VM_RECOVERED = "vm_recovered"
    VM_UNREACHABLE = "vm_unreachable"
    OBS_DISCONNECTED = "obs_disconnected"
    VM_HEALTH_CHECKED = "vm_health_checked"
    HEALTH_CHECK_COMPLETE = "health_check_complete"


class PoolEvent(BaseModel):
    type: PoolEventType
    vm_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


Handler = Callable[[PoolEvent], Any]


class EventBus:
    """In-process event fan-out. Handlers may be plain functions or coroutines."""

    def __init__(self):
        self._subscribers: list[tuple[Handler, Optional[frozenset[PoolEventType]]]] = []

    def subscribe(
        self, handler: Handler, types: Optional[Iterable[PoolEventType]] = None
    ) -> Callable[[], None]:
        """Register ``handler``; returns a callable that removes it again."""
        entry = (handler, frozenset(types) if types is not None else None)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def publish(self, event: PoolEvent) -> None:
        for handler, types in list(self._subscribers):
            if types is not None and event.type not in types:
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                await logger.awarning(
                    "Event handler failed", event_type=event.type.value, error=str(e)
                )

    async def emit(self, event_type: PoolEventType, vm_id: Optional[str] = None, **data) -> None:
        await self.publish(PoolEvent(type=event_type, vm_id=vm_id, data=data))
