"""Health-check results and alert payloads."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from orchestrator.models.vm import ServiceHealth, VMStatus, utcnow


class AlertLevel(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class AlertCategory(str, Enum):
    VM = "vm"
    SERVICE = "service"
    OBS = "obs"


class Alert(BaseModel):
    """Payload handed to the alert collaborator."""

    level: AlertLevel
    category: AlertCategory
    title: str
    message: str
    source_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)


def unreachable_source_id(vm_id: str) -> str:
    return f"vm-unreachable-{vm_id}"


def obs_disconnected_source_id(vm_id: str) -> str:
    return f"obs-disconnected-{vm_id}"


def idle_stop_source_id(vm_id: str) -> str:
    return f"vm-idle-stop-{vm_id}"


class HealthCheckResult(BaseModel):
    vm_id: str
    instance_id: Optional[str] = None
    public_ip: Optional[str] = None
    healthy: bool
    services: Optional[ServiceHealth] = None
    response_time_ms: Optional[float] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class HealthCycleSummary(BaseModel):
    total: int = 0
    healthy: int = 0
    unhealthy: int = 0
    results: list[HealthCheckResult] = Field(default_factory=list)


class VMHealthStatus(BaseModel):
    vm_id: str
    status: VMStatus
    services: Optional[ServiceHealth] = None
    last_health_check: Optional[datetime] = None
    failure_count: int = 0
    success_count: int = 0


class HealthStatus(BaseModel):
    initialized: bool
    poll_interval_ms: Optional[int] = None
    vms: list[VMHealthStatus] = Field(default_factory=list)
