"""VM models: pool records, provider views, pool configuration and probe results."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VMStatus(str, Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    IN_USE = "in_use"
    STOPPED = "stopped"
    STARTING = "starting"
    STOPPING = "stopping"
    ERROR = "error"


# Statuses that count toward the warm pool
WARM_STATUSES = frozenset({VMStatus.AVAILABLE, VMStatus.ASSIGNED, VMStatus.IN_USE})
# Statuses in which a VM may carry an assignment (ERROR keeps it for recovery)
ASSIGNABLE_HOLD_STATUSES = frozenset({VMStatus.ASSIGNED, VMStatus.IN_USE, VMStatus.ERROR})


class ServiceHealth(BaseModel):
    """Health snapshot reported by a VM's status endpoint."""

    reachable: bool = False
    control_plane_connected: bool = False
    uptime: Optional[float] = None
    version: Optional[str] = None
    error: Optional[str] = None


class ServiceProbe(ServiceHealth):
    """Result of a single HTTP probe, including how long it took."""

    response_time_ms: float = 0.0

    def to_health(self) -> ServiceHealth:
        return ServiceHealth(**self.model_dump(exclude={"response_time_ms"}))


class InstanceInfo(BaseModel):
    """Normalized view of a cloud instance as reported by the provider."""

    instance_id: str
    name: str
    state: str = "unknown"
    state_code: Optional[int] = None
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    public_dns: Optional[str] = None
    private_dns: Optional[str] = None
    instance_type: Optional[str] = None
    launch_time: Optional[datetime] = None
    availability_zone: Optional[str] = None
    subnet_id: Optional[str] = None
    vpc_id: Optional[str] = None
    tags: dict[str, str] = Field(default_factory=dict)


class InstanceStateChange(BaseModel):
    """Provider acknowledgement of a state-change call for one instance."""

    instance_id: str
    previous_state: Optional[str] = None
    current_state: Optional[str] = None


class VMRecord(BaseModel):
    """A single VM in the pool, keyed by a pool-local ``vm_id``."""

    vm_id: str
    instance_id: str
    name: str
    status: VMStatus
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    instance_type: Optional[str] = None
    availability_zone: Optional[str] = None
    launch_time: Optional[datetime] = None
    tags: dict[str, str] = Field(default_factory=dict)
    assigned_to: Optional[str] = None
    services: Optional[ServiceHealth] = None
    last_health_check: Optional[datetime] = None
    last_state_change: datetime = Field(default_factory=utcnow)
    error_reason: Optional[str] = None

    @property
    def address(self) -> Optional[str]:
        return self.public_ip

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def vm_id_for_instance(instance_id: str) -> str:
    """Derive a short, stable pool id from a provider instance id."""
    return f"vm-{instance_id[-8:]}"


def default_vm_name(instance_id: str) -> str:
    return f"VM-{instance_id[-6:]}"


class InvalidPoolConfigError(ValueError):
    """Raised by merge_pool_config for unknown keys or out-of-range values."""


class PoolConfig(BaseModel):
    """Runtime pool configuration (persisted at ``pool/config``)."""

    model_config = ConfigDict(extra="forbid")

    warm_count: int = Field(default=2, ge=0)
    cold_count: int = Field(default=3, ge=0)
    max_instances: int = Field(default=5, ge=1)
    health_check_interval_ms: int = Field(default=30000, ge=1000)
    idle_timeout_minutes: int = Field(default=60, ge=1)
    service_port: int = Field(default=3003, ge=1, le=65535)

    @model_validator(mode="after")
    def _check_counts(self) -> "PoolConfig":
        if self.warm_count > self.max_instances:
            raise ValueError(
                f"warm_count ({self.warm_count}) cannot exceed max_instances ({self.max_instances})"
            )
        return self


def merge_pool_config(base: PoolConfig, overrides: dict[str, Any]) -> PoolConfig:
    """Apply ``overrides`` on top of ``base``, rejecting unknown keys."""
    unknown = sorted(set(overrides) - set(PoolConfig.model_fields))
    if unknown:
        raise InvalidPoolConfigError(f"Unknown pool config keys: {', '.join(unknown)}")
    try:
        return PoolConfig(**{**base.model_dump(), **overrides})
    except ValidationError as e:
        raise InvalidPoolConfigError(str(e)) from e


class PoolCounts(BaseModel):
    total: int = 0
    available: int = 0
    assigned: int = 0
    in_use: int = 0
    stopped: int = 0
    starting: int = 0
    stopping: int = 0
    error: int = 0

    @property
    def warm(self) -> int:
        return self.available + self.assigned + self.in_use


class PoolStatus(BaseModel):
    """Snapshot of the whole pool."""

    config: PoolConfig
    counts: PoolCounts
    vms: list[VMRecord] = Field(default_factory=list)
    initialized: bool = False


class Assignment(BaseModel):
    vm_id: str
    instance_id: str
    public_ip: Optional[str] = None
    vm_address: Optional[str] = None
    competition_id: str


class Release(BaseModel):
    competition_id: str
    vm_id: Optional[str] = None
    instance_id: Optional[str] = None
    message: Optional[str] = None


class TransitionAck(BaseModel):
    """Acknowledgement that a start/stop was initiated (not completed)."""

    vm_id: str
    instance_id: str
    status: VMStatus
    message: str


class WarmStartOutcome(BaseModel):
    vm_id: str
    success: bool
    error: Optional[str] = None


class WarmPoolReport(BaseModel):
    warm_vms_before: int
    warm_vms_target: int
    started_count: int = 0
    results: list[WarmStartOutcome] = Field(default_factory=list)
