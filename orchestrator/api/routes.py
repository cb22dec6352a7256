"""
REST API routes for the fleet controller.

Endpoints:
    GET    /api/health                                — Liveness + pool counts
    GET    /api/admin/vm-pool                         — Full pool status
    GET    /api/admin/vm-pool/config                  — Current pool config
    PUT    /api/admin/vm-pool/config                  — Merge config overrides
    GET    /api/admin/vm-pool/health                  — Streaks and last checks
    POST   /api/admin/vm-pool/health/check            — Probe every running VM now
    POST   /api/admin/vm-pool/maintain                — Top up the warm pool
    POST   /api/admin/vm-pool/launch                  — Launch a new instance
    GET    /api/admin/vm-pool/{vm_id}                 — One VM record
    POST   /api/admin/vm-pool/{vm_id}/start           — Start a stopped VM
    POST   /api/admin/vm-pool/{vm_id}/stop            — Stop an unassigned VM
    POST   /api/admin/vm-pool/{vm_id}/health/check    — Probe one VM now
    POST   /api/competitions/{id}/vm/assign           — Assign a VM
    POST   /api/competitions/{id}/vm/release          — Release the VM
    POST   /api/competitions/{id}/vm/in-use           — Mark the VM in use
    GET    /api/competitions/{id}/vm                  — The competition's VM
    WS     /ws/pool                                   — Live pool events
"""

from __future__ import annotations

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from orchestrator.api.auth import admin_access, competition_access
from orchestrator.models.health import HealthCheckResult, HealthCycleSummary, HealthStatus
from orchestrator.models.vm import (
    Assignment,
    InvalidPoolConfigError,
    PoolConfig,
    PoolStatus,
    Release,
    TransitionAck,
    VMRecord,
    WarmPoolReport,
)
from orchestrator.services.events import PoolEvent
from warm_pool.errors import (
    InvalidTransition,
    NoVMAvailable,
    PoolCapacityExceeded,
    PoolNotInitialized,
    VMNotAvailable,
    VMNotFound,
    VMStartingRetryLater,
    WorkloadAlreadyAssigned,
)

logger = structlog.get_logger()

router = APIRouter()
admin = APIRouter(dependencies=[Depends(admin_access)])
competitions = APIRouter(dependencies=[Depends(competition_access)])

# These will be injected by the app factory
_pool_manager = None
_health_monitor = None
_ws_connections: list[WebSocket] = []


def set_dependencies(pool_manager, health_monitor=None):
    global _pool_manager, _health_monitor
    _pool_manager = pool_manager
    _health_monitor = health_monitor


class AssignRequest(BaseModel):
    preferred_vm_id: Optional[str] = None


class StopRequest(BaseModel):
    force: bool = False


class LaunchRequest(BaseModel):
    name: Optional[str] = None
    instance_type: Optional[str] = None


def _pool():
    if _pool_manager is None or not _pool_manager.is_initialized():
        raise HTTPException(status_code=503, detail="Pool manager not initialized")
    return _pool_manager


def _monitor():
    if _health_monitor is None:
        raise HTTPException(status_code=503, detail="Health monitor not running")
    return _health_monitor


def _http_error(error: Exception) -> HTTPException:
    """Map a pool error onto the matching HTTP status."""
    if isinstance(error, VMNotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, VMStartingRetryLater):
        return HTTPException(
            status_code=503,
            detail=str(error),
            headers={"Retry-After": str(error.retry_after_seconds)},
        )
    if isinstance(error, (NoVMAvailable, PoolNotInitialized)):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(
        error, (InvalidTransition, VMNotAvailable, WorkloadAlreadyAssigned, PoolCapacityExceeded)
    ):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, InvalidPoolConfigError):
        return HTTPException(status_code=422, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


_MAPPED_ERRORS = (
    VMNotFound,
    VMStartingRetryLater,
    NoVMAvailable,
    PoolNotInitialized,
    InvalidTransition,
    VMNotAvailable,
    WorkloadAlreadyAssigned,
    PoolCapacityExceeded,
    InvalidPoolConfigError,
)


# ── Health check ──────────────────────────────────────────────────


@router.get("/api/health")
async def health_check():
    """Liveness check; never requires auth."""
    initialized = _pool_manager is not None and _pool_manager.is_initialized()
    counts = _pool_manager.get_pool_status().counts if initialized else None
    return {
        "status": "healthy" if initialized else "starting",
        "pool": counts.model_dump() if counts else None,
        "health_monitor_running": bool(_health_monitor and _health_monitor.running),
    }


# ── Pool admin ────────────────────────────────────────────────────


@admin.get("/api/admin/vm-pool", response_model=PoolStatus)
async def pool_status():
    return _pool().get_pool_status()


@admin.get("/api/admin/vm-pool/config", response_model=PoolConfig)
async def get_pool_config():
    return _pool().config


@admin.put("/api/admin/vm-pool/config", response_model=PoolConfig)
async def update_pool_config(overrides: dict[str, Any] = Body(...)):
    """Merge the given keys into the pool config. Unknown keys are rejected."""
    try:
        return await _pool().update_pool_config(overrides)
    except _MAPPED_ERRORS as e:
        raise _http_error(e)


@admin.get("/api/admin/vm-pool/health", response_model=HealthStatus)
async def pool_health():
    return _monitor().get_health_status()


@admin.post("/api/admin/vm-pool/health/check", response_model=HealthCycleSummary)
async def check_all_vms():
    _pool()
    return await _monitor().force_health_check_all()


@admin.post("/api/admin/vm-pool/maintain", response_model=WarmPoolReport)
async def maintain_pool():
    try:
        return await _pool().ensure_min_warm_vms()
    except _MAPPED_ERRORS as e:
        raise _http_error(e)


@admin.post("/api/admin/vm-pool/launch", response_model=TransitionAck, status_code=202)
async def launch_vm(body: Optional[LaunchRequest] = None):
    body = body or LaunchRequest()
    try:
        return await _pool().launch_vm(name=body.name, instance_type=body.instance_type)
    except _MAPPED_ERRORS as e:
        raise _http_error(e)


@admin.get("/api/admin/vm-pool/{vm_id}", response_model=VMRecord)
async def get_vm(vm_id: str):
    vm = _pool().get_vm(vm_id)
    if vm is None:
        raise HTTPException(status_code=404, detail=f"VM {vm_id} not found")
    return vm


@admin.post("/api/admin/vm-pool/{vm_id}/start", response_model=TransitionAck, status_code=202)
async def start_vm(vm_id: str):
    try:
        return await _pool().start_vm(vm_id)
    except _MAPPED_ERRORS as e:
        raise _http_error(e)


@admin.post("/api/admin/vm-pool/{vm_id}/stop", response_model=TransitionAck, status_code=202)
async def stop_vm(vm_id: str, body: Optional[StopRequest] = None):
    body = body or StopRequest()
    try:
        return await _pool().stop_vm(vm_id, force=body.force)
    except _MAPPED_ERRORS as e:
        raise _http_error(e)


@admin.post("/api/admin/vm-pool/{vm_id}/health/check", response_model=HealthCheckResult)
async def check_vm(vm_id: str):
    if _pool().get_vm(vm_id) is None:
        raise HTTPException(status_code=404, detail=f"VM {vm_id} not found")
    return await _monitor().force_health_check(vm_id)


# ── Competition assignment ────────────────────────────────────────


@competitions.post("/api/competitions/{competition_id}/vm/assign", response_model=Assignment)
async def assign_vm(competition_id: str, body: Optional[AssignRequest] = None):
    body = body or AssignRequest()
    try:
        return await _pool().assign_vm(competition_id, preferred_vm_id=body.preferred_vm_id)
    except _MAPPED_ERRORS as e:
        raise _http_error(e)


@competitions.post("/api/competitions/{competition_id}/vm/release", response_model=Release)
async def release_vm(competition_id: str):
    try:
        return await _pool().release_vm(competition_id)
    except _MAPPED_ERRORS as e:
        raise _http_error(e)


@competitions.post("/api/competitions/{competition_id}/vm/in-use", response_model=VMRecord)
async def mark_vm_in_use(competition_id: str):
    pool = _pool()
    vm = pool.get_vm_for_competition(competition_id)
    if vm is None:
        raise HTTPException(status_code=404, detail=f"No VM assigned to competition {competition_id}")
    try:
        return await pool.mark_vm_in_use(vm.vm_id)
    except _MAPPED_ERRORS as e:
        raise _http_error(e)


@competitions.get("/api/competitions/{competition_id}/vm", response_model=VMRecord)
async def get_competition_vm(competition_id: str):
    vm = _pool().get_vm_for_competition(competition_id)
    if vm is None:
        raise HTTPException(status_code=404, detail=f"No VM assigned to competition {competition_id}")
    return vm


router.include_router(admin)
router.include_router(competitions)


# ── WebSocket for real-time updates ──────────────────────────────


@router.websocket("/ws/pool")
async def pool_websocket(websocket: WebSocket):
    """Streams every pool event as JSON."""
    await websocket.accept()
    _ws_connections.append(websocket)

    try:
        while True:
            # Keep connection alive, client can send pings
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        if websocket in _ws_connections:
            _ws_connections.remove(websocket)


async def broadcast_pool_event(event: PoolEvent) -> None:
    """Send ``event`` to every connected client, dropping dead connections."""
    payload = event.model_dump(mode="json")
    for ws in list(_ws_connections):
        try:
            await ws.send_json(payload)
        except Exception as e:
            await logger.adebug("Dropping WebSocket client", error=str(e))
            if ws in _ws_connections:
                _ws_connections.remove(ws)
