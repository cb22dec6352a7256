"""
Health Monitor — periodic probe loop over the pool's running VMs.

Each tick probes every running VM concurrently and feeds the outcome into
per-VM streak counters:

    failure streak >= unhealthy_threshold  → ERROR (once) + vm-unreachable alert
    success streak >= recovery_threshold   → ERROR cleared (ASSIGNED / AVAILABLE)

Control-plane disconnects on a reachable VM are tracked by a separate counter
and raise ``obs-disconnected`` without touching the VM's status.

Counters live in this process only; run one monitor per pool.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from health_monitor.alerts import AlertSink
from orchestrator.models.health import (
    Alert,
    AlertCategory,
    AlertLevel,
    HealthCheckResult,
    HealthCycleSummary,
    HealthStatus,
    VMHealthStatus,
    idle_stop_source_id,
    obs_disconnected_source_id,
    unreachable_source_id,
)
from orchestrator.models.vm import PoolConfig, ServiceProbe, VMRecord, VMStatus, utcnow
from orchestrator.services.config import Settings, get_settings
from orchestrator.services.events import EventBus, PoolEvent, PoolEventType
from resource_client.ec2_client import ResourceClient
from warm_pool.pool_manager import PoolManager

logger = structlog.get_logger()

PROBED_STATUSES = frozenset(
    {VMStatus.AVAILABLE, VMStatus.ASSIGNED, VMStatus.IN_USE, VMStatus.ERROR}
)


class HealthMonitorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    poll_interval_ms: int = Field(default=30000, ge=1000)
    request_timeout_ms: int = Field(default=5000, ge=100)
    service_port: int = Field(default=3003, ge=1, le=65535)
    unhealthy_threshold: int = Field(default=3, ge=1)
    recovery_threshold: int = Field(default=2, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings, pool_config: PoolConfig) -> "HealthMonitorConfig":
        return cls(
            poll_interval_ms=pool_config.health_check_interval_ms,
            request_timeout_ms=settings.health_request_timeout_ms,
            service_port=pool_config.service_port,
            unhealthy_threshold=settings.unhealthy_threshold,
            recovery_threshold=settings.recovery_threshold,
        )


class HealthMonitor:
    """Probes running VMs and drives ERROR transitions and alerts."""

    def __init__(
        self,
        pool_manager: PoolManager,
        resource_client: ResourceClient,
        alerts: AlertSink,
        settings: Optional[Settings] = None,
        events: Optional[EventBus] = None,
        config: Optional[HealthMonitorConfig] = None,
    ):
        self.pool = pool_manager
        self.aws = resource_client
        self.alerts = alerts
        self.events = events or pool_manager.events
        self.config = config or HealthMonitorConfig.from_settings(
            settings or get_settings(), pool_manager.config
        )
        # Pool config values last applied; the monitor follows changes to them
        self._followed = self._pool_settings(pool_manager.config)
        self._unsubscribe_config = None

        self._failures: dict[str, int] = {}
        self._successes: dict[str, int] = {}
        self._control_plane_failures: dict[str, int] = {}
        # vm_id -> {source_id: workload the alert was raised against}
        self._raised: dict[str, dict[str, Optional[str]]] = {}

        self._task: Optional[asyncio.Task] = None
        self._running = False

    # ── Loop ──────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        changes = self._pool_config_changes()
        if changes:
            self.config = self.config.model_copy(update=changes)
        if self._unsubscribe_config is None:
            self._unsubscribe_config = self.events.subscribe(
                self._on_pool_config_updated, types=[PoolEventType.CONFIG_UPDATED]
            )
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        await logger.ainfo(
            "Health monitor started",
            poll_interval_ms=self.config.poll_interval_ms,
            service_port=self.config.service_port,
            unhealthy_threshold=self.config.unhealthy_threshold,
            recovery_threshold=self.config.recovery_threshold,
        )

    async def shutdown(self) -> None:
        await self._stop_loop()
        if self._unsubscribe_config:
            self._unsubscribe_config()
            self._unsubscribe_config = None
        self._failures.clear()
        self._successes.clear()
        self._control_plane_failures.clear()
        self._raised.clear()
        await logger.ainfo("Health monitor stopped")

    async def _stop_loop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    @property
    def running(self) -> bool:
        return self._running

    @staticmethod
    def _pool_settings(pool_config: PoolConfig) -> dict[str, int]:
        return {
            "poll_interval_ms": pool_config.health_check_interval_ms,
            "service_port": pool_config.service_port,
        }

    def _pool_config_changes(self) -> dict[str, int]:
        """Pool config values that changed since they were last applied."""
        current = self._pool_settings(self.pool.config)
        changes = {k: v for k, v in current.items() if v != self._followed.get(k)}
        self._followed = current
        return changes

    async def _on_pool_config_updated(self, event: PoolEvent) -> None:
        changes = self._pool_config_changes()
        if changes:
            await self.update_config(**changes)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.run_health_checks()
            except asyncio.CancelledError:
                break
            except Exception as e:
                await logger.aerror("Health check cycle failed", error=str(e))
            try:
                await asyncio.sleep(self.config.poll_interval_ms / 1000)
            except asyncio.CancelledError:
                break

    async def run_health_checks(self) -> HealthCycleSummary:
        """Probe every running VM once, concurrently."""
        if not self.pool.is_initialized():
            return HealthCycleSummary()

        # Another controller may have changed the pool config through the store
        changes = self._pool_config_changes()
        if changes:
            self.config = self.config.model_copy(update=changes)
            await logger.ainfo("Health monitor following pool config", **changes)

        vms = [
            vm
            for vm in self.pool.get_pool_status().vms
            if vm.public_ip and vm.status in PROBED_STATUSES
        ]
        await self._forget_unprobed({vm.vm_id for vm in vms})

        results = await asyncio.gather(*(self.check_vm_health(vm.vm_id) for vm in vms))
        healthy = sum(1 for r in results if r.healthy)
        summary = HealthCycleSummary(
            total=len(results), healthy=healthy, unhealthy=len(results) - healthy, results=list(results)
        )

        await logger.adebug(
            "Health check cycle complete",
            total=summary.total,
            healthy=summary.healthy,
            unhealthy=summary.unhealthy,
        )
        await self.events.emit(
            PoolEventType.HEALTH_CHECK_COMPLETE,
            total=summary.total,
            healthy=summary.healthy,
            unhealthy=summary.unhealthy,
        )
        return summary

    async def _forget_unprobed(self, probed: set[str]) -> None:
        """Drop streaks and open alerts of VMs that left the probed set.

        A stopped or deleted VM starts from zero when it is probed again.
        """
        for counters in (self._failures, self._successes, self._control_plane_failures):
            for vm_id in [v for v in counters if v not in probed]:
                del counters[vm_id]

        for vm_id in [v for v in self._raised if v not in probed]:
            for source_id, workload_id in self._raised.pop(vm_id).items():
                try:
                    await self.alerts.resolve_by_source_id(workload_id, source_id, "system")
                except Exception as e:
                    await logger.awarning("Failed to resolve alert", source_id=source_id, error=str(e))

    # ── Single VM ─────────────────────────────────────────────────

    async def check_vm_health(self, vm_id: str) -> HealthCheckResult:
        """Probe one VM and apply the streak rules. Never raises."""
        vm = self.pool.get_vm(vm_id)
        if vm is None:
            return HealthCheckResult(vm_id=vm_id, healthy=False, error="VM not found")
        if not vm.public_ip:
            return HealthCheckResult(
                vm_id=vm_id, instance_id=vm.instance_id, healthy=False, error="VM has no public IP"
            )

        try:
            probe = await self.aws.check_instance_services(
                vm.public_ip, self.config.service_port, self.config.request_timeout_ms
            )
        except Exception as e:
            probe = ServiceProbe(error=str(e) or type(e).__name__)

        services = probe.to_health()
        try:
            await self.pool.update_vm_services(vm_id, services)
        except Exception as e:
            await logger.awarning("Failed to record VM health", vm_id=vm_id, error=str(e))

        try:
            if probe.reachable:
                await self._handle_healthy(vm, probe)
            else:
                await self._handle_unhealthy(vm, probe)
        except Exception as e:
            await logger.aerror("Failed to apply health result", vm_id=vm_id, error=str(e))

        result = HealthCheckResult(
            vm_id=vm_id,
            instance_id=vm.instance_id,
            public_ip=vm.public_ip,
            healthy=probe.reachable,
            services=services,
            response_time_ms=probe.response_time_ms,
            error=probe.error,
        )
        await self.events.emit(
            PoolEventType.VM_HEALTH_CHECKED,
            vm_id,
            healthy=result.healthy,
            control_plane_connected=services.control_plane_connected,
            response_time_ms=result.response_time_ms,
            error=result.error,
        )
        return result

    async def _handle_healthy(self, vm: VMRecord, probe: ServiceProbe) -> None:
        vm_id = vm.vm_id
        self._failures[vm_id] = 0
        successes = self._successes.get(vm_id, 0) + 1
        self._successes[vm_id] = successes

        await self._resolve(vm, unreachable_source_id(vm_id))

        if probe.control_plane_connected:
            self._control_plane_failures[vm_id] = 0
            await self._resolve(vm, obs_disconnected_source_id(vm_id))
        else:
            await self._handle_control_plane_down(vm)

        if vm.status == VMStatus.ERROR and successes >= self.config.recovery_threshold:
            try:
                new_status = await self.pool.clear_vm_error(vm_id)
            except Exception as e:
                await logger.aerror("Failed to clear VM error", vm_id=vm_id, error=str(e))
                return
            if new_status is not None:
                self._successes[vm_id] = 0
                await logger.ainfo(
                    "VM recovered",
                    vm_id=vm_id,
                    new_status=new_status.value,
                    successful_checks=successes,
                )

    async def _handle_control_plane_down(self, vm: VMRecord) -> None:
        vm_id = vm.vm_id
        count = self._control_plane_failures.get(vm_id, 0) + 1
        self._control_plane_failures[vm_id] = count
        if count < self.config.unhealthy_threshold:
            return
        if not vm.assigned_to or vm.status not in (VMStatus.ASSIGNED, VMStatus.IN_USE):
            return

        raised = await self._raise(
            vm,
            Alert(
                level=AlertLevel.CRITICAL,
                category=AlertCategory.OBS,
                title="OBS Disconnected",
                message=(
                    f"OBS WebSocket disconnected on VM {vm.name or vm_id}. "
                    "Streaming may be interrupted."
                ),
                source_id=obs_disconnected_source_id(vm_id),
                metadata={"vm_id": vm_id, "public_ip": vm.public_ip},
            ),
        )
        if raised:
            await self.events.emit(PoolEventType.OBS_DISCONNECTED, vm_id, public_ip=vm.public_ip)

    async def _handle_unhealthy(self, vm: VMRecord, probe: ServiceProbe) -> None:
        vm_id = vm.vm_id
        self._successes[vm_id] = 0
        failures = self._failures.get(vm_id, 0) + 1
        self._failures[vm_id] = failures
        reason = probe.error or "Service not responding"

        await logger.ainfo(
            "VM health check failed",
            vm_id=vm_id,
            failures=failures,
            threshold=self.config.unhealthy_threshold,
            error=reason,
        )
        if failures < self.config.unhealthy_threshold:
            return

        if vm.status != VMStatus.ERROR:
            try:
                changed = await self.pool.set_vm_error(vm_id, reason, expected_status=vm.status)
            except Exception as e:
                await logger.aerror("Failed to mark VM as error", vm_id=vm_id, error=str(e))
                changed = False
            if changed:
                await logger.awarning("VM marked as ERROR", vm_id=vm_id, reason=reason)
                await self.events.emit(
                    PoolEventType.VM_UNREACHABLE, vm_id, public_ip=vm.public_ip, reason=reason
                )

        if vm.assigned_to:
            await self._raise(
                vm,
                Alert(
                    level=AlertLevel.CRITICAL,
                    category=AlertCategory.VM,
                    title="VM Unreachable",
                    message=(
                        f"Production VM {vm.name or vm_id} is not responding. "
                        f"IP: {vm.public_ip}. Reason: {reason}"
                    ),
                    source_id=unreachable_source_id(vm_id),
                    metadata={"vm_id": vm_id, "public_ip": vm.public_ip, "reason": reason},
                ),
            )

    # ── Alerts ────────────────────────────────────────────────────

    async def _raise(self, vm: VMRecord, alert: Alert) -> bool:
        """Create ``alert`` unless one with the same source id is still open."""
        raised = self._raised.setdefault(vm.vm_id, {})
        if alert.source_id in raised:
            return False
        try:
            await self.alerts.create_alert(vm.assigned_to, alert)
        except Exception as e:
            await logger.aerror("Failed to create alert", source_id=alert.source_id, error=str(e))
            return False
        raised[alert.source_id] = vm.assigned_to
        return True

    async def _resolve(self, vm: VMRecord, source_id: str) -> None:
        raised = self._raised.get(vm.vm_id, {})
        workloads = set()
        if source_id in raised:
            workloads.add(raised[source_id])
        if vm.assigned_to:
            workloads.add(vm.assigned_to)

        for workload_id in workloads:
            try:
                await self.alerts.resolve_by_source_id(workload_id, source_id, "system")
            except Exception as e:
                await logger.awarning("Failed to resolve alert", source_id=source_id, error=str(e))
                return
        raised.pop(source_id, None)

    async def create_idle_timeout_alert(self, vm_id: str) -> bool:
        """Tell the assigned competition its VM was stopped for inactivity."""
        vm = self.pool.get_vm(vm_id)
        if vm is None or not vm.assigned_to:
            return False
        try:
            await self.alerts.create_alert(
                vm.assigned_to,
                Alert(
                    level=AlertLevel.INFO,
                    category=AlertCategory.VM,
                    title="VM Stopped (Idle)",
                    message=(
                        f"VM {vm.name or vm_id} was stopped due to idle timeout. "
                        "Click to restart if needed."
                    ),
                    source_id=idle_stop_source_id(vm_id),
                    metadata={
                        "vm_id": vm_id,
                        "public_ip": vm.public_ip,
                        "stopped_at": utcnow().isoformat(),
                    },
                ),
            )
        except Exception as e:
            await logger.aerror("Failed to create idle timeout alert", vm_id=vm_id, error=str(e))
            return False
        await logger.ainfo("Created idle timeout alert", vm_id=vm_id)
        return True

    # ── On demand / introspection ─────────────────────────────────

    async def force_health_check(self, vm_id: str) -> HealthCheckResult:
        await logger.ainfo("Forcing health check", vm_id=vm_id)
        return await self.check_vm_health(vm_id)

    async def force_health_check_all(self) -> HealthCycleSummary:
        await logger.ainfo("Forcing health check for all VMs")
        return await self.run_health_checks()

    def get_health_status(self) -> HealthStatus:
        vms = [
            VMHealthStatus(
                vm_id=vm.vm_id,
                status=vm.status,
                services=vm.services,
                last_health_check=vm.last_health_check,
                failure_count=self._failures.get(vm.vm_id, 0),
                success_count=self._successes.get(vm.vm_id, 0),
            )
            for vm in self.pool.get_pool_status().vms
        ]
        return HealthStatus(
            initialized=self._running,
            poll_interval_ms=self.config.poll_interval_ms,
            vms=vms,
        )

    async def update_config(self, **overrides) -> HealthMonitorConfig:
        """Apply new thresholds/intervals; restarts the loop if the interval changed."""
        previous = self.config
        self.config = HealthMonitorConfig(**{**previous.model_dump(), **overrides})
        await logger.ainfo("Health monitor config updated", **overrides)

        if self._running and self.config.poll_interval_ms != previous.poll_interval_ms:
            await self._stop_loop()
            await self.start()
        return self.config
