"""
Pool Manager — owns the VM pool state and the assignment/release protocol.

The shared store is the source of truth; ``self._vms`` is a read cache fed by
the store's live subscription (and by our own writes, so a caller always
reads what it just wrote).

Lifecycle:

    (discovered) ──► AVAILABLE ──assign──► ASSIGNED ──in use──► IN_USE
                        ▲  │                   │                  │
                        │  └──────◄── release ─┴──────────────────┘
                        │
        STOPPED ─start─► STARTING ─converged─┘        (or ERROR)
           ▲
           └── STOPPING ◄─stop── AVAILABLE / ERROR

Start/stop return as soon as the provider acknowledged the call; a watcher
task registered in ``ConvergenceTasks`` finalizes the transition.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog
from pydantic import ValidationError
from pydantic_core import to_jsonable_python

from orchestrator.models.vm import (
    ASSIGNABLE_HOLD_STATUSES,
    Assignment,
    InstanceInfo,
    InvalidPoolConfigError,
    PoolConfig,
    PoolCounts,
    PoolStatus,
    Release,
    ServiceHealth,
    TransitionAck,
    VMRecord,
    VMStatus,
    WarmPoolReport,
    WarmStartOutcome,
    default_vm_name,
    merge_pool_config,
    utcnow,
    vm_id_for_instance,
)
from orchestrator.services.config import Settings, get_settings
from orchestrator.services.events import EventBus, PoolEventType
from resource_client.ec2_client import ResourceClient
from warm_pool.errors import (
    InvalidTransition,
    NoVMAvailable,
    PoolCapacityExceeded,
    PoolError,
    PoolNotInitialized,
    VMNotAvailable,
    VMNotFound,
    VMStartingRetryLater,
    WorkloadAlreadyAssigned,
)
from warm_pool.store import PoolStore
from warm_pool.tasks import ConvergenceTasks

logger = structlog.get_logger()

# How many times assign_vm re-selects after losing a compare-and-swap race
ASSIGN_ATTEMPTS = 3

# Same bound for reconcile re-deriving a record another writer changed
RECONCILE_ATTEMPTS = 3

# Reconcile writes these from the provider unconditionally
PROVIDER_FIELDS = {
    "instance_id",
    "name",
    "public_ip",
    "private_ip",
    "instance_type",
    "availability_zone",
    "launch_time",
    "tags",
}
# and these only through a compare-and-swap on status and assignment
LIFECYCLE_FIELDS = ("status", "assigned_to", "services", "error_reason", "last_state_change")


class PoolManager:
    """Manages the lifecycle and assignment of VMs in the pool."""

    def __init__(
        self,
        resource_client: ResourceClient,
        store: PoolStore,
        settings: Optional[Settings] = None,
        events: Optional[EventBus] = None,
        tasks: Optional[ConvergenceTasks] = None,
    ):
        self.settings = settings or get_settings()
        self.aws = resource_client
        self.store = store
        self.events = events or EventBus()
        self.tasks = tasks or ConvergenceTasks()

        self._config = PoolConfig(service_port=self.settings.service_port)
        self._vms: dict[str, VMRecord] = {}
        self._initialized = False
        self._unsubscribe = None
        self._maintenance_task: Optional[asyncio.Task] = None
        self._running = False

    # ── Startup / shutdown ────────────────────────────────────────

    async def initialize_pool(self) -> PoolStatus:
        """Load config, reconcile with the provider, subscribe to live updates."""
        if self._initialized:
            await logger.ainfo("Pool manager already initialized")
            return self.get_pool_status()

        await logger.ainfo("Initializing pool")
        try:
            await self._load_pool_config()
            await self.reconcile()
            self._unsubscribe = await self.store.subscribe(
                self._on_vm_change, self._on_config_change
            )
        except Exception as e:
            await logger.aerror("Failed to initialize pool", error=str(e))
            raise

        self._initialized = True
        await self._resume_orphaned_transitions()

        interval = self.settings.pool_maintenance_interval_seconds
        if interval > 0:
            self._running = True
            self._maintenance_task = asyncio.create_task(self._maintenance_loop(interval))

        await logger.ainfo("Pool initialized", vm_count=len(self._vms))
        await self.events.emit(
            PoolEventType.POOL_INITIALIZED,
            config=self._config.model_dump(),
            vm_count=len(self._vms),
        )
        return self.get_pool_status()

    async def shutdown(self) -> None:
        await logger.ainfo("Shutting down pool manager")
        self._running = False
        if self._maintenance_task:
            self._maintenance_task.cancel()
            self._maintenance_task = None
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        await self.tasks.cancel_all()
        self._vms.clear()
        self._initialized = False

    def is_initialized(self) -> bool:
        return self._initialized

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise PoolNotInitialized()

    async def _load_pool_config(self) -> None:
        try:
            stored = await self.store.get_config()
        except Exception as e:
            await logger.aerror("Failed to load pool config, using defaults", error=str(e))
            return

        if stored:
            try:
                self._config = merge_pool_config(PoolConfig(), stored)
                await logger.ainfo("Loaded pool config from store")
            except InvalidPoolConfigError as e:
                await logger.awarning("Stored pool config is invalid, using defaults", error=str(e))
        else:
            await self.store.set_config(self._config.model_dump())
            await logger.ainfo("Created default pool config in store")

    # ── Live subscription ─────────────────────────────────────────

    def _on_vm_change(self, vm_id: str, data: Optional[dict]) -> None:
        if data is None:
            self._vms.pop(vm_id, None)
            return
        try:
            self._vms[vm_id] = VMRecord.model_validate(data)
        except ValidationError as e:
            logger.warning("Ignoring invalid VM record from store", vm_id=vm_id, error=str(e))

    def _on_config_change(self, data: dict) -> None:
        try:
            self._config = merge_pool_config(PoolConfig(), data)
        except InvalidPoolConfigError as e:
            logger.warning("Ignoring invalid pool config from store", error=str(e))

    # ── Reconciliation ────────────────────────────────────────────

    async def reconcile(self) -> int:
        """Bring the store in line with the instances the provider reports.

        Returns the number of VM records after reconciliation.
        """
        instances = await self.aws.describe_instances(tags=self.settings.ownership_tags)
        await logger.ainfo("Reconciling pool", instance_count=len(instances))

        existing: dict[str, VMRecord] = {}
        for vm_id, data in (await self.store.get_vms()).items():
            try:
                existing[vm_id] = VMRecord.model_validate(data)
            except ValidationError as e:
                await logger.awarning("Dropping unreadable VM record", vm_id=vm_id, error=str(e))
                await self.store.delete_vm(vm_id)
        by_instance = {vm.instance_id: vm for vm in existing.values()}

        seen: set[str] = set()
        for instance in instances:
            if instance.state == "terminated":
                continue
            seen.add(instance.instance_id)
            prior = by_instance.get(instance.instance_id)
            if prior is None:
                vm_id = vm_id_for_instance(instance.instance_id)
                record = self._record_from_instance(vm_id, instance, None)
                await self.store.put_vm(vm_id, record.to_store())
                self._vms[vm_id] = record
            else:
                await self._reconcile_record(prior, instance)

        for vm_id, vm in existing.items():
            if vm.instance_id not in seen:
                await logger.ainfo(
                    "Removing VM whose instance no longer exists",
                    vm_id=vm_id,
                    instance_id=vm.instance_id,
                )
                await self.store.delete_vm(vm_id)
                if vm.assigned_to:
                    await self.store.set_workload_address(vm.assigned_to, None)
        for vm_id in [v for v, vm in self._vms.items() if vm.instance_id not in seen]:
            self._vms.pop(vm_id, None)

        await self.events.emit(PoolEventType.POOL_SYNCED, vm_count=len(self._vms))
        return len(self._vms)

    async def _reconcile_record(self, prior: VMRecord, instance: InstanceInfo) -> None:
        """Apply one instance's provider state to an existing record.

        Lifecycle fields are only written if the record still holds the
        status and assignment they were derived from; a concurrent write
        (an assignment, a watcher) makes us re-read and derive again.
        """
        vm_id = prior.vm_id
        for _ in range(RECONCILE_ATTEMPTS):
            record = self._record_from_instance(vm_id, instance, prior)
            fields = record.model_dump(mode="json", include=PROVIDER_FIELDS)
            for key in LIFECYCLE_FIELDS:
                value = getattr(record, key)
                if value != getattr(prior, key):
                    fields[key] = to_jsonable_python(value)

            applied = await self.store.compare_and_update(
                vm_id,
                {"status": prior.status.value, "assigned_to": prior.assigned_to},
                fields,
            )
            if applied:
                if prior.assigned_to and record.assigned_to is None:
                    await self.store.set_workload_address(prior.assigned_to, None)
                self._vms[vm_id] = VMRecord.model_validate({**prior.to_store(), **fields})
                return

            latest = await self.store.get_vm(vm_id)
            if latest is None:
                self._vms.pop(vm_id, None)
                return
            prior = VMRecord.model_validate(latest)

        await logger.awarning("VM kept changing during reconcile, leaving it as is", vm_id=vm_id)
        self._vms[vm_id] = prior

    def _derive_status(self, instance: InstanceInfo, prior: Optional[VMRecord]) -> VMStatus:
        # A watcher in this process still owns the transition
        if (
            prior
            and prior.status in (VMStatus.STARTING, VMStatus.STOPPING)
            and self.tasks.is_active(prior.vm_id)
        ):
            return prior.status

        state = instance.state
        if state == "running":
            if prior and prior.status == VMStatus.ERROR:
                return VMStatus.ERROR
            if prior and prior.assigned_to:
                return VMStatus.IN_USE if prior.status == VMStatus.IN_USE else VMStatus.ASSIGNED
            return VMStatus.AVAILABLE
        if state == "stopped":
            return VMStatus.STOPPED
        if state == "pending":
            return VMStatus.STARTING
        if state in ("stopping", "shutting-down"):
            return VMStatus.STOPPING
        return prior.status if prior else VMStatus.ERROR

    def _record_from_instance(
        self, vm_id: str, instance: InstanceInfo, prior: Optional[VMRecord]
    ) -> VMRecord:
        status = self._derive_status(instance, prior)
        stopped = status == VMStatus.STOPPED
        name = instance.name
        if name == instance.instance_id:
            name = prior.name if prior else default_vm_name(instance.instance_id)

        return VMRecord(
            vm_id=vm_id,
            instance_id=instance.instance_id,
            name=name,
            status=status,
            public_ip=None if stopped else instance.public_ip,
            private_ip=None if stopped else instance.private_ip,
            instance_type=instance.instance_type,
            availability_zone=instance.availability_zone,
            launch_time=instance.launch_time,
            tags=instance.tags,
            assigned_to=prior.assigned_to if prior and status in ASSIGNABLE_HOLD_STATUSES else None,
            services=prior.services if prior and not stopped else None,
            last_health_check=prior.last_health_check if prior else None,
            last_state_change=(
                prior.last_state_change if prior and prior.status == status else utcnow()
            ),
            error_reason=prior.error_reason if prior and status == VMStatus.ERROR else None,
        )

    async def _resume_orphaned_transitions(self) -> None:
        """Re-attach watchers to transient records left behind by a previous process."""
        for vm in list(self._vms.values()):
            if self.tasks.is_active(vm.vm_id):
                continue
            if vm.status == VMStatus.STARTING:
                await logger.ainfo("Resuming start watcher", vm_id=vm.vm_id)
                self.tasks.spawn(vm.vm_id, self._converge_started(vm.vm_id, vm.instance_id))
            elif vm.status == VMStatus.STOPPING:
                await logger.ainfo("Resuming stop watcher", vm_id=vm.vm_id)
                self.tasks.spawn(vm.vm_id, self._converge_stopped(vm.vm_id, vm.instance_id))

    async def _maintenance_loop(self, interval: int) -> None:
        """Periodically reconcile and top up the warm pool."""
        while self._running:
            try:
                await asyncio.sleep(interval)
                await self.reconcile()
                await self.ensure_min_warm_vms()
            except asyncio.CancelledError:
                break
            except Exception as e:
                await logger.aerror("Pool maintenance error", error=str(e))

    # ── Store writes ──────────────────────────────────────────────

    async def _write(
        self, vm_id: str, fields: dict[str, Any], expected: Optional[dict[str, Any]] = None
    ) -> bool:
        payload = to_jsonable_python(fields)
        if expected is None:
            applied = await self.store.update_vm(vm_id, payload)
        else:
            applied = await self.store.compare_and_update(
                vm_id, to_jsonable_python(expected), payload
            )
        cached = self._vms.get(vm_id)
        if applied and cached is not None:
            self._vms[vm_id] = VMRecord.model_validate({**cached.to_store(), **payload})
        return applied

    async def _safe_write(self, vm_id: str, fields: dict[str, Any], **expected) -> bool:
        """Write from a background watcher; store failures are logged, not raised."""
        try:
            return await self._write(vm_id, fields, expected or None)
        except Exception as e:
            await logger.aerror("Failed to write VM state", vm_id=vm_id, error=str(e))
            return False

    def _get_or_raise(self, vm_id: str) -> VMRecord:
        vm = self._vms.get(vm_id)
        if vm is None:
            raise VMNotFound(vm_id)
        return vm

    # ── Assignment protocol ───────────────────────────────────────

    async def assign_vm(self, workload_id: str, preferred_vm_id: Optional[str] = None) -> Assignment:
        """Hand an AVAILABLE VM to a competition.

        Never blocks on a cold boot: if only stopped VMs remain, one is started
        and the caller gets ``VMStartingRetryLater``.
        """
        self._require_initialized()
        await logger.ainfo("Assigning VM", competition_id=workload_id, preferred=preferred_vm_id)

        current = self.get_vm_for_competition(workload_id)
        if current:
            if preferred_vm_id in (None, current.vm_id):
                return self._assignment(current, workload_id)
            raise WorkloadAlreadyAssigned(workload_id, current.vm_id)

        for _ in range(ASSIGN_ATTEMPTS):
            vm = await self._select_vm(preferred_vm_id)
            assigned = await self._write(
                vm.vm_id,
                {
                    "status": VMStatus.ASSIGNED,
                    "assigned_to": workload_id,
                    "last_state_change": utcnow(),
                },
                expected={"status": VMStatus.AVAILABLE, "assigned_to": None},
            )
            if assigned:
                break
            await logger.awarning("Lost assignment race", vm_id=vm.vm_id, competition_id=workload_id)
            if preferred_vm_id:
                latest = self._vms.get(vm.vm_id)
                raise VMNotAvailable(vm.vm_id, latest.status.value if latest else "unknown")
            # The store moved on; make sure the cache does not offer the same VM again
            if self._vms.get(vm.vm_id) and self._vms[vm.vm_id].status == VMStatus.AVAILABLE:
                fresh = await self.store.get_vm(vm.vm_id)
                self._on_vm_change(vm.vm_id, fresh)
        else:
            raise NoVMAvailable()

        vm = self._vms[vm.vm_id]
        result = self._assignment(vm, workload_id)
        if result.vm_address:
            await self.store.set_workload_address(workload_id, result.vm_address)

        await logger.ainfo("Assigned VM", vm_id=vm.vm_id, competition_id=workload_id)
        await self.events.emit(
            PoolEventType.VM_ASSIGNED, vm.vm_id, **result.model_dump(exclude={"vm_id"})
        )
        return result

    async def _select_vm(self, preferred_vm_id: Optional[str]) -> VMRecord:
        if preferred_vm_id:
            vm = self._get_or_raise(preferred_vm_id)
            if vm.status != VMStatus.AVAILABLE:
                raise VMNotAvailable(preferred_vm_id, vm.status.value)
            return vm

        vm = self.get_available_vm()
        if vm:
            return vm

        starting = self.get_vms_by_status(VMStatus.STARTING)
        if starting:
            raise VMStartingRetryLater(starting[0].vm_id)

        stopped = self.get_vms_by_status(VMStatus.STOPPED)
        if stopped:
            await logger.ainfo("No available VMs, starting a stopped VM", vm_id=stopped[0].vm_id)
            await self.start_vm(stopped[0].vm_id)
            raise VMStartingRetryLater(stopped[0].vm_id)

        raise NoVMAvailable()

    def _assignment(self, vm: VMRecord, workload_id: str) -> Assignment:
        return Assignment(
            vm_id=vm.vm_id,
            instance_id=vm.instance_id,
            public_ip=vm.public_ip,
            vm_address=f"{vm.public_ip}:{self._config.service_port}" if vm.public_ip else None,
            competition_id=workload_id,
        )

    async def release_vm(self, workload_id: str) -> Release:
        """Return a competition's VM to the pool. No-op if it has none."""
        self._require_initialized()
        await logger.ainfo("Releasing VM", competition_id=workload_id)

        vm = self.get_vm_for_competition(workload_id)
        if vm is None:
            await logger.ainfo("No VM assigned to competition", competition_id=workload_id)
            return Release(
                competition_id=workload_id, message="No VM was assigned to this competition"
            )

        fields: dict[str, Any] = {"assigned_to": None, "last_state_change": utcnow()}
        # An unhealthy VM stays in ERROR; only the assignment is dropped
        if vm.status != VMStatus.ERROR:
            fields["status"] = VMStatus.AVAILABLE
        await self._write(vm.vm_id, fields)
        await self.store.set_workload_address(workload_id, None)

        result = Release(competition_id=workload_id, vm_id=vm.vm_id, instance_id=vm.instance_id)
        await logger.ainfo("Released VM", vm_id=vm.vm_id, competition_id=workload_id)
        await self.events.emit(
            PoolEventType.VM_RELEASED, vm.vm_id, **result.model_dump(exclude={"vm_id"})
        )
        return result

    async def mark_vm_in_use(self, vm_id: str) -> VMRecord:
        """ASSIGNED → IN_USE (the competition is actively streaming)."""
        self._require_initialized()
        vm = self._get_or_raise(vm_id)
        if vm.status != VMStatus.ASSIGNED:
            raise InvalidTransition(
                vm_id, "mark in use", vm.status.value,
                f"VM {vm_id} is not assigned (status: {vm.status.value})",
            )

        updated = await self._write(
            vm_id,
            {"status": VMStatus.IN_USE, "last_state_change": utcnow()},
            expected={"status": VMStatus.ASSIGNED},
        )
        if not updated:
            latest = self._vms.get(vm_id)
            raise InvalidTransition(vm_id, "mark in use", latest.status.value if latest else "unknown")

        await self.events.emit(PoolEventType.VM_IN_USE, vm_id, competition_id=vm.assigned_to)
        return self._vms[vm_id].model_copy()

    # ── Start / stop ──────────────────────────────────────────────

    async def start_vm(self, vm_id: str) -> TransitionAck:
        """STOPPED → STARTING; a watcher finalizes AVAILABLE or ERROR."""
        self._require_initialized()
        vm = self._get_or_raise(vm_id)
        if vm.status != VMStatus.STOPPED:
            raise InvalidTransition(
                vm_id, "start", vm.status.value,
                f"VM {vm_id} is not stopped (status: {vm.status.value})",
            )

        await logger.ainfo("Starting VM", vm_id=vm_id, instance_id=vm.instance_id)
        marked = await self._write(
            vm_id,
            {"status": VMStatus.STARTING, "error_reason": None, "last_state_change": utcnow()},
            expected={"status": VMStatus.STOPPED},
        )
        if not marked:
            latest = self._vms.get(vm_id)
            raise InvalidTransition(vm_id, "start", latest.status.value if latest else "unknown")

        try:
            await self.aws.start_instance(vm.instance_id)
        except Exception as e:
            await logger.aerror("Failed to start VM", vm_id=vm_id, error=str(e))
            await self._fail(vm_id, vm.instance_id, f"Start failed: {e}")
            raise

        await self.events.emit(PoolEventType.VM_STARTING, vm_id, instance_id=vm.instance_id)
        self.tasks.spawn(vm_id, self._converge_started(vm_id, vm.instance_id))
        return TransitionAck(
            vm_id=vm_id,
            instance_id=vm.instance_id,
            status=VMStatus.STARTING,
            message="VM is starting. It will be available in 2-3 minutes.",
        )

    async def _converge_started(self, vm_id: str, instance_id: str) -> None:
        try:
            info = await self.aws.wait_for_instance_running(
                instance_id, self.settings.convergence_timeout_seconds
            )
            await self._safe_write(
                vm_id,
                {
                    "public_ip": info.public_ip,
                    "private_ip": info.private_ip,
                    "last_state_change": utcnow(),
                },
            )
            if not info.public_ip:
                raise RuntimeError("Instance is running but has no public IP")

            ready = await self.aws.wait_for_services_ready(
                info.public_ip,
                port=self._config.service_port,
                timeout_seconds=self.settings.services_ready_timeout_seconds,
            )
            if not ready:
                raise RuntimeError("Services did not become ready")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await logger.aerror("VM startup failed", vm_id=vm_id, error=str(e))
            await self._fail(vm_id, instance_id, str(e))
            return

        now = utcnow()
        finalized = await self._safe_write(
            vm_id,
            {
                "status": VMStatus.AVAILABLE,
                "services": ServiceHealth(reachable=True, control_plane_connected=False),
                "last_health_check": now,
                "last_state_change": now,
            },
            status=VMStatus.STARTING,
        )
        if finalized:
            await logger.ainfo("VM is now available", vm_id=vm_id)
            await self.events.emit(
                PoolEventType.VM_READY, vm_id, instance_id=instance_id, public_ip=info.public_ip
            )

    async def stop_vm(self, vm_id: str, force: bool = False) -> TransitionAck:
        """AVAILABLE/ERROR (unassigned) → STOPPING; a watcher finalizes STOPPED or ERROR."""
        self._require_initialized()
        vm = self._get_or_raise(vm_id)
        if vm.assigned_to:
            raise InvalidTransition(
                vm_id, "stop", vm.status.value,
                f"VM {vm_id} is assigned to competition {vm.assigned_to}. Release it first.",
            )
        if vm.status not in (VMStatus.AVAILABLE, VMStatus.ERROR):
            raise InvalidTransition(
                vm_id, "stop", vm.status.value,
                f"VM {vm_id} cannot be stopped (status: {vm.status.value})",
            )

        await logger.ainfo("Stopping VM", vm_id=vm_id, instance_id=vm.instance_id, force=force)
        marked = await self._write(
            vm_id,
            {"status": VMStatus.STOPPING, "last_state_change": utcnow()},
            expected={"status": vm.status, "assigned_to": None},
        )
        if not marked:
            latest = self._vms.get(vm_id)
            raise InvalidTransition(vm_id, "stop", latest.status.value if latest else "unknown")

        try:
            await self.aws.stop_instance(vm.instance_id, force=force)
        except Exception as e:
            await logger.aerror("Failed to stop VM", vm_id=vm_id, error=str(e))
            await self._fail(vm_id, vm.instance_id, f"Stop failed: {e}")
            raise

        await self.events.emit(PoolEventType.VM_STOPPING, vm_id, instance_id=vm.instance_id)
        self.tasks.spawn(vm_id, self._converge_stopped(vm_id, vm.instance_id))
        return TransitionAck(
            vm_id=vm_id, instance_id=vm.instance_id, status=VMStatus.STOPPING, message="VM is stopping."
        )

    async def _converge_stopped(self, vm_id: str, instance_id: str) -> None:
        try:
            await self.aws.wait_for_instance_stopped(
                instance_id, self.settings.convergence_timeout_seconds
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await logger.aerror("VM stop did not converge", vm_id=vm_id, error=str(e))
            await self._fail(vm_id, instance_id, str(e))
            return

        finalized = await self._safe_write(
            vm_id,
            {
                "status": VMStatus.STOPPED,
                "public_ip": None,
                "private_ip": None,
                "services": None,
                "error_reason": None,
                "last_state_change": utcnow(),
            },
            status=VMStatus.STOPPING,
        )
        if finalized:
            await logger.ainfo("VM is now stopped", vm_id=vm_id)
            await self.events.emit(PoolEventType.VM_STOPPED, vm_id, instance_id=instance_id)

    async def _fail(self, vm_id: str, instance_id: str, reason: str) -> None:
        await self._safe_write(
            vm_id,
            {"status": VMStatus.ERROR, "error_reason": reason, "last_state_change": utcnow()},
        )
        await self.events.emit(PoolEventType.VM_ERROR, vm_id, instance_id=instance_id, reason=reason)

    # ── Warm pool maintenance ─────────────────────────────────────

    async def ensure_min_warm_vms(self) -> WarmPoolReport:
        """Start stopped VMs until the warm pool reaches ``warm_count``."""
        self._require_initialized()
        counts = self.get_pool_status().counts
        warm = counts.warm
        stopped = self.get_vms_by_status(VMStatus.STOPPED)

        # VMs already booting close part of the gap
        gap = self._config.warm_count - warm - counts.starting
        needed = min(max(gap, 0), len(stopped))
        await logger.ainfo(
            "Warm pool check",
            warm=warm,
            target=self._config.warm_count,
            starting=counts.starting,
            stopped=len(stopped),
            to_start=needed,
        )

        results: list[WarmStartOutcome] = []
        for vm in stopped[:needed]:
            try:
                await self.start_vm(vm.vm_id)
                results.append(WarmStartOutcome(vm_id=vm.vm_id, success=True))
            except Exception as e:
                results.append(WarmStartOutcome(vm_id=vm.vm_id, success=False, error=str(e)))

        report = WarmPoolReport(
            warm_vms_before=warm,
            warm_vms_target=self._config.warm_count,
            started_count=sum(1 for r in results if r.success),
            results=results,
        )
        await self.events.emit(PoolEventType.POOL_MAINTENANCE, **report.model_dump())
        return report

    async def launch_vm(
        self, name: Optional[str] = None, instance_type: Optional[str] = None
    ) -> TransitionAck:
        """Provision a new tagged instance; its record appears via reconciliation."""
        self._require_initialized()
        if len(self._vms) >= self._config.max_instances:
            raise PoolCapacityExceeded(self._config.max_instances)

        info = await self.aws.launch_instance(name=name, instance_type=instance_type)
        await self.reconcile()

        vm_id = next(
            (v.vm_id for v in self._vms.values() if v.instance_id == info.instance_id),
            vm_id_for_instance(info.instance_id),
        )
        self.tasks.spawn(vm_id, self._converge_started(vm_id, info.instance_id))
        await self.events.emit(
            PoolEventType.VM_LAUNCHED, vm_id, instance_id=info.instance_id, name=info.name
        )
        return TransitionAck(
            vm_id=vm_id,
            instance_id=info.instance_id,
            status=VMStatus.STARTING,
            message="VM launched. It will be available once its services report ready.",
        )

    async def update_pool_config(self, overrides: dict[str, Any]) -> PoolConfig:
        """Merge ``overrides`` into the pool config and persist it."""
        self._require_initialized()
        merged = merge_pool_config(self._config, overrides)
        await self.store.set_config(merged.model_dump())
        self._config = merged
        await logger.ainfo("Pool config updated", **overrides)
        await self.events.emit(PoolEventType.CONFIG_UPDATED, **merged.model_dump())
        return merged

    # ── Health-driven writes (used by the health monitor) ─────────

    async def update_vm_services(self, vm_id: str, services: ServiceHealth) -> bool:
        if vm_id not in self._vms:
            return False
        return await self._write(vm_id, {"services": services, "last_health_check": utcnow()})

    async def set_vm_error(
        self, vm_id: str, reason: str, expected_status: Optional[VMStatus] = None
    ) -> bool:
        """Move a VM to ERROR. With ``expected_status``, only if it has not changed since."""
        vm = self._vms.get(vm_id)
        if vm is None or vm.status == VMStatus.ERROR:
            return False
        applied = await self._write(
            vm_id,
            {"status": VMStatus.ERROR, "error_reason": reason, "last_state_change": utcnow()},
            expected={"status": expected_status} if expected_status else None,
        )
        if applied:
            await self.events.emit(
                PoolEventType.VM_ERROR, vm_id, reason=reason, previous_status=vm.status.value
            )
        return applied

    async def clear_vm_error(self, vm_id: str) -> Optional[VMStatus]:
        """ERROR → ASSIGNED or AVAILABLE, depending on whether the VM is assigned."""
        vm = self._vms.get(vm_id)
        if vm is None or vm.status != VMStatus.ERROR:
            return None
        new_status = VMStatus.ASSIGNED if vm.assigned_to else VMStatus.AVAILABLE
        applied = await self._write(
            vm_id,
            {"status": new_status, "error_reason": None, "last_state_change": utcnow()},
            expected={"status": VMStatus.ERROR},
        )
        if not applied:
            return None
        await self.events.emit(
            PoolEventType.VM_RECOVERED,
            vm_id,
            previous_status=VMStatus.ERROR.value,
            new_status=new_status.value,
            assigned_to=vm.assigned_to,
        )
        return new_status

    # ── Reads (cache only) ────────────────────────────────────────

    @property
    def config(self) -> PoolConfig:
        return self._config.model_copy()

    def get_vm(self, vm_id: str) -> Optional[VMRecord]:
        vm = self._vms.get(vm_id)
        return vm.model_copy() if vm else None

    def get_vm_for_competition(self, workload_id: str) -> Optional[VMRecord]:
        for vm in self._vms.values():
            if vm.assigned_to == workload_id:
                return vm.model_copy()
        return None

    def get_available_vm(self) -> Optional[VMRecord]:
        available = self.get_vms_by_status(VMStatus.AVAILABLE)
        return available[0] if available else None

    def get_vms_by_status(self, status: VMStatus) -> list[VMRecord]:
        return [vm.model_copy() for vm in self._vms.values() if vm.status == status]

    def get_pool_status(self) -> PoolStatus:
        counts = PoolCounts()
        for vm in self._vms.values():
            counts.total += 1
            setattr(counts, vm.status.value, getattr(counts, vm.status.value) + 1)
        return PoolStatus(
            config=self._config.model_copy(),
            counts=counts,
            vms=[vm.model_copy() for vm in self._vms.values()],
            initialized=self._initialized,
        )


__all__ = ["PoolManager", "PoolError"]
