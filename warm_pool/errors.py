"""Errors surfaced synchronously by the pool manager."""

from __future__ import annotations

from typing import Optional


class PoolError(Exception):
    """Base class for pool manager errors."""


class PoolNotInitialized(PoolError):
    def __init__(self):
        super().__init__("Pool manager not initialized")


class VMNotFound(PoolError):
    def __init__(self, vm_id: str):
        self.vm_id = vm_id
        super().__init__(f"VM {vm_id} not found")


class VMNotAvailable(PoolError):
    def __init__(self, vm_id: str, status: str):
        self.vm_id = vm_id
        self.status = status
        super().__init__(f"VM {vm_id} is not available (status: {status})")


class NoVMAvailable(PoolError):
    def __init__(self):
        super().__init__("No VMs available in pool")


class VMStartingRetryLater(PoolError):
    """Nothing was available, but a stopped VM has been started for the caller."""

    retry_after_seconds = 120

    def __init__(self, vm_id: str):
        self.vm_id = vm_id
        super().__init__(
            f"No VMs currently available. Stopped VM {vm_id} is starting - "
            "please try again in 2-3 minutes."
        )


class InvalidTransition(PoolError):
    def __init__(self, vm_id: str, operation: str, status: str, reason: Optional[str] = None):
        self.vm_id = vm_id
        self.operation = operation
        self.status = status
        detail = reason or f"cannot {operation} from status {status}"
        super().__init__(f"VM {vm_id}: {detail}")


class WorkloadAlreadyAssigned(PoolError):
    def __init__(self, workload_id: str, vm_id: str):
        self.workload_id = workload_id
        self.vm_id = vm_id
        super().__init__(f"Competition {workload_id} already has VM {vm_id} assigned")


class PoolCapacityExceeded(PoolError):
    def __init__(self, max_instances: int):
        self.max_instances = max_instances
        super().__init__(f"Pool is at its maximum of {max_instances} instances")
