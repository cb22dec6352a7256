"""Registry of background convergence watchers, one per VM."""

from __future__ import annotations

import asyncio
from typing import Coroutine, Optional

import structlog

logger = structlog.get_logger()


class ConvergenceTasks:
    """Owns the detached tasks that finalize start/stop transitions.

    Tasks are keyed by vm_id so reconciliation can tell a transient status
    that is still being watched from one orphaned by a restart. Finished
    tasks remove themselves; unexpected exceptions are logged.
    """

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def spawn(self, vm_id: str, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        existing = self._tasks.get(vm_id)
        if existing and not existing.done():
            existing.cancel()

        task = asyncio.create_task(coro, name=name or f"converge-{vm_id}")
        self._tasks[vm_id] = task
        task.add_done_callback(lambda t: self._on_done(vm_id, t))
        return task

    def _on_done(self, vm_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(vm_id) is task:
            del self._tasks[vm_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Convergence task crashed", vm_id=vm_id, error=str(error))

    def is_active(self, vm_id: str) -> bool:
        task = self._tasks.get(vm_id)
        return task is not None and not task.done()

    def active_vm_ids(self) -> list[str]:
        return [vm_id for vm_id, task in self._tasks.items() if not task.done()]

    async def wait_all(self) -> None:
        """Wait for every in-flight watcher (used by tests and graceful shutdown)."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
