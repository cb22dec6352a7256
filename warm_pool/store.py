"""
Shared pool store — durability layer and cross-process sync point.

Logical layout:
    pool/config                              — PoolConfig
    pool/vms/{vm_id}                         — one VM record per machine
    workload/{workload_id}/config/vmAddress  — "ip:port" of the assigned VM

Two backends:
    InMemoryPoolStore — single process (development, tests)
    RedisPoolStore    — shared between processes; live updates via pub/sub

Subscribers receive every VM write (``data=None`` for a deletion) and every
config write. The pool manager uses this to keep its in-process cache current.
"""

from __future__ import annotations

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger()

VMChangeCallback = Callable[[str, Optional[dict]], None]
ConfigChangeCallback = Callable[[dict], None]


class PoolStore(ABC):
    """Abstract store for pool state."""

    def __init__(self):
        self._vm_subscribers: list[VMChangeCallback] = []
        self._config_subscribers: list[ConfigChangeCallback] = []

    @abstractmethod
    async def get_config(self) -> Optional[dict]: ...

    @abstractmethod
    async def set_config(self, config: dict) -> None: ...

    @abstractmethod
    async def get_vms(self) -> dict[str, dict]: ...

    @abstractmethod
    async def get_vm(self, vm_id: str) -> Optional[dict]: ...

    @abstractmethod
    async def put_vm(self, vm_id: str, data: dict) -> None:
        """Replace the whole record."""

    @abstractmethod
    async def update_vm(self, vm_id: str, fields: dict) -> bool:
        """Merge ``fields`` into an existing record. Returns False if it does not exist."""

    @abstractmethod
    async def compare_and_update(self, vm_id: str, expected: dict, fields: dict) -> bool:
        """Merge ``fields`` only if every key in ``expected`` currently matches."""

    @abstractmethod
    async def delete_vm(self, vm_id: str) -> None: ...

    @abstractmethod
    async def set_workload_address(self, workload_id: str, address: Optional[str]) -> None: ...

    @abstractmethod
    async def get_workload_address(self, workload_id: str) -> Optional[str]: ...

    async def subscribe(
        self,
        on_vm_change: VMChangeCallback,
        on_config_change: Optional[ConfigChangeCallback] = None,
    ) -> Callable[[], None]:
        """Register live-update callbacks; returns an unsubscribe function."""
        self._vm_subscribers.append(on_vm_change)
        if on_config_change:
            self._config_subscribers.append(on_config_change)

        def unsubscribe() -> None:
            if on_vm_change in self._vm_subscribers:
                self._vm_subscribers.remove(on_vm_change)
            if on_config_change and on_config_change in self._config_subscribers:
                self._config_subscribers.remove(on_config_change)

        return unsubscribe

    async def close(self) -> None:
        self._vm_subscribers.clear()
        self._config_subscribers.clear()

    def _notify_vm(self, vm_id: str, data: Optional[dict]) -> None:
        for callback in list(self._vm_subscribers):
            try:
                callback(vm_id, copy.deepcopy(data))
            except Exception as e:
                logger.warning("Store subscriber failed", vm_id=vm_id, error=str(e))

    def _notify_config(self, data: dict) -> None:
        for callback in list(self._config_subscribers):
            try:
                callback(copy.deepcopy(data))
            except Exception as e:
                logger.warning("Store config subscriber failed", error=str(e))


def _matches(record: dict, expected: dict) -> bool:
    return all(record.get(key) == value for key, value in expected.items())


class InMemoryPoolStore(PoolStore):
    """Dict-backed store. Writes notify subscribers synchronously."""

    def __init__(self):
        super().__init__()
        self._config: Optional[dict] = None
        self._vms: dict[str, dict] = {}
        self._addresses: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get_config(self) -> Optional[dict]:
        return copy.deepcopy(self._config)

    async def set_config(self, config: dict) -> None:
        self._config = copy.deepcopy(config)
        self._notify_config(self._config)

    async def get_vms(self) -> dict[str, dict]:
        return copy.deepcopy(self._vms)

    async def get_vm(self, vm_id: str) -> Optional[dict]:
        return copy.deepcopy(self._vms.get(vm_id))

    async def put_vm(self, vm_id: str, data: dict) -> None:
        async with self._lock:
            self._vms[vm_id] = copy.deepcopy(data)
        self._notify_vm(vm_id, self._vms[vm_id])

    async def update_vm(self, vm_id: str, fields: dict) -> bool:
        async with self._lock:
            record = self._vms.get(vm_id)
            if record is None:
                return False
            record.update(copy.deepcopy(fields))
        self._notify_vm(vm_id, record)
        return True

    async def compare_and_update(self, vm_id: str, expected: dict, fields: dict) -> bool:
        async with self._lock:
            record = self._vms.get(vm_id)
            if record is None or not _matches(record, expected):
                return False
            record.update(copy.deepcopy(fields))
        self._notify_vm(vm_id, record)
        return True

    async def delete_vm(self, vm_id: str) -> None:
        async with self._lock:
            existed = self._vms.pop(vm_id, None) is not None
        if existed:
            self._notify_vm(vm_id, None)

    async def set_workload_address(self, workload_id: str, address: Optional[str]) -> None:
        if address is None:
            self._addresses.pop(workload_id, None)
        else:
            self._addresses[workload_id] = address

    async def get_workload_address(self, workload_id: str) -> Optional[str]:
        return self._addresses.get(workload_id)


class RedisPoolStore(PoolStore):
    """Redis-backed store shared by every controller process.

    Keys:
        pool:config                         JSON string
        pool:vms                            hash of vm_id -> JSON record
        workload:{id}:config:vmAddress      string
    Partial updates run under WATCH/MULTI so concurrent writers never lose
    fields; every write is announced on the ``pool:changes`` channel.
    """

    CONFIG_KEY = "pool:config"
    VMS_KEY = "pool:vms"
    CHANNEL = "pool:changes"

    # Resubscribe backoff after the change feed drops, in seconds
    RECONNECT_DELAY = 1.0
    MAX_RECONNECT_DELAY = 30.0

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        client: Any = None,
        reconnect_delay: float = RECONNECT_DELAY,
    ):
        super().__init__()
        self.reconnect_delay = reconnect_delay
        if client is None:
            import redis.asyncio as aioredis

            client = aioredis.from_url(redis_url, decode_responses=True)
        self._redis = client
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    @staticmethod
    def _address_key(workload_id: str) -> str:
        return f"workload:{workload_id}:config:vmAddress"

    async def _publish(self, kind: str, payload: dict) -> None:
        await self._redis.publish(self.CHANNEL, json.dumps({"kind": kind, **payload}))

    async def get_config(self) -> Optional[dict]:
        raw = await self._redis.get(self.CONFIG_KEY)
        return json.loads(raw) if raw else None

    async def set_config(self, config: dict) -> None:
        await self._redis.set(self.CONFIG_KEY, json.dumps(config))
        await self._publish("config", {"data": config})

    async def get_vms(self) -> dict[str, dict]:
        raw = await self._redis.hgetall(self.VMS_KEY)
        return {vm_id: json.loads(value) for vm_id, value in raw.items()}

    async def get_vm(self, vm_id: str) -> Optional[dict]:
        raw = await self._redis.hget(self.VMS_KEY, vm_id)
        return json.loads(raw) if raw else None

    async def put_vm(self, vm_id: str, data: dict) -> None:
        await self._redis.hset(self.VMS_KEY, vm_id, json.dumps(data))
        await self._publish("vm", {"vm_id": vm_id, "data": data})

    async def update_vm(self, vm_id: str, fields: dict) -> bool:
        return await self.compare_and_update(vm_id, {}, fields)

    async def compare_and_update(self, vm_id: str, expected: dict, fields: dict) -> bool:
        from redis.exceptions import WatchError

        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.VMS_KEY)
                    raw = await pipe.hget(self.VMS_KEY, vm_id)
                    if not raw:
                        await pipe.unwatch()
                        return False
                    record = json.loads(raw)
                    if not _matches(record, expected):
                        await pipe.unwatch()
                        return False
                    record.update(fields)
                    pipe.multi()
                    pipe.hset(self.VMS_KEY, vm_id, json.dumps(record))
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        await self._publish("vm", {"vm_id": vm_id, "data": record})
        return True

    async def delete_vm(self, vm_id: str) -> None:
        removed = await self._redis.hdel(self.VMS_KEY, vm_id)
        if removed:
            await self._publish("vm", {"vm_id": vm_id, "data": None})

    async def set_workload_address(self, workload_id: str, address: Optional[str]) -> None:
        if address is None:
            await self._redis.delete(self._address_key(workload_id))
        else:
            await self._redis.set(self._address_key(workload_id), address)

    async def get_workload_address(self, workload_id: str) -> Optional[str]:
        return await self._redis.get(self._address_key(workload_id))

    async def subscribe(
        self,
        on_vm_change: VMChangeCallback,
        on_config_change: Optional[ConfigChangeCallback] = None,
    ) -> Callable[[], None]:
        unsubscribe = await super().subscribe(on_vm_change, on_config_change)
        if self._listener is None:
            self._pubsub = self._redis.pubsub()
            await self._pubsub.subscribe(self.CHANNEL)
            self._listener = asyncio.create_task(self._listen())
        return unsubscribe

    async def _listen(self) -> None:
        from redis.exceptions import ConnectionError as RedisConnectionError

        delay = self.reconnect_delay
        while True:
            try:
                if self._pubsub is None:
                    self._pubsub = self._redis.pubsub()
                    await self._pubsub.subscribe(self.CHANNEL)
                    await self._replay()
                    await logger.ainfo("Resubscribed to pool changes")
                async for message in self._pubsub.listen():
                    delay = self.reconnect_delay
                    if message.get("type") != "message":
                        continue
                    self.dispatch(message["data"])
                return
            except asyncio.CancelledError:
                return
            except RedisConnectionError as e:
                await logger.awarning(
                    "Pool change feed lost, resubscribing", error=str(e), retry_in_seconds=delay
                )
                await self._drop_pubsub()
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.MAX_RECONNECT_DELAY)

    async def _drop_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except Exception as e:
            await logger.adebug("Closing dead pubsub failed", error=str(e))

    async def _replay(self) -> None:
        """Push the current records to subscribers; writes made while disconnected were missed."""
        config = await self.get_config()
        if config:
            self._notify_config(config)
        for vm_id, data in (await self.get_vms()).items():
            self._notify_vm(vm_id, data)

    def dispatch(self, raw: str) -> None:
        """Route one pub/sub payload to the local subscribers."""
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed pool change message")
            return
        if payload.get("kind") == "vm":
            self._notify_vm(payload["vm_id"], payload.get("data"))
        elif payload.get("kind") == "config":
            self._notify_config(payload.get("data") or {})

    async def close(self) -> None:
        if self._listener:
            self._listener.cancel()
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        await self._redis.aclose()
        await super().close()
