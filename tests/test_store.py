"""Tests for the pool store backends."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from warm_pool.store import RedisPoolStore


@pytest.fixture
def changes():
    return []


@pytest_asyncio.fixture
async def subscribed_store(store, changes):
    await store.subscribe(lambda vm_id, data: changes.append((vm_id, data)))
    return store


class TestInMemoryPoolStore:
    @pytest.mark.asyncio
    async def test_put_and_get_are_copies(self, store):
        record = {"vm_id": "vm-1", "status": "available", "tags": {"a": "1"}}
        await store.put_vm("vm-1", record)
        record["tags"]["a"] = "changed"

        fetched = await store.get_vm("vm-1")
        fetched["status"] = "error"

        assert (await store.get_vm("vm-1")) == {
            "vm_id": "vm-1",
            "status": "available",
            "tags": {"a": "1"},
        }

    @pytest.mark.asyncio
    async def test_update_missing_record_returns_false(self, store):
        assert await store.update_vm("vm-ghost", {"status": "error"}) is False

    @pytest.mark.asyncio
    async def test_compare_and_update_applies_on_match(self, store):
        await store.put_vm("vm-1", {"status": "available", "assigned_to": None})

        applied = await store.compare_and_update(
            "vm-1", {"status": "available"}, {"status": "assigned", "assigned_to": "comp-1"}
        )

        assert applied is True
        assert (await store.get_vm("vm-1"))["assigned_to"] == "comp-1"

    @pytest.mark.asyncio
    async def test_compare_and_update_rejects_stale_expectation(self, store):
        await store.put_vm("vm-1", {"status": "assigned", "assigned_to": "comp-1"})

        applied = await store.compare_and_update(
            "vm-1", {"status": "available"}, {"status": "assigned", "assigned_to": "comp-2"}
        )

        assert applied is False
        assert (await store.get_vm("vm-1"))["assigned_to"] == "comp-1"

    @pytest.mark.asyncio
    async def test_subscribers_see_writes_and_deletes(self, subscribed_store, changes):
        await subscribed_store.put_vm("vm-1", {"status": "available"})
        await subscribed_store.update_vm("vm-1", {"status": "stopping"})
        await subscribed_store.delete_vm("vm-1")
        await subscribed_store.delete_vm("vm-1")

        assert changes == [
            ("vm-1", {"status": "available"}),
            ("vm-1", {"status": "stopping"}),
            ("vm-1", None),
        ]

    @pytest.mark.asyncio
    async def test_rejected_cas_does_not_notify(self, subscribed_store, changes):
        await subscribed_store.put_vm("vm-1", {"status": "available"})
        changes.clear()

        await subscribed_store.compare_and_update("vm-1", {"status": "error"}, {"status": "x"})

        assert changes == []

    @pytest.mark.asyncio
    async def test_unsubscribe(self, store, changes):
        unsubscribe = await store.subscribe(lambda vm_id, data: changes.append(vm_id))
        unsubscribe()

        await store.put_vm("vm-1", {})

        assert changes == []

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_others(self, store, changes):
        def broken(vm_id, data):
            raise RuntimeError("boom")

        await store.subscribe(broken)
        await store.subscribe(lambda vm_id, data: changes.append(vm_id))

        await store.put_vm("vm-1", {})

        assert changes == ["vm-1"]

    @pytest.mark.asyncio
    async def test_config_subscribers(self, store):
        configs = []
        await store.subscribe(lambda vm_id, data: None, configs.append)

        await store.set_config({"warm_count": 4})

        assert configs == [{"warm_count": 4}]
        assert await store.get_config() == {"warm_count": 4}

    @pytest.mark.asyncio
    async def test_workload_address(self, store):
        await store.set_workload_address("comp-1", "54.1.2.3:3003")
        assert await store.get_workload_address("comp-1") == "54.1.2.3:3003"

        await store.set_workload_address("comp-1", None)
        assert await store.get_workload_address("comp-1") is None


class TestRedisPoolStore:
    def _store(self):
        client = MagicMock()
        client.publish = AsyncMock()
        client.get = AsyncMock()
        client.set = AsyncMock()
        client.hget = AsyncMock()
        client.hset = AsyncMock()
        client.hdel = AsyncMock()
        client.hgetall = AsyncMock()
        client.delete = AsyncMock()
        return RedisPoolStore(client=client), client

    def test_dispatch_routes_vm_and_config_messages(self):
        store, _ = self._store()
        vm_changes, config_changes = [], []
        store._vm_subscribers.append(lambda vm_id, data: vm_changes.append((vm_id, data)))
        store._config_subscribers.append(config_changes.append)

        store.dispatch(json.dumps({"kind": "vm", "vm_id": "vm-1", "data": {"status": "error"}}))
        store.dispatch(json.dumps({"kind": "vm", "vm_id": "vm-2", "data": None}))
        store.dispatch(json.dumps({"kind": "config", "data": {"warm_count": 1}}))
        store.dispatch("not json")

        assert vm_changes == [("vm-1", {"status": "error"}), ("vm-2", None)]
        assert config_changes == [{"warm_count": 1}]

    @pytest.mark.asyncio
    async def test_put_vm_writes_hash_and_publishes(self):
        store, client = self._store()

        await store.put_vm("vm-1", {"status": "available"})

        client.hset.assert_awaited_once_with("pool:vms", "vm-1", json.dumps({"status": "available"}))
        channel, payload = client.publish.await_args.args
        assert channel == "pool:changes"
        assert json.loads(payload) == {"kind": "vm", "vm_id": "vm-1", "data": {"status": "available"}}

    @pytest.mark.asyncio
    async def test_get_vms_decodes_records(self):
        store, client = self._store()
        client.hgetall.return_value = {"vm-1": json.dumps({"status": "stopped"})}

        assert await store.get_vms() == {"vm-1": {"status": "stopped"}}

    @pytest.mark.asyncio
    async def test_delete_publishes_only_when_removed(self):
        store, client = self._store()
        client.hdel.return_value = 0

        await store.delete_vm("vm-1")

        client.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_workload_address_keys(self):
        store, client = self._store()

        await store.set_workload_address("comp-1", "54.1.2.3:3003")
        await store.set_workload_address("comp-1", None)

        client.set.assert_awaited_once_with("workload:comp-1:config:vmAddress", "54.1.2.3:3003")
        client.delete.assert_awaited_once_with("workload:comp-1:config:vmAddress")

    @pytest.mark.asyncio
    async def test_listener_resubscribes_after_connection_loss(self):
        from redis.exceptions import ConnectionError as RedisConnectionError

        store, client = self._store()
        store.reconnect_delay = 0
        client.aclose = AsyncMock()
        client.get.return_value = None
        client.hgetall.return_value = {"vm-1": json.dumps({"status": "assigned"})}

        async def dropped_feed():
            raise RedisConnectionError("Connection closed by server.")
            yield

        async def live_feed():
            yield {"type": "subscribe", "data": 1}
            yield {
                "type": "message",
                "data": json.dumps({"kind": "vm", "vm_id": "vm-2", "data": {"status": "error"}}),
            }
            await asyncio.Event().wait()

        dropped = MagicMock(subscribe=AsyncMock(), aclose=AsyncMock())
        dropped.listen = dropped_feed
        live = MagicMock(subscribe=AsyncMock(), aclose=AsyncMock())
        live.listen = live_feed
        client.pubsub.side_effect = [dropped, live]

        changes = []
        delivered = asyncio.Event()

        def on_change(vm_id, data):
            changes.append((vm_id, data))
            if vm_id == "vm-2":
                delivered.set()

        await store.subscribe(on_change)
        await asyncio.wait_for(delivered.wait(), timeout=5)
        await store.close()

        # The current records are replayed before live messages resume
        assert changes == [("vm-1", {"status": "assigned"}), ("vm-2", {"status": "error"})]
        dropped.aclose.assert_awaited_once()
        live.subscribe.assert_awaited_once_with("pool:changes")
        live.aclose.assert_awaited_once()
