"""Shared test fixtures for the showfleet test suite."""

from __future__ import annotations

from typing import Optional

import pytest

from health_monitor.alerts import AlertSink
from orchestrator.models.health import Alert
from orchestrator.models.vm import InstanceInfo, ServiceProbe
from orchestrator.services.config import Settings
from orchestrator.services.events import EventBus, PoolEvent
from warm_pool.pool_manager import PoolManager
from warm_pool.store import InMemoryPoolStore


def make_instance(
    instance_id: str,
    state: str = "running",
    public_ip: Optional[str] = "10.0.0.1",
    name: Optional[str] = None,
) -> InstanceInfo:
    """An instance as the resource client would report it."""
    return InstanceInfo(
        instance_id=instance_id,
        name=name or instance_id,
        state=state,
        public_ip=public_ip if state not in ("stopped", "terminated") else None,
        private_ip="172.31.0.10" if public_ip and state not in ("stopped", "terminated") else None,
        instance_type="t3.large",
        availability_zone="us-east-1a",
        tags={"Project": "showfleet", "ManagedBy": "vm-pool-manager"},
    )


class FakeResourceClient:
    """A resource client that keeps instances in a dict instead of calling EC2."""

    def __init__(self):
        self.instances: dict[str, InstanceInfo] = {}
        self.calls: list[tuple] = []
        self.probes: dict[str, object] = {}
        self.default_probe = ServiceProbe(reachable=True, control_plane_connected=True)
        self.services_ready = True
        self.start_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None
        self.wait_error: Optional[Exception] = None
        self._next_ip = 100

    def add(self, *instances: InstanceInfo) -> None:
        for instance in instances:
            self.instances[instance.instance_id] = instance

    def _assign_ip(self, instance: InstanceInfo) -> None:
        if not instance.public_ip:
            instance.public_ip = f"10.0.1.{self._next_ip}"
            instance.private_ip = f"172.31.1.{self._next_ip}"
            self._next_ip += 1

    async def describe_instances(self, instance_ids=None, tags=None, states=None):
        self.calls.append(("describe_instances", tags))
        return [i.model_copy() for i in self.instances.values()]

    async def get_instance(self, instance_id):
        instance = self.instances.get(instance_id)
        return instance.model_copy() if instance else None

    async def start_instance(self, instance_ids):
        self.calls.append(("start_instance", instance_ids))
        if self.start_error:
            raise self.start_error
        self.instances[instance_ids].state = "pending"
        return []

    async def stop_instance(self, instance_ids, force=False):
        self.calls.append(("stop_instance", instance_ids, force))
        if self.stop_error:
            raise self.stop_error
        self.instances[instance_ids].state = "stopping"
        return []

    async def launch_instance(self, name=None, instance_type=None, ami_id=None, tags=None):
        self.calls.append(("launch_instance", name, instance_type))
        instance_id = f"i-launched{len(self.instances):08d}"
        instance = make_instance(instance_id, state="pending", public_ip=None, name=name)
        self.instances[instance_id] = instance
        return instance.model_copy()

    async def wait_for_instance_running(self, instance_id, timeout_seconds=300):
        self.calls.append(("wait_running", instance_id))
        if self.wait_error:
            raise self.wait_error
        instance = self.instances[instance_id]
        instance.state = "running"
        self._assign_ip(instance)
        return instance.model_copy()

    async def wait_for_instance_stopped(self, instance_id, timeout_seconds=300):
        self.calls.append(("wait_stopped", instance_id))
        if self.wait_error:
            raise self.wait_error
        instance = self.instances[instance_id]
        instance.state = "stopped"
        instance.public_ip = None
        instance.private_ip = None
        return instance.model_copy()

    async def wait_for_services_ready(self, ip, port=None, timeout_seconds=120, interval_ms=5000):
        self.calls.append(("wait_services", ip))
        return self.services_ready

    async def check_instance_services(self, ip, port=None, timeout_ms=5000):
        self.calls.append(("check_services", ip, port))
        probe = self.probes.get(ip, self.default_probe)
        if isinstance(probe, Exception):
            raise probe
        return probe.model_copy()

    async def close(self):
        pass


class RecordingAlertSink(AlertSink):
    """An alert sink that remembers what it was asked to do."""

    def __init__(self):
        self.created: list[tuple[Optional[str], Alert]] = []
        self.resolved: list[tuple[Optional[str], str, str]] = []

    async def create_alert(self, workload_id, alert):
        self.created.append((workload_id, alert))

    async def resolve_by_source_id(self, workload_id, source_id, resolved_by="system"):
        self.resolved.append((workload_id, source_id, resolved_by))

    def created_source_ids(self) -> list[str]:
        return [alert.source_id for _, alert in self.created]


@pytest.fixture
def settings():
    """Settings with background loops disabled and short convergence budgets."""
    return Settings(
        env="test",
        api_key="",
        store_backend="memory",
        pool_maintenance_interval_seconds=0,
        convergence_timeout_seconds=5,
        services_ready_timeout_seconds=5,
        slack_bot_token="",
        slack_alert_channel="",
    )


@pytest.fixture
def fake_client():
    return FakeResourceClient()


@pytest.fixture
def store():
    return InMemoryPoolStore()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def recorded_events(events):
    """Every event published on the ``events`` bus, in order."""
    received: list[PoolEvent] = []
    events.subscribe(received.append)
    return received


@pytest.fixture
def alert_sink():
    return RecordingAlertSink()


@pytest.fixture
def make_pool(settings, fake_client, store, events):
    """Return an async factory building a PoolManager over the fake client."""

    async def _make(*instances: InstanceInfo, initialize: bool = True, **config) -> PoolManager:
        fake_client.add(*instances)
        pool = PoolManager(fake_client, store, settings=settings, events=events)
        if config:
            await store.set_config({**pool.config.model_dump(), **config})
        if initialize:
            await pool.initialize_pool()
        return pool

    return _make
