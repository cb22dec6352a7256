"""
Resource client — the only component that talks to the cloud provider.

Wraps EC2 instance operations (describe/start/stop/reboot/terminate/launch,
tagging, state waiters) behind a uniform retry policy, and probes the HTTP
status endpoint each booted VM exposes.

boto3 is synchronous, so every provider call runs in a worker thread via
``asyncio.to_thread``. Nothing here touches pool state.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import httpx
import structlog

from orchestrator.models.vm import InstanceInfo, InstanceStateChange, ServiceProbe
from orchestrator.services.config import Settings, get_settings
from resource_client.errors import ConvergenceError, ConvergenceTimeout, ResourceClientError
from resource_client.retry import RetryPolicy, call_with_retry

logger = structlog.get_logger()

InstanceIds = Union[str, Iterable[str]]

# Bounds for the state-waiter poll interval
MIN_POLL_INTERVAL_S = 5.0
MAX_POLL_INTERVAL_S = 15.0


def _ids(instance_ids: InstanceIds) -> list[str]:
    if isinstance(instance_ids, str):
        return [instance_ids]
    return list(instance_ids)


def format_instance(instance: dict) -> InstanceInfo:
    """Normalize a raw EC2 instance dict."""
    tags = {t["Key"]: t["Value"] for t in instance.get("Tags") or []}
    state = instance.get("State") or {}
    return InstanceInfo(
        instance_id=instance["InstanceId"],
        name=tags.get("Name") or instance["InstanceId"],
        state=state.get("Name", "unknown"),
        state_code=state.get("Code"),
        public_ip=instance.get("PublicIpAddress") or None,
        private_ip=instance.get("PrivateIpAddress") or None,
        public_dns=instance.get("PublicDnsName") or None,
        private_dns=instance.get("PrivateDnsName") or None,
        instance_type=instance.get("InstanceType"),
        launch_time=instance.get("LaunchTime"),
        availability_zone=(instance.get("Placement") or {}).get("AvailabilityZone"),
        subnet_id=instance.get("SubnetId"),
        vpc_id=instance.get("VpcId"),
        tags=tags,
    )


def _state_changes(items: list[dict]) -> list[InstanceStateChange]:
    return [
        InstanceStateChange(
            instance_id=item["InstanceId"],
            previous_state=(item.get("PreviousState") or {}).get("Name"),
            current_state=(item.get("CurrentState") or {}).get("Name"),
        )
        for item in items
    ]


class ResourceClient:
    """EC2 + HTTP probe client with retry/backoff on every provider call."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        ec2: Any = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self._ec2 = ec2
        self._http = http_client
        self._owns_http = http_client is None
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock

    def _get_ec2(self):
        if self._ec2 is None:
            import boto3

            self._ec2 = boto3.client("ec2", region_name=self.settings.aws_region)
        return self._ec2

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def _call(self, operation: str, method: str, **params) -> dict:
        ec2 = self._get_ec2()

        async def _attempt():
            return await asyncio.to_thread(getattr(ec2, method), **params)

        return await call_with_retry(_attempt, operation, self.retry_policy, self._sleep)

    # ── Queries ───────────────────────────────────────────────────

    async def describe_instances(
        self,
        instance_ids: Optional[Iterable[str]] = None,
        tags: Optional[dict[str, Union[str, list[str]]]] = None,
        states: Optional[Iterable[str]] = None,
    ) -> list[InstanceInfo]:
        """Describe instances matching the given ids/tags/states. Never fails on zero hits."""
        filters = []
        for key, value in (tags or {}).items():
            filters.append(
                {"Name": f"tag:{key}", "Values": value if isinstance(value, list) else [value]}
            )
        states = list(states or [])
        if states:
            filters.append({"Name": "instance-state-name", "Values": states})

        params: dict[str, Any] = {}
        ids = list(instance_ids or [])
        if ids:
            params["InstanceIds"] = ids
        if filters:
            params["Filters"] = filters

        response = await self._call("describeInstances", "describe_instances", **params)

        instances = [
            format_instance(instance)
            for reservation in response.get("Reservations") or []
            for instance in reservation.get("Instances") or []
        ]
        await logger.adebug("Described instances", count=len(instances), filters=len(filters))
        return instances

    async def get_instance(self, instance_id: str) -> Optional[InstanceInfo]:
        instances = await self.describe_instances(instance_ids=[instance_id])
        return instances[0] if instances else None

    # ── State changes (do not wait for convergence) ───────────────

    async def start_instance(self, instance_ids: InstanceIds) -> list[InstanceStateChange]:
        ids = _ids(instance_ids)
        response = await self._call("startInstance", "start_instances", InstanceIds=ids)
        await logger.ainfo("Start command sent", instance_ids=ids)
        return _state_changes(response.get("StartingInstances") or [])

    async def stop_instance(
        self, instance_ids: InstanceIds, force: bool = False
    ) -> list[InstanceStateChange]:
        ids = _ids(instance_ids)
        response = await self._call("stopInstance", "stop_instances", InstanceIds=ids, Force=force)
        await logger.ainfo("Stop command sent", instance_ids=ids, force=force)
        return _state_changes(response.get("StoppingInstances") or [])

    async def reboot_instance(self, instance_ids: InstanceIds) -> None:
        ids = _ids(instance_ids)
        await self._call("rebootInstance", "reboot_instances", InstanceIds=ids)
        await logger.ainfo("Reboot command sent", instance_ids=ids)

    async def terminate_instance(self, instance_ids: InstanceIds) -> list[InstanceStateChange]:
        ids = _ids(instance_ids)
        response = await self._call("terminateInstance", "terminate_instances", InstanceIds=ids)
        await logger.ainfo("Terminate command sent", instance_ids=ids)
        return _state_changes(response.get("TerminatingInstances") or [])

    async def launch_instance(
        self,
        name: Optional[str] = None,
        instance_type: Optional[str] = None,
        ami_id: Optional[str] = None,
        tags: Optional[dict[str, Any]] = None,
    ) -> InstanceInfo:
        """Launch exactly one instance from the template image."""
        name = name or f"{self.settings.pool_project_tag}-vm-{int(time.time() * 1000)}"
        instance_type = instance_type or self.settings.aws_instance_type
        ami_id = ami_id or self.settings.aws_ami_id

        tag_list = [{"Key": "Name", "Value": name}]
        tag_list += [{"Key": k, "Value": v} for k, v in self.settings.ownership_tags.items()]
        tag_list += [{"Key": k, "Value": str(v)} for k, v in (tags or {}).items()]

        response = await self._call(
            "launchInstance",
            "run_instances",
            ImageId=ami_id,
            InstanceType=instance_type,
            MinCount=1,
            MaxCount=1,
            KeyName=self.settings.aws_key_pair_name,
            SecurityGroupIds=[self.settings.aws_security_group_id],
            TagSpecifications=[{"ResourceType": "instance", "Tags": tag_list}],
        )
        instances = response.get("Instances") or []
        if not instances:
            raise ResourceClientError("No instance returned from launch command")

        info = format_instance(instances[0])
        await logger.ainfo(
            "Launched instance", instance_id=info.instance_id, name=name, instance_type=instance_type
        )
        return info

    async def create_tags(self, instance_ids: InstanceIds, tags: dict[str, Any]) -> None:
        ids = _ids(instance_ids)
        await self._call(
            "createTags",
            "create_tags",
            Resources=ids,
            Tags=[{"Key": k, "Value": str(v)} for k, v in tags.items()],
        )

    # ── Waiters ───────────────────────────────────────────────────

    async def wait_for_instance_running(
        self, instance_id: str, timeout_seconds: float = 300
    ) -> InstanceInfo:
        return await self._wait_for_state(instance_id, "running", timeout_seconds)

    async def wait_for_instance_stopped(
        self, instance_id: str, timeout_seconds: float = 300
    ) -> InstanceInfo:
        return await self._wait_for_state(instance_id, "stopped", timeout_seconds)

    async def _wait_for_state(
        self, instance_id: str, target: str, timeout_seconds: float
    ) -> InstanceInfo:
        await logger.ainfo(
            "Waiting for instance state",
            instance_id=instance_id,
            target=target,
            timeout_s=timeout_seconds,
        )
        deadline = self._clock() + timeout_seconds
        interval = MIN_POLL_INTERVAL_S

        while True:
            info = await self.get_instance(instance_id)
            if info is None:
                raise ConvergenceError(instance_id, target, f"Instance {instance_id} not found")
            if info.state == target:
                await logger.ainfo("Instance reached state", instance_id=instance_id, state=target)
                return info
            if info.state == "terminated":
                raise ConvergenceError(
                    instance_id, target, f"Instance {instance_id} was terminated"
                )

            remaining = deadline - self._clock()
            if remaining <= 0:
                await logger.aerror(
                    "Timed out waiting for instance state",
                    instance_id=instance_id,
                    target=target,
                    last_state=info.state,
                )
                raise ConvergenceTimeout(instance_id, target, timeout_seconds)

            await self._sleep(min(interval, remaining))
            interval = min(interval * 1.5, MAX_POLL_INTERVAL_S)

    # ── Service probes (never raise) ──────────────────────────────

    async def check_instance_services(
        self, ip: str, port: Optional[int] = None, timeout_ms: int = 5000
    ) -> ServiceProbe:
        """Probe ``http://{ip}:{port}/api/status``. All failures fold into reachable=False."""
        port = port or self.settings.service_port
        url = f"http://{ip}:{port}/api/status"
        start = time.monotonic()

        def _elapsed() -> float:
            return round((time.monotonic() - start) * 1000, 1)

        try:
            response = await self._get_http().get(url, timeout=httpx.Timeout(timeout_ms / 1000))
            if response.is_success:
                data = response.json()
                connected = data.get("controlPlaneConnected", data.get("obsConnected", False))
                return ServiceProbe(
                    reachable=True,
                    control_plane_connected=bool(connected),
                    uptime=data.get("uptime"),
                    version=data.get("version"),
                    response_time_ms=_elapsed(),
                )
            return ServiceProbe(error=f"HTTP {response.status_code}", response_time_ms=_elapsed())
        except httpx.TimeoutException:
            return ServiceProbe(error="Request timeout", response_time_ms=_elapsed())
        except Exception as e:
            return ServiceProbe(error=str(e) or type(e).__name__, response_time_ms=_elapsed())

    async def wait_for_services_ready(
        self,
        ip: str,
        port: Optional[int] = None,
        timeout_seconds: float = 120,
        interval_ms: int = 5000,
    ) -> bool:
        port = port or self.settings.service_port
        await logger.ainfo(
            "Waiting for services", ip=ip, port=port, timeout_s=timeout_seconds
        )
        deadline = self._clock() + timeout_seconds

        while self._clock() < deadline:
            probe = await self.check_instance_services(ip, port)
            if probe.reachable:
                await logger.ainfo("Services ready", ip=ip, port=port)
                return True
            await self._sleep(interval_ms / 1000)

        await logger.awarning("Services did not become ready", ip=ip, port=port, timeout_s=timeout_seconds)
        return False
