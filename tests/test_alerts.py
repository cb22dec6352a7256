"""Tests for the alert sinks."""

from unittest.mock import AsyncMock

import pytest

from health_monitor.alerts import LogAlertSink, SlackAlertSink
from orchestrator.models.health import Alert, AlertCategory, AlertLevel


def _alert(level=AlertLevel.CRITICAL):
    return Alert(
        level=level,
        category=AlertCategory.VM,
        title="VM Unreachable",
        message="Production VM VM-abc123 is not responding.",
        source_id="vm-unreachable-vm-0abc123",
        metadata={"vm_id": "vm-0abc123"},
    )


class TestSlackAlertSink:
    @pytest.mark.asyncio
    async def test_posts_alert_to_channel(self, alert_sink):
        client = AsyncMock()
        sink = SlackAlertSink(channel="#fleet-alerts", client=client, fallback=alert_sink)

        await sink.create_alert("comp-1", _alert())

        kwargs = client.chat_postMessage.await_args.kwargs
        assert kwargs["channel"] == "#fleet-alerts"
        assert kwargs["text"].startswith("VM Unreachable")
        section = kwargs["blocks"][0]["text"]["text"]
        assert ":red_circle:" in section
        assert "comp-1" in section
        assert alert_sink.created == []

    @pytest.mark.asyncio
    async def test_unconfigured_uses_fallback(self, alert_sink):
        sink = SlackAlertSink(token="", channel="", fallback=alert_sink)

        assert sink.configured is False
        await sink.create_alert("comp-1", _alert())
        await sink.resolve_by_source_id("comp-1", "vm-unreachable-vm-0abc123")

        assert alert_sink.created_source_ids() == ["vm-unreachable-vm-0abc123"]
        assert alert_sink.resolved == [("comp-1", "vm-unreachable-vm-0abc123", "system")]

    @pytest.mark.asyncio
    async def test_slack_failure_falls_back(self, alert_sink):
        client = AsyncMock()
        client.chat_postMessage.side_effect = RuntimeError("channel_not_found")
        sink = SlackAlertSink(channel="#fleet-alerts", client=client, fallback=alert_sink)

        await sink.create_alert(None, _alert(AlertLevel.INFO))
        await sink.resolve_by_source_id(None, "vm-unreachable-vm-0abc123", "operator")

        assert len(alert_sink.created) == 1
        assert alert_sink.resolved == [(None, "vm-unreachable-vm-0abc123", "operator")]
        assert client.chat_postMessage.await_count == 1

    @pytest.mark.asyncio
    async def test_resolution_follows_posted_alert_once(self):
        client = AsyncMock()
        sink = SlackAlertSink(channel="#fleet-alerts", client=client)

        await sink.create_alert("comp-1", _alert())
        await sink.resolve_by_source_id("comp-1", "vm-unreachable-vm-0abc123")
        await sink.resolve_by_source_id("comp-1", "vm-unreachable-vm-0abc123")

        assert client.chat_postMessage.await_count == 2
        assert "vm-unreachable-vm-0abc123" in client.chat_postMessage.await_args.kwargs["text"]

    @pytest.mark.asyncio
    async def test_nothing_posted_for_alert_never_raised(self):
        client = AsyncMock()
        sink = SlackAlertSink(channel="#fleet-alerts", client=client)

        for _ in range(3):
            await sink.resolve_by_source_id("comp-1", "vm-unreachable-vm-1")
            await sink.resolve_by_source_id("comp-1", "obs-disconnected-vm-1")

        client.chat_postMessage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resolution_is_per_competition(self):
        client = AsyncMock()
        sink = SlackAlertSink(channel="#fleet-alerts", client=client)

        await sink.create_alert("comp-1", _alert())
        await sink.resolve_by_source_id("comp-2", "vm-unreachable-vm-0abc123")

        assert client.chat_postMessage.await_count == 1


class TestLogAlertSink:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("level", list(AlertLevel))
    async def test_every_level_logs(self, level):
        sink = LogAlertSink()

        await sink.create_alert("comp-1", _alert(level))
        await sink.resolve_by_source_id("comp-1", "vm-unreachable-vm-0abc123")
