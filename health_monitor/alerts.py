"""
Alert sinks — where the health monitor sends alerts.

The monitor only needs ``create_alert`` and ``resolve_by_source_id``; storage
and delivery belong to the sink.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import structlog

from orchestrator.models.health import Alert, AlertLevel

logger = structlog.get_logger()

LEVEL_EMOJI = {
    AlertLevel.CRITICAL: ":red_circle:",
    AlertLevel.WARNING: ":warning:",
    AlertLevel.INFO: ":information_source:",
}


class AlertSink(ABC):
    """Abstract alert collaborator."""

    @abstractmethod
    async def create_alert(self, workload_id: Optional[str], alert: Alert) -> None: ...

    @abstractmethod
    async def resolve_by_source_id(
        self, workload_id: Optional[str], source_id: str, resolved_by: str = "system"
    ) -> None: ...


class LogAlertSink(AlertSink):
    """Writes alerts to the structured log.

    Resolutions are only logged for alerts this sink raised.
    """

    def __init__(self):
        self._open: set[tuple[Optional[str], str]] = set()

    async def create_alert(self, workload_id: Optional[str], alert: Alert) -> None:
        self._open.add((workload_id, alert.source_id))
        log = {
            AlertLevel.CRITICAL: logger.aerror,
            AlertLevel.WARNING: logger.awarning,
        }.get(alert.level, logger.ainfo)
        await log(
            alert.title,
            competition_id=workload_id,
            alert_level=alert.level.value,
            category=alert.category.value,
            source_id=alert.source_id,
            detail=alert.message,
            metadata=alert.metadata,
        )

    async def resolve_by_source_id(
        self, workload_id: Optional[str], source_id: str, resolved_by: str = "system"
    ) -> None:
        if (workload_id, source_id) not in self._open:
            return
        self._open.discard((workload_id, source_id))
        await logger.ainfo(
            "Alert resolved",
            competition_id=workload_id,
            source_id=source_id,
            resolved_by=resolved_by,
        )


class SlackAlertSink(AlertSink):
    """Posts alerts to a Slack channel; falls back to the log when unconfigured.

    A resolution is posted only for an alert that was posted, and only once.
    Alerts that went to the fallback are resolved there.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        channel: Optional[str] = None,
        client=None,
        fallback: Optional[AlertSink] = None,
    ):
        self.channel = channel
        self.fallback = fallback or LogAlertSink()
        if client is None and token:
            from slack_sdk.web.async_client import AsyncWebClient

            client = AsyncWebClient(token=token)
        self._client = client
        # (workload_id, source_id) -> "slack" or "fallback"
        self._delivered: dict[tuple[Optional[str], str], str] = {}

    @property
    def configured(self) -> bool:
        return self._client is not None and bool(self.channel)

    async def create_alert(self, workload_id: Optional[str], alert: Alert) -> None:
        if not self.configured:
            await self.fallback.create_alert(workload_id, alert)
            return

        emoji = LEVEL_EMOJI.get(alert.level, "")
        header = f"{emoji} *{alert.title}*"
        if workload_id:
            header += f" (competition `{workload_id}`)"
        try:
            await self._client.chat_postMessage(
                channel=self.channel,
                text=f"{alert.title}: {alert.message}",
                blocks=[
                    {
                        "type": "section",
                        "text": {"type": "mrkdwn", "text": f"{header}\n\n{alert.message}"},
                    },
                    {
                        "type": "context",
                        "elements": [
                            {
                                "type": "mrkdwn",
                                "text": f"`{alert.source_id}` · {alert.category.value} · {alert.level.value}",
                            }
                        ],
                    },
                ],
            )
        except Exception as e:
            await logger.aerror("Failed to post alert to Slack", source_id=alert.source_id, error=str(e))
            await self.fallback.create_alert(workload_id, alert)
            self._delivered[(workload_id, alert.source_id)] = "fallback"
            return
        self._delivered[(workload_id, alert.source_id)] = "slack"

    async def resolve_by_source_id(
        self, workload_id: Optional[str], source_id: str, resolved_by: str = "system"
    ) -> None:
        if not self.configured:
            await self.fallback.resolve_by_source_id(workload_id, source_id, resolved_by)
            return

        delivered_to = self._delivered.pop((workload_id, source_id), None)
        if delivered_to is None:
            return
        if delivered_to == "fallback":
            await self.fallback.resolve_by_source_id(workload_id, source_id, resolved_by)
            return
        try:
            await self._client.chat_postMessage(
                channel=self.channel,
                text=f":white_check_mark: Resolved `{source_id}` (by {resolved_by})",
            )
        except Exception as e:
            await logger.aerror("Failed to post resolution to Slack", source_id=source_id, error=str(e))
            await self.fallback.resolve_by_source_id(workload_id, source_id, resolved_by)
