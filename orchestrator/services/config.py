"""Central configuration for the showfleet VM fleet controller."""

from __future__ import annotations

import logging
import os
from functools import lru_cache

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env file before reading any env vars
load_dotenv()


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Core
    env: str = os.getenv("FLEET_ENV", "development")
    log_level: str = os.getenv("FLEET_LOG_LEVEL", "INFO")
    api_key: str = os.getenv("FLEET_API_KEY", "")
    admin_api_key: str = os.getenv("FLEET_ADMIN_API_KEY", "")
    host: str = os.getenv("FLEET_HOST", "0.0.0.0")
    port: int = int(os.getenv("FLEET_PORT", "8000"))

    # Shared store ("memory" or "redis")
    store_backend: str = os.getenv("FLEET_STORE_BACKEND", "memory")
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # AWS
    aws_region: str = os.getenv("AWS_REGION", "us-east-1")
    aws_vpc_id: str = os.getenv("AWS_VPC_ID", "vpc-09ba9c02e2c976cf5")
    aws_security_group_id: str = os.getenv("AWS_SECURITY_GROUP_ID", "sg-025f1ac53cccb756b")
    aws_key_pair_name: str = os.getenv("AWS_KEY_PAIR_NAME", "showfleet-key-pair")
    aws_ami_id: str = os.getenv("AWS_AMI_ID", "ami-070ce58462b2b9213")
    aws_instance_type: str = os.getenv("AWS_INSTANCE_TYPE", "t3.large")

    # Ownership tags; the pool only ever touches instances carrying both
    pool_project_tag: str = os.getenv("FLEET_PROJECT_TAG", "showfleet")
    pool_managed_by_tag: str = os.getenv("FLEET_MANAGED_BY_TAG", "vm-pool-manager")

    # VM service endpoint
    service_port: int = int(os.getenv("FLEET_SERVICE_PORT", "3003"))

    # Convergence budgets
    convergence_timeout_seconds: int = int(os.getenv("FLEET_CONVERGENCE_TIMEOUT_SECONDS", "180"))
    services_ready_timeout_seconds: int = int(
        os.getenv("FLEET_SERVICES_READY_TIMEOUT_SECONDS", "120")
    )

    # Periodic reconcile + warm-pool maintenance (0 disables the loop)
    pool_maintenance_interval_seconds: int = int(
        os.getenv("FLEET_POOL_MAINTENANCE_INTERVAL_SECONDS", "0")
    )

    # Health monitor
    health_monitor_enabled: bool = os.getenv("FLEET_HEALTH_MONITOR_ENABLED", "true").lower() == "true"
    health_request_timeout_ms: int = int(os.getenv("FLEET_HEALTH_REQUEST_TIMEOUT_MS", "5000"))
    unhealthy_threshold: int = int(os.getenv("FLEET_UNHEALTHY_THRESHOLD", "3"))
    recovery_threshold: int = int(os.getenv("FLEET_RECOVERY_THRESHOLD", "2"))

    # Slack alert delivery (optional)
    slack_bot_token: str = os.getenv("SLACK_BOT_TOKEN", "")
    slack_alert_channel: str = os.getenv("SLACK_ALERT_CHANNEL", "")

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def ownership_tags(self) -> dict[str, str]:
        return {"Project": self.pool_project_tag, "ManagedBy": self.pool_managed_by_tag}

    def validate_production_settings(self) -> list[str]:
        """Return warnings for insecure or incomplete settings in production."""
        warnings: list[str] = []
        if self.is_production:
            if not self.api_key:
                warnings.append("FLEET_API_KEY is not set — API is unauthenticated")
            if self.store_backend == "memory":
                warnings.append(
                    "FLEET_STORE_BACKEND is 'memory' — pool state will not survive restarts"
                )
        if self.slack_bot_token and not self.slack_alert_channel:
            warnings.append("SLACK_BOT_TOKEN is set but SLACK_ALERT_CHANNEL is empty")
        return warnings


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Filter structlog output below the configured level."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
    )
