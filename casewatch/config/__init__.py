"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="casewatch", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)
    frontend_url: str = Field(
        default="http://localhost:3000",
        description="Case management UI base URL, used for links in notifications"
    )

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/casewatch",
        description="Case store connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Configuration ==========
    sla_config_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="Path to SLA policy YAML file (deadline overrides, debounce)"
    )
    sla_monitoring_interval_seconds: int = Field(
        default=300,
        description="Seconds between SLA monitoring sweeps (breach marking, warnings)",
        ge=0
    )
    escalation_interval_seconds: int = Field(
        default=900,
        description="Seconds between escalation sweeps",
        ge=0
    )
    sweep_concurrency: int = Field(
        default=10,
        description="Max cases evaluated concurrently within one sweep",
        ge=1,
        le=200
    )
    scheduler_timezone: str = Field(default="UTC", description="Scheduler timezone")

    # ========== Notifications ==========
    notifier_backend: str = Field(
        default="log",
        description="Escalation notifier: slack, email or log"
    )
    notification_timeout_seconds: float = Field(
        default=30.0,
        description="Upper bound on a single escalation dispatch",
        gt=0
    )

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for escalation notifications"
    )
    slack_channel: str = Field(
        default="#soc-escalations",
        description="Slack channel for escalation notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )

    # ========== SMTP Integration ==========
    smtp_host: Optional[str] = Field(default=None, description="SMTP server host")
    smtp_port: int = Field(default=587, description="SMTP server port", ge=1, le=65535)
    smtp_user: Optional[str] = Field(default=None, description="SMTP username")
    smtp_password: Optional[str] = Field(default=None, description="SMTP password")
    smtp_tls: bool = Field(default=True, description="Use TLS (STARTTLS on 587, implicit on 465)")
    smtp_from: Optional[str] = Field(default=None, description="Sender address, defaults to smtp_user")
    escalation_recipients: List[str] = Field(
        default_factory=list,
        description="Senior analyst / admin addresses that receive escalations"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )

    # ========== Grafana OTLP Metrics ==========
    grafana_host: Optional[str] = Field(
        default=None,
        description="Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-eu-west-0.grafana.net)"
    )
    grafana_api_key: Optional[str] = Field(
        default=None,
        description="Grafana API key for OTLP authentication"
    )
    grafana_instance_id: Optional[str] = Field(
        default=None,
        description="Grafana instance ID for OTLP authentication"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("notifier_backend")
    @classmethod
    def validate_notifier_backend(cls, v: str) -> str:
        """Ensure notifier backend is a known one."""
        v = v.lower()
        if v not in VALID_NOTIFIER_BACKENDS:
            raise ValueError(f"notifier_backend must be one of {VALID_NOTIFIER_BACKENDS}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

class Priority(str):
    """Case priority tiers, P1 most urgent."""
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


class CaseStatus(str):
    """Case lifecycle statuses."""
    OPEN = "Open"
    IN_PROGRESS = "InProgress"
    RESOLVED = "Resolved"
    CLOSED = "Closed"


class EscalationState(str):
    """Per-tick escalation state of a case."""
    NOMINAL = "nominal"
    OVERDUE_PENDING = "overdue_pending"
    OVERDUE_ESCALATE = "overdue_escalate"
    TERMINAL = "terminal"


class SweepKind(str):
    """Background sweep cadences."""
    SLA_MONITORING = "sla_monitoring"
    OVERDUE_ESCALATION = "overdue_escalation"


# ========== Lists for validation ==========

VALID_PRIORITIES = [Priority.P1, Priority.P2, Priority.P3]
VALID_STATUSES = [
    CaseStatus.OPEN, CaseStatus.IN_PROGRESS,
    CaseStatus.RESOLVED, CaseStatus.CLOSED
]
TERMINAL_STATUSES = frozenset({CaseStatus.RESOLVED, CaseStatus.CLOSED})
NON_TERMINAL_STATUSES = [CaseStatus.OPEN, CaseStatus.IN_PROGRESS]
VALID_SWEEP_KINDS = [SweepKind.SLA_MONITORING, SweepKind.OVERDUE_ESCALATION]
VALID_NOTIFIER_BACKENDS = ["slack", "email", "log"]

# Default deadlines in minutes per priority tier
DEFAULT_DEADLINE_MINUTES = {
    Priority.P1: 60,
    Priority.P2: 4 * 60,
    Priority.P3: 24 * 60,
}


# Global settings instance
settings = get_settings()
