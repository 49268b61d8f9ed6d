"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="helpdesk-sla", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/helpdesk",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Escalation Sweep ==========
    sla_sweep_interval_seconds: int = Field(
        default=60,
        description="Seconds between escalation sweep passes (0 disables the scheduler)",
        ge=0
    )
    sla_sweep_batch_size: int = Field(
        default=200,
        description="Tickets evaluated per batch; shutdown waits for the in-flight batch",
        ge=1
    )
    sla_sweep_concurrency: int = Field(
        default=1,
        description="In-process workers, each owning a disjoint sub-partition",
        ge=1,
        le=32
    )
    sla_partition_index: int = Field(
        default=0,
        description="Partition owned by this process",
        ge=0
    )
    sla_partition_count: int = Field(
        default=1,
        description="Total number of sweep partitions across processes",
        ge=1
    )

    # ========== SLA Evaluation ==========
    sla_at_risk_ratio: float = Field(
        default=0.75,
        description="Fraction of the escalation threshold at which a target becomes at_risk",
        gt=0.0,
        le=1.0
    )
    sla_paused_statuses: List[str] = Field(
        default=["Pending"],
        description="Ticket statuses that pause the SLA clock"
    )
    escalation_policy_path: Path = Field(
        default=Path("escalation_policy.yaml"),
        description="Path to the escalation policy YAML file"
    )

    # ========== Notifier ==========
    notifier_webhook_url: Optional[str] = Field(
        default=None,
        description="Notification collaborator webhook URL"
    )
    notifier_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for a single notifier call",
        ge=0.1,
        le=30
    )
    notifier_max_attempts: int = Field(
        default=5,
        description="Delivery attempts before an event is marked failed",
        ge=1
    )
    notifier_backoff_base_seconds: float = Field(
        default=30.0,
        description="Base delay for exponential redelivery backoff",
        ge=0
    )
    notifier_backoff_max_seconds: float = Field(
        default=1800.0,
        description="Upper bound for the redelivery delay",
        ge=0
    )
    notifier_batch_size: int = Field(
        default=100,
        description="Pending events dispatched per pass",
        ge=1
    )
    notifier_lease_seconds: float = Field(
        default=300.0,
        description="How long a dispatcher owns a claimed event before it is due again",
        ge=60
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
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
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @model_validator(mode="after")
    def validate_partition(self) -> "Settings":
        """Partition index must address an existing partition."""
        if self.sla_partition_index >= self.sla_partition_count:
            raise ValueError("sla_partition_index must be lower than sla_partition_count")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class Priority(str, Enum):
    """Ticket priority levels."""
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"


class TicketStatus(str, Enum):
    """Ticket lifecycle statuses."""
    NEW = "New"
    IN_PROGRESS = "In Progress"
    PENDING = "Pending"
    RESOLVED = "Resolved"
    CLOSED = "Closed"
    REOPENED = "Reopened"


class SlaTarget(str, Enum):
    """The two SLA clocks tracked per ticket."""
    RESPONSE = "response"
    RESOLUTION = "resolution"


class SlaStatus(str, Enum):
    """SLA status of a single target, ordered by severity."""
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    ESCALATED = "escalated"
    BREACHED = "breached"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def is_above(self, other: "SlaStatus") -> bool:
        return self.rank > other.rank


_STATUS_RANK = {
    SlaStatus.ON_TRACK: 0,
    SlaStatus.AT_RISK: 1,
    SlaStatus.ESCALATED: 2,
    SlaStatus.BREACHED: 3,
}


class DeliveryStatus(str, Enum):
    """Delivery state of an escalation event."""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class Severity(str, Enum):
    """Escalation severity communicated to recipients."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ========== Lists for validation ==========

VALID_PRIORITIES = [p.value for p in Priority]
VALID_TICKET_STATUSES = [s.value for s in TicketStatus]
RESOLVED_STATUSES = [TicketStatus.RESOLVED.value, TicketStatus.CLOSED.value]
ESCALATION_STATUSES = [SlaStatus.ESCALATED, SlaStatus.BREACHED]
