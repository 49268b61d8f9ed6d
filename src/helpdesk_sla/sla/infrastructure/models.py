"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for SLA module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from helpdesk_sla.config import DeliveryStatus, SlaStatus
from helpdesk_sla.infrastructure.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SlaRuleModel(Base):
    """
    Database model for SlaRule entity.

    Maps to the 'sla_rules' table. A NULL category is the priority's
    global default.
    """
    __tablename__ = "sla_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Targets
    response_time_hours: Mapped[float] = mapped_column(Float, nullable=False)
    resolution_time_hours: Mapped[float] = mapped_column(Float, nullable=False)
    escalation_threshold_percent: Mapped[float] = mapped_column(Float, nullable=False, default=80)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


# At most one active rule per (priority, category) slot; NULL category is its own slot.
Index(
    "uq_sla_rules_active_slot",
    SlaRuleModel.priority,
    func.coalesce(SlaRuleModel.category, ""),
    unique=True,
    postgresql_where=SlaRuleModel.is_active.is_(True),
    sqlite_where=SlaRuleModel.is_active.is_(True),
)


class TicketModel(Base):
    """
    Database model for the SLA view of a ticket.

    Maps to the 'tickets' table. The lifecycle collaborator owns the ticket;
    only the fields the SLA clock and notifications need are stored.
    """
    __tablename__ = "tickets"

    # Business identifier from the lifecycle collaborator
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    ticket_number: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)

    # Rule resolution attributes
    priority: Mapped[str] = mapped_column(String(10), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Notification routing
    assignee_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # SLA clock
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    first_response_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class PauseIntervalModel(Base):
    """
    Database model for a ticket pause interval.

    Maps to the 'ticket_pause_intervals' table. ended_at is NULL while open.
    """
    __tablename__ = "ticket_pause_intervals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class SlaEvaluationModel(Base):
    """
    Database model for SlaEvaluation entity.

    Maps to the 'sla_evaluations' table, one row per ticket.
    """
    __tablename__ = "sla_evaluations"

    ticket_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tickets.id", ondelete="CASCADE"), primary_key=True
    )
    rule_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Response target
    response_status: Mapped[str] = mapped_column(String(20), nullable=False, default=SlaStatus.ON_TRACK.value)
    response_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    response_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Resolution target
    resolution_status: Mapped[str] = mapped_column(String(20), nullable=False, default=SlaStatus.ON_TRACK.value)
    resolution_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolution_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class EscalationEventModel(Base):
    """
    Database model for EscalationEvent entity.

    Maps to the 'sla_escalation_events' table. The unique constraint makes
    event emission idempotent per (ticket, target, status).
    """
    __tablename__ = "sla_escalation_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    target: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    rule_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    # Delivery tracking
    delivery_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeliveryStatus.PENDING.value, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("ticket_id", "target", "status", name="uq_escalation_event_transition"),
    )
