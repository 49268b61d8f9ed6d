"""
SLA Application DTOs
=====================

Data Transfer Objects for the SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from helpdesk_sla.config import Priority
from helpdesk_sla.sla.domain import (
    EscalationEvent,
    PauseInterval,
    SlaEvaluation,
    SlaRule,
    TargetState,
    TicketClockState,
    TicketSummary,
    TrackedTicket,
)


# ========== Type Aliases for Literals ==========
PriorityStr = Literal["P1", "P2", "P3", "P4"]
TicketStatusStr = Literal["New", "In Progress", "Pending", "Resolved", "Closed", "Reopened"]
SlaTargetStr = Literal["response", "resolution"]
SlaStatusStr = Literal["on_track", "at_risk", "escalated", "breached"]
DeliveryStatusStr = Literal["pending", "delivered", "failed"]


def _blank_to_none(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    return v.strip() or None


def _ensure_utc(v: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps are taken as UTC."""
    if v is None or v.tzinfo is not None:
        return v
    return v.replace(tzinfo=timezone.utc)


# ========== Rule administration ==========

class SlaRuleCreateDTO(BaseModel):
    """DTO for creating an SLA rule."""
    priority: PriorityStr = Field(..., description="Ticket priority the rule covers")
    category: Optional[str] = Field(None, max_length=100, description="Category scope; empty for the global default")
    response_time_hours: float = Field(..., gt=0, description="First response target in hours")
    resolution_time_hours: float = Field(..., gt=0, description="Resolution target in hours")
    escalation_threshold_percent: float = Field(default=80, ge=0, le=100, description="Escalation threshold")
    is_active: bool = Field(default=True)

    @field_validator("category")
    @classmethod
    def normalise_category(cls, v: Optional[str]) -> Optional[str]:
        """Empty category means the global default."""
        return _blank_to_none(v)

    @model_validator(mode="after")
    def validate_targets(self) -> "SlaRuleCreateDTO":
        """Resolution target cannot be shorter than the response target."""
        if self.resolution_time_hours < self.response_time_hours:
            raise ValueError("resolution_time_hours must be >= response_time_hours")
        return self


class SlaRuleUpdateDTO(BaseModel):
    """DTO for a partial rule update; at least one field is required."""
    priority: Optional[PriorityStr] = None
    category: Optional[str] = Field(None, max_length=100)
    response_time_hours: Optional[float] = Field(None, gt=0)
    resolution_time_hours: Optional[float] = Field(None, gt=0)
    escalation_threshold_percent: Optional[float] = Field(None, ge=0, le=100)
    is_active: Optional[bool] = None

    @field_validator("category")
    @classmethod
    def normalise_category(cls, v: Optional[str]) -> Optional[str]:
        """Empty category means the global default."""
        return _blank_to_none(v)

    @model_validator(mode="after")
    def validate_not_empty(self) -> "SlaRuleUpdateDTO":
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        return self

    def changes(self) -> Dict[str, Any]:
        """Fields explicitly sent by the client (category may be cleared with null)."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class SlaRuleResponse(BaseModel):
    """Response model for an SLA rule."""
    id: str
    priority: PriorityStr
    category: Optional[str]
    response_time_hours: float
    resolution_time_hours: float
    escalation_threshold_percent: float
    is_active: bool

    @classmethod
    def from_domain(cls, rule: SlaRule) -> "SlaRuleResponse":
        return cls(
            id=rule.id,
            priority=rule.priority.value,
            category=rule.category,
            response_time_hours=rule.response_time_hours,
            resolution_time_hours=rule.resolution_time_hours,
            escalation_threshold_percent=rule.escalation_threshold_percent,
            is_active=rule.is_active,
        )


class RuleCoverageResponse(BaseModel):
    """Data-integrity view over the active rule table."""
    active_rules: int
    missing_defaults: List[PriorityStr] = Field(default_factory=list)
    ambiguous: List[Dict[str, Any]] = Field(default_factory=list)


# ========== Ticket lifecycle collaborator ==========

class PauseIntervalDTO(BaseModel):
    """A pause interval; omit `end` while the ticket is still paused."""
    start: datetime
    end: Optional[datetime] = None

    @field_validator("start", "end")
    @classmethod
    def normalise_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(v)


class TicketIngestDTO(BaseModel):
    """Clock state and summary of one ticket supplied by the lifecycle collaborator."""
    id: str = Field(..., min_length=1, max_length=64, description="Ticket ID")
    ticket_number: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=500)
    priority: PriorityStr
    category: Optional[str] = Field(None, max_length=100)
    status: TicketStatusStr = "New"
    assignee_id: Optional[str] = None
    team_id: Optional[str] = None
    created_at: datetime
    pause_intervals: List[PauseIntervalDTO] = Field(default_factory=list)
    first_response_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @field_validator("category")
    @classmethod
    def normalise_category(cls, v: Optional[str]) -> Optional[str]:
        """Empty category means the global default."""
        return _blank_to_none(v)

    @field_validator("created_at", "first_response_at", "resolved_at")
    @classmethod
    def normalise_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(v)

    def to_domain(self) -> TrackedTicket:
        """Convert to domain entity."""
        return TrackedTicket(
            summary=TicketSummary(
                ticket_id=self.id,
                ticket_number=self.ticket_number,
                title=self.title,
                priority=Priority(self.priority),
                category=self.category,
                status=self.status,
                assignee_id=self.assignee_id,
                team_id=self.team_id,
            ),
            clock=TicketClockState(
                ticket_id=self.id,
                created_at=self.created_at,
                pauses=tuple(PauseInterval(p.start, p.end) for p in self.pause_intervals),
                first_response_at=self.first_response_at,
                resolved_at=self.resolved_at,
            ),
        )


class TicketIngestRequest(BaseModel):
    """Request model for ticket ingestion."""
    tickets: List[TicketIngestDTO] = Field(..., min_length=1, description="Tickets to upsert")


class IngestResponse(BaseModel):
    """Response model for ticket ingestion."""
    created: int = Field(..., description="Number of new tickets created")
    updated: int = Field(..., description="Number of existing tickets updated")
    failed: int = Field(default=0, description="Number of rejected tickets")
    errors: List[str] = Field(default_factory=list, description="Error messages")


class StatusChangeRequest(BaseModel):
    """A ticket status transition as seen by the lifecycle collaborator."""
    status: TicketStatusStr
    changed_at: datetime

    @field_validator("changed_at")
    @classmethod
    def normalise_timestamp(cls, v: datetime) -> datetime:
        return _ensure_utc(v)


class FirstResponseRequest(BaseModel):
    """Timestamp of the first agent response."""
    responded_at: datetime

    @field_validator("responded_at")
    @classmethod
    def normalise_timestamp(cls, v: datetime) -> datetime:
        return _ensure_utc(v)


# ========== Read path ==========

class TargetStatusResponse(BaseModel):
    """SLA status of a single target."""
    status: SlaStatusStr
    final: bool
    deadline: Optional[datetime] = None

    @classmethod
    def from_domain(cls, state: TargetState) -> "TargetStatusResponse":
        return cls(status=state.status.value, final=state.final, deadline=state.deadline)


class TicketSlaResponse(BaseModel):
    """Last persisted SLA evaluation of a ticket."""
    ticket_id: str
    rule_id: Optional[str]
    computed_at: datetime
    response: TargetStatusResponse
    resolution: TargetStatusResponse

    @classmethod
    def from_domain(cls, evaluation: SlaEvaluation) -> "TicketSlaResponse":
        return cls(
            ticket_id=evaluation.ticket_id,
            rule_id=evaluation.rule_id,
            computed_at=evaluation.computed_at,
            response=TargetStatusResponse.from_domain(evaluation.response),
            resolution=TargetStatusResponse.from_domain(evaluation.resolution),
        )


class EscalationEventResponse(BaseModel):
    """Escalation event with its delivery state."""
    id: Optional[str]
    ticket_id: str
    target: SlaTargetStr
    status: SlaStatusStr
    occurred_at: datetime
    rule_id: Optional[str] = None
    delivery_status: DeliveryStatusStr
    attempts: int
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    delivered_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, event: EscalationEvent) -> "EscalationEventResponse":
        return cls(
            id=event.id,
            ticket_id=event.ticket_id,
            target=event.target.value,
            status=event.status.value,
            occurred_at=event.occurred_at,
            rule_id=event.rule_id,
            delivery_status=event.delivery_status.value,
            attempts=event.attempts,
            next_attempt_at=event.next_attempt_at,
            last_error=event.last_error,
            delivered_at=event.delivered_at,
        )


# ========== Operations ==========

class SweepRunRequest(BaseModel):
    """Manual sweep trigger."""
    dispatch: bool = Field(default=True, description="Drain the notification outbox after the pass")


class SweepRunResponse(BaseModel):
    """Outcome of a manually triggered sweep."""
    sweep: Dict[str, Any]
    dispatch: Optional[Dict[str, Any]] = None
