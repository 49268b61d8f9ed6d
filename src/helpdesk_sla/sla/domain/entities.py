"""
SLA Domain Entities
====================

Pure Python domain entities for SLA evaluation and escalation.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple

from helpdesk_sla.config import Priority, SlaStatus, SlaTarget, DeliveryStatus
from helpdesk_sla.core.exceptions import ClockStateInvalid, StatusDowngradeError


@dataclass(frozen=True)
class SlaRule:
    """
    Service-level rule for a priority, optionally scoped to a category.

    A rule without a category is the global default for its priority.
    """

    id: str
    priority: Priority
    response_time_hours: float
    resolution_time_hours: float
    escalation_threshold_percent: float = 80
    category: Optional[str] = None
    is_active: bool = True

    def __post_init__(self):
        """Validate targets and normalise the category."""
        object.__setattr__(self, "priority", Priority(self.priority))
        if self.category is not None:
            object.__setattr__(self, "category", self.category.strip() or None)

        if self.response_time_hours <= 0:
            raise ValueError("response_time_hours must be positive")
        if self.resolution_time_hours <= 0:
            raise ValueError("resolution_time_hours must be positive")
        if self.resolution_time_hours < self.response_time_hours:
            raise ValueError("resolution_time_hours cannot be lower than response_time_hours")
        if not 0 <= self.escalation_threshold_percent <= 100:
            raise ValueError("escalation_threshold_percent must be between 0 and 100")

    @property
    def is_global_default(self) -> bool:
        return self.category is None

    def target_hours(self, target: SlaTarget) -> float:
        if target == SlaTarget.RESPONSE:
            return self.response_time_hours
        return self.resolution_time_hours


@dataclass(frozen=True)
class PauseInterval:
    """A span of ticket lifetime excluded from SLA accrual. Open while end is None."""

    start: datetime
    end: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.end is None


@dataclass(frozen=True)
class TicketClockState:
    """
    Lifecycle timestamps the SLA clock is computed from.

    Owned by the ticket lifecycle collaborator; the engine only reads it.
    """

    ticket_id: str
    created_at: datetime
    pauses: Tuple[PauseInterval, ...] = ()
    first_response_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def validate(self) -> None:
        """Raise ClockStateInvalid unless pauses are ordered, disjoint and well formed."""
        previous_end = self.created_at
        for index, interval in enumerate(self.pauses):
            if interval.start < previous_end:
                if index == 0:
                    reason = "pause starts before ticket creation"
                else:
                    reason = f"pause #{index} overlaps or precedes the previous pause"
                raise ClockStateInvalid(self.ticket_id, reason)
            if interval.is_open:
                if index != len(self.pauses) - 1:
                    raise ClockStateInvalid(self.ticket_id, "only the last pause may be open")
                continue
            if interval.end < interval.start:
                raise ClockStateInvalid(self.ticket_id, f"pause #{index} ends before it starts")
            previous_end = interval.end

        if self.first_response_at and self.first_response_at < self.created_at:
            raise ClockStateInvalid(self.ticket_id, "first_response_at is before created_at")
        if self.resolved_at and self.resolved_at < self.created_at:
            raise ClockStateInvalid(self.ticket_id, "resolved_at is before created_at")

    @property
    def open_pause(self) -> Optional[PauseInterval]:
        if self.pauses and self.pauses[-1].is_open:
            return self.pauses[-1]
        return None

    def is_paused(self, as_of: datetime) -> bool:
        pause = self.open_pause
        return pause is not None and pause.start <= as_of

    def event_at(self, target: SlaTarget) -> Optional[datetime]:
        """Timestamp of the lifecycle event that stops the target's clock."""
        if target == SlaTarget.RESPONSE:
            return self.first_response_at
        return self.resolved_at


@dataclass(frozen=True)
class TicketSummary:
    """Ticket fields used for rule resolution and notification content."""

    ticket_id: str
    ticket_number: str
    title: str
    priority: Priority
    category: Optional[str] = None
    status: Optional[str] = None
    assignee_id: Optional[str] = None
    team_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "priority", Priority(self.priority))


@dataclass(frozen=True)
class TrackedTicket:
    """A ticket as supplied by the lifecycle collaborator."""

    summary: TicketSummary
    clock: TicketClockState

    @property
    def id(self) -> str:
        return self.summary.ticket_id


class TargetState:
    """
    Status of one SLA target. The status setter rejects downgrades.

    A target becomes final once its lifecycle event occurred or it breached;
    final targets are not re-evaluated.
    """

    def __init__(
        self,
        target: SlaTarget,
        status: SlaStatus = SlaStatus.ON_TRACK,
        final: bool = False,
        deadline: Optional[datetime] = None,
    ):
        self.target = SlaTarget(target)
        self._status = SlaStatus(status)
        self.final = final
        self.deadline = deadline

    def __repr__(self) -> str:
        return (
            f"TargetState(target={self.target.value!r}, status={self._status.value!r}, "
            f"final={self.final!r}, deadline={self.deadline!r})"
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TargetState):
            return NotImplemented
        return (self.target, self._status, self.final, self.deadline) == (
            other.target, other._status, other.final, other.deadline
        )

    @property
    def status(self) -> SlaStatus:
        return self._status

    @status.setter
    def status(self, value: SlaStatus) -> None:
        value = SlaStatus(value)
        if self._status.is_above(value):
            raise StatusDowngradeError(self.target, self._status, value)
        self._status = value


@dataclass
class SlaEvaluation:
    """
    Last known SLA evaluation of a ticket.

    Regenerated on every sweep pass; the stored value only lives long enough
    to detect a transition.
    """

    ticket_id: str
    rule_id: Optional[str]
    computed_at: datetime
    response: TargetState = field(default_factory=lambda: TargetState(SlaTarget.RESPONSE))
    resolution: TargetState = field(default_factory=lambda: TargetState(SlaTarget.RESOLUTION))

    @property
    def response_status(self) -> SlaStatus:
        return self.response.status

    @property
    def resolution_status(self) -> SlaStatus:
        return self.resolution.status

    @property
    def is_final(self) -> bool:
        return self.response.final and self.resolution.final

    def target_state(self, target: SlaTarget) -> TargetState:
        if target == SlaTarget.RESPONSE:
            return self.response
        return self.resolution

    def advance(
        self,
        target: SlaTarget,
        status: SlaStatus,
        final: bool,
        deadline: Optional[datetime],
    ) -> Optional[Tuple[SlaStatus, SlaStatus]]:
        """
        Merge a fresh computation into a target.

        Final targets are left untouched and lower statuses never replace
        higher ones. Returns (previous, new) when the status moved up.
        """
        state = self.target_state(target)
        if state.final:
            return None

        previous = state.status
        state.deadline = deadline
        state.final = final or status == SlaStatus.BREACHED
        if status.is_above(previous):
            state.status = status
            return previous, status
        return None

    def to_dict(self) -> Dict[str, object]:
        """Convert to dictionary for API responses."""
        return {
            "ticket_id": self.ticket_id,
            "rule_id": self.rule_id,
            "computed_at": self.computed_at.isoformat(),
            "response": _target_dict(self.response),
            "resolution": _target_dict(self.resolution),
        }


def _target_dict(state: TargetState) -> Dict[str, object]:
    return {
        "status": state.status.value,
        "final": state.final,
        "deadline": state.deadline.isoformat() if state.deadline else None,
    }


@dataclass
class EscalationEvent:
    """
    Escalation emitted once per (ticket, target, status) transition.

    Also serves as the outbox record tracking delivery to the notifier.
    """

    ticket_id: str
    target: SlaTarget
    status: SlaStatus
    occurred_at: datetime
    rule_id: Optional[str] = None
    id: Optional[str] = None

    # Delivery tracking
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    delivered_at: Optional[datetime] = None

    @property
    def idempotency_key(self) -> Tuple[str, str, str]:
        return (self.ticket_id, SlaTarget(self.target).value, SlaStatus(self.status).value)

    def mark_delivered(self, timestamp: datetime) -> None:
        self.delivery_status = DeliveryStatus.DELIVERED
        self.delivered_at = timestamp
        self.next_attempt_at = None
        self.last_error = None

    def schedule_retry(self, error: str, next_attempt_at: datetime) -> None:
        self.last_error = error
        self.next_attempt_at = next_attempt_at

    def mark_failed(self, error: str) -> None:
        self.delivery_status = DeliveryStatus.FAILED
        self.next_attempt_at = None
        self.last_error = error
