"""
SLA Domain Layer
================

Domain layer for the SLA engine.

Contains:
- Entities: SlaRule, TicketClockState, SlaEvaluation, EscalationEvent
- Value Objects: RuleSnapshot (rule resolution), EscalationPolicy
- Domain Services: ClockCalculator, StatusEvaluator

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from helpdesk_sla.sla.domain.entities import (
    SlaRule,
    PauseInterval,
    TicketClockState,
    TicketSummary,
    TrackedTicket,
    TargetState,
    SlaEvaluation,
    EscalationEvent,
)
from helpdesk_sla.sla.domain.value_objects import (
    RuleSnapshot,
    IntegrityIssue,
    EscalationPolicy,
    roles_for,
)
from helpdesk_sla.sla.domain.calculators import (
    ClockCalculator,
    StatusEvaluator,
    TargetEvaluation,
)

__all__ = [
    # Entities
    "SlaRule",
    "PauseInterval",
    "TicketClockState",
    "TicketSummary",
    "TrackedTicket",
    "TargetState",
    "SlaEvaluation",
    "EscalationEvent",
    # Value Objects
    "RuleSnapshot",
    "IntegrityIssue",
    "EscalationPolicy",
    "roles_for",
    # Domain Services
    "ClockCalculator",
    "StatusEvaluator",
    "TargetEvaluation",
]
