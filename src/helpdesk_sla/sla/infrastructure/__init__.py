"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for the SLA engine:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and unit of work
- External: Notifier adapters, policy file watcher, sweep scheduler
"""

from helpdesk_sla.sla.infrastructure.models import (
    SlaRuleModel,
    TicketModel,
    PauseIntervalModel,
    SlaEvaluationModel,
    EscalationEventModel,
)
from helpdesk_sla.sla.infrastructure.repositories import (
    SQLAlchemySlaRuleRepository,
    SQLAlchemyTicketRepository,
    SQLAlchemySlaEvaluationRepository,
    SQLAlchemyEscalationEventRepository,
    SQLAlchemyUnitOfWork,
)
from helpdesk_sla.sla.infrastructure.external import (
    EscalationPolicyManager,
    CircuitBreaker,
    CircuitState,
    WebhookNotifier,
    LoggingNotifier,
    SweepScheduler,
    build_escalation_message,
    build_payload,
)

__all__ = [
    "SlaRuleModel",
    "TicketModel",
    "PauseIntervalModel",
    "SlaEvaluationModel",
    "EscalationEventModel",
    "SQLAlchemySlaRuleRepository",
    "SQLAlchemyTicketRepository",
    "SQLAlchemySlaEvaluationRepository",
    "SQLAlchemyEscalationEventRepository",
    "SQLAlchemyUnitOfWork",
    "EscalationPolicyManager",
    "CircuitBreaker",
    "CircuitState",
    "WebhookNotifier",
    "LoggingNotifier",
    "SweepScheduler",
    "build_escalation_message",
    "build_payload",
]
