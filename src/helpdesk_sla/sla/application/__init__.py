"""
SLA Application Layer
======================

Application layer for the SLA escalation engine.

Contains:
- Services: Orchestrate business logic and coordinate with repositories
- Sweeper / Dispatcher: the background escalation pass and outbox delivery
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from helpdesk_sla.sla.application.dto import (
    SlaRuleCreateDTO,
    SlaRuleUpdateDTO,
    SlaRuleResponse,
    RuleCoverageResponse,
    TicketIngestDTO,
    TicketIngestRequest,
    IngestResponse,
    StatusChangeRequest,
    FirstResponseRequest,
    TicketSlaResponse,
    EscalationEventResponse,
    SweepRunRequest,
    SweepRunResponse,
)
from helpdesk_sla.sla.application.services import (
    SlaRuleService,
    TicketLifecycleService,
    SlaStatusService,
    ISlaRuleRepository,
    ITicketRepository,
    ISlaEvaluationRepository,
    IEscalationEventRepository,
    IUnitOfWork,
    UnitOfWorkFactory,
    INotifier,
    IEscalationPolicyProvider,
)
from helpdesk_sla.sla.application.sweeper import EscalationSweeper, SweepReport, owns_ticket
from helpdesk_sla.sla.application.dispatcher import EscalationDispatcher, DispatchReport

__all__ = [
    # DTOs
    "SlaRuleCreateDTO",
    "SlaRuleUpdateDTO",
    "SlaRuleResponse",
    "RuleCoverageResponse",
    "TicketIngestDTO",
    "TicketIngestRequest",
    "IngestResponse",
    "StatusChangeRequest",
    "FirstResponseRequest",
    "TicketSlaResponse",
    "EscalationEventResponse",
    "SweepRunRequest",
    "SweepRunResponse",
    # Services
    "SlaRuleService",
    "TicketLifecycleService",
    "SlaStatusService",
    "EscalationSweeper",
    "SweepReport",
    "owns_ticket",
    "EscalationDispatcher",
    "DispatchReport",
    # Repository Interfaces
    "ISlaRuleRepository",
    "ITicketRepository",
    "ISlaEvaluationRepository",
    "IEscalationEventRepository",
    "IUnitOfWork",
    "UnitOfWorkFactory",
    "INotifier",
    "IEscalationPolicyProvider",
]
