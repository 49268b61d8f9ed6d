"""
SLA Controllers (API Routes)
=============================

FastAPI routes for SLA rule administration, ticket clock updates and the
escalation read path.

Controllers are thin - they delegate to application services.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from helpdesk_sla.config import settings
from helpdesk_sla.sla.application import (
    EscalationDispatcher,
    EscalationEventResponse,
    EscalationSweeper,
    FirstResponseRequest,
    IngestResponse,
    RuleCoverageResponse,
    SlaRuleCreateDTO,
    SlaRuleResponse,
    SlaRuleService,
    SlaRuleUpdateDTO,
    SlaStatusService,
    StatusChangeRequest,
    SweepRunRequest,
    SweepRunResponse,
    TicketIngestRequest,
    TicketLifecycleService,
    TicketSlaResponse,
    UnitOfWorkFactory,
)
from helpdesk_sla.sla.infrastructure import SQLAlchemyUnitOfWork
from helpdesk_sla.shared.infrastructure.logging import get_context_logger, get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA Escalation"])


# ========== Example payloads for Swagger ==========

RULE_EXAMPLE = {
    "id": "7f1c0b8e-2a4d-4a47-9d0e-3c1b5d6f8a90",
    "priority": "P1",
    "category": None,
    "response_time_hours": 4,
    "resolution_time_hours": 24,
    "escalation_threshold_percent": 80,
    "is_active": True
}

TICKET_SLA_RESPONSE_EXAMPLE = {
    "ticket_id": "TCK-1042",
    "rule_id": "7f1c0b8e-2a4d-4a47-9d0e-3c1b5d6f8a90",
    "computed_at": "2024-01-15T13:30:00Z",
    "response": {"status": "escalated", "final": False, "deadline": "2024-01-15T14:00:00Z"},
    "resolution": {"status": "on_track", "final": False, "deadline": "2024-01-16T10:00:00Z"}
}


# ========== Dependencies ==========

def get_uow_factory(request: Request) -> UnitOfWorkFactory:
    """Unit of work factory; the app may install its own on app.state."""
    return getattr(request.app.state, "uow_factory", SQLAlchemyUnitOfWork)


def get_rule_service(uow_factory: UnitOfWorkFactory = Depends(get_uow_factory)) -> SlaRuleService:
    """Get SLA rule service instance."""
    return SlaRuleService(uow_factory)


def get_lifecycle_service(
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory)
) -> TicketLifecycleService:
    """Get ticket lifecycle service instance."""
    return TicketLifecycleService(uow_factory, settings.sla_paused_statuses)


def get_status_service(uow_factory: UnitOfWorkFactory = Depends(get_uow_factory)) -> SlaStatusService:
    """Get SLA read service instance."""
    return SlaStatusService(uow_factory)


def get_sweeper(request: Request) -> EscalationSweeper:
    sweeper = getattr(request.app.state, "sweeper", None)
    if sweeper is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Escalation sweeper not initialized"
        )
    return sweeper


def get_dispatcher(request: Request) -> Optional[EscalationDispatcher]:
    return getattr(request.app.state, "dispatcher", None)


# ========== Rule administration ==========

@router.get(
    "/rules",
    response_model=List[SlaRuleResponse],
    summary="List SLA rules",
    description="Rules ordered by priority, then category (global default first)."
)
async def list_rules(
    active_only: bool = Query(False, description="Only return active rules"),
    service: SlaRuleService = Depends(get_rule_service)
):
    rules = await service.list_rules(active_only=active_only)
    return [SlaRuleResponse.from_domain(rule) for rule in rules]


@router.post(
    "/rules",
    response_model=SlaRuleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an SLA rule",
    description="""
    Create a rule for a priority, optionally scoped to a category.

    A rule without category is the global default for its priority. At most
    one active rule may cover a priority/category pair; a second one is
    rejected with 409.
    """,
    responses={
        201: {"content": {"application/json": {"example": RULE_EXAMPLE}}},
        409: {"description": "An active rule already covers this priority/category"}
    }
)
async def create_rule(
    request: SlaRuleCreateDTO,
    service: SlaRuleService = Depends(get_rule_service)
):
    rule = await service.create_rule(request)
    return SlaRuleResponse.from_domain(rule)


@router.get(
    "/rules/coverage",
    response_model=RuleCoverageResponse,
    summary="Rule table integrity",
    description="Priorities without a global default and slots claimed by several active rules."
)
async def rule_coverage(service: SlaRuleService = Depends(get_rule_service)):
    snapshot = await service.coverage()
    return RuleCoverageResponse(
        active_rules=len(snapshot),
        missing_defaults=[priority.value for priority in snapshot.missing_defaults],
        ambiguous=[issue.to_dict() for issue in snapshot.integrity_issues]
    )


@router.get("/rules/{rule_id}", response_model=SlaRuleResponse, summary="Get an SLA rule")
async def get_rule(rule_id: str, service: SlaRuleService = Depends(get_rule_service)):
    return SlaRuleResponse.from_domain(await service.get_rule(rule_id))


@router.patch(
    "/rules/{rule_id}",
    response_model=SlaRuleResponse,
    summary="Update an SLA rule",
    description="Partial update. Send `category: null` to turn a rule into the global default."
)
async def update_rule(
    rule_id: str,
    request: SlaRuleUpdateDTO,
    service: SlaRuleService = Depends(get_rule_service)
):
    return SlaRuleResponse.from_domain(await service.update_rule(rule_id, request))


@router.post(
    "/rules/{rule_id}/deactivate",
    response_model=SlaRuleResponse,
    summary="Deactivate an SLA rule"
)
async def deactivate_rule(rule_id: str, service: SlaRuleService = Depends(get_rule_service)):
    return SlaRuleResponse.from_domain(await service.deactivate_rule(rule_id))


@router.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an SLA rule"
)
async def delete_rule(rule_id: str, service: SlaRuleService = Depends(get_rule_service)):
    await service.delete_rule(rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ========== Ticket lifecycle collaborator ==========

@router.post(
    "/tickets",
    response_model=IngestResponse,
    summary="Upsert ticket clock state",
    description="""
    Upsert a batch of tickets with the timestamps the SLA clock needs.

    **Idempotent**: tickets are identified by `id`; re-sending a ticket
    replaces its stored clock state.

    Tickets are rejected individually when their priority has no active
    global default rule or their pause intervals overlap.
    """
)
async def ingest_tickets(
    request: TicketIngestRequest,
    service: TicketLifecycleService = Depends(get_lifecycle_service)
):
    return await service.ingest([ticket.to_domain() for ticket in request.tickets])


@router.post(
    "/tickets/{ticket_id}/status",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Record a ticket status change",
    description="Entering a paused status (default: Pending) pauses the SLA clock; leaving it resumes."
)
async def record_status_change(
    ticket_id: str,
    request: StatusChangeRequest,
    service: TicketLifecycleService = Depends(get_lifecycle_service)
):
    await service.record_status_change(ticket_id, request.status, request.changed_at)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/tickets/{ticket_id}/first-response",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Record the first agent response"
)
async def record_first_response(
    ticket_id: str,
    request: FirstResponseRequest,
    service: TicketLifecycleService = Depends(get_lifecycle_service)
):
    await service.record_first_response(ticket_id, request.responded_at)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ========== Read path ==========

@router.get(
    "/tickets/{ticket_id}",
    response_model=TicketSlaResponse,
    summary="Get ticket SLA status",
    description="Last evaluation persisted by the sweeper. Never computed on request.",
    responses={
        200: {"content": {"application/json": {"example": TICKET_SLA_RESPONSE_EXAMPLE}}},
        404: {"description": "Ticket not evaluated yet"}
    }
)
async def get_ticket_sla(ticket_id: str, service: SlaStatusService = Depends(get_status_service)):
    return TicketSlaResponse.from_domain(await service.get_evaluation(ticket_id))


@router.get(
    "/tickets/{ticket_id}/events",
    response_model=List[EscalationEventResponse],
    summary="List escalation events of a ticket"
)
async def list_ticket_events(ticket_id: str, service: SlaStatusService = Depends(get_status_service)):
    events = await service.list_events(ticket_id)
    return [EscalationEventResponse.from_domain(event) for event in events]


# ========== Operations ==========

@router.post(
    "/sweeps",
    response_model=SweepRunResponse,
    summary="Run an escalation sweep now",
    description="Runs one sweep pass over this process's partition, then drains due notifications."
)
async def run_sweep(
    http_request: Request,
    request: Optional[SweepRunRequest] = None,
    sweeper: EscalationSweeper = Depends(get_sweeper),
    dispatcher: Optional[EscalationDispatcher] = Depends(get_dispatcher)
):
    request = request or SweepRunRequest()
    request_logger = get_context_logger(
        __name__, getattr(http_request.state, "correlation_id", None)
    )
    request_logger.info("Manual escalation sweep requested")

    report = await sweeper.run_once()
    dispatch = None
    if request.dispatch and dispatcher is not None:
        dispatch = (await dispatcher.dispatch_due()).to_dict()

    return SweepRunResponse(sweep=report.to_dict(), dispatch=dispatch)


# Export router for inclusion in main app
sla_router = router
