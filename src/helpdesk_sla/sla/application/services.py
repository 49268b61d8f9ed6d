"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Callable, FrozenSet, Iterable, List, Optional
from uuid import uuid4

from helpdesk_sla.config import Priority, RESOLVED_STATUSES
from helpdesk_sla.core.exceptions import (
    ClockStateInvalid,
    ConflictException,
    NoApplicableRule,
    ResourceNotFoundException,
    ValidationException,
)
from helpdesk_sla.sla.application.dto import (
    IngestResponse,
    SlaRuleCreateDTO,
    SlaRuleUpdateDTO,
)
from helpdesk_sla.sla.domain import (
    EscalationEvent,
    EscalationPolicy,
    PauseInterval,
    RuleSnapshot,
    SlaEvaluation,
    SlaRule,
    TicketSummary,
    TrackedTicket,
)
from helpdesk_sla.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ISlaRuleRepository(ABC):
    """Interface for SLA rule data access."""

    @abstractmethod
    async def list(self, active_only: bool = False) -> List[SlaRule]:
        """List rules ordered by priority, then category."""

    @abstractmethod
    async def get(self, rule_id: str) -> Optional[SlaRule]:
        """Get rule by ID."""

    @abstractmethod
    async def add(self, rule: SlaRule) -> SlaRule:
        """Create new rule."""

    @abstractmethod
    async def update(self, rule: SlaRule) -> SlaRule:
        """Replace an existing rule."""

    @abstractmethod
    async def delete(self, rule_id: str) -> bool:
        """Delete rule; returns False when it did not exist."""


class ITicketRepository(ABC):
    """Interface for ticket clock state access."""

    @abstractmethod
    async def get(self, ticket_id: str) -> Optional[TrackedTicket]:
        """Get ticket summary and clock state."""

    @abstractmethod
    async def get_summary(self, ticket_id: str) -> Optional[TicketSummary]:
        """Get the fields needed for notification content."""

    @abstractmethod
    async def save(self, ticket: TrackedTicket) -> bool:
        """Upsert a ticket; returns True when it was created."""

    @abstractmethod
    async def list_unfinished_ids(self) -> List[str]:
        """IDs of tickets whose evaluation is missing or not yet final, ordered by ID."""


class ISlaEvaluationRepository(ABC):
    """Interface for persisted SLA evaluations."""

    @abstractmethod
    async def get(self, ticket_id: str) -> Optional[SlaEvaluation]:
        """Get the last evaluation of a ticket."""

    @abstractmethod
    async def save(self, evaluation: SlaEvaluation) -> None:
        """Upsert an evaluation."""


class IEscalationEventRepository(ABC):
    """Interface for the escalation event outbox."""

    @abstractmethod
    async def add_if_absent(self, event: EscalationEvent) -> bool:
        """Insert unless (ticket_id, target, status) already exists; returns True if inserted."""

    @abstractmethod
    async def get(self, event_id: str) -> Optional[EscalationEvent]:
        """Get event by ID."""

    @abstractmethod
    async def list_due(self, now: datetime, limit: int) -> List[EscalationEvent]:
        """Pending events whose next attempt is due, oldest first."""

    @abstractmethod
    async def claim(self, event_id: str, now: datetime, lease_until: datetime) -> bool:
        """
        Take ownership of a due event by pushing its next attempt to `lease_until`.

        Returns False when the event is no longer pending or another
        dispatcher already holds a lease on it.
        """

    @abstractmethod
    async def update(self, event: EscalationEvent) -> None:
        """Persist delivery state."""

    @abstractmethod
    async def list_for_ticket(self, ticket_id: str) -> List[EscalationEvent]:
        """All events of a ticket, oldest first."""


class IUnitOfWork(ABC):
    """
    Groups the repositories on one transaction.

    Leaving the context commits; an exception rolls back.
    """

    rules: ISlaRuleRepository
    tickets: ITicketRepository
    evaluations: ISlaEvaluationRepository
    events: IEscalationEventRepository

    async def __aenter__(self) -> "IUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()

    @abstractmethod
    async def commit(self) -> None:
        """Commit the transaction."""

    @abstractmethod
    async def rollback(self) -> None:
        """Roll back the transaction."""


UnitOfWorkFactory = Callable[[], IUnitOfWork]


class INotifier(ABC):
    """Interface for the notification collaborator."""

    @abstractmethod
    async def notify(
        self,
        event: EscalationEvent,
        summary: TicketSummary,
        roles: FrozenSet[str]
    ) -> None:
        """
        Deliver an escalation.

        Raises:
            TransientFailure: delivery may succeed if retried
            NotificationRejected: delivery will never succeed
        """


class IEscalationPolicyProvider(ABC):
    """Interface for escalation policy access."""

    @abstractmethod
    def get_policy(self) -> EscalationPolicy:
        """Get current escalation policy."""


# ========== Application Services ==========

class SlaRuleService:
    """
    Administration of SLA rules.

    Keeps at most one active rule per (priority, category) slot. The store
    backs the check with a partial unique index on active rules.
    """

    def __init__(self, uow_factory: UnitOfWorkFactory):
        self._uow_factory = uow_factory

    async def list_rules(self, active_only: bool = False) -> List[SlaRule]:
        async with self._uow_factory() as uow:
            return await uow.rules.list(active_only=active_only)

    async def get_rule(self, rule_id: str) -> SlaRule:
        async with self._uow_factory() as uow:
            rule = await uow.rules.get(rule_id)
        if rule is None:
            raise ResourceNotFoundException("SLA rule", rule_id)
        return rule

    async def create_rule(self, dto: SlaRuleCreateDTO) -> SlaRule:
        """
        Create a rule.

        Raises:
            ConflictException: an active rule already covers the slot
        """
        rule = self._build(id=str(uuid4()), **dto.model_dump())

        async with self._uow_factory() as uow:
            if rule.is_active:
                await self._ensure_slot_free(uow, rule)
            rule = await uow.rules.add(rule)

        logger.info(
            "SLA rule created",
            extra={
                "rule_id": rule.id,
                "priority": rule.priority.value,
                "category": rule.category,
            }
        )
        return rule

    async def update_rule(self, rule_id: str, dto: SlaRuleUpdateDTO) -> SlaRule:
        async with self._uow_factory() as uow:
            existing = await uow.rules.get(rule_id)
            if existing is None:
                raise ResourceNotFoundException("SLA rule", rule_id)

            changes = dto.changes()
            rule = self._build(**{**_rule_fields(existing), **changes})
            if rule.is_active:
                await self._ensure_slot_free(uow, rule)
            rule = await uow.rules.update(rule)

        logger.info(
            "SLA rule updated",
            extra={"rule_id": rule_id, "fields": sorted(changes)}
        )
        return rule

    async def deactivate_rule(self, rule_id: str) -> SlaRule:
        async with self._uow_factory() as uow:
            existing = await uow.rules.get(rule_id)
            if existing is None:
                raise ResourceNotFoundException("SLA rule", rule_id)
            rule = await uow.rules.update(replace(existing, is_active=False))

        logger.info("SLA rule deactivated", extra={"rule_id": rule_id})
        return rule

    async def delete_rule(self, rule_id: str) -> None:
        async with self._uow_factory() as uow:
            deleted = await uow.rules.delete(rule_id)
        if not deleted:
            raise ResourceNotFoundException("SLA rule", rule_id)
        logger.info("SLA rule deleted", extra={"rule_id": rule_id})

    async def coverage(self) -> RuleSnapshot:
        """Snapshot of the active rules, for integrity reporting."""
        async with self._uow_factory() as uow:
            return RuleSnapshot(await uow.rules.list(active_only=True))

    @staticmethod
    def _build(**fields) -> SlaRule:
        try:
            return SlaRule(**fields)
        except ValueError as e:
            raise ValidationException(str(e), {"fields": sorted(fields)})

    @staticmethod
    async def _ensure_slot_free(uow: IUnitOfWork, rule: SlaRule) -> None:
        for other in await uow.rules.list(active_only=True):
            if other.id == rule.id:
                continue
            if other.priority == rule.priority and other.category == rule.category:
                raise ConflictException(
                    f"Active SLA rule {other.id} already covers priority "
                    f"{rule.priority.value} ({rule.category or 'global default'})",
                    {"conflicting_rule_id": other.id}
                )


def _rule_fields(rule: SlaRule) -> dict:
    return {
        "id": rule.id,
        "priority": rule.priority,
        "category": rule.category,
        "response_time_hours": rule.response_time_hours,
        "resolution_time_hours": rule.resolution_time_hours,
        "escalation_threshold_percent": rule.escalation_threshold_percent,
        "is_active": rule.is_active,
    }


class TicketLifecycleService:
    """
    Records clock-relevant ticket lifecycle changes.

    The lifecycle collaborator owns the tickets; this service only keeps the
    timestamps and pause intervals the SLA clock needs.
    """

    def __init__(self, uow_factory: UnitOfWorkFactory, paused_statuses: Iterable[str]):
        self._uow_factory = uow_factory
        self._paused_statuses = frozenset(paused_statuses)

    async def ingest(self, tickets: List[TrackedTicket]) -> IngestResponse:
        """
        Upsert a batch of tickets.

        Tickets whose priority has no provisioned global default, or whose
        pause log is malformed, are rejected individually.
        """
        async with self._uow_factory() as uow:
            snapshot = RuleSnapshot(await uow.rules.list(active_only=True))
        missing = set(snapshot.missing_defaults)

        created = 0
        updated = 0
        errors = []

        for ticket in tickets:
            try:
                priority = Priority(ticket.summary.priority)
                if priority in missing:
                    raise NoApplicableRule(priority, ticket.summary.category)
                ticket.clock.validate()
            except (NoApplicableRule, ClockStateInvalid) as e:
                errors.append(f"{ticket.id}: {e.message}")
                logger.warning(
                    f"Rejected ticket {ticket.id}: {e.message}",
                    extra={"ticket_id": ticket.id}
                )
                continue

            async with self._uow_factory() as uow:
                if await uow.tickets.save(ticket):
                    created += 1
                else:
                    updated += 1

        logger.info(
            "Ticket ingestion complete",
            extra={
                "tickets_created": created,
                "tickets_updated": updated,
                "tickets_failed": len(errors),
            }
        )
        return IngestResponse(created=created, updated=updated, failed=len(errors), errors=errors)

    async def record_status_change(
        self,
        ticket_id: str,
        status: str,
        changed_at: datetime
    ) -> TrackedTicket:
        """
        Apply a status transition to the clock.

        Entering a paused status opens a pause, leaving it closes the open
        pause, and the first move to Resolved/Closed stamps resolved_at.
        """
        async with self._uow_factory() as uow:
            ticket = await self._require(uow, ticket_id)
            clock = ticket.clock
            pauses = clock.pauses
            open_pause = clock.open_pause

            if status in self._paused_statuses:
                if open_pause is None:
                    pauses = pauses + (PauseInterval(changed_at),)
            elif open_pause is not None:
                pauses = pauses[:-1] + (PauseInterval(open_pause.start, changed_at),)

            resolved_at = clock.resolved_at
            if status in RESOLVED_STATUSES and resolved_at is None:
                resolved_at = changed_at

            ticket = TrackedTicket(
                summary=replace(ticket.summary, status=status),
                clock=replace(clock, pauses=pauses, resolved_at=resolved_at),
            )
            ticket.clock.validate()
            await uow.tickets.save(ticket)

        logger.info(
            f"Ticket {ticket_id} moved to {status}",
            extra={"ticket_id": ticket_id, "status": status, "paused": ticket.clock.open_pause is not None}
        )
        return ticket

    async def record_first_response(self, ticket_id: str, responded_at: datetime) -> TrackedTicket:
        """Stamp first_response_at; later responses do not move it."""
        async with self._uow_factory() as uow:
            ticket = await self._require(uow, ticket_id)
            if ticket.clock.first_response_at is not None:
                return ticket

            ticket = replace(ticket, clock=replace(ticket.clock, first_response_at=responded_at))
            ticket.clock.validate()
            await uow.tickets.save(ticket)

        logger.info("First response recorded", extra={"ticket_id": ticket_id})
        return ticket

    @staticmethod
    async def _require(uow: IUnitOfWork, ticket_id: str) -> TrackedTicket:
        ticket = await uow.tickets.get(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        return ticket


class SlaStatusService:
    """Read path: returns persisted state, never computes on request."""

    def __init__(self, uow_factory: UnitOfWorkFactory):
        self._uow_factory = uow_factory

    async def get_evaluation(self, ticket_id: str) -> SlaEvaluation:
        async with self._uow_factory() as uow:
            evaluation = await uow.evaluations.get(ticket_id)
        if evaluation is None:
            raise ResourceNotFoundException("SLA evaluation", ticket_id)
        return evaluation

    async def list_events(self, ticket_id: str) -> List[EscalationEvent]:
        async with self._uow_factory() as uow:
            if await uow.tickets.get_summary(ticket_id) is None:
                raise ResourceNotFoundException("Ticket", ticket_id)
            return await uow.events.list_for_ticket(ticket_id)
