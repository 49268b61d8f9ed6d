"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from helpdesk_sla.config import DeliveryStatus, Priority, SlaStatus, SlaTarget
from helpdesk_sla.core import ConflictException, RepositoryException
from helpdesk_sla.infrastructure.database import get_session_maker
from helpdesk_sla.sla.application.services import (
    IEscalationEventRepository,
    ISlaEvaluationRepository,
    ISlaRuleRepository,
    ITicketRepository,
    IUnitOfWork,
)
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
from helpdesk_sla.sla.infrastructure.models import (
    EscalationEventModel,
    PauseIntervalModel,
    SlaEvaluationModel,
    SlaRuleModel,
    TicketModel,
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Drivers without timezone support hand back naive UTC values."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SQLAlchemySlaRuleRepository(ISlaRuleRepository):
    """
    SQLAlchemy implementation of SLA rule repository.

    Rules are listed by priority, then category with the global default first.
    Writes that would leave two active rules on one slot fail with
    ConflictException.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def list(self, active_only: bool = False) -> List[SlaRule]:
        stmt = select(SlaRuleModel)
        if active_only:
            stmt = stmt.where(SlaRuleModel.is_active.is_(True))
        stmt = stmt.order_by(
            SlaRuleModel.priority,
            SlaRuleModel.category.nulls_first(),
            SlaRuleModel.id
        )

        result = await self._session.execute(stmt)
        return [self._to_domain(model) for model in result.scalars().all()]

    async def get(self, rule_id: str) -> Optional[SlaRule]:
        model = await self._session.get(SlaRuleModel, rule_id)
        return self._to_domain(model) if model else None

    async def add(self, rule: SlaRule) -> SlaRule:
        model = SlaRuleModel(id=rule.id or str(uuid4()))
        self._apply(model, rule)
        self._session.add(model)
        await self._flush_slot(rule)
        return self._to_domain(model)

    async def update(self, rule: SlaRule) -> SlaRule:
        model = await self._session.get(SlaRuleModel, rule.id)
        if model is None:
            raise RepositoryException(f"SLA rule {rule.id} not found")
        self._apply(model, rule)
        await self._flush_slot(rule)
        return self._to_domain(model)

    async def delete(self, rule_id: str) -> bool:
        model = await self._session.get(SlaRuleModel, rule_id)
        if model is None:
            return False
        await self._session.delete(model)
        await self._session.flush()
        return True

    async def _flush_slot(self, rule: SlaRule) -> None:
        try:
            await self._session.flush()
        except IntegrityError as e:
            raise ConflictException(
                f"Another active SLA rule already covers priority "
                f"{rule.priority.value} ({rule.category or 'global default'})",
                {"priority": rule.priority.value, "category": rule.category}
            ) from e

    @staticmethod
    def _apply(model: SlaRuleModel, rule: SlaRule) -> None:
        model.priority = rule.priority.value
        model.category = rule.category
        model.response_time_hours = rule.response_time_hours
        model.resolution_time_hours = rule.resolution_time_hours
        model.escalation_threshold_percent = rule.escalation_threshold_percent
        model.is_active = rule.is_active

    @staticmethod
    def _to_domain(model: SlaRuleModel) -> SlaRule:
        return SlaRule(
            id=model.id,
            priority=Priority(model.priority),
            category=model.category,
            response_time_hours=model.response_time_hours,
            resolution_time_hours=model.resolution_time_hours,
            escalation_threshold_percent=model.escalation_threshold_percent,
            is_active=model.is_active,
        )


class SQLAlchemyTicketRepository(ITicketRepository):
    """
    SQLAlchemy implementation of ticket repository.

    Pause intervals are stored in their own table and replaced as a whole
    on every save.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, ticket_id: str) -> Optional[TrackedTicket]:
        model = await self._session.get(TicketModel, ticket_id)
        if model is None:
            return None

        stmt = (
            select(PauseIntervalModel)
            .where(PauseIntervalModel.ticket_id == ticket_id)
            .order_by(PauseIntervalModel.started_at, PauseIntervalModel.id)
        )
        result = await self._session.execute(stmt)
        pauses = tuple(
            PauseInterval(_as_utc(p.started_at), _as_utc(p.ended_at))
            for p in result.scalars().all()
        )

        return TrackedTicket(
            summary=self._summary(model),
            clock=TicketClockState(
                ticket_id=model.id,
                created_at=_as_utc(model.created_at),
                pauses=pauses,
                first_response_at=_as_utc(model.first_response_at),
                resolved_at=_as_utc(model.resolved_at),
            ),
        )

    async def get_summary(self, ticket_id: str) -> Optional[TicketSummary]:
        model = await self._session.get(TicketModel, ticket_id)
        return self._summary(model) if model else None

    async def save(self, ticket: TrackedTicket) -> bool:
        model = await self._session.get(TicketModel, ticket.id)
        created = model is None
        if created:
            model = TicketModel(id=ticket.id)
            self._session.add(model)

        summary = ticket.summary
        model.ticket_number = summary.ticket_number
        model.title = summary.title
        model.priority = Priority(summary.priority).value
        model.category = summary.category
        model.status = summary.status
        model.assignee_id = summary.assignee_id
        model.team_id = summary.team_id
        model.created_at = _as_utc(ticket.clock.created_at)
        model.first_response_at = _as_utc(ticket.clock.first_response_at)
        model.resolved_at = _as_utc(ticket.clock.resolved_at)
        await self._session.flush()

        await self._session.execute(
            delete(PauseIntervalModel).where(PauseIntervalModel.ticket_id == ticket.id)
        )
        for interval in ticket.clock.pauses:
            self._session.add(PauseIntervalModel(
                ticket_id=ticket.id,
                started_at=_as_utc(interval.start),
                ended_at=_as_utc(interval.end),
            ))
        await self._session.flush()

        return created

    async def list_unfinished_ids(self) -> List[str]:
        stmt = (
            select(TicketModel.id)
            .outerjoin(SlaEvaluationModel, SlaEvaluationModel.ticket_id == TicketModel.id)
            .where(or_(
                SlaEvaluationModel.ticket_id.is_(None),
                SlaEvaluationModel.response_final.is_(False),
                SlaEvaluationModel.resolution_final.is_(False),
            ))
            .order_by(TicketModel.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def _summary(model: TicketModel) -> TicketSummary:
        return TicketSummary(
            ticket_id=model.id,
            ticket_number=model.ticket_number,
            title=model.title,
            priority=Priority(model.priority),
            category=model.category,
            status=model.status,
            assignee_id=model.assignee_id,
            team_id=model.team_id,
        )


class SQLAlchemySlaEvaluationRepository(ISlaEvaluationRepository):
    """SQLAlchemy implementation of the evaluation store, one row per ticket."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, ticket_id: str) -> Optional[SlaEvaluation]:
        model = await self._session.get(SlaEvaluationModel, ticket_id)
        if model is None:
            return None

        return SlaEvaluation(
            ticket_id=model.ticket_id,
            rule_id=model.rule_id,
            computed_at=_as_utc(model.computed_at),
            response=TargetState(
                SlaTarget.RESPONSE,
                SlaStatus(model.response_status),
                model.response_final,
                _as_utc(model.response_deadline),
            ),
            resolution=TargetState(
                SlaTarget.RESOLUTION,
                SlaStatus(model.resolution_status),
                model.resolution_final,
                _as_utc(model.resolution_deadline),
            ),
        )

    async def save(self, evaluation: SlaEvaluation) -> None:
        model = await self._session.get(SlaEvaluationModel, evaluation.ticket_id)
        if model is None:
            model = SlaEvaluationModel(ticket_id=evaluation.ticket_id)
            self._session.add(model)

        model.rule_id = evaluation.rule_id
        model.computed_at = _as_utc(evaluation.computed_at)
        model.response_status = evaluation.response.status.value
        model.response_final = evaluation.response.final
        model.response_deadline = _as_utc(evaluation.response.deadline)
        model.resolution_status = evaluation.resolution.status.value
        model.resolution_final = evaluation.resolution.final
        model.resolution_deadline = _as_utc(evaluation.resolution.deadline)
        await self._session.flush()


class SQLAlchemyEscalationEventRepository(IEscalationEventRepository):
    """
    SQLAlchemy implementation of the escalation outbox.

    A concurrent insert of the same transition fails on the unique
    constraint and rolls back the caller's unit of work.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def add_if_absent(self, event: EscalationEvent) -> bool:
        ticket_id, target, status = event.idempotency_key
        stmt = select(EscalationEventModel.id).where(
            EscalationEventModel.ticket_id == ticket_id,
            EscalationEventModel.target == target,
            EscalationEventModel.status == status,
        )
        result = await self._session.execute(stmt)
        if result.scalar_one_or_none() is not None:
            return False

        model = EscalationEventModel(
            id=event.id or str(uuid4()),
            ticket_id=ticket_id,
            target=target,
            status=status,
            occurred_at=_as_utc(event.occurred_at),
            rule_id=event.rule_id,
        )
        self._apply_delivery(model, event)
        self._session.add(model)
        await self._session.flush()

        event.id = model.id
        return True

    async def get(self, event_id: str) -> Optional[EscalationEvent]:
        model = await self._session.get(EscalationEventModel, event_id)
        return self._to_domain(model) if model else None

    async def list_due(self, now: datetime, limit: int) -> List[EscalationEvent]:
        stmt = (
            select(EscalationEventModel)
            .where(
                EscalationEventModel.delivery_status == DeliveryStatus.PENDING.value,
                or_(
                    EscalationEventModel.next_attempt_at.is_(None),
                    EscalationEventModel.next_attempt_at <= _as_utc(now),
                ),
            )
            .order_by(EscalationEventModel.occurred_at, EscalationEventModel.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [self._to_domain(model) for model in result.scalars().all()]

    async def claim(self, event_id: str, now: datetime, lease_until: datetime) -> bool:
        stmt = (
            update(EscalationEventModel)
            .where(
                EscalationEventModel.id == event_id,
                EscalationEventModel.delivery_status == DeliveryStatus.PENDING.value,
                or_(
                    EscalationEventModel.next_attempt_at.is_(None),
                    EscalationEventModel.next_attempt_at <= _as_utc(now),
                ),
            )
            .values(next_attempt_at=_as_utc(lease_until))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def update(self, event: EscalationEvent) -> None:
        model = await self._session.get(EscalationEventModel, event.id)
        if model is None:
            raise RepositoryException(f"Escalation event {event.id} not found")
        self._apply_delivery(model, event)
        await self._session.flush()

    async def list_for_ticket(self, ticket_id: str) -> List[EscalationEvent]:
        stmt = (
            select(EscalationEventModel)
            .where(EscalationEventModel.ticket_id == ticket_id)
            .order_by(EscalationEventModel.occurred_at, EscalationEventModel.id)
        )
        result = await self._session.execute(stmt)
        return [self._to_domain(model) for model in result.scalars().all()]

    @staticmethod
    def _apply_delivery(model: EscalationEventModel, event: EscalationEvent) -> None:
        model.delivery_status = DeliveryStatus(event.delivery_status).value
        model.attempts = event.attempts
        model.next_attempt_at = _as_utc(event.next_attempt_at)
        model.last_error = event.last_error
        model.delivered_at = _as_utc(event.delivered_at)

    @staticmethod
    def _to_domain(model: EscalationEventModel) -> EscalationEvent:
        return EscalationEvent(
            id=model.id,
            ticket_id=model.ticket_id,
            target=SlaTarget(model.target),
            status=SlaStatus(model.status),
            occurred_at=_as_utc(model.occurred_at),
            rule_id=model.rule_id,
            delivery_status=DeliveryStatus(model.delivery_status),
            attempts=model.attempts,
            next_attempt_at=_as_utc(model.next_attempt_at),
            last_error=model.last_error,
            delivered_at=_as_utc(model.delivered_at),
        )


class SQLAlchemyUnitOfWork(IUnitOfWork):
    """
    Unit of work over one AsyncSession.

    Each `async with` opens a fresh session and closes it on exit.
    """

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        self._session_maker = session_maker
        self._session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        session_maker = self._session_maker or get_session_maker()
        self._session = session_maker()
        self.rules = SQLAlchemySlaRuleRepository(self._session)
        self.tickets = SQLAlchemyTicketRepository(self._session)
        self.evaluations = SQLAlchemySlaEvaluationRepository(self._session)
        self.events = SQLAlchemyEscalationEventRepository(self._session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            await self._session.close()
            self._session = None

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()
