from __future__ import annotations

import asyncio
from datetime import timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from helpdesk_sla.config import DeliveryStatus, SlaStatus, SlaTarget
from helpdesk_sla.core.exceptions import ConflictException
from helpdesk_sla.infrastructure.database import Base
from helpdesk_sla.sla.application import (
    EscalationDispatcher,
    EscalationSweeper,
    SlaRuleCreateDTO,
    SlaRuleService,
)
from helpdesk_sla.sla.domain import EscalationEvent, PauseInterval, SlaEvaluation
from helpdesk_sla.sla.infrastructure import SQLAlchemyUnitOfWork
from tests.conftest import T0, hours, make_rule, make_ticket
from tests.fakes import RecordingNotifier, StaticPolicy


@pytest.fixture
async def uow_factory(tmp_path):  # noqa: ANN001, ANN201
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sla.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    yield lambda: SQLAlchemyUnitOfWork(session_maker)

    await engine.dispose()


@pytest.mark.asyncio
async def test_rules_are_listed_default_first(uow_factory) -> None:  # noqa: ANN001
    async with uow_factory() as uow:
        await uow.rules.add(make_rule("p2-network", "P2", category="network", response=2, resolution=8))
        await uow.rules.add(make_rule("p2-default", "P2", response=8, resolution=48))
        await uow.rules.add(make_rule("p1-default", "P1"))
        await uow.rules.add(make_rule("p3-old", "P3", active=False))

    async with uow_factory() as uow:
        all_rules = await uow.rules.list()
        active = await uow.rules.list(active_only=True)

    assert [r.id for r in all_rules] == ["p1-default", "p2-default", "p2-network", "p3-old"]
    assert [r.id for r in active] == ["p1-default", "p2-default", "p2-network"]
    assert active[2].category == "network"


@pytest.mark.asyncio
async def test_rule_update_and_delete(uow_factory) -> None:  # noqa: ANN001
    rule = make_rule("p1-default", "P1", response=4, resolution=24)
    async with uow_factory() as uow:
        await uow.rules.add(rule)

    async with uow_factory() as uow:
        stored = await uow.rules.get(rule.id)
        await uow.rules.update(make_rule(rule.id, "P1", response=2, resolution=12, threshold=50))

    async with uow_factory() as uow:
        updated = await uow.rules.get(rule.id)
        assert await uow.rules.delete(rule.id) is True
        assert await uow.rules.delete("missing") is False

    async with uow_factory() as uow:
        assert await uow.rules.get(rule.id) is None

    assert stored == rule
    assert updated.response_time_hours == 2
    assert updated.escalation_threshold_percent == 50


@pytest.mark.asyncio
async def test_exception_rolls_back_the_unit_of_work(uow_factory) -> None:  # noqa: ANN001
    with pytest.raises(RuntimeError):
        async with uow_factory() as uow:
            await uow.rules.add(make_rule("p1-default", "P1"))
            raise RuntimeError("boom")

    async with uow_factory() as uow:
        assert await uow.rules.list() == []


@pytest.mark.asyncio
async def test_ticket_round_trip_keeps_pauses_in_utc(uow_factory) -> None:  # noqa: ANN001
    ticket = make_ticket(
        "TCK-1", "P2", category="email",
        pauses=[(T0 + hours(1), T0 + hours(2)), PauseInterval(T0 + hours(3))],
        first_response_at=T0 + hours(0.5),
    )
    async with uow_factory() as uow:
        assert await uow.tickets.save(ticket) is True

    async with uow_factory() as uow:
        loaded = await uow.tickets.get("TCK-1")
        summary = await uow.tickets.get_summary("TCK-1")

    assert loaded == ticket
    assert loaded.clock.created_at.tzinfo == timezone.utc
    assert loaded.clock.open_pause == PauseInterval(T0 + hours(3))
    assert summary.category == "email"


@pytest.mark.asyncio
async def test_ticket_save_replaces_pauses(uow_factory) -> None:  # noqa: ANN001
    async with uow_factory() as uow:
        await uow.tickets.save(make_ticket("TCK-1", pauses=[PauseInterval(T0 + hours(1))]))

    async with uow_factory() as uow:
        ticket = await uow.tickets.get("TCK-1")
        closed = make_ticket("TCK-1", pauses=[(T0 + hours(1), T0 + hours(2))])
        assert await uow.tickets.save(closed) is False

    async with uow_factory() as uow:
        loaded = await uow.tickets.get("TCK-1")

    assert ticket.clock.open_pause is not None
    assert loaded.clock.pauses == (PauseInterval(T0 + hours(1), T0 + hours(2)),)


@pytest.mark.asyncio
async def test_unfinished_ids_skip_final_evaluations(uow_factory) -> None:  # noqa: ANN001
    async with uow_factory() as uow:
        for ticket_id in ("TCK-1", "TCK-2", "TCK-3"):
            await uow.tickets.save(make_ticket(ticket_id))

        done = SlaEvaluation("TCK-2", "p1-default", T0)
        done.advance(SlaTarget.RESPONSE, SlaStatus.ON_TRACK, True, None)
        done.advance(SlaTarget.RESOLUTION, SlaStatus.ON_TRACK, True, None)
        await uow.evaluations.save(done)

        half = SlaEvaluation("TCK-3", "p1-default", T0)
        half.advance(SlaTarget.RESPONSE, SlaStatus.BREACHED, False, T0 + hours(4))
        await uow.evaluations.save(half)

    async with uow_factory() as uow:
        unfinished = await uow.tickets.list_unfinished_ids()
        stored = await uow.evaluations.get("TCK-3")

    assert unfinished == ["TCK-1", "TCK-3"]
    assert stored.response_status == SlaStatus.BREACHED
    assert stored.response.final is True
    assert stored.response.deadline == T0 + hours(4)


@pytest.mark.asyncio
async def test_event_insert_is_idempotent(uow_factory) -> None:  # noqa: ANN001
    async with uow_factory() as uow:
        await uow.tickets.save(make_ticket("TCK-1"))
        first = EscalationEvent("TCK-1", SlaTarget.RESPONSE, SlaStatus.ESCALATED, T0 + hours(3.5))
        assert await uow.events.add_if_absent(first) is True
        assert first.id is not None

    async with uow_factory() as uow:
        again = EscalationEvent("TCK-1", SlaTarget.RESPONSE, SlaStatus.ESCALATED, T0 + hours(3.6))
        assert await uow.events.add_if_absent(again) is False
        events = await uow.events.list_for_ticket("TCK-1")

    assert [e.id for e in events] == [first.id]
    assert events[0].occurred_at == T0 + hours(3.5)


@pytest.mark.asyncio
async def test_list_due_honours_backoff_and_status(uow_factory) -> None:  # noqa: ANN001
    now = T0 + hours(5)
    async with uow_factory() as uow:
        await uow.tickets.save(make_ticket("TCK-1"))
        fresh = EscalationEvent("TCK-1", SlaTarget.RESPONSE, SlaStatus.ESCALATED, T0 + hours(3))
        waiting = EscalationEvent("TCK-1", SlaTarget.RESPONSE, SlaStatus.BREACHED, T0 + hours(4))
        waiting.schedule_retry("webhook returned 503", now + timedelta(minutes=1))
        sent = EscalationEvent("TCK-1", SlaTarget.RESOLUTION, SlaStatus.ESCALATED, T0 + hours(4))
        sent.mark_delivered(T0 + hours(4))
        for event in (fresh, waiting, sent):
            await uow.events.add_if_absent(event)

    async with uow_factory() as uow:
        due_now = await uow.events.list_due(now, 10)
        due_later = await uow.events.list_due(now + timedelta(minutes=1), 10)

    assert [e.id for e in due_now] == [fresh.id]
    assert [e.id for e in due_later] == [fresh.id, waiting.id]
    assert due_later[1].next_attempt_at == now + timedelta(minutes=1)


@pytest.mark.asyncio
async def test_sweep_and_dispatch_against_the_database(uow_factory) -> None:  # noqa: ANN001
    async with uow_factory() as uow:
        await uow.rules.add(make_rule("p1-default", "P1"))
        await uow.tickets.save(make_ticket("TCK-1", "P1"))
        await uow.tickets.save(make_ticket("TCK-2", "P1", first_response_at=T0 + hours(1)))

    sweeper = EscalationSweeper(uow_factory)
    first = await sweeper.run_once(T0 + hours(3.5))
    second = await sweeper.run_once(T0 + hours(3.6))

    notifier = RecordingNotifier()
    dispatched = await EscalationDispatcher(uow_factory, notifier, StaticPolicy()).dispatch_due(T0 + hours(3.7))

    async with uow_factory() as uow:
        events = await uow.events.list_for_ticket("TCK-1")
        evaluation = await uow.evaluations.get("TCK-2")

    assert first.events_created == 1
    assert second.events_created == 0
    assert dispatched.delivered == 1
    assert [(e.status, e.delivery_status) for e in events] == [
        (SlaStatus.ESCALATED, DeliveryStatus.DELIVERED)
    ]
    assert evaluation.response.final is True
    assert evaluation.resolution_status == SlaStatus.ON_TRACK


@pytest.mark.asyncio
async def test_claim_is_granted_to_one_caller_until_the_lease_ends(uow_factory) -> None:  # noqa: ANN001
    now = T0 + hours(4)
    lease_until = now + timedelta(minutes=5)
    async with uow_factory() as uow:
        await uow.tickets.save(make_ticket("TCK-1"))
        event = EscalationEvent("TCK-1", SlaTarget.RESPONSE, SlaStatus.ESCALATED, T0 + hours(3.5))
        await uow.events.add_if_absent(event)

    async with uow_factory() as uow:
        first = await uow.events.claim(event.id, now, lease_until)
    async with uow_factory() as uow:
        second = await uow.events.claim(event.id, now, lease_until)
        due = await uow.events.list_due(now, 10)
    async with uow_factory() as uow:
        after_lease = await uow.events.claim(event.id, lease_until, lease_until + timedelta(minutes=5))

    assert (first, second, after_lease) == (True, False, True)
    assert due == []


@pytest.mark.asyncio
async def test_delivered_event_cannot_be_claimed(uow_factory) -> None:  # noqa: ANN001
    async with uow_factory() as uow:
        await uow.tickets.save(make_ticket("TCK-1"))
        event = EscalationEvent("TCK-1", SlaTarget.RESPONSE, SlaStatus.ESCALATED, T0 + hours(3.5))
        event.mark_delivered(T0 + hours(3.6))
        await uow.events.add_if_absent(event)

    async with uow_factory() as uow:
        assert await uow.events.claim(event.id, T0 + hours(4), T0 + hours(5)) is False
        assert await uow.events.claim("missing", T0 + hours(4), T0 + hours(5)) is False


@pytest.mark.asyncio
async def test_concurrent_dispatchers_share_one_outbox(uow_factory) -> None:  # noqa: ANN001
    async with uow_factory() as uow:
        await uow.tickets.save(make_ticket("TCK-1"))
        await uow.events.add_if_absent(
            EscalationEvent("TCK-1", SlaTarget.RESPONSE, SlaStatus.ESCALATED, T0 + hours(3.5))
        )

    class SlowNotifier(RecordingNotifier):
        async def notify(self, event, summary, roles) -> None:  # noqa: ANN001
            await asyncio.sleep(0.05)
            await super().notify(event, summary, roles)

    notifier = SlowNotifier()
    dispatchers = [EscalationDispatcher(uow_factory, notifier, StaticPolicy()) for _ in range(2)]

    reports = await asyncio.gather(*(d.dispatch_due(T0 + hours(4)) for d in dispatchers))

    async with uow_factory() as uow:
        events = await uow.events.list_for_ticket("TCK-1")

    assert len(notifier.calls) == 1
    assert sum(r.delivered for r in reports) == 1
    assert events[0].delivery_status == DeliveryStatus.DELIVERED
    assert events[0].attempts == 1


@pytest.mark.asyncio
async def test_store_refuses_a_second_active_rule_for_a_slot(uow_factory) -> None:  # noqa: ANN001
    async with uow_factory() as uow:
        await uow.rules.add(make_rule("p2-default", "P2", response=8, resolution=48))
        await uow.rules.add(make_rule("p2-network", "P2", category="network", response=2, resolution=8))
        await uow.rules.add(make_rule("p2-retired", "P2", response=6, resolution=40, active=False))

    with pytest.raises(ConflictException) as exc_info:
        async with uow_factory() as uow:
            await uow.rules.add(make_rule("p2-second", "P2", response=6, resolution=40))
    assert exc_info.value.details == {"priority": "P2", "category": None}

    with pytest.raises(ConflictException):
        async with uow_factory() as uow:
            await uow.rules.update(make_rule("p2-retired", "P2", response=6, resolution=40))

    async with uow_factory() as uow:
        active = await uow.rules.list(active_only=True)
    assert [r.id for r in active] == ["p2-default", "p2-network"]


@pytest.mark.asyncio
async def test_concurrent_rule_creation_keeps_one_active_default(uow_factory) -> None:  # noqa: ANN001
    service = SlaRuleService(uow_factory)
    dto = SlaRuleCreateDTO(priority="P2", response_time_hours=8, resolution_time_hours=48)

    results = await asyncio.gather(
        service.create_rule(dto),
        service.create_rule(dto),
        return_exceptions=True,
    )

    async with uow_factory() as uow:
        active = await uow.rules.list(active_only=True)

    assert sorted(type(r).__name__ for r in results) == ["ConflictException", "SlaRule"]
    assert len(active) == 1
