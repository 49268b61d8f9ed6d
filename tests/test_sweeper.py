from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from helpdesk_sla.config import SlaStatus, SlaTarget
from helpdesk_sla.sla.application import EscalationSweeper, owns_ticket
from helpdesk_sla.sla.domain import PauseInterval, RuleSnapshot
from tests.conftest import T0, hours, make_rule, make_ticket


def _events(store, ticket_id="TCK-1"):  # noqa: ANN001, ANN202
    return sorted(
        (e.target.value, e.status.value)
        for e in store.events.values() if e.ticket_id == ticket_id
    )


@pytest.mark.asyncio
async def test_p1_ticket_escalates_then_breaches(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1", response=4, resolution=24, threshold=80))
    store.add_ticket(make_ticket("TCK-1", "P1"))
    sweeper = EscalationSweeper(store.uow)

    report = await sweeper.run_once(T0 + hours(3.5))

    assert report.evaluated == 1
    assert store.evaluations["TCK-1"].response_status == SlaStatus.ESCALATED
    assert _events(store) == [("response", "escalated")]

    report = await sweeper.run_once(T0 + hours(4.1))

    assert store.evaluations["TCK-1"].response_status == SlaStatus.BREACHED
    assert store.evaluations["TCK-1"].response.final is True
    assert report.events_created == 1
    assert _events(store) == [("response", "breached"), ("response", "escalated")]


@pytest.mark.asyncio
async def test_resolution_escalates_at_eighty_percent(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1", response=4, resolution=24, threshold=80))
    store.add_ticket(make_ticket("TCK-1", "P1", first_response_at=T0 + hours(1)))
    sweeper = EscalationSweeper(store.uow)

    await sweeper.run_once(T0 + timedelta(hours=19, minutes=12))

    evaluation = store.evaluations["TCK-1"]
    assert evaluation.response_status == SlaStatus.ON_TRACK
    assert evaluation.response.final is True
    assert evaluation.resolution_status == SlaStatus.ESCALATED
    assert _events(store) == [("resolution", "escalated")]


@pytest.mark.asyncio
async def test_second_pass_emits_no_duplicate_events(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1"))
    store.add_ticket(make_ticket("TCK-1", "P1"))
    sweeper = EscalationSweeper(store.uow)

    await sweeper.run_once(T0 + hours(3.5))
    report = await sweeper.run_once(T0 + hours(3.6))

    assert report.transitions == 0
    assert report.events_created == 0
    assert len(store.events) == 1


@pytest.mark.asyncio
async def test_skipping_straight_to_breach_emits_only_breach(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1"))
    store.add_ticket(make_ticket("TCK-1", "P1"))

    await EscalationSweeper(store.uow).run_once(T0 + hours(5))

    assert _events(store) == [("response", "breached")]


@pytest.mark.asyncio
async def test_at_risk_transition_records_status_without_event(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1"))
    store.add_ticket(make_ticket("TCK-1", "P1"))

    report = await EscalationSweeper(store.uow).run_once(T0 + hours(2.5))

    assert report.transitions == 1
    assert store.evaluations["TCK-1"].response_status == SlaStatus.AT_RISK
    assert store.events == {}


@pytest.mark.asyncio
async def test_paused_ticket_does_not_escalate(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1", response=4, threshold=80))
    store.add_ticket(make_ticket("TCK-1", "P1", pauses=[(T0 + hours(1), T0 + hours(3))]))

    await EscalationSweeper(store.uow).run_once(T0 + hours(5))

    evaluation = store.evaluations["TCK-1"]
    assert evaluation.response_status == SlaStatus.AT_RISK
    assert evaluation.response.deadline == T0 + hours(6)
    assert store.events == {}


@pytest.mark.asyncio
async def test_open_pause_freezes_status_across_passes(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1"))
    store.add_ticket(make_ticket("TCK-1", "P1", pauses=[PauseInterval(T0 + hours(1))]))
    sweeper = EscalationSweeper(store.uow)

    await sweeper.run_once(T0 + hours(2))
    await sweeper.run_once(T0 + hours(50))

    assert store.evaluations["TCK-1"].response_status == SlaStatus.ON_TRACK
    assert store.events == {}


@pytest.mark.asyncio
async def test_relaxing_the_rule_never_downgrades_status(store) -> None:  # noqa: ANN001
    rule = store.add_rule(make_rule("p1-default", "P1", response=4, resolution=24))
    store.add_ticket(make_ticket("TCK-1", "P1"))
    sweeper = EscalationSweeper(store.uow)
    await sweeper.run_once(T0 + hours(3.5))

    store.rules[rule.id] = replace(rule, response_time_hours=12, resolution_time_hours=48)
    await sweeper.run_once(T0 + hours(3.6))

    assert store.evaluations["TCK-1"].response_status == SlaStatus.ESCALATED


@pytest.mark.asyncio
async def test_ambiguous_default_leaves_stored_status_untouched(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p2-a", "P2", response=8, resolution=48))
    store.add_ticket(make_ticket("TCK-2", "P2"))
    sweeper = EscalationSweeper(store.uow)
    await sweeper.run_once(T0 + hours(5))
    assert store.evaluations["TCK-2"].response_status == SlaStatus.AT_RISK

    store.add_rule(make_rule("p2-b", "P2", response=8, resolution=48))
    report = await sweeper.run_once(T0 + hours(7.9))

    assert "TCK-2" in report.failures
    assert report.integrity_issues == [
        {"priority": "P2", "category": None, "rule_ids": ["p2-a", "p2-b"]}
    ]
    assert store.evaluations["TCK-2"].response_status == SlaStatus.AT_RISK
    assert store.events == {}


@pytest.mark.asyncio
async def test_failing_ticket_does_not_stop_the_pass(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1"))
    store.add_ticket(make_ticket("TCK-1", "P1"))
    store.add_ticket(make_ticket("TCK-2", "P4"))
    store.add_ticket(make_ticket("TCK-3", "P1", pauses=[(T0 + hours(2), T0 + hours(1))]))
    store.add_ticket(make_ticket("TCK-4", "P1"))
    store.broken_tickets.add("TCK-4")

    report = await EscalationSweeper(store.uow).run_once(T0 + hours(3.5))

    assert report.scanned == 4
    assert report.evaluated == 1
    assert set(report.failures) == {"TCK-2", "TCK-3", "TCK-4"}
    assert "No active SLA rule" in report.failures["TCK-2"]
    assert report.missing_defaults == ["P2", "P3", "P4"]
    assert set(store.evaluations) == {"TCK-1"}
    assert _events(store, "TCK-1") == [("response", "escalated")]


@pytest.mark.asyncio
async def test_final_tickets_are_not_rescanned(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1"))
    store.add_ticket(make_ticket(
        "TCK-1", "P1", first_response_at=T0 + hours(1), resolved_at=T0 + hours(2)
    ))
    sweeper = EscalationSweeper(store.uow)

    first = await sweeper.run_once(T0 + hours(3))
    second = await sweeper.run_once(T0 + hours(4))

    assert first.scanned == 1
    assert store.evaluations["TCK-1"].is_final
    assert second.scanned == 0


@pytest.mark.asyncio
async def test_stop_request_prevents_new_passes(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1"))
    store.add_ticket(make_ticket("TCK-1", "P1"))
    sweeper = EscalationSweeper(store.uow)

    sweeper.request_stop()
    report = await sweeper.run_once(T0 + hours(3.5))

    assert report.stopped_early is True
    assert store.evaluations == {}
    assert await sweeper.wait_idle(timeout=1) is True


@pytest.mark.asyncio
async def test_stop_finishes_in_flight_batch_only(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1"))
    for n in range(6):
        store.add_ticket(make_ticket(f"TCK-{n}", "P1"))
    sweeper = EscalationSweeper(store.uow, batch_size=2)

    original = sweeper.evaluate_ticket

    async def evaluate_then_stop(ticket_id, snapshot, as_of):  # noqa: ANN001, ANN202
        result = await original(ticket_id, snapshot, as_of)
        sweeper.request_stop()
        await asyncio.sleep(0)
        return result

    sweeper.evaluate_ticket = evaluate_then_stop
    report = await sweeper.run_once(T0 + hours(1))

    assert report.stopped_early is True
    assert report.evaluated == 2
    assert len(store.evaluations) == 2
    assert not sweeper.is_running


@pytest.mark.asyncio
async def test_concurrent_workers_cover_each_ticket_once(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1"))
    for n in range(10):
        store.add_ticket(make_ticket(f"TCK-{n}", "P1"))
    sweeper = EscalationSweeper(store.uow, batch_size=3, concurrency=3)

    report = await sweeper.run_once(T0 + hours(3.5))

    assert report.evaluated == 10
    assert report.events_created == 10
    assert len(store.events) == 10


@pytest.mark.asyncio
async def test_partitions_are_disjoint_and_complete(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1"))
    ticket_ids = [f"TCK-{n}" for n in range(20)]
    for ticket_id in ticket_ids:
        store.add_ticket(make_ticket(ticket_id, "P1"))

    scanned = 0
    for index in range(3):
        sweeper = EscalationSweeper(store.uow, partition_index=index, partition_count=3)
        report = await sweeper.run_once(T0 + hours(3.5))
        scanned += report.scanned

    assert scanned == 20
    assert set(store.evaluations) == set(ticket_ids)
    assert len(store.events) == 20


def test_partition_assignment_is_stable() -> None:
    owners = [
        [index for index in range(4) if owns_ticket(f"TCK-{n}", index, 4)]
        for n in range(50)
    ]

    assert all(len(o) == 1 for o in owners)
    assert owns_ticket("TCK-7", 0, 1)


def test_invalid_partition_is_rejected(store) -> None:  # noqa: ANN001
    with pytest.raises(ValueError):
        EscalationSweeper(store.uow, partition_index=2, partition_count=2)


@pytest.mark.asyncio
async def test_report_to_dict(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1"))
    store.add_ticket(make_ticket("TCK-1", "P1"))

    report = await EscalationSweeper(store.uow).run_once(T0 + hours(3.5))
    data = report.to_dict()

    assert data["scanned"] == 1
    assert data["events_created"] == 1
    assert data["failed"] == 0
    assert data["started_at"] == (T0 + hours(3.5)).isoformat()
    assert SlaTarget.RESPONSE.value in {e.target.value for e in store.events.values()}


@pytest.mark.asyncio
async def test_evaluate_ticket_returns_transition_and_event_counts(store) -> None:  # noqa: ANN001
    store.add_rule(make_rule("p1-default", "P1", response=4, resolution=24))
    store.add_ticket(make_ticket("TCK-1", "P1"))
    sweeper = EscalationSweeper(store.uow)
    snapshot = RuleSnapshot(list(store.rules.values()))

    first = await sweeper.evaluate_ticket("TCK-1", snapshot, T0 + hours(3.5))
    repeat = await sweeper.evaluate_ticket("TCK-1", snapshot, T0 + hours(3.6))
    missing = await sweeper.evaluate_ticket("TCK-404", snapshot, T0 + hours(3.6))

    assert (first, repeat, missing) == ((1, 1), (0, 0), (0, 0))
