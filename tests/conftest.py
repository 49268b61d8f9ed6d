from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from helpdesk_sla.config import Priority
from helpdesk_sla.sla.domain import (
    PauseInterval,
    SlaRule,
    TicketClockState,
    TicketSummary,
    TrackedTicket,
)
from tests.fakes import InMemoryStore

T0 = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


def hours(value: float) -> timedelta:
    return timedelta(hours=value)


def make_rule(
    rule_id: str = "rule-p1",
    priority: str = "P1",
    category: Optional[str] = None,
    response: float = 4,
    resolution: float = 24,
    threshold: float = 80,
    active: bool = True,
) -> SlaRule:
    return SlaRule(
        id=rule_id,
        priority=Priority(priority),
        response_time_hours=response,
        resolution_time_hours=resolution,
        escalation_threshold_percent=threshold,
        category=category,
        is_active=active,
    )


def make_ticket(
    ticket_id: str = "TCK-1",
    priority: str = "P1",
    category: Optional[str] = None,
    created_at: datetime = T0,
    pauses: tuple = (),
    first_response_at: Optional[datetime] = None,
    resolved_at: Optional[datetime] = None,
) -> TrackedTicket:
    return TrackedTicket(
        summary=TicketSummary(
            ticket_id=ticket_id,
            ticket_number=f"HD-{ticket_id}",
            title="VPN drops every few minutes",
            priority=Priority(priority),
            category=category,
            status="New",
            assignee_id="agent-7",
            team_id="network",
        ),
        clock=TicketClockState(
            ticket_id=ticket_id,
            created_at=created_at,
            pauses=tuple(PauseInterval(*p) if isinstance(p, tuple) else p for p in pauses),
            first_response_at=first_response_at,
            resolved_at=resolved_at,
        ),
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()
