from __future__ import annotations

import pytest

from helpdesk_sla.config import SlaStatus, SlaTarget
from helpdesk_sla.core.exceptions import StatusDowngradeError
from helpdesk_sla.sla.domain import EscalationEvent, SlaEvaluation, TargetState
from tests.conftest import T0, hours


def test_target_state_rejects_downgrade() -> None:
    state = TargetState(SlaTarget.RESPONSE, SlaStatus.ESCALATED)

    with pytest.raises(StatusDowngradeError) as exc_info:
        state.status = SlaStatus.AT_RISK

    assert exc_info.value.details == {
        "target": "response",
        "current": "escalated",
        "requested": "at_risk",
    }
    assert state.status == SlaStatus.ESCALATED


def test_target_state_allows_same_or_higher_status() -> None:
    state = TargetState(SlaTarget.RESOLUTION, SlaStatus.AT_RISK)

    state.status = SlaStatus.AT_RISK
    state.status = SlaStatus.BREACHED

    assert state.status == SlaStatus.BREACHED


def test_advance_reports_upward_transition() -> None:
    evaluation = SlaEvaluation(ticket_id="TCK-1", rule_id="rule-p1", computed_at=T0)

    change = evaluation.advance(SlaTarget.RESPONSE, SlaStatus.ESCALATED, False, T0 + hours(4))

    assert change == (SlaStatus.ON_TRACK, SlaStatus.ESCALATED)
    assert evaluation.response_status == SlaStatus.ESCALATED
    assert evaluation.response.deadline == T0 + hours(4)


def test_advance_never_lowers_status() -> None:
    evaluation = SlaEvaluation(ticket_id="TCK-1", rule_id="rule-p1", computed_at=T0)
    evaluation.advance(SlaTarget.RESPONSE, SlaStatus.ESCALATED, False, None)

    change = evaluation.advance(SlaTarget.RESPONSE, SlaStatus.ON_TRACK, False, None)

    assert change is None
    assert evaluation.response_status == SlaStatus.ESCALATED


def test_breach_is_final() -> None:
    evaluation = SlaEvaluation(ticket_id="TCK-1", rule_id="rule-p1", computed_at=T0)
    evaluation.advance(SlaTarget.RESOLUTION, SlaStatus.BREACHED, False, None)

    assert evaluation.resolution.final is True
    assert evaluation.advance(SlaTarget.RESOLUTION, SlaStatus.ON_TRACK, True, None) is None
    assert evaluation.resolution_status == SlaStatus.BREACHED


def test_evaluation_is_final_once_both_targets_are() -> None:
    evaluation = SlaEvaluation(ticket_id="TCK-1", rule_id="rule-p1", computed_at=T0)
    evaluation.advance(SlaTarget.RESPONSE, SlaStatus.ON_TRACK, True, None)
    assert not evaluation.is_final

    evaluation.advance(SlaTarget.RESOLUTION, SlaStatus.ON_TRACK, True, None)
    assert evaluation.is_final


def test_to_dict() -> None:
    evaluation = SlaEvaluation(ticket_id="TCK-1", rule_id="rule-p1", computed_at=T0)
    evaluation.advance(SlaTarget.RESPONSE, SlaStatus.AT_RISK, False, T0 + hours(4))

    assert evaluation.to_dict() == {
        "ticket_id": "TCK-1",
        "rule_id": "rule-p1",
        "computed_at": "2024-01-15T09:00:00+00:00",
        "response": {"status": "at_risk", "final": False, "deadline": "2024-01-15T13:00:00+00:00"},
        "resolution": {"status": "on_track", "final": False, "deadline": None},
    }


def test_event_delivery_state_changes() -> None:
    event = EscalationEvent("TCK-1", SlaTarget.RESPONSE, SlaStatus.ESCALATED, T0)
    assert event.idempotency_key == ("TCK-1", "response", "escalated")

    event.schedule_retry("webhook returned 503", T0 + hours(1))
    assert event.next_attempt_at == T0 + hours(1)

    event.mark_delivered(T0 + hours(1))
    assert event.delivery_status.value == "delivered"
    assert event.next_attempt_at is None
    assert event.last_error is None
