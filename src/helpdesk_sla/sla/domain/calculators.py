"""
SLA Domain Services
===================

Stateless calculators for the SLA clock and status.

All functions are pure: they take the clock state and an explicit
evaluation time and never read the wall clock themselves (except where
documented as a default).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from helpdesk_sla.config import SlaStatus, SlaTarget
from helpdesk_sla.sla.domain.entities import SlaRule, TicketClockState

_ZERO = timedelta(0)


class ClockCalculator:
    """
    Pure functions for SLA clock arithmetic.

    Counting time is wall-clock time minus every paused sub-interval.
    """

    @staticmethod
    def paused_between(state: TicketClockState, start: datetime, end: datetime) -> timedelta:
        """Total paused time overlapping [start, end]. An open pause runs to `end`."""
        if end <= start:
            return _ZERO

        total = _ZERO
        for interval in state.pauses:
            pause_end = interval.end or end
            overlap_start = max(start, interval.start)
            overlap_end = min(end, pause_end)
            if overlap_end > overlap_start:
                total += overlap_end - overlap_start
        return total

    @classmethod
    def elapsed(cls, state: TicketClockState, as_of: datetime) -> timedelta:
        """Counting time between created_at and as_of, excluding pauses."""
        if as_of <= state.created_at:
            return _ZERO
        wall = as_of - state.created_at
        return wall - cls.paused_between(state, state.created_at, as_of)

    @classmethod
    def elapsed_for(cls, state: TicketClockState, target: SlaTarget, as_of: datetime) -> timedelta:
        """
        Counting time for one target.

        The response clock stops at first_response_at and the resolution clock
        at resolved_at, when those happened before as_of.
        """
        stop = state.event_at(target)
        if stop is not None and stop < as_of:
            as_of = stop
        return cls.elapsed(state, as_of)

    @classmethod
    def projected_deadline(
        cls,
        start: datetime,
        target_hours: float,
        state: TicketClockState,
        as_of: Optional[datetime] = None,
    ) -> datetime:
        """
        Wall-clock instant at which target_hours of counting time will have
        elapsed since start.

        Recorded pauses push the deadline back by their length. A currently
        open pause extends it by the time paused so far, measured up to as_of
        (default: now).
        """
        remaining = timedelta(hours=target_hours)
        cursor = start

        for interval in state.pauses:
            if interval.is_open:
                pause_end = max(as_of or datetime.now(timezone.utc), interval.start)
            else:
                pause_end = interval.end
            if pause_end <= cursor:
                continue
            if interval.start > cursor:
                gap = interval.start - cursor
                if gap >= remaining:
                    return cursor + remaining
                remaining -= gap
            cursor = pause_end

        return cursor + remaining


@dataclass(frozen=True)
class TargetEvaluation:
    """Result of evaluating one target at one instant."""

    target: SlaTarget
    status: SlaStatus
    final: bool
    elapsed: timedelta
    deadline: datetime


class StatusEvaluator:
    """
    Maps (rule, clock state, time) to an SLA status per target.

    Statuses for a lifecycle event that already happened are final.
    """

    def __init__(self, at_risk_ratio: float = 0.75):
        if not 0 < at_risk_ratio <= 1:
            raise ValueError("at_risk_ratio must be in (0, 1]")
        self.at_risk_ratio = at_risk_ratio

    def evaluate(
        self,
        rule: SlaRule,
        state: TicketClockState,
        as_of: datetime,
    ) -> Tuple[SlaStatus, SlaStatus]:
        """Return (response_status, resolution_status)."""
        return (
            self.evaluate_target(rule, state, SlaTarget.RESPONSE, as_of).status,
            self.evaluate_target(rule, state, SlaTarget.RESOLUTION, as_of).status,
        )

    def evaluate_target(
        self,
        rule: SlaRule,
        state: TicketClockState,
        target: SlaTarget,
        as_of: datetime,
    ) -> TargetEvaluation:
        target_hours = rule.target_hours(target)
        elapsed = ClockCalculator.elapsed_for(state, target, as_of)
        deadline = ClockCalculator.projected_deadline(
            state.created_at, target_hours, state, as_of=as_of
        )
        event_at = state.event_at(target)

        if event_at is not None and event_at <= as_of:
            on_time = elapsed <= timedelta(hours=target_hours)
            status = SlaStatus.ON_TRACK if on_time else SlaStatus.BREACHED
            return TargetEvaluation(target, status, True, elapsed, deadline)

        status = self.status_for_ratio(
            self.percent_elapsed(elapsed, target_hours), rule.escalation_threshold_percent
        )
        return TargetEvaluation(target, status, status == SlaStatus.BREACHED, elapsed, deadline)

    @staticmethod
    def percent_elapsed(elapsed: timedelta, target_hours: float) -> float:
        return elapsed.total_seconds() * 100 / (target_hours * 3600)

    def status_for_ratio(self, percent: float, threshold_percent: float) -> SlaStatus:
        if percent >= 100:
            return SlaStatus.BREACHED
        if percent >= threshold_percent:
            return SlaStatus.ESCALATED
        if percent >= threshold_percent * self.at_risk_ratio:
            return SlaStatus.AT_RISK
        return SlaStatus.ON_TRACK
