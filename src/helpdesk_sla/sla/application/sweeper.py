"""
Escalation Sweeper
==================

Periodic pass that re-evaluates every unfinished ticket, detects upward
SLA status transitions and records escalation events in the outbox.

One pass:
1. Take a RuleSnapshot of the active rules.
2. List unfinished tickets owned by this partition.
3. Evaluate them in batches, one unit of work per ticket, so the evaluation
   and its new events are committed together or not at all.

A failing ticket is logged and counted; it never aborts the pass and its
stored evaluation stays untouched until the next pass.
"""

import asyncio
import time
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from helpdesk_sla.config import ESCALATION_STATUSES, SlaTarget
from helpdesk_sla.core.exceptions import AmbiguousRule, ClockStateInvalid, NoApplicableRule
from helpdesk_sla.sla.application.services import UnitOfWorkFactory
from helpdesk_sla.sla.domain import (
    EscalationEvent,
    RuleSnapshot,
    SlaEvaluation,
    StatusEvaluator,
)
from helpdesk_sla.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def owns_ticket(ticket_id: str, partition_index: int, partition_count: int) -> bool:
    """Stable partition assignment shared by every process."""
    return zlib.crc32(ticket_id.encode("utf-8")) % partition_count == partition_index


@dataclass
class SweepReport:
    """Outcome of one sweep pass."""

    started_at: datetime
    scanned: int = 0
    evaluated: int = 0
    transitions: int = 0
    events_created: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
    integrity_issues: List[dict] = field(default_factory=list)
    missing_defaults: List[str] = field(default_factory=list)
    stopped_early: bool = False
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "scanned": self.scanned,
            "evaluated": self.evaluated,
            "transitions": self.transitions,
            "events_created": self.events_created,
            "failed": len(self.failures),
            "failures": dict(self.failures),
            "integrity_issues": list(self.integrity_issues),
            "missing_defaults": list(self.missing_defaults),
            "stopped_early": self.stopped_early,
            "duration_ms": self.duration_ms,
        }


class EscalationSweeper:
    """
    Runs sweep passes over this process's partition.

    `concurrency` workers split the partition into disjoint slices. Calling
    request_stop() lets in-flight batches finish and starts no new one.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        evaluator: Optional[StatusEvaluator] = None,
        batch_size: int = 200,
        concurrency: int = 1,
        partition_index: int = 0,
        partition_count: int = 1,
    ):
        if not 0 <= partition_index < partition_count:
            raise ValueError("partition_index must be in [0, partition_count)")
        if batch_size < 1 or concurrency < 1:
            raise ValueError("batch_size and concurrency must be positive")

        self._uow_factory = uow_factory
        self._evaluator = evaluator or StatusEvaluator()
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.partition_index = partition_index
        self.partition_count = partition_count

        self._stop_requested = False
        self._pass_lock = asyncio.Lock()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def is_running(self) -> bool:
        return not self._idle.is_set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        """Finish in-flight batches and start no new one."""
        self._stop_requested = True

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for the current pass to end; returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def run_once(self, as_of: Optional[datetime] = None) -> SweepReport:
        """Run one pass evaluated at `as_of` (default: now)."""
        as_of = as_of or datetime.now(timezone.utc)
        report = SweepReport(started_at=as_of)

        async with self._pass_lock:
            if self._stop_requested:
                report.stopped_early = True
                return report

            self._idle.clear()
            start_time = time.perf_counter()
            try:
                await self._run(as_of, report)
            finally:
                report.duration_ms = int((time.perf_counter() - start_time) * 1000)
                self._idle.set()

        log = logger.warning if report.failures else logger.info
        log(
            "Escalation sweep complete",
            extra={
                "partition": f"{self.partition_index}/{self.partition_count}",
                "tickets_scanned": report.scanned,
                "tickets_evaluated": report.evaluated,
                "transitions": report.transitions,
                "events_created": report.events_created,
                "tickets_failed": len(report.failures),
                "stopped_early": report.stopped_early,
                "processing_time_ms": report.duration_ms,
            }
        )
        return report

    async def _run(self, as_of: datetime, report: SweepReport) -> None:
        async with self._uow_factory() as uow:
            snapshot = RuleSnapshot(await uow.rules.list(active_only=True), taken_at=as_of)
            ticket_ids = await uow.tickets.list_unfinished_ids()

        self._report_integrity(snapshot, report)

        owned = [
            ticket_id for ticket_id in ticket_ids
            if owns_ticket(ticket_id, self.partition_index, self.partition_count)
        ]
        report.scanned = len(owned)

        slices = [owned[worker::self.concurrency] for worker in range(self.concurrency)]
        await asyncio.gather(*(
            self._work(ticket_slice, snapshot, as_of, report)
            for ticket_slice in slices if ticket_slice
        ))

    async def _work(
        self,
        ticket_ids: List[str],
        snapshot: RuleSnapshot,
        as_of: datetime,
        report: SweepReport
    ) -> None:
        for offset in range(0, len(ticket_ids), self.batch_size):
            if self._stop_requested:
                report.stopped_early = True
                return
            for ticket_id in ticket_ids[offset:offset + self.batch_size]:
                await self._sweep_ticket(ticket_id, snapshot, as_of, report)

    async def _sweep_ticket(
        self,
        ticket_id: str,
        snapshot: RuleSnapshot,
        as_of: datetime,
        report: SweepReport
    ) -> None:
        try:
            transitions, created = await self.evaluate_ticket(ticket_id, snapshot, as_of)
        except (NoApplicableRule, AmbiguousRule, ClockStateInvalid) as e:
            report.failures[ticket_id] = e.message
            logger.warning(
                f"Skipped ticket {ticket_id}: {e.message}",
                extra={"ticket_id": ticket_id, "error_type": type(e).__name__}
            )
            return
        except Exception as e:
            report.failures[ticket_id] = str(e) or type(e).__name__
            logger.error(
                f"Unexpected error evaluating ticket {ticket_id}: {e}",
                extra={"ticket_id": ticket_id, "error_type": type(e).__name__},
                exc_info=True
            )
            return

        report.evaluated += 1
        report.transitions += transitions
        report.events_created += created

    async def evaluate_ticket(
        self,
        ticket_id: str,
        snapshot: RuleSnapshot,
        as_of: datetime
    ) -> Tuple[int, int]:
        """
        Evaluate one ticket and persist the result with its new events.

        Returns (transitions, events_created). Raises on rule or clock
        problems, in which case nothing is written.
        """
        async with self._uow_factory() as uow:
            ticket = await uow.tickets.get(ticket_id)
            if ticket is None:
                return 0, 0

            ticket.clock.validate()
            rule = snapshot.resolve(ticket.summary.priority, ticket.summary.category)

            evaluation = await uow.evaluations.get(ticket_id)
            if evaluation is None:
                evaluation = SlaEvaluation(ticket_id=ticket_id, rule_id=rule.id, computed_at=as_of)

            transitions = 0
            events = []
            for target in SlaTarget:
                result = self._evaluator.evaluate_target(rule, ticket.clock, target, as_of)
                change = evaluation.advance(target, result.status, result.final, result.deadline)
                if change is None:
                    continue
                previous, current = change
                transitions += 1
                logger.info(
                    f"Ticket {ticket_id} {target.value} SLA {previous.value} -> {current.value}",
                    extra={
                        "ticket_id": ticket_id,
                        "target": target.value,
                        "from_status": previous.value,
                        "to_status": current.value,
                        "rule_id": rule.id,
                    }
                )
                if current in ESCALATION_STATUSES:
                    events.append(EscalationEvent(
                        ticket_id=ticket_id,
                        target=target,
                        status=current,
                        occurred_at=as_of,
                        rule_id=rule.id,
                    ))

            evaluation.rule_id = rule.id
            evaluation.computed_at = as_of
            await uow.evaluations.save(evaluation)

            created = 0
            for event in events:
                if await uow.events.add_if_absent(event):
                    created += 1

        return transitions, created

    @staticmethod
    def _report_integrity(snapshot: RuleSnapshot, report: SweepReport) -> None:
        for issue in snapshot.integrity_issues:
            report.integrity_issues.append(issue.to_dict())
            logger.warning(
                f"{len(issue.rule_ids)} active SLA rules claim priority "
                f"{issue.priority.value} ({issue.category or 'global default'})",
                extra=issue.to_dict()
            )
        for priority in snapshot.missing_defaults:
            report.missing_defaults.append(priority.value)
        if report.missing_defaults:
            logger.warning(
                "Priorities without an active global default rule",
                extra={"priorities": report.missing_defaults}
            )
