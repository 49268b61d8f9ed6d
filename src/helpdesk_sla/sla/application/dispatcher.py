"""
Escalation Dispatcher
=====================

Drains the escalation outbox: delivers due events through the notifier,
retries transient failures with exponential backoff and gives up after
a bounded number of attempts.

An event is claimed before it is sent: the claim moves its next attempt
out by a lease, so an overlapping pass in this or another process skips
it. A dispatcher that dies mid-delivery leaves the event due again once
the lease runs out.

Delivery never touches SLA status. A failed notification is a delivery
problem only.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from helpdesk_sla.core.exceptions import NotificationRejected, TransientFailure
from helpdesk_sla.sla.application.services import (
    IEscalationPolicyProvider,
    INotifier,
    UnitOfWorkFactory,
)
from helpdesk_sla.sla.domain import EscalationEvent, roles_for
from helpdesk_sla.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DispatchReport:
    """Outcome of one dispatch pass."""

    attempted: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "delivered": self.delivered,
            "retried": self.retried,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class EscalationDispatcher:
    """Delivers pending escalation events at least once."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        notifier: INotifier,
        policy_provider: IEscalationPolicyProvider,
        timeout_seconds: float = 5.0,
        max_attempts: int = 5,
        backoff_base_seconds: float = 30.0,
        backoff_max_seconds: float = 1800.0,
        batch_size: int = 100,
        lease_seconds: float = 300.0,
    ):
        if lease_seconds <= timeout_seconds:
            raise ValueError("lease_seconds must exceed timeout_seconds")

        self._uow_factory = uow_factory
        self._notifier = notifier
        self._policy_provider = policy_provider
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds

        self._pass_lock = asyncio.Lock()

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next attempt after `attempts` failures."""
        delay = self.backoff_base_seconds * 2 ** max(attempts - 1, 0)
        return timedelta(seconds=min(delay, self.backoff_max_seconds))

    async def dispatch_due(self, now: Optional[datetime] = None) -> DispatchReport:
        """Deliver every pending event whose next attempt is due at `now`."""
        now = now or datetime.now(timezone.utc)
        report = DispatchReport()

        async with self._pass_lock:
            async with self._uow_factory() as uow:
                events = await uow.events.list_due(now, self.batch_size)

            for event in events:
                if not await self._claim(event, now):
                    report.skipped += 1
                    continue
                report.attempted += 1
                outcome = await self._deliver(event, now)
                setattr(report, outcome, getattr(report, outcome) + 1)

        if events:
            logger.info("Escalation dispatch complete", extra=report.to_dict())
        return report

    async def _claim(self, event: EscalationEvent, now: datetime) -> bool:
        lease_until = now + timedelta(seconds=self.lease_seconds)
        async with self._uow_factory() as uow:
            claimed = await uow.events.claim(event.id, now, lease_until)
        if not claimed:
            logger.debug("Escalation already claimed", extra=self._log_fields(event))
        return claimed

    async def _deliver(self, event: EscalationEvent, now: datetime) -> str:
        async with self._uow_factory() as uow:
            summary = await uow.tickets.get_summary(event.ticket_id)

        if summary is None:
            event.attempts += 1
            event.mark_failed("ticket no longer exists")
            await self._save(event)
            logger.error(
                f"Escalation for unknown ticket {event.ticket_id} dropped",
                extra=self._log_fields(event)
            )
            return "failed"

        roles = roles_for(self._policy_provider.get_policy(), event.target, event.status)
        event.attempts += 1

        try:
            await asyncio.wait_for(
                self._notifier.notify(event, summary, roles),
                timeout=self.timeout_seconds
            )
        except NotificationRejected as e:
            event.mark_failed(e.message)
            outcome = "failed"
            logger.error(
                f"Escalation notification rejected: {e.message}",
                extra=self._log_fields(event)
            )
        except (TransientFailure, asyncio.TimeoutError) as e:
            outcome = self._retry_or_fail(event, now, _describe(e))
        except Exception as e:
            logger.error(
                f"Unexpected notifier error: {e}",
                extra=self._log_fields(event),
                exc_info=True
            )
            outcome = self._retry_or_fail(event, now, _describe(e))
        else:
            event.mark_delivered(now)
            outcome = "delivered"
            logger.info("Escalation delivered", extra=self._log_fields(event))

        await self._save(event)
        return outcome

    def _retry_or_fail(self, event: EscalationEvent, now: datetime, error: str) -> str:
        if event.attempts >= self.max_attempts:
            event.mark_failed(error)
            logger.error(
                f"Escalation delivery failed after {event.attempts} attempts: {error}",
                extra=self._log_fields(event)
            )
            return "failed"

        next_attempt_at = now + self.backoff(event.attempts)
        event.schedule_retry(error, next_attempt_at)
        logger.warning(
            f"Escalation delivery will be retried: {error}",
            extra={**self._log_fields(event), "next_attempt_at": next_attempt_at.isoformat()}
        )
        return "retried"

    async def _save(self, event: EscalationEvent) -> None:
        async with self._uow_factory() as uow:
            await uow.events.update(event)

    @staticmethod
    def _log_fields(event: EscalationEvent) -> dict:
        return {
            "event_id": event.id,
            "ticket_id": event.ticket_id,
            "target": event.target.value,
            "sla_status": event.status.value,
            "attempts": event.attempts,
        }


def _describe(error: Exception) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "notifier timed out"
    return getattr(error, "message", None) or str(error) or type(error).__name__
