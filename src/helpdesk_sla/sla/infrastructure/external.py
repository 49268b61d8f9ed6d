"""
SLA External Service Integrations
==================================

External services for the escalation engine:
- Notification collaborator webhook (and a logging fallback)
- Escalation policy YAML watcher
- APScheduler job for the periodic sweep
"""

import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from helpdesk_sla.config import SlaStatus
from helpdesk_sla.core.exceptions import (
    ConfigurationException,
    NotificationRejected,
    TransientFailure,
)
from helpdesk_sla.sla.application.services import IEscalationPolicyProvider, INotifier
from helpdesk_sla.sla.application.sweeper import EscalationSweeper
from helpdesk_sla.sla.domain import EscalationEvent, EscalationPolicy, TicketSummary
from helpdesk_sla.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Escalation policy ==========

class PolicyFileHandler(FileSystemEventHandler):
    """Watchdog event handler for escalation policy file changes."""

    def __init__(self, policy_manager: "EscalationPolicyManager", policy_path: Path):
        self.policy_manager = policy_manager
        self.policy_path = policy_path
        super().__init__()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.policy_path.resolve():
            logger.info(f"Escalation policy changed: {event.src_path}")
            self.policy_manager.reload()

    # Editors that save by rename show up as a create
    on_created = on_modified


class EscalationPolicyManager(IEscalationPolicyProvider):
    """
    Thread-safe escalation policy holder with hot-reload support.

    Uses watchdog to monitor the YAML file. A reload that fails validation
    keeps the previous policy.
    """

    def __init__(self):
        self._policy: Optional[EscalationPolicy] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> EscalationPolicy:
        """
        Initial policy load.

        Raises:
            ConfigurationException: the file exists but is not a valid policy
        """
        self._path = Path(path)
        try:
            policy = self._load_from_file(self._path)
        except (OSError, yaml.YAMLError, ValidationError, ValueError) as e:
            raise ConfigurationException(
                f"Invalid escalation policy {self._path}: {e}",
                {"path": str(self._path)}
            )
        with self._lock:
            self._policy = policy
        return policy

    def _load_from_file(self, path: Path) -> EscalationPolicy:
        """Load and parse the YAML policy file."""
        if not path.exists():
            logger.warning(f"Escalation policy file not found: {path}, using defaults")
            return EscalationPolicy()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return EscalationPolicy(**data)

    def reload(self) -> bool:
        """Reload the policy from file."""
        if self._path is None:
            return False

        try:
            new_policy = self._load_from_file(self._path)
        except (OSError, yaml.YAMLError, ValidationError, ValueError) as e:
            logger.error(f"Failed to reload escalation policy, keeping previous one: {e}")
            return False

        with self._lock:
            self._policy = new_policy
        logger.info("Escalation policy reloaded successfully")
        return True

    def start_watching(self) -> None:
        """
        Start watching the policy file for changes.

        Skips watching when the file does not exist or the platform has no
        usable file notification API.
        """
        if self._path is None:
            raise RuntimeError("Policy not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(f"Policy file doesn't exist, skipping file watch: {self._path}")
            return

        try:
            self._observer = Observer()
            handler = PolicyFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info(f"Started watching escalation policy: {self._path}")
        except OSError as e:
            logger.warning(f"File watching not available, using static policy: {e}")
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_policy(self) -> EscalationPolicy:
        with self._lock:
            if self._policy is None:
                raise RuntimeError("Escalation policy not loaded")
            return self._policy


# ========== Circuit breaker ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = time.monotonic()
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


# ========== Notifiers ==========

def build_escalation_message(
    event: EscalationEvent,
    summary: TicketSummary,
    policy: EscalationPolicy
) -> Dict[str, str]:
    """Subject and body of the escalation notice."""
    breached = SlaStatus(event.status) == SlaStatus.BREACHED
    kind = "Breach" if breached else "Escalation"
    reached = "breached" if breached else "reached its escalation threshold on"
    severity = policy.severity_for(summary.priority)

    body = "\n".join([
        f"Ticket {summary.ticket_number} ({summary.title}) has {reached} the "
        f"{event.target.value} SLA.",
        f"Priority: {summary.priority.value} ({severity.value})",
        f"Category: {summary.category or 'none'}",
        f"Status: {event.status.value}",
        f"View ticket: {policy.ticket_url(summary.ticket_id)}",
    ])
    return {"subject": f"SLA {kind}: {summary.ticket_number}", "body": body}


def build_payload(
    event: EscalationEvent,
    summary: TicketSummary,
    roles: FrozenSet[str],
    policy: EscalationPolicy
) -> Dict[str, Any]:
    """JSON document posted to the notification collaborator."""
    message = build_escalation_message(event, summary, policy)
    return {
        "idempotency_key": ":".join(event.idempotency_key),
        "event_id": event.id,
        "ticket": {
            "id": summary.ticket_id,
            "number": summary.ticket_number,
            "title": summary.title,
            "priority": summary.priority.value,
            "category": summary.category,
            "assignee_id": summary.assignee_id,
            "team_id": summary.team_id,
            "url": policy.ticket_url(summary.ticket_id),
        },
        "target": event.target.value,
        "status": event.status.value,
        "severity": policy.severity_for(summary.priority).value,
        "occurred_at": event.occurred_at.isoformat(),
        "roles": sorted(roles),
        "subject": message["subject"],
        "body": message["body"],
    }


class WebhookNotifier(INotifier):
    """
    Notification collaborator client over an HTTP webhook.

    Timeouts, transport errors, 429/5xx responses and an open circuit are
    transient. Any other 4xx is a permanent rejection.
    """

    def __init__(
        self,
        webhook_url: str,
        policy_provider: IEscalationPolicyProvider,
        timeout_seconds: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.webhook_url = webhook_url
        self._policy_provider = policy_provider
        self._timeout_seconds = timeout_seconds
        self._http_client = http_client
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._http_client

    async def notify(
        self,
        event: EscalationEvent,
        summary: TicketSummary,
        roles: FrozenSet[str]
    ) -> None:
        if not self._circuit_breaker.allow_request():
            raise TransientFailure("circuit breaker open", {"ticket_id": event.ticket_id})

        payload = build_payload(event, summary, roles, self._policy_provider.get_policy())
        client = await self._get_client()

        try:
            response = await client.post(
                self.webhook_url,
                json=payload,
                headers={"Idempotency-Key": payload["idempotency_key"]}
            )
        except httpx.TransportError as e:
            self._circuit_breaker.record_failure()
            raise TransientFailure(
                f"{type(e).__name__}: {e}",
                {"ticket_id": event.ticket_id}
            )

        code = response.status_code
        if code == 429 or code >= 500:
            self._circuit_breaker.record_failure()
            raise TransientFailure(f"webhook returned {code}", {"status_code": code})

        self._circuit_breaker.record_success()
        if code >= 400:
            raise NotificationRejected(f"webhook rejected event with {code}", {"status_code": code})

        logger.info(
            "Escalation notification sent",
            extra={
                "ticket_id": event.ticket_id,
                "target": event.target.value,
                "sla_status": event.status.value,
            }
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class LoggingNotifier(INotifier):
    """Writes escalations to the log; used when no webhook is configured."""

    def __init__(self, policy_provider: IEscalationPolicyProvider):
        self._policy_provider = policy_provider

    async def notify(
        self,
        event: EscalationEvent,
        summary: TicketSummary,
        roles: FrozenSet[str]
    ) -> None:
        message = build_escalation_message(event, summary, self._policy_provider.get_policy())
        logger.warning(
            message["subject"],
            extra={
                "ticket_id": event.ticket_id,
                "target": event.target.value,
                "sla_status": event.status.value,
                "roles": sorted(roles),
            }
        )

    async def close(self) -> None:
        return None


# ========== Scheduler ==========

class SweepScheduler:
    """
    Wrapper for APScheduler running the sweep in the background.

    Stopping asks the sweeper to stop, waits for the in-flight batch and
    then shuts the scheduler down.
    """

    def __init__(
        self,
        sweeper: EscalationSweeper,
        interval_seconds: int = 60,
        shutdown_timeout: float = 30.0
    ):
        self.sweeper = sweeper
        self.interval_seconds = interval_seconds
        self.shutdown_timeout = shutdown_timeout
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("Sweep scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="sla_escalation_sweep",
            name="SLA Escalation Sweep",
            misfire_grace_time=self.interval_seconds,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Sweep scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        self.sweeper.request_stop()
        if not await self.sweeper.wait_idle(self.shutdown_timeout):
            logger.warning(
                "Sweep still running at shutdown",
                extra={"shutdown_timeout": self.shutdown_timeout}
            )

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Sweep scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
