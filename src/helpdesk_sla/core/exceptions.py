"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Any, Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ConflictException(ApplicationException):
    """Exception when a write would violate a uniqueness invariant."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class TransientFailure(ExternalServiceException):
    """Notifier call failed in a way that is worth retrying."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notifier", message, details)


class NotificationRejected(ExternalServiceException):
    """Notifier refused the event; retrying will not help."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notifier", message, details)


# ========== SLA domain errors ==========

class NoApplicableRule(DomainException):
    """No active rule covers the ticket's priority."""

    def __init__(self, priority: Any, category: Optional[str] = None):
        self.priority = priority
        self.category = category
        super().__init__(
            f"No active SLA rule for priority {_label(priority)}"
            f" (category {category or 'global default'})",
            {"priority": _label(priority), "category": category}
        )


class AmbiguousRule(DomainException):
    """More than one active rule claims the same priority/category slot."""

    def __init__(self, priority: Any, category: Optional[str], rule_ids: list):
        self.priority = priority
        self.category = category
        self.rule_ids = list(rule_ids)
        super().__init__(
            f"{len(self.rule_ids)} active SLA rules for priority {_label(priority)}"
            f" (category {category or 'global default'})",
            {"priority": _label(priority), "category": category, "rule_ids": self.rule_ids}
        )


class ClockStateInvalid(DomainException):
    """Pause interval log is malformed; the ticket cannot be evaluated."""

    def __init__(self, ticket_id: str, reason: str):
        self.ticket_id = ticket_id
        self.reason = reason
        super().__init__(
            f"Invalid clock state for ticket {ticket_id}: {reason}",
            {"ticket_id": ticket_id, "reason": reason}
        )


class StatusDowngradeError(DomainException):
    """Attempt to move an SLA status to a lower severity."""

    def __init__(self, target: Any, current: Any, requested: Any):
        super().__init__(
            f"Refusing to downgrade {_label(target)} status"
            f" from {_label(current)} to {_label(requested)}",
            {"target": _label(target), "current": _label(current), "requested": _label(requested)}
        )


def _label(value: Any) -> Any:
    return getattr(value, "value", value)
