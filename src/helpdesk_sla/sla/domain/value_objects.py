"""
SLA Value Objects
==================

Immutable value objects for SLA domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from helpdesk_sla.config import Priority, Severity, SlaStatus, SlaTarget, VALID_PRIORITIES
from helpdesk_sla.core.exceptions import AmbiguousRule, NoApplicableRule
from helpdesk_sla.sla.domain.entities import SlaRule

RuleKey = Tuple[Priority, Optional[str]]


@dataclass(frozen=True)
class IntegrityIssue:
    """Two or more active rules competing for one priority/category slot."""

    priority: Priority
    category: Optional[str]
    rule_ids: Tuple[str, ...]

    def to_dict(self) -> dict:
        return {
            "priority": self.priority.value,
            "category": self.category,
            "rule_ids": list(self.rule_ids),
        }


class RuleSnapshot:
    """
    Read-only copy of the active rule table.

    Taken once per sweep pass so a pass never observes a rule edit halfway
    through. Resolution is a pure read.
    """

    def __init__(self, rules: Iterable[SlaRule], taken_at: Optional[datetime] = None):
        active = tuple(rule for rule in rules if rule.is_active)
        index: Dict[RuleKey, List[SlaRule]] = {}
        for rule in active:
            index.setdefault((rule.priority, rule.category), []).append(rule)

        self._rules = active
        self._index: Mapping[RuleKey, Tuple[SlaRule, ...]] = {
            key: tuple(sorted(group, key=lambda r: r.id)) for key, group in index.items()
        }
        self.taken_at = taken_at

    def __len__(self) -> int:
        return len(self._rules)

    @property
    def rules(self) -> Tuple[SlaRule, ...]:
        return self._rules

    def resolve(self, priority: Priority, category: Optional[str] = None) -> SlaRule:
        """
        Select the single applicable active rule.

        Order: exact priority and category, then the priority's global
        default. An ambiguous category match falls back to the global default;
        an ambiguous global default raises AmbiguousRule.

        Raises:
            NoApplicableRule: neither a category rule nor a default exists
            AmbiguousRule: the default slot holds more than one active rule
        """
        priority = Priority(priority)
        category = category.strip() if category and category.strip() else None

        if category is not None:
            matches = self._index.get((priority, category), ())
            if len(matches) == 1:
                return matches[0]

        defaults = self._index.get((priority, None), ())
        if len(defaults) == 1:
            return defaults[0]
        if len(defaults) > 1:
            raise AmbiguousRule(priority, None, [rule.id for rule in defaults])
        raise NoApplicableRule(priority, category)

    @property
    def integrity_issues(self) -> List[IntegrityIssue]:
        """Every slot that more than one active rule claims."""
        return [
            IntegrityIssue(priority, category, tuple(rule.id for rule in group))
            for (priority, category), group in sorted(
                self._index.items(), key=lambda item: (item[0][0].value, item[0][1] or "")
            )
            if len(group) > 1
        ]

    @property
    def missing_defaults(self) -> List[Priority]:
        """Priorities with no active global default rule."""
        return [
            Priority(value) for value in VALID_PRIORITIES
            if (Priority(value), None) not in self._index
        ]


# ========== Escalation policy ==========

DEFAULT_ROLES: Dict[str, List[str]] = {
    SlaStatus.ESCALATED.value: ["assignee", "team_lead"],
    SlaStatus.BREACHED.value: ["assignee", "team_lead", "service_desk_manager"],
}

DEFAULT_SEVERITY: Dict[str, str] = {
    Priority.P1.value: Severity.CRITICAL.value,
    Priority.P2.value: Severity.HIGH.value,
    Priority.P3.value: Severity.MEDIUM.value,
    Priority.P4.value: Severity.LOW.value,
}


class EscalationPolicy(BaseModel):
    """
    Notification policy loaded from YAML.

    Decides who is told about an escalation (by role) and how severe it is;
    resolving roles to people is the notification collaborator's job.
    """

    roles: Dict[str, List[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_ROLES.items()},
        description="Recipient roles per escalation status"
    )
    target_roles: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Extra roles per SLA target, added to the status roles"
    )
    severity: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_SEVERITY),
        description="Severity per ticket priority"
    )
    ticket_url_template: str = Field(
        default="https://helpdesk.example.com/tickets/{ticket_id}",
        description="Link included in notifications"
    )

    @field_validator("roles")
    @classmethod
    def validate_roles(cls, v: Dict[str, List[str]]) -> Dict[str, List[str]]:
        """Only escalation statuses notify; fill in the defaults for missing ones."""
        allowed = set(DEFAULT_ROLES)
        unknown = set(v) - allowed
        if unknown:
            raise ValueError(f"roles may only be configured for {sorted(allowed)}")
        for status, roles in DEFAULT_ROLES.items():
            v.setdefault(status, list(roles))
        return v

    @field_validator("target_roles")
    @classmethod
    def validate_target_roles(cls, v: Dict[str, List[str]]) -> Dict[str, List[str]]:
        for key in v:
            SlaTarget(key)
        return v

    @field_validator("severity")
    @classmethod
    def validate_severity(cls, v: Dict[str, str]) -> Dict[str, str]:
        for priority, severity in v.items():
            Priority(priority)
            Severity(severity)
        for priority, severity in DEFAULT_SEVERITY.items():
            v.setdefault(priority, severity)
        return v

    def severity_for(self, priority: Priority) -> Severity:
        return Severity(self.severity.get(Priority(priority).value, Severity.LOW.value))

    def ticket_url(self, ticket_id: str) -> str:
        return self.ticket_url_template.format(ticket_id=ticket_id)


def roles_for(policy: EscalationPolicy, target: SlaTarget, status: SlaStatus) -> FrozenSet[str]:
    """Recipient roles for an escalation; a pure mapping with no I/O."""
    roles = set(policy.roles.get(SlaStatus(status).value, []))
    roles.update(policy.target_roles.get(SlaTarget(target).value, []))
    return frozenset(roles)
