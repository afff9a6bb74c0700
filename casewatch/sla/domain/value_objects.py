"""
SLA Value Objects
==================

Immutable value objects and pure calculations for the SLA domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from casewatch.config import (
    EscalationState, DEFAULT_DEADLINE_MINUTES,
    VALID_PRIORITIES, TERMINAL_STATUSES
)
from casewatch.core import ConfigurationException

if TYPE_CHECKING:
    from casewatch.sla.domain.entities import Case


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps (some drivers drop tzinfo on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SLAConfig(BaseModel):
    """
    SLA policy loaded from YAML.

    Deadline per priority tier, the minimum spacing between two escalations
    of the same case, and the look-ahead window for approaching-breach
    warnings.
    """
    deadline_minutes: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_DEADLINE_MINUTES),
        description="Time to resolve, in minutes, by priority tier"
    )
    escalation_debounce_minutes: int = Field(
        default=15,
        ge=1,
        description="Minimum minutes between two escalations of one case"
    )
    approaching_breach_window_minutes: int = Field(
        default=60,
        ge=0,
        description="Warn about cases due within this many minutes"
    )

    @field_validator("deadline_minutes")
    @classmethod
    def validate_deadline_minutes(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Reject unknown tiers and non-positive deadlines; fill missing tiers."""
        unknown = set(v) - set(VALID_PRIORITIES)
        if unknown:
            raise ValueError(f"unknown priority tiers: {sorted(unknown)}")

        merged = dict(DEFAULT_DEADLINE_MINUTES)
        for priority, minutes in v.items():
            if minutes <= 0:
                raise ValueError(f"deadline for {priority} must be positive, got {minutes}")
            merged[priority] = minutes
        return merged

    def get_deadline(self, priority: str) -> timedelta:
        """Deadline for a priority tier; unknown tiers are a configuration error."""
        if priority not in VALID_PRIORITIES:
            raise ConfigurationException(
                f"Unrecognized priority tier: {priority!r}",
                {"priority": priority, "allowed": list(VALID_PRIORITIES)}
            )
        return timedelta(minutes=self.deadline_minutes[priority])

    @property
    def escalation_interval(self) -> timedelta:
        return timedelta(minutes=self.escalation_debounce_minutes)

    @property
    def approaching_breach_window(self) -> timedelta:
        return timedelta(minutes=self.approaching_breach_window_minutes)


DEFAULT_SLA_CONFIG = SLAConfig()


def deadline_for(priority: str, config: Optional[SLAConfig] = None) -> timedelta:
    """
    Map a priority tier to its SLA duration.

    P1 -> 1 hour, P2 -> 4 hours, P3 -> 24 hours unless overridden.

    Raises:
        ConfigurationException: priority is not P1, P2 or P3
    """
    return (config or DEFAULT_SLA_CONFIG).get_deadline(priority)


class SLACalculator:
    """
    Pure functions for SLA calculations.

    Stateless utility class - all overdue and escalation decisions
    live here so sweeps, routes and tests agree on them.
    """

    @staticmethod
    def compute_due_at(
        created_at: datetime,
        priority: str,
        config: Optional[SLAConfig] = None
    ) -> datetime:
        """
        Calculate the due timestamp of a new case.

        Args:
            created_at: When the case was created
            priority: Case priority tier
            config: Optional policy with deadline overrides

        Returns:
            created_at + deadline_for(priority)
        """
        return created_at + deadline_for(priority, config)

    @staticmethod
    def is_overdue(case: "Case", now: datetime) -> bool:
        """Non-terminal and strictly past its due timestamp."""
        return case.status not in TERMINAL_STATUSES and now > case.due_at

    @staticmethod
    def escalation_due(case: "Case", now: datetime, interval: timedelta) -> bool:
        """
        Whether an escalation should fire for this case now.

        Overdue, and either never escalated or last escalated at least
        `interval` ago.
        """
        if not SLACalculator.is_overdue(case, now):
            return False
        if case.last_escalated_at is None:
            return True
        return now - case.last_escalated_at >= interval

    @staticmethod
    def is_approaching_breach(case: "Case", now: datetime, window: timedelta) -> bool:
        """Non-terminal, not yet overdue, and due within `window`."""
        if case.status in TERMINAL_STATUSES:
            return False
        return case.due_at >= now and case.due_at - now <= window

    @staticmethod
    def remaining(case: "Case", now: datetime) -> timedelta:
        """Signed time left until the deadline (negative once overdue)."""
        return case.due_at - now

    @staticmethod
    def classify(case: "Case", now: datetime, interval: timedelta) -> str:
        """
        Evaluate the per-tick escalation state machine.

        Returns:
            EscalationState for this case at `now`
        """
        if case.status in TERMINAL_STATUSES:
            return EscalationState.TERMINAL
        if not SLACalculator.is_overdue(case, now):
            return EscalationState.NOMINAL
        if SLACalculator.escalation_due(case, now, interval):
            return EscalationState.OVERDUE_ESCALATE
        return EscalationState.OVERDUE_PENDING
