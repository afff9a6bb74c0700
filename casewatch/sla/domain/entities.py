"""
SLA Domain Entities
====================

Pure Python domain entities for SLA tracking and escalation.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from casewatch.config import (
    SweepKind, VALID_PRIORITIES, VALID_STATUSES, TERMINAL_STATUSES
)
from casewatch.sla.domain.value_objects import ensure_utc


@dataclass
class Case:
    """
    Security case, restricted to the fields the SLA core reads and writes.

    `due_at` is fixed at creation. `escalation_level` and
    `last_escalated_at` are only ever moved forward by escalation sweeps.
    """

    id: str
    priority: str
    status: str
    created_at: datetime
    due_at: datetime

    escalation_level: int = 0
    last_escalated_at: Optional[datetime] = None
    breached_at: Optional[datetime] = None

    # Notification context only
    title: Optional[str] = None
    assigned_to: Optional[str] = None

    def __post_init__(self):
        """Validate case on initialization."""
        self.created_at = ensure_utc(self.created_at)
        self.due_at = ensure_utc(self.due_at)
        self.last_escalated_at = ensure_utc(self.last_escalated_at)
        self.breached_at = ensure_utc(self.breached_at)

        if self.priority not in VALID_PRIORITIES:
            raise ValueError(f"unknown priority: {self.priority!r}")
        if self.status not in VALID_STATUSES:
            raise ValueError(f"unknown status: {self.status!r}")
        if self.due_at <= self.created_at:
            raise ValueError("due_at must be after created_at")
        if self.escalation_level < 0:
            raise ValueError("escalation_level cannot be negative")

    @property
    def is_terminal(self) -> bool:
        """Resolved and Closed cases are out of SLA tracking."""
        return self.status in TERMINAL_STATUSES

    @property
    def next_escalation_level(self) -> int:
        return self.escalation_level + 1

    def to_dict(self) -> dict:
        """Convert to dictionary for logs and API responses."""
        return {
            "id": self.id,
            "priority": self.priority,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "due_at": self.due_at.isoformat(),
            "escalation_level": self.escalation_level,
            "last_escalated_at": self.last_escalated_at.isoformat() if self.last_escalated_at else None,
            "breached_at": self.breached_at.isoformat() if self.breached_at else None,
        }


class CaseOutcome(str):
    """What a sweep did with one case."""
    NO_ACTION = "no_action"
    ESCALATED = "escalated"
    STALE = "stale"
    WRITE_FAILED = "write_failed"


@dataclass
class SweepReport:
    """
    Summary of one sweep.

    An aborted sweep (case set could not be read) has `aborted=True`
    and zero counters.
    """

    kind: str
    started_at: datetime
    finished_at: Optional[datetime] = None

    cases_scanned: int = 0
    escalated: int = 0
    stale: int = 0
    write_failures: int = 0
    notification_failures: int = 0
    newly_breached: int = 0
    approaching_breach: int = 0

    aborted: bool = False
    error: Optional[str] = None
    escalated_case_ids: List[str] = field(default_factory=list)
    failed_case_ids: List[str] = field(default_factory=list)

    @property
    def duration_ms(self) -> int:
        if self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def failures(self) -> int:
        return self.write_failures + self.notification_failures

    def to_dict(self) -> dict:
        """Convert to dictionary for logs, metrics and the scheduler API."""
        return {
            "kind": self.kind,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "cases_scanned": self.cases_scanned,
            "escalated": self.escalated,
            "stale": self.stale,
            "write_failures": self.write_failures,
            "notification_failures": self.notification_failures,
            "newly_breached": self.newly_breached,
            "approaching_breach": self.approaching_breach,
            "aborted": self.aborted,
            "error": self.error,
        }


def new_report(kind: str, started_at: datetime) -> SweepReport:
    """Start an empty report for a sweep of the given kind."""
    if kind not in (SweepKind.SLA_MONITORING, SweepKind.OVERDUE_ESCALATION):
        raise ValueError(f"unknown sweep kind: {kind!r}")
    return SweepReport(kind=kind, started_at=started_at)


__all__ = ["Case", "CaseOutcome", "SweepReport", "new_report"]
