"""
SLA Domain Layer
================

Domain layer for SLA tracking and escalation.

Contains:
- Entities: Case, SweepReport
- Value Objects: SLAConfig
- Domain Services: SLACalculator, deadline_for

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from casewatch.sla.domain.entities import Case, CaseOutcome, SweepReport, new_report
from casewatch.sla.domain.value_objects import (
    SLACalculator,
    SLAConfig,
    DEFAULT_SLA_CONFIG,
    deadline_for,
    ensure_utc,
)

__all__ = [
    # Entities
    "Case",
    "CaseOutcome",
    "SweepReport",
    "new_report",
    # Value Objects & Services
    "SLACalculator",
    "SLAConfig",
    "DEFAULT_SLA_CONFIG",
    "deadline_for",
    "ensure_utc",
]
