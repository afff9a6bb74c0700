"""
SLA Application DTOs
=====================

Data Transfer Objects for SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses. Following YAGNI - only what's needed.
"""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Literal
from datetime import datetime

from casewatch.sla.domain import Case, SweepReport


# ========== Type Aliases for Literals ==========
CaseStatusStr = Literal["Open", "InProgress", "Resolved", "Closed"]
EscalationStateStr = Literal["nominal", "overdue_pending", "overdue_escalate", "terminal"]
SweepKindStr = Literal["sla_monitoring", "overdue_escalation"]


# ========== Request DTOs ==========

class CaseCreateDTO(BaseModel):
    """
    DTO for registering a case for SLA tracking.

    `priority` is deliberately a plain string: unknown tiers are rejected
    by the service as a configuration error, not by schema validation.
    """
    id: str = Field(..., min_length=1, description="Case ID, e.g. CASE-2024-01-15-001-123")
    priority: str = Field(..., description="Priority tier: P1, P2 or P3")
    status: CaseStatusStr = Field(default="Open", description="Initial status")
    created_at: Optional[datetime] = Field(None, description="Creation time, defaults to now")
    title: Optional[str] = Field(None, description="Case title, used in notifications")
    assigned_to: Optional[str] = Field(None, description="Assigned analyst")


class CaseStatusUpdateDTO(BaseModel):
    """DTO for an external status transition."""
    status: CaseStatusStr = Field(..., description="New case status")


# ========== Response DTOs ==========

class CaseResponse(BaseModel):
    """SLA-relevant fields of a case."""
    id: str
    priority: str
    status: CaseStatusStr
    created_at: datetime
    due_at: datetime
    escalation_level: int
    last_escalated_at: Optional[datetime] = None
    breached_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, case: Case) -> "CaseResponse":
        return cls(
            id=case.id,
            priority=case.priority,
            status=case.status,
            created_at=case.created_at,
            due_at=case.due_at,
            escalation_level=case.escalation_level,
            last_escalated_at=case.last_escalated_at,
            breached_at=case.breached_at
        )


class CaseSLAResponse(BaseModel):
    """Response model for the SLA status of a case."""
    case: CaseResponse
    remaining_seconds: float = Field(..., description="Seconds to deadline, negative once overdue")
    is_overdue: bool
    escalation_due: bool
    approaching_breach: bool
    state: EscalationStateStr
    evaluated_at: datetime


class SweepReportResponse(BaseModel):
    """Response model for one sweep run."""
    kind: SweepKindStr
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: int
    cases_scanned: int
    escalated: int
    stale: int
    write_failures: int
    notification_failures: int
    newly_breached: int
    approaching_breach: int
    aborted: bool
    error: Optional[str] = None

    @classmethod
    def from_report(cls, report: SweepReport) -> "SweepReportResponse":
        return cls(**report.to_dict())


class JobStatusResponse(BaseModel):
    """Status of one scheduled sweep job."""
    interval_seconds: int
    scheduled: bool
    next_run_at: Optional[datetime] = None
    last_report: Optional[SweepReportResponse] = None


class SchedulerStatusResponse(BaseModel):
    """Status of the sweep scheduler."""
    running: bool
    active_sweeps: List[SweepKindStr] = Field(default_factory=list)
    jobs: Dict[str, JobStatusResponse] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Response model for the health endpoint."""
    status: str
    version: str
    environment: str
    checks: Dict[str, str]
    cases: Optional[Dict[str, int]] = None
    errors: List[str] = Field(default_factory=list)
