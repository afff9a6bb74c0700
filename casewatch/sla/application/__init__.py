"""
SLA Application Layer
======================

Application layer for SLA tracking and escalation.

Contains:
- Services: Orchestrate business logic and coordinate with the case store
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and collaborator interfaces,
but not on concrete infrastructure implementations.
"""

from casewatch.sla.application.dto import (
    CaseCreateDTO,
    CaseStatusUpdateDTO,
    CaseResponse,
    CaseSLAResponse,
    SweepReportResponse,
    JobStatusResponse,
    SchedulerStatusResponse,
    HealthResponse,
)
from casewatch.sla.application.services import (
    CaseSLAService,
    EscalationService,
    ICaseStore,
    INotifier,
    IClock,
    ISLAConfigProvider,
    SystemClock,
)

__all__ = [
    # DTOs
    "CaseCreateDTO",
    "CaseStatusUpdateDTO",
    "CaseResponse",
    "CaseSLAResponse",
    "SweepReportResponse",
    "JobStatusResponse",
    "SchedulerStatusResponse",
    "HealthResponse",
    # Services
    "CaseSLAService",
    "EscalationService",
    # Collaborator Interfaces
    "ICaseStore",
    "INotifier",
    "IClock",
    "ISLAConfigProvider",
    "SystemClock",
]
