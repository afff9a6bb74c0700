"""
SLA Controllers (API Routes)
=============================

FastAPI routes for case SLA tracking and the sweep scheduler.

Controllers are thin - they delegate to application services. Errors
raised by the services are mapped to HTTP responses by the shared
exception handlers.
"""

from fastapi import APIRouter, Depends, Request, status

from casewatch.config import VALID_SWEEP_KINDS
from casewatch.core import ResourceNotFoundException
from casewatch.sla.application import (
    CaseCreateDTO,
    CaseResponse,
    CaseSLAResponse,
    CaseSLAService,
    CaseStatusUpdateDTO,
    JobStatusResponse,
    SchedulerStatusResponse,
    SweepReportResponse,
)
from casewatch.sla.infrastructure import SLAScheduler
from casewatch.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA Monitoring"])


# ========== Example payloads for Swagger ==========

CASE_CREATE_EXAMPLE = {
    "id": "CASE-2024-01-15-001-123",
    "priority": "P1",
    "status": "Open",
    "title": "Suspicious outbound traffic from finance subnet",
    "assigned_to": "analyst@example.com",
    "created_at": "2024-01-15T10:00:00Z"
}

CASE_SLA_RESPONSE_EXAMPLE = {
    "case": {
        "id": "CASE-2024-01-15-001-123",
        "priority": "P1",
        "status": "Open",
        "created_at": "2024-01-15T10:00:00Z",
        "due_at": "2024-01-15T11:00:00Z",
        "escalation_level": 0,
        "last_escalated_at": None,
        "breached_at": None
    },
    "remaining_seconds": 1800.0,
    "is_overdue": False,
    "escalation_due": False,
    "approaching_breach": True,
    "state": "nominal",
    "evaluated_at": "2024-01-15T10:30:00Z"
}


# ========== Dependencies ==========

def get_case_sla_service(request: Request) -> CaseSLAService:
    """Case SLA service wired at startup."""
    return request.app.state.case_sla_service


def get_scheduler(request: Request) -> SLAScheduler:
    """Sweep scheduler wired at startup."""
    return request.app.state.scheduler


# ========== Route Handlers ==========

@router.post(
    "/cases",
    response_model=CaseResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a case for SLA tracking",
    description="""
    Register a case and fix its due date from its priority.

    **Priority Tiers** (default deadlines): `P1` 60 min, `P2` 240 min, `P3` 1440 min

    An unknown priority is rejected with 422; no default deadline is applied.
    """,
    responses={
        201: {"description": "Case registered"},
        422: {"description": "Unknown priority or status, or duplicate case ID"}
    },
    openapi_extra={
        "requestBody": {"content": {"application/json": {"example": CASE_CREATE_EXAMPLE}}}
    }
)
async def create_case(
    payload: CaseCreateDTO,
    service: CaseSLAService = Depends(get_case_sla_service)
):
    case = await service.open_case(
        case_id=payload.id,
        priority=payload.priority,
        created_at=payload.created_at,
        status=payload.status,
        title=payload.title,
        assigned_to=payload.assigned_to
    )
    return CaseResponse.from_entity(case)


@router.get(
    "/cases/{case_id}",
    response_model=CaseSLAResponse,
    summary="Get case SLA status",
    description="""
    SLA status of a single case, evaluated now.

    **Escalation states:**
    - `nominal`: not overdue
    - `overdue_pending`: overdue, last escalation within the debounce interval
    - `overdue_escalate`: overdue and eligible for the next escalation
    - `terminal`: Resolved or Closed, no longer tracked
    """,
    responses={
        200: {
            "description": "Case SLA information",
            "content": {"application/json": {"example": CASE_SLA_RESPONSE_EXAMPLE}}
        },
        404: {"description": "Case not found"}
    }
)
async def get_case_sla(
    case_id: str,
    service: CaseSLAService = Depends(get_case_sla_service)
):
    case = await service.get_case(case_id)
    view = service.describe(case)
    view["case"] = CaseResponse.from_entity(case)
    return CaseSLAResponse(**view)


@router.patch(
    "/cases/{case_id}/status",
    response_model=CaseResponse,
    summary="Change case status",
    description="Apply a status change made outside the SLA core. Resolved and Closed cases leave SLA tracking.",
    responses={404: {"description": "Case not found"}}
)
async def update_case_status(
    case_id: str,
    payload: CaseStatusUpdateDTO,
    service: CaseSLAService = Depends(get_case_sla_service)
):
    case = await service.transition_status(case_id, payload.status)
    return CaseResponse.from_entity(case)


@router.get(
    "/scheduler",
    response_model=SchedulerStatusResponse,
    summary="Get sweep scheduler status"
)
async def get_scheduler_status(scheduler: SLAScheduler = Depends(get_scheduler)):
    snapshot = scheduler.status()
    jobs = {}
    for kind, job in snapshot["jobs"].items():
        report = job["last_report"]
        jobs[kind] = JobStatusResponse(
            interval_seconds=job["interval_seconds"],
            scheduled=job["scheduled"],
            next_run_at=job["next_run_at"],
            last_report=SweepReportResponse.from_report(report) if report else None
        )
    return SchedulerStatusResponse(
        running=snapshot["running"],
        active_sweeps=snapshot["active_sweeps"],
        jobs=jobs
    )


@router.post(
    "/scheduler/jobs/{name}/run",
    response_model=SweepReportResponse,
    summary="Run a sweep now",
    description="""
    Run one sweep immediately: `sla_monitoring` or `overdue_escalation`.

    Returns 409 if a sweep of either kind is already running.
    """,
    responses={
        404: {"description": "Unknown sweep"},
        409: {"description": "A sweep is already running"}
    }
)
async def run_job_now(
    name: str,
    scheduler: SLAScheduler = Depends(get_scheduler)
):
    if name not in VALID_SWEEP_KINDS:
        raise ResourceNotFoundException("Job", name)

    report = await scheduler.run_job_now(name)
    return SweepReportResponse.from_report(report)


# Export router for inclusion in main app
sla_router = router
