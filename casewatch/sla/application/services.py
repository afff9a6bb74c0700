"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and the case store / notifier.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (store, notifier, clock), not concrete implementations
"""

import asyncio
import dataclasses
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from casewatch.config import CaseStatus, EscalationState, SweepKind, VALID_STATUSES, VALID_SWEEP_KINDS
from casewatch.core import (
    ResourceNotFoundException,
    SweepInProgressException,
    ValidationException,
)
from casewatch.sla.domain import (
    Case, CaseOutcome, SweepReport, SLACalculator, SLAConfig, new_report
)
from casewatch.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)


# ========== Collaborator Interfaces (Dependency Inversion) ==========

class ICaseStore(ABC):
    """Interface for case persistence. Store errors raise RepositoryException."""

    @abstractmethod
    async def find_non_terminal_cases(self) -> List[Case]:
        """Get every case whose status is not Resolved or Closed."""

    @abstractmethod
    async def update_escalation(
        self,
        case_id: str,
        new_level: int,
        timestamp: datetime
    ) -> bool:
        """
        Atomically set escalation_level=new_level and last_escalated_at.

        Applies only if the stored level is new_level - 1 and the case is
        still non-terminal. Returns False when that guard did not match.
        """

    @abstractmethod
    async def create(self, case: Case) -> Case:
        """Persist a new case."""

    @abstractmethod
    async def get(self, case_id: str) -> Optional[Case]:
        """Get case by ID."""

    @abstractmethod
    async def update_status(self, case_id: str, status: str) -> Optional[Case]:
        """Set a case status. Returns None if the case does not exist."""

    @abstractmethod
    async def mark_breached(self, case_ids: Sequence[str], timestamp: datetime) -> int:
        """Stamp breached_at on non-terminal cases not yet marked. Returns rows changed."""

    @abstractmethod
    async def count_cases(self, now: datetime) -> Dict[str, int]:
        """Counts of total, active (non-terminal) and overdue cases."""


class INotifier(ABC):
    """Interface for escalation notifications."""

    @abstractmethod
    async def notify_escalation(self, case: Case, escalation_level: int) -> bool:
        """Dispatch an escalation message. True if accepted, False if it failed."""

    async def close(self) -> None:
        """Release transport resources."""


class IClock(ABC):
    """Interface for the current time."""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware timestamp."""


class ISLAConfigProvider(ABC):
    """Interface for SLA configuration access."""

    @abstractmethod
    def get_config(self) -> SLAConfig:
        """Get current SLA configuration."""


class SystemClock(IClock):
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


# ========== Application Services ==========

class CaseSLAService:
    """
    Service for registering cases and reading their SLA status.

    The case-creation boundary: unknown priority tiers are rejected
    here, before any due date is computed.
    """

    def __init__(
        self,
        case_store: ICaseStore,
        config_provider: ISLAConfigProvider,
        clock: Optional[IClock] = None
    ):
        self._store = case_store
        self._config_provider = config_provider
        self._clock = clock or SystemClock()

    async def open_case(
        self,
        case_id: str,
        priority: str,
        created_at: Optional[datetime] = None,
        status: str = CaseStatus.OPEN,
        title: Optional[str] = None,
        assigned_to: Optional[str] = None
    ) -> Case:
        """
        Register a new case and fix its due date.

        Raises:
            ConfigurationException: priority is not a recognized tier
            ValidationException: status is not a known status
        """
        created_at = created_at or self._clock.now()
        due_at = SLACalculator.compute_due_at(
            created_at, priority, self._config_provider.get_config()
        )
        self._validate_status(status)

        case = Case(
            id=case_id,
            priority=priority,
            status=status,
            created_at=created_at,
            due_at=due_at,
            title=title,
            assigned_to=assigned_to
        )
        created = await self._store.create(case)

        logger.info(
            "Case registered for SLA tracking",
            extra={"case_id": case_id, "priority": priority, "due_at": due_at.isoformat()}
        )
        return created

    async def get_case(self, case_id: str) -> Case:
        case = await self._store.get(case_id)
        if case is None:
            raise ResourceNotFoundException("Case", case_id)
        return case

    async def transition_status(self, case_id: str, status: str) -> Case:
        """Apply an external status change (e.g. analyst closes the case)."""
        self._validate_status(status)
        case = await self._store.update_status(case_id, status)
        if case is None:
            raise ResourceNotFoundException("Case", case_id)

        logger.info("Case status changed", extra={"case_id": case_id, "status": status})
        return case

    def describe(self, case: Case, now: Optional[datetime] = None) -> Dict[str, Any]:
        """SLA view of a case at `now`."""
        now = now or self._clock.now()
        config = self._config_provider.get_config()
        interval = config.escalation_interval

        return {
            "case": case,
            "remaining_seconds": SLACalculator.remaining(case, now).total_seconds(),
            "is_overdue": SLACalculator.is_overdue(case, now),
            "escalation_due": SLACalculator.escalation_due(case, now, interval),
            "approaching_breach": SLACalculator.is_approaching_breach(
                case, now, config.approaching_breach_window
            ),
            "state": SLACalculator.classify(case, now, interval),
            "evaluated_at": now,
        }

    async def health_snapshot(self) -> Dict[str, Any]:
        """Case counts for the health endpoint."""
        now = self._clock.now()
        counts = await self._store.count_cases(now)
        if counts.get("overdue"):
            logger.warning(
                "Health check: cases are overdue",
                extra={"overdue_cases": counts["overdue"]}
            )
        return {"timestamp": now, **counts}

    @staticmethod
    def _validate_status(status: str) -> None:
        if status not in VALID_STATUSES:
            raise ValidationException(
                f"Unknown case status: {status!r}",
                {"status": status, "allowed": list(VALID_STATUSES)}
            )


class EscalationService:
    """
    Service running the periodic SLA sweeps.

    - Monitoring sweep: marks newly overdue cases, warns about cases
      approaching their deadline.
    - Escalation sweep: drives the per-case escalation state machine and
      notifies on each escalation.

    Each sweep kind runs single-flight: requesting a kind that is already
    running raises SweepInProgressException. The two kinds may overlap,
    since monitoring only writes `breached_at`.
    """

    def __init__(
        self,
        case_store: ICaseStore,
        notifier: INotifier,
        config_provider: ISLAConfigProvider,
        clock: Optional[IClock] = None,
        concurrency: int = 10,
        notification_timeout: float = 30.0,
        metrics_exporter: Optional[Any] = None
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._store = case_store
        self._notifier = notifier
        self._config_provider = config_provider
        self._clock = clock or SystemClock()
        self._concurrency = concurrency
        self._notification_timeout = notification_timeout
        self._metrics = metrics_exporter

        # Set while the sweep of that kind is idle
        self._idle: Dict[str, asyncio.Event] = {}
        for kind in VALID_SWEEP_KINDS:
            self._idle[kind] = asyncio.Event()
            self._idle[kind].set()
        self.last_reports: Dict[str, SweepReport] = {}

    @property
    def active_sweeps(self) -> List[str]:
        return [kind for kind, idle in self._idle.items() if not idle.is_set()]

    async def wait_idle(self) -> None:
        """Return once no sweep of any kind is in flight."""
        for idle in self._idle.values():
            await idle.wait()

    @asynccontextmanager
    async def _single_flight(self, kind: str):
        idle = self._idle[kind]
        # Check-and-set has no await in between, so it is atomic on the loop
        if not idle.is_set():
            raise SweepInProgressException(kind)
        idle.clear()
        try:
            yield
        finally:
            idle.set()

    async def run_sweep(self, kind: str) -> SweepReport:
        if kind == SweepKind.SLA_MONITORING:
            return await self.run_monitoring_sweep()
        if kind == SweepKind.OVERDUE_ESCALATION:
            return await self.run_escalation_sweep()
        raise ValidationException(f"Unknown sweep: {kind!r}", {"sweep": kind})

    async def run_escalation_sweep(self) -> SweepReport:
        """
        Evaluate every non-terminal case once and escalate the eligible ones.

        Returns:
            SweepReport for this tick
        """
        async with self._single_flight(SweepKind.OVERDUE_ESCALATION):
            report = await self._escalate()
        await self._export_metrics(report)
        return report

    async def run_monitoring_sweep(self) -> SweepReport:
        """
        Mark newly overdue cases and log approaching-breach warnings.

        Does not escalate; escalation state is owned by the escalation sweep.
        """
        async with self._single_flight(SweepKind.SLA_MONITORING):
            report = await self._monitor()
        await self._export_metrics(report)
        return report

    async def _escalate(self) -> SweepReport:
        now = self._clock.now()
        interval = self._config_provider.get_config().escalation_interval
        report = new_report(SweepKind.OVERDUE_ESCALATION, now)

        cases = await self._load_cases(report)
        if cases is None:
            return self._finish(report)

        semaphore = asyncio.Semaphore(self._concurrency)
        notifications: List[asyncio.Task] = []

        async def worker(case: Case) -> str:
            async with semaphore:
                outcome = await self._evaluate_case(case, now, interval)
            if outcome == CaseOutcome.ESCALATED:
                escalated = dataclasses.replace(
                    case,
                    escalation_level=case.next_escalation_level,
                    last_escalated_at=now
                )
                notifications.append(asyncio.create_task(self._dispatch(escalated)))
            return outcome

        outcomes = await asyncio.gather(*(worker(case) for case in cases))

        for case, outcome in zip(cases, outcomes):
            if outcome == CaseOutcome.ESCALATED:
                report.escalated += 1
                report.escalated_case_ids.append(case.id)
            elif outcome == CaseOutcome.STALE:
                report.stale += 1
            elif outcome == CaseOutcome.WRITE_FAILED:
                report.write_failures += 1
                report.failed_case_ids.append(case.id)

        delivered = await asyncio.gather(*notifications)
        report.notification_failures = sum(1 for ok in delivered if not ok)

        return self._finish(report)

    async def _monitor(self) -> SweepReport:
        now = self._clock.now()
        config = self._config_provider.get_config()
        report = new_report(SweepKind.SLA_MONITORING, now)

        cases = await self._load_cases(report)
        if cases is None:
            return self._finish(report)

        newly_overdue = [
            case.id for case in cases
            if SLACalculator.is_overdue(case, now) and case.breached_at is None
        ]
        if newly_overdue:
            try:
                report.newly_breached = await self._store.mark_breached(newly_overdue, now)
            except Exception as e:  # noqa: BLE001 - retried next tick
                report.write_failures += len(newly_overdue)
                report.failed_case_ids.extend(newly_overdue)
                logger.error(
                    "Failed to mark overdue cases",
                    extra={"case_count": len(newly_overdue), "error": str(e)}
                )
            else:
                logger.warning(
                    "Cases exceeded SLA time limit",
                    extra={"newly_overdue": report.newly_breached}
                )

        window = config.approaching_breach_window
        for case in cases:
            if not SLACalculator.is_approaching_breach(case, now, window):
                continue
            report.approaching_breach += 1
            minutes_left = round(SLACalculator.remaining(case, now).total_seconds() / 60)
            logger.info(
                "SLA warning: case approaching breach",
                extra={
                    "case_id": case.id,
                    "assigned_to": case.assigned_to,
                    "minutes_remaining": minutes_left
                }
            )

        return self._finish(report)

    async def _load_cases(self, report: SweepReport) -> Optional[List[Case]]:
        """Read the case set; on failure mark the report aborted and return None."""
        try:
            with log_latency(logger, "find_non_terminal_cases", sweep=report.kind):
                cases = await self._store.find_non_terminal_cases()
        except Exception as e:  # noqa: BLE001 - whole tick retried on next schedule
            report.aborted = True
            report.error = str(e)
            logger.error(
                "Sweep aborted: case store read failed",
                extra={"sweep": report.kind, "error": str(e)}
            )
            return None

        report.cases_scanned = len(cases)
        return cases

    async def _evaluate_case(self, case: Case, now: datetime, interval) -> str:
        """Run the state machine for one case and persist an escalation."""
        state = SLACalculator.classify(case, now, interval)
        if state != EscalationState.OVERDUE_ESCALATE:
            return CaseOutcome.NO_ACTION

        new_level = case.next_escalation_level
        try:
            applied = await self._store.update_escalation(case.id, new_level, now)
        except Exception as e:  # noqa: BLE001 - contained per case, retried next tick
            logger.error(
                "Escalation write failed",
                extra={"case_id": case.id, "escalation_level": new_level, "error": str(e)}
            )
            return CaseOutcome.WRITE_FAILED

        if not applied:
            logger.info(
                "Escalation skipped: case changed since it was read",
                extra={"case_id": case.id, "escalation_level": new_level}
            )
            return CaseOutcome.STALE

        logger.info(
            "Case escalated",
            extra={
                "case_id": case.id,
                "priority": case.priority,
                "escalation_level": new_level,
                "overdue_minutes": round((now - case.due_at).total_seconds() / 60)
            }
        )
        return CaseOutcome.ESCALATED

    async def _dispatch(self, case: Case) -> bool:
        """Send one escalation notification; failures are logged, never raised."""
        try:
            accepted = await asyncio.wait_for(
                self._notifier.notify_escalation(case, case.escalation_level),
                timeout=self._notification_timeout
            )
        except asyncio.TimeoutError:
            logger.error(
                "Escalation notification timed out",
                extra={"case_id": case.id, "timeout_seconds": self._notification_timeout}
            )
            return False
        except Exception as e:  # noqa: BLE001 - notification is best-effort
            logger.error(
                "Escalation notification failed",
                extra={"case_id": case.id, "escalation_level": case.escalation_level, "error": str(e)}
            )
            return False

        if not accepted:
            logger.warning(
                "Escalation notification not delivered",
                extra={"case_id": case.id, "escalation_level": case.escalation_level}
            )
        return bool(accepted)

    def _finish(self, report: SweepReport) -> SweepReport:
        report.finished_at = self._clock.now()
        self.last_reports[report.kind] = report

        log = logger.warning if report.aborted or report.failures else logger.info
        log("Sweep completed", extra=report.to_dict())
        return report

    async def _export_metrics(self, report: SweepReport) -> None:
        if self._metrics is None:
            return
        try:
            await self._metrics.export_sweep_metrics(report)
        except Exception as e:  # noqa: BLE001 - metrics never fail a sweep
            logger.error(
                "Sweep metrics export failed",
                extra={"sweep": report.kind, "error": str(e)}
            )
