"""
SLA Infrastructure Repositories
=================================

Concrete implementation of the case store using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
cases from the database. Every operation runs in its own short
transaction, so each case update is a single atomic write.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from casewatch.config import NON_TERMINAL_STATUSES
from casewatch.core import RepositoryException, ValidationException
from casewatch.sla.application import ICaseStore
from casewatch.sla.domain import Case
from casewatch.sla.infrastructure.models import CaseModel


def _to_entity(model: CaseModel) -> Case:
    return Case(
        id=model.id,
        priority=model.priority,
        status=model.status,
        created_at=model.created_at,
        due_at=model.due_at,
        escalation_level=model.escalation_level,
        last_escalated_at=model.last_escalated_at,
        breached_at=model.breached_at,
        title=model.title,
        assigned_to=model.assigned_to
    )


class SQLAlchemyCaseStore(ICaseStore):
    """
    SQLAlchemy implementation of the case store.

    Takes a session factory rather than a session: sweeps run outside
    any request and open one session per operation.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_non_terminal_cases(self) -> List[Case]:
        """Get open and in-progress cases, oldest deadline first."""
        stmt = (
            select(CaseModel)
            .where(CaseModel.status.in_(NON_TERMINAL_STATUSES))
            .order_by(CaseModel.due_at.asc())
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [_to_entity(model) for model in result.scalars().all()]
        except SQLAlchemyError as e:
            raise RepositoryException("Failed to load non-terminal cases", {"error": str(e)}) from e

    async def update_escalation(
        self,
        case_id: str,
        new_level: int,
        timestamp: datetime
    ) -> bool:
        """Compare-and-set the escalation fields in one UPDATE."""
        stmt = (
            update(CaseModel)
            .where(
                CaseModel.id == case_id,
                CaseModel.escalation_level == new_level - 1,
                CaseModel.status.in_(NON_TERMINAL_STATUSES)
            )
            .values(escalation_level=new_level, last_escalated_at=timestamp)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to update escalation for case {case_id}",
                {"case_id": case_id, "escalation_level": new_level, "error": str(e)}
            ) from e

    async def create(self, case: Case) -> Case:
        """Create new case."""
        model = CaseModel(
            id=case.id,
            priority=case.priority,
            status=case.status,
            title=case.title,
            assigned_to=case.assigned_to,
            created_at=case.created_at,
            due_at=case.due_at,
            escalation_level=case.escalation_level,
            last_escalated_at=case.last_escalated_at,
            breached_at=case.breached_at
        )
        try:
            async with self._session_factory() as session:
                session.add(model)
                await session.commit()
        except IntegrityError as e:
            raise ValidationException(f"Case {case.id} already exists", {"case_id": case.id}) from e
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to create case {case.id}", {"error": str(e)}) from e
        return case

    async def get(self, case_id: str) -> Optional[Case]:
        """Get case by ID."""
        try:
            async with self._session_factory() as session:
                model = await session.get(CaseModel, case_id)
                return _to_entity(model) if model else None
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load case {case_id}", {"error": str(e)}) from e

    async def update_status(self, case_id: str, status: str) -> Optional[Case]:
        """Set the case status."""
        try:
            async with self._session_factory() as session:
                model = await session.get(CaseModel, case_id)
                if model is None:
                    return None
                model.status = status
                case = _to_entity(model)
                await session.commit()
                return case
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to update status of case {case_id}", {"error": str(e)}) from e

    async def mark_breached(self, case_ids: Sequence[str], timestamp: datetime) -> int:
        """Stamp breached_at once on cases that are still open."""
        if not case_ids:
            return 0
        stmt = (
            update(CaseModel)
            .where(
                CaseModel.id.in_(list(case_ids)),
                CaseModel.breached_at.is_(None),
                CaseModel.status.in_(NON_TERMINAL_STATUSES)
            )
            .values(breached_at=timestamp)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            raise RepositoryException("Failed to mark cases as breached", {"error": str(e)}) from e

    async def count_cases(self, now: datetime) -> Dict[str, int]:
        """Total, active and overdue case counts."""
        active = CaseModel.status.in_(NON_TERMINAL_STATUSES)
        try:
            async with self._session_factory() as session:
                total = await session.scalar(select(func.count()).select_from(CaseModel))
                active_count = await session.scalar(
                    select(func.count()).select_from(CaseModel).where(active)
                )
                overdue = await session.scalar(
                    select(func.count()).select_from(CaseModel).where(active, CaseModel.due_at < now)
                )
        except SQLAlchemyError as e:
            raise RepositoryException("Failed to count cases", {"error": str(e)}) from e

        return {"total": total or 0, "active": active_count or 0, "overdue": overdue or 0}
