import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from casewatch.config import TERMINAL_STATUSES
from casewatch.core import RepositoryException
from casewatch.infrastructure.database import Base
from casewatch.sla.application import IClock, ICaseStore, INotifier, ISLAConfigProvider
from casewatch.sla.domain import Case, SLACalculator, SLAConfig
from casewatch.sla.infrastructure import CaseModel  # noqa: F401 - registers the table


T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


class FixedClock(IClock):
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def set(self, now: datetime) -> None:
        self.current = now

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class StaticConfigProvider(ISLAConfigProvider):
    def __init__(self, config: Optional[SLAConfig] = None):
        self.config = config or SLAConfig()

    def get_config(self) -> SLAConfig:
        return self.config


class FakeCaseStore(ICaseStore):
    """In-memory case store with the same compare-and-set semantics as the SQL one."""

    def __init__(self):
        self.cases: Dict[str, Case] = {}
        self.fail_reads = False
        self.read_delay = 0.0
        self.fail_writes_for: set = set()
        self.fail_mark_breached = False
        self.update_calls: List[tuple] = []
        # Called with the case id right before an escalation write is applied
        self.before_update = None

    def add(self, case: Case) -> Case:
        self.cases[case.id] = case
        return case

    async def find_non_terminal_cases(self) -> List[Case]:
        if self.fail_reads:
            raise RepositoryException("case store unavailable")
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        cases = [c for c in self.cases.values() if c.status not in TERMINAL_STATUSES]
        return [dataclasses.replace(c) for c in sorted(cases, key=lambda c: c.due_at)]

    async def update_escalation(self, case_id: str, new_level: int, timestamp: datetime) -> bool:
        self.update_calls.append((case_id, new_level, timestamp))
        if self.before_update is not None:
            self.before_update(case_id)
        if case_id in self.fail_writes_for:
            raise RepositoryException(f"write failed for {case_id}")

        stored = self.cases.get(case_id)
        if stored is None or stored.escalation_level != new_level - 1 or stored.is_terminal:
            return False
        self.cases[case_id] = dataclasses.replace(
            stored, escalation_level=new_level, last_escalated_at=timestamp
        )
        return True

    async def create(self, case: Case) -> Case:
        self.cases[case.id] = case
        return case

    async def get(self, case_id: str) -> Optional[Case]:
        return self.cases.get(case_id)

    async def update_status(self, case_id: str, status: str) -> Optional[Case]:
        stored = self.cases.get(case_id)
        if stored is None:
            return None
        self.cases[case_id] = dataclasses.replace(stored, status=status)
        return self.cases[case_id]

    async def mark_breached(self, case_ids: Sequence[str], timestamp: datetime) -> int:
        if self.fail_mark_breached:
            raise RepositoryException("write failed")
        changed = 0
        for case_id in case_ids:
            stored = self.cases.get(case_id)
            if stored and stored.breached_at is None and not stored.is_terminal:
                self.cases[case_id] = dataclasses.replace(stored, breached_at=timestamp)
                changed += 1
        return changed

    async def count_cases(self, now: datetime) -> Dict[str, int]:
        active = [c for c in self.cases.values() if not c.is_terminal]
        return {
            "total": len(self.cases),
            "active": len(active),
            "overdue": sum(1 for c in active if c.due_at < now),
        }


class FakeNotifier(INotifier):
    """Records escalations; can be told to fail, raise or hang for given cases."""

    def __init__(self):
        self.sent: List[tuple] = []
        self.fail_for: set = set()
        self.raise_for: set = set()
        self.hang_for: set = set()
        self.closed = False

    async def notify_escalation(self, case: Case, escalation_level: int) -> bool:
        if case.id in self.hang_for:
            await asyncio.sleep(3600)
        if case.id in self.raise_for:
            raise RuntimeError("smtp down")
        if case.id in self.fail_for:
            return False
        self.sent.append((case.id, escalation_level))
        return True

    async def close(self) -> None:
        self.closed = True


def make_case(
    case_id: str = "CASE-1",
    priority: str = "P1",
    status: str = "Open",
    created_at: datetime = T0,
    **overrides
) -> Case:
    due_at = overrides.pop("due_at", None) or SLACalculator.compute_due_at(created_at, priority)
    return Case(
        id=case_id,
        priority=priority,
        status=status,
        created_at=created_at,
        due_at=due_at,
        **overrides
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def config_provider():
    return StaticConfigProvider()


@pytest.fixture
def store():
    return FakeCaseStore()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cases.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
