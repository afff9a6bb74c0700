from datetime import timedelta

import pytest

from casewatch.core import ValidationException
from casewatch.infrastructure.database import (
    close_database, create_tables, get_engine, get_session_maker, init_database
)
from casewatch.sla.infrastructure import SQLAlchemyCaseStore

from tests.conftest import T0, make_case


@pytest.fixture
def case_store(session_factory):
    return SQLAlchemyCaseStore(session_factory)


@pytest.mark.asyncio
async def test_create_and_get_round_trip(case_store):
    await case_store.create(make_case("CASE-1", priority="P2", title="Phishing report", assigned_to="ana"))

    case = await case_store.get("CASE-1")

    assert case.priority == "P2"
    assert case.due_at == T0 + timedelta(hours=4)
    assert case.created_at.tzinfo is not None
    assert case.assigned_to == "ana"
    assert await case_store.get("CASE-404") is None


@pytest.mark.asyncio
async def test_duplicate_case_id_is_rejected(case_store):
    await case_store.create(make_case("CASE-1"))
    with pytest.raises(ValidationException):
        await case_store.create(make_case("CASE-1"))


@pytest.mark.asyncio
async def test_non_terminal_cases_ordered_by_due_date(case_store):
    await case_store.create(make_case("CASE-P3", priority="P3"))
    await case_store.create(make_case("CASE-P1", priority="P1"))
    await case_store.create(make_case("CASE-DONE", priority="P1", status="Resolved"))
    await case_store.create(make_case("CASE-WIP", priority="P2", status="InProgress"))

    cases = await case_store.find_non_terminal_cases()

    assert [c.id for c in cases] == ["CASE-P1", "CASE-WIP", "CASE-P3"]


@pytest.mark.asyncio
async def test_update_escalation_is_compare_and_set(case_store):
    await case_store.create(make_case("CASE-1"))
    first = T0 + timedelta(hours=2)

    assert await case_store.update_escalation("CASE-1", 1, first)
    # A second writer that read level 0 must not apply level 1 again
    assert not await case_store.update_escalation("CASE-1", 1, first + timedelta(seconds=1))
    # Skipping a level is refused
    assert not await case_store.update_escalation("CASE-1", 3, first)

    case = await case_store.get("CASE-1")
    assert case.escalation_level == 1
    assert case.last_escalated_at == first


@pytest.mark.asyncio
async def test_update_escalation_ignores_terminal_cases(case_store):
    await case_store.create(make_case("CASE-1"))
    await case_store.update_status("CASE-1", "Closed")

    assert not await case_store.update_escalation("CASE-1", 1, T0 + timedelta(hours=2))
    assert (await case_store.get("CASE-1")).escalation_level == 0


@pytest.mark.asyncio
async def test_update_status(case_store):
    await case_store.create(make_case("CASE-1"))

    updated = await case_store.update_status("CASE-1", "InProgress")

    assert updated.status == "InProgress"
    assert await case_store.update_status("CASE-404", "Closed") is None


@pytest.mark.asyncio
async def test_mark_breached_only_once(case_store):
    await case_store.create(make_case("CASE-1"))
    await case_store.create(make_case("CASE-2", status="Closed"))
    first = T0 + timedelta(hours=2)

    assert await case_store.mark_breached(["CASE-1", "CASE-2"], first) == 1
    assert await case_store.mark_breached(["CASE-1"], first + timedelta(minutes=5)) == 0
    assert await case_store.mark_breached([], first) == 0

    assert (await case_store.get("CASE-1")).breached_at == first
    assert (await case_store.get("CASE-2")).breached_at is None


@pytest.mark.asyncio
async def test_count_cases(case_store):
    await case_store.create(make_case("CASE-1", priority="P1"))
    await case_store.create(make_case("CASE-2", priority="P3"))
    await case_store.create(make_case("CASE-3", priority="P1", status="Resolved"))

    counts = await case_store.count_cases(T0 + timedelta(hours=2))

    assert counts == {"total": 3, "active": 2, "overdue": 1}


@pytest.mark.asyncio
async def test_database_lifecycle(tmp_path):
    engine = init_database(f"sqlite+aiosqlite:///{tmp_path / 'lifecycle.db'}")
    try:
        assert get_engine() is engine
        await create_tables()

        store = SQLAlchemyCaseStore(get_session_maker())
        await store.create(make_case("CASE-1"))
        assert (await store.get("CASE-1")).priority == "P1"
    finally:
        await close_database()

    with pytest.raises(RuntimeError):
        get_engine()
    with pytest.raises(RuntimeError):
        get_session_maker()
