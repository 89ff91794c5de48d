"""Tests for usage metering and the SQL usage store."""

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from bmc_assist.database.migrations import create_tables
from bmc_assist.models.ai_usage import AIUsage
from bmc_assist.usage.recorder import UsageRecorder, current_month
from bmc_assist.usage.store import SQLAlchemyUsageStore, UsageRecord
from conftest import USER_ID, InMemoryUsageStore

FIXED_NOW = datetime(2026, 3, 31, 23, 30, tzinfo=timezone.utc)


def _fixed_clock():
    return FIXED_NOW


class TestCurrentMonth:
    """Test the YYYY-MM month key."""

    def test_format(self):
        """Months are zero-padded."""
        assert current_month(datetime(2026, 1, 5, tzinfo=timezone.utc)) == "2026-01"
        assert current_month(datetime(2025, 12, 31, 23, 59, tzinfo=timezone.utc)) == "2025-12"

    def test_default_is_now(self):
        month = current_month()
        assert len(month) == 7
        assert month[4] == "-"


class TestUsageRecorder:
    """Test best-effort recording and dispatch."""

    @pytest.mark.asyncio
    async def test_record(self):
        """One record per call with the clock's month."""
        store = InMemoryUsageStore()
        recorder = UsageRecorder(store, tool="bmc", clock=_fixed_clock)

        await recorder.record(USER_ID, 412, 57)

        assert store.records == [UsageRecord(
            user_id=USER_ID,
            tool="bmc",
            tokens_in=412,
            tokens_out=57,
            month="2026-03",
            created_at=FIXED_NOW,
        )]

    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed(self):
        """Store errors never reach the caller."""
        store = InMemoryUsageStore(fail=True)
        recorder = UsageRecorder(store, clock=_fixed_clock)

        await recorder.record(USER_ID, 1, 2)

        assert store.records == []

    @pytest.mark.asyncio
    async def test_store_failure_is_logged(self, caplog):
        """Store errors are logged."""
        recorder = UsageRecorder(InMemoryUsageStore(fail=True), clock=_fixed_clock)

        with caplog.at_level("ERROR", logger="bmc_assist.usage.recorder"):
            await recorder.record(USER_ID, 1, 2)

        assert "Failed to record usage" in caplog.text

    @pytest.mark.asyncio
    async def test_dispatch_and_drain(self):
        """Dispatched writes run in the background until drained."""
        gate = asyncio.Event()

        class SlowStore(InMemoryUsageStore):
            async def insert(self, record):
                await gate.wait()
                await super().insert(record)

        store = SlowStore()
        recorder = UsageRecorder(store, clock=_fixed_clock)

        recorder.dispatch(USER_ID, 10, 20)
        recorder.dispatch(USER_ID, 30, 40)
        assert recorder.pending == 2
        assert store.records == []

        gate.set()
        await recorder.drain()

        assert recorder.pending == 0
        assert [(r.tokens_in, r.tokens_out) for r in store.records] == [(10, 20), (30, 40)]

    @pytest.mark.asyncio
    async def test_dispatch_failure_does_not_propagate(self):
        """A failing background write finishes cleanly."""
        recorder = UsageRecorder(InMemoryUsageStore(fail=True), clock=_fixed_clock)

        task = recorder.dispatch(USER_ID, 1, 1)
        await recorder.drain()

        assert task.done()
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_monthly_totals_defaults_to_current_month(self):
        """Totals default to the clock's month and filter by user."""
        store = InMemoryUsageStore()
        recorder = UsageRecorder(store, clock=_fixed_clock)
        await recorder.record(USER_ID, 100, 10)
        await recorder.record(USER_ID, 200, 20)
        await recorder.record("someone-else", 5, 5)

        totals = await recorder.monthly_totals(USER_ID)

        assert totals.to_dict() == {"month": "2026-03", "requests": 2, "tokens_in": 300, "tokens_out": 30}
        assert (await recorder.monthly_totals(USER_ID, month="2026-02")).requests == 0


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def session_scope():
        async with factory() as session:
            yield session

    yield session_scope
    await engine.dispose()


class TestSQLAlchemyUsageStore:
    """Test the SQL store against in-memory SQLite."""

    @pytest.mark.asyncio
    async def test_insert(self, session_factory):
        """A record becomes one ai_usage row."""
        store = SQLAlchemyUsageStore(session_factory=session_factory)

        await store.insert(UsageRecord(USER_ID, "bmc", 412, 57, "2026-03", FIXED_NOW))

        async with session_factory() as session:
            rows = (await session.execute(select(AIUsage))).scalars().all()
        assert len(rows) == 1
        assert rows[0].user_id == uuid.UUID(USER_ID)
        assert (rows[0].tool, rows[0].tokens_in, rows[0].tokens_out, rows[0].month) == ("bmc", 412, 57, "2026-03")

    @pytest.mark.asyncio
    async def test_monthly_totals(self, session_factory):
        """Totals filter by user, month and tool."""
        store = SQLAlchemyUsageStore(session_factory=session_factory)
        other_user = str(uuid.uuid4())
        for record in (
            UsageRecord(USER_ID, "bmc", 100, 10, "2026-03", FIXED_NOW),
            UsageRecord(USER_ID, "bmc", 50, 5, "2026-03", FIXED_NOW),
            UsageRecord(USER_ID, "bmc", 999, 999, "2026-02", FIXED_NOW),
            UsageRecord(USER_ID, "other-tool", 999, 999, "2026-03", FIXED_NOW),
            UsageRecord(other_user, "bmc", 999, 999, "2026-03", FIXED_NOW),
        ):
            await store.insert(record)

        totals = await store.monthly_totals(USER_ID, "2026-03", "bmc")

        assert (totals.requests, totals.tokens_in, totals.tokens_out) == (2, 150, 15)

    @pytest.mark.asyncio
    async def test_monthly_totals_empty(self, session_factory):
        """No rows means zero totals."""
        store = SQLAlchemyUsageStore(session_factory=session_factory)

        totals = await store.monthly_totals(USER_ID, "2026-03", "bmc")

        assert totals.to_dict() == {"month": "2026-03", "requests": 0, "tokens_in": 0, "tokens_out": 0}

    @pytest.mark.asyncio
    async def test_monthly_totals_non_uuid_user_id(self, session_factory):
        """An id that cannot have been inserted yields zero totals instead of an error."""
        store = SQLAlchemyUsageStore(session_factory=session_factory)
        await store.insert(UsageRecord(USER_ID, "bmc", 100, 10, "2026-03", FIXED_NOW))

        totals = await store.monthly_totals("not-a-uuid", "2026-03", "bmc")

        assert totals.to_dict() == {"month": "2026-03", "requests": 0, "tokens_in": 0, "tokens_out": 0}

    @pytest.mark.asyncio
    async def test_non_uuid_user_id_rejected(self, session_factory):
        """Inserting a non-UUID user id fails."""
        store = SQLAlchemyUsageStore(session_factory=session_factory)

        with pytest.raises(ValueError):
            await store.insert(UsageRecord("not-a-uuid", "bmc", 1, 1, "2026-03", FIXED_NOW))
