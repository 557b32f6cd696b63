"""
Tests for UsageJournal.
"""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from metering.db.models import UsageRecord
from metering.models.api import ActionType
from metering.observability.metrics import metrics
from metering.services.usage_journal import UsageJournal, drain_pending_writes


def session_factory_for(session: AsyncMock) -> MagicMock:
    """Factory whose sessions are used as async context managers."""
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=session)
    context.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=context)


class TestRecord:
    """Tests for appending usage records."""

    async def test_record_adds_and_commits(self, db_session: AsyncMock):
        journal = UsageJournal(session_factory_for(db_session))
        occurred = datetime(2026, 10, 19, tzinfo=UTC)

        await journal.record("user-1", ActionType.GENERATION, occurred_at=occurred)

        record = db_session.add.call_args.args[0]
        assert isinstance(record, UsageRecord)
        assert record.user_id == "user-1"
        assert record.action_type == "generation"
        assert record.created_at == occurred
        db_session.commit.assert_awaited_once()

    async def test_write_failure_is_swallowed(self, db_session: AsyncMock):
        db_session.commit = AsyncMock(
            side_effect=OperationalError("INSERT", {}, Exception("disk full"))
        )
        journal = UsageJournal(session_factory_for(db_session))
        before = metrics.usage_journal_failures_total._value.get()

        await journal.record("user-1", ActionType.PDF_DOWNLOAD)

        assert metrics.usage_journal_failures_total._value.get() == before + 1

    async def test_unreachable_database_is_swallowed(self):
        factory = MagicMock(side_effect=ConnectionRefusedError("no database"))
        journal = UsageJournal(factory)

        await journal.record("user-1", ActionType.GENERATION)


class TestRecordInBackground:
    """Tests for writes scheduled off the request path."""

    async def test_write_runs_after_the_caller_returns(self, db_session: AsyncMock):
        journal = UsageJournal(session_factory_for(db_session))

        journal.record_in_background("user-1", ActionType.GENERATION)
        db_session.add.assert_not_called()

        await drain_pending_writes()
        db_session.add.assert_called_once()
        db_session.commit.assert_awaited_once()

    async def test_cancelled_caller_does_not_cancel_the_write(self, db_session: AsyncMock):
        journal = UsageJournal(session_factory_for(db_session))

        async def request_handler():
            journal.record_in_background("user-1", ActionType.PDF_DOWNLOAD)
            await asyncio.sleep(1)

        handler = asyncio.create_task(request_handler())
        await asyncio.sleep(0)
        handler.cancel()
        with pytest.raises(asyncio.CancelledError):
            await handler

        await drain_pending_writes()
        db_session.commit.assert_awaited_once()


class TestCounts:
    """Tests for per-period counts."""

    async def test_count_in_period(self, db_session: AsyncMock, result_factory):
        db_session.execute = AsyncMock(return_value=result_factory(scalar=12))
        journal = UsageJournal(session_factory_for(db_session))

        count = await journal.count_in_period(
            "user-1",
            (ActionType.GENERATION, ActionType.PREMIUM_ANALYSIS),
            datetime(2026, 10, 1, tzinfo=UTC),
        )

        assert count == 12

    async def test_breakdown_fills_missing_actions(self, db_session: AsyncMock):
        result = MagicMock()
        result.all = MagicMock(return_value=[("generation", 4), ("pdf_download", 2), ("legacy", 1)])
        db_session.execute = AsyncMock(return_value=result)
        journal = UsageJournal(session_factory_for(db_session))

        breakdown = await journal.usage_breakdown("user-1", datetime(2026, 10, 1, tzinfo=UTC))

        assert breakdown == {
            ActionType.GENERATION: 4,
            ActionType.PDF_DOWNLOAD: 2,
            ActionType.DOCX_DOWNLOAD: 0,
            ActionType.PREMIUM_ANALYSIS: 0,
        }
