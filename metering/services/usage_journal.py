"""
Usage Journal - Append-only log of billable actions.

Writes never fail the action being recorded: every error is logged and
counted, then dropped. Each call uses its own short-lived session so a failed
insert cannot poison the caller's transaction.
"""

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from metering.db.models import UsageRecord
from metering.models.api import ActionType
from metering.observability.logging import get_logger
from metering.observability.metrics import metrics
from metering.services.period import utc_now

logger = get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]

# Writes scheduled off the request path, held until they finish
_pending_writes: set[asyncio.Task[None]] = set()


async def drain_pending_writes() -> None:
    """Wait for scheduled journal writes (graceful shutdown)."""
    if _pending_writes:
        await asyncio.gather(*_pending_writes, return_exceptions=True)


class UsageJournal:
    """Records billable actions and answers per-period counts."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory

    async def record(
        self, user_id: str, action: ActionType, occurred_at: datetime | None = None
    ) -> None:
        """Append one usage record. Never raises."""
        try:
            async with self.session_factory() as session:
                session.add(
                    UsageRecord(
                        user_id=user_id,
                        action_type=action.value,
                        created_at=occurred_at or utc_now(),
                    )
                )
                await session.commit()
        except Exception as e:
            metrics.usage_journal_failures_total.inc()
            logger.warning(
                "usage_journal_write_failed",
                user_id=user_id,
                action=action.value,
                error=str(e),
                error_type=type(e).__name__,
            )

    def record_in_background(self, user_id: str, action: ActionType) -> None:
        """
        Schedule `record` on the running loop and return immediately.

        The write is not cancelled with the request that scheduled it.
        """
        task = asyncio.create_task(self.record(user_id, action, occurred_at=utc_now()))
        _pending_writes.add(task)
        task.add_done_callback(_pending_writes.discard)

    async def count_in_period(
        self, user_id: str, actions: Iterable[ActionType], period_start: datetime
    ) -> int:
        """Count records of the given actions since `period_start`."""
        action_values = [action.value for action in actions]
        async with self.session_factory() as session:
            stmt = select(func.count(UsageRecord.id)).where(
                UsageRecord.user_id == user_id,
                UsageRecord.action_type.in_(action_values),
                UsageRecord.created_at >= period_start,
            )
            result = await session.execute(stmt)
            return int(result.scalar_one() or 0)

    async def usage_breakdown(
        self, user_id: str, period_start: datetime
    ) -> dict[ActionType, int]:
        """Per-action counts since `period_start`; actions never used read as 0."""
        async with self.session_factory() as session:
            stmt = (
                select(UsageRecord.action_type, func.count(UsageRecord.id))
                .where(
                    UsageRecord.user_id == user_id,
                    UsageRecord.created_at >= period_start,
                )
                .group_by(UsageRecord.action_type)
            )
            result = await session.execute(stmt)
            rows = result.all()

        breakdown = {action: 0 for action in ActionType}
        for action_type, count in rows:
            try:
                breakdown[ActionType(action_type)] = int(count)
            except ValueError:
                logger.debug("usage_breakdown_unknown_action", action_type=action_type)
        return breakdown
