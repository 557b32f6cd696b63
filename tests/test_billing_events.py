"""
Tests for BillingEventProcessor.

Ledger claims, duplicate and stale events, retryable events and purchase
completion.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from metering.exceptions import BillingEventRetryableError, PurchaseNotFoundError
from metering.models.api import DenialReason, EntitlementStatus, Plan, PurchaseStatus
from metering.models.domain import PurchaseData
from metering.services.billing_events import (
    BillingEventProcessor,
    ProcessingOutcome,
    claim_event_statement,
)
from metering.services.payment_provider import BillingEvent, BillingEventKind
from metering.services.plans import downgraded_features, full_features

OCCURRED = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


def make_event(kind: BillingEventKind, **kwargs) -> BillingEvent:
    defaults = {
        "event_id": "evt_1",
        "event_type": "test.event",
        "occurred_at": OCCURRED,
    }
    defaults.update(kwargs)
    return BillingEvent(kind=kind, **defaults)


def make_purchase(user_id: str = "user-1", credits: int = 20) -> PurchaseData:
    return PurchaseData(
        purchase_id=uuid4(),
        user_id=user_id,
        external_payment_id="cs_1",
        credits_granted=credits,
        amount_paid_minor=1500,
        status=PurchaseStatus.COMPLETED,
        created_at=OCCURRED,
        processed_at=OCCURRED,
    )


@pytest.fixture
def claimed_session(db_session, result_factory):
    """Session whose ledger claim succeeds."""
    db_session.execute = AsyncMock(return_value=result_factory(first=(uuid4(),)))
    return db_session


class TestClaim:
    """Tests for the event ledger."""

    def test_claim_statement_ignores_conflicts(self):
        stmt = claim_event_statement(make_event(BillingEventKind.IGNORED), "stripe")
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "ON CONFLICT (event_id) DO NOTHING" in sql

    async def test_duplicate_event_changes_nothing(self, db_session, result_factory):
        db_session.execute = AsyncMock(return_value=result_factory(first=None))
        processor = BillingEventProcessor(db_session)

        with patch.object(processor, "_apply", new_callable=AsyncMock) as mock_apply:
            result = await processor.process(
                make_event(BillingEventKind.PURCHASE_COMPLETED, payment_id="cs_1")
            )

        assert result.outcome == ProcessingOutcome.DUPLICATE
        assert result.reason == DenialReason.DUPLICATE_EVENT
        mock_apply.assert_not_called()
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_called()

    async def test_failure_rolls_back_claim(self, claimed_session):
        processor = BillingEventProcessor(claimed_session)

        with patch.object(
            processor, "_apply", new_callable=AsyncMock, side_effect=RuntimeError("boom")
        ):
            with pytest.raises(RuntimeError):
                await processor.process(make_event(BillingEventKind.SUBSCRIPTION_ACTIVE))

        claimed_session.rollback.assert_awaited_once()
        claimed_session.commit.assert_not_called()

    async def test_ignored_event_is_acknowledged(self, claimed_session):
        processor = BillingEventProcessor(claimed_session)

        result = await processor.process(make_event(BillingEventKind.IGNORED))

        assert result.outcome == ProcessingOutcome.IGNORED
        claimed_session.commit.assert_awaited_once()


class TestPurchaseCompleted:
    """Tests for credit purchase completion."""

    async def test_pending_purchase_grants_credits(self, claimed_session):
        processor = BillingEventProcessor(claimed_session)

        with (
            patch.object(
                processor.purchases, "complete", new_callable=AsyncMock, return_value=make_purchase()
            ),
            patch.object(
                processor.entitlements, "grant_credits", new_callable=AsyncMock, return_value=True
            ) as mock_grant,
        ):
            result = await processor.process(
                make_event(BillingEventKind.PURCHASE_COMPLETED, payment_id="cs_1")
            )

        assert result.outcome == ProcessingOutcome.PROCESSED
        mock_grant.assert_awaited_once_with(
            "user-1", 20, idempotency_key="purchase:cs_1", commit=False
        )
        claimed_session.commit.assert_awaited_once()

    async def test_unknown_purchase_is_recorded_from_metadata(self, claimed_session):
        processor = BillingEventProcessor(claimed_session)

        with (
            patch.object(
                processor.purchases,
                "complete",
                new_callable=AsyncMock,
                side_effect=PurchaseNotFoundError("cs_2"),
            ),
            patch.object(
                processor.purchases, "record_completed", new_callable=AsyncMock, return_value=True
            ) as mock_record,
            patch.object(
                processor.entitlements, "grant_credits", new_callable=AsyncMock, return_value=True
            ) as mock_grant,
        ):
            result = await processor.process(
                make_event(
                    BillingEventKind.PURCHASE_COMPLETED,
                    payment_id="cs_2",
                    user_id="user-2",
                    credits=6,
                    amount_paid_minor=500,
                    pack_id="starter",
                )
            )

        assert result.outcome == ProcessingOutcome.PROCESSED
        mock_record.assert_awaited_once()
        mock_grant.assert_awaited_once_with(
            "user-2", 6, idempotency_key="purchase:cs_2", commit=False
        )

    async def test_already_processed_purchase_is_acknowledged(self, claimed_session):
        processor = BillingEventProcessor(claimed_session)

        with (
            patch.object(
                processor.purchases,
                "complete",
                new_callable=AsyncMock,
                side_effect=PurchaseNotFoundError("cs_1"),
            ),
            patch.object(
                processor.entitlements, "grant_credits", new_callable=AsyncMock
            ) as mock_grant,
        ):
            result = await processor.process(
                make_event(BillingEventKind.PURCHASE_COMPLETED, payment_id="cs_1")
            )

        assert result.outcome == ProcessingOutcome.ACKNOWLEDGED
        assert result.reason == DenialReason.PURCHASE_NOT_FOUND_OR_ALREADY_PROCESSED
        mock_grant.assert_not_called()
        claimed_session.commit.assert_awaited_once()

    async def test_expired_checkout_is_acknowledged(self, claimed_session):
        processor = BillingEventProcessor(claimed_session)

        result = await processor.process(
            make_event(BillingEventKind.PURCHASE_EXPIRED, payment_id="cs_3")
        )

        assert result.outcome == ProcessingOutcome.ACKNOWLEDGED


class TestSubscriptionEvents:
    """Tests for plan transitions driven by subscription events."""

    async def test_activation_grants_full_features(self, claimed_session):
        processor = BillingEventProcessor(claimed_session)

        with patch.object(
            processor.entitlements,
            "apply_plan_transition",
            new_callable=AsyncMock,
            return_value=True,
        ) as mock_transition:
            result = await processor.process(
                make_event(
                    BillingEventKind.SUBSCRIPTION_ACTIVE,
                    user_id="user-1",
                    customer_id="cus_1",
                    plan=Plan.UNLIMITED_ANNUAL,
                )
            )

        assert result.outcome == ProcessingOutcome.PROCESSED
        mock_transition.assert_awaited_once_with(
            "user-1",
            Plan.UNLIMITED_ANNUAL,
            EntitlementStatus.ACTIVE,
            full_features(),
            effective_at=OCCURRED,
            external_customer_id="cus_1",
            commit=False,
        )

    async def test_cancellation_downgrades_to_metered(self, claimed_session):
        processor = BillingEventProcessor(claimed_session)

        with patch.object(
            processor.entitlements,
            "apply_plan_transition",
            new_callable=AsyncMock,
            return_value=True,
        ) as mock_transition:
            await processor.process(
                make_event(BillingEventKind.SUBSCRIPTION_CANCELED, user_id="user-1")
            )

        args = mock_transition.await_args.args
        assert args[1:] == (Plan.METERED, EntitlementStatus.CANCELED, downgraded_features())

    async def test_user_resolved_from_customer(self, claimed_session):
        processor = BillingEventProcessor(claimed_session)

        with (
            patch.object(
                processor.entitlements,
                "find_user_by_customer",
                new_callable=AsyncMock,
                return_value="user-7",
            ),
            patch.object(
                processor.entitlements,
                "apply_plan_transition",
                new_callable=AsyncMock,
                return_value=True,
            ) as mock_transition,
        ):
            await processor.process(
                make_event(
                    BillingEventKind.SUBSCRIPTION_PAST_DUE,
                    customer_id="cus_7",
                    plan=Plan.UNLIMITED_MONTHLY,
                )
            )

        args = mock_transition.await_args.args
        assert args[0] == "user-7"
        assert args[2] == EntitlementStatus.PAST_DUE

    async def test_unknown_customer_is_retryable(self, claimed_session):
        processor = BillingEventProcessor(claimed_session)

        with patch.object(
            processor.entitlements,
            "find_user_by_customer",
            new_callable=AsyncMock,
            return_value=None,
        ):
            with pytest.raises(BillingEventRetryableError):
                await processor.process(
                    make_event(BillingEventKind.SUBSCRIPTION_ACTIVE, customer_id="cus_x")
                )

        claimed_session.rollback.assert_awaited_once()
        claimed_session.commit.assert_not_called()

    async def test_out_of_order_event_is_stale(self, claimed_session):
        processor = BillingEventProcessor(claimed_session)

        with patch.object(
            processor.entitlements,
            "apply_plan_transition",
            new_callable=AsyncMock,
            return_value=False,
        ):
            result = await processor.process(
                make_event(BillingEventKind.SUBSCRIPTION_ACTIVE, user_id="user-1")
            )

        assert result.outcome == ProcessingOutcome.STALE
        # claim + outcome update
        assert claimed_session.execute.await_count == 2
        claimed_session.commit.assert_awaited_once()
