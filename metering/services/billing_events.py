"""
Billing Event Processor - Idempotent application of payment processor events.

NO DICTIONARIES - Events arrive as BillingEvent dataclasses.

Each event is applied in one transaction:
1. Claim the event id in the webhook_events ledger (a second claim is a no-op)
2. Apply the effect (grant credits, complete purchase, transition plan)
3. Commit

Any failure rolls the ledger row back with the effect, so a redelivery applies
the event again from scratch.
"""

from dataclasses import dataclass
from enum import Enum

from sqlalchemy import Insert, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from metering.db.models import WebhookEvent
from metering.exceptions import BillingEventRetryableError, PurchaseNotFoundError
from metering.models.api import DenialReason, EntitlementStatus, Plan
from metering.models.domain import Features
from metering.observability.logging import get_logger
from metering.observability.metrics import metrics
from metering.observability.tracing import set_span_attributes, trace_operation
from metering.services.entitlements import EntitlementService
from metering.services.payment_provider import BillingEvent, BillingEventKind
from metering.services.period import utc_now
from metering.services.plans import downgraded_features, full_features, normalize_plan
from metering.services.purchases import CreditPurchaseService

logger = get_logger(__name__)


class ProcessingOutcome(str, Enum):
    """How an event was handled; every outcome is acknowledged to the sender."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    ACKNOWLEDGED = "acknowledged"


@dataclass(frozen=True)
class ProcessingResult:
    """Result of processing one billing event."""

    event_id: str
    outcome: ProcessingOutcome
    reason: DenialReason | None = None


def claim_event_statement(event: BillingEvent, provider: str) -> Insert:
    """Ledger row for an event; yields no row when the event was already processed."""
    return (
        pg_insert(WebhookEvent)
        .values(
            event_id=event.event_id,
            provider=provider,
            event_type=event.event_type,
            outcome=ProcessingOutcome.PROCESSED.value,
            processed_at=utc_now(),
        )
        .on_conflict_do_nothing(index_elements=["event_id"])
        .returning(WebhookEvent.id)
    )


class BillingEventProcessor:
    """Applies verified billing events to entitlements and purchases."""

    def __init__(self, session: AsyncSession, provider: str = "stripe") -> None:
        self.session = session
        self.provider = provider
        self.entitlements = EntitlementService(session)
        self.purchases = CreditPurchaseService(session)

    async def process(self, event: BillingEvent) -> ProcessingResult:
        """
        Apply one event exactly once.

        Raises:
            BillingEventRetryableError: the event cannot be applied yet
        """
        with trace_operation(
            "billing_event_process",
            event_id=event.event_id,
            event_type=event.event_type,
            kind=event.kind.value,
        ) as span:
            claimed = await self.session.execute(claim_event_statement(event, self.provider))
            if claimed.first() is None:
                await self.session.rollback()
                logger.info(
                    "billing_event_duplicate",
                    event_id=event.event_id,
                    event_type=event.event_type,
                )
                metrics.record_billing_event(event.kind.value, ProcessingOutcome.DUPLICATE.value)
                set_span_attributes(span, outcome=ProcessingOutcome.DUPLICATE.value)
                return ProcessingResult(
                    event_id=event.event_id,
                    outcome=ProcessingOutcome.DUPLICATE,
                    reason=DenialReason.DUPLICATE_EVENT,
                )

            try:
                result = await self._apply(event)
                if result.outcome != ProcessingOutcome.PROCESSED:
                    await self.session.execute(
                        update(WebhookEvent)
                        .where(WebhookEvent.event_id == event.event_id)
                        .values(outcome=result.outcome.value)
                    )
                await self.session.commit()
            except Exception as e:
                await self.session.rollback()
                metrics.record_billing_event(event.kind.value, "failed")
                metrics.record_error(type(e).__name__, "billing_event_process")
                logger.error(
                    "billing_event_failed",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            metrics.record_billing_event(event.kind.value, result.outcome.value)
            set_span_attributes(span, outcome=result.outcome.value)
            logger.info(
                "billing_event_processed",
                event_id=event.event_id,
                event_type=event.event_type,
                kind=event.kind.value,
                outcome=result.outcome.value,
            )
            return result

    async def _apply(self, event: BillingEvent) -> ProcessingResult:
        if event.kind == BillingEventKind.PURCHASE_COMPLETED:
            return await self._apply_purchase_completed(event)

        if event.kind == BillingEventKind.PURCHASE_EXPIRED:
            logger.info(
                "credit_purchase_session_expired",
                event_id=event.event_id,
                payment_id=event.payment_id,
                user_id=event.user_id,
            )
            return ProcessingResult(event.event_id, ProcessingOutcome.ACKNOWLEDGED)

        if event.kind.is_subscription:
            return await self._apply_subscription(event)

        logger.debug("billing_event_ignored", event_id=event.event_id, event_type=event.event_type)
        return ProcessingResult(event.event_id, ProcessingOutcome.IGNORED)

    async def _apply_purchase_completed(self, event: BillingEvent) -> ProcessingResult:
        if not event.payment_id:
            return self._purchase_not_found(event)

        try:
            purchase = await self.purchases.complete(event.payment_id)
            user_id = purchase.user_id
            credits = purchase.credits_granted
        except PurchaseNotFoundError:
            # Payment with no pending purchase: record it from the event metadata
            if not event.user_id or not event.credits or event.credits <= 0:
                return self._purchase_not_found(event)
            recorded = await self.purchases.record_completed(
                user_id=event.user_id,
                external_payment_id=event.payment_id,
                credits=event.credits,
                amount_paid_minor=event.amount_paid_minor or 0,
                pack_id=event.pack_id,
            )
            if not recorded:
                return self._purchase_not_found(event)
            user_id = event.user_id
            credits = event.credits

        await self.entitlements.grant_credits(
            user_id, credits, idempotency_key=f"purchase:{event.payment_id}", commit=False
        )
        logger.info(
            "credit_purchase_completed",
            event_id=event.event_id,
            payment_id=event.payment_id,
            user_id=user_id,
            credits=credits,
        )
        return ProcessingResult(event.event_id, ProcessingOutcome.PROCESSED)

    def _purchase_not_found(self, event: BillingEvent) -> ProcessingResult:
        logger.warning(
            "credit_purchase_not_found_or_processed",
            event_id=event.event_id,
            payment_id=event.payment_id,
        )
        return ProcessingResult(
            event.event_id,
            ProcessingOutcome.ACKNOWLEDGED,
            reason=DenialReason.PURCHASE_NOT_FOUND_OR_ALREADY_PROCESSED,
        )

    async def _apply_subscription(self, event: BillingEvent) -> ProcessingResult:
        user_id = event.user_id
        if not user_id and event.customer_id:
            user_id = await self.entitlements.find_user_by_customer(event.customer_id)
        if not user_id:
            raise BillingEventRetryableError(
                event.event_id, f"no user for customer {event.customer_id}"
            )

        plan, status, features = await self._target_state(event, user_id)
        applied = await self.entitlements.apply_plan_transition(
            user_id,
            plan,
            status,
            features,
            effective_at=event.occurred_at,
            external_customer_id=event.customer_id,
            commit=False,
        )
        if not applied:
            return ProcessingResult(event.event_id, ProcessingOutcome.STALE)
        return ProcessingResult(event.event_id, ProcessingOutcome.PROCESSED)

    async def _target_state(
        self, event: BillingEvent, user_id: str
    ) -> tuple[Plan, EntitlementStatus, Features]:
        """Plan, status and features a subscription event moves the user to."""
        if event.kind == BillingEventKind.SUBSCRIPTION_ACTIVE:
            return event.plan or Plan.UNLIMITED_MONTHLY, EntitlementStatus.ACTIVE, full_features()

        if event.kind == BillingEventKind.SUBSCRIPTION_CANCELED:
            return Plan.METERED, EntitlementStatus.CANCELED, downgraded_features()

        # past_due and inactive keep the plan
        plan = event.plan
        if plan is None:
            current = await self.entitlements.get_or_create(user_id, commit=False)
            plan = normalize_plan(current.plan)
        status = (
            EntitlementStatus.PAST_DUE
            if event.kind == BillingEventKind.SUBSCRIPTION_PAST_DUE
            else EntitlementStatus.INACTIVE
        )
        return plan, status, downgraded_features()
