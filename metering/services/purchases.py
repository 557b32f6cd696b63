"""
Credit Purchase Service - Pending checkouts and their completion.

NO DICTIONARIES - All operations use strongly typed domain models.

A purchase moves pending -> completed exactly once; the transition is a
single conditional UPDATE so concurrent webhook deliveries cannot both win.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Insert, Update, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from metering.config import settings
from metering.db.models import CreditPurchase
from metering.exceptions import PaymentProviderError, PurchaseNotFoundError
from metering.models.api import PurchaseStatus
from metering.models.domain import PurchaseData
from metering.observability.logging import get_logger
from metering.services.payment_provider import PaymentProvider
from metering.services.period import as_utc, utc_now
from metering.services.plans import get_credit_pack

logger = get_logger(__name__)


def complete_purchase_statement(external_payment_id: str, now: datetime) -> Update:
    """Mark a pending purchase completed; matches nothing once it is completed."""
    return (
        update(CreditPurchase)
        .where(
            CreditPurchase.external_payment_id == external_payment_id,
            CreditPurchase.status == PurchaseStatus.PENDING.value,
        )
        .values(status=PurchaseStatus.COMPLETED.value, processed_at=now)
        .returning(CreditPurchase.id)
    )


def record_completed_purchase_statement(
    user_id: str,
    external_payment_id: str,
    credits: int,
    amount_paid_minor: int,
    pack_id: str | None,
    now: datetime,
) -> Insert:
    """Insert an already completed purchase unless the payment id is known."""
    return (
        pg_insert(CreditPurchase)
        .values(
            id=uuid4(),
            user_id=user_id,
            external_payment_id=external_payment_id,
            pack_id=pack_id,
            credits_granted=credits,
            amount_paid_minor=amount_paid_minor,
            currency=settings.stripe_currency.upper(),
            status=PurchaseStatus.COMPLETED.value,
            created_at=now,
            processed_at=now,
        )
        .on_conflict_do_nothing(index_elements=["external_payment_id"])
        .returning(CreditPurchase.id)
    )


class CreditPurchaseService:
    """Creates and completes credit pack purchases."""

    def __init__(self, session: AsyncSession, provider: PaymentProvider | None = None) -> None:
        self.session = session
        self.provider = provider

    async def start_checkout(
        self, user_id: str, pack_id: str, customer_email: str | None = None
    ) -> tuple[PurchaseData, str]:
        """
        Create a hosted checkout for a pack and record the pending purchase.

        Returns the purchase and the checkout URL.

        Raises:
            UnknownCreditPackError: pack_id is not in the catalog
            PaymentProviderError: no provider configured or checkout failed
        """
        pack = get_credit_pack(pack_id)
        if self.provider is None:
            raise PaymentProviderError("No payment provider configured")

        checkout = await self.provider.create_credit_checkout(user_id, pack, customer_email)
        purchase = await self.create_pending(
            user_id=user_id,
            external_payment_id=checkout.session_id,
            credits=pack.credits,
            amount_paid_minor=pack.price_minor,
            pack_id=pack.pack_id,
        )
        return purchase, checkout.url

    async def create_pending(
        self,
        user_id: str,
        external_payment_id: str,
        credits: int,
        amount_paid_minor: int,
        pack_id: str | None = None,
    ) -> PurchaseData:
        """Record a purchase awaiting payment."""
        purchase = CreditPurchase(
            id=uuid4(),
            user_id=user_id,
            external_payment_id=external_payment_id,
            pack_id=pack_id,
            credits_granted=credits,
            amount_paid_minor=amount_paid_minor,
            currency=settings.stripe_currency.upper(),
            status=PurchaseStatus.PENDING.value,
            created_at=utc_now(),
        )
        self.session.add(purchase)
        await self.session.commit()

        logger.info(
            "credit_purchase_created",
            user_id=user_id,
            purchase_id=str(purchase.id),
            external_payment_id=external_payment_id,
            credits=credits,
        )
        return self._purchase_to_domain(purchase)

    async def complete(self, external_payment_id: str) -> PurchaseData:
        """
        Transition a pending purchase to completed within the caller's transaction.

        Raises:
            PurchaseNotFoundError: no pending purchase has this payment id
        """
        result = await self.session.execute(
            complete_purchase_statement(external_payment_id, utc_now())
        )
        if result.first() is None:
            raise PurchaseNotFoundError(external_payment_id)

        purchase = await self._find_by_payment_id(external_payment_id)
        if purchase is None:
            raise PurchaseNotFoundError(external_payment_id)
        return self._purchase_to_domain(purchase)

    async def record_completed(
        self,
        user_id: str,
        external_payment_id: str,
        credits: int,
        amount_paid_minor: int,
        pack_id: str | None = None,
    ) -> bool:
        """
        Record a payment that arrived without a pending purchase.

        Returns False when the payment id is already recorded.
        """
        result = await self.session.execute(
            record_completed_purchase_statement(
                user_id, external_payment_id, credits, amount_paid_minor, pack_id, utc_now()
            )
        )
        recorded = result.first() is not None
        if recorded:
            logger.info(
                "credit_purchase_recorded_from_event",
                user_id=user_id,
                external_payment_id=external_payment_id,
                credits=credits,
            )
        return recorded

    async def history(self, user_id: str, limit: int = 10) -> list[PurchaseData]:
        """Most recent purchases first."""
        stmt = (
            select(CreditPurchase)
            .where(CreditPurchase.user_id == user_id)
            .order_by(CreditPurchase.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [self._purchase_to_domain(p) for p in result.scalars().all()]

    async def _find_by_payment_id(self, external_payment_id: str) -> CreditPurchase | None:
        stmt = (
            select(CreditPurchase)
            .where(CreditPurchase.external_payment_id == external_payment_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _purchase_to_domain(self, purchase: CreditPurchase) -> PurchaseData:
        """Convert ORM purchase to domain model."""
        return PurchaseData(
            purchase_id=purchase.id,
            user_id=purchase.user_id,
            external_payment_id=purchase.external_payment_id,
            credits_granted=purchase.credits_granted,
            amount_paid_minor=purchase.amount_paid_minor,
            status=PurchaseStatus(purchase.status),
            created_at=as_utc(purchase.created_at) or utc_now(),
            processed_at=as_utc(purchase.processed_at),
        )
