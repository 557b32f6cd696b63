"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from metering.models.api import Plan
from metering.models.domain import CreditPack


class BillingEventKind(str, Enum):
    """What a payment processor event means for entitlements."""

    PURCHASE_COMPLETED = "purchase_completed"
    PURCHASE_EXPIRED = "purchase_expired"
    SUBSCRIPTION_ACTIVE = "subscription_active"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    IGNORED = "ignored"

    @property
    def is_subscription(self) -> bool:
        return self in (
            BillingEventKind.SUBSCRIPTION_ACTIVE,
            BillingEventKind.SUBSCRIPTION_PAST_DUE,
            BillingEventKind.SUBSCRIPTION_INACTIVE,
            BillingEventKind.SUBSCRIPTION_CANCELED,
        )


@dataclass(frozen=True)
class BillingEvent:
    """
    Provider-agnostic billing event.

    Produced only after the provider's signature check passed.
    """

    event_id: str
    kind: BillingEventKind
    event_type: str  # Provider-specific event type
    occurred_at: datetime
    user_id: str | None = None
    customer_id: str | None = None
    plan: Plan | None = None
    subscription_status: str | None = None
    payment_id: str | None = None
    pack_id: str | None = None
    credits: int | None = None
    amount_paid_minor: int | None = None
    currency: str | None = None


@dataclass(frozen=True)
class CheckoutSession:
    """Hosted checkout created with the provider."""

    session_id: str
    url: str


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any payment processor must implement this interface so the billing event
    processor stays provider-agnostic.
    """

    async def verify_webhook(self, payload: bytes, signature: str) -> BillingEvent:
        """
        Verify and parse a webhook event from the provider.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...

    async def create_credit_checkout(
        self, user_id: str, pack: CreditPack, customer_email: str | None = None
    ) -> CheckoutSession:
        """
        Create a hosted checkout for a credit pack.

        Raises:
            PaymentProviderError: If checkout creation fails
        """
        ...
