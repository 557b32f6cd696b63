"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - Stripe payloads are mapped to BillingEvent right after the
signature check.
"""

import json
from datetime import UTC, datetime
from typing import Any

import stripe

from metering.config import settings
from metering.exceptions import PaymentProviderError, WebhookVerificationError
from metering.models.api import Plan
from metering.models.domain import CreditPack
from metering.observability.logging import get_logger
from metering.services.payment_provider import BillingEvent, BillingEventKind, CheckoutSession
from metering.services.plans import LEGACY_PLAN_ALIASES

logger = get_logger(__name__)

CREDIT_PURCHASE_TYPE = "credit_purchase"

# Stripe subscription status -> event kind
SUBSCRIPTION_STATUS_KINDS: dict[str, BillingEventKind] = {
    "active": BillingEventKind.SUBSCRIPTION_ACTIVE,
    "trialing": BillingEventKind.SUBSCRIPTION_ACTIVE,
    "past_due": BillingEventKind.SUBSCRIPTION_PAST_DUE,
    "canceled": BillingEventKind.SUBSCRIPTION_CANCELED,
    "unpaid": BillingEventKind.SUBSCRIPTION_CANCELED,
}


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _str_or_none(value: Any) -> str | None:
    """Expandable Stripe fields arrive as ids or as objects."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return _str_or_none(value.get("id"))
    return None


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        price_plans: dict[str, Plan] | None = None,
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            price_plans: Stripe price id -> plan for subscription prices
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.price_plans = price_plans or {}
        stripe.api_key = api_key

    @classmethod
    def from_settings(cls) -> "StripeProvider":
        price_plans: dict[str, Plan] = {}
        if settings.stripe_price_unlimited_monthly:
            price_plans[settings.stripe_price_unlimited_monthly] = Plan.UNLIMITED_MONTHLY
        if settings.stripe_price_unlimited_annual:
            price_plans[settings.stripe_price_unlimited_annual] = Plan.UNLIMITED_ANNUAL
        return cls(settings.stripe_api_key, settings.stripe_webhook_secret, price_plans)

    async def verify_webhook(self, payload: bytes, signature: str) -> BillingEvent:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Raises:
            WebhookVerificationError: If signature verification fails or the
                payload is not a Stripe event
        """
        if not signature:
            logger.error("stripe_webhook_signature_missing")
            raise WebhookVerificationError("Missing Stripe-Signature header")

        try:
            payload_str = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload_str, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except UnicodeDecodeError as exc:
            logger.error("stripe_webhook_decoding_failed", error=str(exc))
            raise WebhookVerificationError("Webhook payload is not UTF-8") from exc

        try:
            event = json.loads(payload_str)
            billing_event = self.parse_event(event)
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info(
            "stripe_webhook_verified",
            event_id=billing_event.event_id,
            event_type=billing_event.event_type,
            kind=billing_event.kind.value,
        )
        return billing_event

    def parse_event(self, event: dict[str, Any]) -> BillingEvent:
        """Map a verified Stripe event payload to a BillingEvent."""
        event_id: str = event["id"]
        event_type: str = event["type"]
        obj: dict[str, Any] = (event.get("data") or {}).get("object") or {}
        metadata: dict[str, Any] = obj.get("metadata") or {}
        created = _int_or_none(event.get("created"))
        occurred_at = (
            datetime.fromtimestamp(created, UTC) if created is not None else datetime.now(UTC)
        )

        base = {
            "event_id": event_id,
            "event_type": event_type,
            "occurred_at": occurred_at,
            "user_id": _str_or_none(obj.get("client_reference_id"))
            or _str_or_none(metadata.get("userId"))
            or _str_or_none(metadata.get("user_id")),
            "customer_id": _str_or_none(obj.get("customer")),
        }

        if event_type == "checkout.session.completed":
            if metadata.get("type") == CREDIT_PURCHASE_TYPE:
                return BillingEvent(
                    kind=BillingEventKind.PURCHASE_COMPLETED,
                    payment_id=_str_or_none(obj.get("id")),
                    pack_id=_str_or_none(metadata.get("packId")),
                    credits=_int_or_none(metadata.get("credits")),
                    amount_paid_minor=_int_or_none(obj.get("amount_total")),
                    currency=_str_or_none(obj.get("currency")),
                    **base,
                )
            if obj.get("mode") == "subscription" or obj.get("subscription"):
                return BillingEvent(
                    kind=BillingEventKind.SUBSCRIPTION_ACTIVE,
                    plan=self._plan_from_label(metadata.get("plan")) or Plan.UNLIMITED_MONTHLY,
                    subscription_status="active",
                    **base,
                )
            return BillingEvent(kind=BillingEventKind.IGNORED, **base)

        if event_type == "checkout.session.expired":
            return BillingEvent(
                kind=BillingEventKind.PURCHASE_EXPIRED,
                payment_id=_str_or_none(obj.get("id")),
                **base,
            )

        if event_type in ("customer.subscription.created", "customer.subscription.updated"):
            status = obj.get("status")
            return BillingEvent(
                kind=SUBSCRIPTION_STATUS_KINDS.get(
                    status or "", BillingEventKind.SUBSCRIPTION_INACTIVE
                ),
                plan=self._plan_from_subscription(obj),
                subscription_status=status,
                **base,
            )

        if event_type == "customer.subscription.deleted":
            return BillingEvent(
                kind=BillingEventKind.SUBSCRIPTION_CANCELED,
                plan=Plan.METERED,
                subscription_status=obj.get("status") or "canceled",
                **base,
            )

        if event_type == "invoice.payment_failed":
            return BillingEvent(
                kind=BillingEventKind.SUBSCRIPTION_PAST_DUE,
                subscription_status="past_due",
                **base,
            )

        return BillingEvent(kind=BillingEventKind.IGNORED, **base)

    async def create_credit_checkout(
        self, user_id: str, pack: CreditPack, customer_email: str | None = None
    ) -> CheckoutSession:
        """
        Create a Stripe Checkout Session for a credit pack.

        The session id becomes the purchase's external payment id.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info(
                "creating_stripe_checkout_session",
                user_id=user_id,
                pack_id=pack.pack_id,
                amount_minor=pack.price_minor,
            )

            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": settings.stripe_currency,
                            "product_data": {
                                "name": pack.name,
                                "description": f"{pack.credits} credits - {pack.description}",
                            },
                            "unit_amount": pack.price_minor,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=settings.checkout_success_url,
                cancel_url=settings.checkout_cancel_url,
                client_reference_id=user_id,
                customer_email=customer_email,
                metadata={
                    "userId": user_id,
                    "packId": pack.pack_id,
                    "credits": str(pack.credits),
                    "type": CREDIT_PURCHASE_TYPE,
                },
            )

            logger.info("stripe_checkout_session_created", session_id=session.id)
            return CheckoutSession(session_id=session.id, url=session.url or "")

        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_session_failed",
                user_id=user_id,
                pack_id=pack.pack_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe checkout failed: {exc}") from exc

    def _plan_from_subscription(self, subscription: dict[str, Any]) -> Plan | None:
        items = (subscription.get("items") or {}).get("data") or []
        for item in items:
            price_id = _str_or_none((item.get("price") or {}).get("id"))
            if price_id and price_id in self.price_plans:
                return self.price_plans[price_id]
        metadata = subscription.get("metadata") or {}
        return self._plan_from_label(metadata.get("plan"))

    def _plan_from_label(self, label: Any) -> Plan | None:
        if not isinstance(label, str):
            return None
        try:
            return Plan(label)
        except ValueError:
            return LEGACY_PLAN_ALIASES.get(label)
