"""
Tests for domain models and the exception hierarchy.
"""

import pytest

from metering.exceptions import (
    AuthenticationError,
    BillingEventRetryableError,
    DuplicateArtifactError,
    MeteringError,
    PaymentProviderError,
    PurchaseNotFoundError,
    StorageUnavailableError,
    UnknownCreditPackError,
    WebhookVerificationError,
)
from metering.models.api import ActionType, DenialReason
from metering.models.domain import CreditBalances, CreditPack, Decision, Features, RateLimitDecision
from metering.services.plans import full_features, metered_features


class TestFeatures:
    """Tests for the features JSON column mapping."""

    def test_legacy_keys_are_read(self):
        features = Features.from_dict(
            {"docx": True, "premium_analysis": True, "max_req_per_min": 60}, metered_features()
        )

        assert features.docx_export is True
        assert features.premium_analysis is True
        assert features.max_requests_per_minute == 60

    def test_missing_keys_take_defaults(self):
        default = full_features()

        assert Features.from_dict({"cover_letter": False}, default) == Features(
            docx_export=default.docx_export,
            premium_analysis=default.premium_analysis,
            cover_letter=False,
            max_requests_per_minute=default.max_requests_per_minute,
        )

    def test_empty_column_is_default(self):
        assert Features.from_dict(None, metered_features()) == metered_features()
        assert Features.from_dict({}, full_features()) == full_features()

    def test_request_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            Features(
                docx_export=False, premium_analysis=False, cover_letter=False,
                max_requests_per_minute=0,
            )


class TestValueObjects:
    """Tests for balances, decisions and packs."""

    def test_negative_balance_rejected(self):
        with pytest.raises(ValueError):
            CreditBalances(free=-1, purchased=0)
        with pytest.raises(ValueError):
            CreditBalances(free=0, purchased=-1)

    def test_total(self):
        assert CreditBalances(free=4, purchased=6).total == 10

    def test_decision_constructors(self):
        assert Decision.allow().allowed is True
        denied = Decision.deny(DenialReason.RATE_LIMITED)
        assert denied.allowed is False
        assert denied.reason == DenialReason.RATE_LIMITED

    def test_rate_limit_reason(self):
        assert RateLimitDecision(allowed=True, limit=10, remaining=9).reason is None
        assert (
            RateLimitDecision(allowed=False, limit=10, remaining=0, retry_after_seconds=5).reason
            == DenialReason.RATE_LIMITED
        )

    @pytest.mark.parametrize(("credits", "price"), [(0, 500), (6, 0), (-1, 500)])
    def test_invalid_credit_pack(self, credits, price):
        with pytest.raises(ValueError):
            CreditPack(pack_id="x", name="X", credits=credits, price_minor=price, description="")

    def test_download_actions(self):
        assert ActionType.PDF_DOWNLOAD.is_download
        assert ActionType.DOCX_DOWNLOAD.is_download
        assert not ActionType.GENERATION.is_download


class TestExceptions:
    """Tests for the exception hierarchy."""

    @pytest.mark.parametrize(
        "exc",
        [
            StorageUnavailableError("consume", "timeout"),
            DuplicateArtifactError("art-1"),
            UnknownCreditPackError("mega"),
            PurchaseNotFoundError("cs_1"),
            PaymentProviderError("down"),
            WebhookVerificationError("bad signature"),
            BillingEventRetryableError("evt_1", "unknown customer"),
            AuthenticationError("Missing API key"),
        ],
    )
    def test_all_are_metering_errors(self, exc):
        assert isinstance(exc, MeteringError)

    def test_messages_carry_identifiers(self):
        assert "art-1" in str(DuplicateArtifactError("art-1"))
        assert "mega" in str(UnknownCreditPackError("mega"))
        assert "cs_1" in str(PurchaseNotFoundError("cs_1"))
        assert "consume" in str(StorageUnavailableError("consume", "timeout"))

    def test_retryable_error_keeps_event_id(self):
        exc = BillingEventRetryableError("evt_1", "unknown customer")
        assert exc.event_id == "evt_1"
        assert exc.message == "unknown customer"
