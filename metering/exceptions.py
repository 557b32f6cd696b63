"""
Exception Classes - Strongly typed exception hierarchy.

Quota and limit outcomes are returned as Decision values; these exceptions
cover storage, payment provider and webhook failures only.
"""


class MeteringError(Exception):
    """Base exception for all metering errors."""

    pass


class StorageUnavailableError(MeteringError):
    """Raised when the entitlement store cannot be reached."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"Storage unavailable during {operation}: {message}")


class DuplicateArtifactError(MeteringError):
    """Raised when a download quota already exists for an artifact."""

    def __init__(self, artifact_id: str) -> None:
        self.artifact_id = artifact_id
        super().__init__(f"Download quota already exists for artifact {artifact_id}")


class UnknownCreditPackError(MeteringError):
    """Raised when a credit pack id is not in the catalog."""

    def __init__(self, pack_id: str) -> None:
        self.pack_id = pack_id
        super().__init__(f"Unknown credit pack: {pack_id}")


class PurchaseNotFoundError(MeteringError):
    """Raised when a completed payment matches no pending purchase."""

    def __init__(self, external_payment_id: str) -> None:
        self.external_payment_id = external_payment_id
        super().__init__(
            f"Purchase not found or already processed: {external_payment_id}"
        )


class PaymentProviderError(MeteringError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(MeteringError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class BillingEventRetryableError(MeteringError):
    """Raised when a billing event cannot be applied yet and must be redelivered."""

    def __init__(self, event_id: str, message: str) -> None:
        self.event_id = event_id
        self.message = message
        super().__init__(f"Billing event {event_id} not applied: {message}")


class AuthenticationError(MeteringError):
    """Raised when authentication fails (invalid API key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
