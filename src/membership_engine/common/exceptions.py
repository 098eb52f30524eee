"""Membership-Engine exception hierarchy."""


class MembershipEngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str = "", code: str = "ENGINE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class SignatureVerificationError(MembershipEngineError):
    """Raised when a webhook payload fails signature verification."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, code="INVALID_SIGNATURE")


class MalformedEventError(MembershipEngineError):
    """Raised when a verified payload cannot be parsed into an event."""

    def __init__(self, message: str = "Malformed event payload"):
        super().__init__(message, code="MALFORMED_EVENT")


class OwnershipError(MembershipEngineError):
    """Raised when the caller does not own the resource they act on."""

    def __init__(self, message: str = "Resource does not belong to this user"):
        super().__init__(message, code="FORBIDDEN")


class CheckoutSessionError(MembershipEngineError):
    """Raised when a checkout session cannot be reconciled."""

    def __init__(self, message: str = "Invalid checkout session"):
        super().__init__(message, code="INVALID_SESSION")


class ProviderError(MembershipEngineError):
    """Raised when the payment provider API fails or times out."""

    def __init__(self, message: str = "Payment provider unavailable"):
        super().__init__(message, code="PROVIDER_UNAVAILABLE")


class MissingLinkageError(MembershipEngineError):
    """Raised when an event cannot be tied to an internal owner."""

    def __init__(self, message: str = "No internal owner for provider object"):
        super().__init__(message, code="MISSING_LINKAGE")


class CatalogError(MembershipEngineError):
    """Raised when a price is unknown or inactive."""

    def __init__(self, message: str = "Invalid or inactive price"):
        super().__init__(message, code="INVALID_PRICE")

