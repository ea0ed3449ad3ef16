from __future__ import annotations


class RelayError(Exception):
    """Base error for the delivery pipeline."""

    code = "RELAY_ERROR"

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class AuthError(RelayError):
    """Missing, malformed, or mismatched callback token."""

    code = "AUTH_INVALID"


class TenantIsolationError(RelayError):
    """Token is valid but the request names a different tenant."""

    code = "TENANT_MISMATCH"


class NotFoundError(RelayError):
    """Unknown resource or callback id."""

    code = "NOT_FOUND"


class ValidationError(RelayError):
    """Malformed payload."""

    code = "VALIDATION_ERROR"


class VectorDimensionError(ValidationError):
    """Embedding length does not match the configured dimension."""

    code = "DIMENSION_MISMATCH"


class InvalidTransitionError(RelayError):
    """Requested lifecycle transition is not allowed from the current status."""

    code = "INVALID_TRANSITION"


class TransientDeliveryError(RelayError):
    """Webhook unreachable, timed out, or rejected; eligible for retry."""

    code = "DELIVERY_TRANSIENT"


class TerminalDeliveryError(RelayError):
    """Delivery exhausted its retry budget."""

    code = "DELIVERY_TERMINAL"


class IndexUnavailableError(RelayError):
    """Vector index backing search is missing or failing."""

    code = "INDEX_UNAVAILABLE"
