"""Exception hierarchy for the checkout pipeline."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .payments.models import PaymentError


class CheckoutError(Exception):
    """Base class for every error raised by the checkout pipeline."""


# ---------------------------------------------------------------------------
# Validation: never retried automatically, the user must correct input
# ---------------------------------------------------------------------------

class ValidationError(CheckoutError):
    """Cart or payment input is invalid (empty cart, amount too low, ...)."""


class StockError(ValidationError):
    """Requested quantity exceeds the known stock level."""

    def __init__(self, variant_id: str, requested: int, available: int):
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        super().__init__(f"Only {available} items available (requested {requested})")


class AmountMismatchError(ValidationError):
    """Authorized amount differs from the order's final total."""

    def __init__(self, authorized: int, order_total: int):
        self.authorized = authorized
        self.order_total = order_total
        super().__init__(
            f"Authorized amount {authorized} does not match order total {order_total}"
        )


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------

class BackendError(CheckoutError):
    """The shop backend could not complete a request."""


class BackendNetworkError(BackendError):
    """Transport-level failure talking to the backend (DNS, connect, timeout)."""


class BackendServerError(BackendError):
    """Backend answered with a 5xx status."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")


class BackendRequestError(BackendError):
    """Backend rejected the request with a 4xx status."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")


class BackendGraphQLError(BackendError):
    """GraphQL response carried an `errors` array."""

    def __init__(self, messages: list[str]):
        self.messages = messages
        super().__init__("GraphQL Error: " + ", ".join(messages))


class SettlementUnavailableError(BackendError):
    """The backend does not expose settlement-by-intent."""


# ---------------------------------------------------------------------------
# Provider / flow
# ---------------------------------------------------------------------------

class ProviderError(CheckoutError):
    """Error object reported by the payment provider SDK."""

    def __init__(
        self,
        message: str,
        type: str | None = None,
        code: str | None = None,
        decline_code: str | None = None,
    ):
        self.type = type
        self.code = code
        self.decline_code = decline_code
        super().__init__(message)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ProviderError":
        return cls(
            message=payload.get("message") or "Payment failed",
            type=payload.get("type"),
            code=payload.get("code"),
            decline_code=payload.get("decline_code"),
        )


class LinkError(CheckoutError):
    """Authorization could not be bound to the order. Terminal for the attempt."""


class InvalidStateError(CheckoutError):
    """Operation called in a state that does not allow it."""


class PaymentFailed(CheckoutError):
    """Carries a classified PaymentError out of a component."""

    def __init__(self, error: "PaymentError"):
        self.error = error
        super().__init__(error.message)
