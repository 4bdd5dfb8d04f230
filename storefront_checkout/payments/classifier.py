"""
Error classifier — maps raw provider, backend and network errors to PaymentError.

Pure functions only. The `retryable` flag decided here drives retries in both
the payment element controller and the settlement retry engine.
"""
import asyncio
from typing import Any, Optional

import httpx

from ..errors import (
    BackendGraphQLError,
    BackendNetworkError,
    BackendRequestError,
    BackendServerError,
    LinkError,
    PaymentFailed,
    ProviderError,
    ValidationError,
)
from .models import ErrorCategory, PaymentError, Severity

CHECK_DETAILS = "Check your payment details or use a different card"
RETRY_LATER = "Try again in a moment"
CONTACT_SUPPORT = "Contact customer support"

ALREADY_SETTLED = "ALREADY_SETTLED"

# Provider card_error codes: user-facing message for each decline
CARD_DECLINE_MESSAGES = {
    "card_declined": "Your card was declined. Please try a different card or payment method.",
    "insufficient_funds": "Insufficient funds. Please use a different card or add funds to your account.",
    "expired_card": "Your card has expired. Please use a different card.",
    "incorrect_cvc": "Your card's security code (CVC) is incorrect. Please check and try again.",
    "incorrect_number": "Your card number is incorrect. Please check and try again.",
    "invalid_expiry_month": "Your card's expiration month is invalid.",
    "invalid_expiry_year": "Your card's expiration year is invalid.",
    "lost_card": "Your card was declined. Please try a different card or payment method.",
    "stolen_card": "Your card was declined. Please try a different card or payment method.",
}

AUTHENTICATION_REQUIRED = (
    "Additional authentication is required. Please complete the verification and try again."
)
STILL_PROCESSING = "Your payment is still processing. Please wait a moment and try again."


def _decline(code: str) -> dict[str, Any]:
    return dict(
        message=CARD_DECLINE_MESSAGES[code],
        category=ErrorCategory.PROVIDER, severity=Severity.LOW, retryable=False,
        user_action=CHECK_DETAILS, code=code,
    )


# Settlement/backend messages (lower-cased substring -> classification)
_MESSAGE_RULES: list[tuple[str, dict[str, Any]]] = [
    ("already settled", dict(
        message="This payment has already been processed successfully.",
        category=ErrorCategory.VALIDATION, severity=Severity.LOW, retryable=False,
        user_action="No action needed - payment is complete", code=ALREADY_SETTLED,
    )),
    ("payment not found", dict(
        message="Payment session has expired. Please start over.",
        category=ErrorCategory.VALIDATION, severity=Severity.MEDIUM, retryable=False,
        user_action="Start a new payment", code="PAYMENT_NOT_FOUND",
    )),
    ("order not found", dict(
        message="Order not found. Please contact support.",
        category=ErrorCategory.VALIDATION, severity=Severity.HIGH, retryable=False,
        user_action=CONTACT_SUPPORT, code="ORDER_NOT_FOUND",
    )),
    ("insufficient funds", _decline("insufficient_funds")),
    ("insufficient_funds", _decline("insufficient_funds")),
    ("card has expired", _decline("expired_card")),
    ("expired_card", _decline("expired_card")),
    ("declined", _decline("card_declined")),
    ("stripe verification failed", dict(
        message="Payment verification failed. Please try again or use a different payment method.",
        category=ErrorCategory.PROVIDER, severity=Severity.MEDIUM, retryable=True,
        user_action="Try again or use a different payment method", code="VERIFICATION_FAILED",
        retry_delay_ms=3000,
    )),
    ("payment service not available", dict(
        message="Payment service is temporarily unavailable. Please try again in a few moments.",
        category=ErrorCategory.SYSTEM, severity=Severity.MEDIUM, retryable=True,
        user_action=RETRY_LATER, code="SERVICE_UNAVAILABLE", retry_delay_ms=5000,
    )),
    ("timeout", dict(
        message="Request timed out. Please try again.",
        category=ErrorCategory.SYSTEM, severity=Severity.MEDIUM, retryable=True,
        user_action=RETRY_LATER, code="TIMEOUT", retry_delay_ms=2000,
    )),
]


def _network_error(detail: str) -> PaymentError:
    return PaymentError(
        message="Network connection failed. Please check your internet connection and try again.",
        category=ErrorCategory.SYSTEM,
        severity=Severity.MEDIUM,
        retryable=True,
        user_action="Check your internet connection and try again",
        code="NETWORK_ERROR",
        retry_delay_ms=2000,
        debug_detail=detail,
    )


def _unknown_error(detail: Optional[str]) -> PaymentError:
    return PaymentError(
        message="Payment processing failed. Please try again.",
        category=ErrorCategory.SYSTEM,
        severity=Severity.HIGH,
        retryable=True,
        user_action="Try again or contact support if the problem persists",
        code="UNKNOWN_ERROR",
        retry_delay_ms=1000,
        debug_detail=detail,
    )


def classify_provider_error(
    error_type: Optional[str],
    code: Optional[str],
    message: Optional[str] = None,
    decline_code: Optional[str] = None,
) -> PaymentError:
    """Classify a provider error object (Stripe `type` / `code` / `decline_code`).

    Declines are recognized by code even when the error type is missing.
    """
    detail = f"{error_type}/{code}/{decline_code}: {message}"

    if code == "authentication_required":
        return PaymentError(
            message=AUTHENTICATION_REQUIRED,
            category=ErrorCategory.PROVIDER,
            severity=Severity.MEDIUM,
            retryable=True,
            user_action="Complete the verification with your bank, then try again",
            code=code,
            retry_delay_ms=2000,
            debug_detail=detail,
        )

    known_decline = decline_code in CARD_DECLINE_MESSAGES or code in CARD_DECLINE_MESSAGES
    if error_type == "card_error" or known_decline:
        return PaymentError(
            message=CARD_DECLINE_MESSAGES.get(
                decline_code or "",
                CARD_DECLINE_MESSAGES.get(code or "", "Your card was declined. Please try a different payment method."),
            ),
            category=ErrorCategory.PROVIDER,
            severity=Severity.LOW,
            retryable=False,
            user_action=CHECK_DETAILS,
            code=code or decline_code or error_type,
            debug_detail=detail,
        )

    if error_type == "validation_error":
        return PaymentError(
            message="Please check your payment information and try again.",
            category=ErrorCategory.VALIDATION,
            severity=Severity.LOW,
            retryable=False,
            user_action="Correct the highlighted payment fields",
            code=code or error_type,
            debug_detail=detail,
        )

    if error_type == "rate_limit_error":
        return PaymentError(
            message="Too many requests. Please wait a moment and try again.",
            category=ErrorCategory.PROVIDER,
            severity=Severity.LOW,
            retryable=True,
            user_action="Wait a moment and try again",
            code=code or error_type,
            retry_delay_ms=5000,
            debug_detail=detail,
        )

    if error_type == "api_error" or error_type == "api_connection_error":
        return PaymentError(
            message="A payment processing error occurred. Please try again.",
            category=ErrorCategory.SYSTEM,
            severity=Severity.MEDIUM,
            retryable=True,
            user_action=RETRY_LATER,
            code=code or error_type,
            retry_delay_ms=2000,
            debug_detail=detail,
        )

    return _unknown_error(detail)


def classify_status(status: Optional[str]) -> PaymentError:
    """Classify a non-`succeeded` confirmation status. Always retryable."""
    if status == "requires_action":
        return PaymentError(
            message=AUTHENTICATION_REQUIRED,
            category=ErrorCategory.PROVIDER,
            severity=Severity.MEDIUM,
            retryable=True,
            user_action="Complete the verification with your bank, then try again",
            code="requires_action",
        )
    if status == "processing":
        return PaymentError(
            message=STILL_PROCESSING,
            category=ErrorCategory.PROVIDER,
            severity=Severity.LOW,
            retryable=True,
            user_action="Wait a moment, then check your order status",
            code="processing",
            retry_delay_ms=3000,
        )
    return PaymentError(
        message=f"Payment was not completed (status: {status or 'unknown'}). Please try again.",
        category=ErrorCategory.PROVIDER,
        severity=Severity.MEDIUM,
        retryable=True,
        user_action="Try again or use a different payment method",
        code=status or "unknown_status",
    )


def _classify_message(message: str, context: str) -> Optional[PaymentError]:
    lowered = message.lower()
    for needle, fields in _MESSAGE_RULES:
        if needle in lowered:
            return PaymentError(debug_detail=f"{context}: {message}", **fields)
    if "fetch" in lowered or "connection" in lowered:
        return _network_error(f"{context}: {message}")
    return None


def classify(raw_error: Any, context: str = "PAYMENT") -> PaymentError:
    """Map any raw error to a PaymentError. Never raises."""
    if raw_error is None:
        return _unknown_error(f"{context}: no error information")

    if isinstance(raw_error, PaymentError):
        return raw_error
    if isinstance(raw_error, PaymentFailed):
        return raw_error.error

    if isinstance(raw_error, ValidationError):
        return PaymentError(
            message=str(raw_error),
            category=ErrorCategory.VALIDATION,
            severity=Severity.MEDIUM,
            retryable=False,
            user_action="Review your cart and payment details",
            code=type(raw_error).__name__,
            debug_detail=f"{context}: {raw_error!r}",
        )

    if isinstance(raw_error, LinkError):
        return PaymentError(
            message="We could not attach your payment to the order. Please try again.",
            category=ErrorCategory.SYSTEM,
            severity=Severity.HIGH,
            retryable=True,
            user_action="Try again or contact support if the problem persists",
            code="LINK_FAILED",
            debug_detail=f"{context}: {raw_error}",
        )

    if isinstance(raw_error, ProviderError):
        return classify_provider_error(raw_error.type, raw_error.code, str(raw_error))

    if isinstance(raw_error, dict):
        if raw_error.get("type") or raw_error.get("code") or raw_error.get("decline_code"):
            return classify_provider_error(
                raw_error.get("type"),
                raw_error.get("code"),
                raw_error.get("message"),
                raw_error.get("decline_code"),
            )
        if raw_error.get("message"):
            return classify(str(raw_error["message"]), context)
        return _unknown_error(f"{context}: {raw_error!r}")

    if isinstance(raw_error, BackendGraphQLError):
        for message in raw_error.messages:
            by_message = _classify_message(message, context)
            if by_message:
                return by_message

    if isinstance(raw_error, (BackendNetworkError, httpx.TransportError, ConnectionError, asyncio.TimeoutError)):
        return _network_error(f"{context}: {type(raw_error).__name__}: {raw_error}")

    if isinstance(raw_error, BackendServerError):
        return PaymentError(
            message="The payment service is having trouble. Please try again.",
            category=ErrorCategory.SYSTEM,
            severity=Severity.MEDIUM,
            retryable=True,
            user_action=RETRY_LATER,
            code=f"HTTP_{raw_error.status_code}",
            retry_delay_ms=2000,
            debug_detail=f"{context}: {raw_error}",
        )

    if isinstance(raw_error, BackendRequestError):
        return PaymentError(
            message="The payment request was rejected. Please review your order and try again.",
            category=ErrorCategory.VALIDATION,
            severity=Severity.MEDIUM,
            retryable=False,
            user_action="Review your order details",
            code=f"HTTP_{raw_error.status_code}",
            debug_detail=f"{context}: {raw_error}",
        )

    message = raw_error if isinstance(raw_error, str) else str(raw_error)
    by_message = _classify_message(message, context)
    if by_message:
        return by_message

    if "settle" in context.lower():
        return PaymentError(
            message="Payment settlement failed. Please try again.",
            category=ErrorCategory.SYSTEM,
            severity=Severity.MEDIUM,
            retryable=True,
            user_action="Try again or contact support",
            code="SETTLEMENT_FAILED",
            retry_delay_ms=2000,
            debug_detail=f"{context}: {message}",
        )

    return _unknown_error(f"{context}: {type(raw_error).__name__}: {message}")


class ErrorClassifier:
    """Injectable wrapper so components can share (or tests can swap) rules."""

    def classify(self, raw_error: Any, context: str = "PAYMENT") -> PaymentError:
        return classify(raw_error, context)

    def classify_status(self, status: Optional[str]) -> PaymentError:
        return classify_status(status)
