"""Tests for error classification."""
import asyncio

import httpx
import pytest

from storefront_checkout.errors import (
    AmountMismatchError,
    BackendGraphQLError,
    BackendNetworkError,
    BackendRequestError,
    BackendServerError,
    LinkError,
    PaymentFailed,
    ProviderError,
    StockError,
)
from storefront_checkout.payments import (
    ErrorCategory,
    ErrorClassifier,
    Severity,
    classify,
    classify_provider_error,
    classify_status,
)


class TestProviderErrors:
    def test_card_declined_not_retryable(self):
        error = classify({"type": "card_error", "code": "card_declined", "message": "Your card was declined."})
        assert error.category == ErrorCategory.PROVIDER
        assert not error.retryable
        assert "declined" in error.message
        assert "payment details" in error.user_action

    def test_insufficient_funds_message(self):
        error = classify_provider_error("card_error", "insufficient_funds")
        assert "Insufficient funds" in error.message
        assert not error.retryable

    @pytest.mark.parametrize("code", ["card_declined", "insufficient_funds", "expired_card"])
    def test_decline_recognized_by_code_alone(self, code):
        error = classify({"code": code, "message": "declined by issuer"})
        assert error.category == ErrorCategory.PROVIDER
        assert not error.retryable
        assert error.code == code

    def test_decline_code_picks_message(self):
        error = classify({"code": "card_declined", "decline_code": "insufficient_funds"})
        assert "Insufficient funds" in error.message
        assert not error.retryable

    def test_authentication_required_retryable(self):
        error = classify(ProviderError("3DS needed", type="card_error", code="authentication_required"))
        assert error.retryable
        assert "authentication" in error.message.lower()

    def test_validation_error(self):
        error = classify({"type": "validation_error", "code": "incomplete_number", "message": "incomplete"})
        assert error.category == ErrorCategory.VALIDATION
        assert not error.retryable

    def test_rate_limit(self):
        error = classify({"type": "rate_limit_error"})
        assert error.retryable
        assert error.retry_delay_ms == 5000

    def test_api_error_is_system(self):
        error = classify({"type": "api_error", "message": "oops"})
        assert error.category == ErrorCategory.SYSTEM
        assert error.retryable


class TestStatuses:
    def test_requires_action_distinct_from_decline(self):
        action = classify_status("requires_action")
        decline = classify_provider_error("card_error", "card_declined")
        assert action.retryable and not decline.retryable
        assert action.message != decline.message

    def test_processing(self):
        error = classify_status("processing")
        assert error.retryable
        assert "processing" in error.message

    def test_other_status(self):
        error = classify_status("requires_payment_method")
        assert error.retryable
        assert error.code == "requires_payment_method"


class TestSystemErrors:
    @pytest.mark.parametrize("raw", [
        BackendNetworkError("reset"),
        httpx.ConnectError("refused"),
        asyncio.TimeoutError(),
        ConnectionError("down"),
        "Failed to fetch",
    ])
    def test_network_errors_retryable(self, raw):
        error = classify(raw)
        assert error.category == ErrorCategory.SYSTEM
        assert error.retryable
        assert error.code == "NETWORK_ERROR"

    def test_server_error_retryable(self):
        error = classify(BackendServerError(502, "Bad Gateway"))
        assert error.retryable
        assert error.code == "HTTP_502"

    def test_request_error_not_retryable(self):
        error = classify(BackendRequestError(422, "Unprocessable"))
        assert error.category == ErrorCategory.VALIDATION
        assert not error.retryable

    def test_link_error(self):
        error = classify(LinkError("refused"))
        assert error.code == "LINK_FAILED"
        assert error.retryable


class TestSettlementMessages:
    def test_already_settled(self):
        error = classify("Payment already settled for this order", "SETTLE_PAYMENT")
        assert error.category == ErrorCategory.VALIDATION
        assert error.severity == Severity.LOW
        assert not error.retryable

    def test_payment_not_found(self):
        error = classify("Payment not found")
        assert error.category == ErrorCategory.VALIDATION
        assert not error.retryable

    def test_order_not_found(self):
        error = classify("Order not found")
        assert error.severity == Severity.HIGH
        assert not error.retryable

    def test_service_unavailable(self):
        error = classify("Payment service not available")
        assert error.category == ErrorCategory.SYSTEM
        assert error.retryable

    def test_stripe_verification_failed(self):
        assert classify("Stripe verification failed").retryable

    @pytest.mark.parametrize("message, code", [
        ("Your card was declined", "card_declined"),
        ("Insufficient funds on the account", "insufficient_funds"),
        ("Your card has expired", "expired_card"),
    ])
    def test_backend_reported_decline_not_retryable(self, message, code):
        error = classify(message, "SETTLE_PAYMENT")
        assert error.category == ErrorCategory.PROVIDER
        assert error.code == code
        assert not error.retryable

    def test_graphql_errors_classified_by_message(self):
        error = classify(BackendGraphQLError(["Your card was declined"]), "SETTLE_PAYMENT")
        assert error.code == "card_declined"
        assert not error.retryable

    def test_unmatched_settlement_failure(self):
        error = classify("something odd", "SETTLE_PAYMENT")
        assert error.code == "SETTLEMENT_FAILED"
        assert error.retryable


class TestValidationAndFallbacks:
    def test_stock_and_amount_errors_not_retryable(self):
        for raw in (StockError("v1", 5, 2), AmountMismatchError(1430, 1530)):
            error = classify(raw)
            assert error.category == ErrorCategory.VALIDATION
            assert not error.retryable

    def test_unknown_is_retryable_high_severity(self):
        error = classify(RuntimeError("???"))
        assert error.category == ErrorCategory.SYSTEM
        assert error.severity == Severity.HIGH
        assert error.retryable

    def test_none(self):
        assert classify(None).code == "UNKNOWN_ERROR"

    def test_payment_failed_unwraps(self):
        inner = classify_status("processing")
        assert classify(PaymentFailed(inner)) is inner

    def test_dict_with_message_only(self):
        assert classify({"message": "Order not found"}).code == "ORDER_NOT_FOUND"

    def test_debug_detail_not_user_facing(self):
        error = classify(RuntimeError("internal stack detail"))
        assert "internal stack detail" in error.debug_detail
        assert "debug_detail" not in error.to_user_dict()
        assert "internal stack detail" not in repr(error)

    def test_classifier_wrapper(self):
        classifier = ErrorClassifier()
        assert classifier.classify("Order not found").code == "ORDER_NOT_FOUND"
        assert classifier.classify_status("processing").code == "processing"
