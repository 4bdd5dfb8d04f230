"""Tests for settlement and its retry policy."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from storefront_checkout.backend.base import SettlementResponse
from storefront_checkout.errors import BackendGraphQLError, BackendNetworkError, SettlementUnavailableError
from storefront_checkout.payments import SettlementRetryEngine

PI = "pi_test1"


@pytest.fixture
def linked_backend(fake_backend):
    fake_backend.links[PI] = ("7", "ORD0007", 1430)
    return fake_backend


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def engine(linked_backend, sleep):
    return SettlementRetryEngine(linked_backend, sleep=sleep)


class TestSettle:
    @pytest.mark.asyncio
    async def test_success(self, engine):
        result = await engine.settle(PI, "cart-1")
        assert result.success
        assert result.order_code == "ORD0007"
        assert result.payment_record_id == "payment_1"

    @pytest.mark.asyncio
    async def test_backend_exception_is_classified(self, engine, linked_backend):
        linked_backend.settle_failures.append(BackendNetworkError("reset"))
        result = await engine.settle(PI)
        assert not result.success
        assert result.error.retryable

    @pytest.mark.asyncio
    async def test_unsuccessful_response_is_classified(self, engine, linked_backend):
        linked_backend.settle_failures.append(SettlementResponse(success=False, error="Payment not found"))
        result = await engine.settle(PI)
        assert not result.success
        assert result.error.code == "PAYMENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_concurrent_settles_agree(self, engine, linked_backend):
        results = await asyncio.gather(*(engine.settle(PI) for _ in range(5)))
        assert all(r.success for r in results)
        assert {r.order_code for r in results} == {"ORD0007"}
        assert {r.payment_record_id for r in results} == {"payment_1"}
        assert linked_backend.settle_calls == 5

    @pytest.mark.asyncio
    async def test_falls_back_to_add_payment(self, engine, linked_backend):
        linked_backend.settle_failures.append(SettlementUnavailableError("Cannot query field"))
        result = await engine.settle(PI)
        assert result.success
        assert linked_backend.added_payments == [("stripe", {"paymentIntentId": PI})]

    @pytest.mark.asyncio
    async def test_fallback_disabled(self, linked_backend):
        linked_backend.settle_failures.append(SettlementUnavailableError("Cannot query field"))
        engine = SettlementRetryEngine(linked_backend, fallback_to_add_payment=False)
        result = await engine.settle(PI)
        assert not result.success
        assert linked_backend.added_payments == []


class TestRetry:
    @pytest.mark.asyncio
    async def test_two_network_failures_then_success(self, engine, linked_backend, sleep):
        linked_backend.settle_failures.extend([BackendNetworkError("reset"), BackendNetworkError("reset")])
        result = await engine.retry_settlement(PI, max_attempts=3, base_delay_ms=1000)
        assert result.success
        assert result.attempts == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.0)

    @pytest.mark.asyncio
    async def test_non_retryable_stops_after_one(self, engine, linked_backend, sleep):
        linked_backend.settle_failures.extend(
            [SettlementResponse(success=False, error="Order not found")] * 3
        )
        result = await engine.retry_settlement(PI, max_attempts=3)
        assert not result.success
        assert result.attempts == 1
        assert linked_backend.settle_calls == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, engine, linked_backend, sleep):
        linked_backend.settle_failures.extend([BackendNetworkError("reset")] * 4)
        result = await engine.retry_settlement(PI, max_attempts=3, base_delay_ms=250)
        assert not result.success
        assert result.attempts == 3
        assert result.error.retryable
        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.25)

    @pytest.mark.asyncio
    async def test_first_attempt_success_has_no_delay(self, engine, sleep):
        result = await engine.retry_settlement(PI)
        assert result.attempts == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_max_attempts(self, engine):
        with pytest.raises(ValueError):
            await engine.retry_settlement(PI, max_attempts=0)

    @pytest.mark.asyncio
    async def test_backend_decline_is_not_retried(self, engine, linked_backend, sleep):
        linked_backend.settle_failures.extend(
            [SettlementResponse(success=False, error="Your card was declined")] * 3
        )
        result = await engine.retry_settlement(PI, max_attempts=3)
        assert not result.success
        assert result.attempts == 1
        assert result.error.code == "card_declined"
        assert not result.error.retryable
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_graphql_decline_is_not_retried(self, engine, linked_backend):
        linked_backend.settle_failures.extend([BackendGraphQLError(["Insufficient funds"])] * 3)
        result = await engine.retry_settlement(PI, max_attempts=3)
        assert result.attempts == 1
        assert result.error.code == "insufficient_funds"


class TestAlreadySettled:
    @pytest.mark.asyncio
    async def test_lost_response_then_already_settled_succeeds(self, engine, linked_backend):
        linked_backend.settled[PI] = "payment_1"
        linked_backend.settle_failures.extend([
            BackendNetworkError("reset"),
            SettlementResponse(success=False, error="Payment already settled"),
        ])
        result = await engine.retry_settlement(PI, max_attempts=3)
        assert result.success
        assert result.attempts == 2
        assert result.order_code == "ORD0007"

    @pytest.mark.asyncio
    async def test_already_settled_without_settled_status_fails(self, engine, linked_backend):
        linked_backend.intents[PI] = {"amount": 1430}
        linked_backend.settle_failures.append(SettlementResponse(success=False, error="Payment already settled"))
        result = await engine.settle(PI)
        assert not result.success
        assert result.error.code == "ALREADY_SETTLED"

    @pytest.mark.asyncio
    async def test_status_lookup_failure_keeps_error(self, engine, linked_backend):
        linked_backend.get_payment_status = AsyncMock(side_effect=BackendNetworkError("reset"))
        linked_backend.settle_failures.append(SettlementResponse(success=False, error="Payment already settled"))
        result = await engine.settle(PI)
        assert not result.success
        assert result.error.code == "ALREADY_SETTLED"
