"""Tests for the payment element controller and the shared SDK cache."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from storefront_checkout.errors import InvalidStateError, PaymentFailed
from storefront_checkout.payments import (
    ElementState,
    ErrorCategory,
    PaymentElementController,
    ReturnContext,
    load_provider_sdk,
)

SELECTOR = "#payment-element"
SECRET = "pi_test1_secret_abc"
RETURN = ReturnContext(return_url="https://shop.test/checkout/return")


@pytest.fixture
def controller(fake_sdk):
    return PaymentElementController(AsyncMock(return_value=fake_sdk), SELECTOR)


class TestInitialize:
    @pytest.mark.asyncio
    async def test_mounts_payment_element(self, controller, fake_sdk):
        await controller.initialize(SECRET)
        assert controller.state == ElementState.READY
        assert controller.is_mounted
        assert fake_sdk.elements_created[0].mounted_at == SELECTOR

    @pytest.mark.asyncio
    async def test_sdk_failure_marks_failed(self):
        provider = AsyncMock(side_effect=ValueError("STRIPE_PUBLISHABLE_KEY not set"))
        controller = PaymentElementController(provider, SELECTOR)
        with pytest.raises(PaymentFailed) as exc:
            await controller.initialize(SECRET)
        assert controller.state == ElementState.FAILED
        assert exc.value.error is controller.error

    @pytest.mark.asyncio
    async def test_initialize_twice_rejected(self, controller):
        await controller.initialize(SECRET)
        with pytest.raises(InvalidStateError):
            await controller.initialize(SECRET)

    @pytest.mark.asyncio
    async def test_cancel_during_mount_unmounts(self, controller, fake_sdk):
        fake_sdk.mount_block = asyncio.Event()
        task = asyncio.create_task(controller.initialize(SECRET))
        while not fake_sdk.elements_created:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert fake_sdk.elements_created[0].unmount_calls == 1
        assert not controller.is_mounted


class TestConfirm:
    @pytest.mark.asyncio
    async def test_succeeded(self, controller, fake_sdk):
        fake_sdk.backend.intents["pi_test1"] = {"amount": 1430}
        await controller.initialize(SECRET)
        result = await controller.confirm(RETURN)

        assert result.success
        assert result.payment_intent_id == "pi_test1"
        assert result.amount == 1430
        assert controller.state == ElementState.CONFIRMED
        call = fake_sdk.confirm_calls[0]
        assert call["redirect"] == "if_required"
        assert call["confirm_params"] == {"return_url": RETURN.return_url}

    @pytest.mark.asyncio
    async def test_requires_action_is_retryable(self, controller, fake_sdk):
        fake_sdk.confirm_responses.append(
            {"error": None, "paymentIntent": {"id": "pi_test1", "status": "requires_action", "amount": 1430}}
        )
        await controller.initialize(SECRET)
        result = await controller.confirm(RETURN)
        assert not result.success
        assert result.status == "requires_action"
        assert result.error.retryable
        assert controller.state == ElementState.FAILED

    @pytest.mark.asyncio
    async def test_card_declined_not_retryable(self, controller, fake_sdk):
        fake_sdk.confirm_responses.append(
            {"error": {"type": "card_error", "code": "card_declined", "message": "declined"}, "paymentIntent": None}
        )
        await controller.initialize(SECRET)
        result = await controller.confirm(RETURN)
        assert not result.success
        assert not result.error.retryable
        assert result.error.category == ErrorCategory.PROVIDER

    @pytest.mark.asyncio
    async def test_submit_failure_skips_provider_confirmation(self, controller, fake_sdk):
        fake_sdk.submit_error = {"type": "validation_error", "code": "incomplete_cvc", "message": "CVC incomplete"}
        await controller.initialize(SECRET)
        result = await controller.confirm(RETURN)
        assert not result.success
        assert result.error.category == ErrorCategory.VALIDATION
        assert fake_sdk.confirm_calls == []

    @pytest.mark.asyncio
    async def test_confirm_raising_is_classified(self, controller, fake_sdk):
        fake_sdk.confirm_payment = AsyncMock(side_effect=ConnectionError("page crashed"))
        await controller.initialize(SECRET)
        result = await controller.confirm(RETURN)
        assert not result.success
        assert result.error.code == "NETWORK_ERROR"

    @pytest.mark.asyncio
    async def test_confirm_before_initialize(self, controller):
        with pytest.raises(InvalidStateError):
            await controller.confirm(RETURN)

    @pytest.mark.asyncio
    async def test_controller_is_single_use(self, controller):
        await controller.initialize(SECRET)
        await controller.confirm(RETURN)
        with pytest.raises(InvalidStateError):
            await controller.confirm(RETURN)


class TestTeardown:
    @pytest.mark.asyncio
    async def test_unmounts_once(self, controller, fake_sdk):
        await controller.initialize(SECRET)
        await controller.teardown()
        await controller.teardown()
        assert fake_sdk.elements_created[0].unmount_calls == 1
        with pytest.raises(InvalidStateError):
            await controller.confirm(RETURN)

    @pytest.mark.asyncio
    async def test_unmount_failure_is_swallowed(self, controller, fake_sdk):
        await controller.initialize(SECRET)
        fake_sdk.elements_created[0].unmount = AsyncMock(side_effect=RuntimeError("detached"))
        await controller.teardown()
        assert not controller.is_mounted


class TestSdkCache:
    @pytest.mark.asyncio
    async def test_loaded_once_for_concurrent_controllers(self, fake_sdk):
        loader = AsyncMock(return_value=fake_sdk)
        controllers = [
            PaymentElementController(lambda: load_provider_sdk("pk_test_123", loader), SELECTOR)
            for _ in range(3)
        ]
        await asyncio.gather(*(c.initialize(f"pi_test{i}_secret_x") for i, c in enumerate(controllers)))
        assert loader.await_count == 1
        assert all(c.state == ElementState.READY for c in controllers)

    @pytest.mark.asyncio
    async def test_missing_key(self, fake_sdk):
        with pytest.raises(ValueError):
            await load_provider_sdk("", AsyncMock(return_value=fake_sdk))
