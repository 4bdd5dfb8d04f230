"""Shared test fixtures: in-memory backend, fake provider SDK, storage and cart items."""
import asyncio
from typing import Any, Optional

import pytest

from storefront_checkout.backend.base import (
    OrderRef,
    PaymentIntentCreated,
    PaymentStatus,
    SettlementResponse,
    ShopBackend,
)
from storefront_checkout.cart.schema import CartItem, CartSnapshot
from storefront_checkout.errors import BackendGraphQLError
from storefront_checkout.payments.sdk import (
    ElementsGroup,
    PaymentElementHandle,
    ProviderSDK,
    reset_sdk_cache,
)
from storefront_checkout.storage import ClientStorage


class FakeBackend(ShopBackend):
    """In-memory shop backend. Settlement is idempotent per payment intent."""

    def __init__(self):
        self.intents: dict[str, dict] = {}
        self.created_amounts: list[int] = []
        self.mappings: dict[str, dict] = {}
        self.mapping_creates = 0
        self.mapping_updates = 0
        self.links: dict[str, tuple] = {}
        self.link_calls = 0
        self.link_result = True
        self.settled: dict[str, str] = {}
        self.settle_calls = 0
        self.settle_failures: list[Any] = []  # consumed one per settle call
        self.added_payments: list[tuple] = []
        self.orders_created = 0
        self._counter = 0

    async def create_payment_intent(self, amount, currency, cart_uuid):
        self._counter += 1
        pi = f"pi_test{self._counter}"
        self.intents[pi] = {"amount": amount, "currency": currency, "cart_uuid": cart_uuid}
        self.created_amounts.append(amount)
        return PaymentIntentCreated(client_secret=f"{pi}_secret_abc{self._counter}", payment_intent_id=pi)

    async def create_cart_mapping(self, cart_uuid):
        self.mapping_creates += 1
        if cart_uuid in self.mappings:
            raise BackendGraphQLError([f"Cart mapping for {cart_uuid} already exists"])
        self.mappings[cart_uuid] = {"cartUuid": cart_uuid, "paymentIntentId": None}
        return self.mappings[cart_uuid]

    async def update_cart_mapping_payment_intent(self, cart_uuid, payment_intent_id):
        self.mapping_updates += 1
        mapping = self.mappings.setdefault(cart_uuid, {"cartUuid": cart_uuid})
        mapping["paymentIntentId"] = payment_intent_id
        return mapping

    async def link_payment_intent_to_order(self, payment_intent_id, order_id, order_code, final_total, customer_email=None):
        self.link_calls += 1
        if not self.link_result:
            return False
        self.links[payment_intent_id] = (order_id, order_code, final_total)
        if payment_intent_id in self.intents:
            self.intents[payment_intent_id]["amount"] = final_total
        return True

    async def settle_payment(self, payment_intent_id, cart_uuid=None):
        self.settle_calls += 1
        await asyncio.sleep(0)
        if self.settle_failures:
            failure = self.settle_failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return failure
        if payment_intent_id not in self.links:
            return SettlementResponse(success=False, error="Order not found")
        order_id, order_code, _ = self.links[payment_intent_id]
        self.settled.setdefault(payment_intent_id, f"payment_{len(self.settled) + 1}")
        return SettlementResponse(
            success=True,
            order_id=order_id,
            order_code=order_code,
            payment_id=self.settled[payment_intent_id],
        )

    async def add_payment_to_order(self, method, metadata):
        self.added_payments.append((method, metadata))
        pi = metadata["paymentIntentId"]
        order_id, order_code, _ = self.links.get(pi, ("1", "FALLBACK1", 0))
        return SettlementResponse(success=True, order_id=order_id, order_code=order_code, payment_id="payment_fb")

    async def get_payment_status(self, payment_intent_id):
        if payment_intent_id in self.settled:
            _, order_code, total = self.links[payment_intent_id]
            return PaymentStatus("SETTLED", payment_intent_id, order_code, total)
        if payment_intent_id in self.intents:
            return PaymentStatus("PENDING", payment_intent_id)
        return PaymentStatus("NOT_FOUND", payment_intent_id)

    async def create_order(self, snapshot: CartSnapshot, customer_email=None):
        self.orders_created += 1
        n = self.orders_created
        return OrderRef(order_id=str(n), order_code=f"ORD{n:04d}", total=snapshot.subtotal_after_discount,
                        customer_email=customer_email)


class FakeElement(PaymentElementHandle):
    def __init__(self, mount_block: Optional[asyncio.Event] = None):
        self.mounted_at: Optional[str] = None
        self.unmount_calls = 0
        self._mount_block = mount_block

    async def mount(self, selector):
        if self._mount_block is not None:
            await self._mount_block.wait()
        self.mounted_at = selector

    async def unmount(self):
        self.unmount_calls += 1
        self.mounted_at = None


class FakeElements(ElementsGroup):
    def __init__(self, sdk: "FakeSDK"):
        self._sdk = sdk
        self.created: list[FakeElement] = []

    async def create(self, kind, options=None):
        element = FakeElement(self._sdk.mount_block)
        self.created.append(element)
        self._sdk.elements_created.append(element)
        return element

    async def submit(self):
        return self._sdk.submit_error


class FakeSDK(ProviderSDK):
    """Provider SDK double. Confirms as `succeeded` with the backend's intent amount by default."""

    def __init__(self, backend: Optional[FakeBackend] = None):
        self.backend = backend
        self.submit_error: Optional[dict] = None
        self.confirm_responses: list[dict] = []
        self.confirm_calls: list[dict] = []
        self.elements_created: list[FakeElement] = []
        self.mount_block: Optional[asyncio.Event] = None

    async def elements(self, client_secret, appearance=None):
        return FakeElements(self)

    async def confirm_payment(self, elements, client_secret, confirm_params, redirect="if_required"):
        self.confirm_calls.append({"client_secret": client_secret, "confirm_params": confirm_params,
                                   "redirect": redirect})
        if self.confirm_responses:
            return self.confirm_responses.pop(0)
        pi = client_secret.split("_secret_")[0]
        amount = self.backend.intents[pi]["amount"] if self.backend and pi in self.backend.intents else 1000
        return {"error": None, "paymentIntent": {"id": pi, "status": "succeeded", "amount": amount, "currency": "usd"}}

    async def retrieve_payment_intent(self, client_secret):
        pi = client_secret.split("_secret_")[0]
        return {"error": None, "paymentIntent": {"id": pi, "status": "requires_payment_method"}}


@pytest.fixture(autouse=True)
def clear_sdk_cache():
    reset_sdk_cache()
    yield
    reset_sdk_cache()


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def fake_sdk(fake_backend):
    return FakeSDK(fake_backend)


@pytest.fixture
def storage(tmp_path):
    """Encrypted client storage in a temporary profile directory."""
    return ClientStorage(tmp_path / "storage")


@pytest.fixture
def widget():
    return CartItem(variant_id="v1", quantity=2, unit_price=500, stock_snapshot=10, name="Widget")


@pytest.fixture
def gadget():
    return CartItem(variant_id="v2", quantity=1, unit_price=300, stock_snapshot=5, name="Gadget")
