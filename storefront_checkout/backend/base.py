"""Abstract base class for the shop backend API."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from ..cart.schema import CartSnapshot


@dataclass
class PaymentIntentCreated:
    """Backend answer to a provisional payment intent request."""
    client_secret: str
    payment_intent_id: str


@dataclass
class SettlementResponse:
    """Backend answer to a settlement (or add-payment) request."""
    success: bool
    order_id: Optional[str] = None
    order_code: Optional[str] = None
    payment_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PaymentStatus:
    """Settlement status of a payment intent as the backend sees it."""
    status: str  # PENDING | SETTLED | FAILED | NOT_FOUND
    payment_intent_id: str
    order_code: Optional[str] = None
    amount: Optional[int] = None


@dataclass
class OrderRef:
    """A backend order created from the local cart."""
    order_id: str
    order_code: str
    total: int
    customer_email: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


class ShopBackend(ABC):
    """Backend mutations and queries the checkout pipeline consumes."""

    @abstractmethod
    async def create_payment_intent(self, amount: int, currency: str, cart_uuid: str) -> PaymentIntentCreated:
        ...

    @abstractmethod
    async def create_cart_mapping(self, cart_uuid: str) -> dict:
        ...

    @abstractmethod
    async def update_cart_mapping_payment_intent(self, cart_uuid: str, payment_intent_id: str) -> dict:
        ...

    @abstractmethod
    async def link_payment_intent_to_order(
        self,
        payment_intent_id: str,
        order_id: str,
        order_code: str,
        final_total: int,
        customer_email: Optional[str] = None,
    ) -> bool:
        ...

    @abstractmethod
    async def settle_payment(self, payment_intent_id: str, cart_uuid: Optional[str] = None) -> SettlementResponse:
        """Idempotent on the backend, keyed by payment_intent_id."""
        ...

    @abstractmethod
    async def add_payment_to_order(self, method: str, metadata: dict[str, Any]) -> SettlementResponse:
        """Fallback when settlement-by-intent is unavailable."""
        ...

    @abstractmethod
    async def get_payment_status(self, payment_intent_id: str) -> PaymentStatus:
        ...

    async def create_order(self, snapshot: CartSnapshot, customer_email: Optional[str] = None) -> OrderRef:
        """Convert the local cart into a backend order. Optional capability."""
        raise NotImplementedError(f"{type(self).__name__} cannot create orders")

    async def close(self) -> None:
        """Release network resources."""
