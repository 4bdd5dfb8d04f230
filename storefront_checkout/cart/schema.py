"""Pydantic models for the local cart."""
from pydantic import BaseModel, ConfigDict, Field


class CartItem(BaseModel):
    """One cart line. Prices are integer minor units (cents)."""
    model_config = ConfigDict(frozen=True)

    variant_id: str
    quantity: int = Field(ge=1)
    unit_price: int = Field(ge=0)
    stock_snapshot: int = Field(ge=0)  # stock level seen when the line was added
    name: str = ""

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class AppliedCoupon(BaseModel):
    """Coupon validated by the backend and applied to the local cart."""
    model_config = ConfigDict(frozen=True)

    code: str
    discount_amount: int = Field(default=0, ge=0)
    free_shipping: bool = False


class CartSession(BaseModel):
    """Persisted cart state. `cart_uuid` never changes during the session."""
    cart_uuid: str
    items: list[CartItem] = Field(default_factory=list)
    applied_coupon: AppliedCoupon | None = None
    currency: str = "usd"

    @property
    def subtotal(self) -> int:
        return sum(item.line_total for item in self.items)


class CartSnapshot(BaseModel):
    """Immutable copy of the cart handed to payment calculation and the UI."""
    model_config = ConfigDict(frozen=True)

    cart_uuid: str | None
    items: tuple[CartItem, ...] = ()
    subtotal: int = 0
    applied_coupon: AppliedCoupon | None = None
    currency: str = "usd"

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def discount(self) -> int:
        if not self.applied_coupon:
            return 0
        return min(self.applied_coupon.discount_amount, self.subtotal)

    @property
    def subtotal_after_discount(self) -> int:
        return self.subtotal - self.discount

    def to_dict(self) -> dict:
        return {
            "cart_uuid": self.cart_uuid,
            "items": [
                {
                    "variant_id": i.variant_id,
                    "name": i.name,
                    "quantity": i.quantity,
                    "unit_price": i.unit_price,
                    "line_total": i.line_total,
                }
                for i in self.items
            ],
            "total_quantity": self.total_quantity,
            "subtotal": self.subtotal,
            "discount": self.discount,
            "coupon": self.applied_coupon.code if self.applied_coupon else None,
            "currency": self.currency,
        }
