"""Shipping policies and total estimation.

Shipping is a pure function of (subtotal_after_discount, country_code,
free_shipping) so estimating a total never waits on the network.
"""
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from .schema import CartSnapshot

ShippingPolicy = Callable[[int, Optional[str], bool], int]

DOMESTIC_COUNTRIES = ("US", "PR")
FREE_SHIPPING_THRESHOLD = 10000  # $100.00
DOMESTIC_RATE = 800
INTERNATIONAL_RATE = 2000


def flat_rate_shipping(subtotal_after_discount: int, country_code: Optional[str], free_shipping: bool) -> int:
    """The storefront's flat-rate table. No country yet means no shipping line."""
    if free_shipping or not country_code:
        return 0
    if country_code.upper() in DOMESTIC_COUNTRIES:
        return 0 if subtotal_after_discount >= FREE_SHIPPING_THRESHOLD else DOMESTIC_RATE
    return INTERNATIONAL_RATE


def percentage_shipping(rate: float, domestic_countries: Iterable[str] = ("US",)) -> ShippingPolicy:
    """Shipping as a share of the discounted subtotal for non-domestic countries."""
    if rate < 0:
        raise ValueError("rate must be >= 0")
    domestic = {c.upper() for c in domestic_countries}

    def policy(subtotal_after_discount: int, country_code: Optional[str], free_shipping: bool) -> int:
        if free_shipping or not country_code or country_code.upper() in domestic:
            return 0
        return int(round(subtotal_after_discount * rate))

    return policy


def policy_from_name(name: str, rate: float = 0.10) -> ShippingPolicy:
    if name == "flat":
        return flat_rate_shipping
    if name == "percentage":
        return percentage_shipping(rate)
    raise ValueError(f"Unknown shipping policy: {name}")


@dataclass(frozen=True)
class TotalEstimate:
    """Estimated order total used for the provisional authorization."""
    subtotal: int
    discount: int
    shipping: int
    total: int
    currency: str
    country_code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "discount": self.discount,
            "shipping": self.shipping,
            "total": self.total,
            "currency": self.currency,
            "country_code": self.country_code,
        }


def estimate_total(
    snapshot: CartSnapshot,
    country_code: Optional[str],
    policy: ShippingPolicy = flat_rate_shipping,
) -> TotalEstimate:
    after_discount = snapshot.subtotal_after_discount
    free = bool(snapshot.applied_coupon and snapshot.applied_coupon.free_shipping)
    shipping = policy(after_discount, country_code, free)
    return TotalEstimate(
        subtotal=snapshot.subtotal,
        discount=snapshot.discount,
        shipping=shipping,
        total=after_discount + shipping,
        currency=snapshot.currency,
        country_code=country_code,
    )
