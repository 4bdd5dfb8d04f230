"""Client-owned cart: models, store and total estimation."""
from .schema import AppliedCoupon, CartItem, CartSession, CartSnapshot
from .shipping import (
    ShippingPolicy,
    TotalEstimate,
    estimate_total,
    flat_rate_shipping,
    percentage_shipping,
    policy_from_name,
)
from .store import LocalCartStore

__all__ = [
    "AppliedCoupon",
    "CartItem",
    "CartSession",
    "CartSnapshot",
    "LocalCartStore",
    "ShippingPolicy",
    "TotalEstimate",
    "estimate_total",
    "flat_rate_shipping",
    "percentage_shipping",
    "policy_from_name",
]
