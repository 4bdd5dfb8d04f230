"""Shop backend API abstraction and GraphQL implementation."""
from .base import OrderRef, PaymentIntentCreated, PaymentStatus, SettlementResponse, ShopBackend
from .graphql import GraphQLShopBackend, get_backend

__all__ = [
    "GraphQLShopBackend",
    "OrderRef",
    "PaymentIntentCreated",
    "PaymentStatus",
    "SettlementResponse",
    "ShopBackend",
    "get_backend",
]
