"""Checkout orchestration: one serialized attempt from cart to settled order."""
from .orchestrator import (
    CheckoutHandle,
    CheckoutOrchestrator,
    CheckoutPhase,
    CheckoutRequest,
    CheckoutResult,
    CheckoutView,
    backend_order_creator,
)

__all__ = [
    "CheckoutHandle",
    "CheckoutOrchestrator",
    "CheckoutPhase",
    "CheckoutRequest",
    "CheckoutResult",
    "CheckoutView",
    "backend_order_creator",
]
