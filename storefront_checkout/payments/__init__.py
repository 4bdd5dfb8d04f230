"""Payment authorization, provider form, settlement and error classification."""
from .classifier import ErrorClassifier, classify, classify_provider_error, classify_status
from .element import ConfirmationResult, ElementState, PaymentElementController, ReturnContext
from .gateway import PaymentIntentGateway
from .models import (
    AuthorizationStatus,
    CartPaymentMapping,
    ErrorCategory,
    PaymentAuthorization,
    PaymentError,
    PaymentReceipt,
    SettlementResult,
    Severity,
)
from .sdk import ProviderSDK, load_provider_sdk, reset_sdk_cache, stripe_loader
from .settlement import SettlementRetryEngine

__all__ = [
    "AuthorizationStatus",
    "CartPaymentMapping",
    "ConfirmationResult",
    "ElementState",
    "ErrorCategory",
    "ErrorClassifier",
    "PaymentAuthorization",
    "PaymentElementController",
    "PaymentError",
    "PaymentIntentGateway",
    "PaymentReceipt",
    "ProviderSDK",
    "ReturnContext",
    "SettlementResult",
    "SettlementRetryEngine",
    "Severity",
    "classify",
    "classify_provider_error",
    "classify_status",
    "load_provider_sdk",
    "reset_sdk_cache",
    "stripe_loader",
]
