"""Payment data model: authorizations, mappings, settlement results, errors."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class AuthorizationStatus(str, Enum):
    CREATED = "created"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AuthorizationStatus.SUCCEEDED, AuthorizationStatus.FAILED)


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    PROVIDER = "provider"
    SYSTEM = "system"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class PaymentAuthorization:
    """Provider-side payment intent, created before the order exists."""
    id: str
    client_secret: str
    amount: int
    currency: str
    cart_uuid: str
    status: AuthorizationStatus = AuthorizationStatus.CREATED


@dataclass
class CartPaymentMapping:
    """Durable bridge between a cart, its authorization and (later) its order."""
    cart_uuid: str
    payment_authorization_id: Optional[str] = None
    order_id: Optional[str] = None
    order_code: Optional[str] = None

    @property
    def is_linked(self) -> bool:
        return self.order_id is not None


@dataclass
class PaymentError:
    """Classified failure. `debug_detail` is for logs, never for end users."""
    message: str
    category: ErrorCategory
    severity: Severity
    retryable: bool
    user_action: str
    code: Optional[str] = None
    retry_delay_ms: Optional[int] = None
    debug_detail: Optional[str] = field(default=None, repr=False)

    def to_user_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
            "user_action": self.user_action,
        }


@dataclass
class SettlementResult:
    """Outcome of settling one authorization with the backend."""
    success: bool
    attempts: int = 1
    order_id: Optional[str] = None
    order_code: Optional[str] = None
    payment_record_id: Optional[str] = None
    error: Optional[PaymentError] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "attempts": self.attempts,
            "order_id": self.order_id,
            "order_code": self.order_code,
            "payment_record_id": self.payment_record_id,
            "error": self.error.to_user_dict() if self.error else None,
        }


class PaymentReceipt(BaseModel):
    """Last successful payment, kept briefly for the confirmation view."""
    order_code: str
    order_id: Optional[str] = None
    payment_intent_id: str
    amount: int
    currency: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
