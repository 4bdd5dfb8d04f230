"""
Checkout orchestrator — one attempt from cart to settled order.

    validate -> estimate -> authorize -> map -> [create order] -> link
             -> mount form -> [customer enters details] -> confirm
             -> amount check -> settle -> drop paid lines

Attempts are serialized. Every attempt gets a fresh provisional
authorization and a fresh payment element controller; a failed attempt leaves
the cart and the cart/payment mapping untouched so the customer can retry.
"""
import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError as SchemaError

from ..backend.base import OrderRef, ShopBackend
from ..cart.schema import CartSnapshot
from ..cart.shipping import ShippingPolicy, estimate_total, flat_rate_shipping
from ..cart.store import LocalCartStore
from ..errors import AmountMismatchError, ValidationError
from ..payments.classifier import ErrorClassifier
from ..payments.element import PaymentElementController, ReturnContext
from ..payments.gateway import PaymentIntentGateway
from ..payments.models import (
    AuthorizationStatus,
    PaymentAuthorization,
    PaymentError,
    PaymentReceipt,
    SettlementResult,
)
from ..payments.settlement import SettlementRetryEngine
from ..storage import ClientStorage

logger = logging.getLogger(__name__)

RECEIPT_KEY = "last_receipt"
RECEIPT_TTL = timedelta(minutes=30)


class CheckoutPhase(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    AUTHORIZING = "authorizing"
    CREATING_ORDER = "creating_order"
    LINKING = "linking"
    MOUNTING_FORM = "mounting_form"
    AWAITING_DETAILS = "awaiting_payment_details"
    CONFIRMING = "confirming"
    SETTLING = "settling"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class CheckoutRequest:
    country_code: Optional[str] = None
    customer_email: Optional[str] = None
    return_url: str = ""


@dataclass
class CheckoutResult:
    success: bool
    order_code: Optional[str] = None
    order_id: Optional[str] = None
    error: Optional[PaymentError] = None
    settlement: Optional[SettlementResult] = None
    aborted: bool = False
    authorization_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "order_code": self.order_code,
            "order_id": self.order_id,
            "aborted": self.aborted,
            "error": self.error.to_user_dict() if self.error else None,
            "settlement_attempts": self.settlement.attempts if self.settlement else 0,
        }


@dataclass(frozen=True)
class CheckoutView:
    """Read-only projection of the orchestrator's progress."""
    phase: CheckoutPhase = CheckoutPhase.IDLE
    attempt: int = 0
    authorization_id: Optional[str] = None
    order_code: Optional[str] = None
    amount: Optional[int] = None
    error: Optional[PaymentError] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "attempt": self.attempt,
            "order_code": self.order_code,
            "amount": self.amount,
            "error": self.error.to_user_dict() if self.error else None,
        }


OrderCreator = Callable[[CartSnapshot, CheckoutRequest], Awaitable[OrderRef]]
ControllerFactory = Callable[[], PaymentElementController]
StockChecker = Callable[[CartSnapshot], Awaitable[dict[str, int]]]
DetailsGate = Callable[[], Awaitable[None]]
StateListener = Callable[[CheckoutView], None]


def backend_order_creator(backend: ShopBackend) -> OrderCreator:
    """Create the order through the shop backend's active-order mutations."""

    async def create(snapshot: CartSnapshot, request: CheckoutRequest) -> OrderRef:
        return await backend.create_order(snapshot, request.customer_email)

    return create


class CheckoutHandle:
    """A running checkout attempt started with `CheckoutOrchestrator.start()`."""

    def __init__(self, task: "asyncio.Task[CheckoutResult]"):
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> CheckoutResult:
        """Wait for the attempt. Cancelling the waiter does not cancel the attempt."""
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled():
                return CheckoutResult(success=False, aborted=True)
            raise

    async def abort(self) -> CheckoutResult:
        """Cancel the attempt and tear down its payment form. Never raises."""
        if not self._task.done():
            logger.info("Aborting checkout")
            self._task.cancel()
        return await self.result()


class CheckoutOrchestrator:
    """Runs checkout attempts against one cart."""

    def __init__(
        self,
        cart: LocalCartStore,
        gateway: PaymentIntentGateway,
        settlement: SettlementRetryEngine,
        controller_factory: ControllerFactory,
        order_creator: OrderCreator,
        storage: ClientStorage,
        shipping_policy: ShippingPolicy = flat_rate_shipping,
        stock_checker: Optional[StockChecker] = None,
        details_gate: Optional[DetailsGate] = None,
        classifier: Optional[ErrorClassifier] = None,
        max_attempts: int = 3,
        base_delay_ms: int = 1000,
        receipt_ttl: timedelta = RECEIPT_TTL,
    ):
        self._cart = cart
        self._gateway = gateway
        self._settlement = settlement
        self._controller_factory = controller_factory
        self._order_creator = order_creator
        self._storage = storage
        self._shipping_policy = shipping_policy
        self._stock_checker = stock_checker
        self._details_gate = details_gate
        self._classifier = classifier or ErrorClassifier()
        self._max_attempts = max_attempts
        self._base_delay_ms = base_delay_ms
        self._receipt_ttl = receipt_ttl

        self._lock = asyncio.Lock()
        self._controller: Optional[PaymentElementController] = None
        self._handle: Optional[CheckoutHandle] = None
        self._view = CheckoutView()
        self._listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> CheckoutView:
        return self._view

    def on_state_change(self, callback: StateListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _set(self, phase: CheckoutPhase, **changes: Any) -> None:
        self._view = dataclasses.replace(self._view, phase=phase, **changes)
        for callback in list(self._listeners):
            try:
                callback(self._view)
            except Exception as e:
                logger.warning("Checkout listener %r failed: %s", callback, e)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def start(self, request: CheckoutRequest) -> CheckoutHandle:
        """Run an attempt in the background. Returns the in-flight handle if there is one."""
        if self._handle is not None and not self._handle.done:
            return self._handle
        self._handle = CheckoutHandle(asyncio.create_task(self._run_handled(request)))
        return self._handle

    async def _run_handled(self, request: CheckoutRequest) -> CheckoutResult:
        try:
            return await self.checkout(request)
        except asyncio.CancelledError:
            return CheckoutResult(
                success=False, aborted=True, authorization_id=self._view.authorization_id
            )

    async def checkout(self, request: CheckoutRequest) -> CheckoutResult:
        async with self._lock:
            return await self._attempt(request)

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    async def _attempt(self, request: CheckoutRequest) -> CheckoutResult:
        authorization: Optional[PaymentAuthorization] = None
        self._set(
            CheckoutPhase.VALIDATING,
            attempt=self._view.attempt + 1,
            authorization_id=None, order_code=None, amount=None, error=None,
        )
        try:
            snapshot = await self._validated_snapshot()

            estimate = estimate_total(snapshot, request.country_code, self._shipping_policy)
            self._set(CheckoutPhase.AUTHORIZING, amount=estimate.total)
            authorization = await self._gateway.create_provisional(
                estimate.total, snapshot.currency, snapshot.cart_uuid
            )
            await self._gateway.create_mapping(snapshot.cart_uuid)
            await self._gateway.update_mapping(snapshot.cart_uuid, authorization.id)

            self._set(CheckoutPhase.CREATING_ORDER, authorization_id=authorization.id)
            order = await self._order_creator(snapshot, request)

            self._set(CheckoutPhase.LINKING, order_code=order.order_code, amount=order.total)
            await self._gateway.link(
                authorization.id,
                order.order_id,
                order.order_code,
                order.total,
                request.customer_email or order.customer_email,
            )

            self._set(CheckoutPhase.MOUNTING_FORM)
            await self._teardown_controller()
            self._controller = self._controller_factory()
            await self._controller.initialize(authorization.client_secret)
            if self._details_gate is not None:
                self._set(CheckoutPhase.AWAITING_DETAILS)
                await self._details_gate()

            self._set(CheckoutPhase.CONFIRMING)
            confirmation = await self._controller.confirm(ReturnContext(return_url=request.return_url))
            if not confirmation.success:
                self._gateway.mark_status(
                    authorization.id,
                    AuthorizationStatus.REQUIRES_ACTION
                    if confirmation.status == "requires_action"
                    else AuthorizationStatus.FAILED,
                )
                return self._failed(confirmation.error, authorization)
            self._gateway.mark_status(authorization.id, AuthorizationStatus.SUCCEEDED)

            authorized = confirmation.amount if confirmation.amount is not None else authorization.amount
            if authorized != order.total:
                raise AmountMismatchError(authorized, order.total)

            self._set(CheckoutPhase.SETTLING)
            settlement = await self._settlement.retry_settlement(
                authorization.id,
                max_attempts=self._max_attempts,
                base_delay_ms=self._base_delay_ms,
                cart_uuid=snapshot.cart_uuid,
            )
            if not settlement.success:
                return self._failed(settlement.error, authorization, settlement)

            return await self._completed(snapshot, order, authorization, settlement)

        except asyncio.CancelledError:
            logger.info("Checkout attempt %d cancelled", self._view.attempt)
            await self._teardown_controller()
            self._set(CheckoutPhase.ABORTED)
            raise
        except Exception as e:
            return self._failed(self._classifier.classify(e, "CHECKOUT"), authorization)

    async def _validated_snapshot(self) -> CartSnapshot:
        snapshot = self._cart.snapshot()
        if snapshot.is_empty or snapshot.cart_uuid is None:
            raise ValidationError("Cart is empty")
        if self._stock_checker is not None:
            levels = await self._stock_checker(snapshot)
            problems = self._cart.validate_stock(levels)
            self._cart.refresh_stock(levels)
            if problems:
                raise ValidationError("; ".join(problems))
        return snapshot

    async def _completed(
        self,
        snapshot: CartSnapshot,
        order: OrderRef,
        authorization: PaymentAuthorization,
        settlement: SettlementResult,
    ) -> CheckoutResult:
        order_code = settlement.order_code or order.order_code
        order_id = settlement.order_id or order.order_id

        self._cart.remove_paid(snapshot)
        await self._cart.flush()
        await self._teardown_controller()
        self._save_receipt(PaymentReceipt(
            order_code=order_code,
            order_id=order_id,
            payment_intent_id=authorization.id,
            amount=authorization.amount,
            currency=authorization.currency,
        ))

        self._set(CheckoutPhase.COMPLETED, order_code=order_code)
        logger.info("Checkout complete: order %s, %s %s", order_code, authorization.amount, authorization.currency)
        return CheckoutResult(
            success=True,
            order_code=order_code,
            order_id=order_id,
            settlement=settlement,
            authorization_id=authorization.id,
        )

    def _failed(
        self,
        error: PaymentError,
        authorization: Optional[PaymentAuthorization],
        settlement: Optional[SettlementResult] = None,
    ) -> CheckoutResult:
        self._set(CheckoutPhase.FAILED, error=error)
        logger.warning(
            "Checkout attempt %d failed [%s/%s]: %s",
            self._view.attempt, error.category.value, error.code, error.debug_detail,
        )
        return CheckoutResult(
            success=False,
            error=error,
            settlement=settlement,
            authorization_id=authorization.id if authorization else None,
        )

    async def _teardown_controller(self) -> None:
        controller, self._controller = self._controller, None
        if controller is not None:
            await controller.teardown()

    # ------------------------------------------------------------------
    # Receipt
    # ------------------------------------------------------------------

    def _save_receipt(self, receipt: PaymentReceipt) -> None:
        try:
            self._storage.set(RECEIPT_KEY, receipt.model_dump(mode="json"))
        except OSError as e:
            logger.error("Receipt write failed: %s", e)

    def last_receipt(self) -> Optional[PaymentReceipt]:
        """The last successful payment, or None once it is older than the TTL."""
        data = self._storage.get(RECEIPT_KEY)
        if not data:
            return None
        try:
            receipt = PaymentReceipt(**data)
        except SchemaError as e:
            logger.error("Stored receipt is invalid: %s", e)
            self._storage.delete(RECEIPT_KEY)
            return None
        if datetime.now(timezone.utc) - receipt.created_at > self._receipt_ttl:
            self._storage.delete(RECEIPT_KEY)
            return None
        return receipt
