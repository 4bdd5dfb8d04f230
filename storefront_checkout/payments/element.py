"""
Payment element controller — lifecycle of the provider payment form.

    Uninitialized -> Loading -> Ready -> Submitting -> Confirmed | Failed

One controller per checkout attempt. A controller that reached Confirmed or
Failed is never reused; the provider element keeps internal state that a new
attempt must not inherit. `teardown()` unmounts the element before its mount
point is reused or removed.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..errors import InvalidStateError, PaymentFailed
from .classifier import ErrorClassifier, classify_provider_error
from .models import PaymentError
from .sdk import ElementsGroup, PaymentElementHandle, ProviderSDK

logger = logging.getLogger(__name__)


class ElementState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class ReturnContext:
    """Where the provider sends the customer after an off-page step (3DS, wallets)."""
    return_url: str
    params: dict[str, Any] = field(default_factory=dict)

    def confirm_params(self) -> dict[str, Any]:
        return {"return_url": self.return_url, **self.params}


@dataclass
class ConfirmationResult:
    success: bool
    status: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount: Optional[int] = None
    error: Optional[PaymentError] = None


class PaymentElementController:
    """Mounts, validates and confirms one provider payment form."""

    def __init__(
        self,
        sdk_provider: Callable[[], Awaitable[ProviderSDK]],
        mount_selector: str,
        classifier: Optional[ErrorClassifier] = None,
        appearance: Optional[dict[str, Any]] = None,
        element_options: Optional[dict[str, Any]] = None,
    ):
        self._sdk_provider = sdk_provider
        self._mount_selector = mount_selector
        self._classifier = classifier or ErrorClassifier()
        self._appearance = appearance
        self._element_options = element_options or {"layout": "tabs"}

        self._state = ElementState.UNINITIALIZED
        self._error: Optional[PaymentError] = None
        self._sdk: Optional[ProviderSDK] = None
        self._elements: Optional[ElementsGroup] = None
        self._element: Optional[PaymentElementHandle] = None
        self._client_secret: Optional[str] = None
        self._torn_down = False

    @property
    def state(self) -> ElementState:
        return self._state

    @property
    def error(self) -> Optional[PaymentError]:
        return self._error

    @property
    def is_mounted(self) -> bool:
        return self._element is not None

    def _require(self, expected: ElementState, operation: str) -> None:
        if self._torn_down:
            raise InvalidStateError(f"Cannot {operation}: controller was torn down")
        if self._state != expected:
            raise InvalidStateError(
                f"Cannot {operation} in state {self._state.value} (expected {expected.value})"
            )

    def _fail(self, error: PaymentError) -> ConfirmationResult:
        self._state = ElementState.FAILED
        self._error = error
        logger.warning("Payment element failed [%s/%s]: %s", error.category.value, error.code, error.debug_detail)
        return ConfirmationResult(success=False, error=error)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, client_secret: str) -> None:
        """Load the SDK (cached), create the payment element and mount it."""
        self._require(ElementState.UNINITIALIZED, "initialize")
        self._state = ElementState.LOADING
        self._client_secret = client_secret

        try:
            self._sdk = await self._sdk_provider()
            self._elements = await self._sdk.elements(client_secret, self._appearance)
            self._element = await self._elements.create("payment", self._element_options)
            await self._element.mount(self._mount_selector)
        except asyncio.CancelledError:
            logger.info("Payment element initialization cancelled")
            await self.teardown()
            raise
        except Exception as e:
            error = self._classifier.classify(e, "INITIALIZE_PAYMENT_ELEMENT")
            self._fail(error)
            await self.teardown()
            raise PaymentFailed(error) from e

        if self._torn_down:
            # teardown() ran while we were loading; release what we mounted.
            await self._release_element()
            raise InvalidStateError("Controller was torn down during initialization")

        self._state = ElementState.READY
        logger.info("Payment element mounted at %s", self._mount_selector)

    async def confirm(self, return_context: ReturnContext) -> ConfirmationResult:
        """Validate the form, then confirm with the provider. Only `succeeded` is success."""
        self._require(ElementState.READY, "confirm")
        self._state = ElementState.SUBMITTING

        try:
            submit_error = await self._elements.submit()
            if submit_error:
                # Form-level validation failed: the provider is never asked to confirm.
                return self._fail(classify_provider_error(
                    "validation_error", submit_error.get("code"), submit_error.get("message")
                ))

            result = await self._sdk.confirm_payment(
                self._elements,
                self._client_secret,
                return_context.confirm_params(),
                redirect="if_required",
            )
        except asyncio.CancelledError:
            logger.info("Payment confirmation cancelled")
            raise
        except Exception as e:
            return self._fail(self._classifier.classify(e, "CONFIRM_PAYMENT"))

        if result.get("error"):
            return self._fail(self._classifier.classify(result["error"], "CONFIRM_PAYMENT"))

        intent = result.get("paymentIntent") or {}
        status = intent.get("status")
        if status == "succeeded":
            self._state = ElementState.CONFIRMED
            logger.info("Payment %s confirmed", intent.get("id"))
            return ConfirmationResult(
                success=True,
                status=status,
                payment_intent_id=intent.get("id"),
                amount=intent.get("amount"),
            )

        failed = self._fail(self._classifier.classify_status(status))
        failed.status = status
        failed.payment_intent_id = intent.get("id")
        failed.amount = intent.get("amount")
        return failed

    async def teardown(self) -> None:
        """Unmount and drop provider handles. Safe to call more than once."""
        self._torn_down = True
        await self._release_element()
        self._elements = None
        self._sdk = None

    async def _release_element(self) -> None:
        element, self._element = self._element, None
        if element is None:
            return
        try:
            await element.unmount()
            logger.info("Payment element unmounted from %s", self._mount_selector)
        except Exception as e:
            logger.warning("Payment element unmount failed: %s", e)
