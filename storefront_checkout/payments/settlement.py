"""
Settlement retry engine — finalizes a confirmed authorization with the backend.

Settlement is idempotent on the backend, keyed by the authorization id, so
retrying (or calling concurrently) never double-charges. The client does not
deduplicate concurrent calls.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..backend.base import SettlementResponse, ShopBackend
from ..errors import SettlementUnavailableError
from .classifier import ALREADY_SETTLED, ErrorClassifier
from .models import PaymentError, SettlementResult

logger = logging.getLogger(__name__)

FALLBACK_METHOD = "stripe"


class SettlementRetryEngine:
    """Settles authorizations, retrying only failures classified as retryable."""

    def __init__(
        self,
        backend: ShopBackend,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        fallback_to_add_payment: bool = True,
    ):
        self._backend = backend
        self._classifier = classifier or ErrorClassifier()
        self._sleep = sleep
        self._fallback = fallback_to_add_payment

    async def settle(self, authorization_id: str, cart_uuid: Optional[str] = None) -> SettlementResult:
        """One settlement attempt. Never raises for backend failures."""
        try:
            response = await self._settle_once(authorization_id, cart_uuid)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = self._classifier.classify(e, "SETTLE_PAYMENT")
        else:
            if response.success:
                return SettlementResult(
                    success=True,
                    order_id=response.order_id,
                    order_code=response.order_code,
                    payment_record_id=response.payment_id,
                )
            error = self._classifier.classify(response.error or "settlement failed", "SETTLE_PAYMENT")

        if error.code == ALREADY_SETTLED:
            return await self._resolve_already_settled(authorization_id, error)
        return SettlementResult(success=False, error=error)

    async def _resolve_already_settled(self, authorization_id: str, error: PaymentError) -> SettlementResult:
        """An earlier attempt settled but its answer was lost: report that outcome."""
        try:
            status = await self._backend.get_payment_status(authorization_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Could not confirm earlier settlement of %s: %s", authorization_id, e)
            return SettlementResult(success=False, error=error)

        if status.status != "SETTLED":
            logger.warning("Backend says %s is already settled but reports %s", authorization_id, status.status)
            return SettlementResult(success=False, error=error)
        logger.info("%s was already settled (order %s)", authorization_id, status.order_code)
        return SettlementResult(success=True, order_code=status.order_code)

    async def _settle_once(self, authorization_id: str, cart_uuid: Optional[str]) -> SettlementResponse:
        try:
            return await self._backend.settle_payment(authorization_id, cart_uuid)
        except SettlementUnavailableError:
            if not self._fallback:
                raise
            logger.warning("settleStripePayment unavailable, adding payment %s to the active order", authorization_id)
            return await self._backend.add_payment_to_order(
                FALLBACK_METHOD, {"paymentIntentId": authorization_id}
            )

    async def retry_settlement(
        self,
        authorization_id: str,
        max_attempts: int = 3,
        base_delay_ms: int = 1000,
        cart_uuid: Optional[str] = None,
    ) -> SettlementResult:
        """Settle with up to `max_attempts` tries, `base_delay_ms` apart."""
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        result = SettlementResult(success=False)
        for attempt in range(1, max_attempts + 1):
            logger.info("Settlement attempt %d/%d for %s", attempt, max_attempts, authorization_id)
            result = await self.settle(authorization_id, cart_uuid)
            result.attempts = attempt

            if result.success:
                logger.info("Settled %s on attempt %d (order %s)", authorization_id, attempt, result.order_code)
                return result
            if not result.error.retryable:
                logger.warning(
                    "Settlement of %s failed (not retryable): %s", authorization_id, result.error.debug_detail
                )
                return result

            logger.warning(
                "Settlement attempt %d for %s failed: %s", attempt, authorization_id, result.error.debug_detail
            )
            if attempt < max_attempts:
                await self._sleep(base_delay_ms / 1000)

        logger.error("Settlement of %s gave up after %d attempts", authorization_id, max_attempts)
        return result
