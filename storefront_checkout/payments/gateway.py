"""
Payment intent gateway — provisional authorizations and the cart/payment mapping.

The authorization is created before any backend order exists, so the
cart-payment mapping is the bridge that later ties it to the order. Every write
to that mapping is an upsert, serialized per cart.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Optional

from ..backend.base import PaymentStatus, ShopBackend
from ..errors import BackendError, BackendGraphQLError, LinkError, ValidationError
from .models import AuthorizationStatus, CartPaymentMapping, PaymentAuthorization

logger = logging.getLogger(__name__)

DEFAULT_MIN_AMOUNT = 50  # cents


class PaymentIntentGateway:
    """Creates, links and queries provisional payment authorizations."""

    def __init__(self, backend: ShopBackend, min_amount: int = DEFAULT_MIN_AMOUNT):
        self._backend = backend
        self._min_amount = min_amount
        self._authorizations: dict[str, PaymentAuthorization] = {}
        self._active_by_cart: dict[str, str] = {}
        self._mappings: dict[str, CartPaymentMapping] = {}
        self._linked: dict[str, str] = {}  # authorization id -> order id
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Authorizations
    # ------------------------------------------------------------------

    async def create_provisional(self, amount: int, currency: str, cart_uuid: str) -> PaymentAuthorization:
        """Authorize an estimated total. Supersedes the cart's previous authorization."""
        if amount < self._min_amount:
            raise ValidationError(
                f"Amount {amount} is below the minimum of {self._min_amount} {currency.upper()}"
            )

        created = await self._backend.create_payment_intent(amount, currency, cart_uuid)
        authorization = PaymentAuthorization(
            id=created.payment_intent_id,
            client_secret=created.client_secret,
            amount=amount,
            currency=currency,
            cart_uuid=cart_uuid,
        )

        previous_id = self._active_by_cart.get(cart_uuid)
        if previous_id and previous_id != authorization.id:
            previous = self._authorizations.get(previous_id)
            if previous and not previous.status.is_terminal:
                logger.info("Authorization %s superseded by %s for cart %s", previous_id, authorization.id, cart_uuid)

        self._authorizations[authorization.id] = authorization
        self._active_by_cart[cart_uuid] = authorization.id
        logger.info("Provisional authorization %s for %s %s", authorization.id, amount, currency)
        return authorization

    def active_authorization(self, cart_uuid: str) -> Optional[PaymentAuthorization]:
        auth_id = self._active_by_cart.get(cart_uuid)
        return self._authorizations.get(auth_id) if auth_id else None

    def get_authorization(self, authorization_id: str) -> Optional[PaymentAuthorization]:
        return self._authorizations.get(authorization_id)

    def mark_status(self, authorization_id: str, status: AuthorizationStatus) -> None:
        authorization = self._authorizations.get(authorization_id)
        if authorization is None:
            raise KeyError(authorization_id)
        authorization.status = status

    async def payment_status(self, authorization_id: str) -> PaymentStatus:
        return await self._backend.get_payment_status(authorization_id)

    # ------------------------------------------------------------------
    # Cart mapping (upserts only)
    # ------------------------------------------------------------------

    def get_mapping(self, cart_uuid: str) -> Optional[CartPaymentMapping]:
        return self._mappings.get(cart_uuid)

    async def create_mapping(self, cart_uuid: str) -> CartPaymentMapping:
        """Create the cart's mapping if absent; otherwise return the existing one."""
        async with self._locks[cart_uuid]:
            return await self._ensure_mapping(cart_uuid)

    async def update_mapping(self, cart_uuid: str, authorization_id: str) -> CartPaymentMapping:
        """Point the cart's mapping at an authorization, creating it if needed."""
        async with self._locks[cart_uuid]:
            mapping = await self._ensure_mapping(cart_uuid)
            if mapping.payment_authorization_id == authorization_id:
                return mapping
            await self._backend.update_cart_mapping_payment_intent(cart_uuid, authorization_id)
            mapping.payment_authorization_id = authorization_id
            logger.info("Cart mapping %s -> authorization %s", cart_uuid, authorization_id)
            return mapping

    async def _ensure_mapping(self, cart_uuid: str) -> CartPaymentMapping:
        mapping = self._mappings.get(cart_uuid)
        if mapping is not None:
            return mapping
        try:
            await self._backend.create_cart_mapping(cart_uuid)
        except BackendGraphQLError as e:
            if not any("already exists" in m.lower() or "duplicate" in m.lower() for m in e.messages):
                raise
            logger.info("Cart mapping %s already exists on the backend", cart_uuid)
        mapping = CartPaymentMapping(cart_uuid=cart_uuid)
        self._mappings[cart_uuid] = mapping
        return mapping

    # ------------------------------------------------------------------
    # Linking
    # ------------------------------------------------------------------

    async def link(
        self,
        authorization_id: str,
        order_id: str,
        order_code: str,
        final_amount: int,
        customer_email: Optional[str] = None,
    ) -> PaymentAuthorization:
        """Bind the authorization to its order. Any failure raises LinkError."""
        authorization = self._authorizations.get(authorization_id)
        if authorization is None:
            raise LinkError(f"Unknown authorization {authorization_id}")

        linked_order = self._linked.get(authorization_id)
        if linked_order == order_id:
            return authorization
        if linked_order is not None:
            raise LinkError(f"Authorization {authorization_id} is already linked to order {linked_order}")

        try:
            ok = await self._backend.link_payment_intent_to_order(
                authorization_id, order_id, order_code, final_amount, customer_email
            )
        except BackendError as e:
            raise LinkError(f"Linking {authorization_id} to {order_code} failed: {e}") from e
        if not ok:
            raise LinkError(f"Backend refused to link {authorization_id} to {order_code}")

        self._linked[authorization_id] = order_id
        authorization.amount = final_amount
        async with self._locks[authorization.cart_uuid]:
            mapping = self._mappings.setdefault(
                authorization.cart_uuid, CartPaymentMapping(cart_uuid=authorization.cart_uuid)
            )
            mapping.payment_authorization_id = authorization_id
            mapping.order_id = order_id
            mapping.order_code = order_code
        logger.info("Linked authorization %s to order %s (final %s)", authorization_id, order_code, final_amount)
        return authorization
