"""GraphQL shop API backend — httpx client for the storefront's shop-api."""
import logging
from typing import Any, Optional

import httpx

from ..cart.schema import CartSnapshot
from ..config import CheckoutSettings
from ..errors import (
    BackendGraphQLError,
    BackendNetworkError,
    BackendRequestError,
    BackendServerError,
    SettlementUnavailableError,
)
from .base import OrderRef, PaymentIntentCreated, PaymentStatus, SettlementResponse, ShopBackend

logger = logging.getLogger(__name__)

CREATE_PAYMENT_INTENT = """
mutation CreatePreOrderPaymentIntent($amount: Int, $currency: String, $cartUuid: String) {
  createPreOrderPaymentIntent(amount: $amount, currency: $currency, cartUuid: $cartUuid)
}
"""

CREATE_CART_MAPPING = """
mutation CreateCartMapping($cartUuid: String!) {
  createCartMapping(cartUuid: $cartUuid) { id cartUuid createdAt }
}
"""

UPDATE_CART_MAPPING = """
mutation UpdateCartMappingPaymentIntent($cartUuid: String!, $paymentIntentId: String!) {
  updateCartMappingPaymentIntent(cartUuid: $cartUuid, paymentIntentId: $paymentIntentId) {
    id cartUuid paymentIntentId
  }
}
"""

LINK_PAYMENT_INTENT = """
mutation LinkPaymentIntentToOrder(
  $paymentIntentId: String!, $orderId: String!, $orderCode: String!,
  $finalTotal: Int!, $customerEmail: String
) {
  linkPaymentIntentToOrder(
    paymentIntentId: $paymentIntentId, orderId: $orderId, orderCode: $orderCode,
    finalTotal: $finalTotal, customerEmail: $customerEmail
  )
}
"""

SETTLE_PAYMENT = """
mutation SettleStripePayment($paymentIntentId: String!, $cartUuid: String) {
  settleStripePayment(paymentIntentId: $paymentIntentId, cartUuid: $cartUuid) {
    success orderId orderCode paymentId error
  }
}
"""

ADD_PAYMENT_TO_ORDER = """
mutation AddPaymentToOrder($input: PaymentInput!) {
  addPaymentToOrder(input: $input) {
    __typename
    ... on Order { id code payments { id } }
    ... on ErrorResult { errorCode message }
  }
}
"""

GET_PAYMENT_STATUS = """
query GetPaymentStatus($paymentIntentId: String!) {
  getPaymentStatus(paymentIntentId: $paymentIntentId) {
    status paymentIntentId orderCode amount
  }
}
"""

ADD_ITEMS_TO_ORDER = """
mutation AddItemsToOrder($inputs: [AddItemInput!]!) {
  addItemsToOrder(inputs: $inputs) {
    order { id code totalWithTax }
    errorResults { errorCode message }
  }
}
"""

APPLY_COUPON_CODE = """
mutation ApplyCouponCode($couponCode: String!) {
  applyCouponCode(couponCode: $couponCode) {
    __typename
    ... on Order { id code totalWithTax }
    ... on ErrorResult { errorCode message }
  }
}
"""

SET_CUSTOMER = """
mutation SetCustomerForOrder($input: CreateCustomerInput!) {
  setCustomerForOrder(input: $input) {
    __typename
    ... on Order { id code totalWithTax }
    ... on ErrorResult { errorCode message }
  }
}
"""


def get_backend(settings: CheckoutSettings) -> "GraphQLShopBackend":
    """Factory function to create the GraphQL backend from settings."""
    if not settings.shop_api_url:
        raise ValueError("SHOP_API_URL not set")
    return GraphQLShopBackend(endpoint=settings.shop_api_url, auth_token=settings.shop_api_token or None)


def extract_payment_intent_id(client_secret: str) -> str:
    """`pi_123_secret_abc` -> `pi_123`."""
    return client_secret.split("_secret_")[0]


class GraphQLShopBackend(ShopBackend):
    """Shop backend reached over GraphQL (POST application/json)."""

    def __init__(
        self,
        endpoint: str,
        auth_token: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._endpoint = endpoint
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers

    async def _request(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """POST a GraphQL document and return its `data` object."""
        try:
            response = await self._client.post(
                self._endpoint,
                json={"query": query, "variables": variables or {}},
                headers=self._headers,
            )
        except httpx.TransportError as e:
            raise BackendNetworkError(f"{type(e).__name__}: {e}") from e

        if response.status_code >= 500:
            logger.error("GraphQL request failed: HTTP %s - %s", response.status_code, response.text[:500])
            raise BackendServerError(response.status_code, response.reason_phrase)
        if response.status_code >= 400:
            logger.error("GraphQL request rejected: HTTP %s - %s", response.status_code, response.text[:500])
            raise BackendRequestError(response.status_code, response.reason_phrase)

        body = response.json()
        if body.get("errors"):
            messages = [e.get("message", "unknown error") for e in body["errors"]]
            logger.error("GraphQL errors: %s", messages)
            raise BackendGraphQLError(messages)
        return body.get("data") or {}

    # ------------------------------------------------------------------
    # Payment intent & cart mapping
    # ------------------------------------------------------------------

    async def create_payment_intent(self, amount: int, currency: str, cart_uuid: str) -> PaymentIntentCreated:
        logger.info("Creating PaymentIntent for %s %s, cart %s", amount, currency, cart_uuid)
        data = await self._request(
            CREATE_PAYMENT_INTENT,
            {"amount": int(amount), "currency": currency, "cartUuid": cart_uuid},
        )
        client_secret = data["createPreOrderPaymentIntent"]
        return PaymentIntentCreated(
            client_secret=client_secret,
            payment_intent_id=extract_payment_intent_id(client_secret),
        )

    async def create_cart_mapping(self, cart_uuid: str) -> dict:
        data = await self._request(CREATE_CART_MAPPING, {"cartUuid": cart_uuid})
        return data["createCartMapping"] or {}

    async def update_cart_mapping_payment_intent(self, cart_uuid: str, payment_intent_id: str) -> dict:
        data = await self._request(
            UPDATE_CART_MAPPING,
            {"cartUuid": cart_uuid, "paymentIntentId": payment_intent_id},
        )
        return data["updateCartMappingPaymentIntent"] or {}

    async def link_payment_intent_to_order(
        self,
        payment_intent_id: str,
        order_id: str,
        order_code: str,
        final_total: int,
        customer_email: Optional[str] = None,
    ) -> bool:
        logger.info("Linking PaymentIntent %s to order %s", payment_intent_id, order_code)
        data = await self._request(
            LINK_PAYMENT_INTENT,
            {
                "paymentIntentId": payment_intent_id,
                "orderId": order_id,
                "orderCode": order_code,
                "finalTotal": int(final_total),
                "customerEmail": customer_email,
            },
        )
        return bool(data.get("linkPaymentIntentToOrder"))

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def settle_payment(self, payment_intent_id: str, cart_uuid: Optional[str] = None) -> SettlementResponse:
        try:
            data = await self._request(
                SETTLE_PAYMENT,
                {"paymentIntentId": payment_intent_id, "cartUuid": cart_uuid},
            )
        except BackendGraphQLError as e:
            if any("settleStripePayment" in m and "Cannot query field" in m for m in e.messages):
                raise SettlementUnavailableError(str(e)) from e
            raise

        result = data.get("settleStripePayment") or {}
        return SettlementResponse(
            success=bool(result.get("success")),
            order_id=result.get("orderId"),
            order_code=result.get("orderCode"),
            payment_id=result.get("paymentId"),
            error=result.get("error"),
        )

    async def add_payment_to_order(self, method: str, metadata: dict[str, Any]) -> SettlementResponse:
        data = await self._request(ADD_PAYMENT_TO_ORDER, {"input": {"method": method, "metadata": metadata}})
        result = data.get("addPaymentToOrder") or {}
        if result.get("__typename") == "Order":
            payments = result.get("payments") or []
            return SettlementResponse(
                success=True,
                order_id=result.get("id"),
                order_code=result.get("code"),
                payment_id=payments[-1]["id"] if payments else None,
            )
        return SettlementResponse(success=False, error=result.get("message") or "Payment could not be added")

    async def get_payment_status(self, payment_intent_id: str) -> PaymentStatus:
        data = await self._request(GET_PAYMENT_STATUS, {"paymentIntentId": payment_intent_id})
        result = data.get("getPaymentStatus") or {}
        return PaymentStatus(
            status=result.get("status", "NOT_FOUND"),
            payment_intent_id=result.get("paymentIntentId", payment_intent_id),
            order_code=result.get("orderCode"),
            amount=result.get("amount"),
        )

    # ------------------------------------------------------------------
    # Order creation (external step of the checkout)
    # ------------------------------------------------------------------

    async def create_order(self, snapshot: CartSnapshot, customer_email: Optional[str] = None) -> OrderRef:
        inputs = [{"productVariantId": i.variant_id, "quantity": i.quantity} for i in snapshot.items]
        data = await self._request(ADD_ITEMS_TO_ORDER, {"inputs": inputs})
        result = data.get("addItemsToOrder") or {}
        errors = result.get("errorResults") or []
        if errors:
            raise BackendRequestError(409, "; ".join(e.get("message", "") for e in errors))
        order = result.get("order") or {}

        if snapshot.applied_coupon:
            applied = (await self._request(
                APPLY_COUPON_CODE, {"couponCode": snapshot.applied_coupon.code}
            )).get("applyCouponCode") or {}
            if applied.get("__typename") != "Order":
                raise BackendRequestError(409, applied.get("message") or "Coupon rejected")
            order = applied

        if customer_email:
            customer = (await self._request(
                SET_CUSTOMER, {"input": {"emailAddress": customer_email, "firstName": "", "lastName": ""}}
            )).get("setCustomerForOrder") or {}
            if customer.get("__typename") == "Order":
                order = customer

        logger.info("Created order %s (total %s)", order.get("code"), order.get("totalWithTax"))
        return OrderRef(
            order_id=str(order["id"]),
            order_code=order["code"],
            total=int(order["totalWithTax"]),
            customer_email=customer_email,
            raw=order,
        )

    async def close(self) -> None:
        await self._client.aclose()
