"""
Storefront Checkout MCP Server.

Exposes the client-owned cart and the checkout pipeline over stdio for
Claude Code, Codex CLI, and Gemini CLI. Card details are typed by the customer
into the provider form in the headed browser window; tools never see them.
Purchases go through a human-in-the-loop confirmation code.
"""
import asyncio
import json
import logging
import os
import secrets
import time
from datetime import datetime
from pathlib import Path

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from .backend import ShopBackend, get_backend
from .browser import BrowserManager
from .cart import AppliedCoupon, CartItem, LocalCartStore, estimate_total, policy_from_name
from .checkout import (
    CheckoutHandle,
    CheckoutOrchestrator,
    CheckoutPhase,
    CheckoutRequest,
    backend_order_creator,
)
from .config import CheckoutSettings
from .errors import StockError
from .output_sanitizer import redact_email, sanitize_output
from .payments import (
    PaymentElementController,
    PaymentIntentGateway,
    SettlementRetryEngine,
    load_provider_sdk,
    stripe_loader,
)
from .storage import ClientStorage

logger = logging.getLogger(__name__)

# Debug log — records every tool call and response for session review
_DEBUG_LOG_DIR = Path(os.environ.get(
    "CHECKOUT_DEBUG_DIR",
    os.path.expanduser("~/.config/storefront-checkout/debug"),
))


def _debug_log(tool_name: str, args: dict, result: str) -> None:
    """Append a tool call entry to the debug log file."""
    try:
        _DEBUG_LOG_DIR.mkdir(parents=True, exist_ok=True)
        log_file = _DEBUG_LOG_DIR / f"session_{datetime.now().strftime('%Y-%m-%d')}.log"
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]

        entry = (
            f"\n{'='*80}\n"
            f"[{timestamp}] TOOL: {tool_name}\n"
            f"ARGS: {sanitize_output(json.dumps(args, indent=2))}\n"
            f"RESPONSE:\n{result}\n"
        )

        with open(log_file, "a") as f:
            f.write(entry)
    except Exception as e:
        logger.debug("Debug log write failed: %s", e)

server = Server("storefront-checkout")

# Lazy-initialized singletons
_settings: CheckoutSettings | None = None
_storage: ClientStorage | None = None
_cart: LocalCartStore | None = None
_backend: ShopBackend | None = None
_browser_manager: BrowserManager | None = None
_gateway: PaymentIntentGateway | None = None
_orchestrator: CheckoutOrchestrator | None = None

# Checkout in flight, and the signal that the customer finished typing card details
_checkout_handle: CheckoutHandle | None = None
_details_entered: asyncio.Event | None = None

# Confirmation gate state (in-memory, single-process)
_pending_confirmations: dict[str, dict] = {}

# Confirmation code TTL
_CONFIRMATION_TTL = 300  # 5 minutes


def _get_settings() -> CheckoutSettings:
    global _settings
    if _settings is None:
        _settings = CheckoutSettings.from_env()
    return _settings


def _get_storage() -> ClientStorage:
    global _storage
    if _storage is None:
        _storage = ClientStorage(_get_settings().storage_dir)
    return _storage


def _get_cart() -> LocalCartStore:
    global _cart
    if _cart is None:
        settings = _get_settings()
        _cart = LocalCartStore(_get_storage(), currency=settings.currency, debounce_ms=settings.cart_debounce_ms)
        _cart.load()
    return _cart


def _get_backend() -> ShopBackend:
    global _backend
    if _backend is None:
        _backend = get_backend(_get_settings())
    return _backend


def _get_browser_manager() -> BrowserManager:
    global _browser_manager
    if _browser_manager is None:
        _browser_manager = BrowserManager(headless=_get_settings().headless)
    return _browser_manager


def _get_gateway() -> PaymentIntentGateway:
    global _gateway
    if _gateway is None:
        _gateway = PaymentIntentGateway(_get_backend(), min_amount=_get_settings().min_amount)
    return _gateway


def _get_details_event() -> asyncio.Event:
    global _details_entered
    if _details_entered is None:
        _details_entered = asyncio.Event()
    return _details_entered


async def _wait_for_payment_details() -> None:
    event = _get_details_event()
    await event.wait()
    event.clear()


def _new_payment_controller() -> PaymentElementController:
    settings = _get_settings()
    loader = stripe_loader(_get_browser_manager(), settings.checkout_page_url)

    async def sdk_provider():
        return await load_provider_sdk(settings.require_publishable_key(), loader)

    return PaymentElementController(sdk_provider, settings.mount_selector)


def _get_orchestrator() -> CheckoutOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        settings = _get_settings()
        backend = _get_backend()
        _orchestrator = CheckoutOrchestrator(
            cart=_get_cart(),
            gateway=_get_gateway(),
            settlement=SettlementRetryEngine(backend),
            controller_factory=_new_payment_controller,
            order_creator=backend_order_creator(backend),
            storage=_get_storage(),
            shipping_policy=policy_from_name(settings.shipping_policy, settings.shipping_rate),
            details_gate=_wait_for_payment_details,
            max_attempts=settings.settlement_max_attempts,
            base_delay_ms=settings.settlement_base_delay_ms,
        )
    return _orchestrator


def _generate_confirmation_code() -> str:
    """Generate a 6-character alphanumeric confirmation code."""
    return secrets.token_hex(3).upper()


def _cleanup_expired_confirmations() -> None:
    """Remove expired confirmation codes."""
    now = time.time()
    expired = [k for k, v in _pending_confirmations.items() if now - v["created_at"] > _CONFIRMATION_TTL]
    for k in expired:
        del _pending_confirmations[k]


def _format_money(amount: int, currency: str) -> str:
    return f"{amount / 100:.2f} {currency.upper()}"


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

@server.list_tools()
async def list_tools() -> list[Tool]:
    return [
        Tool(
            name="view_cart",
            description="Show the local cart: lines, quantities, subtotal, coupon and any stock problems.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="add_to_cart",
            description="Add a product variant to the cart. Adds to the quantity if the variant is already there.",
            inputSchema={
                "type": "object",
                "properties": {
                    "variant_id": {"type": "string", "description": "Product variant ID"},
                    "quantity": {"type": "integer", "description": "Number of items to add", "default": 1},
                    "unit_price": {"type": "integer", "description": "Unit price in cents"},
                    "stock_level": {"type": "integer", "description": "Units currently in stock"},
                    "name": {"type": "string", "description": "Display name"},
                },
                "required": ["variant_id", "unit_price", "stock_level"],
            },
        ),
        Tool(
            name="update_cart_quantity",
            description="Set the quantity of a cart line. A quantity of 0 removes it.",
            inputSchema={
                "type": "object",
                "properties": {
                    "variant_id": {"type": "string", "description": "Product variant ID"},
                    "quantity": {"type": "integer", "description": "New quantity"},
                },
                "required": ["variant_id", "quantity"],
            },
        ),
        Tool(
            name="remove_from_cart",
            description="Remove a line from the cart.",
            inputSchema={
                "type": "object",
                "properties": {
                    "variant_id": {"type": "string", "description": "Product variant ID"},
                },
                "required": ["variant_id"],
            },
        ),
        Tool(
            name="apply_coupon",
            description="Apply a coupon to the cart, or remove the current one with remove=true.",
            inputSchema={
                "type": "object",
                "properties": {
                    "code": {"type": "string", "description": "Coupon code"},
                    "discount_amount": {"type": "integer", "description": "Discount in cents", "default": 0},
                    "free_shipping": {"type": "boolean", "description": "Coupon grants free shipping", "default": False},
                    "remove": {"type": "boolean", "description": "Remove the applied coupon", "default": False},
                },
            },
        ),
        Tool(
            name="clear_cart",
            description="Empty the cart and start a new cart session.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="estimate_total",
            description="Estimate the order total (subtotal, discount, shipping) for a destination country.",
            inputSchema={
                "type": "object",
                "properties": {
                    "country_code": {"type": "string", "description": "ISO country code, e.g. 'US' or 'DE'"},
                },
            },
        ),
        Tool(
            name="preview_checkout",
            description=(
                "Preview the order and get a confirmation code. "
                "Show the preview to the user and ask them for the code before purchasing."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "country_code": {"type": "string", "description": "Shipping country (ISO code)"},
                    "customer_email": {"type": "string", "description": "Email for the order confirmation"},
                    "return_url": {
                        "type": "string",
                        "description": "Where to return after bank verification (defaults to the checkout page)",
                    },
                },
                "required": ["country_code"],
            },
        ),
        Tool(
            name="confirm_purchase",
            description=(
                "Start the purchase with the user's confirmation code. Opens the payment form in the "
                "browser; the user types their card details there, then call submit_payment."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "confirmation_code": {"type": "string", "description": "Code from preview_checkout"},
                },
                "required": ["confirmation_code"],
            },
        ),
        Tool(
            name="submit_payment",
            description="Submit the payment form once the user has entered their card details in the browser.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="abort_checkout",
            description="Cancel the checkout in progress and close the payment form.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="checkout_status",
            description="Show progress of the current checkout and the last receipt.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="payment_status",
            description="Ask the shop backend for the settlement status of a payment.",
            inputSchema={
                "type": "object",
                "properties": {
                    "payment_intent_id": {
                        "type": "string",
                        "description": "Payment ID (defaults to the last receipt's payment)",
                    },
                },
            },
        ),
    ]


# ---------------------------------------------------------------------------
# Tool dispatch
# ---------------------------------------------------------------------------

@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    try:
        if name == "view_cart":
            result = await _handle_view_cart(arguments)
        elif name == "add_to_cart":
            result = await _handle_add_to_cart(arguments)
        elif name == "update_cart_quantity":
            result = await _handle_update_cart_quantity(arguments)
        elif name == "remove_from_cart":
            result = await _handle_remove_from_cart(arguments)
        elif name == "apply_coupon":
            result = await _handle_apply_coupon(arguments)
        elif name == "clear_cart":
            result = await _handle_clear_cart(arguments)
        elif name == "estimate_total":
            result = await _handle_estimate_total(arguments)
        elif name == "preview_checkout":
            result = await _handle_preview_checkout(arguments)
        elif name == "confirm_purchase":
            result = await _handle_confirm_purchase(arguments)
        elif name == "submit_payment":
            result = await _handle_submit_payment(arguments)
        elif name == "abort_checkout":
            result = await _handle_abort_checkout(arguments)
        elif name == "checkout_status":
            result = await _handle_checkout_status(arguments)
        elif name == "payment_status":
            result = await _handle_payment_status(arguments)
        else:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]

        if isinstance(result, str):
            text = result
        else:
            text = json.dumps(result, indent=2)
        sanitized = sanitize_output(text)

        _debug_log(name, arguments, sanitized)
        return [TextContent(type="text", text=sanitized)]

    except Exception as e:
        logger.exception("Tool %s failed", name)
        error_text = sanitize_output(f"Error: {str(e)}")
        _debug_log(name, arguments, error_text)
        return [TextContent(type="text", text=error_text)]


# ---------------------------------------------------------------------------
# Cart tools
# ---------------------------------------------------------------------------

async def _handle_view_cart(args: dict) -> dict:
    cart = _get_cart()
    snapshot = cart.snapshot()
    if snapshot.is_empty:
        return {"status": "empty", "message": "Your cart is empty."}
    return {
        "status": "ok",
        "cart": snapshot.to_dict(),
        "subtotal": _format_money(snapshot.subtotal, snapshot.currency),
        "stock_problems": cart.validate_stock(),
    }


async def _handle_add_to_cart(args: dict) -> dict:
    cart = _get_cart()
    item = CartItem(
        variant_id=args["variant_id"],
        quantity=args.get("quantity", 1),
        unit_price=args["unit_price"],
        stock_snapshot=args["stock_level"],
        name=args.get("name", ""),
    )
    try:
        snapshot = cart.add_item(item)
    except StockError as e:
        return {"status": "error", "message": str(e), "in_cart": cart.item_quantity(item.variant_id)}
    return {"status": "added", "cart": snapshot.to_dict()}


async def _handle_update_cart_quantity(args: dict) -> dict:
    cart = _get_cart()
    try:
        snapshot = cart.update_quantity(args["variant_id"], args["quantity"])
    except KeyError:
        return {"status": "error", "message": f"{args['variant_id']} is not in the cart."}
    except StockError as e:
        return {"status": "error", "message": str(e)}
    return {"status": "updated", "cart": snapshot.to_dict()}


async def _handle_remove_from_cart(args: dict) -> dict:
    snapshot = _get_cart().remove_item(args["variant_id"])
    return {"status": "removed", "cart": snapshot.to_dict()}


async def _handle_apply_coupon(args: dict) -> dict:
    cart = _get_cart()
    if args.get("remove"):
        return {"status": "removed", "cart": cart.remove_coupon().to_dict()}
    code = args.get("code")
    if not code:
        return {"status": "error", "message": "apply_coupon requires 'code' (or remove=true)."}
    snapshot = cart.apply_coupon(AppliedCoupon(
        code=code,
        discount_amount=args.get("discount_amount", 0),
        free_shipping=args.get("free_shipping", False),
    ))
    return {"status": "applied", "cart": snapshot.to_dict()}


async def _handle_clear_cart(args: dict) -> dict:
    cart = _get_cart()
    cart.clear()
    await cart.flush()
    return {"status": "cleared"}


async def _handle_estimate_total(args: dict) -> dict:
    settings = _get_settings()
    snapshot = _get_cart().snapshot()
    if snapshot.is_empty:
        return {"status": "empty", "message": "Your cart is empty."}
    policy = policy_from_name(settings.shipping_policy, settings.shipping_rate)
    estimate = estimate_total(snapshot, args.get("country_code"), policy)
    return {
        "status": "ok",
        "estimate": estimate.to_dict(),
        "total": _format_money(estimate.total, estimate.currency),
    }


# ---------------------------------------------------------------------------
# Checkout tools
# ---------------------------------------------------------------------------

async def _handle_preview_checkout(args: dict) -> dict:
    """Preview the order and generate a confirmation code."""
    settings = _get_settings()
    cart = _get_cart()
    snapshot = cart.snapshot()
    if snapshot.is_empty:
        return {"status": "error", "message": "Your cart is empty."}

    problems = cart.validate_stock()
    if problems:
        return {"status": "error", "message": "Fix stock problems before checkout.", "stock_problems": problems}

    _cleanup_expired_confirmations()

    country_code = args["country_code"].upper()
    estimate = estimate_total(
        snapshot, country_code, policy_from_name(settings.shipping_policy, settings.shipping_rate)
    )
    code = _generate_confirmation_code()
    _pending_confirmations[code] = {
        "created_at": time.time(),
        "total": estimate.total,
        "request": CheckoutRequest(
            country_code=country_code,
            customer_email=args.get("customer_email"),
            return_url=args.get("return_url") or settings.checkout_page_url,
        ),
    }

    email = args.get("customer_email")
    return {
        "status": "preview",
        "confirmation_code": code,
        "message": (
            f"Review your order below. To complete the purchase, "
            f"provide the confirmation code: {code}"
        ),
        "items": [
            {"name": i.name or i.variant_id, "quantity": i.quantity, "line_total": i.line_total}
            for i in snapshot.items
        ],
        "estimate": estimate.to_dict(),
        "total": _format_money(estimate.total, estimate.currency),
        "email": redact_email(email) if email else None,
    }


async def _handle_confirm_purchase(args: dict) -> dict:
    """Start the checkout if the confirmation code is valid."""
    global _checkout_handle
    code = args["confirmation_code"].strip().upper()

    if _checkout_handle is not None and not _checkout_handle.done:
        return {
            "status": "busy",
            "message": "A checkout is already in progress. Call submit_payment or abort_checkout.",
        }

    _cleanup_expired_confirmations()

    if code not in _pending_confirmations:
        return {
            "status": "rejected",
            "message": "Invalid or expired confirmation code. Run preview_checkout again.",
        }

    confirmation = _pending_confirmations.pop(code)
    request: CheckoutRequest = confirmation["request"]

    settings = _get_settings()
    current = estimate_total(
        _get_cart().snapshot(),
        request.country_code,
        policy_from_name(settings.shipping_policy, settings.shipping_rate),
    )
    if current.total != confirmation["total"]:
        return {
            "status": "rejected",
            "message": "The cart changed since the preview. Run preview_checkout again.",
        }

    orchestrator = _get_orchestrator()
    _get_details_event().clear()

    reached = asyncio.Event()

    def on_change(view) -> None:
        if view.phase in (CheckoutPhase.AWAITING_DETAILS, CheckoutPhase.FAILED, CheckoutPhase.COMPLETED):
            reached.set()

    unsubscribe = orchestrator.on_state_change(on_change)
    try:
        _checkout_handle = orchestrator.start(request)
        waiter = asyncio.create_task(reached.wait())
        finished = asyncio.create_task(_checkout_handle.result())
        done, _ = await asyncio.wait({waiter, finished}, return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()
        if finished in done:
            return _checkout_result(finished.result())
        finished.cancel()
    finally:
        unsubscribe()

    if orchestrator.state.phase == CheckoutPhase.FAILED:
        return _checkout_result(await _checkout_handle.result())

    return {
        "status": "awaiting_payment_details",
        "message": (
            "The payment form is open in the browser. Ask the user to enter their card details "
            "there (never in chat), then call submit_payment."
        ),
        "amount": _format_money(orchestrator.state.amount or 0, settings.currency),
        "order_code": orchestrator.state.order_code,
    }


async def _handle_submit_payment(args: dict) -> dict:
    if _checkout_handle is None:
        return {"status": "error", "message": "No checkout in progress. Use preview_checkout first."}

    _get_details_event().set()
    return _checkout_result(await _checkout_handle.result())


async def _handle_abort_checkout(args: dict) -> dict:
    if _checkout_handle is None or _checkout_handle.done:
        return {"status": "idle", "message": "No checkout in progress."}
    result = await _checkout_handle.abort()
    return {"status": "aborted", "message": "Checkout cancelled. Your cart was kept.", "result": result.to_dict()}


async def _handle_checkout_status(args: dict) -> dict:
    orchestrator = _get_orchestrator()
    receipt = orchestrator.last_receipt()
    return {
        "status": "ok",
        "checkout": orchestrator.state.to_dict(),
        "last_receipt": receipt.model_dump(mode="json") if receipt else None,
    }


async def _handle_payment_status(args: dict) -> dict:
    payment_id = args.get("payment_intent_id")
    if not payment_id:
        receipt = _get_orchestrator().last_receipt()
        if receipt is None:
            return {"status": "error", "message": "No recent payment. Pass payment_intent_id."}
        payment_id = receipt.payment_intent_id
    status = await _get_gateway().payment_status(payment_id)
    return {
        "status": status.status,
        "payment_intent_id": status.payment_intent_id,
        "order_code": status.order_code,
        "amount": status.amount,
    }


def _checkout_result(result) -> dict:
    if result.success:
        return {
            "status": "completed",
            "message": f"Payment complete. Order {result.order_code} is confirmed.",
            "order_code": result.order_code,
            "settlement_attempts": result.settlement.attempts if result.settlement else 0,
        }
    if result.aborted:
        return {"status": "aborted", "message": "Checkout was cancelled. Your cart was kept."}
    error = result.error
    return {
        "status": "failed",
        "message": error.message,
        "user_action": error.user_action,
        "retryable": error.retryable,
        "note": "Your cart was kept. Run preview_checkout again to retry." if error.retryable else None,
    }


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------

async def main():
    """Run the MCP server over stdio."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    logger.info("Storefront Checkout MCP server starting...")

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        if _checkout_handle and not _checkout_handle.done:
            await _checkout_handle.abort()
        if _cart:
            await _cart.flush()
        if _backend:
            await _backend.close()
        if _browser_manager:
            await _browser_manager.close()


def run():
    """Sync entry point for console_scripts."""
    asyncio.run(main())
