"""
Payment provider SDK surface and the Stripe.js implementation.

Stripe.js runs inside the Playwright checkout page; Python holds JSHandles to
the Stripe instance, the elements group and the mounted element. The loaded SDK
is cached process-wide per publishable key and shared read-only by every
checkout attempt.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import JSHandle, Page

from ..browser import BrowserManager

logger = logging.getLogger(__name__)

STRIPE_JS_URL = "https://js.stripe.com/v3/"

SDKLoader = Callable[[str], Awaitable["ProviderSDK"]]


class PaymentElementHandle(ABC):
    """A provider form element that can be mounted into the page."""

    @abstractmethod
    async def mount(self, selector: str) -> None:
        ...

    @abstractmethod
    async def unmount(self) -> None:
        ...


class ElementsGroup(ABC):
    """Provider `elements` instance bound to one client secret."""

    @abstractmethod
    async def create(self, kind: str, options: Optional[dict[str, Any]] = None) -> PaymentElementHandle:
        ...

    @abstractmethod
    async def submit(self) -> Optional[dict[str, Any]]:
        """Run form-level validation. Returns the error payload, or None when valid."""
        ...


class ProviderSDK(ABC):
    """The subset of the provider SDK the checkout drives."""

    @abstractmethod
    async def elements(self, client_secret: str, appearance: Optional[dict[str, Any]] = None) -> ElementsGroup:
        ...

    @abstractmethod
    async def confirm_payment(
        self,
        elements: ElementsGroup,
        client_secret: str,
        confirm_params: dict[str, Any],
        redirect: str = "if_required",
    ) -> dict[str, Any]:
        """Returns `{"error": {...}}` or `{"paymentIntent": {id, status, amount, currency}}`."""
        ...

    @abstractmethod
    async def retrieve_payment_intent(self, client_secret: str) -> dict[str, Any]:
        ...


# ---------------------------------------------------------------------------
# Stripe.js via Playwright
# ---------------------------------------------------------------------------

_ERROR_FIELDS_JS = "e => e ? {type: e.type, code: e.code, decline_code: e.decline_code, message: e.message} : null"
_INTENT_FIELDS_JS = (
    "pi => pi ? {id: pi.id, status: pi.status, amount: pi.amount, currency: pi.currency} : null"
)


class StripeElementHandle(PaymentElementHandle):
    def __init__(self, page: Page, handle: JSHandle):
        self._page = page
        self._handle = handle

    async def mount(self, selector: str) -> None:
        await self._page.wait_for_selector(selector, state="attached", timeout=10000)
        await self._handle.evaluate("(el, sel) => el.mount(sel)", selector)

    async def unmount(self) -> None:
        await self._handle.evaluate("el => el.unmount()")
        await self._handle.dispose()


class StripeElementsGroup(ElementsGroup):
    def __init__(self, page: Page, handle: JSHandle):
        self._page = page
        self.handle = handle

    async def create(self, kind: str, options: Optional[dict[str, Any]] = None) -> PaymentElementHandle:
        element = await self.handle.evaluate_handle(
            "(els, a) => els.create(a.kind, a.options)", {"kind": kind, "options": options or {}}
        )
        return StripeElementHandle(self._page, element)

    async def submit(self) -> Optional[dict[str, Any]]:
        return await self.handle.evaluate(
            f"async els => {{ const r = await els.submit(); return ({_ERROR_FIELDS_JS})(r.error); }}"
        )


class StripeJsSDK(ProviderSDK):
    """Stripe.js loaded into the checkout page."""

    def __init__(self, page: Page, stripe: JSHandle):
        self._page = page
        self._stripe = stripe

    @classmethod
    async def load(cls, page: Page, publishable_key: str) -> "StripeJsSDK":
        has_stripe = await page.evaluate("() => typeof window.Stripe === 'function'")
        if not has_stripe:
            await page.add_script_tag(url=STRIPE_JS_URL)
        stripe = await page.evaluate_handle("key => Stripe(key)", publishable_key)
        logger.info("Stripe.js loaded")
        return cls(page, stripe)

    async def elements(self, client_secret: str, appearance: Optional[dict[str, Any]] = None) -> ElementsGroup:
        handle = await self._stripe.evaluate_handle(
            "(s, o) => s.elements(o)",
            {"clientSecret": client_secret, "appearance": appearance or {"theme": "stripe"}},
        )
        return StripeElementsGroup(self._page, handle)

    async def confirm_payment(
        self,
        elements: ElementsGroup,
        client_secret: str,
        confirm_params: dict[str, Any],
        redirect: str = "if_required",
    ) -> dict[str, Any]:
        if not isinstance(elements, StripeElementsGroup):
            raise TypeError("elements must come from this SDK")
        return await self._page.evaluate(
            f"""async ([s, els, a]) => {{
                const r = await s.confirmPayment({{
                    elements: els, clientSecret: a.clientSecret,
                    confirmParams: a.confirmParams, redirect: a.redirect,
                }});
                return {{
                    error: ({_ERROR_FIELDS_JS})(r.error),
                    paymentIntent: ({_INTENT_FIELDS_JS})(r.paymentIntent),
                }};
            }}""",
            [
                self._stripe,
                elements.handle,
                {"clientSecret": client_secret, "confirmParams": confirm_params, "redirect": redirect},
            ],
        )

    async def retrieve_payment_intent(self, client_secret: str) -> dict[str, Any]:
        return await self._stripe.evaluate(
            f"""async (s, secret) => {{
                const r = await s.retrievePaymentIntent(secret);
                return {{
                    error: ({_ERROR_FIELDS_JS})(r.error),
                    paymentIntent: ({_INTENT_FIELDS_JS})(r.paymentIntent),
                }};
            }}""",
            client_secret,
        )


def stripe_loader(browser: BrowserManager, page_url: str) -> SDKLoader:
    """Loader that opens the checkout page and loads Stripe.js into it."""

    async def load(publishable_key: str) -> ProviderSDK:
        page = await browser.checkout_page(page_url)
        return await StripeJsSDK.load(page, publishable_key)

    return load


# ---------------------------------------------------------------------------
# Process-wide cache
# ---------------------------------------------------------------------------

_sdk_cache: dict[str, ProviderSDK] = {}
_sdk_lock = asyncio.Lock()


async def load_provider_sdk(publishable_key: str, loader: SDKLoader) -> ProviderSDK:
    """Load the SDK once per key; concurrent callers share the same load."""
    if not publishable_key:
        raise ValueError("STRIPE_PUBLISHABLE_KEY not set")
    sdk = _sdk_cache.get(publishable_key)
    if sdk is not None:
        return sdk
    async with _sdk_lock:
        sdk = _sdk_cache.get(publishable_key)
        if sdk is None:
            sdk = await loader(publishable_key)
            _sdk_cache[publishable_key] = sdk
        return sdk


def reset_sdk_cache() -> None:
    """Drop cached SDK handles (browser restarted, or tests)."""
    global _sdk_lock
    _sdk_cache.clear()
    _sdk_lock = asyncio.Lock()
