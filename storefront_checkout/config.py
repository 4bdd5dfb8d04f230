"""Runtime configuration read from the environment."""
import os
from pathlib import Path

from pydantic import BaseModel

DEFAULT_STORAGE_DIR = Path.home() / ".config" / "storefront-checkout"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


class CheckoutSettings(BaseModel):
    """All knobs for the checkout pipeline. Build with `from_env()`."""

    publishable_key: str = ""
    shop_api_url: str = "http://localhost:3000/shop-api"
    shop_api_token: str = ""
    currency: str = "usd"
    min_amount: int = 50
    settlement_max_attempts: int = 3
    settlement_base_delay_ms: int = 1000
    cart_debounce_ms: int = 300
    storage_dir: Path = DEFAULT_STORAGE_DIR
    checkout_page_url: str = "http://localhost:8080/checkout/payment"
    mount_selector: str = "#payment-element"
    headless: bool = False
    shipping_policy: str = "flat"  # flat | percentage
    shipping_rate: float = 0.10

    @classmethod
    def from_env(cls) -> "CheckoutSettings":
        return cls(
            publishable_key=os.environ.get("STRIPE_PUBLISHABLE_KEY", ""),
            shop_api_url=os.environ.get("SHOP_API_URL", cls.model_fields["shop_api_url"].default),
            shop_api_token=os.environ.get("SHOP_API_TOKEN", ""),
            currency=os.environ.get("CHECKOUT_CURRENCY", "usd").lower(),
            min_amount=int(os.environ.get("CHECKOUT_MIN_AMOUNT", "50")),
            settlement_max_attempts=int(os.environ.get("SETTLEMENT_MAX_ATTEMPTS", "3")),
            settlement_base_delay_ms=int(os.environ.get("SETTLEMENT_BASE_DELAY_MS", "1000")),
            cart_debounce_ms=int(os.environ.get("CART_DEBOUNCE_MS", "300")),
            storage_dir=Path(os.environ.get("CHECKOUT_STORAGE_DIR", str(DEFAULT_STORAGE_DIR))).expanduser(),
            checkout_page_url=os.environ.get(
                "CHECKOUT_PAGE_URL", cls.model_fields["checkout_page_url"].default
            ),
            mount_selector=os.environ.get("PAYMENT_MOUNT_SELECTOR", "#payment-element"),
            headless=_env_bool("CHECKOUT_HEADLESS"),
            shipping_policy=os.environ.get("SHIPPING_POLICY", "flat").lower(),
            shipping_rate=float(os.environ.get("SHIPPING_RATE", "0.10")),
        )

    def require_publishable_key(self) -> str:
        if not self.publishable_key:
            raise ValueError("STRIPE_PUBLISHABLE_KEY not set")
        return self.publishable_key
