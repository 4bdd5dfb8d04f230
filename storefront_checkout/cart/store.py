"""
Local cart store — the authoritative cart before any backend order exists.

Mutations apply to in-memory state immediately and are flushed to
ClientStorage in the background. Quantity updates share a debounce window so a
burst of +/- clicks becomes a single write.
"""
import asyncio
import logging
import uuid
from typing import Callable, Optional

from pydantic import ValidationError as SchemaError

from ..errors import StockError
from ..storage import ClientStorage
from .schema import AppliedCoupon, CartItem, CartSession, CartSnapshot

logger = logging.getLogger(__name__)

CartListener = Callable[[CartSnapshot], None]


class LocalCartStore:
    """Single-writer cart with durable, coalesced persistence."""

    STORAGE_KEY = "local_cart"

    def __init__(
        self,
        storage: ClientStorage,
        currency: str = "usd",
        debounce_ms: int = 300,
    ):
        self._storage = storage
        self._currency = currency
        self._debounce = debounce_ms / 1000
        self._session: CartSession | None = None
        self._listeners: list[CartListener] = []

        self._dirty = False
        self._flush_deadline = 0.0
        self._flush_task: asyncio.Task | None = None
        self._writing = False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def cart_uuid(self) -> Optional[str]:
        return self._session.cart_uuid if self._session else None

    def load(self) -> CartSnapshot:
        """Restore the cart from storage (if any) and return a snapshot."""
        data = self._storage.get(self.STORAGE_KEY)
        if data:
            try:
                self._session = CartSession(**data)
                logger.info(
                    "Restored cart %s with %d lines", self._session.cart_uuid, len(self._session.items)
                )
            except SchemaError as e:
                logger.error("Stored cart is invalid, starting empty: %s", e)
                self._session = None
        return self.snapshot()

    def snapshot(self) -> CartSnapshot:
        """Immutable copy; later mutations never affect it."""
        if self._session is None:
            return CartSnapshot(cart_uuid=None, currency=self._currency)
        return CartSnapshot(
            cart_uuid=self._session.cart_uuid,
            items=tuple(self._session.items),
            subtotal=self._session.subtotal,
            applied_coupon=self._session.applied_coupon,
            currency=self._session.currency,
        )

    def item_quantity(self, variant_id: str) -> int:
        if self._session is None:
            return 0
        for item in self._session.items:
            if item.variant_id == variant_id:
                return item.quantity
        return 0

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_item(self, item: CartItem) -> CartSnapshot:
        """Add a line, or add to the quantity of an existing one.

        Raises StockError (cart unchanged) when the result exceeds stock.
        """
        session = self._ensure_session()
        index = self._index_of(item.variant_id)
        existing = session.items[index] if index is not None else None
        new_quantity = item.quantity + (existing.quantity if existing else 0)
        if new_quantity > item.stock_snapshot:
            raise StockError(item.variant_id, new_quantity, item.stock_snapshot)

        updated = item.model_copy(update={"quantity": new_quantity})
        if index is None:
            session.items.append(updated)
        else:
            session.items[index] = updated
        return self._committed()

    def update_quantity(self, variant_id: str, quantity: int) -> CartSnapshot:
        """Set a line's quantity. Zero or less removes the line."""
        index = self._index_of(variant_id)
        if index is None:
            raise KeyError(variant_id)
        if quantity <= 0:
            return self.remove_item(variant_id)

        item = self._session.items[index]
        if quantity > item.stock_snapshot:
            raise StockError(variant_id, quantity, item.stock_snapshot)
        if quantity == item.quantity:
            return self.snapshot()
        self._session.items[index] = item.model_copy(update={"quantity": quantity})
        return self._committed(debounce=True)

    def remove_item(self, variant_id: str) -> CartSnapshot:
        index = self._index_of(variant_id)
        if index is None:
            return self.snapshot()
        del self._session.items[index]
        return self._committed()

    def apply_coupon(self, coupon: AppliedCoupon) -> CartSnapshot:
        session = self._ensure_session()
        session.applied_coupon = coupon
        return self._committed()

    def remove_coupon(self) -> CartSnapshot:
        if self._session is None or self._session.applied_coupon is None:
            return self.snapshot()
        self._session.applied_coupon = None
        return self._committed()

    def clear(self) -> CartSnapshot:
        """Destroy the session. The next mutation starts a new cart uuid."""
        if self._session is not None:
            logger.info("Clearing cart %s", self._session.cart_uuid)
        self._session = None
        return self._committed()

    def remove_paid(self, paid: CartSnapshot) -> CartSnapshot:
        """End the session an order paid for.

        Quantities in `paid` are taken off the live cart. Anything added
        after `paid` was taken carries over into a new session (new cart
        uuid); if nothing is left the cart is cleared.
        """
        if self._session is None or self._session.cart_uuid != paid.cart_uuid:
            return self.snapshot()

        paid_quantities = {item.variant_id: item.quantity for item in paid.items}
        remaining = []
        for item in self._session.items:
            left = item.quantity - paid_quantities.get(item.variant_id, 0)
            if left > 0:
                remaining.append(item.model_copy(update={"quantity": left}))
        coupon = self._session.applied_coupon
        if coupon == paid.applied_coupon:
            coupon = None

        if not remaining:
            return self.clear()

        logger.info(
            "Cart %s paid; %d unpaid lines move to a new session", self._session.cart_uuid, len(remaining)
        )
        self._session = None
        session = self._ensure_session()
        session.items.extend(remaining)
        session.applied_coupon = coupon
        return self._committed()

    # ------------------------------------------------------------------
    # Stock
    # ------------------------------------------------------------------

    def validate_stock(self, live_levels: dict[str, int] | None = None) -> list[str]:
        """Return problems for lines whose quantity exceeds stock.

        Uses `live_levels` where given, else the stored snapshots.
        """
        problems = []
        if self._session is None:
            return problems
        for item in self._session.items:
            level = item.stock_snapshot
            if live_levels is not None and item.variant_id in live_levels:
                level = live_levels[item.variant_id]
            label = item.name or item.variant_id
            if level <= 0:
                problems.append(f"{label}: Out of stock. Please remove from cart.")
            elif item.quantity > level:
                problems.append(f"{label}: Only {level} available (you have {item.quantity})")
        return problems

    def refresh_stock(self, live_levels: dict[str, int]) -> CartSnapshot:
        """Record fresh stock levels. Quantities are never adjusted silently."""
        if self._session is None:
            return self.snapshot()
        changed = False
        for i, item in enumerate(self._session.items):
            level = live_levels.get(item.variant_id)
            if level is not None and level != item.stock_snapshot:
                self._session.items[i] = item.model_copy(update={"stock_snapshot": max(0, level)})
                changed = True
        return self._committed() if changed else self.snapshot()

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def on_change(self, callback: CartListener) -> Callable[[], None]:
        """Register a cart-changed listener. Returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, snapshot: CartSnapshot) -> None:
        for callback in list(self._listeners):
            try:
                callback(snapshot)
            except Exception as e:
                logger.warning("Cart listener %r failed: %s", callback, e)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def flush(self) -> None:
        """Write pending changes now and wait for the write to finish."""
        task = self._flush_task
        if task and not task.done():
            if not self._writing:
                # Still inside the debounce window: skip the wait.
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._dirty:
            self._dirty = False
            await asyncio.to_thread(self._persist, self._payload())

    def _committed(self, debounce: bool = False) -> CartSnapshot:
        snapshot = self.snapshot()
        self._schedule_flush(self._debounce if debounce else 0.0)
        self._notify(snapshot)
        return snapshot

    def _schedule_flush(self, delay: float) -> None:
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (sync caller): write through.
            self._dirty = False
            self._persist(self._payload())
            return

        self._flush_deadline = loop.time() + delay
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = loop.create_task(self._run_flush())

    async def _run_flush(self) -> None:
        loop = asyncio.get_running_loop()
        while self._dirty:
            wait = self._flush_deadline - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
                continue
            payload = self._payload()
            self._dirty = False
            self._writing = True
            try:
                await asyncio.to_thread(self._persist, payload)
            finally:
                self._writing = False

    def _payload(self) -> dict | None:
        return self._session.model_dump() if self._session else None

    def _persist(self, payload: dict | None) -> None:
        try:
            if payload is None:
                self._storage.delete(self.STORAGE_KEY)
            else:
                self._storage.set(self.STORAGE_KEY, payload)
        except OSError as e:
            logger.error("Cart write failed: %s", e)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_session(self) -> CartSession:
        if self._session is None:
            self._session = CartSession(cart_uuid=str(uuid.uuid4()), currency=self._currency)
            logger.info("Started cart session %s", self._session.cart_uuid)
        return self._session

    def _index_of(self, variant_id: str) -> Optional[int]:
        if self._session is None:
            return None
        for i, item in enumerate(self._session.items):
            if item.variant_id == variant_id:
                return i
        return None
