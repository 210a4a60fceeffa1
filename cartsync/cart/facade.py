"""Cart facade - the operation surface UI collaborators talk to.

Collaborators either call the operations directly or dispatch CartIntent
messages, and subscribe to snapshots instead of reading engine internals.
"""
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from cartsync.cart.engine import CartEngine, SnapshotListener
from cartsync.cart.policy import clamp_increment, clamp_to_stock
from cartsync.errors import CartError
from cartsync.identity import IdentityProvider
from cartsync.logging import get_logger
from cartsync.models import CartAction, CartIntent, CartSnapshot, Product

logger = get_logger(__name__)

Notifier = Callable[[str], None]


class CartFacade:
    """
    Public cart API.

    Every operation delegates 1:1 to the engine. Rejected operations are
    re-raised after the optional `notify` callback receives the shopper
    facing message (toast, flash message, bot reply).
    """

    def __init__(self, engine: CartEngine, notify: Optional[Notifier] = None):
        self.engine = engine
        self._notify = notify
        self._unbind: Optional[Callable[[], None]] = None

    async def bind(self, provider: IdentityProvider) -> None:
        """Follow provider's identity; applies the current one immediately if resolved."""
        if self._unbind:
            self._unbind()
        self._unbind = provider.subscribe(self.engine.on_identity_change)
        if provider.current is not None:
            await self.engine.on_identity_change(provider.current)

    # ==================== READS ====================

    @property
    def snapshot(self) -> CartSnapshot:
        return self.engine.snapshot

    @property
    def count(self) -> int:
        return self.engine.snapshot.count

    @property
    def total_quantity(self) -> int:
        return self.engine.snapshot.total_quantity

    @property
    def total(self) -> Decimal:
        return self.engine.snapshot.total

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        return self.engine.subscribe(listener)

    def query(self, product_id: str) -> bool:
        return self.engine.query(product_id)

    def order_lines(self) -> List[Dict[str, object]]:
        """Line payload for order construction at checkout."""
        return [
            {"product_id": line.product_id, "quantity": line.quantity}
            for line in self.engine.snapshot.lines
        ]

    # ==================== OPERATIONS ====================

    async def _run(self, operation: Callable[[], Awaitable[CartSnapshot]]) -> CartSnapshot:
        try:
            return await operation()
        except CartError as e:
            self._report(e.user_message)
            raise

    def _report(self, message: str) -> None:
        if self._notify is None:
            return
        try:
            self._notify(message)
        except Exception as e:
            logger.error(f"Cart notifier failed: {e}", exc_info=True)

    async def add(self, product_id: str, quantity: int = 1) -> CartSnapshot:
        return await self._run(lambda: self.engine.add(product_id, quantity))

    async def remove(self, product_id: str) -> CartSnapshot:
        return await self._run(lambda: self.engine.remove(product_id))

    async def update(self, product_id: str, quantity: int) -> CartSnapshot:
        return await self._run(lambda: self.engine.update(product_id, quantity))

    async def clear(self) -> CartSnapshot:
        return await self._run(self.engine.clear)

    async def refresh(self) -> CartSnapshot:
        return await self._run(self.engine.refresh)

    async def dispatch(self, intent: CartIntent) -> CartSnapshot:
        """Apply a message from a UI collaborator."""
        if intent.action == CartAction.ADD:
            return await self.add(intent.product_id, intent.quantity if intent.quantity is not None else 1)
        if intent.action == CartAction.REMOVE:
            return await self.remove(intent.product_id)
        if intent.action == CartAction.UPDATE:
            return await self.update(intent.product_id, intent.quantity)
        if intent.action == CartAction.CLEAR:
            return await self.clear()
        return await self.refresh()

    # ==================== STOCK-CAPPED HELPERS ====================

    async def _product_for(self, product_id: str) -> Optional[Product]:
        for line in self.engine.snapshot.lines:
            if line.product_id == product_id and line.product is not None:
                return line.product
        products = await self.engine.enrichment.enrich([product_id])
        return products.get(product_id)

    async def add_clamped(self, product_id: str, quantity: int = 1) -> CartSnapshot:
        """add(), capped so the line never exceeds available stock."""
        product = await self._product_for(product_id)
        current = self.engine.snapshot.quantity_of(product_id)
        increment = clamp_increment(current, quantity, product)
        if increment == 0:
            return self.engine.snapshot
        return await self.add(product_id, increment)

    async def update_clamped(self, product_id: str, quantity: int) -> CartSnapshot:
        """update(), capped at available stock (0 stock removes the line)."""
        product = await self._product_for(product_id)
        return await self.update(product_id, clamp_to_stock(quantity, product))


async def create_cart(session_id: str, notify: Optional[Notifier] = None) -> CartFacade:
    """
    Wire a facade for one guest session from the shared Supabase and Redis clients.

    The engine starts in Bootstrapping; bind it to an IdentityProvider (or
    call engine.on_identity_change) to load the cart.
    """
    from cartsync.db import get_redis, get_supabase
    from cartsync.services.enrichment import ProductEnrichmentService
    from cartsync.stores.local import LocalCartStore
    from cartsync.stores.remote import RemoteCartStore

    client = await get_supabase()
    engine = CartEngine(
        local_store=LocalCartStore(get_redis(), session_id),
        remote_store=RemoteCartStore(client),
        enrichment=ProductEnrichmentService(client),
    )
    return CartFacade(engine, notify=notify)
