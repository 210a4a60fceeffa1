"""Cart reconciliation engine.

Owns the one logical cart a shopper sees and decides which store backs it:

- anonymous  -> guest slot in Redis (LocalCartStore)
- verified   -> per-user rows in Supabase (RemoteCartStore)
- unverified -> nothing; reads are empty and mutations are refused

On the first verified identity of a login session the guest cart is merged
into the remote cart (additively, once), then the guest slot is cleared.

Mutations are serialized by a single in-flight guard. Nothing is applied
to the snapshot before the backing store acknowledges the write.
"""
from contextlib import asynccontextmanager
from typing import Callable, List, Optional, Set

from cartsync.errors import (
    ERROR_INVALID_PRODUCT_ID,
    ERROR_INVALID_QUANTITY,
    AccessDeniedError,
    CartBusyError,
    CartNotReadyError,
    MergeConflictError,
    StoreUnavailableError,
)
from cartsync.logging import get_logger, sanitize_id_for_logging
from cartsync.models import (
    CartLine,
    CartSnapshot,
    CartState,
    EnrichedCartLine,
    GUEST_OWNER,
    Identity,
    IdentityState,
)
from cartsync.services.enrichment import ProductEnrichmentService
from cartsync.stores.local import LocalCartStore
from cartsync.stores.remote import RemoteCartStore

logger = get_logger(__name__)

SnapshotListener = Callable[[CartSnapshot], None]

_LOCAL = "local"
_REMOTE = "remote"

_STORE_FOR_STATE = {
    CartState.GUEST_ACTIVE: _LOCAL,
    CartState.MERGE_PENDING: _REMOTE,
    CartState.REMOTE_ACTIVE: _REMOTE,
}


def _validate_product_id(product_id) -> None:
    if not product_id or not isinstance(product_id, str):
        raise ValueError(ERROR_INVALID_PRODUCT_ID)


def _validate_quantity(quantity) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValueError(ERROR_INVALID_QUANTITY)


def _find_line(lines: List[CartLine], product_id: str) -> Optional[CartLine]:
    return next((line for line in lines if line.product_id == product_id), None)


def _with_quantity(lines: List[CartLine], product_id: str, quantity: int) -> List[CartLine]:
    """Copy of lines with product_id set to quantity; quantity <= 0 drops the line."""
    updated = []
    found = False
    for line in lines:
        if line.product_id != product_id:
            updated.append(line)
            continue
        found = True
        if quantity > 0:
            updated.append(line.model_copy(update={"quantity": quantity}))
    if not found and quantity > 0:
        updated.append(CartLine(product_id=product_id, quantity=quantity, owner=GUEST_OWNER))
    return updated


class CartEngine:
    """
    Reconciles the guest and account carts for one shopper.

    Dependencies are injected so several engines can run side by side
    (one per session, or one per test).
    """

    def __init__(
        self,
        local_store: LocalCartStore,
        remote_store: RemoteCartStore,
        enrichment: ProductEnrichmentService,
    ):
        self.local = local_store
        self.remote = remote_store
        self.enrichment = enrichment

        self._identity: Optional[Identity] = None
        # User whose remote cart backs the current state; changes only on reconcile
        self._active_user_id: Optional[str] = None
        self._state = CartState.BOOTSTRAPPING
        self._snapshot = CartSnapshot(is_loading=True, state=CartState.BOOTSTRAPPING)
        self._listeners: List[SnapshotListener] = []

        self._is_mutating = False
        self._mutating_product_id: Optional[str] = None
        self._reconcile_pending = False
        self._load_token = 0

        # Session merge flag: user id whose login already absorbed the guest cart
        self._merged_user_id: Optional[str] = None
        # Guest slot already merged into this user's cart but not yet cleared
        self._pending_clear_user: Optional[str] = None

    # ==================== OBSERVABLE STATE ====================

    @property
    def state(self) -> CartState:
        return self._state

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def snapshot(self) -> CartSnapshot:
        return self._snapshot

    @property
    def is_mutating(self) -> bool:
        return self._is_mutating

    @property
    def has_merged(self) -> bool:
        """True once the current login session has absorbed the guest cart."""
        return self._merged_user_id is not None and self._merged_user_id == getattr(self._identity, "user_id", None)

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call listener with every new snapshot; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, **changes) -> CartSnapshot:
        changes.update(
            is_mutating=self._is_mutating,
            mutating_product_id=self._mutating_product_id,
            state=self._state,
        )
        self._snapshot = self._snapshot.model_copy(update=changes)
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception as e:
                logger.error(f"Cart snapshot listener failed: {e}", exc_info=True)
        return self._snapshot

    def _set_state(self, state: CartState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        # Loads started under the previous state must not land
        self._load_token += 1
        logger.info(f"Cart state {previous.value} -> {state.value}")
        if _STORE_FOR_STATE.get(previous) != _STORE_FOR_STATE.get(state):
            self._publish(lines=[], is_loading=state != CartState.BLOCKED)
        else:
            self._publish()

    # ==================== IDENTITY ====================

    async def on_identity_change(self, identity: Identity) -> None:
        """Re-evaluate the state machine for a new identity."""
        self._identity = identity
        if identity.state == IdentityState.ANONYMOUS:
            # Logging out ends the login session
            self._merged_user_id = None

        if self._is_mutating:
            # Picked up when the in-flight operation releases the guard
            self._reconcile_pending = True
            return

        await self._reconcile()

    async def _reconcile(self) -> None:
        self._reconcile_pending = False
        await self._reconcile_once()
        while self._reconcile_pending:
            self._reconcile_pending = False
            await self._reconcile_once()

    async def _reconcile_once(self) -> None:
        identity = self._identity
        if identity is None:
            self._set_state(CartState.BOOTSTRAPPING)
            return

        if identity.state != IdentityState.VERIFIED:
            self._active_user_id = None

        if identity.state == IdentityState.UNVERIFIED:
            self._set_state(CartState.BLOCKED)
            self._publish(lines=[], is_loading=False)
            return

        if identity.state == IdentityState.ANONYMOUS:
            self._set_state(CartState.GUEST_ACTIVE)
            await self._retry_pending_clear()
            await self._reload()
            return

        user_changed = self._active_user_id != identity.user_id
        self._active_user_id = identity.user_id
        self._set_state(CartState.REMOTE_ACTIVE)
        if user_changed:
            self._load_token += 1
            self._publish(lines=[], is_loading=True)
        if self._merged_user_id != identity.user_id:
            await self._merge_guest_cart(identity.user_id)
            if self._reconcile_pending:
                # Identity moved on during the merge; the next pass loads its cart
                return
        await self._reload()

    # ==================== MERGE ====================

    async def _retry_pending_clear(self) -> bool:
        """Clear a guest slot left behind by an earlier merge. False if it is still there."""
        if self._pending_clear_user is None:
            return True
        user_id = self._pending_clear_user
        try:
            await self.local.clear_merged(user_id)
        except StoreUnavailableError as e:
            logger.warning(f"Guest cart clear still failing: {e}")
            return False
        self._pending_clear_user = None
        logger.info(f"Cleared guest cart merged into {sanitize_id_for_logging(user_id)}")
        return True

    def _is_verified_as(self, user_id: Optional[str]) -> bool:
        identity = self._identity
        return (
            identity is not None
            and identity.state == IdentityState.VERIFIED
            and identity.user_id == user_id
        )

    async def _merge_guest_cart(self, user_id: str) -> None:
        """
        Move guest lines into user_id's remote cart, once per login.

        Each guest quantity is added to the remote row (or inserted), and
        every merged product id is journaled so a re-run after an
        interruption skips it. A line that fails is logged and skipped;
        the session flag is set regardless.

        If the identity stops being user_id while the merge is suspended,
        no further remote write is issued, the flag stays unset and the
        lines already merged are taken out of the guest slot.
        """
        self._is_mutating = True
        self._publish()
        try:
            if not await self._retry_pending_clear():
                # Guest slot still holds lines that belong to another merge
                logger.warning("Merge postponed: previous guest cart not cleared")
                return

            try:
                guest_lines = await self.local.load()
                already_merged = await self.local.merged_ids(user_id) if guest_lines else set()
            except StoreUnavailableError as e:
                logger.warning(f"Merge postponed, guest cart unavailable: {e}")
                return

            if not self._is_verified_as(user_id):
                logger.info("Merge abandoned: identity changed before it started")
                return

            if not guest_lines:
                self._merged_user_id = user_id
                return

            self._set_state(CartState.MERGE_PENDING)
            logger.info(
                f"Merging {len(guest_lines)} guest lines into cart of {sanitize_id_for_logging(user_id)}"
            )

            merged_ids = set(already_merged)
            merged = 0
            for line in guest_lines:
                if line.product_id in merged_ids:
                    continue
                if not self._is_verified_as(user_id):
                    break
                try:
                    if await self._merge_line(user_id, line):
                        merged_ids.add(line.product_id)
                        merged += 1
                except MergeConflictError as e:
                    logger.warning(f"{e} ({e.cause})")

            if not self._is_verified_as(user_id):
                logger.warning(
                    f"Merge interrupted by identity change after {merged}/{len(guest_lines)} lines"
                )
                await self._release_merged_lines(user_id, guest_lines, merged_ids)
                return

            self._merged_user_id = user_id
            logger.info(f"Guest cart merge finished: {merged}/{len(guest_lines)} lines")

            try:
                await self.local.clear_merged(user_id)
            except StoreUnavailableError as e:
                self._pending_clear_user = user_id
                logger.error(f"Guest cart merged but not cleared, will retry: {e}")
        finally:
            self._is_mutating = False
            if self._state == CartState.MERGE_PENDING:
                self._set_state(CartState.REMOTE_ACTIVE)
            self._publish()

    async def _release_merged_lines(self, user_id: str, guest_lines: List[CartLine], merged_ids: Set[str]) -> None:
        """Drop lines already in user_id's remote cart from the guest slot, then its journal."""
        if not merged_ids:
            return
        remaining = [line for line in guest_lines if line.product_id not in merged_ids]
        try:
            await self.local.save(remaining)
            await self.local.clear_journal(user_id)
        except StoreUnavailableError as e:
            logger.error(f"Could not release merged guest lines: {e}")

    async def _merge_line(self, user_id: str, line: CartLine) -> bool:
        """Add one guest line to the remote cart. False if the identity changed first."""
        try:
            existing = await self.remote.get_line(user_id, line.product_id)
            if not self._is_verified_as(user_id):
                return False
            if existing:
                await self.remote.update_line(user_id, existing, existing.quantity + line.quantity)
            else:
                await self.remote.insert_line(user_id, line.product_id, line.quantity)
        except StoreUnavailableError as e:
            raise MergeConflictError(line.product_id, e) from e

        try:
            await self.local.mark_merged(user_id, line.product_id)
        except StoreUnavailableError as e:
            logger.warning(f"Could not journal merged line {sanitize_id_for_logging(line.product_id)}: {e}")
        return True

    # ==================== LOADING ====================

    async def _load_lines(self) -> List[CartLine]:
        store = _STORE_FOR_STATE.get(self._state)
        if store == _LOCAL:
            return await self.local.load()
        if store == _REMOTE:
            return await self.remote.list_for_user(self._active_user_id)
        return []

    async def _reload(self) -> CartSnapshot:
        """Reload lines from the active store, enrich them and publish."""
        self._load_token += 1
        token = self._load_token
        self._publish(is_loading=True)

        try:
            lines = await self._load_lines()
        except StoreUnavailableError:
            if token == self._load_token:
                self._publish(is_loading=False)
            raise

        products = await self.enrichment.enrich([line.product_id for line in lines]) if lines else {}

        if token != self._load_token:
            # A newer load or a state change superseded this one
            return self._snapshot

        enriched = [
            EnrichedCartLine(**line.model_dump(), product=products.get(line.product_id))
            for line in lines
        ]
        return self._publish(lines=enriched, is_loading=False)

    async def refresh(self) -> CartSnapshot:
        """
        Force a full reload from the active store.

        Not blocked by the mutation guard. When no mutation is in flight it
        also retries a postponed merge or a guest slot clear that failed
        earlier.
        """
        if self._state == CartState.BLOCKED:
            return self._publish(lines=[], is_loading=False)
        if self._state in (CartState.BOOTSTRAPPING, CartState.MERGE_PENDING):
            return self._snapshot

        if not self._is_mutating:
            if self._state == CartState.REMOTE_ACTIVE and self._merged_user_id != self._active_user_id:
                await self._reconcile()
                return self._snapshot
            await self._retry_pending_clear()

        return await self._reload()

    # ==================== MUTATIONS ====================

    def _check_can_mutate(self) -> None:
        if self._state == CartState.BLOCKED:
            raise AccessDeniedError("account not verified")
        if self._state == CartState.BOOTSTRAPPING:
            raise CartNotReadyError()
        if self._is_mutating:
            raise CartBusyError()

    @asynccontextmanager
    async def _mutation(self, product_id: Optional[str] = None):
        # Runs synchronously up to the yield, so a concurrent caller sees the guard
        self._check_can_mutate()
        self._is_mutating = True
        self._mutating_product_id = product_id
        self._publish()
        try:
            yield
        finally:
            self._is_mutating = False
            self._mutating_product_id = None
            self._publish()
            if self._reconcile_pending:
                await self._run_deferred_reconcile()

    async def _run_deferred_reconcile(self) -> None:
        try:
            await self._reconcile()
        except StoreUnavailableError as e:
            logger.error(f"Deferred cart reconcile failed: {e}")

    def _remote_writer(self) -> str:
        """User whose remote cart may be written now; the identity must still be that user, verified."""
        user_id = self._active_user_id
        if not self._is_verified_as(user_id):
            raise AccessDeniedError("identity changed during cart update")
        return user_id

    async def _write_remote(self, product_id: str, quantity: int, existing: Optional[CartLine]) -> None:
        user_id = self._remote_writer()
        if quantity <= 0:
            if existing:
                await self.remote.delete_line(user_id, product_id)
        elif existing:
            await self.remote.update_line(user_id, existing, quantity)
        else:
            await self.remote.insert_line(user_id, product_id, quantity)

    async def add(self, product_id: str, quantity: int = 1) -> CartSnapshot:
        """Increase a line by quantity, creating it if needed."""
        self._check_can_mutate()
        _validate_product_id(product_id)
        _validate_quantity(quantity)

        async with self._mutation(product_id):
            if self._state == CartState.GUEST_ACTIVE:
                lines = await self.local.load()
                existing = _find_line(lines, product_id)
                new_quantity = (existing.quantity if existing else 0) + quantity
                await self.local.save(_with_quantity(lines, product_id, new_quantity))
            else:
                existing = await self.remote.get_line(self._active_user_id, product_id)
                new_quantity = (existing.quantity if existing else 0) + quantity
                await self._write_remote(product_id, new_quantity, existing)

            logger.debug(f"Cart add {sanitize_id_for_logging(product_id)} -> {new_quantity}")
            await self._reload()
        return self._snapshot

    async def remove(self, product_id: str) -> CartSnapshot:
        """Delete a line. Removing a product that is not in the cart is a no-op."""
        self._check_can_mutate()
        _validate_product_id(product_id)

        async with self._mutation(product_id):
            if self._state == CartState.GUEST_ACTIVE:
                lines = await self.local.load()
                if _find_line(lines, product_id):
                    await self.local.save(_with_quantity(lines, product_id, 0))
            else:
                await self.remote.delete_line(self._remote_writer(), product_id)

            await self._reload()
        return self._snapshot

    async def update(self, product_id: str, quantity: int) -> CartSnapshot:
        """
        Set an existing line's quantity verbatim. quantity < 1 removes the line.

        Updating a product that is not in the cart is a no-op; lines are
        only created by add().
        """
        self._check_can_mutate()
        _validate_product_id(product_id)
        _validate_quantity(quantity)

        if quantity < 1:
            return await self.remove(product_id)

        async with self._mutation(product_id):
            if self._state == CartState.GUEST_ACTIVE:
                lines = await self.local.load()
                if _find_line(lines, product_id):
                    await self.local.save(_with_quantity(lines, product_id, quantity))
            else:
                existing = await self.remote.get_line(self._active_user_id, product_id)
                if existing:
                    await self._write_remote(product_id, quantity, existing)

            await self._reload()
        return self._snapshot

    async def clear(self) -> CartSnapshot:
        """Delete every line from the active store."""
        async with self._mutation():
            if self._state == CartState.GUEST_ACTIVE:
                await self.local.clear()
            else:
                await self.remote.delete_all(self._remote_writer())

            self._load_token += 1
            self._publish(lines=[], is_loading=False)
        return self._snapshot

    def query(self, product_id: str) -> bool:
        """Whether product_id is in the current snapshot. Never touches a store."""
        return any(line.product_id == product_id for line in self._snapshot.lines)
