"""Identity - observable shopper identity and the Supabase profile resolver.

Usage:
    provider = IdentityProvider()
    provider.subscribe(engine.on_identity_change)

    resolver = SupabaseIdentityResolver(client)
    await provider.set(await resolver.resolve(auth_user_id))
"""
from typing import Awaitable, Callable, List, Optional

from supabase._async.client import AsyncClient

from cartsync.db import USERS_TABLE
from cartsync.logging import get_logger, sanitize_id_for_logging
from cartsync.models import Identity

logger = get_logger(__name__)

IdentityListener = Callable[[Identity], Awaitable[None]]


class IdentityProvider:
    """
    Holds the current identity and notifies listeners when it changes.

    `current` is None until the first identity is set (auth still loading).
    Listeners are awaited one after another, in subscription order.
    """

    def __init__(self, initial: Optional[Identity] = None):
        self._current = initial
        self._listeners: List[IdentityListener] = []

    @property
    def current(self) -> Optional[Identity]:
        return self._current

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def set(self, identity: Identity) -> None:
        """Publish a new identity. Setting the same value again is a no-op."""
        if identity == self._current:
            return
        self._current = identity
        logger.info(
            f"Identity changed: {identity.state.value} "
            f"user={sanitize_id_for_logging(identity.user_id)}"
        )
        for listener in list(self._listeners):
            try:
                await listener(identity)
            except Exception as e:
                logger.error(f"Identity listener failed: {e}", exc_info=True)


class SupabaseIdentityResolver:
    """Maps an auth user id to an Identity using the users profile table."""

    def __init__(self, client: AsyncClient, table: str = USERS_TABLE):
        self.client = client
        self.table = table

    async def resolve(self, auth_user_id: Optional[str]) -> Identity:
        """
        Resolve verification state for an auth user.

        No auth user -> anonymous. Profile missing, unreadable, or without
        isVerified == True -> unverified (fails closed).
        """
        if not auth_user_id:
            return Identity.anonymous()

        try:
            result = await self.client.table(self.table).select("isVerified").eq(
                "userId", auth_user_id
            ).limit(1).execute()
        except Exception as e:
            logger.warning(f"Profile lookup failed for {sanitize_id_for_logging(auth_user_id)}: {e}")
            return Identity.unverified(auth_user_id)

        profile = result.data[0] if result.data else None
        if profile and profile.get("isVerified") is True:
            return Identity.verified(auth_user_id)
        return Identity.unverified(auth_user_id)
