"""
cartsync - storefront cart reconciliation

This package contains:
- db: Supabase and Upstash Redis clients
- stores: guest (Redis) and account (Supabase) cart stores
- services: product enrichment
- identity: observable identity and profile verification lookup
- cart: reconciliation engine and facade

Note: Imports are lazy so importing the package does not require
credentials or pull in the Supabase client.
"""

__all__ = [
    "CartEngine",
    "CartFacade",
    "create_cart",
    "IdentityProvider",
    "SupabaseIdentityResolver",
]


def __getattr__(name):
    """Lazy attribute access."""
    if name in ("CartEngine", "CartFacade", "create_cart"):
        from cartsync import cart
        return getattr(cart, name)
    elif name in ("IdentityProvider", "SupabaseIdentityResolver"):
        from cartsync import identity
        return getattr(identity, name)
    raise AttributeError(f"module 'cartsync' has no attribute '{name}'")
