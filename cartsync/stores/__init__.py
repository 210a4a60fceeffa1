"""Backing stores for the guest (Redis) and account (Supabase) carts."""
from .local import LocalCartStore
from .remote import RemoteCartStore

__all__ = [
    "LocalCartStore",
    "RemoteCartStore",
]
