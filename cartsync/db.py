"""
Database Module - Supabase and Redis Clients

Provides singleton instances of:
- Async Supabase client for the remote cart, products and user profiles
- Upstash Redis client for guest carts and merge journals

Table names and credentials come from the environment.
"""

import os
from typing import Optional

from supabase._async.client import AsyncClient, create_client as acreate_client
from upstash_redis.asyncio import Redis as AsyncRedis


SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")

# Upstash uses REST_URL and REST_TOKEN
UPSTASH_REDIS_REST_URL = os.environ.get("UPSTASH_REDIS_REST_URL", "")
UPSTASH_REDIS_REST_TOKEN = os.environ.get("UPSTASH_REDIS_REST_TOKEN", "")

CART_TABLE = os.environ.get("CART_TABLE", "cart")
PRODUCTS_TABLE = os.environ.get("PRODUCTS_TABLE", "products")
USERS_TABLE = os.environ.get("USERS_TABLE", "users")


_async_supabase_client: Optional[AsyncClient] = None
_redis_client: Optional[AsyncRedis] = None


async def get_supabase() -> AsyncClient:
    """
    Get async Supabase client (singleton).
    """
    global _async_supabase_client

    if _async_supabase_client is None:
        if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _async_supabase_client = await acreate_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)

    return _async_supabase_client


def get_redis() -> AsyncRedis:
    """
    Get async Upstash Redis client (singleton).

    Used for:
    - Guest cart slots
    - Guest to account merge journals
    """
    global _redis_client

    if _redis_client is None:
        if not UPSTASH_REDIS_REST_URL or not UPSTASH_REDIS_REST_TOKEN:
            raise ValueError("UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN must be set")
        _redis_client = AsyncRedis(url=UPSTASH_REDIS_REST_URL, token=UPSTASH_REDIS_REST_TOKEN)

    return _redis_client


class RedisKeys:
    """Redis key prefixes for guest cart data."""

    GUEST_CART = "cart:guest:"  # cart:guest:{session_id}
    MERGE_JOURNAL = "cart:merged:"  # cart:merged:{session_id}:{user_id}

    @staticmethod
    def guest_cart_key(session_id: str) -> str:
        return f"{RedisKeys.GUEST_CART}{session_id}"

    @staticmethod
    def merge_journal_key(session_id: str, user_id: str) -> str:
        return f"{RedisKeys.MERGE_JOURNAL}{session_id}:{user_id}"


class TTL:
    """Time-to-live constants for Redis keys (seconds)."""

    GUEST_CART = 86400  # 24 hours, abandoned guest carts expire
    MERGE_JOURNAL = 3600  # 1 hour
