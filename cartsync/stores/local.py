"""Guest cart slot in Upstash Redis.

One JSON list per anonymous session, refreshed with a 24h TTL on every
write. Reads are lenient: a missing or corrupt slot is an empty cart.
"""
import json
from typing import List, Set

from pydantic import ValidationError

from cartsync.db import RedisKeys, TTL
from cartsync.errors import StoreUnavailableError
from cartsync.logging import get_logger, sanitize_id_for_logging
from cartsync.models import CartLine, GUEST_OWNER

logger = get_logger(__name__)


class LocalCartStore:
    """
    Guest cart for one anonymous session.

    Also keeps the merge journal: product ids already copied into an
    account's remote cart, so an interrupted merge can resume without
    adding the same guest quantity twice.
    """

    def __init__(self, redis, session_id: str):
        if not session_id:
            raise ValueError("session_id must be a non-empty string")
        self.redis = redis
        self.session_id = session_id
        self.key = RedisKeys.guest_cart_key(session_id)

    async def load(self) -> List[CartLine]:
        """Read the guest cart. Missing or corrupt slot -> []."""
        try:
            data = await self.redis.get(self.key)
        except Exception as e:
            logger.error(f"Failed to read guest cart {sanitize_id_for_logging(self.session_id)}: {e}")
            raise StoreUnavailableError(f"Guest cart read failed: {e}", store="local") from e

        if not data:
            return []

        try:
            rows = json.loads(data)
            if not isinstance(rows, list):
                raise TypeError(f"expected list, got {type(rows).__name__}")
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Corrupted guest cart {sanitize_id_for_logging(self.session_id)}: {e}")
            await self._drop_corrupt_slot()
            return []

        return self._parse_rows(rows)

    def _parse_rows(self, rows: list) -> List[CartLine]:
        lines: dict[str, CartLine] = {}
        for row in rows:
            try:
                line = CartLine(
                    product_id=str(row["product_id"]),
                    quantity=row["quantity"],
                    owner=GUEST_OWNER,
                )
            except (KeyError, TypeError, ValidationError) as e:
                logger.warning(f"Skipping bad guest cart row: {e}")
                continue

            existing = lines.get(line.product_id)
            if existing:
                existing.quantity += line.quantity
            else:
                lines[line.product_id] = line
        return list(lines.values())

    async def _drop_corrupt_slot(self) -> None:
        try:
            await self.redis.delete(self.key)
        except Exception as e:
            logger.warning(f"Could not delete corrupted guest cart: {e}")

    async def save(self, lines: List[CartLine]) -> None:
        """Overwrite the guest slot with the given lines."""
        payload = json.dumps([line.to_local() for line in lines])
        try:
            await self.redis.set(self.key, payload, ex=TTL.GUEST_CART)
        except Exception as e:
            logger.error(f"Failed to save guest cart {sanitize_id_for_logging(self.session_id)}: {e}")
            raise StoreUnavailableError(f"Guest cart write failed: {e}", store="local") from e

    async def clear(self) -> None:
        """Delete the guest slot."""
        try:
            await self.redis.delete(self.key)
        except Exception as e:
            logger.error(f"Failed to clear guest cart {sanitize_id_for_logging(self.session_id)}: {e}")
            raise StoreUnavailableError(f"Guest cart clear failed: {e}", store="local") from e

    # ==================== MERGE JOURNAL ====================

    async def merged_ids(self, user_id: str) -> Set[str]:
        """Product ids already merged into user_id's remote cart."""
        key = RedisKeys.merge_journal_key(self.session_id, user_id)
        try:
            members = await self.redis.smembers(key)
        except Exception as e:
            raise StoreUnavailableError(f"Merge journal read failed: {e}", store="local") from e
        return set(members or [])

    async def mark_merged(self, user_id: str, product_id: str) -> None:
        key = RedisKeys.merge_journal_key(self.session_id, user_id)
        try:
            await self.redis.sadd(key, product_id)
            await self.redis.expire(key, TTL.MERGE_JOURNAL)
        except Exception as e:
            raise StoreUnavailableError(f"Merge journal write failed: {e}", store="local") from e

    async def clear_journal(self, user_id: str) -> None:
        key = RedisKeys.merge_journal_key(self.session_id, user_id)
        try:
            await self.redis.delete(key)
        except Exception as e:
            raise StoreUnavailableError(f"Merge journal clear failed: {e}", store="local") from e

    async def clear_merged(self, user_id: str) -> None:
        """Drop the guest slot and the journal in one call."""
        journal_key = RedisKeys.merge_journal_key(self.session_id, user_id)
        try:
            await self.redis.delete(self.key, journal_key)
        except Exception as e:
            logger.error(f"Failed to clear merged guest cart {sanitize_id_for_logging(self.session_id)}: {e}")
            raise StoreUnavailableError(f"Guest cart clear failed: {e}", store="local") from e
