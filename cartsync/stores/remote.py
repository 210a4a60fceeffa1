"""Remote Cart Store - per-user cart rows in Supabase.

All methods use async/await with supabase-py v2. The quantity column is
text in the cart table, so values are written as strings and parsed
leniently on read.
"""
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError
from supabase._async.client import AsyncClient
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from cartsync.db import CART_TABLE
from cartsync.errors import StoreUnavailableError
from cartsync.logging import get_logger, sanitize_id_for_logging
from cartsync.models import CartLine

logger = get_logger(__name__)

# Reads are idempotent and safe to repeat; writes are not retried
_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)


def parse_quantity(value: Any) -> int:
    """Quantity column value -> int, 0 when missing or malformed."""
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return 0


def format_quantity(quantity: int) -> str:
    return str(quantity)


class RemoteCartStore:
    """Cart table operations for verified accounts."""

    def __init__(self, client: AsyncClient, table: str = CART_TABLE):
        self.client = client
        self.table = table

    def _row_to_line(self, row: Dict[str, Any]) -> Optional[CartLine]:
        quantity = parse_quantity(row.get("quantity"))
        if quantity < 1:
            logger.warning(
                f"Ignoring cart row {sanitize_id_for_logging(str(row.get('id')))} "
                f"with quantity {row.get('quantity')!r}"
            )
            return None
        try:
            return CartLine(
                id=str(row["id"]) if row.get("id") is not None else None,
                product_id=str(row["product_id"]),
                quantity=quantity,
                owner=str(row["user_id"]),
                created_at=row.get("created_at"),
            )
        except (KeyError, ValidationError) as e:
            logger.warning(f"Ignoring malformed cart row: {e}")
            return None

    @_read_retry
    async def _select_user_rows(self, user_id: str) -> List[Dict[str, Any]]:
        result = await self.client.table(self.table).select("*").eq(
            "user_id", user_id
        ).order("created_at", desc=True).execute()
        return result.data or []

    @_read_retry
    async def _select_line_row(self, user_id: str, product_id: str) -> Optional[Dict[str, Any]]:
        result = await self.client.table(self.table).select("*").eq(
            "user_id", user_id
        ).eq("product_id", product_id).limit(1).execute()
        return result.data[0] if result.data else None

    async def list_for_user(self, user_id: str) -> List[CartLine]:
        """All cart lines of a user, newest first."""
        try:
            rows = await self._select_user_rows(user_id)
        except Exception as e:
            logger.error(f"Failed to list cart for {sanitize_id_for_logging(user_id)}: {e}", exc_info=True)
            raise StoreUnavailableError(f"Remote cart read failed: {e}") from e

        lines = []
        for row in rows:
            line = self._row_to_line(row)
            if line is not None:
                lines.append(line)
        return lines

    async def get_line(self, user_id: str, product_id: str) -> Optional[CartLine]:
        """Current row for (user_id, product_id), queried fresh."""
        try:
            row = await self._select_line_row(user_id, product_id)
        except Exception as e:
            logger.error(f"Failed to read cart line {sanitize_id_for_logging(product_id)}: {e}", exc_info=True)
            raise StoreUnavailableError(f"Remote cart read failed: {e}") from e
        return self._row_to_line(row) if row else None

    async def insert_line(self, user_id: str, product_id: str, quantity: int) -> None:
        try:
            await self.client.table(self.table).insert({
                "user_id": user_id,
                "product_id": product_id,
                "quantity": format_quantity(quantity),
            }).execute()
        except Exception as e:
            logger.error(f"Failed to insert cart line {sanitize_id_for_logging(product_id)}: {e}", exc_info=True)
            raise StoreUnavailableError(f"Remote cart insert failed: {e}") from e

    async def update_line(self, user_id: str, line: CartLine, quantity: int) -> None:
        """Set quantity on an existing row (by row id when known)."""
        query = self.client.table(self.table).update({"quantity": format_quantity(quantity)})
        if line.id:
            query = query.eq("id", line.id)
        else:
            query = query.eq("user_id", user_id).eq("product_id", line.product_id)
        try:
            await query.execute()
        except Exception as e:
            logger.error(f"Failed to update cart line {sanitize_id_for_logging(line.product_id)}: {e}", exc_info=True)
            raise StoreUnavailableError(f"Remote cart update failed: {e}") from e

    async def delete_line(self, user_id: str, product_id: str) -> None:
        """Delete a line. Deleting a missing line is not an error."""
        try:
            await self.client.table(self.table).delete().eq(
                "user_id", user_id
            ).eq("product_id", product_id).execute()
        except Exception as e:
            logger.error(f"Failed to delete cart line {sanitize_id_for_logging(product_id)}: {e}", exc_info=True)
            raise StoreUnavailableError(f"Remote cart delete failed: {e}") from e

    async def delete_all(self, user_id: str) -> None:
        try:
            await self.client.table(self.table).delete().eq("user_id", user_id).execute()
        except Exception as e:
            logger.error(f"Failed to clear cart for {sanitize_id_for_logging(user_id)}: {e}", exc_info=True)
            raise StoreUnavailableError(f"Remote cart clear failed: {e}") from e
