"""Product Enrichment Service - batched product lookups for cart display."""
from typing import Dict, Iterable

from pydantic import ValidationError
from supabase._async.client import AsyncClient

from cartsync.db import PRODUCTS_TABLE
from cartsync.logging import get_logger
from cartsync.models import Product

logger = get_logger(__name__)

PRODUCT_COLUMNS = "id, product_name, sku, slug, thumbnail, stock_quantity, withCustomer, post_status, price"


class ProductEnrichmentService:
    """
    Read-only product metadata for cart lines.

    Never raises on lookup failure: a cart that cannot be enriched is
    shown degraded, not hidden.
    """

    def __init__(self, client: AsyncClient, table: str = PRODUCTS_TABLE):
        self.client = client
        self.table = table

    async def enrich(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        """Map of product_id -> Product for every id the catalog knows."""
        ids = list(dict.fromkeys(pid for pid in product_ids if pid))
        if not ids:
            return {}

        try:
            result = await self.client.table(self.table).select(PRODUCT_COLUMNS).in_("id", ids).execute()
        except Exception as e:
            logger.warning(f"Product enrichment degraded for {len(ids)} cart lines: {e}")
            return {}

        products: Dict[str, Product] = {}
        for row in result.data or []:
            try:
                product = Product(**row)
            except ValidationError as e:
                logger.warning(f"Skipping malformed product row: {e}")
                continue
            products[product.id] = product

        missing = len(ids) - len(products)
        if missing:
            logger.debug(f"{missing} cart products not found in catalog")
        return products
