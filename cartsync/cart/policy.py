"""Stock policy shared by every caller that adds to or resizes a cart line.

The engine stores whatever quantity it is given; callers that want to cap
quantities at available stock run them through these helpers first.
"""
from typing import Optional

from cartsync.models import Product

# products.post_status value for listings that can be ordered
PUBLISHED_STATUS = "publish"


def is_orderable(product: Optional[Product]) -> bool:
    """Published and with at least one unit in stock."""
    if product is None:
        return False
    status = (product.status or "").strip().lower()
    return status == PUBLISHED_STATUS and product.stock_quantity > 0


def clamp_to_stock(quantity: int, product: Optional[Product]) -> int:
    """
    Cap a requested line quantity at the product's stock.

    Without a product snapshot (degraded enrichment) the quantity is
    returned unchanged; the caller cannot know the stock.
    """
    if product is None:
        return quantity
    return max(0, min(quantity, product.stock_quantity))


def clamp_increment(current: int, increment: int, product: Optional[Product]) -> int:
    """Largest increment that keeps current + increment within stock."""
    return clamp_to_stock(current + increment, product) - current
