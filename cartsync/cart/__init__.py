"""Cart package: reconciliation engine, facade and stock policy."""
from .engine import CartEngine
from .facade import CartFacade, create_cart
from .policy import clamp_to_stock, clamp_increment, is_orderable

__all__ = [
    "CartEngine",
    "CartFacade",
    "create_cart",
    "clamp_to_stock",
    "clamp_increment",
    "is_orderable",
]
