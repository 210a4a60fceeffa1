"""
Cart Errors

Centralized user-facing messages and the exception types raised by the
cart engine and its stores.
"""

# Access control
ERROR_ACCOUNT_NOT_VERIFIED = "Your account is not verified. Please contact administrator."

# Store failures
ERROR_LOCAL_CART_UNAVAILABLE = "Guest cart is unavailable. Please try again."
ERROR_REMOTE_CART_UNAVAILABLE = "Cart service unavailable. Please try again."

# Engine guard
ERROR_CART_BUSY = "Another cart update is in progress."
ERROR_CART_NOT_READY = "Cart is still loading."

# Merge
ERROR_MERGE_LINE_FAILED = "Guest cart item could not be merged"

# Input
ERROR_INVALID_QUANTITY = "quantity must be an integer"
ERROR_INVALID_PRODUCT_ID = "product_id must be a non-empty string"


class CartError(Exception):
    """Base class for cart failures that carry a message safe to show a shopper."""

    default_message = "Cart operation failed"

    def __init__(self, message: str | None = None, *, user_message: str | None = None):
        self.user_message = user_message or self.default_message
        super().__init__(message or self.user_message)


class AccessDeniedError(CartError):
    """Mutation attempted while the account is authenticated but not verified."""

    default_message = ERROR_ACCOUNT_NOT_VERIFIED


class StoreUnavailableError(CartError):
    """A local or remote cart store call failed."""

    default_message = ERROR_REMOTE_CART_UNAVAILABLE

    def __init__(self, message: str | None = None, *, store: str = "remote", user_message: str | None = None):
        self.store = store
        if user_message is None:
            user_message = ERROR_LOCAL_CART_UNAVAILABLE if store == "local" else ERROR_REMOTE_CART_UNAVAILABLE
        super().__init__(message, user_message=user_message)


class CartBusyError(CartError):
    """A second mutation was issued while one was still in flight."""

    default_message = ERROR_CART_BUSY


class CartNotReadyError(CartError):
    """A mutation was issued before the identity resolved."""

    default_message = ERROR_CART_NOT_READY


class MergeConflictError(CartError):
    """One guest line could not be merged into the remote cart."""

    default_message = ERROR_MERGE_LINE_FAILED

    def __init__(self, product_id: str, cause: Exception | None = None):
        self.product_id = product_id
        self.cause = cause
        super().__init__(f"{ERROR_MERGE_LINE_FAILED}: {product_id}")


__all__ = [
    "ERROR_ACCOUNT_NOT_VERIFIED",
    "ERROR_LOCAL_CART_UNAVAILABLE",
    "ERROR_REMOTE_CART_UNAVAILABLE",
    "ERROR_CART_BUSY",
    "ERROR_CART_NOT_READY",
    "ERROR_MERGE_LINE_FAILED",
    "ERROR_INVALID_QUANTITY",
    "ERROR_INVALID_PRODUCT_ID",
    "CartError",
    "AccessDeniedError",
    "StoreUnavailableError",
    "CartBusyError",
    "CartNotReadyError",
    "MergeConflictError",
]
