"""
Cart Models - Pydantic schemas for cart lines, products, snapshots and identity.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from cartsync.money import multiply, round_money, to_decimal

GUEST_OWNER = "guest"


# ============================================================
# Enums
# ============================================================

class IdentityState(str, Enum):
    """Who is looking at the cart."""
    ANONYMOUS = "anonymous"
    UNVERIFIED = "unverified"  # Logged in, verification gate not passed
    VERIFIED = "verified"


class CartState(str, Enum):
    """Reconciliation engine states."""
    BOOTSTRAPPING = "bootstrapping"  # Identity not resolved yet
    GUEST_ACTIVE = "guest_active"  # Local store authoritative
    MERGE_PENDING = "merge_pending"  # Guest lines being moved to remote
    REMOTE_ACTIVE = "remote_active"  # Remote store authoritative
    BLOCKED = "blocked"  # Unverified account, no cart


class CartAction(str, Enum):
    """Intents a UI collaborator can dispatch to the facade."""
    ADD = "add"
    REMOVE = "remove"
    UPDATE = "update"
    CLEAR = "clear"
    REFRESH = "refresh"


# ============================================================
# Entities
# ============================================================

class Product(BaseModel):
    """Product snapshot attached to a cart line for display."""
    id: str
    name: str = Field(default="", alias="product_name")
    sku: Optional[str] = None
    slug: Optional[str] = None
    thumbnail: Optional[str] = None
    stock_quantity: int = 0
    with_customer_count: int = Field(default=0, alias="withCustomer")
    status: Optional[str] = Field(default=None, alias="post_status")
    price: Optional[Decimal] = None

    class Config:
        extra = "ignore"
        populate_by_name = True

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v) if v is not None else v

    @field_validator("stock_quantity", "with_customer_count", mode="before")
    @classmethod
    def coerce_count(cls, v):
        # Columns are nullable text in the products table
        if v is None or v == "":
            return 0
        try:
            return int(v)
        except (TypeError, ValueError):
            return 0

    @field_validator("price", mode="before")
    @classmethod
    def convert_price_to_decimal(cls, v):
        return None if v is None else to_decimal(v)


class CartLine(BaseModel):
    """One product in a cart. product_id is unique within a cart."""
    product_id: str
    quantity: int = Field(ge=1)
    owner: str = GUEST_OWNER
    created_at: Optional[datetime] = None
    id: Optional[str] = None  # Remote row id, None for guest lines

    class Config:
        extra = "ignore"

    def to_local(self) -> dict:
        """Row shape stored in the guest slot."""
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "user_id": GUEST_OWNER,
        }


class EnrichedCartLine(CartLine):
    """Cart line plus the product snapshot, if enrichment found one."""
    product: Optional[Product] = None

    @property
    def unit_price(self) -> Decimal:
        if self.product is None or self.product.price is None:
            return Decimal("0")
        return self.product.price

    @property
    def line_total(self) -> Decimal:
        return multiply(self.unit_price, self.quantity)


class CartSnapshot(BaseModel):
    """Observable cart state handed to collaborators."""
    lines: List[EnrichedCartLine] = []
    is_loading: bool = False
    is_mutating: bool = False
    mutating_product_id: Optional[str] = None
    state: CartState = CartState.BOOTSTRAPPING

    @property
    def count(self) -> int:
        """Number of distinct lines, not units."""
        return len(self.lines)

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def total(self) -> Decimal:
        return round_money(sum((line.line_total for line in self.lines), Decimal("0")))

    def quantity_of(self, product_id: str) -> int:
        for line in self.lines:
            if line.product_id == product_id:
                return line.quantity
        return 0


class Identity(BaseModel):
    """Resolved identity of the current shopper."""
    state: IdentityState
    user_id: Optional[str] = None

    @model_validator(mode="after")
    def check_user_id(self):
        if self.state != IdentityState.ANONYMOUS and not self.user_id:
            raise ValueError("authenticated identity requires user_id")
        if self.state == IdentityState.ANONYMOUS:
            self.user_id = None
        return self

    @classmethod
    def anonymous(cls) -> "Identity":
        return cls(state=IdentityState.ANONYMOUS)

    @classmethod
    def verified(cls, user_id: str) -> "Identity":
        return cls(state=IdentityState.VERIFIED, user_id=user_id)

    @classmethod
    def unverified(cls, user_id: str) -> "Identity":
        return cls(state=IdentityState.UNVERIFIED, user_id=user_id)


class CartIntent(BaseModel):
    """Message dispatched by a UI collaborator."""
    action: CartAction
    product_id: Optional[str] = None
    quantity: Optional[int] = None

    @model_validator(mode="after")
    def check_fields(self):
        needs_product = self.action in (CartAction.ADD, CartAction.REMOVE, CartAction.UPDATE)
        if needs_product and not self.product_id:
            raise ValueError(f"{self.action.value} intent requires product_id")
        if self.action == CartAction.UPDATE and self.quantity is None:
            raise ValueError("update intent requires quantity")
        return self
