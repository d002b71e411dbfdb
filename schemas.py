"""
Database Schemas for the Fashion Engine shop

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name by default.

We store:
- Product (variation options + purchasable variants with their own stock)
- Cart (one per user, no cached price or stock)
- Order (items carry a snapshot frozen at purchase time)
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    CUSTOMER = "CUSTOMER"


class CurrentUser(BaseModel):
    """Authenticated caller, passed explicitly into every workflow call."""
    id: str
    role: UserRole = UserRole.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class OrderStatus(str, Enum):
    PENDING = "PENDING"      # created, awaiting payment
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"  # terminal, stock restored


class ProductOption(BaseModel):
    name: str = Field(..., min_length=1, description="Variation axis, e.g. Size or Color")
    values: List[str] = Field(..., min_length=1, description="Allowed values for this axis")


class ProductVariant(BaseModel):
    sku: str = Field(..., min_length=1, max_length=100, description="Globally unique SKU")
    attributes: Dict[str, str] = Field(..., min_length=1, description="Option name -> value")
    stock: int = Field(..., ge=0, description="Available units")
    price: float = Field(..., ge=0, description="Variant price")
    images: List[str] = Field(default_factory=list, description="Image URLs")


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    title: str = Field(..., min_length=1, max_length=200, description="Product title")
    description: str = Field(..., min_length=1, description="Product description")
    base_price: float = Field(..., ge=0, description="Listing price")
    category: str = Field(..., description="Category id")
    tags: List[str] = Field(default_factory=list, description="Search tags")
    options: List[ProductOption] = Field(default_factory=list)
    variants: List[ProductVariant] = Field(..., min_length=1)


class CartItem(BaseModel):
    product_id: str = Field(..., description="Product id as string")
    variant_sku: str = Field(..., description="Variant SKU")
    quantity: int = Field(1, ge=1, description="Requested units")


class Cart(BaseModel):
    """
    Carts collection schema
    Collection name: "cart"
    """
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


class ShippingAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class OrderItemSnapshot(BaseModel):
    """Product data as it was at the instant of purchase. Never updated."""
    title: str
    price: float
    image: Optional[str] = None
    attributes: Dict[str, str] = Field(default_factory=dict)


class OrderItem(BaseModel):
    product_id: str
    variant_sku: str
    quantity: int = Field(..., ge=1)
    snapshot: OrderItemSnapshot


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    order_number: str
    user_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    total: float = Field(..., ge=0)
    status: OrderStatus = Field(OrderStatus.PENDING)
    shipping_address: ShippingAddress
