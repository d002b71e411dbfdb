"""Client-visible errors raised by the catalog, cart and order workflows."""

from typing import List, Optional


class ShopError(Exception):
    """Base exception for all shop errors. Rendered as a 4xx response."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class EmptyCartError(ShopError):
    """Raised when checkout is attempted on a missing or empty cart."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("Cart is empty. Cannot create order.")


class ProductNotFoundError(ShopError):
    status_code = 404

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class VariantNotFoundError(ShopError):
    status_code = 404

    def __init__(self, sku: str, product_title: Optional[str] = None):
        self.sku = sku
        self.product_title = product_title
        msg = f"Variant {sku} not found"
        if product_title:
            msg = f"{msg} in product {product_title}"
        super().__init__(msg)


class InsufficientStockError(ShopError):
    """Raised when a variant holds fewer units than requested."""

    def __init__(self, sku: str, available: int, requested: int, title: Optional[str] = None):
        self.sku = sku
        self.available = available
        self.requested = requested
        label = f"{title} ({sku})" if title else sku
        super().__init__(
            f"Insufficient stock for {label}. Available: {available}, Requested: {requested}"
        )


class StockConflictError(ShopError):
    """Raised when the conditional stock decrement matched no variant.

    Another purchase consumed the stock between the availability check and
    the write.
    """

    def __init__(self, sku: str, requested: int, title: Optional[str] = None):
        self.sku = sku
        self.requested = requested
        label = f"{title} ({sku})" if title else sku
        super().__init__(
            f"Failed to reserve stock for {label}. "
            "Stock may have been purchased by another customer."
        )


class OrderNotFoundError(ShopError):
    status_code = 404

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order not found")


class InvalidStateTransitionError(ShopError):
    def __init__(self, current_status: str):
        self.current_status = current_status
        super().__init__(
            f"Cannot cancel order with status {current_status}. "
            "Only PENDING orders can be cancelled."
        )


class CartItemNotFoundError(ShopError):
    status_code = 404

    def __init__(self, sku: str):
        self.sku = sku
        super().__init__(f"Item {sku} not found in cart")


class InvalidVariantAttributesError(ShopError):
    """Raised when a variant uses an attribute its product does not define."""

    def __init__(self, sku: str, attribute: str, allowed: List[str]):
        self.sku = sku
        self.attribute = attribute
        self.allowed = allowed
        super().__init__(
            f"Invalid attribute '{attribute}' in variant SKU '{sku}'. "
            f"Valid attributes are: {', '.join(allowed) or '(none)'}"
        )


class DuplicateSkuError(ShopError):
    def __init__(self, sku: str):
        self.sku = sku
        super().__init__(f"SKU '{sku}' already exists. SKUs must be globally unique.")


class InvalidFilterError(ShopError):
    """Raised when a product filter names an attribute that cannot be a field path."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Invalid filter attribute '{key}'")
