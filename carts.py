"""
Cart store: one item list per user.

Cart mutations check the requested quantity against live variant stock but
never reserve it. Stock is only taken when an order is placed.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

import catalog
from database import UnitOfWork
from errors import CartItemNotFoundError, InsufficientStockError, VariantNotFoundError

logger = structlog.get_logger(__name__)


def load_cart(uow: UnitOfWork, user_id: str) -> Optional[Dict[str, Any]]:
    return uow.db["cart"].find_one({"user_id": user_id}, **uow.options)


def _save_items(uow: UnitOfWork, user_id: str, items: List[Dict[str, Any]]) -> None:
    now = datetime.now(timezone.utc)
    uow.db["cart"].update_one(
        {"user_id": user_id},
        {"$set": {"items": items, "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
        **uow.options,
    )


def empty_cart(uow: UnitOfWork, cart: Dict[str, Any]) -> None:
    """Remove every line of ``cart``.

    An abort puts the previous lines back only while the cart is still empty;
    lines added in the meantime win over the restore.
    """
    carts = uow.db["cart"]
    previous = cart.get("items", [])
    carts.update_one(
        {"_id": cart["_id"]},
        {"$set": {"items": [], "updated_at": datetime.now(timezone.utc)}},
        **uow.options,
    )
    uow.on_abort(lambda: carts.update_one({"_id": cart["_id"], "items": []}, {"$set": {"items": previous}}))


def _empty_view(user_id: str) -> Dict[str, Any]:
    return {"user_id": user_id, "items": [], "total_items": 0, "total_amount": 0}


def get_cart(uow: UnitOfWork, user_id: str) -> Dict[str, Any]:
    """Cart with live product data and computed totals."""
    cart = load_cart(uow, user_id)
    if not cart:
        return _empty_view(user_id)

    total_amount = 0.0
    lines = []
    for item in cart.get("items", []):
        product = catalog.find_product(uow, item["product_id"]) or {}
        variant = catalog.find_variant(product, item["variant_sku"]) if product else None
        price = float(variant["price"]) if variant else 0.0
        item_total = price * item["quantity"]
        total_amount += item_total
        images = (variant or {}).get("images") or []
        lines.append({
            "product": {
                "id": item["product_id"],
                "title": product.get("title"),
                "image": images[0] if images else None,
            },
            "variant_sku": item["variant_sku"],
            "quantity": item["quantity"],
            "price": price,
            "stock": variant["stock"] if variant else 0,
            "attributes": (variant or {}).get("attributes", {}),
            "item_total": item_total,
        })

    return {
        "user_id": user_id,
        "items": lines,
        "total_items": len(lines),
        "total_amount": round(total_amount, 2),
    }


def _live_variant(uow: UnitOfWork, product_id: str, sku: str):
    product = catalog.get_product(uow, product_id)
    variant = catalog.find_variant(product, sku)
    if variant is None:
        raise VariantNotFoundError(sku, product.get("title"))
    return product, variant


def add_to_cart(uow: UnitOfWork, user_id: str, product_id: str, sku: str, quantity: int) -> Dict[str, Any]:
    product, variant = _live_variant(uow, product_id, sku)
    if variant["stock"] < quantity:
        raise InsufficientStockError(sku, variant["stock"], quantity, product["title"])

    cart = load_cart(uow, user_id)
    items = list(cart.get("items", [])) if cart else []
    for item in items:
        if item["product_id"] == product_id and item["variant_sku"] == sku:
            new_quantity = item["quantity"] + quantity
            if variant["stock"] < new_quantity:
                raise InsufficientStockError(sku, variant["stock"], new_quantity, product["title"])
            item["quantity"] = new_quantity
            break
    else:
        items.append({"product_id": product_id, "variant_sku": sku, "quantity": quantity})

    _save_items(uow, user_id, items)
    logger.info("Added to cart", user_id=user_id, sku=sku, quantity=quantity)
    return get_cart(uow, user_id)


def _find_line(cart: Optional[Dict[str, Any]], sku: str) -> int:
    for index, item in enumerate((cart or {}).get("items", [])):
        if item["variant_sku"] == sku:
            return index
    raise CartItemNotFoundError(sku)


def update_cart_item(uow: UnitOfWork, user_id: str, sku: str, quantity: int) -> Dict[str, Any]:
    cart = load_cart(uow, user_id)
    index = _find_line(cart, sku)
    items = list(cart["items"])

    product, variant = _live_variant(uow, items[index]["product_id"], sku)
    if variant["stock"] < quantity:
        raise InsufficientStockError(sku, variant["stock"], quantity, product["title"])

    items[index] = {**items[index], "quantity": quantity}
    _save_items(uow, user_id, items)
    logger.info("Updated cart item", user_id=user_id, sku=sku, quantity=quantity)
    return get_cart(uow, user_id)


def remove_cart_item(uow: UnitOfWork, user_id: str, sku: str) -> Dict[str, Any]:
    cart = load_cart(uow, user_id)
    index = _find_line(cart, sku)
    items = [item for i, item in enumerate(cart["items"]) if i != index]
    _save_items(uow, user_id, items)
    logger.info("Removed cart item", user_id=user_id, sku=sku)
    return get_cart(uow, user_id)


def clear_cart(uow: UnitOfWork, user_id: str) -> Dict[str, Any]:
    uow.db["cart"].update_one(
        {"user_id": user_id},
        {"$set": {"items": [], "updated_at": datetime.now(timezone.utc)}},
        **uow.options,
    )
    logger.info("Cleared cart", user_id=user_id)
    return _empty_view(user_id)
