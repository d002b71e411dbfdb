"""
Catalog store: products, their variation options and purchasable variants.

Variant stock is written only through ``decrement_stock`` (checkout) and
``increment_stock`` (cancellation), plus full variant replacement by an
administrator in ``update_product``.
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from database import UnitOfWork
from errors import DuplicateSkuError, InvalidFilterError, InvalidVariantAttributesError, ProductNotFoundError
from schemas import OrderItemSnapshot, Product

logger = structlog.get_logger(__name__)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def validate_variant_attributes(options: List[Dict[str, Any]], variants: List[Dict[str, Any]]) -> None:
    """Reject variants whose attribute names are not among the product's options.

    Example: with options Size and Color, ``{"Size": "42", "Fabric": "Silk"}``
    is rejected because of ``Fabric``.
    """
    allowed = [opt["name"] for opt in options]
    names = set(allowed)
    for variant in variants:
        for key in (variant.get("attributes") or {}):
            if key not in names:
                raise InvalidVariantAttributesError(variant.get("sku", ""), key, allowed)


def find_variant(product: Dict[str, Any], sku: str) -> Optional[Dict[str, Any]]:
    for variant in product.get("variants", []):
        if variant.get("sku") == sku:
            return variant
    return None


def build_snapshot(product: Dict[str, Any], variant: Dict[str, Any]) -> OrderItemSnapshot:
    images = variant.get("images") or []
    attributes = {str(k): str(v) for k, v in (variant.get("attributes") or {}).items()}
    return OrderItemSnapshot(
        title=product["title"],
        price=float(variant["price"]),
        image=images[0] if images else None,
        attributes=attributes,
    )


def find_product(uow: UnitOfWork, product_id: Any) -> Optional[Dict[str, Any]]:
    oid = to_object_id(product_id)
    if oid is None:
        return None
    return uow.db["product"].find_one({"_id": oid}, **uow.options)


def get_product(uow: UnitOfWork, product_id: Any) -> Dict[str, Any]:
    product = find_product(uow, product_id)
    if not product:
        raise ProductNotFoundError(str(product_id))
    return product


def _check_unique_skus(uow: UnitOfWork, variants: List[Dict[str, Any]], exclude_id: Optional[ObjectId] = None) -> None:
    seen = set()
    for variant in variants:
        if variant["sku"] in seen:
            raise DuplicateSkuError(variant["sku"])
        seen.add(variant["sku"])

    query: Dict[str, Any] = {"variants.sku": {"$in": list(seen)}}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    clash = uow.db["product"].find_one(query, **uow.options)
    if clash:
        sku = next(v["sku"] for v in clash["variants"] if v["sku"] in seen)
        raise DuplicateSkuError(sku)


def _duplicate_sku(exc: DuplicateKeyError) -> str:
    details = exc.details or {}
    return str((details.get("keyValue") or {}).get("variants.sku", "unknown"))


def create_product(uow: UnitOfWork, product: Product) -> Dict[str, Any]:
    data = product.model_dump()
    validate_variant_attributes(data["options"], data["variants"])
    _check_unique_skus(uow, data["variants"])

    now = datetime.now(timezone.utc)
    try:
        pid = uow.db["product"].insert_one({**data, "created_at": now, "updated_at": now}, **uow.options).inserted_id
    except DuplicateKeyError as exc:
        raise DuplicateSkuError(_duplicate_sku(exc)) from exc

    logger.info("Product created", product_id=str(pid), title=data["title"], variants=len(data["variants"]))
    return get_product(uow, pid)


def update_product(uow: UnitOfWork, product_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a partial update, keeping variant attributes consistent with options."""
    existing = get_product(uow, product_id)

    if "options" in updates or "variants" in updates:
        options = updates.get("options", existing.get("options", []))
        variants = updates.get("variants", existing.get("variants", []))
        validate_variant_attributes(options, variants)
        if "variants" in updates:
            _check_unique_skus(uow, variants, exclude_id=existing["_id"])

    changes = {**updates, "updated_at": datetime.now(timezone.utc)}
    try:
        uow.db["product"].update_one({"_id": existing["_id"]}, {"$set": changes}, **uow.options)
    except DuplicateKeyError as exc:
        raise DuplicateSkuError(_duplicate_sku(exc)) from exc

    logger.info("Product updated", product_id=str(existing["_id"]), fields=sorted(updates))
    return get_product(uow, existing["_id"])


def delete_product(uow: UnitOfWork, product_id: str) -> None:
    oid = to_object_id(product_id)
    if oid is None:
        raise ProductNotFoundError(product_id)
    res = uow.db["product"].delete_one({"_id": oid}, **uow.options)
    if res.deleted_count == 0:
        raise ProductNotFoundError(product_id)
    logger.info("Product deleted", product_id=product_id)


def list_products(
    uow: UnitOfWork,
    filters: Optional[Dict[str, str]] = None,
    search: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    """List products newest first.

    ``filters`` matches variant attributes dynamically: ``{"Color": "Red"}``
    finds products having at least one red variant.
    """
    query: Dict[str, Any] = {}
    for key, value in (filters or {}).items():
        if not key or "$" in key or "." in key:
            raise InvalidFilterError(key)
        query[f"variants.attributes.{key}"] = value
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"tags": {"$regex": pattern, "$options": "i"}},
        ]
    if category:
        query["category"] = category
    if min_price is not None or max_price is not None:
        price: Dict[str, float] = {}
        if min_price is not None:
            price["$gte"] = min_price
        if max_price is not None:
            price["$lte"] = max_price
        query["base_price"] = price

    page = max(1, page)
    limit = max(1, min(limit, 100))
    collection = uow.db["product"]
    total = collection.count_documents(query, **uow.options)
    cursor = (
        collection.find(query, **uow.options)
        .sort([("created_at", -1), ("_id", -1)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {
        "products": list(cursor),
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit),
        "filters": filters or {},
    }


def decrement_stock(uow: UnitOfWork, product_id: Any, sku: str, quantity: int) -> bool:
    """Take ``quantity`` units of ``sku`` if, at write time, at least that many remain.

    Returns False when no variant matched, i.e. a concurrent purchase drained
    the stock after it was read.
    """
    oid = to_object_id(product_id)
    products = uow.db["product"]
    res = products.update_one(
        {"_id": oid, "variants": {"$elemMatch": {"sku": sku, "stock": {"$gte": quantity}}}},
        {"$inc": {"variants.$.stock": -quantity}},
        **uow.options,
    )
    if res.modified_count == 0:
        return False
    uow.on_abort(
        lambda: products.update_one({"_id": oid, "variants.sku": sku}, {"$inc": {"variants.$.stock": quantity}})
    )
    return True


def increment_stock(uow: UnitOfWork, product_id: Any, sku: str, quantity: int) -> bool:
    """Give back ``quantity`` units of ``sku``. A deleted product or variant is left alone."""
    oid = to_object_id(product_id)
    if oid is None:
        return False
    products = uow.db["product"]
    res = products.update_one(
        {"_id": oid, "variants.sku": sku},
        {"$inc": {"variants.$.stock": quantity}},
        **uow.options,
    )
    if res.modified_count == 0:
        return False
    uow.on_abort(
        lambda: products.update_one({"_id": oid, "variants.sku": sku}, {"$inc": {"variants.$.stock": -quantity}})
    )
    return True
