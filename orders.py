"""
Order ledger and the checkout / cancellation workflows.

``create_order`` turns a user's cart into an order inside one unit of work:
stock is decremented with a conditional write, each item gets a snapshot of
the product as it is at that instant, the order is inserted and the cart is
emptied. Any failure aborts the unit of work, so stock is never taken
without a persisted order and no order exists without reserved stock.

``cancel_order`` is the compensating operation: it gives the stock back and
marks the order CANCELLED, again inside one unit of work.
"""

import secrets
import string
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from pymongo import DESCENDING

import carts
import catalog
import database
from database import UnitOfWork
from errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    ProductNotFoundError,
    ShopError,
    StockConflictError,
    VariantNotFoundError,
)
from schemas import CurrentUser, Order, OrderItem, OrderStatus, ShippingAddress

logger = structlog.get_logger(__name__)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits
NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def generate_order_number() -> str:
    """``ORD-<epoch ms>-<5 random characters>``, unique without a shared counter."""
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(5))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def _place_order(uow: UnitOfWork, user_id: str, shipping_address: ShippingAddress, log) -> Any:
    cart = carts.load_cart(uow, user_id)
    if not cart or not cart.get("items"):
        raise EmptyCartError(user_id)

    items: List[OrderItem] = []
    total = 0.0
    for line in cart["items"]:
        sku = line["variant_sku"]
        quantity = int(line["quantity"])

        product = catalog.find_product(uow, line["product_id"])
        if not product:
            raise ProductNotFoundError(str(line["product_id"]))

        variant = catalog.find_variant(product, sku)
        if variant is None:
            raise VariantNotFoundError(sku, product["title"])

        if variant["stock"] < quantity:
            raise InsufficientStockError(sku, variant["stock"], quantity, product["title"])

        # Re-checks stock at write time; the read above may already be stale.
        if not catalog.decrement_stock(uow, product["_id"], sku, quantity):
            raise StockConflictError(sku, quantity, product["title"])
        log.info("Stock decremented", sku=sku, quantity=quantity)

        items.append(OrderItem(
            product_id=str(product["_id"]),
            variant_sku=sku,
            quantity=quantity,
            snapshot=catalog.build_snapshot(product, variant),
        ))
        total += float(variant["price"]) * quantity

    order = Order(
        order_number=generate_order_number(),
        user_id=user_id,
        items=items,
        total=round(total, 2),
        status=OrderStatus.PENDING,
        shipping_address=shipping_address,
    )
    now = datetime.now(timezone.utc)
    orders = uow.db["order"]
    order_id = orders.insert_one(
        {**order.model_dump(mode="json"), "created_at": now, "updated_at": now}, **uow.options
    ).inserted_id
    uow.on_abort(lambda: orders.delete_one({"_id": order_id}))

    carts.empty_cart(uow, cart)

    log.info("Order placed", order_number=order.order_number, items=len(items), total=order.total)
    return order_id


def create_order(user: CurrentUser, shipping_address: ShippingAddress) -> Dict[str, Any]:
    """Create an order from the user's cart, all or nothing."""
    log = logger.bind(user_id=user.id)
    log.info("Starting order creation")
    try:
        with database.transaction() as uow:
            order_id = _place_order(uow, user.id, shipping_address, log)
            order = _load(uow, {"_id": order_id}, str(order_id))
    except ShopError as exc:
        log.warning("Order creation rejected, transaction rolled back", error=exc.message)
        raise
    except Exception:
        log.exception("Order creation failed, transaction rolled back")
        raise

    return order


def _load(uow: UnitOfWork, query: Dict[str, Any], order_id: str) -> Dict[str, Any]:
    order = uow.db["order"].find_one(query, **uow.options)
    if not order:
        raise OrderNotFoundError(order_id)
    return order


def _scope(order_id: str, user_id: Optional[str]) -> Dict[str, Any]:
    oid = catalog.to_object_id(order_id)
    if oid is None:
        raise OrderNotFoundError(order_id)
    query: Dict[str, Any] = {"_id": oid}
    if user_id is not None:
        query["user_id"] = user_id
    return query


def _set_status(uow: UnitOfWork, order: Dict[str, Any], status: OrderStatus) -> bool:
    """Move ``order`` to ``status`` if it still has the status it was read with."""
    orders = uow.db["order"]
    previous = {"status": order["status"], "updated_at": order.get("updated_at")}
    res = orders.update_one(
        {"_id": order["_id"], "status": order["status"]},
        {"$set": {"status": status.value, "updated_at": datetime.now(timezone.utc)}},
        **uow.options,
    )
    if res.modified_count == 0:
        return False
    uow.on_abort(lambda: orders.update_one({"_id": order["_id"], "status": status.value}, {"$set": previous}))
    return True


def cancel_order(user: CurrentUser, order_id: str) -> Dict[str, Any]:
    """Cancel a PENDING order and give its stock back.

    Customers can only cancel their own orders; administrators any order.
    The status change is claimed before any stock moves, so two concurrent
    cancellations of one order restore its stock once.
    """
    query = _scope(order_id, None if user.is_admin else user.id)
    log = logger.bind(user_id=user.id, order_id=order_id)
    try:
        with database.transaction() as uow:
            order = _load(uow, query, order_id)
            if order["status"] != OrderStatus.PENDING.value:
                raise InvalidStateTransitionError(order["status"])
            if not _set_status(uow, order, OrderStatus.CANCELLED):
                raise InvalidStateTransitionError(_load(uow, query, order_id)["status"])

            for item in order["items"]:
                sku = item["variant_sku"]
                if catalog.increment_stock(uow, item["product_id"], sku, item["quantity"]):
                    log.info("Stock restored", sku=sku, quantity=item["quantity"])
                else:
                    log.warning("Stock not restored, variant no longer exists", sku=sku, quantity=item["quantity"])

            cancelled = _load(uow, query, order_id)
    except ShopError as exc:
        log.warning("Order cancellation rejected", error=exc.message)
        raise
    except Exception:
        log.exception("Order cancellation failed, transaction rolled back")
        raise

    log.info("Order cancelled", order_number=order["order_number"])
    return cancelled


def update_order_status(order_id: str, status: OrderStatus) -> Dict[str, Any]:
    """Administrative status change. Touches only the order record."""
    uow = database.autocommit()
    query = _scope(order_id, None)
    res = uow.db["order"].update_one(
        query, {"$set": {"status": status.value, "updated_at": datetime.now(timezone.utc)}}, **uow.options
    )
    if res.matched_count == 0:
        raise OrderNotFoundError(order_id)
    order = _load(uow, query, order_id)
    logger.info("Order status updated", order_number=order["order_number"], status=status.value)
    return order


def get_order(user_id: str, order_id: str) -> Dict[str, Any]:
    return _load(database.autocommit(), _scope(order_id, user_id), order_id)


def list_orders(user_id: str) -> List[Dict[str, Any]]:
    uow = database.autocommit()
    return list(uow.db["order"].find({"user_id": user_id}, sort=NEWEST_FIRST, **uow.options))


def list_all_orders(status: Optional[OrderStatus] = None) -> List[Dict[str, Any]]:
    uow = database.autocommit()
    query = {"status": status.value} if status else {}
    return list(uow.db["order"].find(query, sort=NEWEST_FIRST, **uow.options))
