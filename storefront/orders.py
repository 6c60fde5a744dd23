from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from storefront.accounts import require_admin
from storefront.errors import BackendError, NotFound, ValidationError
from storefront.models import (
    ORDER_STATUSES,
    CartItem,
    Order,
    OrderItem,
    Product,
    Profile,
    RelayPoint,
    ShippingAddress,
    format_timestamp,
    utcnow,
)
from storefront.payments import validate_delivery
from storefront.session_guard import GuardedClient


log = logging.getLogger(__name__)


def _attach_items(db: GuardedClient, order_rows: List[Dict[str, Any]]) -> List[Order]:
    if not order_rows:
        return []
    ids = [r["id"] for r in order_rows]
    item_rows = db.select("order_items", filters={"order_id": ("in", ids)})

    product_ids = sorted({str(r["product_id"]) for r in item_rows if r.get("product_id")})
    products: Dict[str, Product] = {}
    if product_ids:
        for r in db.select("products", filters={"id": ("in", product_ids)}):
            products[str(r["id"])] = Product.from_row(r, [])

    by_order: Dict[str, List[OrderItem]] = {}
    for r in item_rows:
        item = OrderItem.from_row(r, products.get(str(r.get("product_id"))))
        by_order.setdefault(item.order_id, []).append(item)

    return [Order.from_row(r, by_order.get(str(r["id"]), [])) for r in order_rows]


def list_for_user(db: GuardedClient, user_id: str) -> List[Order]:
    rows = db.select("orders", filters={"user_id": user_id}, order="created_at.desc", operation_id=f"fetch-personal-orders:{user_id}")
    return _attach_items(db, rows)


def list_all(db: GuardedClient, actor: Optional[Profile]) -> List[Order]:
    """All orders with a `customer` block for the back-office."""
    require_admin(actor)
    rows = db.select("orders", order="created_at.desc", operation_id="fetch-all-orders")
    orders = _attach_items(db, rows)
    if not orders:
        return []

    profiles: Dict[str, Dict[str, Any]] = {}
    user_ids = sorted({o.user_id for o in orders if o.user_id})
    try:
        for p in db.select("profiles", "id,first_name,last_name,email", filters={"id": ("in", user_ids)}):
            profiles[str(p["id"])] = p
    except BackendError as e:
        log.warning("Error fetching profiles for orders (non-critical): %s", e)

    for o in orders:
        p = profiles.get(o.user_id)
        sa = o.shipping_address
        if p:
            o.customer = {
                "first_name": p.get("first_name") or "",
                "last_name": p.get("last_name") or "",
                "email": p.get("email") or sa.email or "",
            }
        else:
            o.customer = {
                "first_name": sa.first_name or "Unknown",
                "last_name": sa.last_name or "customer",
                "email": sa.email or "unknown@example.com",
            }
    return orders


def create_order(
    db: GuardedClient,
    user_id: str,
    items: List[CartItem],
    shipping: ShippingAddress,
    relay_point: Optional[RelayPoint],
    shipping_price: float = 0.0,
) -> Order:
    """Classic order (no immediate payment): pending order plus its items."""
    items = [i for i in items if i.quantity > 0]
    if not items:
        raise ValidationError("Cart is empty")
    validate_delivery(shipping, relay_point)

    total = round(sum(i.line_total() for i in items) + float(shipping_price), 2)
    order_row = db.insert(
        "orders",
        {
            "user_id": user_id,
            "total_amount": total,
            "status": "pending",
            "shipping_address": shipping.to_dict(),
            "relay_point": relay_point.to_dict() if relay_point else None,
            "payment_intent_id": None,
        },
        operation_id=f"create-order:{user_id}",
    )[0]

    db.insert(
        "order_items",
        [
            {
                "order_id": order_row["id"],
                "product_id": i.product.id,
                "variant_id": i.variant_id,
                "quantity": i.quantity,
                "price": i.product.price,
            }
            for i in items
        ],
        operation_id=f"create-order-items:{order_row['id']}",
    )
    log.info("Created order %s for user %s (%.2f)", order_row["id"], user_id, total)

    refreshed = db.sequenced_refetch([("refresh-personal-orders", lambda: list_for_user(db, user_id))])
    for o in refreshed.get("refresh-personal-orders") or []:
        if o.id == str(order_row["id"]):
            return o
    return Order.from_row(order_row)


def update_status(db: GuardedClient, order_id: str, status: str, actor: Optional[Profile]) -> Order:
    require_admin(actor)
    status = (status or "").strip().lower()
    if status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid status: {status}")
    try:
        rows = db.update(
            "orders",
            {"status": status, "updated_at": format_timestamp(utcnow())},
            {"id": order_id},
            operation_id=f"update-order-status:{order_id}",
        )
    except NotFound:
        raise NotFound("Unknown order") from None
    log.info("Order %s moved to %s by %s", order_id, status, actor.id)
    return _attach_items(db, rows)[0]


# -------------------------
# Processor mirrors
# -------------------------
def _customer_id(db: GuardedClient, user_id: str) -> Optional[str]:
    rows = db.select("stripe_customers", "customer_id", filters={"user_id": user_id, "deleted_at": ("is", None)}, limit=1)
    return rows[0]["customer_id"] if rows else None


def list_payments(db: GuardedClient, user_id: str) -> List[Dict[str, Any]]:
    customer_id = _customer_id(db, user_id)
    if not customer_id:
        return []
    return db.select("stripe_orders", filters={"customer_id": customer_id}, order="created_at.desc")


def get_subscription(db: GuardedClient, user_id: str) -> Optional[Dict[str, Any]]:
    customer_id = _customer_id(db, user_id)
    if not customer_id:
        return None
    rows = db.select("stripe_subscriptions", filters={"customer_id": customer_id}, limit=1)
    return rows[0] if rows else None
