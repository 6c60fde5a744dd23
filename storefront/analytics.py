"""Back-office sales figures. Cancelled orders are never counted."""
from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Optional, Tuple

from storefront.accounts import require_admin
from storefront.errors import ValidationError
from storefront.models import Profile, format_timestamp, parse_timestamp, utcnow
from storefront.session_guard import GuardedClient


GROUP_BY = ("day", "week", "month")


def start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(dt: datetime) -> datetime:
    """Weeks start on Monday."""
    return start_of_day(dt) - timedelta(days=dt.weekday())


def start_of_month(dt: datetime) -> datetime:
    return start_of_day(dt).replace(day=1)


def _next_month(dt: datetime) -> datetime:
    return (dt.replace(day=28) + timedelta(days=4)).replace(day=1)


def _load_orders(
    db: GuardedClient,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    with_items: bool = True,
) -> Tuple[List[Dict[str, Any]], Dict[str, List[Dict[str, Any]]]]:
    filters: Dict[str, Any] = {"status": ("neq", "cancelled")}
    created: List[Tuple[str, Any]] = []
    if start is not None:
        created.append(("gte", format_timestamp(start)))
    if end is not None:
        created.append(("lte", format_timestamp(end)))
    if created:
        filters["created_at"] = created

    orders = db.select("orders", "id,user_id,total_amount,created_at,status", filters=filters, order="created_at.asc")
    items: Dict[str, List[Dict[str, Any]]] = {}
    if with_items and orders:
        rows = db.select(
            "order_items",
            "order_id,product_id,quantity,price",
            filters={"order_id": ("in", [o["id"] for o in orders])},
        )
        for r in rows:
            items.setdefault(str(r["order_id"]), []).append(r)
    return orders, items


def _local(value: Any, tz: tzinfo) -> datetime:
    return parse_timestamp(value).astimezone(tz)


def _quantity(items: List[Dict[str, Any]]) -> int:
    return sum(int(i.get("quantity") or 0) for i in items)


def global_stats(db: GuardedClient, actor: Optional[Profile], now: Optional[datetime] = None, tz: tzinfo = timezone.utc) -> Dict[str, Any]:
    require_admin(actor)
    now = (now or utcnow()).astimezone(tz)
    today = start_of_day(now)
    week = start_of_week(now)
    month = start_of_month(now)
    windows = {
        "today": (today, today + timedelta(days=1)),
        "this_week": (week, week + timedelta(days=7)),
        "this_month": (month, _next_month(month)),
    }

    orders, _ = _load_orders(db, with_items=False)
    total_revenue = sum(float(o.get("total_amount") or 0) for o in orders)
    stats: Dict[str, Any] = {
        "total_orders": len(orders),
        "total_revenue": round(total_revenue, 2),
        "total_customers": len({o.get("user_id") for o in orders if o.get("user_id")}),
        "avg_order_value": round(total_revenue / len(orders), 2) if orders else 0.0,
    }
    for name, (lo, hi) in windows.items():
        hits = [o for o in orders if lo <= _local(o["created_at"], tz) < hi]
        stats[f"orders_{name}"] = len(hits)
        stats[f"revenue_{name}"] = round(sum(float(o.get("total_amount") or 0) for o in hits), 2)
    return stats


def sales_by_period(
    db: GuardedClient,
    actor: Optional[Profile],
    start: datetime,
    end: datetime,
    group_by: str = "day",
    tz: tzinfo = timezone.utc,
) -> List[Dict[str, Any]]:
    require_admin(actor)
    if group_by not in GROUP_BY:
        raise ValidationError(f"group_by must be one of {', '.join(GROUP_BY)}")

    orders, items = _load_orders(db, start, end)
    buckets: Dict[str, Dict[str, Any]] = {}
    for o in orders:
        dt = _local(o["created_at"], tz)
        if group_by == "week":
            dt = start_of_week(dt)
        elif group_by == "month":
            dt = start_of_month(dt)
        key = dt.strftime("%Y-%m-%d")
        b = buckets.setdefault(key, {"date": key, "sales": 0, "orders": 0, "revenue": 0.0})
        b["sales"] += _quantity(items.get(str(o["id"]), []))
        b["orders"] += 1
        b["revenue"] += float(o.get("total_amount") or 0)

    return [dict(b, revenue=round(b["revenue"], 2)) for _, b in sorted(buckets.items())]


def sales_by_hour(db: GuardedClient, actor: Optional[Profile], start: datetime, end: datetime, tz: tzinfo = timezone.utc) -> List[Dict[str, Any]]:
    require_admin(actor)
    orders, items = _load_orders(db, start, end)
    hours = [{"hour": h, "sales": 0, "orders": 0, "revenue": 0.0} for h in range(24)]
    for o in orders:
        h = hours[_local(o["created_at"], tz).hour]
        h["sales"] += _quantity(items.get(str(o["id"]), []))
        h["orders"] += 1
        h["revenue"] += float(o.get("total_amount") or 0)
    for h in hours:
        h["revenue"] = round(h["revenue"], 2)
    return hours


def best_sellers(
    db: GuardedClient,
    actor: Optional[Profile],
    start: datetime,
    end: datetime,
    category: Optional[str] = None,
    limit: int = 10,
) -> List[Dict[str, Any]]:
    require_admin(actor)
    orders, items = _load_orders(db, start, end)
    all_items = [i for o in orders for i in items.get(str(o["id"]), [])]
    product_ids = sorted({str(i["product_id"]) for i in all_items if i.get("product_id")})
    if not product_ids:
        return []
    products = {
        str(p["id"]): p
        for p in db.select("products", "id,name,reference,category,image_url", filters={"id": ("in", product_ids)})
    }

    stats: Dict[str, Dict[str, Any]] = {}
    for i in all_items:
        p = products.get(str(i.get("product_id")))
        if p is None:
            continue
        if category and category != "all" and p.get("category") != category:
            continue
        s = stats.setdefault(
            str(p["id"]),
            {
                "product_id": str(p["id"]),
                "product_name": p.get("name") or "",
                "product_reference": p.get("reference") or "",
                "category": p.get("category") or "",
                "image_url": p.get("image_url") or "",
                "total_quantity": 0,
                "total_revenue": 0.0,
                "orders_count": 0,
            },
        )
        qty = int(i.get("quantity") or 0)
        s["total_quantity"] += qty
        s["total_revenue"] = round(s["total_revenue"] + float(i.get("price") or 0) * qty, 2)
        s["orders_count"] += 1

    ranked = sorted(stats.values(), key=lambda s: (-s["total_quantity"], s["product_name"].lower()))
    return ranked[: max(0, int(limit))]


def product_stats(
    db: GuardedClient,
    actor: Optional[Profile],
    product_id: str,
    start: datetime,
    end: datetime,
    tz: tzinfo = timezone.utc,
) -> Optional[Dict[str, Any]]:
    """Daily and hourly series for one product; None when it sold nothing in range."""
    require_admin(actor)
    orders, items = _load_orders(db, start, end)

    daily: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    hourly = [{"hour": h, "sales": 0, "orders": 0, "revenue": 0.0} for h in range(24)]
    total_qty = 0
    total_revenue = 0.0

    for o in orders:
        lines = [i for i in items.get(str(o["id"]), []) if str(i.get("product_id")) == str(product_id)]
        if not lines:
            continue
        dt = _local(o["created_at"], tz)
        qty = _quantity(lines)
        revenue = sum(float(i.get("price") or 0) * int(i.get("quantity") or 0) for i in lines)

        key = dt.strftime("%Y-%m-%d")
        d = daily.setdefault(key, {"date": key, "sales": 0, "orders": 0, "revenue": 0.0})
        d["sales"] += qty
        d["orders"] += 1
        d["revenue"] += revenue

        h = hourly[dt.hour]
        h["sales"] += qty
        h["orders"] += 1
        h["revenue"] += revenue

        total_qty += qty
        total_revenue += revenue

    if not daily:
        return None

    peak_hour = max(hourly, key=lambda h: (h["sales"], -h["hour"]))["hour"]
    peak_day = max(daily.values(), key=lambda d: d["sales"])["date"]
    return {
        "product_id": str(product_id),
        "daily_sales": [dict(d, revenue=round(d["revenue"], 2)) for d in daily.values()],
        "hourly_sales": [dict(h, revenue=round(h["revenue"], 2)) for h in hourly],
        "total_quantity": total_qty,
        "total_revenue": round(total_revenue, 2),
        "peak_hour": peak_hour,
        "peak_day": peak_day,
    }
