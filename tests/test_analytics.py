"""Back-office sales figures."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from storefront import analytics
from storefront.errors import PermissionDenied, ValidationError
from storefront.models import Profile

ADMIN = Profile(id="admin-1", is_admin=True)
NOW = datetime(2025, 6, 18, 15, 0, tzinfo=timezone.utc)  # a Wednesday
START = datetime(2025, 6, 1, tzinfo=timezone.utc)
END = datetime(2025, 6, 30, 23, 59, tzinfo=timezone.utc)


def _order(backend, oid, created_at, total, items, user_id="u1", status="pending"):
    backend.insert(
        "orders",
        {"id": oid, "user_id": user_id, "total_amount": total, "status": status, "created_at": created_at},
    )
    for product_id, qty, price in items:
        backend.insert("order_items", {"order_id": oid, "product_id": product_id, "quantity": qty, "price": price})


@pytest.fixture
def sales(backend):
    backend.insert("products", {"id": "p1", "name": "Robe", "reference": "ROBE", "category": "Robes"})
    backend.insert("products", {"id": "p2", "name": "Jean", "reference": "JEAN", "category": "Jeans"})
    _order(backend, "o1", "2025-06-18T09:15:00+00:00", 50.0, [("p1", 2, 20.0)])
    _order(backend, "o2", "2025-06-18T09:45:00+00:00", 30.0, [("p1", 1, 20.0), ("p2", 1, 10.0)], user_id="u2")
    _order(backend, "o3", "2025-06-16T14:00:00+00:00", 10.0, [("p2", 1, 10.0)])
    _order(backend, "o4", "2025-06-02T20:00:00+00:00", 40.0, [("p2", 4, 10.0)])
    _order(backend, "o5", "2025-06-18T10:00:00+00:00", 999.0, [("p1", 50, 20.0)], status="cancelled")
    return backend


class TestGlobalStats:
    """Totals and today/week/month windows."""

    def test_windows(self, sales, db) -> None:
        s = analytics.global_stats(db, ADMIN, now=NOW)
        assert s["total_orders"] == 4
        assert s["total_revenue"] == pytest.approx(130.0)
        assert s["total_customers"] == 2
        assert s["avg_order_value"] == pytest.approx(32.5)
        assert s["orders_today"] == 2
        assert s["revenue_today"] == pytest.approx(80.0)
        assert s["orders_this_week"] == 3
        assert s["orders_this_month"] == 4

    def test_requires_admin(self, db) -> None:
        with pytest.raises(PermissionDenied):
            analytics.global_stats(db, Profile(id="u1"), now=NOW)

    def test_empty(self, db) -> None:
        s = analytics.global_stats(db, ADMIN, now=NOW)
        assert s["total_orders"] == 0
        assert s["avg_order_value"] == 0.0


class TestSeries:
    """Per-period and per-hour series."""

    def test_sales_by_day(self, sales, db) -> None:
        rows = analytics.sales_by_period(db, ADMIN, START, END, "day")
        assert [r["date"] for r in rows] == ["2025-06-02", "2025-06-16", "2025-06-18"]
        assert rows[-1] == {"date": "2025-06-18", "sales": 4, "orders": 2, "revenue": 80.0}

    def test_sales_by_week_starts_monday(self, sales, db) -> None:
        rows = analytics.sales_by_period(db, ADMIN, START, END, "week")
        assert [r["date"] for r in rows] == ["2025-06-02", "2025-06-16"]
        assert rows[1]["orders"] == 3

    def test_sales_by_month(self, sales, db) -> None:
        rows = analytics.sales_by_period(db, ADMIN, START, END, "month")
        assert rows == [{"date": "2025-06-01", "sales": 9, "orders": 4, "revenue": 130.0}]

    def test_bad_group_by(self, db) -> None:
        with pytest.raises(ValidationError):
            analytics.sales_by_period(db, ADMIN, START, END, "year")

    def test_hourly_has_24_entries(self, sales, db) -> None:
        hours = analytics.sales_by_hour(db, ADMIN, START, END)
        assert len(hours) == 24
        assert hours[9]["orders"] == 2
        assert hours[9]["sales"] == 4
        assert hours[3]["orders"] == 0


class TestProducts:
    """Best sellers and single-product detail."""

    def test_best_sellers(self, sales, db) -> None:
        rows = analytics.best_sellers(db, ADMIN, START, END)
        assert [(r["product_id"], r["total_quantity"]) for r in rows] == [("p2", 6), ("p1", 3)]
        assert rows[1]["total_revenue"] == pytest.approx(60.0)
        assert rows[0]["orders_count"] == 3

    def test_best_sellers_by_category(self, sales, db) -> None:
        rows = analytics.best_sellers(db, ADMIN, START, END, category="Robes")
        assert [r["product_id"] for r in rows] == ["p1"]

    def test_product_stats(self, sales, db) -> None:
        s = analytics.product_stats(db, ADMIN, "p2", START, END)
        assert s["total_quantity"] == 6
        assert s["total_revenue"] == pytest.approx(60.0)
        assert s["peak_day"] == "2025-06-02"
        assert s["peak_hour"] == 20
        assert len(s["hourly_sales"]) == 24

    def test_orders_in_same_hour_accumulate(self, sales, db) -> None:
        s = analytics.product_stats(db, ADMIN, "p1", START, END)
        assert s["total_quantity"] == 3
        assert s["peak_hour"] == 9

    def test_product_without_sales(self, sales, db) -> None:
        assert analytics.product_stats(db, ADMIN, "nothing", START, END) is None
