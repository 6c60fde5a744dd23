"""Classic orders and the back-office order list."""
from __future__ import annotations

import pytest

from conftest import seed_product
from storefront import orders
from storefront.errors import NotFound, PermissionDenied, ValidationError
from storefront.models import CartItem, Product, Profile, RelayPoint, ShippingAddress

ADMIN = Profile(id="admin-1", email="boss@example.com", is_admin=True)
CUSTOMER = Profile(id="u1", email="alice@example.com")
SHIPPING = ShippingAddress(first_name="Alice", last_name="Martin", email="alice@example.com")
RELAY = RelayPoint(id="RP-1", name="Tabac du Coin")


def _cart_items(row, qty=2):
    return [CartItem(id="l1", product=Product.from_row(row), quantity=qty)]


class TestCreateOrder:
    """Orders placed without immediate payment."""

    def test_creates_pending_order(self, backend, db) -> None:
        row = seed_product(backend, price=10.0)
        order = orders.create_order(db, "u1", _cart_items(row), SHIPPING, RELAY, shipping_price=6.0)
        assert order.status == "pending"
        assert order.total_amount == pytest.approx(26.0)
        assert [(i.product_id, i.quantity, i.price) for i in order.items] == [(row["id"], 2, 10.0)]
        assert order.relay_point.id == "RP-1"

    def test_empty_cart(self, db) -> None:
        with pytest.raises(ValidationError):
            orders.create_order(db, "u1", [], SHIPPING, RELAY)

    def test_relay_point_required(self, backend, db) -> None:
        row = seed_product(backend)
        with pytest.raises(ValidationError):
            orders.create_order(db, "u1", _cart_items(row), SHIPPING, None)

    def test_list_for_user_only_returns_own_orders(self, backend, db) -> None:
        row = seed_product(backend)
        orders.create_order(db, "u1", _cart_items(row), SHIPPING, RELAY)
        orders.create_order(db, "u2", _cart_items(row), SHIPPING, RELAY)
        mine = orders.list_for_user(db, "u1")
        assert len(mine) == 1
        assert mine[0].items[0].product.reference == row["reference"]


class TestStatus:
    """Admin status changes."""

    def test_pending_to_shipped(self, backend, db) -> None:
        row = seed_product(backend)
        order = orders.create_order(db, "u1", _cart_items(row), SHIPPING, RELAY)
        updated = orders.update_status(db, order.id, "shipped", ADMIN)
        assert updated.status == "shipped"
        assert updated.updated_at is not None
        assert backend.tables["orders"][0]["status"] == "shipped"

    def test_non_admin_denied(self, backend, db) -> None:
        row = seed_product(backend)
        order = orders.create_order(db, "u1", _cart_items(row), SHIPPING, RELAY)
        with pytest.raises(PermissionDenied):
            orders.update_status(db, order.id, "shipped", CUSTOMER)
        with pytest.raises(PermissionDenied):
            orders.update_status(db, order.id, "shipped", None)

    def test_invalid_status(self, db) -> None:
        with pytest.raises(ValidationError):
            orders.update_status(db, "o1", "lost", ADMIN)

    def test_unknown_order(self, db) -> None:
        with pytest.raises(NotFound):
            orders.update_status(db, "missing", "shipped", ADMIN)


class TestAdminList:
    """Back-office order list with customer details."""

    def test_customer_from_profile_or_shipping(self, backend, db) -> None:
        row = seed_product(backend)
        backend.insert("profiles", {"id": "u1", "email": "alice@example.com", "first_name": "Alice", "last_name": "M."})
        orders.create_order(db, "u1", _cart_items(row), SHIPPING, RELAY)
        backend.insert("orders", {"user_id": "ghost", "total_amount": 5, "status": "pending", "shipping_address": {}})
        by_user = {o.user_id: o for o in orders.list_all(db, ADMIN)}
        assert by_user["u1"].customer == {"first_name": "Alice", "last_name": "M.", "email": "alice@example.com"}
        assert by_user["ghost"].customer["first_name"] == "Unknown"
        assert by_user["ghost"].customer["email"] == "unknown@example.com"

    def test_requires_admin(self, db) -> None:
        with pytest.raises(PermissionDenied):
            orders.list_all(db, CUSTOMER)


class TestProcessorMirrors:
    """Stripe payment history and subscription state per user."""

    def test_no_customer(self, db) -> None:
        assert orders.list_payments(db, "u1") == []
        assert orders.get_subscription(db, "u1") is None

    def test_payments_and_subscription(self, backend, db) -> None:
        backend.insert("stripe_customers", {"user_id": "u1", "customer_id": "cus_1"})
        backend.insert("stripe_orders", {"checkout_session_id": "cs_1", "customer_id": "cus_1", "amount_total": 1000})
        backend.insert("stripe_orders", {"checkout_session_id": "cs_2", "customer_id": "cus_other", "amount_total": 500})
        backend.insert("stripe_subscriptions", {"customer_id": "cus_1", "subscription_status": "not_started"})
        assert [p["checkout_session_id"] for p in orders.list_payments(db, "u1")] == ["cs_1"]
        assert orders.get_subscription(db, "u1")["subscription_status"] == "not_started"
