"""Shared fixtures: an in-memory hosted backend and a Stripe stand-in."""
from __future__ import annotations

import re
import time
import uuid
from collections import defaultdict
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pytest
import stripe

from storefront.backend import AuthSession, filter_conditions
from storefront.errors import AuthError, BackendError
from storefront.models import format_timestamp, parse_timestamp, utcnow
from storefront.session_guard import GuardedClient
from storefront.settings import Settings


# -------------------------
# In-memory backend
# -------------------------
def _sort_key(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return parse_timestamp(value)
        except ValueError:
            return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return value


def _same(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is b
    if isinstance(a, bool) or isinstance(b, bool):
        return str(a).lower() == str(b).lower()
    return str(a) == str(b)


def _matches(row: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    for column, raw in (filters or {}).items():
        current = row.get(column)
        for op, value in filter_conditions(raw):
            if op == "eq" and not _same(current, value):
                return False
            if op == "neq" and _same(current, value):
                return False
            if op == "is" and current is not value:
                return False
            if op == "in" and not any(_same(current, v) for v in value):
                return False
            if op == "ilike":
                pattern = "^" + re.escape(str(value)).replace("%", ".*") + "$"
                if current is None or not re.match(pattern, str(current), re.IGNORECASE):
                    return False
            if op in ("gt", "gte", "lt", "lte"):
                if current is None:
                    return False
                a, b = _sort_key(current), _sort_key(value)
                if op == "gt" and not a > b:
                    return False
                if op == "gte" and not a >= b:
                    return False
                if op == "lt" and not a < b:
                    return False
                if op == "lte" and not a <= b:
                    return False
    return True


class FakeBackend:
    """Stands in for HostedBackend: same call surface, rows kept in dicts."""

    UNIQUE = {
        "stripe_orders": ("checkout_session_id",),
        "stripe_customers": ("user_id",),
        "profiles": ("id",),
    }

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.users: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.tokens: List[Optional[str]] = []
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.refreshes = 0
        self.refresh_error: Optional[Exception] = None
        self.token_ttl = 3600

    def fail(self, op: str, table: str, error: Exception) -> None:
        """Make the next `op` on `table` raise `error`."""
        self.failures[f"{op}:{table}"].append(error)

    def _maybe_fail(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        pending = self.failures.get(f"{op}:{table}")
        if pending:
            raise pending.pop(0)

    def with_token(self, access_token: Optional[str]) -> "FakeBackend":
        self.tokens.append(access_token)
        return self

    # tables
    def select(self, table, columns="*", filters=None, order=None, limit=None):
        self._maybe_fail("select", table)
        rows = [dict(r) for r in self.tables[table] if _matches(r, filters)]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: (r.get(column) is None, _sort_key(r.get(column)) if r.get(column) is not None else 0), reverse=direction == "desc")
        if limit is not None:
            rows = rows[: int(limit)]
        return rows

    def insert(self, table, rows):
        self._maybe_fail("insert", table)
        batch = rows if isinstance(rows, list) else [rows]
        out = []
        for raw in batch:
            row = dict(raw)
            row.setdefault("id", uuid.uuid4().hex)
            row.setdefault("created_at", format_timestamp(utcnow()))
            for column in self.UNIQUE.get(table, ()):
                if any(_same(r.get(column), row.get(column)) for r in self.tables[table]):
                    raise BackendError(
                        f'duplicate key value violates unique constraint "{table}_{column}_key"',
                        status_code=409,
                        code="23505",
                    )
            self.tables[table].append(row)
            out.append(dict(row))
        return out

    def update(self, table, values, filters):
        self._maybe_fail("update", table)
        out = []
        for r in self.tables[table]:
            if _matches(r, filters):
                r.update(values)
                out.append(dict(r))
        return out

    def delete(self, table, filters):
        self._maybe_fail("delete", table)
        keep, gone = [], []
        for r in self.tables[table]:
            (gone if _matches(r, filters) else keep).append(r)
        self.tables[table] = keep
        return [dict(r) for r in gone]

    def upsert(self, table, rows, on_conflict=None):
        self._maybe_fail("upsert", table)
        out = []
        for raw in rows if isinstance(rows, list) else [rows]:
            existing = None
            if on_conflict:
                existing = next((r for r in self.tables[table] if _same(r.get(on_conflict), raw.get(on_conflict))), None)
            if existing is not None:
                existing.update(raw)
                out.append(dict(existing))
            else:
                out.extend(self.insert(table, raw))
        return out

    # auth
    def _issue(self, user: Dict[str, Any]) -> AuthSession:
        s = AuthSession(
            access_token=f"at-{uuid.uuid4().hex}",
            refresh_token=f"rt-{uuid.uuid4().hex}",
            expires_at=int(time.time()) + self.token_ttl,
            user_id=user["id"],
            email=user["email"],
        )
        user["refresh_token"] = s.refresh_token
        return s

    def add_user(self, email: str, password: str = "secret123", is_admin: bool = False, profile: bool = True) -> Dict[str, Any]:
        user = {"id": uuid.uuid4().hex, "email": email, "password": password}
        self.users[email] = user
        if profile:
            self.tables["profiles"].append({"id": user["id"], "email": email, "is_admin": is_admin})
        return user

    def sign_up(self, email, password):
        if email in self.users:
            raise AuthError("User already registered")
        user = self.add_user(email, password, profile=False)
        return self._issue(user)

    def sign_in(self, email, password):
        user = self.users.get(email)
        if user is None or user["password"] != password:
            raise AuthError("Invalid login credentials")
        return self._issue(user)

    def refresh_session(self, refresh_token):
        self.refreshes += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        user = next((u for u in self.users.values() if u.get("refresh_token") == refresh_token), None)
        if user is None:
            raise AuthError("Invalid Refresh Token")
        return self._issue(user)

    def get_user(self, access_token):
        return {}

    def sign_out(self, access_token):
        self.calls.append(("sign_out", access_token))


# -------------------------
# Stripe stand-in
# -------------------------
class StripeStub:
    def __init__(self) -> None:
        self.products: Dict[str, SimpleNamespace] = {}
        self.prices: Dict[str, SimpleNamespace] = {}
        self.customers: Dict[str, SimpleNamespace] = {}
        self.deleted_customers: List[str] = []
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.created_sessions: List[Dict[str, Any]] = []
        self.subscriptions: Dict[str, List[Dict[str, Any]]] = {}
        self.customer_error: Optional[Exception] = None
        self._n = 0

    def _next(self, prefix: str) -> str:
        self._n += 1
        return f"{prefix}_{self._n}"

    def product_create(self, **params):
        sp = SimpleNamespace(id=self._next("prod"), active=True, **params)
        self.products[sp.id] = sp
        return sp

    def product_modify(self, product_id, **params):
        sp = self.products[product_id]
        for k, v in params.items():
            if k == "metadata":
                v = dict(getattr(sp, "metadata", {}) or {}, **v)
            setattr(sp, k, v)
        return sp

    def product_search(self, query, limit=10):
        ref = re.search(r"'([^']*)'\s*$", query).group(1)
        hits = [p for p in self.products.values() if (getattr(p, "metadata", {}) or {}).get("reference") == ref]
        return SimpleNamespace(data=hits[:limit])

    def price_create(self, product, unit_amount, currency, active=True, metadata=None):
        price = SimpleNamespace(
            id=self._next("price"), product=product, unit_amount=unit_amount,
            currency=currency, active=active, metadata=metadata or {},
        )
        self.prices[price.id] = price
        return price

    def price_retrieve(self, price_id):
        if price_id not in self.prices:
            raise stripe.InvalidRequestError(f"No such price: '{price_id}'", "id")
        return self.prices[price_id]

    def price_modify(self, price_id, **params):
        price = self.price_retrieve(price_id)
        for k, v in params.items():
            setattr(price, k, v)
        return price

    def customer_create(self, email=None, metadata=None):
        if self.customer_error is not None:
            raise self.customer_error
        c = SimpleNamespace(id=self._next("cus"), email=email, metadata=metadata or {})
        self.customers[c.id] = c
        return c

    def customer_delete(self, customer_id):
        self.deleted_customers.append(customer_id)
        self.customers.pop(customer_id, None)

    def session_create(self, **params):
        sid = self._next("cs_test")
        self.created_sessions.append(dict(params, id=sid))
        return SimpleNamespace(id=sid, url=f"https://checkout.stripe.test/{sid}")

    def session_retrieve(self, session_id, expand=None):
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: '{session_id}'", "id")
        return self.sessions[session_id]

    def subscription_list(self, customer, **kw):
        return {"data": self.subscriptions.get(customer, [])}


@pytest.fixture
def stripe_stub(monkeypatch: pytest.MonkeyPatch) -> StripeStub:
    stub = StripeStub()
    monkeypatch.setattr(stripe.Product, "create", stub.product_create)
    monkeypatch.setattr(stripe.Product, "modify", stub.product_modify)
    monkeypatch.setattr(stripe.Product, "search", stub.product_search)
    monkeypatch.setattr(stripe.Price, "create", stub.price_create)
    monkeypatch.setattr(stripe.Price, "retrieve", stub.price_retrieve)
    monkeypatch.setattr(stripe.Price, "modify", stub.price_modify)
    monkeypatch.setattr(stripe.Customer, "create", stub.customer_create)
    monkeypatch.setattr(stripe.Customer, "delete", stub.customer_delete)
    monkeypatch.setattr(stripe.checkout.Session, "create", stub.session_create)
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", stub.session_retrieve)
    monkeypatch.setattr(stripe.Subscription, "list", stub.subscription_list)
    return stub


# -------------------------
# Common fixtures
# -------------------------
@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def db(backend: FakeBackend) -> GuardedClient:
    return GuardedClient(backend)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        secret_key="test-secret",
        backend_url="http://db.test",
        backend_anon_key="anon-key",
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret="whsec_test",
        stripe_products_path=str(tmp_path / "no_static_prices.json"),
    )


def seed_product(
    backend: FakeBackend,
    reference: str = "TSHIRT-BIO-2025",
    name: str = "T-shirt Premium Coton Bio",
    price: float = 34.99,
    category: str = "T-shirts",
    variants: Optional[List[Dict[str, Any]]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    row = backend.insert(
        "products",
        dict({"reference": reference, "name": name, "price": price, "category": category, "description": ""}, **extra),
    )[0]
    for v in variants or []:
        backend.insert("product_variants", dict(v, product_id=row["id"]))
    return row


@pytest.fixture
def app(settings: Settings, backend: FakeBackend, stripe_stub: StripeStub):
    from app import create_app

    application = create_app(settings, backend)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, backend: FakeBackend, email: str = "alice@example.com", is_admin: bool = False) -> Dict[str, Any]:
    user = backend.add_user(email, "secret123", is_admin=is_admin)
    r = client.post("/api/auth/login", json={"email": email, "password": "secret123"})
    assert r.status_code == 200, r.get_json()
    return user
