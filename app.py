from __future__ import annotations

import logging
from datetime import timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import stripe
from flask import Flask, g, jsonify, request, session, url_for

from storefront import analytics, orders
from storefront.accounts import Accounts, require_admin
from storefront.backend import AuthSession, HostedBackend
from storefront.cart import Cart
from storefront.catalog import Catalog, categories, search
from storefront.errors import AuthError, NotFound, PaymentError, ShopError, ValidationError
from storefront.models import Product, Profile, RelayPoint, ShippingAddress, parse_timestamp, utcnow
from storefront.payments import Payments, StaticPriceCatalog
from storefront.photo import CARD_H, CARD_W, MAX_UPLOAD_BYTES, ImageHost
from storefront.session_guard import GuardedClient, SessionWatchdog, SingleFlight
from storefront.settings import Settings, configure_logging
from storefront.webhooks import WebhookHandler


log = logging.getLogger(__name__)

ANALYTICS_DEFAULT_DAYS = 30


def create_app(settings: Optional[Settings] = None, backend=None) -> Flask:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = Flask(__name__)
    app.secret_key = settings.secret_key
    app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES

    # Stripe configuration (test keys; override with env vars in production)
    stripe.api_key = settings.stripe_secret_key
    app.config["STRIPE_PUBLISHABLE_KEY"] = settings.stripe_publishable_key

    # -------------------------
    # Backend clients
    # -------------------------
    # `anon` carries public reads and the auth endpoints; user calls reuse it
    # with the user's bearer token. Payment code runs on the service key.
    if backend is not None:
        anon = backend
        service = backend
    elif settings.backend_configured:
        anon = HostedBackend(settings.backend_url, settings.backend_anon_key)
        service = HostedBackend(settings.backend_url, settings.backend_service_key or settings.backend_anon_key)
    else:
        log.warning("SUPABASE_URL / SUPABASE_ANON_KEY not set; running on sample products only")
        anon = None
        service = None

    flights = SingleFlight()
    public_db = GuardedClient(anon, flights=flights) if anon is not None else None
    service_db = GuardedClient(service, flights=flights) if service is not None else None

    def client_for(auth_session: Optional[AuthSession]) -> GuardedClient:
        watchdog = SessionWatchdog(anon, auth_session, refresh_margin=settings.session_refresh_margin)

        def store_refreshed(state) -> None:
            # keep the cookie in step with a refreshed token
            if state.is_ready and watchdog.session is not None:
                session["auth"] = watchdog.session.to_dict()

        watchdog.subscribe(store_refreshed)
        return GuardedClient(anon, watchdog, flights, settings.session_wait_timeout)

    payments = Payments(settings, service_db, StaticPriceCatalog.load(settings.stripe_products_path))
    catalog = Catalog(public_db, payments if public_db is not None else None, settings.sample_products_path)
    webhooks = WebhookHandler(settings, service_db)
    accounts = Accounts(anon, client_for)
    image_host = ImageHost(settings.imgbb_api_key, settings.imgbb_url)

    app.extensions["storefront"] = {
        "settings": settings,
        "catalog": catalog,
        "payments": payments,
        "webhooks": webhooks,
        "accounts": accounts,
        "flights": flights,
    }

    # -------------------------
    # Helpers
    # -------------------------
    def _ok(status: int = 200, **extra):
        return jsonify({"ok": True, **extra}), status

    def require_backend() -> None:
        if anon is None:
            raise ShopError("Database is not configured", status=503)

    def current_user() -> Optional[AuthSession]:
        return AuthSession.from_dict(session.get("auth"))

    def require_login() -> AuthSession:
        require_backend()
        user = current_user()
        if user is None:
            raise AuthError("Login required")
        return user

    def user_db() -> GuardedClient:
        if "user_db" not in g:
            g.user_db = client_for(require_login())
        return g.user_db

    def current_profile() -> Profile:
        user = require_login()
        return accounts.ensure_profile(user_db(), user.user_id, user.email)

    def payload() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def int_value(raw: Any, name: str, default: int) -> int:
        if raw is None or raw == "":
            return default
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"{name} must be an integer") from None

    def products_by_id() -> Dict[str, Product]:
        products, _ = catalog.list_products()
        return {p.id: p for p in products}

    # -------------------------
    # Cart
    # -------------------------
    def get_cart(by_id: Optional[Dict[str, Product]] = None) -> Cart:
        cart = Cart.from_session(session.get("cart"), by_id or products_by_id(), settings.cart_hold_minutes)
        session["cart"] = cart.to_session()
        return cart

    def save_cart(cart: Cart):
        session["cart"] = cart.to_session()
        return _ok(**cart.summary())

    def delivery_from(data: Dict[str, Any]) -> Tuple[ShippingAddress, Optional[RelayPoint]]:
        shipping = ShippingAddress.from_dict(data.get("shipping_address") or data.get("shipping"))
        relay = RelayPoint.from_dict(data.get("relay_point"))
        return shipping, relay

    # -------------------------
    # Analytics parameters
    # -------------------------
    def analytics_range():
        now = utcnow()
        try:
            end = parse_timestamp(request.args.get("end")) or now
            start = parse_timestamp(request.args.get("start")) or end - timedelta(days=ANALYTICS_DEFAULT_DAYS)
        except ValueError:
            raise ValidationError("start/end must be ISO-8601 dates") from None
        if start > end:
            raise ValidationError("start must be before end")
        return start, end

    def analytics_tz():
        name = (request.args.get("tz") or "UTC").strip()
        if name.upper() == "UTC":
            return timezone.utc
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError(f"Unknown time zone: {name}") from None

    # -------------------------
    # Errors & cache headers
    # -------------------------
    @app.errorhandler(ShopError)
    def handle_shop_error(e: ShopError):
        if e.status >= 500:
            log.error("%s %s failed: %s", request.method, request.path, e.message)
        return jsonify(e.to_dict()), e.status

    @app.after_request
    def add_no_cache_headers(resp):
        resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        resp.headers["Pragma"] = "no-cache"
        resp.headers["Expires"] = "0"
        return resp

    # -------------------------
    # Catalog API
    # -------------------------
    @app.get("/api/products")
    def api_products():
        products, source = catalog.list_products()
        result = search(
            products,
            q=request.args.get("q", ""),
            category=(request.args.get("category") or "").strip(),
            sort=(request.args.get("sort") or "").strip(),
            page=int_value(request.args.get("page"), "page", 1),
            per_page=int_value(request.args.get("per_page"), "per_page", 24),
        )
        result["items"] = [p.to_dict() for p in result["items"]]
        return _ok(source=source, **result)

    @app.get("/api/products/<pid>")
    def api_product(pid: str):
        return _ok(product=catalog.get_product(pid).to_dict())

    @app.get("/api/products/by-reference/<ref>")
    def api_product_by_reference(ref: str):
        p = catalog.get_by_reference(ref)
        if p is None:
            raise NotFound("Unknown product")
        return _ok(product=p.to_dict())

    @app.get("/api/categories")
    def api_categories():
        products, _ = catalog.list_products()
        return _ok(categories=categories(products))

    # -------------------------
    # Cart API
    # -------------------------
    @app.get("/api/cart")
    def api_cart():
        return _ok(**get_cart().summary())

    @app.post("/api/cart/add")
    def api_cart_add():
        data = payload()
        pid = str(data.get("product_id") or data.get("id") or "").strip()
        if not pid:
            raise ValidationError("Invalid payload")
        qty = int_value(data.get("quantity", data.get("qty")), "quantity", 1)

        by_id = products_by_id()
        product = by_id.get(pid)
        if product is None:
            raise NotFound("Unknown product")
        variant = None
        variant_id = str(data.get("variant_id") or "").strip()
        if variant_id:
            variant = product.variant(variant_id)
            if variant is None:
                raise NotFound("Unknown variant")

        cart = get_cart(by_id)
        cart.add(product, variant, qty)
        return save_cart(cart)

    @app.post("/api/cart/update")
    def api_cart_update():
        data = payload()
        pid = str(data.get("product_id") or data.get("id") or "").strip()
        if not pid:
            raise ValidationError("Invalid payload")
        qty = int_value(data.get("quantity", data.get("qty")), "quantity", 1)

        cart = get_cart()
        cart.update_quantity(pid, qty, data.get("variant_id") or None)
        return save_cart(cart)

    @app.post("/api/cart/remove")
    def api_cart_remove():
        data = payload()
        pid = str(data.get("product_id") or data.get("id") or "").strip()
        if not pid:
            raise ValidationError("Invalid payload")
        cart = get_cart()
        cart.remove(pid, data.get("variant_id") or None)
        return save_cart(cart)

    @app.post("/api/cart/clear")
    def api_cart_clear():
        cart = get_cart()
        cart.clear()
        return save_cart(cart)

    # -------------------------
    # Auth & account
    # -------------------------
    @app.post("/api/auth/signup")
    def api_signup():
        require_backend()
        data = payload()
        auth_session, profile = accounts.sign_up(data.get("email", ""), data.get("password", ""), data)
        if auth_session.access_token:
            session["auth"] = auth_session.to_dict()
        return _ok(
            201,
            user={"id": auth_session.user_id, "email": auth_session.email},
            profile=profile.to_dict() if profile else None,
            confirmation_required=not auth_session.access_token,
        )

    @app.post("/api/auth/login")
    def api_login():
        require_backend()
        data = payload()
        auth_session, profile = accounts.sign_in(data.get("email", ""), data.get("password", ""))
        session["auth"] = auth_session.to_dict()
        return _ok(user={"id": auth_session.user_id, "email": auth_session.email}, profile=profile.to_dict())

    @app.post("/api/auth/logout")
    def api_logout():
        user = current_user()
        session.pop("auth", None)
        if user is not None and anon is not None:
            accounts.sign_out(user)
        return _ok()

    @app.get("/api/session")
    def api_session():
        user = current_user()
        if user is None or anon is None:
            return _ok(authenticated=False, ready=False)
        db = user_db()
        ready = db.watchdog.check_and_refresh()
        state = db.watchdog.state
        if not ready:
            log.info("Session for %s could not be validated", user.user_id)
        current = db.watchdog.session or user
        return _ok(
            authenticated=True,
            ready=ready,
            retry_count=state.retry_count,
            user={"id": current.user_id, "email": current.email, "expires_at": current.expires_at},
        )

    @app.get("/api/account/profile")
    def api_profile():
        return _ok(profile=current_profile().to_dict())

    @app.post("/api/account/profile")
    def api_profile_update():
        user = require_login()
        profile = accounts.update_profile(user_db(), user.user_id, payload())
        return _ok(profile=profile.to_dict())

    @app.get("/api/account/orders")
    def api_account_orders():
        user = require_login()
        return _ok(orders=[o.to_dict() for o in orders.list_for_user(user_db(), user.user_id)])

    @app.get("/api/account/payments")
    def api_account_payments():
        user = require_login()
        return _ok(payments=orders.list_payments(user_db(), user.user_id))

    @app.get("/api/account/subscription")
    def api_account_subscription():
        user = require_login()
        return _ok(subscription=orders.get_subscription(user_db(), user.user_id))

    # -------------------------
    # Checkout
    # -------------------------
    @app.get("/api/checkout/shipping")
    def api_checkout_shipping():
        user = current_user() if service_db is not None else None
        quote = payments.shipping_quote(user.user_id if user else None)
        return _ok(shipping=quote.to_dict())

    @app.post("/api/checkout")
    def api_checkout():
        """Create a Stripe Checkout Session for the cart and return its URL."""
        user = require_login()
        data = payload()
        cart = get_cart()
        if not cart.items:
            raise ValidationError("Cart is empty")
        shipping, relay = delivery_from(data)

        base_url = request.url_root.rstrip("/")
        success_url = data.get("success_url") or base_url + url_for("checkout_success") + "?session_id={CHECKOUT_SESSION_ID}"
        cancel_url = data.get("cancel_url") or base_url + "/"
        email = shipping.email or user.email

        session_id, url = payments.create_checkout_session(
            user.user_id, email, cart.items, shipping, relay, success_url, cancel_url
        )
        return _ok(session_id=session_id, url=url)

    @app.get("/api/stripe-products")
    def api_stripe_products():
        return _ok(products=[e.to_dict() for e in payments.static.entries])

    @app.post("/api/checkout/price")
    def api_checkout_price():
        """Buy-now checkout for a single Stripe price."""
        user = require_login()
        data = payload()
        base_url = request.url_root.rstrip("/")
        success_url = data.get("success_url") or base_url + url_for("checkout_success") + "?session_id={CHECKOUT_SESSION_ID}"
        cancel_url = data.get("cancel_url") or base_url + "/"

        session_id, url = payments.create_price_checkout(
            user.user_id,
            user.email or "",
            str(data.get("price_id") or data.get("priceId") or ""),
            str(data.get("mode") or "payment"),
            int_value(data.get("quantity"), "quantity", 1),
            success_url,
            cancel_url,
        )
        return _ok(session_id=session_id, url=url)

    @app.post("/api/orders")
    def api_create_order():
        """Classic order without immediate payment."""
        user = require_login()
        data = payload()
        cart = get_cart()
        shipping, relay = delivery_from(data)
        quote = payments.shipping_quote(user.user_id)

        order = orders.create_order(user_db(), user.user_id, cart.items, shipping, relay, quote.amount)
        cart.clear()
        session["cart"] = cart.to_session()
        return _ok(201, order=order.to_dict())

    @app.get("/checkout/success")
    def checkout_success():
        """Verify the payment on return from Checkout and empty the cart."""
        session_id = (request.args.get("session_id") or "").strip()
        cs = payments.verify_paid_session(session_id)
        session["cart"] = Cart(hold_minutes=settings.cart_hold_minutes).to_session()
        return _ok(
            session_id=session_id,
            payment_status=getattr(cs, "payment_status", None),
            amount_total=(getattr(cs, "amount_total", None) or 0) / 100,
        )

    @app.post("/webhooks/stripe")
    def stripe_webhook():
        if service_db is None:
            raise ShopError("Database is not configured", status=503)
        event = webhooks.construct_event(request.get_data(), request.headers.get("Stripe-Signature"))
        try:
            result = webhooks.handle_event(event)
        except stripe.StripeError as e:
            log.error("Error processing webhook %s: %s", getattr(event, "id", None), e)
            raise PaymentError(f"Stripe error: {e.user_message or e}") from e
        return _ok(received=True, result=result)

    # -------------------------
    # Admin: orders & products
    # -------------------------
    @app.get("/api/admin/orders")
    def api_admin_orders():
        profile = current_profile()
        return _ok(orders=[o.to_dict() for o in orders.list_all(user_db(), profile)])

    @app.post("/api/admin/orders/<order_id>/status")
    def api_admin_order_status(order_id: str):
        profile = current_profile()
        order = orders.update_status(user_db(), order_id, payload().get("status", ""), profile)
        return _ok(order=order.to_dict())

    @app.post("/api/admin/products")
    def api_admin_create_product():
        require_admin(current_profile())
        data = payload()
        product = catalog.create_product(user_db(), data, data.get("variants") or [])
        return _ok(201, product=product.to_dict())

    @app.post("/api/admin/products/<pid>")
    def api_admin_update_product(pid: str):
        require_admin(current_profile())
        data = payload()
        product = catalog.update_product(user_db(), pid, data, data.get("variants"))
        return _ok(product=product.to_dict())

    @app.delete("/api/admin/products/<pid>")
    def api_admin_delete_product(pid: str):
        require_admin(current_profile())
        catalog.delete_product(user_db(), pid)
        return _ok()

    @app.post("/api/admin/upload")
    def api_admin_upload():
        require_admin(current_profile())
        f = request.files.get("image")
        if f is None or not f.filename:
            raise ValidationError("No image uploaded")
        cover = (CARD_W, CARD_H) if request.form.get("crop") == "card" else None
        url = image_host.upload(f.read(), f.filename, cover=cover)
        return _ok(url=url)

    # -------------------------
    # Admin: analytics
    # -------------------------
    @app.get("/api/admin/analytics/overview")
    def api_analytics_overview():
        profile = current_profile()
        return _ok(stats=analytics.global_stats(user_db(), profile, tz=analytics_tz()))

    @app.get("/api/admin/analytics/sales")
    def api_analytics_sales():
        profile = current_profile()
        start, end = analytics_range()
        group_by = (request.args.get("group_by") or "day").strip()
        rows = analytics.sales_by_period(user_db(), profile, start, end, group_by, tz=analytics_tz())
        return _ok(sales=rows)

    @app.get("/api/admin/analytics/hourly")
    def api_analytics_hourly():
        profile = current_profile()
        start, end = analytics_range()
        return _ok(hours=analytics.sales_by_hour(user_db(), profile, start, end, tz=analytics_tz()))

    @app.get("/api/admin/analytics/best-sellers")
    def api_analytics_best_sellers():
        profile = current_profile()
        start, end = analytics_range()
        rows: List[Dict[str, Any]] = analytics.best_sellers(
            user_db(),
            profile,
            start,
            end,
            category=(request.args.get("category") or "").strip() or None,
            limit=int_value(request.args.get("limit"), "limit", 10),
        )
        return _ok(products=rows)

    @app.get("/api/admin/analytics/products/<pid>")
    def api_analytics_product(pid: str):
        profile = current_profile()
        start, end = analytics_range()
        return _ok(stats=analytics.product_stats(user_db(), profile, pid, start, end, tz=analytics_tz()))

    return app


app = create_app()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5050, debug=True)
