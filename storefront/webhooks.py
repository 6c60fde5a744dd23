"""Stripe webhook handling: order materialization and subscription mirroring.

A paid checkout session produces exactly one `orders` row. The
`stripe_orders` mirror row (unique per checkout session) is written first
and acts as the claim; replays of the same event find it and stop.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import stripe

from storefront.errors import BackendError, ShopError, ValidationError
from storefront.models import RelayPoint, ShippingAddress
from storefront.payments import join_metadata_value
from storefront.session_guard import GuardedClient


log = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    try:
        value = obj.get(key, default)
    except AttributeError:
        value = getattr(obj, key, default)
    return default if value is None else value


def shipping_address_from_session(session: Any) -> ShippingAddress:
    """Customer/shipping details from Checkout, falling back to our metadata."""
    md = _get(session, "metadata", {})
    details = _get(session, "customer_details", {})
    shipping = _get(session, "shipping_details") or _get(_get(session, "collected_information", {}), "shipping_details", {})
    address = _get(shipping, "address", {})

    name_parts = (_get(details, "name", "") or "").split(" ")
    first = name_parts[0] if name_parts and name_parts[0] else ""
    last = " ".join(name_parts[1:])

    return ShippingAddress(
        first_name=first or _get(md, "shipping_first_name", ""),
        last_name=last or _get(md, "shipping_last_name", ""),
        email=_get(details, "email", "") or _get(md, "shipping_email", ""),
        phone=_get(details, "phone", "") or _get(md, "shipping_phone", ""),
        address=_get(address, "line1", "") or _get(md, "shipping_address", ""),
        city=_get(address, "city", "") or _get(md, "shipping_city", ""),
        postal_code=_get(address, "postal_code", "") or _get(md, "shipping_postal_code", ""),
        country=_get(address, "country", "") or _get(md, "shipping_country", "") or "FR",
    )


def relay_point_from_metadata(md: Dict[str, Any]) -> Optional[RelayPoint]:
    if not _get(md, "relay_point_id"):
        return None
    return RelayPoint(
        id=str(md["relay_point_id"]),
        name=_get(md, "relay_point_name", ""),
        address=_get(md, "relay_point_address", ""),
        city=_get(md, "relay_point_city", ""),
        postal_code=_get(md, "relay_point_postal_code", ""),
        country="FR",
    )


class WebhookHandler:
    def __init__(self, settings, db: GuardedClient):
        self.settings = settings
        self.db = db

    def construct_event(self, payload: bytes, signature: Optional[str]):
        if not signature:
            raise ValidationError("No signature found")
        secret = self.settings.stripe_webhook_secret
        if not secret:
            raise ShopError("Webhook secret not configured", status=500)
        try:
            return stripe.Webhook.construct_event(payload, signature, secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            log.warning("Webhook signature verification failed: %s", e)
            raise ValidationError(f"Webhook signature verification failed: {e}") from e

    def handle_event(self, event: Any) -> str:
        """Dispatch one event; returns a short outcome label."""
        etype = _get(event, "type", "")
        obj = _get(_get(event, "data", {}), "object", {})
        if not obj or "customer" not in obj:
            return "ignored"

        # one-time payments are handled through checkout.session.completed
        if etype == "payment_intent.succeeded" and _get(obj, "invoice") is None:
            return "ignored"

        customer_id = _get(obj, "customer")
        if not customer_id or not isinstance(customer_id, str):
            log.error("No customer received on event %s", _get(event, "id"))
            return "ignored"

        is_subscription = True
        if etype == "checkout.session.completed":
            is_subscription = _get(obj, "mode") == "subscription"
            log.info("Processing %s checkout session", "subscription" if is_subscription else "one-time payment")

        if is_subscription:
            self.sync_customer(customer_id)
            return "subscription_synced"

        if _get(obj, "mode") == "payment" and _get(obj, "payment_status") == "paid":
            sid = obj["id"]
            return self.db.flights.do(f"materialize:{sid}", lambda: self.materialize_order(obj, customer_id))
        return "ignored"

    # -------------------------
    # One-time payments
    # -------------------------
    def _already_recorded(self, session_id: str) -> bool:
        rows = self.db.select("stripe_orders", "id", filters={"checkout_session_id": session_id}, limit=1)
        return bool(rows)

    def _claim(self, obj: Any, customer_id: str) -> bool:
        row = {
            "checkout_session_id": obj["id"],
            "payment_intent_id": _get(obj, "payment_intent"),
            "customer_id": customer_id,
            "amount_subtotal": _get(obj, "amount_subtotal"),
            "amount_total": _get(obj, "amount_total"),
            "currency": _get(obj, "currency"),
            "payment_status": _get(obj, "payment_status"),
            "status": "pending",
        }
        try:
            self.db.insert("stripe_orders", row, operation_id=f"stripe-order:{obj['id']}")
        except BackendError as e:
            if e.status_code == 409 or e.code == UNIQUE_VIOLATION:
                return False
            raise
        return True

    def materialize_order(self, obj: Any, customer_id: str) -> str:
        """Create the order for a paid session.

        Returns "order_created", "payment_recorded" (no user mapping) or "duplicate".
        """
        sid = obj["id"]
        if self._already_recorded(sid) or not self._claim(obj, customer_id):
            log.info("Checkout session %s already processed", sid)
            return "duplicate"

        try:
            full = stripe.checkout.Session.retrieve(sid, expand=["line_items", "line_items.data.price.product"])
            order_id = self._create_order(full, customer_id)
        except Exception:
            # release the claim so Stripe's retry can redo the work
            self.db.delete("stripe_orders", {"checkout_session_id": sid}, operation_id=f"release:{sid}")
            raise
        log.info("Processed one-time payment for session %s", sid)
        return "order_created" if order_id else "payment_recorded"

    def _create_order(self, session: Any, customer_id: str) -> Optional[str]:
        mapping = self.db.select("stripe_customers", "user_id", filters={"customer_id": customer_id}, limit=1)
        if not mapping:
            log.error("No user found for customer %s; payment recorded without order", customer_id)
            return None
        user_id = mapping[0]["user_id"]

        md = _get(session, "metadata", {})
        relay = relay_point_from_metadata(md)
        order_row = {
            "user_id": user_id,
            "total_amount": (_get(session, "amount_total", 0) or 0) / 100,
            "status": "pending",
            "shipping_address": shipping_address_from_session(session).to_dict(),
            "relay_point": relay.to_dict() if relay else None,
            "payment_intent_id": _get(session, "payment_intent"),
        }
        order = self.db.insert("orders", order_row, operation_id=f"order:{session['id']}")[0]
        log.info("Order %s created for session %s", order["id"], session["id"])

        items = self._order_items(session, order["id"])
        if items:
            try:
                self.db.insert("order_items", items, operation_id=f"order-items:{order['id']}")
            except Exception:
                self._discard_order(order["id"])
                raise
        else:
            log.warning("No order items resolved for session %s", session["id"])
        return order["id"]

    def _discard_order(self, order_id: str) -> None:
        """Remove a half-written order so a retried event starts clean."""
        try:
            self.db.delete("order_items", {"order_id": order_id}, operation_id=f"discard-items:{order_id}")
            self.db.delete("orders", {"id": order_id}, operation_id=f"discard-order:{order_id}")
        except BackendError as e:
            log.error("Could not remove partial order %s: %s", order_id, e)
        else:
            log.info("Removed partial order %s", order_id)

    def _order_items(self, session: Any, order_id: str) -> List[Dict[str, Any]]:
        md = _get(session, "metadata", {})
        if _get(md, "cart_checkout") == "true" and _get(md, "cart_items"):
            try:
                cart_items = json.loads(join_metadata_value(md, "cart_items"))
            except ValueError:
                log.error("Unreadable cart_items metadata on session %s", session["id"])
                cart_items = []
            return [
                {
                    "order_id": order_id,
                    "product_id": ci["product_id"],
                    "variant_id": ci.get("variant_id") or None,
                    "quantity": int(ci.get("quantity") or 1),
                    "price": float(ci.get("price") or 0),
                }
                for ci in cart_items
                if ci.get("product_id")
            ]

        items: List[Dict[str, Any]] = []
        for li in _get(_get(session, "line_items", {}), "data", []):
            price = _get(li, "price", {})
            product_id = self._product_id_for(_get(price, "product"))
            if not product_id:
                log.warning("Could not find product for line item %s", _get(li, "id"))
                continue
            items.append(
                {
                    "order_id": order_id,
                    "product_id": product_id,
                    "variant_id": _get(md, "variant_id") or None,
                    "quantity": _get(li, "quantity", 1) or 1,
                    "price": (_get(price, "unit_amount", 0) or 0) / 100,
                }
            )
        return items

    def _product_id_for(self, sp: Any) -> Optional[str]:
        if not sp or isinstance(sp, str):
            return None
        md = _get(sp, "metadata", {})
        if _get(md, "supabase_id"):
            return md["supabase_id"]
        if _get(md, "reference"):
            rows = self.db.select("products", "id", filters={"reference": md["reference"]}, limit=1)
            if rows:
                return rows[0]["id"]
        return None

    # -------------------------
    # Subscriptions
    # -------------------------
    def sync_customer(self, customer_id: str) -> Dict[str, Any]:
        """Mirror the customer's latest subscription into stripe_subscriptions."""
        subs = stripe.Subscription.list(
            customer=customer_id,
            limit=1,
            status="all",
            expand=["data.default_payment_method"],
        )
        data = list(_get(subs, "data", []))
        if not data:
            log.info("No subscriptions found for customer %s", customer_id)
            row = {"customer_id": customer_id, "subscription_status": "not_started"}
            self.db.upsert("stripe_subscriptions", row, on_conflict="customer_id")
            return row

        sub = data[0]
        items = _get(_get(sub, "items", {}), "data", [])
        first_item = items[0] if items else {}
        row = {
            "customer_id": customer_id,
            "subscription_id": sub["id"],
            "price_id": _get(_get(first_item, "price", {}), "id"),
            "current_period_start": _get(sub, "current_period_start") or _get(first_item, "current_period_start"),
            "current_period_end": _get(sub, "current_period_end") or _get(first_item, "current_period_end"),
            "cancel_at_period_end": bool(_get(sub, "cancel_at_period_end", False)),
            "status": _get(sub, "status"),
        }
        pm = _get(sub, "default_payment_method")
        if pm and not isinstance(pm, str):
            card = _get(pm, "card", {})
            row["payment_method_brand"] = _get(card, "brand")
            row["payment_method_last4"] = _get(card, "last4")

        self.db.upsert("stripe_subscriptions", row, on_conflict="customer_id")
        log.info("Synced subscription for customer %s", customer_id)
        return row
