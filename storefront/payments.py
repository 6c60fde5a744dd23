"""Stripe glue: product/price reconciliation and checkout session creation."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import stripe

from storefront.errors import BackendError, PaymentError, PermissionDenied, ValidationError
from storefront.models import CartItem, Product, RelayPoint, ShippingAddress, format_timestamp, utcnow
from storefront.session_guard import GuardedClient


log = logging.getLogger(__name__)

# Stripe caps each metadata value at 500 characters.
METADATA_VALUE_LIMIT = 500
CHECKOUT_MODES = ("payment", "subscription")


# -------------------------
# Static price list
# -------------------------
@dataclass(frozen=True)
class StaticStripeProduct:
    id: str
    price_id: str
    name: str
    description: str = ""
    mode: str = "payment"
    price: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "priceId": self.price_id,
            "name": self.name,
            "description": self.description,
            "mode": self.mode,
            "price": self.price,
        }


class StaticPriceCatalog:
    """Processor products created by hand in the dashboard, matched by id, reference or name."""

    def __init__(self, entries: Optional[List[StaticStripeProduct]] = None):
        self.entries = list(entries or [])

    @classmethod
    def load(cls, path: str) -> "StaticPriceCatalog":
        if not path or not os.path.exists(path):
            return cls([])
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        entries = []
        for x in raw if isinstance(raw, list) else []:
            if not isinstance(x, dict) or not x.get("id") or not x.get("priceId"):
                continue
            entries.append(
                StaticStripeProduct(
                    id=str(x["id"]),
                    price_id=str(x["priceId"]),
                    name=str(x.get("name") or ""),
                    description=str(x.get("description") or ""),
                    mode=str(x.get("mode") or "payment"),
                    price=float(x.get("price") or 0.0),
                )
            )
        return cls(entries)

    def by_id(self, pid: str) -> Optional[StaticStripeProduct]:
        return next((e for e in self.entries if e.id == pid), None)

    def by_price_id(self, price_id: str) -> Optional[StaticStripeProduct]:
        return next((e for e in self.entries if e.price_id == price_id), None)

    def match(self, product: Product) -> Optional[StaticStripeProduct]:
        hit = self.by_id(product.id)
        if hit is None and product.reference:
            hit = self.by_id(product.reference)
        if hit is None:
            name = product.name.strip().lower()
            hit = next((e for e in self.entries if e.name.strip().lower() == name), None)
        return hit


# -------------------------
# Line items & metadata
# -------------------------
def build_line_items(items: List[CartItem], static: Optional[StaticPriceCatalog] = None, currency: str = "eur") -> List[Dict[str, Any]]:
    """Convert cart lines to Checkout line_items.

    Uses the product's synced price first, then the static price list, then
    inline price_data from the local price.
    """
    line_items: List[Dict[str, Any]] = []
    for item in items:
        if item.quantity <= 0:
            continue
        p = item.product

        if p.stripe_price_id:
            line_items.append({"price": p.stripe_price_id, "quantity": item.quantity})
            continue

        hit = static.match(p) if static else None
        if hit is not None:
            line_items.append({"price": hit.price_id, "quantity": item.quantity})
            continue

        name = p.name
        if item.variant and item.variant.label:
            name = f"{name} ({item.variant.label})"
        line_items.append(
            {
                "quantity": item.quantity,
                "price_data": {
                    "currency": currency,
                    "unit_amount": p.unit_amount(),
                    "product_data": {
                        "name": name,
                        "metadata": {"reference": p.reference, "supabase_id": p.id},
                    },
                },
            }
        )
    return line_items


def split_metadata_value(key: str, value: str, limit: int = METADATA_VALUE_LIMIT) -> Dict[str, str]:
    """"cart_items" -> {"cart_items": chunk1, "cart_items_2": chunk2, ...}"""
    chunks = [value[i:i + limit] for i in range(0, len(value), limit)] or [""]
    out = {key: chunks[0]}
    for n, chunk in enumerate(chunks[1:], start=2):
        out[f"{key}_{n}"] = chunk
    return out


def join_metadata_value(metadata: Dict[str, Any], key: str) -> str:
    parts = [str(metadata.get(key) or "")]
    n = 2
    while f"{key}_{n}" in metadata:
        parts.append(str(metadata[f"{key}_{n}"]))
        n += 1
    return "".join(parts)


def build_checkout_metadata(
    items: List[CartItem],
    shipping: ShippingAddress,
    relay_point: Optional[RelayPoint],
) -> Dict[str, str]:
    cart_items = [
        {
            "product_id": i.product.id,
            "product_reference": i.product.reference,
            "variant_id": i.variant_id or "",
            "quantity": i.quantity,
            "price": i.product.price,
        }
        for i in items
        if i.quantity > 0
    ]
    metadata: Dict[str, str] = {"cart_checkout": "true"}
    metadata.update(split_metadata_value("cart_items", json.dumps(cart_items, separators=(",", ":"))))
    metadata["total_items"] = str(len(cart_items))

    for k in ("first_name", "last_name", "phone", "address", "city", "postal_code", "country", "email"):
        metadata[f"shipping_{k}"] = getattr(shipping, k) or ""

    rp = relay_point
    metadata["relay_point_id"] = rp.id if rp else ""
    metadata["relay_point_name"] = rp.name if rp else ""
    metadata["relay_point_address"] = rp.address if rp else ""
    metadata["relay_point_city"] = rp.city if rp else ""
    metadata["relay_point_postal_code"] = rp.postal_code if rp else ""
    return metadata


def validate_delivery(shipping: ShippingAddress, relay_point: Optional[RelayPoint]) -> None:
    if relay_point is None:
        raise ValidationError("Please select a relay point")
    if not shipping.first_name or not shipping.last_name or not shipping.email:
        raise ValidationError("Please fill in all delivery details")


@dataclass(frozen=True)
class ShippingQuote:
    rate_id: Optional[str]
    amount: float
    currency: str = "eur"

    @property
    def is_free(self) -> bool:
        return self.amount <= 0

    def option(self) -> Dict[str, Any]:
        """Entry for Checkout `shipping_options`."""
        if self.rate_id:
            return {"shipping_rate": self.rate_id}
        return {
            "shipping_rate_data": {
                "type": "fixed_amount",
                "fixed_amount": {"amount": int(round(self.amount * 100)), "currency": self.currency},
                "display_name": "Free delivery" if self.is_free else "Relay point delivery",
            }
        }

    def to_dict(self) -> Dict[str, Any]:
        return {"rate_id": self.rate_id, "amount": self.amount, "free": self.is_free}


# -------------------------
# Stripe service
# -------------------------
class Payments:
    def __init__(self, settings, db: GuardedClient, static: Optional[StaticPriceCatalog] = None):
        self.settings = settings
        self.db = db
        self.static = static or StaticPriceCatalog()
        self.currency = settings.currency

    # Products & prices
    def create_product_and_price(self, product: Product) -> Tuple[str, str]:
        """Create the processor product and its price; returns (product_id, price_id)."""
        params: Dict[str, Any] = {
            "name": product.name,
            "metadata": {"reference": product.reference, "category": product.category, "supabase_id": product.id or ""},
        }
        if product.description:
            params["description"] = product.description
        if product.image_url:
            params["images"] = [product.image_url]
        try:
            sp = stripe.Product.create(**params)
            price = stripe.Price.create(
                product=sp.id,
                unit_amount=product.unit_amount(),
                currency=self.currency,
                metadata={"reference": product.reference},
            )
        except stripe.StripeError as e:
            raise PaymentError(f"Stripe product creation failed: {e.user_message or e}") from e
        log.info("Created Stripe product %s with price %s for %s", sp.id, price.id, product.reference)
        return sp.id, price.id

    def link_processor_product(self, stripe_product_id: str, product: Product) -> None:
        """Stamp the database id on the processor product once the row exists."""
        try:
            stripe.Product.modify(stripe_product_id, metadata={"supabase_id": product.id})
        except stripe.StripeError as e:
            log.warning("Could not link Stripe product %s to %s: %s", stripe_product_id, product.id, e)

    def find_processor_product(self, reference: str):
        ref = (reference or "").strip()
        if not ref:
            return None
        query = "metadata['reference']:'%s'" % ref.replace("'", "\\'")
        try:
            res = stripe.Product.search(query=query, limit=1)
        except stripe.StripeError as e:
            raise PaymentError(f"Stripe product search failed: {e.user_message or e}") from e
        data = list(res.data or [])
        return data[0] if data else None

    def _archive_price(self, price_id: str) -> None:
        try:
            stripe.Price.modify(price_id, active=False)
            log.info("Archived Stripe price %s", price_id)
        except stripe.StripeError as e:
            log.warning("Could not archive Stripe price %s: %s", price_id, e)

    def _persist_price_id(self, product: Product, price_id: str) -> None:
        self.db.update(
            "products",
            {"stripe_price_id": price_id, "updated_at": format_timestamp(utcnow())},
            {"id": product.id},
            operation_id=f"persist-price:{product.id}",
        )
        product.stripe_price_id = price_id

    def sync_product(self, product: Product, previous_price_id: Optional[str] = None) -> str:
        """Push name/description/price changes to Stripe and return the active price id."""
        previous_price_id = previous_price_id or product.stripe_price_id
        try:
            sp = self.find_processor_product(product.reference)
            if sp is None:
                _, price_id = self.create_product_and_price(product)
                self._persist_price_id(product, price_id)
                return price_id

            params: Dict[str, Any] = {
                "name": product.name,
                "metadata": {"reference": product.reference, "category": product.category, "supabase_id": product.id},
            }
            if product.description:
                params["description"] = product.description
            if product.image_url:
                params["images"] = [product.image_url]
            stripe.Product.modify(sp.id, **params)

            if previous_price_id:
                old = stripe.Price.retrieve(previous_price_id)
                if old.active and old.unit_amount == product.unit_amount() and old.currency == self.currency:
                    return previous_price_id
                self._archive_price(previous_price_id)

            price = stripe.Price.create(
                product=sp.id,
                unit_amount=product.unit_amount(),
                currency=self.currency,
                metadata={"reference": product.reference, "supabase_product_id": product.id},
            )
        except stripe.StripeError as e:
            raise PaymentError(f"Stripe sync failed for {product.reference}: {e.user_message or e}") from e

        log.info("Synced %s to Stripe price %s", product.reference, price.id)
        self._persist_price_id(product, price.id)
        return price.id

    def ensure_active_price(self, product: Product, create_missing: bool = False) -> Optional[str]:
        """Return an active price id for the product, replacing an archived one."""
        if product.stripe_price_id:
            try:
                price = stripe.Price.retrieve(product.stripe_price_id)
                if price.active:
                    return price.id
                log.info("Price %s of %s is inactive", product.stripe_price_id, product.reference)
            except stripe.InvalidRequestError:
                log.info("Price %s of %s no longer exists", product.stripe_price_id, product.reference)
            except stripe.StripeError as e:
                raise PaymentError(f"Stripe price lookup failed: {e.user_message or e}") from e

        sp = self.find_processor_product(product.reference)
        if sp is None:
            if not create_missing:
                return None
            _, price_id = self.create_product_and_price(product)
        else:
            try:
                price_id = stripe.Price.create(
                    product=sp.id,
                    unit_amount=product.unit_amount(),
                    currency=self.currency,
                    active=True,
                    metadata={
                        "reference": product.reference,
                        "supabase_product_id": product.id,
                        "created_reason": "inactive_price_replacement",
                    },
                ).id
            except stripe.StripeError as e:
                raise PaymentError(f"Stripe price creation failed: {e.user_message or e}") from e

        try:
            self._persist_price_id(product, price_id)
        except BackendError as e:
            # payment can go ahead with the new price even if the row is stale
            log.error("Could not save price %s for %s: %s", price_id, product.reference, e)
            product.stripe_price_id = price_id
        return price_id

    # Customers
    def customer_id_for(self, user_id: str) -> Optional[str]:
        rows = self.db.select(
            "stripe_customers",
            "customer_id",
            filters={"user_id": user_id, "deleted_at": ("is", None)},
            limit=1,
        )
        if rows and rows[0].get("customer_id"):
            return rows[0]["customer_id"]
        return None

    def get_or_create_customer(self, user_id: str, email: str) -> str:
        existing = self.customer_id_for(user_id)
        if existing:
            return existing

        try:
            customer = stripe.Customer.create(email=email, metadata={"userId": user_id})
        except stripe.StripeError as e:
            raise PaymentError(f"Stripe customer creation failed: {e.user_message or e}") from e
        log.info("Created Stripe customer %s for user %s", customer.id, user_id)

        try:
            self.db.insert(
                "stripe_customers",
                {"user_id": user_id, "customer_id": customer.id},
                operation_id=f"customer-mapping:{user_id}",
            )
        except BackendError as e:
            log.error("Failed to save customer mapping for %s: %s", user_id, e)
            try:
                stripe.Customer.delete(customer.id)
            except stripe.StripeError as cleanup:
                log.error("Failed to clean up Stripe customer %s: %s", customer.id, cleanup)
            raise PaymentError("Failed to create customer mapping") from e
        return customer.id

    # Shipping
    def shipping_quote(self, user_id: Optional[str], now: Optional[datetime] = None) -> ShippingQuote:
        """Free delivery when the user already ordered within the window, else the first-order rate."""
        s = self.settings
        first = ShippingQuote(s.shipping_rate_first or None, float(s.shipping_price_first), self.currency)
        free = ShippingQuote(s.shipping_rate_free or None, 0.0, self.currency)
        if not user_id:
            return first

        since = (now or utcnow()) - timedelta(hours=s.free_shipping_window_hours)
        try:
            recent = self.db.select(
                "orders",
                "id",
                filters={"user_id": user_id, "created_at": ("gte", format_timestamp(since))},
                limit=1,
            )
        except BackendError as e:
            log.error("Error checking recent orders for %s: %s", user_id, e)
            return first
        return free if recent else first

    # Checkout
    def create_checkout_session(
        self,
        user_id: str,
        email: str,
        items: List[CartItem],
        shipping: ShippingAddress,
        relay_point: Optional[RelayPoint],
        success_url: str,
        cancel_url: str,
    ) -> Tuple[str, str]:
        items = [i for i in items if i.quantity > 0]
        if not items:
            raise ValidationError("Cart is empty")
        validate_delivery(shipping, relay_point)
        if not success_url or not cancel_url:
            raise ValidationError("success_url and cancel_url are required")

        for item in items:
            if item.product.stripe_price_id:
                item.product.stripe_price_id = self.ensure_active_price(item.product)

        line_items = build_line_items(items, self.static, self.currency)
        metadata = build_checkout_metadata(items, shipping, relay_point)
        customer_id = self.get_or_create_customer(user_id, email)
        quote = self.shipping_quote(user_id)

        try:
            cs = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                mode="payment",
                line_items=line_items,
                shipping_options=[quote.option()],
                metadata=metadata,
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except stripe.StripeError as e:
            raise PaymentError(f"Stripe Checkout error: {e.user_message or e}") from e

        log.info("Created checkout session %s for customer %s (%d line items)", cs.id, customer_id, len(line_items))
        return cs.id, cs.url

    def create_price_checkout(
        self,
        user_id: str,
        email: str,
        price_id: str,
        mode: str,
        quantity: int,
        success_url: str,
        cancel_url: str,
    ) -> Tuple[str, str]:
        """Buy-now checkout for one price of the static list (one-time or subscription)."""
        entry = self.static.by_price_id(price_id) if price_id else None
        if entry is None:
            raise ValidationError("Unknown price")
        if mode not in CHECKOUT_MODES:
            raise ValidationError(f"mode must be one of: {', '.join(CHECKOUT_MODES)}")
        if mode != entry.mode:
            raise ValidationError(f"Price {price_id} is sold in {entry.mode} mode")
        if quantity < 1:
            raise ValidationError("quantity must be at least 1")
        if not success_url or not cancel_url:
            raise ValidationError("success_url and cancel_url are required")

        customer_id = self.get_or_create_customer(user_id, email)
        params: Dict[str, Any] = {
            "customer": customer_id,
            "payment_method_types": ["card"],
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": quantity}],
            "metadata": {"product_id": entry.id},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if mode == "payment":
            params["shipping_options"] = [self.shipping_quote(user_id).option()]

        try:
            cs = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise PaymentError(f"Stripe Checkout error: {e.user_message or e}") from e

        log.info("Created %s checkout session %s for %s x%d", mode, cs.id, entry.id, quantity)
        return cs.id, cs.url

    def verify_paid_session(self, session_id: str):
        """Verify a Checkout session is paid; returns the session object."""
        if not session_id:
            raise ValidationError("Invalid session_id")
        try:
            cs = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as e:
            raise ValidationError("Invalid session_id") from e
        if getattr(cs, "payment_status", None) != "paid":
            raise PermissionDenied("Payment not completed")
        return cs
