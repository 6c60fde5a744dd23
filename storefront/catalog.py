from __future__ import annotations

import json
import logging
import math
import os
import re
import unicodedata
from typing import Any, Dict, List, Optional, Tuple

from storefront.errors import BackendError, NotFound, PaymentError, ValidationError
from storefront.models import Product, format_timestamp, utcnow
from storefront.session_guard import GuardedClient


log = logging.getLogger(__name__)

PRODUCT_COLUMNS = ("reference", "name", "description", "price", "image_url", "category", "seller_id")


def slugify(name: str, max_len: int = 80) -> str:
    norm = unicodedata.normalize("NFKD", (name or "").strip())
    chars = []
    for ch in norm:
        if unicodedata.category(ch) == "Mn":
            continue
        chars.append(ch if ord(ch) < 128 else "-")
    s = "".join(chars).lower()
    s = re.sub(r"[^a-z0-9]+", "-", s)
    s = re.sub(r"-{2,}", "-", s).strip("-")
    s = s or "item"
    return s[:max_len] if len(s) > max_len else s


def categories(products: List[Product]) -> List[Dict[str, str]]:
    seen: Dict[str, str] = {}
    for p in products:
        label = (p.category or "").strip()
        if label and slugify(label) not in seen:
            seen[slugify(label)] = label
    return [{"label": label, "slug": slug} for slug, label in sorted(seen.items(), key=lambda x: x[1].lower())]


def search(
    products: List[Product],
    q: str = "",
    category: str = "",
    sort: str = "",
    page: int = 1,
    per_page: int = 24,
) -> Dict[str, Any]:
    """Filter, sort and paginate. `category` is a slug; the page is clamped into range."""
    filtered = list(products)

    if category and category != "all":
        filtered = [p for p in filtered if slugify(p.category) == category]

    q = (q or "").strip()
    if q:
        ql = q.lower()
        filtered = [
            p
            for p in filtered
            if ql in p.name.lower() or ql in p.reference.lower() or ql in (p.description or "").lower()
        ]

    if sort == "price_asc":
        filtered = sorted(filtered, key=lambda p: (p.price, p.name.lower()))
    elif sort == "price_desc":
        filtered = sorted(filtered, key=lambda p: (-p.price, p.name.lower()))
    else:
        filtered = sorted(filtered, key=lambda p: p.name.lower())

    per_page = max(1, min(int(per_page), 60))
    total = len(filtered)
    pages = max(1, math.ceil(total / per_page))
    page = min(max(1, int(page)), pages)

    start = (page - 1) * per_page
    return {
        "items": filtered[start:start + per_page],
        "total": total,
        "page": page,
        "pages": pages,
        "per_page": per_page,
    }


def validate_product_data(data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k in PRODUCT_COLUMNS:
        if k in data and data[k] is not None:
            out[k] = data[k].strip() if isinstance(data[k], str) else data[k]

    if not partial or "reference" in out:
        if not out.get("reference"):
            raise ValidationError("Reference is required")
    if not partial or "name" in out:
        if not out.get("name"):
            raise ValidationError("Name is required")
    if not partial or "price" in out:
        try:
            out["price"] = round(float(out.get("price")), 2)
        except (TypeError, ValueError):
            raise ValidationError("Price must be a number")
        if out["price"] <= 0:
            raise ValidationError("Price must be greater than zero")
    return out


def validate_variants(variants: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out = []
    for v in variants or []:
        try:
            stock = int(v.get("stock", 0))
        except (TypeError, ValueError):
            raise ValidationError("Variant stock must be an integer")
        if stock < 0:
            raise ValidationError("Variant stock cannot be negative")
        out.append(
            {
                "color": str(v.get("color") or "").strip(),
                "size": str(v.get("size") or "").strip(),
                "stock": stock,
                "sku": str(v.get("sku") or "").strip(),
            }
        )
    return out


class Catalog:
    def __init__(self, db: Optional[GuardedClient], payments=None, sample_path: Optional[str] = None):
        self.db = db
        self.payments = payments
        self.sample_path = sample_path

    # -------------------------
    # Reads
    # -------------------------
    def load_sample(self) -> List[Product]:
        if not self.sample_path or not os.path.exists(self.sample_path):
            return []
        with open(self.sample_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return [Product.from_row(x) for x in raw if isinstance(x, dict) and x.get("id")]

    def _fetch(self, db: GuardedClient, filters=None) -> List[Product]:
        rows = db.select("products", filters=filters, order="created_at.desc", skip_session_check=True)
        if not rows:
            return []
        ids = [r["id"] for r in rows]
        variant_rows = db.select("product_variants", filters={"product_id": ("in", ids)}, skip_session_check=True)
        by_product: Dict[str, List[Dict[str, Any]]] = {}
        for v in variant_rows:
            by_product.setdefault(str(v.get("product_id")), []).append(v)
        return [Product.from_row(r, by_product.get(str(r["id"]), [])) for r in rows]

    def list_products(self) -> Tuple[List[Product], str]:
        """Returns (products, source) where source is "backend" or "sample"."""
        if self.db is None:
            log.warning("Backend not configured, serving sample products")
            return self.load_sample(), "sample"
        try:
            return self._fetch(self.db), "backend"
        except BackendError as e:
            log.error("Could not load products, serving sample products: %s", e)
            return self.load_sample(), "sample"

    def get_product(self, product_id: str) -> Product:
        products, _ = self.list_products()
        for p in products:
            if p.id == product_id:
                return p
        raise NotFound("Unknown product")

    def get_by_reference(self, reference: str) -> Optional[Product]:
        ref = (reference or "").strip()
        if not ref:
            return None
        products, _ = self.list_products()
        lowered = ref.lower()
        return next((p for p in products if p.reference.lower() == lowered), None)

    # -------------------------
    # Admin writes
    # -------------------------
    def create_product(self, db: GuardedClient, data: Dict[str, Any], variants: Optional[List[Dict[str, Any]]] = None) -> Product:
        values = validate_product_data(data)
        clean_variants = validate_variants(variants or [])

        draft = Product.from_row(dict(values, id=""))
        price_id = None
        stripe_product_id = None
        if self.payments is not None:
            stripe_product_id, price_id = self.payments.create_product_and_price(draft)

        values["stripe_price_id"] = price_id
        rows = db.insert("products", values, operation_id=f"create-product:{values['reference']}")
        row = rows[0]

        variant_rows: List[Dict[str, Any]] = []
        if clean_variants:
            variant_rows = db.insert(
                "product_variants",
                [dict(v, product_id=row["id"]) for v in clean_variants],
                operation_id=f"create-variants:{row['id']}",
            )

        product = Product.from_row(row, variant_rows)
        if stripe_product_id:
            self.payments.link_processor_product(stripe_product_id, product)
        log.info("Created product %s (%s)", product.reference, product.id)
        return product

    def update_product(
        self,
        db: GuardedClient,
        product_id: str,
        data: Dict[str, Any],
        variants: Optional[List[Dict[str, Any]]] = None,
    ) -> Product:
        values = validate_product_data(data, partial=True)
        clean_variants = validate_variants(variants) if variants is not None else None

        current = db.select("products", filters={"id": product_id}, limit=1)
        if not current:
            raise NotFound("Unknown product")
        previous_price_id = current[0].get("stripe_price_id")

        values["updated_at"] = format_timestamp(utcnow())
        rows = db.update("products", values, {"id": product_id}, operation_id=f"update-product:{product_id}")

        if clean_variants is not None:
            db.delete("product_variants", {"product_id": product_id}, operation_id=f"delete-variants:{product_id}")
            if clean_variants:
                db.insert(
                    "product_variants",
                    [dict(v, product_id=product_id) for v in clean_variants],
                    operation_id=f"replace-variants:{product_id}",
                )

        variant_rows = db.select("product_variants", filters={"product_id": product_id})
        product = Product.from_row(rows[0], variant_rows)

        if self.payments is not None:
            try:
                self.payments.sync_product(product, previous_price_id)
            except (PaymentError, BackendError) as e:
                # the local row is saved; Stripe catches up on the next sync
                log.error("Stripe sync failed for %s: %s", product.reference, e)
        return product

    def delete_product(self, db: GuardedClient, product_id: str) -> None:
        db.delete("product_variants", {"product_id": product_id}, operation_id=f"delete-variants:{product_id}")
        deleted = db.delete("products", {"id": product_id}, operation_id=f"delete-product:{product_id}")
        if not deleted:
            raise NotFound("Unknown product")
        log.info("Deleted product %s", product_id)
