from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string (with or without trailing Z) -> aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# -------------------------
# Accounts
# -------------------------
PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "phone",
    "address",
    "city",
    "postal_code",
    "country",
)


@dataclass
class Profile:
    id: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    postal_code: str = ""
    country: str = ""
    is_admin: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Profile":
        return cls(
            id=str(row["id"]),
            email=row.get("email") or "",
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            phone=row.get("phone") or "",
            address=row.get("address") or "",
            city=row.get("city") or "",
            postal_code=row.get("postal_code") or "",
            country=row.get("country") or "",
            is_admin=bool(row.get("is_admin")),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        row = {"id": self.id, "email": self.email, "is_admin": self.is_admin}
        for k in PROFILE_FIELDS:
            row[k] = getattr(self, k)
        return row

    def to_dict(self) -> Dict[str, Any]:
        d = self.to_row()
        d["created_at"] = format_timestamp(self.created_at)
        d["updated_at"] = format_timestamp(self.updated_at)
        return d


# -------------------------
# Catalog
# -------------------------
@dataclass
class ProductVariant:
    id: str
    product_id: str
    color: str = ""
    size: str = ""
    stock: int = 0
    sku: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ProductVariant":
        return cls(
            id=str(row["id"]),
            product_id=str(row.get("product_id") or ""),
            color=row.get("color") or "",
            size=row.get("size") or "",
            stock=max(0, _int(row.get("stock"))),
            sku=row.get("sku") or "",
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "color": self.color,
            "size": self.size,
            "stock": self.stock,
            "sku": self.sku,
        }

    @property
    def label(self) -> str:
        return " - ".join(x for x in (self.color, self.size) if x)


@dataclass
class Product:
    id: str
    reference: str
    name: str
    description: str = ""
    price: float = 0.0
    image_url: str = ""
    category: str = ""
    seller_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    variants: List[ProductVariant] = field(default_factory=list)
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any], variants: Optional[List[Dict[str, Any]]] = None) -> "Product":
        raw_variants = variants if variants is not None else (row.get("product_variants") or row.get("variants") or [])
        return cls(
            id=str(row["id"]),
            reference=(row.get("reference") or "").strip(),
            name=(row.get("name") or "").strip(),
            description=row.get("description") or "",
            price=_float(row.get("price")),
            image_url=row.get("image_url") or "",
            category=row.get("category") or "",
            seller_id=row.get("seller_id"),
            stripe_price_id=row.get("stripe_price_id") or None,
            variants=[ProductVariant.from_row(v) for v in raw_variants],
            created_at=parse_timestamp(row.get("created_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reference": self.reference,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "image_url": self.image_url,
            "category": self.category,
            "seller_id": self.seller_id,
            "stripe_price_id": self.stripe_price_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.to_row()
        d["variants"] = [v.to_row() for v in self.variants]
        d["in_stock"] = self.in_stock
        return d

    def unit_amount(self) -> int:
        """Price in minor currency units."""
        return int(round(float(self.price) * 100))

    def variant(self, variant_id: Optional[str]) -> Optional[ProductVariant]:
        if not variant_id:
            return None
        return next((v for v in self.variants if v.id == variant_id), None)

    @property
    def in_stock(self) -> bool:
        if not self.variants:
            return True
        return any(v.stock > 0 for v in self.variants)


# -------------------------
# Cart
# -------------------------
@dataclass
class CartItem:
    id: str
    product: Product
    variant: Optional[ProductVariant] = None
    quantity: int = 1

    @property
    def variant_id(self) -> Optional[str]:
        return self.variant.id if self.variant else None

    def line_total(self) -> float:
        return float(self.product.price) * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product.id,
            "reference": self.product.reference,
            "name": self.product.name,
            "image_url": self.product.image_url,
            "price": self.product.price,
            "variant_id": self.variant_id,
            "variant": self.variant.label if self.variant else None,
            "quantity": self.quantity,
            "line_total": self.line_total(),
        }


# -------------------------
# Orders
# -------------------------
@dataclass
class ShippingAddress:
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    postal_code: str = ""
    country: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ShippingAddress":
        data = data or {}
        return cls(**{k: str(data.get(k) or "").strip() for k in cls.__dataclass_fields__})

    def to_dict(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}


@dataclass
class RelayPoint:
    id: str
    name: str = ""
    address: str = ""
    city: str = ""
    postal_code: str = ""
    country: str = "FR"
    opening_hours: Optional[Any] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["RelayPoint"]:
        if not data or not str(data.get("id") or "").strip():
            return None
        return cls(
            id=str(data["id"]).strip(),
            name=str(data.get("name") or ""),
            address=str(data.get("address") or ""),
            city=str(data.get("city") or ""),
            postal_code=str(data.get("postal_code") or data.get("postalCode") or ""),
            country=str(data.get("country") or "FR"),
            opening_hours=data.get("opening_hours"),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "city": self.city,
            "postal_code": self.postal_code,
            "country": self.country,
        }
        if self.opening_hours is not None:
            d["opening_hours"] = self.opening_hours
        return d


@dataclass
class OrderItem:
    id: str
    order_id: str
    product_id: str
    quantity: int
    price: float
    variant_id: Optional[str] = None
    product: Optional[Product] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any], product: Optional[Product] = None) -> "OrderItem":
        return cls(
            id=str(row.get("id") or ""),
            order_id=str(row.get("order_id") or ""),
            product_id=str(row.get("product_id") or ""),
            quantity=max(0, _int(row.get("quantity"))),
            price=_float(row.get("price")),
            variant_id=row.get("variant_id") or None,
            product=product,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "price": self.price,
            "product": self.product.to_dict() if self.product else None,
        }


@dataclass
class Order:
    id: str
    user_id: str
    total_amount: float
    status: str = "pending"
    shipping_address: ShippingAddress = field(default_factory=ShippingAddress)
    relay_point: Optional[RelayPoint] = None
    payment_intent_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItem] = field(default_factory=list)
    customer: Optional[Dict[str, str]] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any], items: Optional[List[OrderItem]] = None) -> "Order":
        return cls(
            id=str(row["id"]),
            user_id=str(row.get("user_id") or ""),
            total_amount=_float(row.get("total_amount")),
            status=row.get("status") or "pending",
            shipping_address=ShippingAddress.from_dict(row.get("shipping_address")),
            relay_point=RelayPoint.from_dict(row.get("relay_point")),
            payment_intent_id=row.get("payment_intent_id") or None,
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
            items=list(items or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "total_amount": self.total_amount,
            "status": self.status,
            "shipping_address": self.shipping_address.to_dict(),
            "relay_point": self.relay_point.to_dict() if self.relay_point else None,
            "payment_intent_id": self.payment_intent_id,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "items": [i.to_dict() for i in self.items],
            "customer": self.customer,
        }
