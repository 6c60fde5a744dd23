from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from storefront.errors import NotFound, ValidationError
from storefront.models import CartItem, Product, ProductVariant


log = logging.getLogger(__name__)

MAX_LINE_QUANTITY = 99


class Cart:
    """Session cart. Lines are keyed by (product id, variant id).

    The first item added starts a hold timer; a cart whose timer ran out is
    emptied the next time it is loaded.
    """

    def __init__(
        self,
        items: Optional[List[CartItem]] = None,
        timer_end: Optional[float] = None,
        hold_minutes: int = 10,
    ):
        self.items: List[CartItem] = list(items or [])
        self.timer_end = timer_end
        self.hold_minutes = hold_minutes

    def _find(self, product_id: str, variant_id: Optional[str] = None) -> Optional[CartItem]:
        for item in self.items:
            if item.product.id == product_id and (item.variant_id or None) == (variant_id or None):
                return item
        return None

    @staticmethod
    def _cap(quantity: int, variant: Optional[ProductVariant]) -> int:
        cap = MAX_LINE_QUANTITY
        if variant is not None:
            cap = min(cap, variant.stock)
        return min(quantity, cap)

    def add(self, product: Product, variant: Optional[ProductVariant] = None, quantity: int = 1, now: Optional[float] = None) -> CartItem:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        if product.variants and variant is None:
            raise ValidationError("Please choose a variant")
        if variant is not None and variant.stock <= 0:
            raise ValidationError("This variant is out of stock")

        item = self._find(product.id, variant.id if variant else None)
        if item is not None:
            item.quantity = self._cap(item.quantity + quantity, variant)
        else:
            item = CartItem(id=uuid.uuid4().hex, product=product, variant=variant, quantity=self._cap(quantity, variant))
            self.items.append(item)

        if self.timer_end is None:
            self.start_timer(now)
        return item

    def remove(self, product_id: str, variant_id: Optional[str] = None) -> None:
        self.items = [
            i for i in self.items
            if not (i.product.id == product_id and (i.variant_id or None) == (variant_id or None))
        ]
        if not self.items:
            self.clear_timer()

    def update_quantity(self, product_id: str, quantity: int, variant_id: Optional[str] = None) -> None:
        if quantity <= 0:
            self.remove(product_id, variant_id)
            return
        item = self._find(product_id, variant_id)
        if item is None:
            raise NotFound("Item not in cart")
        item.quantity = self._cap(quantity, item.variant)

    def clear(self) -> None:
        self.items = []
        self.clear_timer()

    def total_price(self) -> float:
        return sum(i.product.price * i.quantity for i in self.items)

    def total_items(self) -> int:
        return sum(i.quantity for i in self.items)

    # Hold timer
    def start_timer(self, now: Optional[float] = None) -> None:
        self.timer_end = (now if now is not None else time.time()) + self.hold_minutes * 60

    def clear_timer(self) -> None:
        self.timer_end = None

    def remaining(self, now: Optional[float] = None) -> Optional[int]:
        if self.timer_end is None:
            return None
        now = now if now is not None else time.time()
        return max(0, int(self.timer_end - now))

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.timer_end is not None and self.remaining(now) == 0

    # Persistence
    def to_session(self) -> Dict[str, Any]:
        return {
            "items": [
                {"id": i.id, "product_id": i.product.id, "variant_id": i.variant_id, "quantity": i.quantity}
                for i in self.items
            ],
            "timer_end": self.timer_end,
        }

    @classmethod
    def from_session(
        cls,
        data: Any,
        products: Dict[str, Product],
        hold_minutes: int = 10,
        now: Optional[float] = None,
    ) -> "Cart":
        """Rebuild from session data; lines whose product or variant is gone are dropped."""
        if not isinstance(data, dict):
            return cls(hold_minutes=hold_minutes)

        items: List[CartItem] = []
        for raw in data.get("items") or []:
            if not isinstance(raw, dict):
                continue
            try:
                qty = int(raw.get("quantity", 0))
            except (TypeError, ValueError):
                continue
            if qty <= 0:
                continue
            product = products.get(str(raw.get("product_id") or ""))
            if product is None:
                continue
            variant = None
            if raw.get("variant_id"):
                variant = product.variant(str(raw["variant_id"]))
                if variant is None:
                    continue
            qty = cls._cap(qty, variant)
            if qty <= 0:
                continue
            items.append(CartItem(id=str(raw.get("id") or uuid.uuid4().hex), product=product, variant=variant, quantity=qty))

        timer_end = data.get("timer_end")
        cart = cls(items, float(timer_end) if timer_end else None, hold_minutes)
        if not cart.items:
            cart.clear_timer()
        elif cart.is_expired(now):
            log.info("Cart hold expired, clearing %d items", len(cart.items))
            cart.clear()
        return cart

    def summary(self, now: Optional[float] = None) -> Dict[str, Any]:
        return {
            "items": [i.to_dict() for i in self.items],
            "count": self.total_items(),
            "total": self.total_price(),
            "remaining_seconds": self.remaining(now),
        }
