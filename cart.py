"""
Cart aggregation and pricing.

A Cart holds line items keyed by (product_id, color, size), writes every
mutation through to its storage and derives totals on demand from the
current lines.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError
from pymongo.collection import Collection

from config import PricingConfig
from database import now_utc
from schemas import Variant

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def q2(value: Union[Decimal, float, int, str]) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class CartLine(BaseModel):
    product_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    unit_price: Decimal = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    variant: Variant = Field(default_factory=Variant)
    image: Optional[str] = None

    @property
    def key(self) -> Tuple[str, Optional[str], Optional[str]]:
        return (self.product_id, self.variant.color, self.variant.size)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class CartTotals:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal

    @property
    def amount_minor_units(self) -> int:
        return int((self.total * 100).to_integral_value(rounding=ROUND_HALF_UP))

    def as_dict(self) -> Dict[str, float]:
        return {
            "subtotal": float(self.subtotal),
            "tax": float(self.tax),
            "shipping": float(self.shipping),
            "discount": float(self.discount),
            "total": float(self.total),
        }


def compute_totals(lines: List[CartLine], pricing: PricingConfig, tax_rate=None,
                   free_shipping_threshold=None, flat_shipping_cost=None, discount=0) -> CartTotals:
    rate = pricing.tax_rate if tax_rate is None else Decimal(str(tax_rate))
    threshold = pricing.free_shipping_threshold if free_shipping_threshold is None else Decimal(str(free_shipping_threshold))
    flat = pricing.flat_shipping_cost if flat_shipping_cost is None else Decimal(str(flat_shipping_cost))

    subtotal = q2(sum((line.line_total for line in lines), Decimal("0")))
    discount = q2(discount)
    if discount < 0 or discount > subtotal:
        raise ValueError("discount must be between 0 and the subtotal")
    tax = q2(subtotal * rate)
    shipping = Decimal("0.00") if subtotal >= threshold else q2(flat)
    total = q2(subtotal + tax + shipping - discount)
    return CartTotals(subtotal=subtotal, tax=tax, shipping=shipping, discount=discount, total=total)


def coupon_discount(coupon: Optional[Dict[str, Any]], subtotal: Decimal) -> Decimal:
    """Discount granted by an active coupon document, capped at the subtotal."""
    if not coupon or not coupon.get("active", True):
        return Decimal("0.00")
    if subtotal < q2(coupon.get("min_order", 0)):
        return Decimal("0.00")
    value = Decimal(str(coupon["value"]))
    if coupon.get("type") == "percent":
        amount = subtotal * value / 100
    else:
        amount = value
    return min(q2(amount), subtotal)


# ---------------------- Storage ----------------------

class MemoryCartStorage:
    def __init__(self, items: Optional[List[Dict[str, Any]]] = None):
        self.items = list(items or [])
        self.writes = 0

    def load(self) -> List[Dict[str, Any]]:
        return list(self.items)

    def save(self, items: List[Dict[str, Any]]) -> None:
        self.items = list(items)
        self.writes += 1


class DocumentCartStorage:
    """Server-side cart: one document per user in the "cart" collection."""

    def __init__(self, collection: Collection, user_id: str):
        self.collection = collection
        self.user_id = user_id

    def load(self) -> List[Dict[str, Any]]:
        doc = self.collection.find_one({"user_id": self.user_id})
        items = (doc or {}).get("items", [])
        return items if isinstance(items, list) else []

    def save(self, items: List[Dict[str, Any]]) -> None:
        self.collection.update_one(
            {"user_id": self.user_id},
            {"$set": {"items": items, "updated_at": now_utc()}},
            upsert=True,
        )


# ---------------------- Cart ----------------------

class Cart:
    def __init__(self, storage, pricing: Optional[PricingConfig] = None):
        self.storage = storage
        self.pricing = pricing or PricingConfig()
        self._lines: List[CartLine] = self._load()

    def _load(self) -> List[CartLine]:
        try:
            raw = self.storage.load()
            return [CartLine.model_validate(item) for item in raw]
        except (ValidationError, TypeError, ValueError) as e:
            logger.warning("Stored cart is malformed, starting empty: %s", e)
            return []

    def _persist(self) -> None:
        self.storage.save([line.model_dump(mode="json") for line in self._lines])

    @property
    def lines(self) -> List[CartLine]:
        return [line.model_copy(deep=True) for line in self._lines]

    @property
    def is_empty(self) -> bool:
        return not self._lines

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines)

    def add_item(self, item: Union[CartLine, Dict[str, Any]], quantity: int = 1) -> CartLine:
        if isinstance(item, CartLine):
            line = item.model_copy(deep=True)
        else:
            line = CartLine.model_validate({**item, "quantity": 1})
        line.quantity = max(1, int(quantity))
        for existing in self._lines:
            if existing.key == line.key:
                existing.quantity += line.quantity
                self._persist()
                return existing
        self._lines.append(line)
        self._persist()
        return line

    def remove_item(self, product_id: str) -> None:
        self._lines = [line for line in self._lines if line.product_id != product_id]
        self._persist()

    def update_quantity(self, product_id: str, quantity: int) -> None:
        qty = max(1, int(quantity))
        for line in self._lines:
            if line.product_id == product_id:
                line.quantity = qty
        self._persist()

    def update_variant(self, product_id: str, color: Optional[str] = None, size: Optional[str] = None) -> None:
        for line in self._lines:
            if line.product_id == product_id:
                if color is not None:
                    line.variant.color = color
                if size is not None:
                    line.variant.size = size
        self._merge_duplicates()
        self._persist()

    def _merge_duplicates(self) -> None:
        merged: Dict[Tuple, CartLine] = {}
        for line in self._lines:
            if line.key in merged:
                merged[line.key].quantity += line.quantity
            else:
                merged[line.key] = line
        self._lines = list(merged.values())

    def clear(self) -> None:
        self._lines = []
        self._persist()

    def get_totals(self, tax_rate=None, free_shipping_threshold=None, flat_shipping_cost=None,
                   discount=0) -> CartTotals:
        return compute_totals(self._lines, self.pricing, tax_rate, free_shipping_threshold,
                              flat_shipping_cost, discount)
