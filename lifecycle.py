"""
Pieces shared by the order and reservation flows: the status machine,
history entries, human-readable numbers and purchase-time snapshots.
"""
import random
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pymongo.database import Database

from database import now, to_object_id
from errors import Conflict, InvalidArgument, NotFound
from schemas import ProductSnapshot, ShopSnapshot, StatusUpdate, VariantSnapshot


class StatusMachine:
    """
    A main chain of statuses walked forward (skipping ahead is allowed) plus
    alternate terminal statuses reachable from any non-terminal status.
    The last chain status and every alternate are terminal. Re-applying the
    current status is allowed so a note can be added to the history.
    """

    def __init__(self, chain: Sequence[str], alternates: Sequence[str]):
        self.chain = tuple(chain)
        self.alternates = tuple(alternates)
        self.statuses = self.chain + self.alternates
        self.terminal = {self.chain[-1], *self.alternates}

    def validate(self, status: Optional[str]) -> str:
        if not status:
            raise InvalidArgument("Status is required")
        if status not in self.statuses:
            raise InvalidArgument("Invalid status")
        return status

    def can_move(self, current: str, target: str) -> bool:
        if current == target:
            return True
        if current in self.terminal:
            return False
        if target in self.alternates:
            return True
        return self.chain.index(target) > self.chain.index(current)

    def check(self, current: str, target: str) -> None:
        self.validate(target)
        if not self.can_move(current, target):
            raise Conflict(f"Cannot move from {current} to {target}")


def status_entry(status: str, notes: Optional[str] = None, updated_by: Optional[str] = None,
                 at: Optional[datetime] = None) -> Dict:
    return StatusUpdate(status=status, timestamp=at or now(), notes=notes, updated_by=updated_by).model_dump()


def generate_number(prefix: str, at: Optional[datetime] = None) -> str:
    """PREFIX-YYYYMMDD-NNNNN with a random five digit suffix."""
    at = at or now()
    return f"{prefix}-{at.strftime('%Y%m%d')}-{random.randint(10000, 99999)}"


def selling_price(price: float, discount_percentage: float = 0) -> float:
    if discount_percentage and discount_percentage > 0:
        return round(price * (1 - discount_percentage / 100), 2)
    return round(price, 2)


def shop_snapshot(shop: Dict) -> ShopSnapshot:
    address = shop.get("address") or {}
    return ShopSnapshot(
        name=shop["name"],
        contact_phone=shop.get("contact_phone"),
        contact_email=shop.get("contact_email"),
        address=address or None,
    )


def product_snapshot(product: Dict) -> ProductSnapshot:
    return ProductSnapshot(
        name=product["name"],
        description=product.get("description"),
        images=[img["url"] for img in product.get("images", [])],
        category=product.get("category"),
        brand=product.get("brand"),
        sku=product.get("sku"),
    )


def resolve_line(db: Database, product_id: str, variant_id: Optional[str], quantity: int) -> Tuple[Dict, Dict, Dict]:
    """
    Load the live product (and variant) for a cart line and freeze what the
    line needs. Returns (line fields, product document, shop document).
    """
    product = db["product"].find_one({"_id": to_object_id(product_id)})
    if not product:
        raise NotFound("Product not found")
    if not product.get("is_active", True) or not product.get("is_available", True):
        raise Conflict(f"{product['name']} is not available")
    shop = db["shop"].find_one({"_id": to_object_id(product["shop_id"])})
    if not shop or not shop.get("is_active", True):
        raise Conflict(f"{product['name']} is not available")

    variant = None
    if variant_id:
        variant = next((v for v in product.get("variants", []) if v["variant_id"] == variant_id), None)
        if variant is None or not variant.get("is_active", True):
            raise NotFound("Variant not found")
        stock = variant.get("available_quantity", 0)
        unit_price = selling_price(variant["price"], variant.get("discount_percentage", 0))
    elif product.get("has_variants") and product.get("variants"):
        raise InvalidArgument(f"Choose a variant of {product['name']}")
    else:
        stock = product.get("available_quantity", 0)
        unit_price = selling_price(product["base_price"], product.get("discount_percentage", 0))

    if stock < quantity:
        raise Conflict(f"Insufficient stock for {product['name']}")

    line = {
        "product_id": str(product["_id"]),
        "product_snapshot": product_snapshot(product),
        "variant_id": variant_id,
        "variant_snapshot": VariantSnapshot(attributes=variant["attributes"], sku=variant.get("sku")) if variant else None,
        "quantity": quantity,
        "unit_price": unit_price,
        "total_price": round(unit_price * quantity, 2),
    }
    return line, product, shop


def merge_lines(lines: Iterable) -> List[Tuple[str, Optional[str], int]]:
    """Sum quantities of cart lines naming the same product and variant, keeping first-seen order."""
    totals: Dict[Tuple[str, Optional[str]], int] = {}
    for line in lines:
        key = (line.product_id, line.variant_id)
        totals[key] = totals.get(key, 0) + line.quantity
    return [(product_id, variant_id, quantity) for (product_id, variant_id), quantity in totals.items()]


def take_stock(db: Database, product_id: str, variant_id: Optional[str], quantity: int) -> None:
    """Decrement stock only while enough remains; raises Conflict otherwise."""
    if variant_id:
        res = db["product"].update_one(
            {
                "_id": to_object_id(product_id),
                "variants": {"$elemMatch": {"variant_id": variant_id, "available_quantity": {"$gte": quantity}}},
            },
            {"$inc": {"variants.$.available_quantity": -quantity}},
        )
    else:
        res = db["product"].update_one(
            {"_id": to_object_id(product_id), "available_quantity": {"$gte": quantity}},
            {"$inc": {"available_quantity": -quantity}},
        )
    if res.matched_count == 0:
        raise Conflict("Insufficient stock")


def release_stock(db: Database, product_id: str, variant_id: Optional[str], quantity: int) -> None:
    if variant_id:
        db["product"].update_one(
            {"_id": to_object_id(product_id), "variants.variant_id": variant_id},
            {"$inc": {"variants.$.available_quantity": quantity}},
        )
    else:
        db["product"].update_one({"_id": to_object_id(product_id)}, {"$inc": {"available_quantity": quantity}})
