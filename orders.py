"""
Order lifecycle.

pending -> processing -> ready_for_pickup -> completed, with canceled and
refunded reachable from any non-terminal status. Every status change is a
single conditional update that also appends to `status_updates`.
"""
from typing import Dict, Iterable, List, Literal, Optional

import structlog
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, now, serialize, to_object_id
from errors import (Conflict, Forbidden, InvalidArgument, LocalLensError, NotFound, PaymentVerificationFailed,
                    Unavailable)
from lifecycle import (StatusMachine, generate_number, merge_lines, release_stock, resolve_line, shop_snapshot,
                       status_entry, take_stock)
from notifications import notify
from payments import PaymentGateway, verify_signature
from schemas import Order as OrderSchema
from schemas import OrderItem, ShippingAddress
from shops import owned_shop_ids

logger = structlog.get_logger(__name__)

ORDER_MACHINE = StatusMachine(
    chain=("pending", "processing", "ready_for_pickup", "completed"),
    alternates=("canceled", "refunded"),
)
ORDER_NUMBER_ATTEMPTS = 5

# order-wide figures that would expose other shops' pricing to a retailer
ORDER_WIDE_FIELDS = ("total_amount", "taxes", "shipping_fee", "coupon_discount", "coupon_code")


class CartLine(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)


class CreateOrderPayload(BaseModel):
    items: List[CartLine]
    shipping_address: Optional[ShippingAddress] = None
    payment_method: Literal["cod", "online", "upi", "card"] = "online"
    notes: Optional[str] = None


def _insert_order(db: Database, order: OrderSchema) -> str:
    for attempt in range(ORDER_NUMBER_ATTEMPTS):
        try:
            return create_document(db, "order", order)
        except DuplicateKeyError:
            logger.warning("order_number_collision", order_number=order.order_number, attempt=attempt)
            order.order_number = generate_number("LL")
    raise Unavailable("Could not allocate an order number")


def create_order(db: Database, user: Dict, payload: CreateOrderPayload) -> Dict:
    if not payload.items:
        raise InvalidArgument("Cart is empty")
    user_id = str(user["_id"])
    lines = merge_lines(payload.items)

    items: List[OrderItem] = []
    for product_id, variant_id, quantity in lines:
        fields, product, shop = resolve_line(db, product_id, variant_id, quantity)
        tax = round(fields["total_price"] * float(product.get("tax", 0)) / 100, 2)
        items.append(OrderItem(**fields, tax=tax, shop_id=str(shop["_id"]), shop_snapshot=shop_snapshot(shop)))

    subtotal = round(sum(i.total_price for i in items), 2)
    taxes = round(sum(i.tax for i in items), 2)
    order = OrderSchema(
        user_id=user_id,
        order_number=generate_number("LL"),
        items=items,
        subtotal=subtotal,
        taxes=taxes,
        total_amount=round(subtotal + taxes, 2),
        shipping_address=payload.shipping_address,
        payment_method=payload.payment_method,
        order_status="pending",
        status_updates=[status_entry("pending", "Order placed", user_id)],
        notes=payload.notes,
    )

    # stock is taken before the order exists; anything taken is put back if a later step fails
    taken = []
    try:
        for product_id, variant_id, quantity in lines:
            take_stock(db, product_id, variant_id, quantity)
            taken.append((product_id, variant_id, quantity))
        order_id = _insert_order(db, order)
    except (LocalLensError, PyMongoError):
        for product_id, variant_id, quantity in taken:
            release_stock(db, product_id, variant_id, quantity)
        raise

    logger.info("order_placed", order_id=order_id, order_number=order.order_number, total=order.total_amount)
    notify(db, user_id, "Order Placed", f"Your order {order.order_number} has been placed.", "order", order_id)
    return serialize(db["order"].find_one({"_id": to_object_id(order_id)}))


def create_payment_order(db: Database, order_id: str, user: Dict, gateway: PaymentGateway,
                         currency: str = "INR") -> Dict:
    order = db["order"].find_one({"_id": to_object_id(order_id)})
    if not order:
        raise NotFound("Order not found")
    if order["user_id"] != str(user["_id"]):
        raise Forbidden("You don't have permission to pay for this order")
    if order["order_status"] != "pending":
        raise Conflict("Order is not awaiting payment")
    gateway_order = gateway.create_order(round(order["total_amount"] * 100), currency, order_id)
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {
            "payment_details.razorpay_order_id": gateway_order["id"],
            "payment_details.status": "pending",
            "updated_at": now(),
        }},
    )
    logger.info("payment_order_created", order_id=order_id, gateway_order_id=gateway_order["id"])
    return gateway_order


def confirm_payment(db: Database, order_id: str, gateway_order_id: str, payment_id: str,
                    signature: str, secret: str) -> Dict:
    if not (order_id and gateway_order_id and payment_id and signature):
        raise InvalidArgument("All payment verification details are required")
    if not verify_signature(gateway_order_id, payment_id, signature, secret):
        logger.warning("payment_signature_mismatch", order_id=order_id, gateway_order_id=gateway_order_id)
        raise PaymentVerificationFailed("Payment verification failed")

    oid = to_object_id(order_id)
    order = db["order"].find_one({"_id": oid})
    if not order:
        raise NotFound("Order not found")
    payment = order.get("payment_details") or {}
    recorded = payment.get("razorpay_order_id")
    if recorded and recorded != gateway_order_id:
        raise PaymentVerificationFailed("Payment does not belong to this order")
    if order["order_status"] != "pending":
        if payment.get("razorpay_payment_id") == payment_id:
            return serialize(order)
        raise Conflict("Order is not awaiting payment")

    stamp = now()
    updated = db["order"].find_one_and_update(
        {"_id": oid, "order_status": "pending"},
        {
            "$set": {
                "order_status": "processing",
                "payment_details.status": "completed",
                "payment_details.razorpay_order_id": gateway_order_id,
                "payment_details.razorpay_payment_id": payment_id,
                "payment_details.razorpay_signature": signature,
                "payment_details.paid_at": stamp,
                "updated_at": stamp,
            },
            "$push": {"status_updates": status_entry("processing", "Payment completed successfully", at=stamp)},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Order is not awaiting payment")
    logger.info("payment_confirmed", order_id=order_id, payment_id=payment_id)
    return serialize(updated)


def _order_shop_ids(order: Dict) -> List[str]:
    return sorted({item["shop_id"] for item in order.get("items", [])})


def update_order_status(db: Database, order_id: str, user: Dict, status: Optional[str],
                        notes: Optional[str] = None) -> Dict:
    oid = to_object_id(order_id)
    order = db["order"].find_one({"_id": oid})
    if not order:
        raise NotFound("Order not found")

    user_id = str(user["_id"])
    shop_oids = [to_object_id(s) for s in _order_shop_ids(order)]
    if db["shop"].count_documents({"_id": {"$in": shop_oids}, "owner_id": user_id}) == 0:
        raise Forbidden("You don't have permission to update this order")

    current = order["order_status"]
    ORDER_MACHINE.check(current, status)

    stamp = now()
    updated = db["order"].find_one_and_update(
        {"_id": oid, "order_status": current},
        {
            "$set": {"order_status": status, "updated_at": stamp},
            "$push": {"status_updates": status_entry(status, notes, user_id, at=stamp)},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Order was updated by someone else, reload and retry")
    logger.info("order_status_changed", order_id=order_id, old=current, new=status, by=user_id)
    if status != current:
        notify(db, order["user_id"], "Order Update",
               f"Your order {order['order_number']} is now {status.replace('_', ' ')}.", "order", order_id)
    return serialize(updated)


def retailer_view(order: Dict, shop_ids: Iterable[str]) -> Dict:
    """The order as one retailer may see it: their items only, priced on their items only."""
    own = set(shop_ids)
    items = [item for item in order.get("items", []) if item["shop_id"] in own]
    view = {k: v for k, v in order.items() if k not in ORDER_WIDE_FIELDS}
    view["items"] = items
    view["subtotal"] = round(sum(item["total_price"] for item in items), 2)
    return view


def list_orders_for(db: Database, user: Dict) -> List[Dict]:
    role = user.get("role")
    user_id = str(user["_id"])
    if role == "admin":
        return [serialize(o) for o in db["order"].find().sort("created_at", -1)]
    if role == "retailer":
        shop_ids = owned_shop_ids(db, user_id)
        if not shop_ids:
            return []
        cursor = db["order"].find({"items.shop_id": {"$in": shop_ids}}).sort("created_at", -1)
        return [retailer_view(serialize(o), shop_ids) for o in cursor]
    return [serialize(o) for o in db["order"].find({"user_id": user_id}).sort("created_at", -1)]


def get_order_for(db: Database, order_id: str, user: Dict) -> Dict:
    order = db["order"].find_one({"_id": to_object_id(order_id)})
    if not order:
        raise NotFound("Order not found")
    user_id = str(user["_id"])
    if user.get("role") == "admin" or order["user_id"] == user_id:
        return serialize(order)
    shop_ids = set(owned_shop_ids(db, user_id)) & set(_order_shop_ids(order))
    if not shop_ids:
        raise Forbidden("You don't have permission to view this order")
    return retailer_view(serialize(order), shop_ids)


def list_shop_orders(db: Database, shop_id: str, user: Dict) -> List[Dict]:
    """Orders touching one shop, reduced to that shop's items."""
    shop = db["shop"].find_one({"_id": to_object_id(shop_id)})
    if not shop:
        raise NotFound("Shop not found")
    if user.get("role") != "admin" and shop["owner_id"] != str(user["_id"]):
        raise Forbidden("You don't have permission to view these orders")
    cursor = db["order"].find({"items.shop_id": shop_id}).sort("created_at", -1)
    return [retailer_view(serialize(o), [shop_id]) for o in cursor]
