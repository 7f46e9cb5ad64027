"""
Reservation lifecycle: pickup holds on products at a single shop.

pending -> confirmed -> ready -> completed, with cancelled and expired as
alternates. Mirrors the order flow: snapshots at creation, append-only
status history, shop-owner-only status changes.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, now, serialize, to_object_id
from errors import Conflict, Forbidden, InvalidArgument, NotFound, Unavailable
from lifecycle import StatusMachine, generate_number, merge_lines, resolve_line, shop_snapshot, status_entry
from notifications import notify
from orders import CartLine
from schemas import ContactInfo, PickupTimeSlot
from schemas import Reservation as ReservationSchema
from schemas import ReservationItem

logger = structlog.get_logger(__name__)

RESERVATION_MACHINE = StatusMachine(
    chain=("pending", "confirmed", "ready", "completed"),
    alternates=("cancelled", "expired"),
)
RESERVATION_NUMBER_ATTEMPTS = 5
EXPIRABLE = ("pending", "confirmed", "ready")


class CreateReservationPayload(BaseModel):
    shop_id: str
    items: List[CartLine]
    pickup_date: datetime
    pickup_time_slot: PickupTimeSlot
    expiry_date: Optional[datetime] = None
    contact_info: ContactInfo
    reservation_fee: float = Field(0, ge=0)
    notes: Optional[str] = None


def default_expiry(pickup_date: datetime, expiry_date: Optional[datetime] = None) -> datetime:
    """Reservations lapse one day after the pickup date unless told otherwise."""
    return expiry_date or pickup_date + timedelta(days=1)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def create_reservation(db: Database, user: Dict, payload: CreateReservationPayload) -> Dict:
    if not payload.items:
        raise InvalidArgument("No items to reserve")
    slot = payload.pickup_time_slot
    if slot.start >= slot.end:
        raise InvalidArgument("Pickup time slot must end after it starts")

    shop = db["shop"].find_one({"_id": to_object_id(payload.shop_id)})
    if not shop:
        raise NotFound("Shop not found")

    items: List[ReservationItem] = []
    for product_id, variant_id, quantity in merge_lines(payload.items):
        fields, product, _ = resolve_line(db, product_id, variant_id, quantity)
        if product["shop_id"] != payload.shop_id:
            raise InvalidArgument(f"{product['name']} is not sold by this shop")
        items.append(ReservationItem(**fields))

    user_id = str(user["_id"])
    pickup_date = _as_utc(payload.pickup_date)
    subtotal = round(sum(i.total_price for i in items), 2)
    reservation = ReservationSchema(
        user_id=user_id,
        shop_id=payload.shop_id,
        shop_snapshot=shop_snapshot(shop),
        reservation_number=generate_number("LLR"),
        items=items,
        subtotal=subtotal,
        reservation_fee=payload.reservation_fee,
        total_amount=round(subtotal + payload.reservation_fee, 2),
        pickup_date=pickup_date,
        pickup_time_slot=slot,
        expiry_date=default_expiry(pickup_date, payload.expiry_date and _as_utc(payload.expiry_date)),
        status="pending",
        status_updates=[status_entry("pending", "Reservation placed", user_id)],
        contact_info=payload.contact_info,
        notes=payload.notes,
    )

    for attempt in range(RESERVATION_NUMBER_ATTEMPTS):
        try:
            reservation_id = create_document(db, "reservation", reservation)
            break
        except DuplicateKeyError:
            logger.warning("reservation_number_collision", reservation_number=reservation.reservation_number,
                           attempt=attempt)
            reservation.reservation_number = generate_number("LLR")
    else:
        raise Unavailable("Could not allocate a reservation number")

    logger.info("reservation_placed", reservation_id=reservation_id, shop_id=payload.shop_id)
    notify(db, user_id, "Reservation Placed",
           f"Your reservation {reservation.reservation_number} has been placed.", "reservation", reservation_id)
    return serialize(db["reservation"].find_one({"_id": to_object_id(reservation_id)}))


def update_reservation_status(db: Database, reservation_id: str, user: Dict, status: Optional[str],
                              notes: Optional[str] = None) -> Dict:
    oid = to_object_id(reservation_id)
    reservation = db["reservation"].find_one({"_id": oid})
    if not reservation:
        raise NotFound("Reservation not found")

    user_id = str(user["_id"])
    shop = db["shop"].find_one({"_id": to_object_id(reservation["shop_id"]), "owner_id": user_id})
    if not shop:
        raise Forbidden("You don't have permission to update this reservation")

    current = reservation["status"]
    RESERVATION_MACHINE.check(current, status)

    stamp = now()
    updated = db["reservation"].find_one_and_update(
        {"_id": oid, "status": current},
        {
            "$set": {"status": status, "updated_at": stamp},
            "$push": {"status_updates": status_entry(status, notes, user_id, at=stamp)},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Reservation was updated by someone else, reload and retry")
    logger.info("reservation_status_changed", reservation_id=reservation_id, old=current, new=status, by=user_id)
    if status != current:
        notify(db, reservation["user_id"], "Reservation Update",
               f"Your reservation {reservation['reservation_number']} is now {status}.", "reservation",
               reservation_id)
    return serialize(updated)


def expire_overdue_reservations(db: Database, at: Optional[datetime] = None) -> int:
    at = at or now()
    res = db["reservation"].update_many(
        {"status": {"$in": list(EXPIRABLE)}, "expiry_date": {"$lt": at}},
        {
            "$set": {"status": "expired", "updated_at": at},
            "$push": {"status_updates": status_entry("expired", "Pickup window lapsed", at=at)},
        },
    )
    logger.info("reservations_expired", count=res.modified_count)
    return res.modified_count


def list_user_reservations(db: Database, user_id: str) -> List[Dict]:
    return [serialize(r) for r in db["reservation"].find({"user_id": user_id}).sort("created_at", -1)]


def list_shop_reservations(db: Database, shop_id: str, user: Dict, status: Optional[str] = None) -> List[Dict]:
    shop = db["shop"].find_one({"_id": to_object_id(shop_id)})
    if not shop:
        raise NotFound("Shop not found")
    if user.get("role") != "admin" and shop["owner_id"] != str(user["_id"]):
        raise Forbidden("You don't have permission to view these reservations")
    query = {"shop_id": shop_id}
    if status:
        query["status"] = RESERVATION_MACHINE.validate(status)
    return [serialize(r) for r in db["reservation"].find(query).sort("pickup_date", 1)]
