"""
Shop submission and the admin verification workflow.

pending -> verified | rejected. Approving a shop promotes its owner from
customer to retailer. The shop write and the owner write are separate
single-document updates; `reconcile_owner_roles` re-applies the promotion
for every verified shop, so an interrupted approval converges on retry.
"""
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, now, serialize, to_object_id
from errors import InvalidArgument, LocalLensError, NotFound
from schemas import GeoPoint, Shop as ShopSchema, ShopAddress

logger = structlog.get_logger(__name__)

DECISIONS = ("verified", "rejected")
VERIFICATION_STATUSES = ("pending", "verified", "rejected")


class ShopDraft(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    logo: Optional[str] = None
    contact_email: EmailStr
    contact_phone: str
    website: Optional[str] = None
    address: ShopAddress
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    categories: List[str] = Field(default_factory=list)
    registration_number: Optional[str] = None
    gstin: Optional[str] = None
    verification_document: Optional[str] = None


def submit_shop(db: Database, owner_id: str, draft: ShopDraft) -> Dict:
    data = draft.model_dump()
    location = GeoPoint(coordinates=[data.pop("longitude"), data.pop("latitude")])
    shop = ShopSchema(owner_id=owner_id, location=location, verification_status="pending",
                      is_verified=False, is_active=True, **data)
    shop_id = create_document(db, "shop", shop)
    logger.info("shop_submitted", shop_id=shop_id, owner_id=owner_id)
    return serialize(db["shop"].find_one({"_id": to_object_id(shop_id)}))


def promote_owner(db: Database, owner_id: str) -> bool:
    """Make the owner a retailer if they are still a customer. Returns True when a write happened."""
    res = db["user"].update_one(
        {"_id": to_object_id(owner_id), "role": "customer"},
        {"$set": {"role": "retailer", "updated_at": now()}},
    )
    if res.modified_count:
        logger.info("owner_promoted", user_id=owner_id)
    return bool(res.modified_count)


def decide_verification(db: Database, shop_id: str, decision: str) -> Dict:
    if decision not in DECISIONS:
        raise InvalidArgument("Invalid status value")
    oid = to_object_id(shop_id)
    stamp = now()
    res = db["shop"].update_one(
        {"_id": oid},
        {"$set": {
            "verification_status": decision,
            "verification_date": stamp,
            "is_verified": decision == "verified",
            "updated_at": stamp,
        }},
    )
    if res.matched_count == 0:
        raise NotFound("Shop not found")
    shop = db["shop"].find_one({"_id": oid})
    logger.info("shop_decided", shop_id=shop_id, decision=decision)

    if decision == "verified":
        try:
            promote_owner(db, shop["owner_id"])
        except (PyMongoError, LocalLensError) as e:
            logger.warning("owner_promotion_failed", shop_id=shop_id, owner_id=shop["owner_id"], error=str(e))
    return serialize(shop)


def reconcile_owner_roles(db: Database) -> int:
    owner_ids = {s["owner_id"] for s in db["shop"].find({"verification_status": "verified"}, {"owner_id": 1})}
    promoted = 0
    for owner_id in owner_ids:
        try:
            if promote_owner(db, owner_id):
                promoted += 1
        except InvalidArgument:
            logger.warning("owner_id_malformed", owner_id=owner_id)
    logger.info("owner_roles_reconciled", owners=len(owner_ids), promoted=promoted)
    return promoted


def get_shop(db: Database, shop_id: str) -> Dict:
    shop = db["shop"].find_one({"_id": to_object_id(shop_id)})
    if not shop:
        raise NotFound("Shop not found")
    return serialize(shop)


def list_owner_shops(db: Database, owner_id: str) -> List[Dict]:
    return [serialize(s) for s in db["shop"].find({"owner_id": owner_id}).sort("created_at", -1)]


def owned_shop_ids(db: Database, owner_id: str) -> List[str]:
    return [str(s["_id"]) for s in db["shop"].find({"owner_id": owner_id}, {"_id": 1})]


def list_shops_by_status(db: Database, status: str = "pending") -> List[Dict]:
    if status not in VERIFICATION_STATUSES:
        raise InvalidArgument("Invalid status parameter")
    shops = [serialize(s) for s in db["shop"].find({"verification_status": status}).sort("created_at", -1)]
    owner_oids = []
    for s in shops:
        try:
            owner_oids.append(to_object_id(s["owner_id"]))
        except InvalidArgument:
            continue
    owners = {
        str(u["_id"]): {"email": u.get("email"), "display_name": u.get("display_name")}
        for u in db["user"].find({"_id": {"$in": owner_oids}}, {"email": 1, "display_name": 1})
    }
    for s in shops:
        s["owner"] = owners.get(s["owner_id"], {"email": "Unknown", "display_name": "Unknown"})
    return shops
