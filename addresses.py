"""
Saved addresses and the default-address invariant.

A user has at most one address with is_default=True, mirrored by
user.primary_address_id. Address flag writes are part of the operation;
the user pointer writes are best effort and logged on failure.
"""
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, now, serialize, to_object_id
from errors import InvalidArgument, NotFound
from schemas import Address as AddressSchema

logger = structlog.get_logger(__name__)


class AddressPayload(BaseModel):
    label: Optional[str] = None
    name: str
    phone_number: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "India"
    is_default: bool = False


class AddressUpdate(BaseModel):
    label: Optional[str] = None
    name: Optional[str] = None
    phone_number: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    is_default: Optional[bool] = None


def _update_user(db: Database, user_id: str, update: Dict) -> None:
    update = {**update, "$set": {**update.get("$set", {}), "updated_at": now()}}
    try:
        db["user"].update_one({"_id": to_object_id(user_id)}, update)
    except PyMongoError as e:
        logger.warning("user_address_pointer_failed", user_id=user_id, error=str(e))


def _clear_other_defaults(db: Database, user_id: str, keep_id) -> None:
    db["address"].update_many(
        {"user_id": user_id, "_id": {"$ne": keep_id}, "is_default": True},
        {"$set": {"is_default": False}},
    )


def list_addresses(db: Database, user_id: str) -> List[Dict]:
    return [serialize(a) for a in db["address"].find({"user_id": user_id}).sort("created_at", DESCENDING)]


def _owned_address(db: Database, user_id: str, address_id: str) -> Dict:
    address = db["address"].find_one({"_id": to_object_id(address_id), "user_id": user_id})
    if not address:
        raise NotFound("Address not found")
    return address


def create_address(db: Database, user_id: str, payload: AddressPayload) -> Dict:
    if not db["user"].find_one({"_id": to_object_id(user_id)}, {"_id": 1}):
        raise NotFound("User not found")

    first = db["address"].count_documents({"user_id": user_id}) == 0
    make_default = first or payload.is_default
    address = AddressSchema(user_id=user_id, **{**payload.model_dump(), "is_default": make_default})
    address_id = create_document(db, "address", address)
    oid = to_object_id(address_id)

    if make_default:
        _clear_other_defaults(db, user_id, oid)
        _update_user(db, user_id, {"$push": {"address_ids": address_id}, "$set": {"primary_address_id": address_id}})
    else:
        _update_user(db, user_id, {"$push": {"address_ids": address_id}})
    logger.info("address_created", user_id=user_id, address_id=address_id, is_default=make_default)
    return serialize(db["address"].find_one({"_id": oid}))


def update_address(db: Database, user_id: str, address_id: str, payload: AddressUpdate) -> Dict:
    address = _owned_address(db, user_id, address_id)
    data = payload.model_dump(exclude_none=True)
    if not data:
        raise InvalidArgument("Nothing to update")

    if data.get("is_default") is True:
        _clear_other_defaults(db, user_id, address["_id"])
        _update_user(db, user_id, {"$set": {"primary_address_id": address_id}})
    elif data.get("is_default") is False and address.get("is_default"):
        _update_user(db, user_id, {"$set": {"primary_address_id": None}})

    data["updated_at"] = now()
    db["address"].update_one({"_id": address["_id"]}, {"$set": data})
    return serialize(db["address"].find_one({"_id": address["_id"]}))


def delete_address(db: Database, user_id: str, address_id: str) -> None:
    address = _owned_address(db, user_id, address_id)

    if address.get("is_default"):
        successor = db["address"].find_one(
            {"user_id": user_id, "_id": {"$ne": address["_id"]}},
            sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
        )
        if successor:
            db["address"].update_one({"_id": successor["_id"]}, {"$set": {"is_default": True}})
            _update_user(db, user_id, {"$set": {"primary_address_id": str(successor["_id"])}})
        else:
            _update_user(db, user_id, {"$set": {"primary_address_id": None}})

    _update_user(db, user_id, {"$pull": {"address_ids": address_id}})
    db["address"].delete_one({"_id": address["_id"]})
    logger.info("address_deleted", user_id=user_id, address_id=address_id, was_default=bool(address.get("is_default")))
