import math
from typing import Dict, Optional

import structlog
from pymongo.database import Database

from database import create_document, now, serialize, to_object_id
from errors import Conflict, InvalidArgument, NotFound
from identity import Identity
from schemas import User as UserSchema

logger = structlog.get_logger(__name__)

ROLES = ("customer", "retailer", "admin")


def register_user(db: Database, identity: Identity, display_name: str,
                  photo_url: Optional[str] = None, phone_number: Optional[str] = None) -> Dict:
    """First sign-in: create the internal user for an external identity as a customer."""
    if not identity.email:
        raise InvalidArgument("Identity has no email address")
    email = identity.email.lower()
    if db["user"].find_one({"$or": [{"firebase_uid": identity.external_id}, {"email": email}]}):
        raise Conflict("User already exists")
    user = UserSchema(
        firebase_uid=identity.external_id,
        email=email,
        display_name=display_name,
        photo_url=photo_url,
        phone_number=phone_number,
        role="customer",
    )
    uid = create_document(db, "user", user)
    logger.info("user_registered", user_id=uid)
    return serialize(db["user"].find_one({"_id": to_object_id(uid)}))


def list_users(db: Database, role: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict:
    query = {}
    if role:
        if role not in ROLES:
            raise InvalidArgument("Invalid role")
        query["role"] = role
    total = db["user"].count_documents(query)
    cursor = db["user"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "users": [serialize(u) for u in cursor],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": total_pages,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        },
    }


def update_user(db: Database, user_id: str, role: Optional[str] = None, is_active: Optional[bool] = None) -> Dict:
    update = {}
    if role is not None:
        if role not in ROLES:
            raise InvalidArgument("Invalid role")
        update["role"] = role
    if is_active is not None:
        update["is_active"] = is_active
    if not update:
        raise InvalidArgument("Nothing to update")
    update["updated_at"] = now()
    res = db["user"].update_one({"_id": to_object_id(user_id)}, {"$set": update})
    if res.matched_count == 0:
        raise NotFound("User not found")
    logger.info("user_updated", user_id=user_id, fields=sorted(update))
    return serialize(db["user"].find_one({"_id": to_object_id(user_id)}))


def delete_user(db: Database, user_id: str) -> None:
    res = db["user"].delete_one({"_id": to_object_id(user_id)})
    if res.deleted_count == 0:
        raise NotFound("User not found")
    logger.info("user_deleted", user_id=user_id)


def get_user_by_external_id(db: Database, external_id: str) -> Dict:
    user = db["user"].find_one({"firebase_uid": external_id})
    if not user:
        raise NotFound("User not found")
    return serialize(user)


def get_user_by_email(db: Database, email: str) -> Dict:
    user = db["user"].find_one({"email": email.strip().lower()})
    if not user:
        raise NotFound("User not found")
    return serialize(user)
