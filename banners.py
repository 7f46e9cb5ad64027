from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from database import create_document, now, serialize, to_object_id
from errors import InvalidArgument, NotFound
from media import MediaStorage, delete_quietly
from schemas import Banner as BannerSchema

logger = structlog.get_logger(__name__)


class BannerPayload(BaseModel):
    title: str
    description: Optional[str] = None
    image_url: str
    image_storage_id: Optional[str] = None
    link: Optional[str] = None
    is_active: bool = True


def list_banners(db: Database, active_only: bool = True) -> List[Dict]:
    query = {"is_active": True} if active_only else {}
    return [serialize(b) for b in db["banner"].find(query).sort("order", ASCENDING)]


def create_banner(db: Database, payload: BannerPayload) -> Dict:
    last = db["banner"].find_one({}, sort=[("order", DESCENDING)])
    banner = BannerSchema(**payload.model_dump(), order=(last["order"] + 1) if last else 0)
    banner_id = create_document(db, "banner", banner)
    logger.info("banner_created", banner_id=banner_id, order=banner.order)
    return serialize(db["banner"].find_one({"_id": to_object_id(banner_id)}))


def reorder_banner(db: Database, banner_id: str, direction: str) -> List[Dict]:
    """Swap the banner's position with its neighbour; a move past either end is a no-op."""
    if direction not in ("up", "down"):
        raise InvalidArgument("Direction must be 'up' or 'down'")
    banners = list(db["banner"].find().sort("order", ASCENDING))
    index = next((i for i, b in enumerate(banners) if str(b["_id"]) == banner_id), None)
    if index is None:
        raise NotFound("Banner not found")

    neighbour = index - 1 if direction == "up" else index + 1
    if 0 <= neighbour < len(banners):
        current, other = banners[index], banners[neighbour]
        stamp = now()
        db["banner"].update_one({"_id": current["_id"]}, {"$set": {"order": other["order"], "updated_at": stamp}})
        db["banner"].update_one({"_id": other["_id"]}, {"$set": {"order": current["order"], "updated_at": stamp}})
        logger.info("banner_reordered", banner_id=banner_id, direction=direction)
    return list_banners(db, active_only=False)


def delete_banner(db: Database, banner_id: str, storage: MediaStorage) -> None:
    banner = db["banner"].find_one({"_id": to_object_id(banner_id)})
    if not banner:
        raise NotFound("Banner not found")
    db["banner"].delete_one({"_id": banner["_id"]})
    logger.info("banner_deleted", banner_id=banner_id)
    delete_quietly(storage, [banner.get("image_storage_id")])
