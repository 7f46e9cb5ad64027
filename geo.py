import math
import re
from math import asin, cos, radians, sin, sqrt
from typing import Dict, List, Optional, Tuple

import structlog
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import serialize
from errors import InvalidArgument, Unavailable

logger = structlog.get_logger(__name__)

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = math.pi * EARTH_RADIUS_KM / 180


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate the great circle distance between two points on the earth (km)."""
    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(a))
    return c * EARTH_RADIUS_KM


def bounding_box(lat: float, lng: float, radius_km: float) -> Tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lng, max_lng) enclosing the circle; callers still apply haversine."""
    dlat = radius_km / KM_PER_DEGREE_LAT
    cos_lat = cos(radians(lat))
    if cos_lat < 1e-6 or abs(lat) + dlat >= 90:
        return max(lat - dlat, -90.0), min(lat + dlat, 90.0), -180.0, 180.0
    dlng = radius_km / (KM_PER_DEGREE_LAT * cos_lat)
    return lat - dlat, lat + dlat, lng - dlng, lng + dlng


def _lng_clause(min_lng: float, max_lng: float) -> Dict:
    field = "location.coordinates.0"
    if min_lng < -180:
        return {"$or": [{field: {"$gte": min_lng + 360}}, {field: {"$lte": max_lng}}]}
    if max_lng > 180:
        return {"$or": [{field: {"$gte": min_lng}}, {field: {"$lte": max_lng - 360}}]}
    return {field: {"$gte": min_lng, "$lte": max_lng}}


def build_shop_query(category: Optional[str] = None, search: Optional[str] = None) -> Dict:
    query: Dict = {"is_verified": True, "is_active": True}
    if category:
        query["categories"] = category
    if search:
        pattern = re.escape(search.strip())
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    return query


def _pagination(total: int, page: int, limit: int) -> Dict:
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def find_shops(db: Database, center: Optional[Tuple[float, float]] = None, radius_km: float = 5,
               category: Optional[str] = None, search: Optional[str] = None,
               page: int = 1, limit: int = 10) -> Dict:
    """
    Discover verified, active shops.

    With a ``center`` (lat, lng) only shops within ``radius_km`` are returned,
    nearest first, each carrying its haversine ``distance`` in km. Without a
    center results are sorted by name and ``distance`` is None.
    """
    if page < 1 or limit < 1:
        raise InvalidArgument("page and limit must be positive")
    if radius_km <= 0:
        raise InvalidArgument("radius must be positive")
    query = build_shop_query(category, search)
    skip = (page - 1) * limit

    try:
        if center is None:
            total = db["shop"].count_documents(query)
            cursor = db["shop"].find(query).sort("name", 1).skip(skip).limit(limit)
            shops = []
            for doc in cursor:
                s = serialize(doc)
                s["distance"] = None
                shops.append(s)
            return {"shops": shops, "pagination": _pagination(total, page, limit)}

        lat, lng = center
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise InvalidArgument("Invalid coordinates")
        min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_km)
        box = [{"location.coordinates.1": {"$gte": min_lat, "$lte": max_lat}}, _lng_clause(min_lng, max_lng)]
        query["$and"] = query.get("$and", []) + box
        candidates = list(db["shop"].find(query))
    except PyMongoError as e:
        logger.error("shop_search_failed", error=str(e))
        raise Unavailable("Shop search is temporarily unavailable")

    ranked: List[Dict] = []
    for doc in candidates:
        shop_lng, shop_lat = doc["location"]["coordinates"][:2]
        distance = haversine_km(lat, lng, shop_lat, shop_lng)
        if distance <= radius_km:
            s = serialize(doc)
            s["distance"] = round(distance, 3)
            ranked.append(s)
    ranked.sort(key=lambda s: (s["distance"], s.get("name", "")))
    return {"shops": ranked[skip:skip + limit], "pagination": _pagination(len(ranked), page, limit)}
