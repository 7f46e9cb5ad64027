from typing import Dict, List, Optional

import structlog
from bson import ObjectId
from pydantic import BaseModel, Field
from pymongo.database import Database

from database import create_document, now, serialize, to_object_id
from errors import Conflict, Forbidden, InvalidArgument, NotFound
from lifecycle import selling_price
from media import MediaStorage, delete_quietly
from schemas import PreBookConfig, ProductImage, ProductVariant
from schemas import Product as ProductSchema

logger = structlog.get_logger(__name__)


class ProductPayload(BaseModel):
    shop_id: str
    name: str
    description: str
    short_description: Optional[str] = Field(None, max_length=200)
    category: str
    subcategory: Optional[str] = None
    base_price: float = Field(..., ge=0)
    discount_percentage: float = Field(0, ge=0, le=100)
    tax: float = Field(0, ge=0)
    currency: str = "INR"
    images: List[ProductImage] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    brand: Optional[str] = None
    sku: Optional[str] = None
    available_quantity: int = Field(0, ge=0)
    is_available: bool = True
    is_pre_bookable: bool = False
    pre_book_config: Optional[PreBookConfig] = None
    is_pre_buyable: bool = False
    pre_buy_config: Optional[PreBookConfig] = None
    has_variants: bool = False


class VariantPayload(BaseModel):
    attributes: Dict[str, str]
    price: Optional[float] = Field(None, ge=0)
    discount_percentage: Optional[float] = Field(None, ge=0, le=100)
    available_quantity: int = Field(0, ge=0)
    sku: Optional[str] = None
    is_active: bool = True


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = Field(None, max_length=200)
    category: Optional[str] = None
    subcategory: Optional[str] = None
    base_price: Optional[float] = Field(None, ge=0)
    discount_percentage: Optional[float] = Field(None, ge=0, le=100)
    tax: Optional[float] = Field(None, ge=0)
    images: Optional[List[ProductImage]] = None
    tags: Optional[List[str]] = None
    brand: Optional[str] = None
    sku: Optional[str] = None
    available_quantity: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    is_available: Optional[bool] = None
    is_pre_bookable: Optional[bool] = None
    pre_book_config: Optional[PreBookConfig] = None
    is_pre_buyable: Optional[bool] = None
    pre_buy_config: Optional[PreBookConfig] = None
    has_variants: Optional[bool] = None


class VariantUpdate(BaseModel):
    attributes: Optional[Dict[str, str]] = None
    price: Optional[float] = Field(None, ge=0)
    discount_percentage: Optional[float] = Field(None, ge=0, le=100)
    available_quantity: Optional[int] = Field(None, ge=0)
    sku: Optional[str] = None
    is_active: Optional[bool] = None


def with_selling_price(product: Dict) -> Dict:
    product["selling_price"] = selling_price(product["base_price"], product.get("discount_percentage", 0))
    return product


def _check_shop_access(db: Database, shop_id: str, user: Dict) -> Dict:
    shop = db["shop"].find_one({"_id": to_object_id(shop_id)})
    if not shop:
        raise NotFound("Shop not found")
    if user.get("role") != "admin" and shop["owner_id"] != str(user["_id"]):
        raise Forbidden("You don't have permission to manage this shop")
    return shop


def _owned_product(db: Database, product_id: str, user: Dict) -> Dict:
    product = db["product"].find_one({"_id": to_object_id(product_id)})
    if not product:
        raise NotFound("Product not found")
    _check_shop_access(db, product["shop_id"], user)
    return product


def create_product(db: Database, user: Dict, payload: ProductPayload) -> Dict:
    _check_shop_access(db, payload.shop_id, user)
    images = payload.images
    if images and not any(img.is_default for img in images):
        images[0].is_default = True
    product = ProductSchema(**{**payload.model_dump(), "images": images})
    product_id = create_document(db, "product", product)
    logger.info("product_created", product_id=product_id, shop_id=payload.shop_id)
    return with_selling_price(serialize(db["product"].find_one({"_id": to_object_id(product_id)})))


def get_product(db: Database, product_id: str) -> Dict:
    product = db["product"].find_one({"_id": to_object_id(product_id)})
    if not product:
        raise NotFound("Product not found")
    return with_selling_price(serialize(product))


def list_shop_products(db: Database, shop_id: str, category: Optional[str] = None) -> List[Dict]:
    query = {"shop_id": shop_id, "is_active": True}
    if category:
        query["category"] = category
    return [with_selling_price(serialize(p)) for p in db["product"].find(query).sort("name", 1)]


def add_variant(db: Database, product_id: str, user: Dict, payload: VariantPayload) -> Dict:
    product = _owned_product(db, product_id, user)
    if not product.get("has_variants"):
        raise InvalidArgument("This product does not support variants")
    if not payload.attributes:
        raise InvalidArgument("Variant attributes are required")
    if any(v["attributes"] == payload.attributes for v in product.get("variants", [])):
        raise Conflict("A variant with these attributes already exists")

    variant = ProductVariant(
        variant_id=str(ObjectId()),
        attributes=payload.attributes,
        price=payload.price if payload.price is not None else product["base_price"],
        discount_percentage=(payload.discount_percentage if payload.discount_percentage is not None
                             else product.get("discount_percentage", 0)),
        available_quantity=payload.available_quantity,
        sku=payload.sku or f"{product.get('sku') or product['_id']}-{'-'.join(payload.attributes.values())}",
        is_active=payload.is_active,
    ).model_dump()

    # compare-and-swap on the variant count so a concurrent add forces a re-check
    res = db["product"].update_one(
        {"_id": product["_id"], "variants": {"$size": len(product.get("variants", []))}},
        {"$push": {"variants": variant}, "$set": {"updated_at": now()}},
    )
    if res.matched_count == 0:
        raise Conflict("Product was updated by someone else, reload and retry")
    logger.info("variant_added", product_id=product_id, variant_id=variant["variant_id"])
    return variant


def delete_product(db: Database, product_id: str, user: Dict, storage: MediaStorage) -> None:
    product = _owned_product(db, product_id, user)
    db["product"].delete_one({"_id": product["_id"]})
    logger.info("product_deleted", product_id=product_id)
    delete_quietly(storage, (img.get("storage_id") for img in product.get("images", [])))


def update_product(db: Database, product_id: str, user: Dict, payload: ProductUpdate) -> Dict:
    product = _owned_product(db, product_id, user)
    data = payload.model_dump(exclude_none=True)
    if not data:
        raise InvalidArgument("Nothing to update")
    if "images" in data and data["images"] and not any(img["is_default"] for img in data["images"]):
        data["images"][0]["is_default"] = True
    data["updated_at"] = now()
    db["product"].update_one({"_id": product["_id"]}, {"$set": data})
    logger.info("product_updated", product_id=product_id, fields=sorted(data))
    return with_selling_price(serialize(db["product"].find_one({"_id": product["_id"]})))


def list_variants(db: Database, product_id: str) -> List[Dict]:
    product = db["product"].find_one({"_id": to_object_id(product_id)}, {"variants": 1})
    if not product:
        raise NotFound("Product not found")
    return product.get("variants", [])


def update_variant(db: Database, product_id: str, variant_id: str, user: Dict, payload: VariantUpdate) -> Dict:
    product = _owned_product(db, product_id, user)
    variants = product.get("variants", [])
    variant = next((v for v in variants if v["variant_id"] == variant_id), None)
    if variant is None:
        raise NotFound("Variant not found")
    data = payload.model_dump(exclude_none=True)
    if not data:
        raise InvalidArgument("Nothing to update")
    if "attributes" in data:
        if not data["attributes"]:
            raise InvalidArgument("Variant attributes are required")
        if any(v["attributes"] == data["attributes"] for v in variants if v["variant_id"] != variant_id):
            raise Conflict("A variant with these attributes already exists")

    res = db["product"].update_one(
        {"_id": product["_id"], "variants": {"$elemMatch": {"variant_id": variant_id}}},
        {"$set": {**{f"variants.$.{k}": v for k, v in data.items()}, "updated_at": now()}},
    )
    if res.matched_count == 0:
        raise NotFound("Variant not found")
    logger.info("variant_updated", product_id=product_id, variant_id=variant_id, fields=sorted(data))
    return {**variant, **data}
