import os
from contextlib import asynccontextmanager
from inspect import getmembers, isclass
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

import addresses
import banners
import config
import geo
import orders
import products
import reservations
import schemas as schema_module
import shops
import users
from database import ensure_indexes, get_db, serialize
from errors import InvalidArgument, LocalLensError, PaymentVerificationFailed
from identity import Identity, get_current_user, get_identity, require_role
from media import MediaStorage, get_media_storage
from notifications import list_notifications
from payments import PaymentGateway, get_payment_gateway

config.configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(get_db())
    except PyMongoError as e:
        logger.error("index_setup_failed", error=str(e))
    yield


# ---------- FastAPI app ----------
app = FastAPI(title="LocalLens API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Error responses ----------
@app.exception_handler(LocalLensError)
async def locallens_error_handler(request: Request, exc: LocalLensError):
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=exc.status_code, content={"error": exc.kind, "detail": exc.message},
                        headers=headers)


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error("store_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"error": "unavailable", "detail": "Service temporarily unavailable"})


# ---------- Health ----------
@app.get("/")
def read_root():
    return {"message": "LocalLens API"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


@app.get("/api/schema")
def get_schema():
    return {
        name: cls.model_json_schema()
        for name, cls in getmembers(schema_module)
        if isclass(cls) and issubclass(cls, BaseModel) and cls.__module__ == schema_module.__name__
    }


# ---------- Users ----------
class RegisterPayload(BaseModel):
    display_name: str
    photo_url: Optional[str] = None
    phone_number: Optional[str] = None


class AdminUserUpdate(BaseModel):
    role: Optional[str] = None
    is_active: Optional[bool] = None


@app.post("/api/users", status_code=201)
def register(payload: RegisterPayload, identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    return users.register_user(db, identity, payload.display_name, payload.photo_url, payload.phone_number)


@app.get("/api/users/me")
def me(user=Depends(get_current_user)):
    return serialize(user)


@app.get("/api/users/firebase/{external_id}")
def user_by_external_id(external_id: str, admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    return users.get_user_by_external_id(db, external_id)


@app.get("/api/users/email/{email}")
def user_by_email(email: str, admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    return users.get_user_by_email(db, email)


@app.get("/api/notifications")
def my_notifications(user=Depends(get_current_user), db: Database = Depends(get_db)):
    return list_notifications(db, str(user["_id"]))


@app.get("/api/admin/users")
def admin_list_users(role: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                     admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    return users.list_users(db, role, page, limit)


@app.patch("/api/admin/users/{user_id}")
def admin_update_user(user_id: str, payload: AdminUserUpdate, admin=Depends(require_role("admin")),
                      db: Database = Depends(get_db)):
    return users.update_user(db, user_id, payload.role, payload.is_active)


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: str, admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    users.delete_user(db, user_id)
    return {"deleted": True}


# ---------- Addresses ----------
@app.get("/api/addresses")
def my_addresses(user=Depends(get_current_user), db: Database = Depends(get_db)):
    return addresses.list_addresses(db, str(user["_id"]))


@app.post("/api/addresses", status_code=201)
def create_address(payload: addresses.AddressPayload, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return addresses.create_address(db, str(user["_id"]), payload)


@app.put("/api/addresses/{address_id}")
def update_address(address_id: str, payload: addresses.AddressUpdate, user=Depends(get_current_user),
                   db: Database = Depends(get_db)):
    return addresses.update_address(db, str(user["_id"]), address_id, payload)


@app.delete("/api/addresses/{address_id}")
def delete_address(address_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    addresses.delete_address(db, str(user["_id"]), address_id)
    return {"message": "Address deleted successfully"}


# ---------- Shops ----------
class VerifyPayload(BaseModel):
    status: Optional[str] = None


@app.get("/api/shops")
def search_shops(lat: Optional[float] = None, lng: Optional[float] = None, radius: float = Query(5, gt=0),
                 category: Optional[str] = None, search: Optional[str] = None,
                 page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), db: Database = Depends(get_db)):
    if (lat is None) != (lng is None):
        raise InvalidArgument("lat and lng must be supplied together")
    center = (lat, lng) if lat is not None else None
    return geo.find_shops(db, center, radius, category, search, page, limit)


@app.post("/api/shops", status_code=201)
def submit_shop(draft: shops.ShopDraft, user=Depends(require_role("customer", "retailer")),
                db: Database = Depends(get_db)):
    return shops.submit_shop(db, str(user["_id"]), draft)


@app.get("/api/shops/{shop_id}")
def get_shop(shop_id: str, db: Database = Depends(get_db)):
    return shops.get_shop(db, shop_id)


@app.get("/api/retailers/shops")
def my_shops(user=Depends(require_role("retailer", "admin")), db: Database = Depends(get_db)):
    return shops.list_owner_shops(db, str(user["_id"]))


@app.get("/api/admin/shops")
def admin_list_shops(status: str = "pending", admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    return shops.list_shops_by_status(db, status)


@app.post("/api/admin/shops/reconcile-roles")
def admin_reconcile_roles(admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    return {"promoted": shops.reconcile_owner_roles(db)}


@app.post("/api/admin/shops/{shop_id}/verify")
def admin_verify_shop(shop_id: str, payload: VerifyPayload, admin=Depends(require_role("admin")),
                      db: Database = Depends(get_db)):
    shop = shops.decide_verification(db, shop_id, payload.status)
    verb = "approved" if payload.status == "verified" else "rejected"
    return {"message": f"Shop {verb} successfully", "shop": shop}


# ---------- Products ----------
@app.post("/api/products", status_code=201)
def create_product(payload: products.ProductPayload, user=Depends(require_role("retailer", "admin")),
                   db: Database = Depends(get_db)):
    return products.create_product(db, user, payload)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return products.get_product(db, product_id)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user=Depends(require_role("retailer", "admin")), db: Database = Depends(get_db),
                   storage: MediaStorage = Depends(get_media_storage)):
    products.delete_product(db, product_id, user, storage)
    return {"deleted": True}


@app.get("/api/shops/{shop_id}/products")
def shop_products(shop_id: str, category: Optional[str] = None, db: Database = Depends(get_db)):
    return products.list_shop_products(db, shop_id, category)


@app.post("/api/products/{product_id}/variants", status_code=201)
def add_variant(product_id: str, payload: products.VariantPayload, user=Depends(require_role("retailer", "admin")),
                db: Database = Depends(get_db)):
    return products.add_variant(db, product_id, user, payload)


@app.patch("/api/products/{product_id}")
def update_product(product_id: str, payload: products.ProductUpdate, user=Depends(require_role("retailer", "admin")),
                   db: Database = Depends(get_db)):
    return products.update_product(db, product_id, user, payload)


@app.get("/api/products/{product_id}/variants")
def list_variants(product_id: str, db: Database = Depends(get_db)):
    return products.list_variants(db, product_id)


@app.put("/api/products/{product_id}/variants/{variant_id}")
def update_variant(product_id: str, variant_id: str, payload: products.VariantUpdate,
                   user=Depends(require_role("retailer", "admin")), db: Database = Depends(get_db)):
    return products.update_variant(db, product_id, variant_id, user, payload)


# ---------- Orders ----------
class StatusPayload(BaseModel):
    status: Optional[str] = None
    notes: Optional[str] = None


class PaymentOrderPayload(BaseModel):
    order_id: str
    currency: str = config.CURRENCY


class PaymentVerifyPayload(BaseModel):
    order_id: Optional[str] = None
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None


@app.post("/api/orders", status_code=201)
def place_order(payload: orders.CreateOrderPayload, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.create_order(db, user, payload)


@app.get("/api/orders")
def list_orders(user=Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.list_orders_for(db, user)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.get_order_for(db, order_id, user)


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusPayload, user=Depends(get_current_user),
                        db: Database = Depends(get_db)):
    return orders.update_order_status(db, order_id, user, payload.status, payload.notes)


@app.post("/api/payments/razorpay")
def create_payment_order(payload: PaymentOrderPayload, user=Depends(get_current_user), db: Database = Depends(get_db),
                         gateway: PaymentGateway = Depends(get_payment_gateway)):
    return orders.create_payment_order(db, payload.order_id, user, gateway, payload.currency)


@app.post("/api/payments/verify")
def verify_payment(payload: PaymentVerifyPayload, db: Database = Depends(get_db),
                   gateway: PaymentGateway = Depends(get_payment_gateway)):
    if not gateway.secret:
        logger.error("payment_secret_missing")
        raise PaymentVerificationFailed("Payment verification failed")
    order = orders.confirm_payment(db, payload.order_id, payload.razorpay_order_id, payload.razorpay_payment_id,
                                   payload.razorpay_signature, gateway.secret)
    return {"success": True, "order": order}


@app.get("/api/shops/{shop_id}/orders")
def shop_orders(shop_id: str, user=Depends(require_role("retailer", "admin")), db: Database = Depends(get_db)):
    return orders.list_shop_orders(db, shop_id, user)


# ---------- Reservations ----------
@app.post("/api/reservations", status_code=201)
def create_reservation(payload: reservations.CreateReservationPayload, user=Depends(get_current_user),
                       db: Database = Depends(get_db)):
    return reservations.create_reservation(db, user, payload)


@app.get("/api/reservations")
def my_reservations(user=Depends(get_current_user), db: Database = Depends(get_db)):
    return reservations.list_user_reservations(db, str(user["_id"]))


@app.put("/api/reservations/{reservation_id}/status")
def update_reservation_status(reservation_id: str, payload: StatusPayload, user=Depends(get_current_user),
                              db: Database = Depends(get_db)):
    return reservations.update_reservation_status(db, reservation_id, user, payload.status, payload.notes)


@app.get("/api/shops/{shop_id}/reservations")
def shop_reservations(shop_id: str, status: Optional[str] = None, user=Depends(require_role("retailer", "admin")),
                      db: Database = Depends(get_db)):
    return reservations.list_shop_reservations(db, shop_id, user, status)


@app.post("/api/admin/reservations/expire")
def admin_expire_reservations(admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    return {"expired": reservations.expire_overdue_reservations(db)}


# ---------- Banners ----------
class ReorderPayload(BaseModel):
    direction: str


@app.get("/api/banners")
def public_banners(db: Database = Depends(get_db)):
    return banners.list_banners(db)


@app.get("/api/admin/banners")
def admin_banners(admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    return banners.list_banners(db, active_only=False)


@app.post("/api/admin/banners", status_code=201)
def admin_create_banner(payload: banners.BannerPayload, admin=Depends(require_role("admin")),
                        db: Database = Depends(get_db)):
    return banners.create_banner(db, payload)


@app.put("/api/admin/banners/{banner_id}/reorder")
def admin_reorder_banner(banner_id: str, payload: ReorderPayload, admin=Depends(require_role("admin")),
                         db: Database = Depends(get_db)):
    return {"message": "Banner order updated", "banners": banners.reorder_banner(db, banner_id, payload.direction)}


@app.delete("/api/admin/banners/{banner_id}")
def admin_delete_banner(banner_id: str, admin=Depends(require_role("admin")), db: Database = Depends(get_db),
                        storage: MediaStorage = Depends(get_media_storage)):
    banners.delete_banner(db, banner_id, storage)
    return {"deleted": True}


# ---------- Media ----------
@app.post("/api/upload")
def upload(file: UploadFile = File(...), folder: str = Form("uploads"), user=Depends(get_current_user),
           storage: MediaStorage = Depends(get_media_storage)):
    return storage.upload(file.file, folder=f"locallens/{folder}", public_id=None)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
