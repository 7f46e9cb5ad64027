from datetime import timedelta
from typing import Dict, Optional

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import create_document, get_db, to_object_id
from identity import LocalIdentityProvider, create_access_token, get_identity_provider
from media import MediaStorage, get_media_storage
from payments import PaymentGateway, expected_signature, get_payment_gateway
from schemas import GeoPoint, Product, Shop, ShopAddress, User

TEST_SECRET = "test-secret"
PAYMENT_SECRET = "rzp-test-secret"


class FakeGateway(PaymentGateway):
    secret = PAYMENT_SECRET

    def __init__(self):
        self.created = []

    def create_order(self, amount, currency, receipt):
        order = {"id": f"order_{len(self.created) + 1}", "amount": amount, "currency": currency, "receipt": receipt}
        self.created.append(order)
        return order


class FakeStorage(MediaStorage):
    def __init__(self):
        self.deleted = []
        self.uploaded = []

    def upload(self, file, folder, public_id=None):
        storage_id = f"{folder}/file{len(self.uploaded) + 1}"
        self.uploaded.append(storage_id)
        return {"url": f"https://media.test/{storage_id}", "storage_id": storage_id}

    def delete(self, storage_id):
        self.deleted.append(storage_id)
        return True


@pytest.fixture
def db():
    return mongomock.MongoClient(tz_aware=True)["locallens_test"]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def client(db, gateway, storage):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_identity_provider] = lambda: LocalIdentityProvider(secret=TEST_SECRET)
    main.app.dependency_overrides[get_payment_gateway] = lambda: gateway
    main.app.dependency_overrides[get_media_storage] = lambda: storage
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def token_for(external_id: str, email: str, expires_delta: Optional[timedelta] = None) -> str:
    return create_access_token(external_id, email, expires_delta=expires_delta, secret=TEST_SECRET)


def auth(user: Dict) -> Dict:
    return {"Authorization": f"Bearer {token_for(user['firebase_uid'], user['email'])}"}


def make_user(db, name: str, role: str = "customer", is_active: bool = True) -> Dict:
    user = User(firebase_uid=f"uid-{name}", email=f"{name}@locallens.in", display_name=name.title(),
                role=role, is_active=is_active)
    user_id = create_document(db, "user", user)
    return db["user"].find_one({"_id": to_object_id(user_id)})


def make_shop(db, owner: Dict, name: str = "Corner Store", lat: float = 12.9716, lng: float = 77.5946,
              verified: bool = True, categories=("grocery",), description: Optional[str] = None) -> Dict:
    shop = Shop(
        owner_id=str(owner["_id"]),
        name=name,
        description=description,
        contact_email="shop@locallens.in",
        contact_phone="9876543210",
        address=ShopAddress(address_line1="1 MG Road", city="Bengaluru", state="KA", postal_code="560001"),
        location=GeoPoint(coordinates=[lng, lat]),
        categories=list(categories),
        verification_status="verified" if verified else "pending",
        is_verified=verified,
    )
    shop_id = create_document(db, "shop", shop)
    return db["shop"].find_one({"_id": to_object_id(shop_id)})


def make_product(db, shop: Dict, name: str = "Basmati Rice", base_price: float = 250, quantity: int = 10,
                 tax: float = 0, **extra) -> Dict:
    data = {
        "shop_id": str(shop["_id"]),
        "name": name,
        "description": f"{name} from the shelf",
        "category": "grocery",
        "base_price": base_price,
        "tax": tax,
        "available_quantity": quantity,
        **extra,
    }
    product_id = create_document(db, "product", Product(**data))
    return db["product"].find_one({"_id": to_object_id(product_id)})


def sign(gateway_order_id: str, payment_id: str, secret: str = PAYMENT_SECRET) -> str:
    return expected_signature(gateway_order_id, payment_id, secret)
