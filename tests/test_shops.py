from pymongo.errors import AutoReconnect

import shops
from conftest import auth, make_shop, make_user
from shops import decide_verification, reconcile_owner_roles

SHOP_DRAFT = {
    "name": "Green Grocer",
    "contact_email": "green@locallens.in",
    "contact_phone": "9876543210",
    "address": {"address_line1": "12 Park Street", "city": "Kolkata", "state": "WB", "postal_code": "700016"},
    "latitude": 22.5526,
    "longitude": 88.3525,
    "categories": ["grocery"],
}


def test_submit_shop_is_pending(client, db):
    customer = make_user(db, "asha")

    res = client.post("/api/shops", json=SHOP_DRAFT, headers=auth(customer))

    assert res.status_code == 201
    shop = res.json()
    assert shop["verification_status"] == "pending"
    assert shop["is_verified"] is False
    assert shop["owner_id"] == str(customer["_id"])
    assert shop["location"]["coordinates"] == [88.3525, 22.5526]


def test_approval_promotes_owner(client, db):
    admin = make_user(db, "admin", role="admin")
    owner = make_user(db, "asha")
    shop = make_shop(db, owner, verified=False)

    res = client.post(f"/api/admin/shops/{shop['_id']}/verify", json={"status": "verified"}, headers=auth(admin))

    assert res.status_code == 200
    assert res.json()["shop"]["is_verified"] is True
    assert res.json()["shop"]["verification_status"] == "verified"
    assert db["user"].find_one({"_id": owner["_id"]})["role"] == "retailer"


def test_reapproval_is_idempotent(db):
    owner = make_user(db, "asha")
    shop = make_shop(db, owner, verified=False)

    first = decide_verification(db, str(shop["_id"]), "verified")
    second = decide_verification(db, str(shop["_id"]), "verified")

    assert first["verification_status"] == second["verification_status"] == "verified"
    assert db["user"].find_one({"_id": owner["_id"]})["role"] == "retailer"


def test_admin_owner_is_not_demoted(db):
    admin = make_user(db, "admin", role="admin")
    shop = make_shop(db, admin, verified=False)

    decide_verification(db, str(shop["_id"]), "verified")

    assert db["user"].find_one({"_id": admin["_id"]})["role"] == "admin"


def test_rejection_leaves_owner_a_customer(db):
    owner = make_user(db, "asha")
    shop = make_shop(db, owner, verified=False)

    result = decide_verification(db, str(shop["_id"]), "rejected")

    assert result["is_verified"] is False
    assert result["verification_status"] == "rejected"
    assert db["user"].find_one({"_id": owner["_id"]})["role"] == "customer"


def test_invalid_decision(client, db):
    admin = make_user(db, "admin", role="admin")
    shop = make_shop(db, make_user(db, "asha"), verified=False)

    res = client.post(f"/api/admin/shops/{shop['_id']}/verify", json={"status": "maybe"}, headers=auth(admin))

    assert res.status_code == 400
    assert res.json() == {"error": "invalid_argument", "detail": "Invalid status value"}
    assert db["shop"].find_one({"_id": shop["_id"]})["verification_status"] == "pending"


def test_unknown_shop(client, db):
    admin = make_user(db, "admin", role="admin")

    res = client.post("/api/admin/shops/64b7f0c2a1b2c3d4e5f60718/verify", json={"status": "verified"},
                      headers=auth(admin))

    assert res.status_code == 404


def test_customer_cannot_verify(client, db):
    customer = make_user(db, "asha")
    shop = make_shop(db, customer, verified=False)

    res = client.post(f"/api/admin/shops/{shop['_id']}/verify", json={"status": "verified"}, headers=auth(customer))

    assert res.status_code == 403
    assert db["shop"].find_one({"_id": shop["_id"]})["verification_status"] == "pending"


def test_pending_list_includes_owner(client, db):
    admin = make_user(db, "admin", role="admin")
    make_shop(db, make_user(db, "asha"), name="Waiting", verified=False)
    make_shop(db, make_user(db, "ravi"), name="Live", verified=True)

    res = client.get("/api/admin/shops", params={"status": "pending"}, headers=auth(admin))

    assert res.status_code == 200
    listed = res.json()
    assert [s["name"] for s in listed] == ["Waiting"]
    assert listed[0]["owner"]["email"] == "asha@locallens.in"


def test_reconcile_promotes_missed_owners(db):
    owner = make_user(db, "asha")
    make_shop(db, owner, verified=True)

    assert reconcile_owner_roles(db) == 1
    assert db["user"].find_one({"_id": owner["_id"]})["role"] == "retailer"
    assert reconcile_owner_roles(db) == 0


class RecordingLogger:
    def __init__(self):
        self.events = []

    def info(self, event, **kw):
        self.events.append(("info", event))

    def warning(self, event, **kw):
        self.events.append(("warning", event))


def test_failed_promotion_does_not_fail_approval(client, db, monkeypatch):
    admin = make_user(db, "admin", role="admin")
    owner = make_user(db, "asha")
    shop = make_shop(db, owner, verified=False)
    log = RecordingLogger()

    def down(database, owner_id):
        raise AutoReconnect("connection reset")

    monkeypatch.setattr(shops, "promote_owner", down)
    monkeypatch.setattr(shops, "logger", log)

    res = client.post(f"/api/admin/shops/{shop['_id']}/verify", json={"status": "verified"}, headers=auth(admin))

    assert res.status_code == 200
    assert res.json()["shop"]["is_verified"] is True
    assert db["user"].find_one({"_id": owner["_id"]})["role"] == "customer"
    assert ("warning", "owner_promotion_failed") in log.events


def test_malformed_owner_id_does_not_fail_approval(db):
    shop = make_shop(db, make_user(db, "asha"), verified=False)
    db["shop"].update_one({"_id": shop["_id"]}, {"$set": {"owner_id": "not-an-id"}})

    result = decide_verification(db, str(shop["_id"]), "verified")

    assert result["verification_status"] == "verified"
    assert reconcile_owner_roles(db) == 0
