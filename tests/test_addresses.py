from conftest import auth, make_user

HOME = {
    "label": "Home",
    "name": "Asha",
    "phone_number": "9876543210",
    "address_line1": "4 Lake View",
    "city": "Pune",
    "state": "MH",
    "postal_code": "411001",
}


def add(client, user, **extra):
    res = client.post("/api/addresses", json={**HOME, **extra}, headers=auth(user))
    assert res.status_code == 201
    return res.json()


def defaults(db, user):
    return [str(a["_id"]) for a in db["address"].find({"user_id": str(user["_id"]), "is_default": True})]


def primary(db, user):
    return db["user"].find_one({"_id": user["_id"]})["primary_address_id"]


def test_first_address_becomes_default(client, db):
    user = make_user(db, "asha")

    first = add(client, user)

    assert first["is_default"] is True
    assert primary(db, user) == first["id"]
    assert db["user"].find_one({"_id": user["_id"]})["address_ids"] == [first["id"]]


def test_new_default_replaces_old(client, db):
    user = make_user(db, "asha")
    add(client, user)
    second = add(client, user, label="Work", is_default=True)

    assert defaults(db, user) == [second["id"]]
    assert primary(db, user) == second["id"]


def test_non_default_address_keeps_existing_default(client, db):
    user = make_user(db, "asha")
    first = add(client, user)
    add(client, user, label="Work")

    assert defaults(db, user) == [first["id"]]


def test_update_sets_default(client, db):
    user = make_user(db, "asha")
    add(client, user)
    second = add(client, user, label="Work")

    res = client.put(f"/api/addresses/{second['id']}", json={"is_default": True}, headers=auth(user))

    assert res.status_code == 200
    assert defaults(db, user) == [second["id"]]
    assert primary(db, user) == second["id"]


def test_deleting_default_promotes_most_recent(client, db):
    user = make_user(db, "asha")
    first = add(client, user)
    add(client, user, label="Work")
    latest = add(client, user, label="Gym")

    res = client.delete(f"/api/addresses/{first['id']}", headers=auth(user))

    assert res.status_code == 200
    assert defaults(db, user) == [latest["id"]]
    assert primary(db, user) == latest["id"]
    assert first["id"] not in db["user"].find_one({"_id": user["_id"]})["address_ids"]


def test_deleting_last_address_clears_primary(client, db):
    user = make_user(db, "asha")
    only = add(client, user)

    client.delete(f"/api/addresses/{only['id']}", headers=auth(user))

    assert primary(db, user) is None
    assert db["address"].count_documents({}) == 0


def test_cannot_touch_someone_elses_address(client, db):
    owner = make_user(db, "asha")
    other = make_user(db, "ravi")
    address = add(client, owner)

    res = client.delete(f"/api/addresses/{address['id']}", headers=auth(other))

    assert res.status_code == 404
    assert db["address"].count_documents({}) == 1
