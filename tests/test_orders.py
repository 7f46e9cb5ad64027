import re

import pytest

from conftest import auth, make_product, make_shop, make_user, sign
from errors import Conflict, InvalidArgument, PaymentVerificationFailed
from lifecycle import StatusMachine, take_stock
from orders import ORDER_MACHINE, confirm_payment, retailer_view


@pytest.fixture
def market(db):
    customer = make_user(db, "asha")
    retailer = make_user(db, "ravi", role="retailer")
    shop = make_shop(db, retailer)
    product = make_product(db, shop, base_price=250, quantity=10)
    return customer, retailer, shop, product


def place(client, customer, product, quantity=2):
    res = client.post("/api/orders", json={"items": [{"product_id": str(product["_id"]), "quantity": quantity}]},
                      headers=auth(customer))
    assert res.status_code == 201
    return res.json()


def test_place_order(client, db, market):
    customer, _, shop, product = market

    order = place(client, customer, product)

    assert order["total_amount"] == 500
    assert order["subtotal"] == 500
    assert order["order_status"] == "pending"
    assert re.fullmatch(r"LL-\d{8}-\d{5}", order["order_number"])
    assert order["items"][0]["product_snapshot"]["name"] == "Basmati Rice"
    assert order["items"][0]["shop_id"] == str(shop["_id"])
    assert [u["status"] for u in order["status_updates"]] == ["pending"]
    assert db["product"].find_one({"_id": product["_id"]})["available_quantity"] == 8


def test_tax_is_added_per_item(client, db, market):
    customer, _, shop, _ = market
    taxed = make_product(db, shop, name="Ghee", base_price=100, tax=5)

    order = place(client, customer, taxed, quantity=3)

    assert order["subtotal"] == 300
    assert order["taxes"] == 15
    assert order["total_amount"] == 315


def test_insufficient_stock(client, market):
    customer, _, _, product = market
    res = client.post("/api/orders", json={"items": [{"product_id": str(product["_id"]), "quantity": 11}]},
                      headers=auth(customer))
    assert res.status_code == 409


def test_confirm_payment(client, db, gateway, market):
    customer, _, _, product = market
    order = place(client, customer, product)

    pay = client.post("/api/payments/razorpay", json={"order_id": order["id"]}, headers=auth(customer))
    assert pay.status_code == 200
    assert pay.json()["amount"] == 50000
    gateway_order_id = pay.json()["id"]

    res = client.post("/api/payments/verify", json={
        "order_id": order["id"],
        "razorpay_order_id": gateway_order_id,
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": sign(gateway_order_id, "pay_1"),
    })

    assert res.status_code == 200
    confirmed = res.json()["order"]
    assert confirmed["order_status"] == "processing"
    assert confirmed["payment_details"]["status"] == "completed"
    assert [u["status"] for u in confirmed["status_updates"]] == ["pending", "processing"]


def test_bad_signature_changes_nothing(client, db, market):
    customer, _, _, product = market
    order = place(client, customer, product)

    res = client.post("/api/payments/verify", json={
        "order_id": order["id"],
        "razorpay_order_id": "order_1",
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": sign("order_1", "pay_1", secret="wrong"),
    })

    assert res.status_code == 400
    assert res.json()["error"] == "payment_verification_failed"
    stored = db["order"].find_one({"order_number": order["order_number"]})
    assert stored["order_status"] == "pending"
    assert len(stored["status_updates"]) == 1


def test_payment_callback_is_idempotent(client, db, market):
    customer, _, _, product = market
    order_id = place(client, customer, product)["id"]
    secret = "rzp-test-secret"

    first = confirm_payment(db, order_id, "order_9", "pay_9", sign("order_9", "pay_9"), secret)
    again = confirm_payment(db, order_id, "order_9", "pay_9", sign("order_9", "pay_9"), secret)

    assert first["order_status"] == again["order_status"] == "processing"
    assert len(again["status_updates"]) == 2
    with pytest.raises(Conflict):
        confirm_payment(db, order_id, "order_9", "pay_10", sign("order_9", "pay_10"), secret)


def test_payment_for_another_gateway_order(client, db, market):
    customer, _, _, product = market
    order = place(client, customer, product)
    client.post("/api/payments/razorpay", json={"order_id": order["id"]}, headers=auth(customer))

    with pytest.raises(PaymentVerificationFailed):
        confirm_payment(db, order["id"], "order_other", "pay_1", sign("order_other", "pay_1"), "rzp-test-secret")


def test_retailer_moves_order_forward(client, db, market):
    customer, retailer, _, product = market
    order = place(client, customer, product)

    res = client.put(f"/api/orders/{order['id']}/status", json={"status": "ready_for_pickup", "notes": "Packed"},
                     headers=auth(retailer))

    assert res.status_code == 200
    body = res.json()
    assert body["order_status"] == "ready_for_pickup"
    assert body["status_updates"][-1]["notes"] == "Packed"
    assert body["status_updates"][-1]["updated_by"] == str(retailer["_id"])


def test_invalid_status_value(client, db, market):
    customer, retailer, _, product = market
    order = place(client, customer, product)

    res = client.put(f"/api/orders/{order['id']}/status", json={"status": "shipped"}, headers=auth(retailer))

    assert res.status_code == 400
    stored = db["order"].find_one({"order_number": order["order_number"]})
    assert stored["order_status"] == "pending"
    assert len(stored["status_updates"]) == 1


def test_backward_move_is_rejected(client, db, market):
    customer, retailer, _, product = market
    order = place(client, customer, product)
    client.put(f"/api/orders/{order['id']}/status", json={"status": "completed"}, headers=auth(retailer))

    res = client.put(f"/api/orders/{order['id']}/status", json={"status": "processing"}, headers=auth(retailer))

    assert res.status_code == 409


def test_only_shop_owner_updates_status(client, db, market):
    customer, _, _, product = market
    stranger = make_user(db, "kiran", role="retailer")
    make_shop(db, stranger, name="Other Shop")
    order = place(client, customer, product)

    res = client.put(f"/api/orders/{order['id']}/status", json={"status": "processing"}, headers=auth(stranger))

    assert res.status_code == 403
    assert db["order"].find_one({"order_number": order["order_number"]})["order_status"] == "pending"


def test_retailer_sees_only_their_items(client, db, market):
    customer, retailer, _, product = market
    other = make_user(db, "kiran", role="retailer")
    other_product = make_product(db, make_shop(db, other, name="Other Shop"), name="Tea", base_price=120)
    res = client.post("/api/orders", json={"items": [
        {"product_id": str(product["_id"]), "quantity": 1},
        {"product_id": str(other_product["_id"]), "quantity": 1},
    ]}, headers=auth(customer))
    assert res.json()["total_amount"] == 370

    orders = client.get("/api/orders", headers=auth(retailer)).json()

    assert len(orders) == 1
    view = orders[0]
    assert [i["product_snapshot"]["name"] for i in view["items"]] == ["Basmati Rice"]
    assert view["subtotal"] == 250
    assert "total_amount" not in view
    assert "taxes" not in view


def test_retailer_view_drops_order_wide_fields():
    order = {
        "items": [{"shop_id": "a", "total_price": 10}, {"shop_id": "b", "total_price": 20}],
        "subtotal": 30, "taxes": 3, "total_amount": 33, "coupon_code": "X", "shipping_fee": 0,
    }
    view = retailer_view(order, ["b"])
    assert view == {"items": [{"shop_id": "b", "total_price": 20}], "subtotal": 20}


def test_status_machine():
    assert ORDER_MACHINE.can_move("pending", "completed")
    assert ORDER_MACHINE.can_move("processing", "canceled")
    assert ORDER_MACHINE.can_move("processing", "processing")
    assert not ORDER_MACHINE.can_move("completed", "refunded")
    assert not ORDER_MACHINE.can_move("ready_for_pickup", "pending")
    with pytest.raises(InvalidArgument):
        StatusMachine(("a", "b"), ("x",)).check("a", None)


def test_repeated_lines_share_one_stock_check(client, db, market):
    customer, _, _, product = market
    line = {"product_id": str(product["_id"]), "quantity": 6}

    res = client.post("/api/orders", json={"items": [line, line]}, headers=auth(customer))

    assert res.status_code == 409
    assert db["product"].find_one({"_id": product["_id"]})["available_quantity"] == 10
    assert db["order"].count_documents({}) == 0


def test_repeated_lines_are_merged(client, db, market):
    customer, _, _, product = market
    line = {"product_id": str(product["_id"]), "quantity": 2}

    res = client.post("/api/orders", json={"items": [line, line]}, headers=auth(customer))

    assert res.status_code == 201
    assert [(i["quantity"], i["total_price"]) for i in res.json()["items"]] == [(4, 1000)]
    assert db["product"].find_one({"_id": product["_id"]})["available_quantity"] == 6


@pytest.fixture
def kurta(db, market):
    _, _, shop, _ = market
    return make_product(db, shop, name="Kurta", base_price=400, quantity=10, has_variants=True, variants=[
        {"variant_id": "v-m", "attributes": {"size": "M"}, "price": 500, "discount_percentage": 10,
         "available_quantity": 3, "sku": "KURTA-M"},
        {"variant_id": "v-l", "attributes": {"size": "L"}, "price": 520, "available_quantity": 5},
    ])


def test_order_a_variant(client, db, market, kurta):
    customer = market[0]

    res = client.post("/api/orders", json={"items": [
        {"product_id": str(kurta["_id"]), "variant_id": "v-m", "quantity": 2},
    ]}, headers=auth(customer))

    assert res.status_code == 201
    item = res.json()["items"][0]
    assert item["unit_price"] == 450
    assert item["total_price"] == 900
    assert item["variant_snapshot"] == {"attributes": {"size": "M"}, "sku": "KURTA-M"}
    stored = db["product"].find_one({"_id": kurta["_id"]})
    assert [v["available_quantity"] for v in stored["variants"]] == [1, 5]
    assert stored["available_quantity"] == 10


def test_variant_stock_is_checked_across_lines(client, db, market, kurta):
    customer = market[0]
    line = {"product_id": str(kurta["_id"]), "variant_id": "v-m", "quantity": 2}

    res = client.post("/api/orders", json={"items": [line, line]}, headers=auth(customer))

    assert res.status_code == 409
    assert db["product"].find_one({"_id": kurta["_id"]})["variants"][0]["available_quantity"] == 3


def test_variant_product_needs_a_variant(client, market, kurta):
    res = client.post("/api/orders", json={"items": [{"product_id": str(kurta["_id"]), "quantity": 1}]},
                      headers=auth(market[0]))
    assert res.status_code == 400


def test_shop_order_list(client, db, market):
    customer, retailer, shop, product = market
    other = make_user(db, "kiran", role="retailer")
    tea = make_product(db, make_shop(db, other, name="Other Shop"), name="Tea", base_price=120)
    client.post("/api/orders", json={"items": [
        {"product_id": str(product["_id"]), "quantity": 1},
        {"product_id": str(tea["_id"]), "quantity": 1},
    ]}, headers=auth(customer))

    own = client.get(f"/api/shops/{shop['_id']}/orders", headers=auth(retailer))
    foreign = client.get(f"/api/shops/{shop['_id']}/orders", headers=auth(other))

    assert own.status_code == 200
    assert [i["product_snapshot"]["name"] for i in own.json()[0]["items"]] == ["Basmati Rice"]
    assert own.json()[0]["subtotal"] == 250
    assert "total_amount" not in own.json()[0]
    assert foreign.status_code == 403


def test_take_stock_never_goes_negative(db, market, kurta):
    product = market[3]

    with pytest.raises(Conflict):
        take_stock(db, str(product["_id"]), None, 11)
    with pytest.raises(Conflict):
        take_stock(db, str(kurta["_id"]), "v-m", 4)

    assert db["product"].find_one({"_id": product["_id"]})["available_quantity"] == 10
    assert db["product"].find_one({"_id": kurta["_id"]})["variants"][0]["available_quantity"] == 3
