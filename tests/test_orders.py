import pytest

import orders
from errors import Conflict
from main import app
from payments import get_payment_gateway


def place(client, customer, *items):
    return client.post("/orders", json={"items": [{"productId": p, "qty": q} for p, q in items]},
                       headers=customer["headers"])


def test_create_order_snapshots_items_and_total(client, env):
    _, rid, p1 = env.merchant_with_product(price=25.0)
    p2 = env.product(rid, name="Ayran", price=1.35)
    customer = env.account()

    res = place(client, customer, (p1, 2), (p2, 3))
    assert res.status_code == 201
    order = res.json()
    assert order["totalAmount"] == 54.05
    assert order["status"] == "pending"
    assert order["payment"]["status"] == "pending"
    assert order["items"][0] == {"productId": p1, "restaurantId": rid, "name": "Adana",
                                 "unitPrice": 25.0, "quantity": 2}

    # later catalog edits never reach the stored order
    env.db["product"].update_one({"name": "Adana"}, {"$set": {"price": 99.0, "name": "Renamed"}})
    again = client.get(f"/orders/{order['id']}", headers=customer["headers"]).json()
    assert again["totalAmount"] == 54.05
    assert again["items"][0]["name"] == "Adana"


def test_duplicate_product_ids_are_merged(client, env):
    _, _, pid = env.merchant_with_product(price=10.0)
    customer = env.account()
    order = place(client, customer, (pid, 1), (pid, 2)).json()
    assert len(order["items"]) == 1
    assert order["items"][0]["quantity"] == 3
    assert order["totalAmount"] == 30.0


@pytest.mark.parametrize("items, expected", [
    ([], 400),
    ([("64b7f0c2a1b2c3d4e5f60718", 1)], 400),
    ([("not-an-id", 1)], 400),
])
def test_create_order_rejects_bad_items(client, env, items, expected):
    customer = env.account()
    assert place(client, customer, *items).status_code == expected
    assert env.db["order"].count_documents({}) == 0


def test_create_order_rejects_zero_qty_and_unavailable(client, env):
    _, rid, pid = env.merchant_with_product()
    hidden = env.product(rid, name="Hidden", available=False)
    customer = env.account()
    assert place(client, customer, (pid, 0)).status_code == 400
    assert place(client, customer, (pid, 1), (hidden, 1)).status_code == 400
    assert env.db["order"].count_documents({}) == 0


def test_merchant_cannot_place_orders(client, env):
    merchant, _, pid = env.merchant_with_product()
    assert place(client, merchant, (pid, 1)).status_code == 403


def test_listing_and_detail_visibility(client, env):
    _, _, pid = env.merchant_with_product()
    alice = env.account()
    bob = env.account()
    admin = env.account("admin")

    first = place(client, alice, (pid, 1)).json()
    second = place(client, alice, (pid, 2)).json()
    place(client, bob, (pid, 1))

    mine = client.get("/orders", headers=alice["headers"]).json()
    assert [o["id"] for o in mine] == [second["id"], first["id"]]
    assert len(client.get("/orders", headers=admin["headers"]).json()) == 3

    assert client.get(f"/orders/{first['id']}", headers=bob["headers"]).status_code == 404
    assert client.get(f"/orders/{first['id']}", headers=admin["headers"]).status_code == 200
    assert client.get("/orders/zzz", headers=alice["headers"]).status_code == 400


def test_customer_cannot_cancel_someone_elses_order(client, env):
    _, _, pid = env.merchant_with_product()
    alice = env.account()
    bob = env.account()
    order = place(client, alice, (pid, 1)).json()
    assert client.post(f"/orders/{order['id']}/cancel", headers=bob["headers"]).status_code == 404


def test_cancel_unpaid_order_then_cancel_again(client, env):
    _, _, pid = env.merchant_with_product()
    customer = env.account()
    order = place(client, customer, (pid, 1)).json()

    res = client.post(f"/orders/{order['id']}/cancel", headers=customer["headers"])
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "cancelled"
    assert body["payment"]["status"] == "cancelled"
    assert body["cancelledAt"]

    again = client.post(f"/orders/{order['id']}/cancel", headers=customer["headers"])
    assert again.status_code == 400
    assert env.gateway.refunds == []


def test_cancel_paid_order_refunds_once(client, env):
    _, _, pid = env.merchant_with_product()
    customer = env.account()
    order = place(client, customer, (pid, 1)).json()
    env.db["order"].update_one({}, {"$set": {"payment.status": "paid", "payment.transaction_id": "pi_123",
                                             "status": "preparing"}})

    res = client.post(f"/orders/{order['id']}/cancel", headers=customer["headers"])
    assert res.status_code == 200
    assert res.json()["payment"]["status"] == "refunded"
    assert client.post(f"/orders/{order['id']}/cancel", headers=customer["headers"]).status_code == 400
    assert env.gateway.refunds == ["pi_123"]


def test_failed_refund_leaves_order_untouched(client, env):
    _, _, pid = env.merchant_with_product()
    customer = env.account()
    order = place(client, customer, (pid, 1)).json()
    env.db["order"].update_one({}, {"$set": {"payment.status": "paid", "payment.transaction_id": "pi_123"}})
    env.gateway.fail_refund = True

    res = client.post(f"/orders/{order['id']}/cancel", headers=customer["headers"])
    assert res.status_code == 500
    stored = env.db["order"].find_one({})
    assert stored["status"] == "pending"
    assert stored["payment"]["status"] == "paid"


def test_cancel_paid_order_without_processor_or_transaction(client, env):
    _, _, pid = env.merchant_with_product()
    customer = env.account()
    order = place(client, customer, (pid, 1)).json()
    env.db["order"].update_one({}, {"$set": {"payment.status": "paid"}})
    assert client.post(f"/orders/{order['id']}/cancel", headers=customer["headers"]).status_code == 400

    app.dependency_overrides[get_payment_gateway] = lambda: None
    env.db["order"].update_one({}, {"$set": {"payment.transaction_id": "pi_1"}})
    assert client.post(f"/orders/{order['id']}/cancel", headers=customer["headers"]).status_code == 400
    assert env.db["order"].find_one({})["status"] == "pending"


def test_delivered_orders_cannot_be_cancelled(client, env):
    _, _, pid = env.merchant_with_product()
    customer = env.account()
    order = place(client, customer, (pid, 1)).json()
    env.db["order"].update_one({}, {"$set": {"status": "delivered"}})
    assert client.post(f"/orders/{order['id']}/cancel", headers=customer["headers"]).status_code == 400


def test_status_transitions_follow_the_table(client, env):
    merchant, _, pid = env.merchant_with_product()
    customer = env.account()
    order = place(client, customer, (pid, 1)).json()
    url = f"/merchant/orders/{order['id']}/status"

    assert client.post(url, json={"status": "delivered"}, headers=merchant["headers"]).status_code == 400
    assert client.post(url, json={"status": "bogus"}, headers=merchant["headers"]).status_code == 400

    res = client.post(url, json={"status": "accepted"}, headers=merchant["headers"])
    assert res.status_code == 200
    assert res.json()["status"] == "preparing"

    assert client.post(url, json={"status": "on_the_way"}, headers=merchant["headers"]).json()["status"] == "on_the_way"
    assert client.post(url, json={"status": "pending"}, headers=merchant["headers"]).status_code == 400
    assert client.post(url, json={"status": "delivered"}, headers=merchant["headers"]).json()["status"] == "delivered"
    assert client.post(url, json={"status": "cancelled"}, headers=merchant["headers"]).status_code == 400


def test_admin_status_cancel_runs_refund(client, env):
    _, _, pid = env.merchant_with_product()
    customer = env.account()
    admin = env.account("admin")
    order = place(client, customer, (pid, 1)).json()
    env.db["order"].update_one({}, {"$set": {"payment.status": "paid", "payment.transaction_id": "pi_9"}})

    res = client.patch(f"/orders/{order['id']}/status", json={"status": "cancelled"}, headers=admin["headers"])
    assert res.status_code == 200
    assert res.json()["payment"]["status"] == "refunded"
    assert env.gateway.refunds == ["pi_9"]


def test_merchant_scoping(client, env):
    merchant, rid, pid = env.merchant_with_product()
    other, _, other_pid = env.merchant_with_product(name="Other")
    lonely = env.account("merchant")
    customer = env.account()

    own = place(client, customer, (pid, 1)).json()
    foreign = place(client, customer, (other_pid, 1)).json()
    mixed = place(client, customer, (pid, 1), (other_pid, 1)).json()

    listed = [o["id"] for o in client.get("/merchant/orders", headers=merchant["headers"]).json()]
    assert set(listed) == {own["id"], mixed["id"]}

    status = {"status": "preparing"}
    assert client.post(f"/merchant/orders/{foreign['id']}/status", json=status,
                       headers=merchant["headers"]).status_code == 404
    assert client.patch(f"/orders/{foreign['id']}/status", json=status, headers=merchant["headers"]).status_code == 404
    assert client.post(f"/merchant/orders/{mixed['id']}/status", json=status,
                       headers=merchant["headers"]).status_code == 403
    assert client.patch(f"/orders/{own['id']}/status", json=status, headers=merchant["headers"]).status_code == 200

    assert client.get("/merchant/orders", headers=lonely["headers"]).status_code == 400
    assert client.patch(f"/orders/{own['id']}/status", json=status, headers=customer["headers"]).status_code == 403


def test_merchant_list_status_filter(client, env):
    merchant, _, pid = env.merchant_with_product()
    customer = env.account()
    a = place(client, customer, (pid, 1)).json()
    place(client, customer, (pid, 1))
    client.post(f"/merchant/orders/{a['id']}/status", json={"status": "accepted"}, headers=merchant["headers"])

    res = client.get("/merchant/orders", params={"status": "accepted"}, headers=merchant["headers"]).json()
    assert [o["id"] for o in res] == [a["id"]]


def test_mark_paid_fallback(client, env):
    env.settings.stripe_secret_key = None
    app.dependency_overrides[get_payment_gateway] = lambda: None
    _, _, pid = env.merchant_with_product()
    customer = env.account()
    order = place(client, customer, (pid, 1)).json()

    res = client.post(f"/orders/{order['id']}/pay", json={"transactionId": "tx_1"}, headers=customer["headers"])
    assert res.status_code == 200
    assert res.json()["payment"] == {"provider": "stripe", "status": "paid", "transactionId": "tx_1"}
    assert res.json()["status"] == "preparing"

    again = client.post(f"/orders/{order['id']}/pay", json={"transactionId": "tx_2"}, headers=customer["headers"])
    assert again.status_code == 400


def test_mark_paid_generates_transaction_id(client, env):
    env.settings.payments_test_mode = True
    _, _, pid = env.merchant_with_product()
    customer = env.account()
    order = place(client, customer, (pid, 1)).json()
    res = client.post(f"/orders/{order['id']}/pay", headers=customer["headers"])
    assert res.json()["payment"]["transactionId"].startswith("SIM-")


def test_mark_paid_disabled_when_processor_configured(client, env):
    _, _, pid = env.merchant_with_product()
    customer = env.account()
    order = place(client, customer, (pid, 1)).json()
    res = client.post(f"/orders/{order['id']}/pay", json={"transactionId": "tx"}, headers=customer["headers"])
    assert res.status_code == 400
    assert env.db["order"].find_one({})["payment"]["status"] == "pending"


def test_stale_write_loses_with_conflict(env):
    _, _, pid = env.merchant_with_product()
    customer = env.account()
    env.db["order"].insert_one({"customer_id": customer["id"], "items": [], "status": "pending", "version": 0})
    stale = env.db["order"].find_one({})

    orders.save_order(env.db, stale, {"status": "preparing"})
    with pytest.raises(Conflict):
        orders.save_order(env.db, stale, {"status": "delivered"})
    assert env.db["order"].find_one({})["status"] == "preparing"
    assert env.db["order"].find_one({})["version"] == 1


def test_to_minor_units_rounds_half_up():
    assert orders.to_minor_units(50.0) == 5000
    assert orders.to_minor_units(10.005) == 1001
    assert orders.to_minor_units(0.1 + 0.2) == 30


def test_stale_cancel_over_http_gets_conflict(client, env, monkeypatch):
    _, _, pid = env.merchant_with_product()
    customer = env.account()
    order = place(client, customer, (pid, 1)).json()
    real_load = orders.load_visible_order

    def load_then_race(database, user, order_id):
        doc = real_load(database, user, order_id)
        database["order"].update_one({"_id": doc["_id"]}, {"$inc": {"version": 1}})
        return doc

    monkeypatch.setattr(orders, "load_visible_order", load_then_race)
    res = client.post(f"/orders/{order['id']}/cancel", headers=customer["headers"])
    assert res.status_code == 409
    assert res.json()["detail"] == "Order was modified concurrently, reload and retry"
    assert env.db["order"].find_one({})["status"] == "pending"
