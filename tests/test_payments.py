import json

import pytest

from conftest import FakeResponse, sign, token_response
from protolab.credits import add_credits, get_balance

NOTIFY_URL = "/api/payments/payu/notify"


def notification(order_id, status, total="5000", payu_id="PAYU-1"):
    return json.dumps(
        {"order": {"orderId": payu_id, "extOrderId": order_id, "status": status, "totalAmount": total}}
    ).encode("utf-8")


def post_notification(client, body, signature=None):
    headers = {"Content-Type": "application/json"}
    if signature is not False:
        headers["OpenPayU-Signature"] = signature or sign(body)
    return client.post(NOTIFY_URL, data=body, headers=headers)


@pytest.fixture
def payu_ok(payu_session):
    payu_session.add("POST", "/pl/standard/user/oauth/authorize", token_response())
    payu_session.add(
        "POST",
        "/api/v2_1/orders",
        FakeResponse(
            200,
            {"status": {"statusCode": "WARNING_CONTINUE_REDIRECT"}, "redirectUri": "https://payu/pay", "orderId": "PAYU-1"},
        ),
    )
    return payu_session


# -------------------------
# Notifications
# -------------------------
def test_notification_without_signature_is_rejected(client, user, make_order, store):
    order = make_order(user)
    res = post_notification(client, notification(order["id"], "COMPLETED"), signature=False)
    assert res.status_code == 401
    assert store.get("orders", order["id"])["payment_status"] == "unpaid"


def test_notification_with_wrong_signature_is_rejected(client, user, make_order, store):
    order = make_order(user)
    body = notification(order["id"], "COMPLETED")
    res = post_notification(client, body, signature=sign(body, "not-the-key"))
    assert res.status_code == 401
    assert res.get_json()["ok"] is False
    assert store.get("orders", order["id"])["payment_status"] == "unpaid"


def test_completed_notification_marks_order_paid(client, user, make_order, store, mailer):
    order = make_order(user)
    res = post_notification(client, notification(order["id"], "COMPLETED"))
    assert res.status_code == 200
    assert res.data == b""

    saved = store.get("orders", order["id"])
    assert saved["payment_status"] == "paid"
    assert saved["status"] == "in_queue"
    assert saved["paid_amount"] == pytest.approx(50.0)
    assert saved["payu_order_id"] == "PAYU-1"
    assert mailer.sent[-1]["to"] == "jan@example.com"


def test_sha256_signature_is_accepted(client, user, make_order, store):
    order = make_order(user)
    body = notification(order["id"], "COMPLETED")
    res = post_notification(client, body, signature=sign(body, algorithm="SHA-256"))
    assert res.status_code == 200
    assert store.get("orders", order["id"])["payment_status"] == "paid"


def test_canceled_notification_marks_payment_failed(client, user, make_order, store, mailer):
    order = make_order(user, payment_status="pending")
    res = post_notification(client, notification(order["id"], "CANCELED"))
    assert res.status_code == 200
    saved = store.get("orders", order["id"])
    assert saved["payment_status"] == "failed"
    assert saved["status"] == "payment_failed"
    assert len(mailer.sent) == 1


def test_pending_notification_keeps_order_status(client, user, make_order, store):
    order = make_order(user)
    post_notification(client, notification(order["id"], "WAITING_FOR_CONFIRMATION"))
    saved = store.get("orders", order["id"])
    assert saved["payment_status"] == "pending"
    assert saved["status"] == "submitted"


def test_paid_order_is_never_downgraded(client, user, make_order, store, mailer):
    order = make_order(user, payment_status="paid", status="printing", paid_amount=50.0)
    for status in ("CANCELED", "PENDING", "COMPLETED"):
        res = post_notification(client, notification(order["id"], status))
        assert res.status_code == 200
    saved = store.get("orders", order["id"])
    assert saved["payment_status"] == "paid"
    assert saved["status"] == "printing"
    assert saved["paid_amount"] == pytest.approx(50.0)
    assert mailer.sent == []


def test_notification_for_unknown_order_is_acknowledged(client):
    res = post_notification(client, notification("missing", "COMPLETED"))
    assert res.status_code == 200


# -------------------------
# Starting payments
# -------------------------
def test_create_payment_requires_auth(client):
    res = client.post("/api/payments/payu/create", json={"orderId": "x"})
    assert res.status_code == 401


def test_create_blik_payment(client, user, make_order, auth_headers, store, payu_ok):
    order = make_order(user)
    res = client.post(
        "/api/payments/payu/create",
        json={"orderId": order["id"], "payMethod": "blik", "blikCode": "777123"},
        headers=auth_headers(user),
    )
    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    assert body["redirectUri"] == "https://payu/pay"
    assert body["amount"] == pytest.approx(50.0)

    sent = json.loads(payu_ok.calls[-1]["data"])
    assert sent["totalAmount"] == "5000"
    assert sent["extOrderId"] == order["id"]
    assert sent["payMethods"]["payMethod"]["authorizationCode"] == "777123"
    assert sent["buyer"]["email"] == "jan@example.com"

    saved = store.get("orders", order["id"])
    assert saved["payment_status"] == "pending"
    assert saved["payment_method"] == "blik"
    assert saved["payu_order_id"] == "PAYU-1"


def test_invalid_blik_code_is_rejected(client, user, make_order, auth_headers, payu_ok):
    order = make_order(user)
    res = client.post(
        "/api/payments/payu/create",
        json={"orderId": order["id"], "payMethod": "blik", "blikCode": "12"},
        headers=auth_headers(user),
    )
    assert res.status_code == 400
    assert payu_ok.calls == []


def test_cannot_pay_for_someone_elses_order(client, user, make_user, make_order, auth_headers):
    other = make_user(email="ola@example.com")
    order = make_order(other)
    res = client.post("/api/payments/payu/create", json={"orderId": order["id"]}, headers=auth_headers(user))
    assert res.status_code == 404


def test_cannot_pay_twice(client, user, make_order, auth_headers):
    order = make_order(user, payment_status="paid", paid_amount=50.0)
    res = client.post("/api/payments/payu/create", json={"orderId": order["id"]}, headers=auth_headers(user))
    assert res.status_code == 400


def test_cannot_pay_unpriced_order(client, user, make_order, auth_headers):
    order = make_order(user, price=0.0, price_pending=True)
    res = client.post("/api/payments/payu/create", json={"orderId": order["id"]}, headers=auth_headers(user))
    assert res.status_code == 400


def test_gateway_error_is_reported(client, user, make_order, auth_headers, payu_session, store):
    payu_session.add("POST", "/pl/standard/user/oauth/authorize", token_response())
    payu_session.add("POST", "/api/v2_1/orders", FakeResponse(500, {"status": {"statusCode": "ERROR_INTERNAL"}}))
    order = make_order(user)
    res = client.post("/api/payments/payu/create", json={"orderId": order["id"]}, headers=auth_headers(user))
    assert res.status_code == 502
    assert store.get("orders", order["id"])["payment_status"] == "unpaid"


def test_status_refresh_polls_payu(client, user, make_order, auth_headers, payu_session, store):
    payu_session.add("POST", "/pl/standard/user/oauth/authorize", token_response())
    payu_session.add(
        "GET",
        "/api/v2_1/orders/PAYU-9",
        FakeResponse(200, {"orders": [{"orderId": "PAYU-9", "status": "COMPLETED", "totalAmount": "5000"}]}),
    )
    order = make_order(user, payment_status="pending", payu_order_id="PAYU-9")
    res = client.get(f"/api/payments/{order['id']}/status?refresh=1", headers=auth_headers(user))
    body = res.get_json()
    assert body["refreshed"] is True
    assert body["paymentStatus"] == "paid"
    assert body["amountDue"] == 0
    assert store.get("orders", order["id"])["status"] == "in_queue"


# -------------------------
# Paying with credits
# -------------------------
def test_pay_with_credits(client, user, make_order, auth_headers, store):
    add_credits(store, user["id"], 80)
    order = make_order(user)
    res = client.post("/api/payments/credits", json={"orderId": order["id"]}, headers=auth_headers(user))
    assert res.status_code == 200
    body = res.get_json()
    assert body["creditsUsed"] == pytest.approx(50.0)
    assert body["balance"] == pytest.approx(30.0)
    assert body["order"]["payment_status"] == "paid"
    assert body["order"]["status"] == "in_queue"
    assert get_balance(store, user["id"]) == pytest.approx(30.0)


def test_partial_credit_payment(client, user, make_order, auth_headers, store):
    add_credits(store, user["id"], 20)
    order = make_order(user)
    res = client.post(
        "/api/payments/credits", json={"orderId": order["id"], "amount": 20}, headers=auth_headers(user)
    )
    body = res.get_json()
    assert body["amountDue"] == pytest.approx(30.0)
    assert body["order"]["payment_status"] == "unpaid"
    assert body["order"]["paid_amount"] == pytest.approx(20.0)


def test_insufficient_credits(client, user, make_order, auth_headers, store):
    add_credits(store, user["id"], 10)
    order = make_order(user)
    res = client.post("/api/payments/credits", json={"orderId": order["id"]}, headers=auth_headers(user))
    assert res.status_code == 400
    body = res.get_json()
    assert body["error"] == "Insufficient credits"
    assert body["balance"] == pytest.approx(10.0)
    assert store.get("orders", order["id"])["payment_status"] == "unpaid"


def test_credits_refused_while_payu_payment_is_open(client, user, make_order, auth_headers, store):
    add_credits(store, user["id"], 100)
    order = make_order(user, payment_status="pending", payu_order_id="PAYU-1", payment_method="blik")
    res = client.post("/api/payments/credits", json={"orderId": order["id"]}, headers=auth_headers(user))
    assert res.status_code == 409
    assert get_balance(store, user["id"]) == pytest.approx(100.0)

    post_notification(client, notification(order["id"], "COMPLETED"))
    saved = store.get("orders", order["id"])
    assert saved["payment_status"] == "paid"
    assert saved["paid_amount"] == pytest.approx(50.0)
    assert not saved.get("overpaid_amount")


def test_late_payu_charge_on_credit_paid_order_is_recorded(client, user, make_order, store, mailer, caplog):
    order = make_order(user, payment_status="paid", payment_method="credits", paid_amount=50.0, status="in_queue")
    body = notification(order["id"], "COMPLETED", payu_id="PAYU-7")
    with caplog.at_level("ERROR"):
        assert post_notification(client, body).status_code == 200
    post_notification(client, body)

    saved = store.get("orders", order["id"])
    assert saved["paid_amount"] == pytest.approx(50.0)
    assert saved["overpaid_amount"] == pytest.approx(50.0)
    assert saved["overpaid_payu_order_id"] == "PAYU-7"
    assert any("Overpayment" in r.getMessage() for r in caplog.records)
    assert mailer.sent == []


# -------------------------
# Buying credits)
# -------------------------
def test_credit_purchase_is_applied_once(client, user, auth_headers, store, payu_ok):
    res = client.post("/api/credits/purchase", json={"packageId": "pack_100"}, headers=auth_headers(user))
    assert res.status_code == 200
    order_id = res.get_json()["orderId"]
    assert json.loads(payu_ok.calls[-1]["data"])["description"] == "Store Credit: 110.00 PLN"

    body = notification(order_id, "COMPLETED", total="10000")
    post_notification(client, body)
    post_notification(client, body)

    order = store.get("orders", order_id)
    assert order["status"] == "completed"
    assert order["credits_applied"] is True
    assert get_balance(store, user["id"]) == pytest.approx(110.0)
    assert len(store.select("credits_transactions", {"user_id": user["id"]})) == 1


def test_unknown_package_is_rejected(client, user, auth_headers):
    res = client.post("/api/credits/purchase", json={"packageId": "pack_9"}, headers=auth_headers(user))
    assert res.status_code == 400


def test_bad_blik_code_leaves_no_credits_order(client, user, auth_headers, store, payu_ok):
    res = client.post(
        "/api/credits/purchase",
        json={"packageId": "pack_100", "payMethod": "blik", "blikCode": "12"},
        headers=auth_headers(user),
    )
    assert res.status_code == 400
    assert store.select("orders", {"user_id": user["id"]}) == []
    assert payu_ok.calls == []


def test_gateway_failure_leaves_no_credits_order(client, user, auth_headers, store, payu_session):
    payu_session.add("POST", "/pl/standard/user/oauth/authorize", token_response())
    payu_session.add("POST", "/api/v2_1/orders", FakeResponse(500, {"status": {"statusCode": "ERROR_INTERNAL"}}))
    res = client.post("/api/credits/purchase", json={"packageId": "pack_50"}, headers=auth_headers(user))
    assert res.status_code == 502
    assert store.select("orders", {"user_id": user["id"]}) == []
