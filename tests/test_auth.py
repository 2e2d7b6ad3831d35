import pytest

from protolab.security import make_signed_token, verify_access_token


def register(client, **extra):
    data = {"name": "Jan Kowalski", "email": "Jan@Example.com", "password": "secret123"}
    data.update(extra)
    return client.post("/api/auth/register", json=data)


def signed(app, purpose, payload):
    with app.app_context():
        return make_signed_token(purpose, payload)


def test_register_creates_unverified_user(client, store, mailer):
    res = register(client, phone="500 600 700")
    assert res.status_code == 201
    user = res.get_json()["user"]
    assert user["email"] == "jan@example.com"
    assert user["email_verified"] is False
    assert user["phone"] == "500 600 700"
    assert "password_hash" not in user
    assert store.get("users", user["id"])["password_hash"] != "secret123"
    assert mailer.sent[0]["to"] == "jan@example.com"


def test_register_rejects_duplicates_and_bad_input(client):
    assert register(client).status_code == 201
    assert register(client, email="jan@example.com").status_code == 409
    assert register(client, email="nope").status_code == 400
    assert register(client, email="x@example.com", password="123").status_code == 400
    assert register(client, email="y@example.com", name="J").status_code == 400
    assert client.post("/api/auth/register", json={"email": "z@example.com"}).status_code == 400


def test_unverified_user_cannot_log_in(client):
    register(client)
    res = client.post("/api/auth/login", json={"email": "jan@example.com", "password": "secret123"})
    assert res.status_code == 403
    assert res.get_json()["code"] == "EMAIL_NOT_VERIFIED"


def test_verify_email_logs_the_user_in(app, client, mailer):
    user_id = register(client).get_json()["user"]["id"]
    token = signed(app, "email-verify", {"uid": user_id})

    res = client.get(f"/api/auth/verify-email?token={token}")
    assert res.status_code == 200
    body = res.get_json()
    assert body["user"]["email_verified"] is True
    assert body["tokens"]["accessToken"]
    assert mailer.sent[-1]["to"] == "jan@example.com"

    assert client.get(f"/api/auth/verify-email?token={token}").status_code == 409
    assert client.get("/api/auth/verify-email?token=garbage").status_code == 400


def test_login_with_wrong_password(client, user):
    res = client.post("/api/auth/login", json={"email": "jan@example.com", "password": "wrong"})
    assert res.status_code == 401
    assert res.get_json()["error"] == "Invalid email or password"
    res = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "wrong"})
    assert res.status_code == 401


def test_login_returns_token_pair(app, client, user):
    res = client.post("/api/auth/login", json={"email": "JAN@example.com", "password": "secret123"})
    assert res.status_code == 200
    tokens = res.get_json()["tokens"]
    with app.app_context():
        claims = verify_access_token(tokens["accessToken"])
    assert claims["userId"] == user["id"]
    assert claims["role"] == "user"

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {tokens['accessToken']}"})
    assert me.get_json()["user"]["email"] == "jan@example.com"


def test_refresh_token_rotation(client, user):
    tokens = client.post("/api/auth/login", json={"email": "jan@example.com", "password": "secret123"}).get_json()["tokens"]

    res = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert res.status_code == 200
    fresh = res.get_json()["tokens"]
    assert fresh["refreshToken"] != tokens["refreshToken"]

    # the old one was consumed
    assert client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]}).status_code == 401
    # an access token is not a refresh token
    assert client.post("/api/auth/refresh", json={"refreshToken": fresh["accessToken"]}).status_code == 401


def test_logout_revokes_refresh_token(client, user):
    tokens = client.post("/api/auth/login", json={"email": "jan@example.com", "password": "secret123"}).get_json()["tokens"]
    assert client.post("/api/auth/logout", json={"refreshToken": tokens["refreshToken"]}).status_code == 200
    assert client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]}).status_code == 401


def test_password_reset(app, client, store, user, mailer):
    res = client.post("/api/auth/forgot-password", json={"email": "jan@example.com"})
    assert res.status_code == 200
    assert mailer.sent[-1]["to"] == "jan@example.com"
    # unknown addresses get the same answer
    assert client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"}).status_code == 200

    token = signed(app, "password-reset", {"uid": user["id"], "h": user["password_hash"][-12:]})
    res = client.post("/api/auth/reset-password", json={"token": token, "password": "newpass1"})
    assert res.status_code == 200
    # single use: the hash changed
    assert client.post("/api/auth/reset-password", json={"token": token, "password": "other12"}).status_code == 400

    assert client.post("/api/auth/login", json={"email": "jan@example.com", "password": "secret123"}).status_code == 401
    assert client.post("/api/auth/login", json={"email": "jan@example.com", "password": "newpass1"}).status_code == 200


def test_update_profile(client, user, auth_headers):
    res = client.patch("/api/auth/me", json={"city": "Kraków", "zipCode": "30-001"}, headers=auth_headers(user))
    body = res.get_json()["user"]
    assert body["city"] == "Kraków"
    assert body["zip_code"] == "30-001"
    assert client.patch("/api/auth/me", json={}, headers=auth_headers(user)).status_code == 400


def test_business_info(client, user, auth_headers, store):
    headers = auth_headers(user)
    assert client.get("/api/auth/me/business-info", headers=headers).get_json()["businessInfo"] is None

    res = client.put("/api/auth/me/business-info", json={"company_name": "Kowalski Sp. z o.o."}, headers=headers)
    assert res.status_code == 400
    res = client.put(
        "/api/auth/me/business-info", json={"company_name": "Kowalski", "nip": "123-45"}, headers=headers
    )
    assert res.get_json()["error"] == "NIP must be 10 digits"

    res = client.put(
        "/api/auth/me/business-info",
        json={"company_name": "Kowalski Sp. z o.o.", "nip": "123-456-32-18", "city": "Kraków"},
        headers=headers,
    )
    assert res.status_code == 200
    info = client.get("/api/auth/me/business-info", headers=headers).get_json()["businessInfo"]
    assert info["nip"] == "1234563218"
    assert info["city"] == "Kraków"
    assert info["postal_code"] is None
    assert store.get("users", user["id"])["business_info"] == info


def test_delete_account_needs_the_password(client, user, auth_headers, store):
    res = client.delete("/api/auth/me", json={"password": "wrong"}, headers=auth_headers(user))
    assert res.status_code == 401
    assert store.get("users", user["id"]) is not None


def test_delete_account_refused_with_active_orders(client, user, auth_headers, make_order, store):
    order = make_order(user, status="printing", payment_status="paid", paid_amount=50.0)
    res = client.delete("/api/auth/me", json={"password": "secret123"}, headers=auth_headers(user))
    assert res.status_code == 409
    assert res.get_json()["orders"] == [order["id"]]
    assert store.get("users", user["id"]) is not None


def test_delete_account(client, user, auth_headers, make_order, store):
    make_order(user, status="delivered", payment_status="paid", paid_amount=50.0)
    res = client.delete("/api/auth/me", json={"password": "secret123"}, headers=auth_headers(user))
    assert res.status_code == 200
    assert store.get("users", user["id"]) is None
    assert store.select("refresh_tokens", {"user_id": user["id"]}) == []
    assert len(store.select("orders", {"user_id": user["id"]})) == 1

    res = client.post("/api/auth/login", json={"email": "jan@example.com", "password": "secret123"})
    assert res.status_code == 401


@pytest.mark.parametrize("header", [None, "Bearer nonsense", "Basic abc"])
def test_protected_routes_need_a_valid_token(client, header):
    headers = {"Authorization": header} if header else {}
    assert client.get("/api/auth/me", headers=headers).status_code == 401
