from datetime import timedelta

from security import create_jwt


def test_register_and_login(client):
    res = client.post("/auth/register", json={"name": "Ayse", "email": "Ayse@Example.com", "password": "secret123"})
    assert res.status_code == 201
    body = res.json()
    assert body["user"]["email"] == "ayse@example.com"
    assert body["user"]["role"] == "customer"
    assert "password" not in str(body["user"]).lower()

    res = client.post("/auth/login", json={"email": "AYSE@example.com", "password": "secret123"})
    assert res.status_code == 200
    assert res.cookies.get("token")
    token = res.json()["token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == "ayse@example.com"


def test_register_duplicate_email_is_case_insensitive(client):
    client.post("/auth/register", json={"name": "Ayse", "email": "a@example.com", "password": "secret123"})
    res = client.post("/auth/register", json={"name": "Ayse", "email": "A@EXAMPLE.com", "password": "secret123"})
    assert res.status_code == 400


def test_register_cannot_self_assign_admin(client):
    res = client.post("/auth/register", json={"name": "Eve", "email": "eve@example.com",
                                              "password": "secret123", "role": "admin"})
    assert res.status_code == 400


def test_login_wrong_password(client):
    client.post("/auth/register", json={"name": "Ayse", "email": "a@example.com", "password": "secret123"})
    res = client.post("/auth/login", json={"email": "a@example.com", "password": "nope-nope"})
    assert res.status_code == 401


def test_missing_malformed_and_expired_tokens_are_unauthenticated(client, env):
    assert client.get("/auth/me").status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401

    user = env.account()
    expired = create_jwt(env.settings, user["id"], "customer", expires_delta=timedelta(seconds=-5))
    assert client.get("/auth/me", headers={"Authorization": f"Bearer {expired}"}).status_code == 401


def test_cookie_credential_and_header_precedence(client, env):
    customer = env.account("customer")
    admin = env.account("admin")

    client.cookies.set("token", customer["token"])
    assert client.get("/auth/me").json()["role"] == "customer"
    assert client.get("/auth/me", headers=admin["headers"]).json()["role"] == "admin"


def test_require_role_forbids_wrong_role(client, env):
    customer = env.account("customer")
    assert client.get("/restaurants", headers=customer["headers"]).status_code == 403
