"""
Authentication: register, login, token revocation and role checks.
"""
from conftest import TEST_PASSWORD, auth_headers


def test_register_creates_member(client):
    response = client.post(
        "/auth/register",
        json={"email": "new.member@example.com", "name": "New Member", "password": "Secret123!"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["user"]["role"] == "member"
    assert body["access_token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.json()["data"]["email"] == "new.member@example.com"
    assert me.json()["data"]["has_active_subscription"] is False


def test_register_duplicate_email_rejected(client, factory):
    factory.member(email="taken@example.com")

    response = client.post(
        "/auth/register",
        json={"email": "taken@example.com", "name": "Someone", "password": "Secret123!"},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "EMAIL_EXISTS"


def test_register_validation_error_envelope(client):
    response = client.post("/auth/register", json={"email": "not-an-email", "name": "", "password": "x"})

    assert response.status_code == 422
    assert response.json()["detail"]["error_code"] == "VALIDATION_ERROR"


def test_login_with_wrong_password(client, factory):
    member = factory.member()

    response = client.post("/auth/login", json={"email": member["email"], "password": "wrong-password"})

    assert response.status_code == 401
    assert response.json()["detail"]["error_code"] == "INVALID_CREDENTIALS"


def test_login_inactive_account(client, factory):
    member = factory.member(is_active=0)

    response = client.post("/auth/login", json={"email": member["email"], "password": TEST_PASSWORD})

    assert response.status_code == 401
    assert response.json()["detail"]["error_code"] == "ACCOUNT_INACTIVE"


def test_login_revokes_previous_token(client, factory):
    member = factory.member()
    old_headers = auth_headers(member)
    assert client.get("/auth/me", headers=old_headers).status_code == 200

    response = client.post("/auth/login", json={"email": member["email"], "password": TEST_PASSWORD})
    assert response.status_code == 200
    new_token = response.json()["access_token"]

    stale = client.get("/auth/me", headers=old_headers)
    assert stale.status_code == 401
    assert stale.json()["detail"]["error_code"] == "TOKEN_REVOKED"

    fresh = client.get("/auth/me", headers={"Authorization": f"Bearer {new_token}"})
    assert fresh.status_code == 200
    assert fresh.json()["data"]["has_active_subscription"] is True


def test_logout_invalidates_token(client, factory):
    member = factory.member()
    headers = auth_headers(member)

    assert client.post("/auth/logout", headers=headers).status_code == 200

    response = client.get("/auth/me", headers=headers)
    assert response.status_code == 401
    assert response.json()["detail"]["error_code"] == "TOKEN_REVOKED"


def test_invalid_token_rejected(client):
    response = client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401
    assert response.json()["detail"]["error_code"] == "INVALID_TOKEN"


def test_role_is_read_from_database(client, factory, cursor, conn):
    member = factory.member()
    headers = auth_headers(member)
    cursor.execute("UPDATE users SET role = 'trainer' WHERE id = %s", (member["id"],))
    conn.commit()

    # The token still says member, the database now says trainer
    response = client.get("/api/member/bookings", headers=headers)

    assert response.status_code == 403
    assert response.json()["detail"]["error_code"] == "PERMISSION_DENIED"


def test_member_cannot_use_admin_endpoints(client, factory):
    member = factory.member()

    response = client.get("/api/cms/payments", headers=auth_headers(member))

    assert response.status_code == 403
    assert response.json()["detail"]["error_code"] == "PERMISSION_DENIED"


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
