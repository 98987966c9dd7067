"""
Tests for authentication (signup, login, bearer tokens, /api/user).

Tests cover:
- Signup returns a usable token and never exposes the password hash
- Duplicate email / username conflicts
- Login success and failure
- Token rejection (missing, malformed, expired, unknown user)
- Validation errors mapped to 400
- Demo user seeding
"""

import logging
import threading
from datetime import timedelta

from fastapi.testclient import TestClient

import schemas
from main import seed_demo_user
from auth.security import create_access_token, verify_password
from tests.conftest import create_auth_token, DEFAULT_PASSWORD

logger = logging.getLogger(__name__)


SIGNUP_BODY = {
    "username": "janedoe",
    "email": "jane@example.com",
    "password": "secret123",
    "name": "Jane Doe",
}


# ============== Signup ==============


def test_signup_returns_token_and_public_user(client: TestClient):
    """Signup creates the user, logs them in and hides the password hash."""
    response = client.post("/api/auth/signup", json=SIGNUP_BODY)

    assert response.status_code == 201, f"Expected 201, got {response.status_code}: {response.json()}"
    data = response.json()
    assert data["message"] == "User created successfully"
    assert data["user"]["email"] == "jane@example.com"
    assert data["user"]["username"] == "janedoe"
    assert "passwordHash" not in data["user"]
    assert "password_hash" not in data["user"]

    me = client.get("/api/user", headers={"Authorization": f"Bearer {data['token']}"})
    assert me.status_code == 200
    assert me.json()["id"] == data["user"]["id"]
    logger.info("✓ Signup token authenticates the new user")


def test_signup_stores_hashed_password(client: TestClient, storage):
    client.post("/api/auth/signup", json=SIGNUP_BODY)

    user = storage.get_user_by_email("jane@example.com")
    assert user.password_hash != "secret123"
    assert verify_password("secret123", user.password_hash)


def test_signup_duplicate_email(client: TestClient, storage, owner_user: schemas.User):
    """Reusing an email is a 409 conflict and creates nothing."""
    body = dict(SIGNUP_BODY, email=owner_user.email)

    response = client.post("/api/auth/signup", json=body)

    assert response.status_code == 409, f"Expected 409, got {response.status_code}: {response.json()}"
    assert response.json()["detail"] == "Email already in use"
    assert storage.get_user_by_username(SIGNUP_BODY["username"]) is None
    assert storage.get_user_by_email(owner_user.email).id == owner_user.id
    logger.info("✓ Duplicate email rejected")


def test_signup_duplicate_username(client: TestClient, storage, owner_user: schemas.User):
    body = dict(SIGNUP_BODY, username=owner_user.username)

    response = client.post("/api/auth/signup", json=body)

    assert response.status_code == 409
    assert response.json()["detail"] == "Username already taken"
    assert storage.get_user_by_email(SIGNUP_BODY["email"]) is None


def test_concurrent_signups_with_same_email(client: TestClient, storage):
    """Parallel signups for one email produce exactly one user; the rest get 409."""
    results = []
    results_lock = threading.Lock()

    def worker(i):
        body = dict(SIGNUP_BODY, username=f"racer{i}")
        response = client.post("/api/auth/signup", json=body)
        with results_lock:
            results.append(response.status_code)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == [201] + [409] * 7, f"Unexpected status codes: {results}"
    created = [storage.get_user_by_username(f"racer{i}") for i in range(8)]
    assert sum(1 for u in created if u is not None) == 1
    logger.info("✓ Concurrent signups kept email unique")


def test_signup_short_password_is_bad_request(client: TestClient):
    """Body validation failures are reported as 400 with the field errors."""
    response = client.post("/api/auth/signup", json=dict(SIGNUP_BODY, password="123"))

    assert response.status_code == 400, f"Expected 400, got {response.status_code}: {response.json()}"
    data = response.json()
    assert data["detail"] == "Invalid request"
    assert any("password" in error["loc"] for error in data["errors"])
    logger.info("✓ Invalid signup body mapped to 400")


def test_signup_invalid_email(client: TestClient):
    response = client.post("/api/auth/signup", json=dict(SIGNUP_BODY, email="not-an-email"))

    assert response.status_code == 400


# ============== Login ==============


def test_login_success(client: TestClient, owner_user: schemas.User):
    response = client.post(
        "/api/auth/login",
        json={"email": owner_user.email, "password": DEFAULT_PASSWORD}
    )

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    data = response.json()
    assert data["message"] == "Authentication successful"
    assert data["user"]["id"] == owner_user.id
    assert data["token"]
    logger.info("✓ Login returns token and user")


def test_login_wrong_password(client: TestClient, owner_user: schemas.User):
    response = client.post(
        "/api/auth/login",
        json={"email": owner_user.email, "password": "wrong-password"}
    )

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid credentials"


def test_login_unknown_email(client: TestClient):
    """Unknown email gives the same answer as a wrong password."""
    response = client.post(
        "/api/auth/login",
        json={"email": "nobody@example.com", "password": "password123"}
    )

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid credentials"


# ============== Bearer Tokens ==============


def test_protected_route_requires_token(client: TestClient):
    response = client.get("/api/tasks")

    assert response.status_code == 401, f"Expected 401, got {response.status_code}: {response.json()}"
    assert response.headers.get("WWW-Authenticate") == "Bearer"
    logger.info("✓ Missing token rejected")


def test_malformed_token_rejected(client: TestClient):
    response = client.get("/api/user", headers={"Authorization": "Bearer not.a.jwt"})

    assert response.status_code == 401


def test_expired_token_rejected(client: TestClient, owner_user: schemas.User):
    token = create_auth_token(owner_user, expires_delta=timedelta(minutes=-5))

    response = client.get("/api/user", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    logger.info("✓ Expired token rejected")


def test_token_for_unknown_user_rejected(client: TestClient):
    token = create_access_token({"sub": "9999", "email": "ghost@example.com"})

    response = client.get("/api/user", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_token_with_non_numeric_subject_rejected(client: TestClient):
    token = create_access_token({"sub": "abc"})

    response = client.get("/api/user", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


# ============== Users ==============


def test_get_me(client: TestClient, owner_user: schemas.User, owner_headers):
    response = client.get("/api/user", headers=owner_headers)

    assert response.status_code == 200
    assert response.json() == {
        "id": owner_user.id,
        "name": owner_user.name,
        "email": owner_user.email,
        "username": owner_user.username,
    }


def test_get_other_user_profile(
    client: TestClient, owner_headers, outsider_user: schemas.User
):
    response = client.get(f"/api/users/{outsider_user.id}", headers=owner_headers)

    assert response.status_code == 200
    assert response.json()["username"] == "outsider"
    assert "passwordHash" not in response.json()


def test_get_missing_user(client: TestClient, owner_headers):
    response = client.get("/api/users/9999", headers=owner_headers)

    assert response.status_code == 404


def test_health_is_public(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


# ============== Demo User ==============


def test_seed_demo_user_is_idempotent(storage):
    """The demo account is created once and can log in with the default password."""
    user = seed_demo_user(storage)

    assert user is not None
    assert user.username == "johndoe"
    assert verify_password("password123", user.password_hash)
    assert seed_demo_user(storage) is None
    logger.info("✓ Demo user seeded once")
