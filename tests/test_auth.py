"""Tests for the auth blueprint.

Covers:
- Login (valid, wrong password, unknown email, inactive, email normalization)
- /auth/me with subscription state
- Logout
- CSRF token endpoint
- Security headers on API responses
"""

import json

from myceo.extensions import db
from myceo.models.user import User


class TestLogin:

    def test_login_success(self, client, seed_data):
        resp = client.post("/auth/login", json={
            "email": "parent@example.com", "password": "parentpass123",
        })
        assert resp.status_code == 200
        data = json.loads(resp.data)
        assert data["email"] == "parent@example.com"
        assert data["parent"]["subscriptionTier"] == "standard"
        assert data["parent"]["subscriptionStatus"] == "active"
        assert data["parent"]["hasAccess"] is True

    def test_login_normalizes_email(self, client, seed_data):
        resp = client.post("/auth/login", json={
            "email": "  PARENT@Example.com", "password": "parentpass123",
        })
        assert resp.status_code == 200

    def test_wrong_password(self, client, seed_data):
        resp = client.post("/auth/login", json={
            "email": "parent@example.com", "password": "nope",
        })
        assert resp.status_code == 401
        assert "Invalid email or password" in json.loads(resp.data)["error"]

    def test_unknown_email(self, client, seed_data):
        resp = client.post("/auth/login", json={
            "email": "ghost@example.com", "password": "parentpass123",
        })
        assert resp.status_code == 401

    def test_missing_fields(self, client):
        resp = client.post("/auth/login", json={"email": "parent@example.com"})
        assert resp.status_code == 400

    def test_inactive_user(self, client, seed_data):
        user = db.session.get(User, seed_data["user_id"])
        user.is_active = False
        db.session.commit()

        resp = client.post("/auth/login", json={
            "email": "parent@example.com", "password": "parentpass123",
        })
        assert resp.status_code == 403


class TestSession:

    def test_me_requires_login(self, client):
        resp = client.get("/auth/me")
        assert resp.status_code == 401
        assert json.loads(resp.data)["error"] == "Unauthorized"

    def test_me_returns_account(self, client, login, seed_data):
        login(seed_data["email"], seed_data["password"])

        resp = client.get("/auth/me")
        assert resp.status_code == 200
        data = json.loads(resp.data)
        assert data["id"] == seed_data["user_id"]
        assert data["emailVerified"] is True
        assert data["parent"]["id"] == seed_data["parent_id"]

    def test_logout(self, client, login, seed_data):
        login(seed_data["email"], seed_data["password"])

        resp = client.post("/auth/logout")
        assert resp.status_code == 200

        assert client.get("/auth/me").status_code == 401

    def test_csrf_token(self, client):
        resp = client.get("/auth/csrf-token")
        assert resp.status_code == 200
        assert json.loads(resp.data)["csrfToken"]


class TestSecurityHeaders:

    def test_headers_present(self, client):
        resp = client.get("/auth/csrf-token")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert "frame-ancestors 'none'" in resp.headers["Content-Security-Policy"]

    def test_json_404(self, client):
        resp = client.get("/does-not-exist")
        assert resp.status_code == 404
        assert json.loads(resp.data)["error"] == "Not found"
