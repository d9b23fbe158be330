"""
Tests for the admin lifecycle API.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from lifecycle.config import settings
from lifecycle.database import get_db
from lifecycle.main import app

ADMIN_KEY = "test-admin-key"


@pytest_asyncio.fixture
async def client(db, monkeypatch):
    """API client whose requests share the test session."""
    monkeypatch.setattr(settings, "admin_api_key", ADMIN_KEY)

    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


HEADERS = {"X-Admin-Key": ADMIN_KEY}


class TestAuth:
    """Tests for the admin key check."""

    @pytest.mark.asyncio
    async def test_missing_key(self, client):
        response = await client.get("/admin/lifecycle/distribution/stages")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_key(self, client):
        response = await client.get("/admin/lifecycle/distribution/stages", headers={"X-Admin-Key": "nope"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_health_is_open(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_unknown_user_is_404(client):
    response = await client.get("/admin/lifecycle/users/missing-user", headers=HEADERS)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_user_snapshot(client, make_user):
    user = await make_user()

    response = await client.get(f"/admin/lifecycle/users/{user.id}", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == user.id
    assert body["current_stage"] == "REGISTERED"


class TestForceStage:
    """Tests for the stage override endpoint."""

    @pytest.mark.asyncio
    async def test_invalid_stage_is_400(self, client, make_user):
        user = await make_user()
        response = await client.post(
            f"/admin/lifecycle/users/{user.id}/stage",
            json={"to_stage": "SUPER_USER", "reason": "typo"},
            headers=HEADERS,
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_user_is_404(self, client):
        response = await client.post(
            "/admin/lifecycle/users/missing-user/stage",
            json={"to_stage": "VIP_USER", "reason": "promo"},
            headers=HEADERS,
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_override_is_recorded(self, client, make_user):
        user = await make_user()
        response = await client.post(
            f"/admin/lifecycle/users/{user.id}/stage",
            json={"to_stage": "VIP_USER", "reason": "promo"},
            headers={**HEADERS, "X-Admin-Id": "admin-3"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["to_stage"] == "VIP_USER"
        assert body["forced"] is True
        assert body["admin_id"] == "admin-3"

    @pytest.mark.asyncio
    async def test_empty_reason_is_rejected(self, client, make_user):
        user = await make_user()
        response = await client.post(
            f"/admin/lifecycle/users/{user.id}/stage",
            json={"to_stage": "VIP_USER", "reason": ""},
            headers=HEADERS,
        )
        assert response.status_code == 422


@pytest.mark.asyncio
async def test_track_event_endpoint(client, make_user):
    user = await make_user()

    response = await client.post(
        "/events",
        json={"user_id": user.id, "event_type": "LOGIN", "event_data": {"login_method": "otp"}},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["event_type"] == "LOGIN"


@pytest.mark.asyncio
async def test_unknown_event_type_returns_null(client, make_user):
    user = await make_user()

    response = await client.post(
        "/events",
        json={"user_id": user.id, "event_type": "TELEPORTED"},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json() is None
