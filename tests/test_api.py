"""
Tests for the HTTP surface.

Tests cover authentication, the recycle bin and history views and the
recovery endpoint's status mapping.
"""

import asyncio

import jwt
import pytest
from fastapi.testclient import TestClient

from audit_trail_store import AuditTrailConfig, JWTActorResolver
from audit_trail_store.api import create_app, create_app_from_config

SECRET = "audit-trail-test-secret-0123456789abcdef"


def auth_headers(actor_id="7"):
    token = jwt.encode({"sub": actor_id}, SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(store):
    """Test client over the in-memory store."""
    app = create_app(JWTActorResolver(SECRET), store=store)
    return TestClient(app)


class TestAuthentication:
    """Test bearer token handling."""

    def test_missing_token(self, client):
        """Test requests without a token are rejected."""
        response = client.get("/audit-trail")

        assert response.status_code == 401
        assert response.json()["detail"] == "No token provided"

    def test_invalid_token(self, client):
        """Test requests with a bad token are rejected."""
        response = client.get(
            "/audit-trail", headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"

    def test_recover_requires_token(self, client):
        """Test recovery is refused without a token."""
        response = client.post("/audit-trail/recover", json={"logId": 1})

        assert response.status_code == 401


class TestAuditTrailViews:
    """Test GET /audit-trail."""

    def test_deleted_view(self, client, store):
        """Test the recycle bin view uses camelCase keys."""
        log_id = asyncio.run(
            store.soft_delete("Product", 123, {"name": "Widget"}, "7")
        )

        response = client.get(
            "/audit-trail", params={"type": "deleted"}, headers=auth_headers()
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        item = body["items"][0]
        assert item["logId"] == log_id
        assert item["entityType"] == "Product"
        assert item["entityId"] == 123
        assert item["originalData"] == {"name": "Widget"}
        assert item["deletedBy"] == "7"
        assert item["deletedByActor"]["name"] == "Alice Operator"
        assert item["canRecover"] is True

    def test_deleted_view_pagination(self, client, store):
        """Test page and limit parameters."""
        for entity_id in range(1, 4):
            asyncio.run(store.soft_delete("Product", entity_id, {}, "7"))

        response = client.get(
            "/audit-trail",
            params={"type": "deleted", "entity": "Product", "page": 2, "limit": 2},
            headers=auth_headers(),
        )

        body = response.json()
        assert body["total"] == 3
        assert [i["entityId"] for i in body["items"]] == [1]

    def test_history_view(self, client, store):
        """Test the history of one entity."""
        asyncio.run(store.record_create("Product", 5, "7"))
        asyncio.run(store.soft_delete("Product", 5, {}, "8"))

        response = client.get(
            "/audit-trail",
            params={"type": "history", "entity": "Product", "entityId": 5},
            headers=auth_headers(),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert [i["action"] for i in body["items"]] == ["DELETE", "CREATE"]
        assert body["items"][0]["actor"]["name"] == "Bob Reviewer"

    def test_history_requires_entity(self, client):
        """Test history without entity and id is a bad request."""
        response = client.get(
            "/audit-trail",
            params={"type": "history", "entity": "Product"},
            headers=auth_headers(),
        )

        assert response.status_code == 400

    def test_all_view(self, client, store):
        """Test listing the whole log."""
        asyncio.run(store.record_create("Product", 1, "7"))
        asyncio.run(store.record_create("Order", 1, "7"))

        response = client.get("/audit-trail", headers=auth_headers())

        assert response.status_code == 200
        assert response.json()["total"] == 2

    def test_unknown_view(self, client):
        """Test unknown view types are rejected."""
        response = client.get(
            "/audit-trail", params={"type": "purged"}, headers=auth_headers()
        )

        assert response.status_code == 422


class TestRecoverEndpoint:
    """Test POST /audit-trail/recover."""

    def test_recover(self, client, store):
        """Test recovering a deletion as the calling actor."""
        log_id = asyncio.run(store.soft_delete("Product", 1, {}, "7"))

        response = client.post(
            "/audit-trail/recover", json={"logId": log_id}, headers=auth_headers("8")
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Item recovered successfully"
        assert asyncio.run(store.deleted_ids("Product")) == set()

        history = asyncio.run(store.history("Product", 1))
        assert history[0].actor_id == "8"

    def test_recover_accepts_audit_log_id(self, client, store):
        """Test the auditLogId spelling of the body field."""
        log_id = asyncio.run(store.soft_delete("Product", 1, {}, "7"))

        response = client.post(
            "/audit-trail/recover", json={"auditLogId": log_id}, headers=auth_headers()
        )

        assert response.status_code == 200

    def test_recover_twice(self, client, store):
        """Test a second recovery is still a success."""
        log_id = asyncio.run(store.soft_delete("Product", 1, {}, "7"))
        client.post(
            "/audit-trail/recover", json={"logId": log_id}, headers=auth_headers()
        )

        response = client.post(
            "/audit-trail/recover", json={"logId": log_id}, headers=auth_headers()
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Item already recovered"

    def test_recover_not_found(self, client):
        """Test unknown log ids map to 404."""
        response = client.post(
            "/audit-trail/recover", json={"logId": 999}, headers=auth_headers()
        )

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_recover_not_recoverable(self, client, store):
        """Test unrecoverable deletions map to 400."""
        log_id = asyncio.run(
            store.soft_delete("Product", 1, {}, "7", can_recover=False)
        )

        response = client.post(
            "/audit-trail/recover", json={"logId": log_id}, headers=auth_headers()
        )

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_recover_requires_log_id(self, client):
        """Test the body must name a log id."""
        response = client.post(
            "/audit-trail/recover", json={}, headers=auth_headers()
        )

        assert response.status_code == 422


class TestAppFromConfig:
    """Test building the application from configuration."""

    def test_lifespan_opens_store(self):
        """Test the store is created on startup."""
        config = AuditTrailConfig(
            environment="test", database_url="sqlite:///:memory:", jwt_secret=SECRET
        )
        app = create_app_from_config(config)

        with TestClient(app) as client:
            response = client.get(
                "/audit-trail", params={"type": "deleted"}, headers=auth_headers()
            )

        assert response.status_code == 200
        assert response.json() == {"items": [], "total": 0}

    def test_store_not_ready(self):
        """Test requests before startup get 503."""
        app = create_app(JWTActorResolver(SECRET))

        response = TestClient(app).get("/audit-trail", headers=auth_headers())

        assert response.status_code == 503
