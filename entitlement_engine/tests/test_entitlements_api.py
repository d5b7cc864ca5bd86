"""
HTTP surface tests.

Checks the admin-key gate on writes, the error envelope and the main
provision -> record -> check flow through the router.
"""
import pytest
from unittest.mock import patch
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from entitlement_engine.core.errors import TransientStorageError
from entitlement_engine.main import create_app


@pytest.fixture
def client():
    return TestClient(create_app(bootstrap_storage=False))


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_readyz_with_schema(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_writes_require_admin_key(client, admin_headers, workspace_id):
    resp = client.post(f"/v1/entitlements/{workspace_id}/packages", json={"package_code": "apollo"})
    assert resp.status_code == 403
    body = resp.json()
    assert body["error"]["code"] == "forbidden"
    assert body["error"]["request_id"] == resp.headers["x-request-id"]

    resp = client.post(
        f"/v1/entitlements/{workspace_id}/packages",
        json={"package_code": "apollo"},
        headers={"X-Admin-Key": "wrong"},
    )
    assert resp.status_code == 403


def test_writes_rejected_when_admin_key_unset(client, monkeypatch, workspace_id):
    monkeypatch.delenv("ADMIN_KEY", raising=False)
    resp = client.post(
        f"/v1/entitlements/{workspace_id}/packages",
        json={"package_code": "apollo"},
        headers={"X-Admin-Key": "anything"},
    )
    assert resp.status_code == 403


def test_provision_record_check_flow(client, admin_headers, workspace_id):
    resp = client.post(f"/v1/entitlements/{workspace_id}/packages", json={"package_code": "apollo"}, headers=admin_headers)
    assert resp.status_code == 201
    assert resp.json()["package_code"] == "apollo"
    assert resp.json()["source"].startswith("admin:")

    resp = client.post(
        f"/v1/entitlements/{workspace_id}/usage",
        json={"feature_code": "social.accounts", "quantity": 24},
        headers=admin_headers,
    )
    assert resp.status_code == 201
    assert resp.json()["period_key"] == "all"

    body = client.get(f"/v1/entitlements/{workspace_id}/check/social.accounts").json()
    assert body["allowed"] is True
    assert body["limit"] == 25
    assert body["remaining"] == 1
    assert body["near_limit"] is True

    body = client.get(f"/v1/entitlements/{workspace_id}/check/social.accounts", params={"quantity": 2}).json()
    assert body["allowed"] is False
    assert body["reason"] == "limit_reached"


def test_consume_over_limit_is_403(client, admin_headers, workspace_id):
    client.post(f"/v1/entitlements/{workspace_id}/packages", json={"package_code": "starter"}, headers=admin_headers)

    ok = client.post(
        f"/v1/entitlements/{workspace_id}/consume",
        json={"feature_code": "social.accounts", "quantity": 5},
        headers=admin_headers,
    )
    assert ok.status_code == 201

    resp = client.post(
        f"/v1/entitlements/{workspace_id}/consume",
        json={"feature_code": "social.accounts"},
        headers=admin_headers,
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "quota_exceeded"


def test_unknown_feature_is_422(client, workspace_id):
    resp = client.get(f"/v1/entitlements/{workspace_id}/check/nope")
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "unknown_feature"


def test_unknown_package_is_422(client, admin_headers, workspace_id):
    resp = client.post(f"/v1/entitlements/{workspace_id}/packages", json={"package_code": "platinum"}, headers=admin_headers)
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "unknown_package"


def test_invalid_quantity_is_400(client, admin_headers, workspace_id):
    resp = client.post(
        f"/v1/entitlements/{workspace_id}/usage",
        json={"feature_code": "api.requests", "quantity": 0},
        headers=admin_headers,
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_storage_outage_is_retryable_503(client, workspace_id):
    with patch(
        "entitlement_engine.api.entitlements.check_entitlement",
        side_effect=TransientStorageError("Storage unavailable during usage.read; retry later"),
    ):
        resp = client.get(f"/v1/entitlements/{workspace_id}/check/api.requests")

    assert resp.status_code == 503
    assert resp.headers["retry-after"] == "1"
    body = resp.json()
    assert body["error"]["code"] == "storage_unavailable"
    assert body["error"]["retryable"] is True


def test_boost_lifecycle(client, admin_headers, workspace_id):
    resp = client.post(
        f"/v1/entitlements/{workspace_id}/boosts",
        json={"feature_code": "mcp.portal", "boost_type": "enable", "duration_type": "permanent"},
        headers=admin_headers,
    )
    assert resp.status_code == 201
    boost_id = resp.json()["id"]

    assert client.get(f"/v1/entitlements/{workspace_id}/check/mcp.portal").json()["allowed"] is True
    assert [b["id"] for b in client.get(f"/v1/entitlements/{workspace_id}/boosts").json()["boosts"]] == [boost_id]

    resp = client.delete(f"/v1/entitlements/boosts/{boost_id}", headers=admin_headers)
    assert resp.json()["status"] == "cancelled"
    assert client.get(f"/v1/entitlements/{workspace_id}/check/mcp.portal").json()["allowed"] is False

    resp = client.delete("/v1/entitlements/boosts/missing", headers=admin_headers)
    assert resp.status_code == 404


def test_invalid_boost_is_400(client, admin_headers, workspace_id):
    resp = client.post(
        f"/v1/entitlements/{workspace_id}/boosts",
        json={"feature_code": "ai.credits", "boost_type": "add_limit", "duration_type": "permanent"},
        headers=admin_headers,
    )
    assert resp.status_code == 400


def test_revoke_summary_and_history(client, admin_headers, workspace_id):
    client.post(f"/v1/entitlements/{workspace_id}/packages", json={"package_code": "apollo"}, headers=admin_headers)

    summary = client.get(f"/v1/entitlements/{workspace_id}/summary").json()
    assert summary["features"]["social.accounts"]["limit"] == 25

    resp = client.delete(f"/v1/entitlements/{workspace_id}/packages/apollo", headers=admin_headers)
    assert resp.json()["revoked"] is True
    resp = client.delete(f"/v1/entitlements/{workspace_id}/packages/apollo", headers=admin_headers)
    assert resp.json() == {"revoked": False, "package": None}

    assert client.get(f"/v1/entitlements/{workspace_id}/packages").json() == {"packages": []}
    entries = client.get(f"/v1/entitlements/{workspace_id}/history").json()["entries"]
    assert [e["action"] for e in entries] == ["package.revoked", "package.provisioned"]


def test_suspend_and_reactivate_endpoints(client, admin_headers, workspace_id):
    client.post(f"/v1/entitlements/{workspace_id}/packages", json={"package_code": "apollo"}, headers=admin_headers)

    assert client.post(f"/v1/entitlements/{workspace_id}/suspend", headers=admin_headers).json() == {"suspended": ["apollo"]}
    assert client.get(f"/v1/entitlements/{workspace_id}/check/analytics.enabled").json()["reason"] == "no_package"
    assert client.post(f"/v1/entitlements/{workspace_id}/reactivate", headers=admin_headers).json() == {"reactivated": ["apollo"]}


def test_catalog_read_outage_is_retryable_503(client, workspace_id, no_retry_wait):
    locked = OperationalError("SELECT features", {}, Exception("database is locked"))
    with patch("entitlement_engine.features.catalog.service.get_db_session", side_effect=locked):
        resp = client.get(f"/v1/entitlements/{workspace_id}/check/api.requests")

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "storage_unavailable"
