"""
HTTP-level tests: routing, auth, error envelope and the internal job surface.
Runs the ASGI app in-process against the SQLite test store.
"""

import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from signoff.domain.enums import Role
from signoff.main import app
from signoff.services.auth_service import create_access_token


@pytest.fixture
async def client(seed):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


def _auth(user) -> dict:
    token = create_access_token(
        user_id=str(user.id),
        organisation_id=str(user.organisation_id),
        role=Role(user.role).value,
        branch_id=str(user.branch_id) if user.branch_id else None,
    )
    return {"Authorization": f"Bearer {token}"}


async def _create(client, user, **overrides):
    body = {"title": "Conference travel", "type": "travel_request"}
    body.update(overrides)
    resp = await client.post("/api/v1/approvals", json=body, headers=_auth(user))
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["checks"] == {"db": "ok", "cache": "ok"}


@pytest.mark.asyncio
async def test_invalid_token_is_rejected(client):
    response = await client.get(
        "/api/v1/approvals", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_TOKEN_INVALID"


@pytest.mark.asyncio
async def test_unknown_role_claim_is_rejected(client, seed):
    token = create_access_token(
        user_id=str(seed.users.requester.id),
        organisation_id=str(seed.organisation.id),
        role="superuser",
    )
    response = await client.get(
        "/api/v1/approvals", headers={"Authorization": f"Bearer {token}"}
    )
    assert response.status_code == 401


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_and_read_back(client, seed):
    created = await _create(client, seed.users.requester, metadata={"cost_centre": "CC-12"})

    assert created["status"] == "draft"
    assert created["version"] == 1
    assert created["approval_reference"].startswith("TRA-")
    assert created["metadata"] == {"cost_centre": "CC-12"}

    by_id = await client.get(f"/api/v1/approvals/{created['id']}", headers=_auth(seed.users.requester))
    assert by_id.status_code == 200
    assert by_id.json()["approval_reference"] == created["approval_reference"]

    by_ref = await client.get(
        f"/api/v1/approvals/reference/{created['approval_reference']}",
        headers=_auth(seed.users.requester),
    )
    assert by_ref.status_code == 200
    assert by_ref.json()["id"] == created["id"]


@pytest.mark.asyncio
async def test_invalid_payload_uses_error_envelope(client, seed):
    response = await client.post(
        "/api/v1/approvals",
        json={"title": "x", "type": "not_a_type"},
        headers=_auth(seed.users.requester),
    )
    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"]


@pytest.mark.asyncio
async def test_too_many_documents_rejected(client, seed):
    docs = [f"https://files.example/{i}.pdf" for i in range(11)]
    response = await client.post(
        "/api/v1/approvals",
        json={"title": "x", "type": "general", "supporting_documents": docs},
        headers=_auth(seed.users.requester),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_workflow_over_http(client, seed):
    created = await _create(client, seed.users.requester, auto_submit=True)
    approval_id = created["id"]
    assert created["status"] == "pending"

    # HR request: the owner heads the route
    assert created["approver_id"] == str(seed.users.owner.id)

    pending = await client.get("/api/v1/approvals/pending", headers=_auth(seed.users.owner))
    assert pending.json()["count"] == 1

    approve = await client.post(
        f"/api/v1/approvals/{approval_id}/action",
        json={"action": "approve", "comments": "Enjoy"},
        headers=_auth(seed.users.owner),
    )
    assert approve.status_code == 200, approve.text
    assert approve.json()["status"] == "approved"
    assert approve.json()["version"] == 2

    history = await client.get(
        f"/api/v1/approvals/{approval_id}/history", headers=_auth(seed.users.requester)
    )
    assert [h["action"] for h in history.json()] == ["submit", "approve"]

    pending = await client.get("/api/v1/approvals/pending", headers=_auth(seed.users.owner))
    assert pending.json()["count"] == 0


@pytest.mark.asyncio
async def test_submit_and_withdraw_accept_empty_body(client, seed):
    created = await _create(client, seed.users.requester)

    submit = await client.post(
        f"/api/v1/approvals/{created['id']}/submit", headers=_auth(seed.users.requester)
    )
    assert submit.status_code == 200
    assert submit.json()["status"] == "pending"

    withdraw = await client.post(
        f"/api/v1/approvals/{created['id']}/withdraw",
        json={"comments": "No longer needed"},
        headers=_auth(seed.users.requester),
    )
    assert withdraw.json()["status"] == "withdrawn"


@pytest.mark.asyncio
async def test_illegal_transition_is_409(client, seed):
    created = await _create(client, seed.users.requester)

    response = await client.post(
        f"/api/v1/approvals/{created['id']}/action",
        json={"action": "approve"},
        headers=_auth(seed.users.owner),
    )
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "ILLEGAL_TRANSITION"


@pytest.mark.asyncio
async def test_out_of_scope_reads_are_404(client, seed):
    created = await _create(client, seed.users.requester)

    for user in (seed.users.south_manager, seed.users.outsider):
        response = await client.get(f"/api/v1/approvals/{created['id']}", headers=_auth(user))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_list_is_paginated(client, seed):
    for i in range(3):
        await _create(client, seed.users.requester, title=f"Trip {i}")

    response = await client.get(
        "/api/v1/approvals?limit=2&sort_by=title&sort_order=asc",
        headers=_auth(seed.users.requester),
    )
    body = response.json()
    assert [a["title"] for a in body["data"]] == ["Trip 0", "Trip 1"]
    assert body["pagination"]["total"] == 3
    assert body["pagination"]["has_next"] is True

    bad = await client.get("/api/v1/approvals?status=nope", headers=_auth(seed.users.requester))
    assert bad.status_code == 422


@pytest.mark.asyncio
async def test_edit_draft_and_version_conflict(client, seed):
    created = await _create(client, seed.users.requester)
    url = f"/api/v1/approvals/{created['id']}"

    ok = await client.patch(
        url, json={"title": "Rebooked", "expected_version": 1}, headers=_auth(seed.users.requester)
    )
    assert ok.status_code == 200
    assert ok.json()["version"] == 2

    stale = await client.patch(
        url, json={"title": "Again", "expected_version": 1}, headers=_auth(seed.users.requester)
    )
    assert stale.status_code == 409
    assert stale.json()["error"]["code"] == "VERSION_CONFLICT"


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["title", "priority", "is_urgent", "requires_signature"])
async def test_edit_cannot_null_required_columns(client, seed, field):
    created = await _create(client, seed.users.requester)
    url = f"/api/v1/approvals/{created['id']}"

    response = await client.patch(url, json={field: None}, headers=_auth(seed.users.requester))
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    unchanged = await client.get(url, headers=_auth(seed.users.requester))
    assert unchanged.json()["version"] == 1
    assert unchanged.json()["title"] == "Conference travel"


@pytest.mark.asyncio
async def test_sign_endpoint(client, seed):
    created = await _create(client, seed.users.requester, auto_submit=True, requires_signature=True)
    url = f"/api/v1/approvals/{created['id']}"
    await client.post(f"{url}/action", json={"action": "approve"}, headers=_auth(seed.users.owner))

    response = await client.post(
        f"{url}/sign",
        json={"signature_type": "electronic", "signature_url": "https://files.example/sig.png"},
        headers={**_auth(seed.users.requester), "User-Agent": "signoff-tests"},
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["approval"]["status"] == "signed"
    assert body["signature"]["signer_id"] == str(seed.users.requester.id)

    signatures = await client.get(f"{url}/signatures", headers=_auth(seed.users.owner))
    assert len(signatures.json()) == 1


@pytest.mark.asyncio
async def test_bulk_endpoint(client, seed):
    a = await _create(client, seed.users.requester, auto_submit=True)
    b = await _create(client, seed.users.requester)

    response = await client.post(
        "/api/v1/approvals/bulk-action",
        json={"approval_ids": [a["id"], b["id"]], "action": "reject", "reason": "Freeze"},
        headers=_auth(seed.users.owner),
    )
    body = response.json()
    assert (body["processed"], body["successful"], body["failed"]) == (2, 1, 1)
    assert body["results"][1]["code"] == "ILLEGAL_TRANSITION"


@pytest.mark.asyncio
async def test_delete_and_archive(client, seed):
    draft = await _create(client, seed.users.requester)
    deleted = await client.delete(
        f"/api/v1/approvals/{draft['id']}", headers=_auth(seed.users.requester)
    )
    assert deleted.json()["lifecycle"] == "deleted"
    gone = await client.get(f"/api/v1/approvals/{draft['id']}", headers=_auth(seed.users.requester))
    assert gone.status_code == 404

    done = await _create(client, seed.users.requester, auto_submit=True)
    await client.post(
        f"/api/v1/approvals/{done['id']}/action",
        json={"action": "reject"},
        headers=_auth(seed.users.owner),
    )
    archived = await client.post(
        f"/api/v1/approvals/{done['id']}/archive", headers=_auth(seed.users.requester)
    )
    assert archived.status_code == 200
    assert archived.json()["lifecycle"] == "archived"


@pytest.mark.asyncio
async def test_stats(client, seed):
    await _create(client, seed.users.requester, auto_submit=True)
    await _create(client, seed.users.requester, type="invoice", amount="120.00")

    response = await client.get("/api/v1/approvals/stats", headers=_auth(seed.users.requester))
    body = response.json()
    assert body["summary"]["total"] == 2
    assert body["summary"]["pending"] == 1
    assert body["by_type"] == {"travel_request": 1, "invoice": 1}
    assert body["can_approve"] is False


# ---------------------------------------------------------------------------
# Internal jobs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_refresh_overdue_requires_internal_secret(client):
    denied = await client.post("/internal/jobs/refresh-overdue")
    assert denied.status_code == 403

    allowed = await client.post(
        "/internal/jobs/refresh-overdue", headers={"X-Internal-Secret": "test-internal-secret"}
    )
    assert allowed.status_code == 200
    assert allowed.json() == {"job": "refresh-overdue", "flagged": 0}


# ---------------------------------------------------------------------------
# WebSocket feed
# ---------------------------------------------------------------------------


def _ws_token() -> str:
    return create_access_token(
        user_id=str(uuid.uuid4()), organisation_id=str(uuid.uuid4()), role="user"
    )


def test_websocket_answers_ping():
    client = TestClient(app)
    with client.websocket_connect(f"/ws/approvals?token={_ws_token()}") as ws:
        ws.send_text("ping")
        assert ws.receive_text() == "pong"


def test_websocket_rejects_bad_token():
    client = TestClient(app)
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/approvals?token=garbage") as ws:
            ws.receive_text()
