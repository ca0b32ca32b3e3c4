import cv2
import numpy as np
import pytest
from starlette.websockets import WebSocketDisconnect

from fastapi.testclient import TestClient

import presencebook.config as config
import presencebook.main as main
import presencebook.routers.core as core
from docstore.db import StoreError


def _create_account(client, admin_headers, *, email, role, department=None, password="secret1"):
    res = client.post(
        "/admin/accounts",
        json={"email": email, "password": password, "role": role, "department": department},
        headers=admin_headers,
    )
    assert res.status_code == 200, res.text
    return res.json()["uid"]


def _create_child(client, admin_headers, *, name="Ola", department="Blue", guardian_ids=None):
    res = client.post(
        "/children",
        json={"name": name, "department": department, "guardian_ids": guardian_ids or []},
        headers=admin_headers,
    )
    assert res.status_code == 200, res.text
    return res.json()


@pytest.fixture()
def employee_headers(client, admin_headers, login):
    _create_account(client, admin_headers, email="kari@example.com", role="employee", department="Blue")
    return login("kari@example.com", "secret1")


@pytest.fixture()
def parent_account(client, admin_headers, login):
    uid = _create_account(client, admin_headers, email="mor@example.com", role="parent")
    return uid, login("mor@example.com", "secret1")


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_database_path_is_not_exposed(client, admin_headers):
    res = client.get("/debug/dbpath", headers=admin_headers)
    assert res.status_code == 404
    assert not hasattr(config, "ENABLE_DEBUG_ENDPOINTS")


def test_login_returns_profile_role(client):
    res = client.post("/auth/login", json={"email": config.ADMIN_EMAIL, "password": config.ADMIN_PASSWORD})
    assert res.status_code == 200
    body = res.json()
    assert body["token_type"] == "bearer"
    assert body["role"] == "admin"
    assert body["role_source"] == "profile-lookup"
    assert body["expires_in"] > 0


def test_login_rejects_invalid_credentials(client):
    res = client.post("/auth/login", json={"email": config.ADMIN_EMAIL, "password": "wrong-password"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid credentials."

    res = client.post("/auth/login", json={"email": "  ", "password": "x"})
    assert res.status_code == 400


def test_login_survives_blocked_role_lookup(client, monkeypatch):
    async def blocked_get(collection, doc_id):
        raise StoreError("net::ERR_BLOCKED_BY_CLIENT", code="unavailable")

    monkeypatch.setattr(client.app.state.store, "get", blocked_get)

    res = client.post("/auth/login", json={"email": config.ADMIN_EMAIL, "password": config.ADMIN_PASSWORD})
    assert res.status_code == 200
    body = res.json()
    assert body["role"] == "admin"
    assert body["role_source"] == "email-heuristic"


def test_me_and_session_required(client, admin_headers):
    res = client.get("/children")
    assert res.status_code == 401
    assert res.json()["detail"] == "Missing bearer token."

    res = client.get("/children", headers={"Authorization": "Token abc"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid authorization scheme."

    res = client.get("/children", headers={"Authorization": "Bearer abc.def"})
    assert res.status_code == 401

    res = client.get("/auth/me", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["role"] == "admin"


def test_child_crud(client, admin_headers):
    child = _create_child(client, admin_headers, guardian_ids=["p2", "p1", "p1"])
    assert child["status"] == "not_checked_in"
    assert child["guardian_ids"] == ["p1", "p2"]

    res = client.patch(f"/children/{child['id']}", json={"allergies": "nuts"}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["allergies"] == "nuts"

    res = client.get(f"/children/{child['id']}", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["name"] == "Ola"

    res = client.delete(f"/children/{child['id']}", headers=admin_headers)
    assert res.status_code == 200

    res = client.get(f"/children/{child['id']}", headers=admin_headers)
    assert res.status_code == 404


def test_employee_sees_own_department(client, admin_headers, employee_headers):
    blue = _create_child(client, admin_headers, name="Blue kid", department="Blue")
    red = _create_child(client, admin_headers, name="Red kid", department="Red")

    res = client.get("/children", headers=employee_headers)
    assert res.status_code == 200
    assert [c["id"] for c in res.json()] == [blue["id"]]

    res = client.get(f"/children/{red['id']}", headers=employee_headers)
    assert res.status_code == 403

    res = client.post("/children", json={"name": "x", "department": "Blue"}, headers=employee_headers)
    assert res.status_code == 403


def test_transition_api(client, admin_headers, employee_headers):
    child = _create_child(client, admin_headers)
    url = f"/children/{child['id']}/transitions"

    res = client.post(url, json={"action": "check_in"}, headers=employee_headers)
    assert res.status_code == 200
    assert res.json()["status"] == "checked_in"

    res = client.post(url, json={"action": "check_in"}, headers=employee_headers)
    assert res.status_code == 409
    body = res.json()
    assert body["current_status"] == "checked_in"
    assert body["action"] == "check_in"

    res = client.post(url, json={"action": "teleport"}, headers=employee_headers)
    assert res.status_code == 422

    res = client.get(url, headers=employee_headers)
    assert res.status_code == 200
    assert [r["action"] for r in res.json()] == ["check_in"]

    res = client.get(f"/children/{child['id']}", headers=employee_headers)
    assert res.json()["status"] == "checked_in"
    assert res.json()["last_check_in"]


def test_parent_flow(client, admin_headers, parent_account):
    parent_id, parent_headers = parent_account
    own = _create_child(client, admin_headers, guardian_ids=[parent_id])
    other = _create_child(client, admin_headers, name="Other")

    res = client.get("/children", headers=parent_headers)
    assert [c["id"] for c in res.json()] == [own["id"]]

    res = client.post(
        f"/children/{own['id']}/transitions",
        json={"action": "absence_reported", "absence_reason": "Fever"},
        headers=parent_headers,
    )
    assert res.status_code == 200
    assert res.json()["status"] == "sick"

    res = client.post(f"/children/{own['id']}/transitions", json={"action": "check_in"}, headers=parent_headers)
    assert res.status_code == 403

    res = client.post(
        f"/children/{other['id']}/transitions",
        json={"action": "absence_reported"},
        headers=parent_headers,
    )
    assert res.status_code == 403

    res = client.get(f"/children/{own['id']}", headers=parent_headers)
    assert res.json()["absence_reason"] == "Fever"

    res = client.post(f"/children/{own['id']}/activities", json={"activity_type": "nap"}, headers=parent_headers)
    assert res.status_code == 403


def test_status_update_failure_returns_503_with_log_entry(client, admin_headers, employee_headers, monkeypatch):
    child = _create_child(client, admin_headers)

    async def broken_update(collection, doc_id, fields):
        raise StoreError("unavailable", code="unavailable")

    store = client.app.state.store
    real_update = store.update
    monkeypatch.setattr(store, "update", broken_update)

    res = client.post(f"/children/{child['id']}/transitions", json={"action": "check_in"}, headers=employee_headers)
    assert res.status_code == 503
    body = res.json()
    assert body["retryable"] is True
    assert body["site"] == "presence.update_status"
    assert body["log_entry_id"]

    monkeypatch.setattr(store, "update", real_update)
    res = client.get("/admin/presence/drift", headers=admin_headers)
    assert res.status_code == 200
    drift = res.json()
    assert drift["total"] == 1
    assert drift["rows"][0]["child_id"] == child["id"]
    assert drift["rows"][0]["replayed_status"] == "checked_in"


def test_admin_routes_are_admin_only(client, employee_headers, admin_headers):
    res = client.get("/admin/presence/drift", headers=employee_headers)
    assert res.status_code == 403

    res = client.post(
        "/admin/accounts",
        json={"email": "kari@example.com", "password": "x", "role": "parent"},
        headers=admin_headers,
    )
    assert res.status_code == 409

    res = client.post(
        "/admin/accounts",
        json={"email": "nodept@example.com", "password": "x", "role": "employee"},
        headers=admin_headers,
    )
    assert res.status_code == 400


def test_activity_duplicate_confirmation(client, admin_headers, employee_headers):
    child = _create_child(client, admin_headers)
    url = f"/children/{child['id']}/activities"
    payload = {"activity_type": "diaper_change", "notes": "wet"}

    for _ in range(3):
        res = client.post(url, json=payload, headers=employee_headers)
        assert res.json()["decision_code"] == "ACTIVITY_LOGGED"

    res = client.post(url, json=payload, headers=employee_headers)
    assert res.status_code == 200
    assert res.json()["decision_code"] == "DUPLICATE_CONFIRMATION_REQUIRED"

    res = client.post(url, json={**payload, "confirm_duplicate": True}, headers=employee_headers)
    assert res.json()["logged"] is True

    res = client.get(f"/children/{child['id']}/timeline", headers=employee_headers)
    assert len(res.json()["entries"]) == 4


def test_delete_activity(client, admin_headers, employee_headers):
    child = _create_child(client, admin_headers)
    res = client.post(f"/children/{child['id']}/activities", json={"activity_type": "meal"}, headers=employee_headers)
    activity_id = res.json()["activity_id"]

    assert client.delete(f"/activities/{activity_id}", headers=employee_headers).status_code == 403
    assert client.delete(f"/activities/{activity_id}", headers=admin_headers).status_code == 200
    assert client.delete(f"/activities/{activity_id}", headers=admin_headers).status_code == 404


def test_timeline_merges_streams(client, admin_headers, employee_headers):
    child = _create_child(client, admin_headers)
    red = _create_child(client, admin_headers, name="Red kid", department="Red")
    client.post(f"/children/{child['id']}/transitions", json={"action": "check_in"}, headers=employee_headers)
    client.post(f"/children/{child['id']}/activities", json={"activity_type": "nap"}, headers=employee_headers)
    client.post(f"/children/{red['id']}/transitions", json={"action": "check_in"}, headers=admin_headers)

    res = client.get(f"/children/{child['id']}/timeline", headers=employee_headers)
    assert res.status_code == 200
    assert [(e["stream"], e["kind"]) for e in res.json()["entries"]] == [("activity", "nap"), ("transition", "check_in")]

    res = client.get("/timeline", headers=employee_headers)
    assert {e["child_id"] for e in res.json()["entries"]} == {child["id"]}

    res = client.get("/timeline", headers=admin_headers)
    assert len(res.json()["entries"]) == 3


def test_logout_succeeds_when_store_is_down(client, admin_headers, monkeypatch):
    async def broken_set(collection, doc_id, data, *, merge=False):
        raise StoreError("offline", code="unavailable")

    monkeypatch.setattr(client.app.state.store, "set", broken_set)

    res = client.post("/auth/logout", headers=admin_headers)
    assert res.status_code == 200
    assert res.json() == {"ok": True, "push_token_cleared": False}


def test_push_token_registration(client, admin_headers):
    res = client.post("/auth/push-token", json={"token": "ExponentPushToken[abc]"}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["registered"] is True

    res = client.post("/auth/logout", headers=admin_headers)
    assert res.json()["push_token_cleared"] is True


def test_image_upload(client, admin_headers, employee_headers):
    child = _create_child(client, admin_headers)
    frame = np.full((1200, 1600, 3), 200, dtype=np.uint8)
    ok, encoded = cv2.imencode(".png", frame)
    assert ok

    files = {"file": ("kid.png", encoded.tobytes(), "image/png")}
    res = client.post(f"/children/{child['id']}/image", files=files, headers=employee_headers)
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["storage"] == "blob"
    assert body["image_ref"].startswith("/media/children/")

    res = client.get(f"/children/{child['id']}", headers=employee_headers)
    assert res.json()["image_ref"] == body["image_ref"]

    files = {"file": ("kid.gif", b"GIF89a", "image/gif")}
    res = client.post(f"/children/{child['id']}/image", files=files, headers=employee_headers)
    assert res.status_code == 400


def test_resilience_config(client):
    res = client.get("/config/resilience")
    assert res.status_code == 200
    body = res.json()
    assert body["inline_image_max_bytes"] == 900000
    assert body["duplicate_guard_window"] == 3
    policies = {row["site"]: row["policy"] for row in body["call_sites"]}
    assert policies["session.role_lookup"] == "auth_gating"
    assert policies["presence.append_log"] == "critical"


def test_websocket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws/timeline?token=bogus"):
            pass
    assert excinfo.value.code == 4401


def test_websocket_facility_feed_is_staff_only(client, parent_account):
    _, parent_headers = parent_account
    token = parent_headers["Authorization"].split(" ", 1)[1]
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(f"/ws/timeline?token={token}"):
            pass
    assert excinfo.value.code == 4403


def test_websocket_streams_timeline_updates(client, admin_headers, employee_headers):
    child = _create_child(client, admin_headers)
    token = employee_headers["Authorization"].split(" ", 1)[1]

    with client.websocket_connect(f"/ws/timeline?token={token}&child_id={child['id']}") as ws:
        first = ws.receive_json()
        assert first == {"child_id": child["id"], "entries": []}

        client.post(f"/children/{child['id']}/transitions", json={"action": "check_in"}, headers=employee_headers)
        update = ws.receive_json()
        assert [e["kind"] for e in update["entries"]] == ["check_in"]

    assert client.app.state.store.listener_count() == 0


def test_guardian_linking_by_email(client, admin_headers, employee_headers, parent_account):
    parent_id, parent_headers = parent_account
    child = _create_child(client, admin_headers)
    url = f"/children/{child['id']}/guardians"

    res = client.post(url, json={"email": "MOR@example.com"}, headers=employee_headers)
    assert res.status_code == 200
    assert res.json()["guardian_ids"] == [parent_id]

    res = client.get("/children", headers=parent_headers)
    assert [c["id"] for c in res.json()] == [child["id"]]

    res = client.post(url, json={"email": "mor@example.com"}, headers=employee_headers)
    assert res.status_code == 409

    res = client.post(url, json={"email": "ukjent@example.com"}, headers=employee_headers)
    assert res.status_code == 404

    res = client.post(url, json={"email": "mor@example.com"}, headers=parent_headers)
    assert res.status_code == 403

    res = client.delete(url, params={"email": "mor@example.com"}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["guardian_ids"] == []

    res = client.delete(url, params={"email": "mor@example.com"}, headers=admin_headers)
    assert res.status_code == 404


def test_validation_errors_map_to_400(client, admin_headers, employee_headers):
    child = _create_child(client, admin_headers)

    res = client.post(f"/children/{child['id']}/activities", json={"activity_type": "  "}, headers=employee_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Activity type is required."

    files = {"file": ("kid.png", b"not a png", "image/png")}
    res = client.post(f"/children/{child['id']}/image", files=files, headers=employee_headers)
    assert res.status_code == 400


def test_internal_value_errors_are_not_client_errors(db_path, monkeypatch):
    def broken_describe():
        raise ValueError("bad timeout setting")

    monkeypatch.setattr(core, "describe_call_sites", broken_describe)

    with TestClient(main.app, raise_server_exceptions=False) as c:
        res = c.get("/config/resilience")
    assert res.status_code == 500
