import asyncio

import pytest
from fastapi.testclient import TestClient

import docstore.db as db
import presencebook.config as config
import presencebook.main as main
from presencebook.services.session import Role, RoleSource, SessionPrincipal


@pytest.fixture()
def db_path(tmp_path, monkeypatch):
    test_db = tmp_path / "presencebook_test.db"

    # Point DB and media to temp locations for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    monkeypatch.setattr(config, "MEDIA_DIR", tmp_path / "media")

    db.create_tables()
    return test_db


@pytest.fixture()
def store(db_path):
    return db.DocumentStore(db_path)


@pytest.fixture()
def client(db_path):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def admin():
    return SessionPrincipal(id="admin-1", email="admin@example.com", role=Role.ADMIN, source=RoleSource.PROFILE_LOOKUP)


@pytest.fixture()
def employee():
    return SessionPrincipal(
        id="employee-1",
        email="ansatt@example.com",
        role=Role.EMPLOYEE,
        source=RoleSource.PROFILE_LOOKUP,
        department="Blue",
    )


@pytest.fixture()
def parent():
    return SessionPrincipal(id="parent-1", email="parent@example.com", role=Role.PARENT, source=RoleSource.PROFILE_LOOKUP)


@pytest.fixture()
def make_child(store):
    def _make(*, name="Ola", department="Blue", guardian_ids=None, status="not_checked_in") -> str:
        return asyncio.run(
            store.add(
                "children",
                {
                    "name": name,
                    "department": department,
                    "status": status,
                    "absenceReason": None,
                    "guardianIds": guardian_ids or ["parent-1"],
                    "allergies": "",
                    "notes": "",
                    "imageRef": None,
                },
            )
        )

    return _make


@pytest.fixture()
def transition_log(store):
    def _entries(child_id: str) -> list[dict]:
        return asyncio.run(store.query("checkInOutLogs", [("childId", "==", child_id)]))

    return _entries


@pytest.fixture()
def login(client):
    def _login(email: str, password: str) -> dict:
        res = client.post("/auth/login", json={"email": email, "password": password})
        assert res.status_code == 200, res.text
        return {"Authorization": f"Bearer {res.json()['access_token']}"}

    return _login


@pytest.fixture()
def admin_headers(login):
    return login(config.ADMIN_EMAIL, config.ADMIN_PASSWORD)
