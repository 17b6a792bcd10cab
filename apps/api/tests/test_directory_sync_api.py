from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user, get_directory_client
from app.crm.models import CRMContact
from app.crm.service import ActorUser
from app.directory.client import DirectoryFetchError
from app.main import app


class StubDirectoryClient:
    def __init__(self) -> None:
        self.businesses: list[dict[str, Any]] = []
        self.error: DirectoryFetchError | None = None
        self.calls = 0

    def list_businesses(self) -> list[dict[str, Any]]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.businesses


BUSINESSES = [
    {
        "id": "biz-1",
        "name": "Acme",
        "status": "active",
        "contact": {"phone": "555-0100", "address": "1 Main St"},
        "users": [
            {"id": "u-1", "name": "Ann", "email": "ann@acme.test", "role": "admin"},
            {"id": "u-2", "name": "Ghost", "email": "N/A"},
        ],
    },
    {"id": "biz-2", "name": "Globex", "status": "trial", "users": []},
]


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    get_settings.cache_clear()


@pytest.fixture()
def directory() -> StubDirectoryClient:
    return StubDirectoryClient()


@pytest.fixture()
def client(db_session: Session, directory: StubDirectoryClient) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions={"crm.contacts.read", "crm.directory.sync"},
            correlation_id="corr-sync",
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_directory_client] = lambda: directory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(CRMContact)) or 0


def test_sync_reports_business_count(client: TestClient, directory: StubDirectoryClient, db_session: Session) -> None:
    directory.businesses = BUSINESSES

    response = client.post("/api/crm/contacts/sync-external")

    assert response.status_code == 200
    assert response.json() == {"success": True, "count": 2}
    assert _count(db_session) == 3
    assert any(entry["action"] == "sync" for entry in audit.audit_entries)


def test_sync_twice_is_idempotent(client: TestClient, directory: StubDirectoryClient, db_session: Session) -> None:
    directory.businesses = BUSINESSES

    client.post("/api/crm/contacts/sync-external")
    client.post("/api/crm/contacts/sync-external")

    assert _count(db_session) == 3
    statuses = dict(db_session.execute(select(CRMContact.external_id, CRMContact.status)).all())
    assert statuses == {"biz-1": "customer", "u-1": "customer", "biz-2": "lead"}


def test_synced_company_exposes_staff_and_snapshot(client: TestClient, directory: StubDirectoryClient) -> None:
    directory.businesses = BUSINESSES
    client.post("/api/crm/contacts/sync-external")

    companies = client.get("/api/crm/contacts", params={"type": "company", "q": "acme"}).json()
    assert len(companies) == 1
    company_id = companies[0]["id"]

    related = client.get(f"/api/crm/contacts/{company_id}/related")
    snapshot = client.get(f"/api/crm/contacts/{company_id}/external-business")

    assert [item["email"] for item in related.json()] == ["ann@acme.test"]
    assert snapshot.status_code == 200
    assert snapshot.json()["business_id"] == "biz-1"
    assert snapshot.json()["owner_info"]["name"] == "Ann"


def test_fetch_failure_maps_to_bad_gateway(client: TestClient, directory: StubDirectoryClient, db_session: Session) -> None:
    directory.error = DirectoryFetchError("Invalid API key", status_code=401)

    response = client.post("/api/crm/contacts/sync-external", headers={"X-Correlation-Id": "sync-fail-1"})

    assert response.status_code == 502
    body = response.json()
    assert body["code"] == "crm_directory_sync_failed"
    assert body["message"] == "Invalid API key"
    assert body["details"] == {"upstream_status": 401}
    assert body["correlation_id"] == "sync-fail-1"
    assert _count(db_session) == 0


def test_sync_requires_permission(client: TestClient, directory: StubDirectoryClient) -> None:
    app.dependency_overrides[get_current_user] = lambda: ActorUser(user_id="user-1", permissions={"crm.contacts.read"})

    response = client.post("/api/crm/contacts/sync-external")

    assert response.status_code == 403
    assert directory.calls == 0


def test_list_does_not_sync_by_default(client: TestClient, directory: StubDirectoryClient) -> None:
    directory.businesses = BUSINESSES

    response = client.get("/api/crm/contacts")

    assert response.status_code == 200
    assert response.json() == []
    assert directory.calls == 0


def test_list_auto_sync_when_enabled(
    client: TestClient,
    directory: StubDirectoryClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("DIRECTORY_AUTO_SYNC_ON_LIST", "true")
    get_settings.cache_clear()
    directory.businesses = BUSINESSES

    response = client.get("/api/crm/contacts")

    assert response.status_code == 200
    assert len(response.json()) == 3
    assert directory.calls == 1


def test_list_auto_sync_failure_is_only_logged(
    client: TestClient,
    directory: StubDirectoryClient,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    monkeypatch.setenv("DIRECTORY_AUTO_SYNC_ON_LIST", "true")
    get_settings.cache_clear()
    directory.error = DirectoryFetchError("Failed to fetch directory businesses")

    response = client.get("/api/crm/contacts")

    assert response.status_code == 200
    assert response.json() == []
    assert any(record.getMessage() == "directory.auto_sync_failed" for record in caplog.records)
