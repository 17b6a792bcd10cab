from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.crm.models import CRMContact, CRMExternalBusiness
from app.crm.repositories import (
    EMAIL_AND_OWNER_LOOKUP,
    EXTERNAL_ID_LOOKUP,
    ContactRepository,
    ExternalBusinessRepository,
)
from app.crm.schemas import ParsedContact


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


@pytest.fixture()
def repository() -> ContactRepository:
    return ContactRepository()


def _count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(CRMContact)) or 0


def test_upsert_by_external_id_updates_in_place(db_session: Session, repository: ContactRepository) -> None:
    first = repository.upsert_by_external_id(
        db_session,
        "user-1",
        {"external_id": "biz-1", "name": "Acme", "type": "company", "status": "lead"},
    )
    db_session.commit()

    second = repository.upsert_by_external_id(
        db_session,
        "user-1",
        {"external_id": "biz-1", "name": "Acme Inc", "type": "company", "status": "customer"},
    )
    db_session.commit()

    assert second.id == first.id
    assert second.name == "Acme Inc"
    assert second.status == "customer"
    assert _count(db_session) == 1


def test_external_id_is_scoped_by_owner(db_session: Session, repository: ContactRepository) -> None:
    mine = repository.upsert_by_external_id(db_session, "user-1", {"external_id": "biz-1", "name": "Acme"})
    theirs = repository.upsert_by_external_id(db_session, "user-2", {"external_id": "biz-1", "name": "Acme"})
    db_session.commit()

    assert mine.id != theirs.id
    assert _count(db_session) == 2


def test_upsert_by_email_and_owner_matches_only_same_owner(db_session: Session, repository: ContactRepository) -> None:
    original = repository.upsert_by_email_and_owner(
        db_session,
        "user-1",
        {"name": "Ann", "email": "ann@example.com"},
    )
    merged = repository.upsert_by_email_and_owner(
        db_session,
        "user-1",
        {"name": "Ann Lee", "email": "ann@example.com", "phone": "555"},
    )
    other_owner = repository.upsert_by_email_and_owner(
        db_session,
        "user-2",
        {"name": "Ann", "email": "ann@example.com"},
    )
    db_session.commit()

    assert merged.id == original.id
    assert merged.name == "Ann Lee"
    assert merged.phone == "555"
    assert other_owner.id != original.id


def test_ordered_lookup_falls_back_to_email_only_without_external_id(
    db_session: Session,
    repository: ContactRepository,
) -> None:
    manual = repository.upsert(db_session, "user-1", {"name": "Ann", "email": "ann@example.com"})

    by_email = repository.upsert(db_session, "user-1", {"external_id": None, "name": "Ann", "email": "ann@example.com"})
    keyed = repository.upsert(db_session, "user-1", {"external_id": "u-1", "name": "Ann", "email": "ann@example.com"})
    db_session.commit()

    assert by_email.id == manual.id
    assert keyed.id != manual.id
    assert keyed.external_id == "u-1"


def test_lookup_strategies_only_apply_to_matching_payloads() -> None:
    assert EXTERNAL_ID_LOOKUP.applies({"external_id": "x", "email": "a@b.co"})
    assert not EXTERNAL_ID_LOOKUP.applies({"external_id": None, "email": "a@b.co"})
    assert EMAIL_AND_OWNER_LOOKUP.applies({"external_id": None, "email": "a@b.co"})
    assert not EMAIL_AND_OWNER_LOOKUP.applies({"external_id": "x", "email": "a@b.co"})
    assert not EMAIL_AND_OWNER_LOOKUP.applies({"email": None})


def test_repository_accepts_custom_lookup_order(db_session: Session) -> None:
    repository = ContactRepository(lookups=[EMAIL_AND_OWNER_LOOKUP])
    first = repository.upsert(db_session, "user-1", {"name": "Ann", "email": "ann@example.com"})
    second = repository.upsert(db_session, "user-1", {"external_id": "u-1", "name": "Ann", "email": "ann@example.com"})

    assert first.id != second.id


def test_unchanged_upsert_leaves_updated_at_alone(db_session: Session, repository: ContactRepository) -> None:
    payload = {"external_id": "biz-1", "name": "Acme", "type": "company", "status": "lead", "external_data": {"id": "biz-1"}}
    contact = repository.upsert_by_external_id(db_session, "user-1", payload)
    db_session.commit()
    stamped = datetime(2020, 1, 1, tzinfo=timezone.utc)
    contact.updated_at = stamped
    db_session.commit()

    repository.upsert_by_external_id(db_session, "user-1", dict(payload))
    db_session.commit()
    db_session.refresh(contact)

    assert contact.updated_at.replace(tzinfo=timezone.utc) == stamped


def test_upsert_keeps_existing_parent_when_payload_has_none(db_session: Session, repository: ContactRepository) -> None:
    company = repository.upsert_by_external_id(db_session, "user-1", {"external_id": "biz-1", "name": "Acme", "type": "company"})
    staff = repository.upsert_by_external_id(
        db_session,
        "user-1",
        {"external_id": "u-1", "name": "Ann", "parent_id": company.id},
    )

    repository.upsert_by_external_id(db_session, "user-1", {"external_id": "u-1", "name": "Ann", "parent_id": None})
    db_session.commit()

    assert staff.parent_id == company.id


def test_company_payload_clears_parent(db_session: Session, repository: ContactRepository) -> None:
    company = repository.upsert_by_external_id(db_session, "user-1", {"external_id": "biz-1", "name": "Acme", "type": "company"})
    staff = repository.upsert_by_external_id(
        db_session,
        "user-1",
        {"external_id": "7", "name": "Ann", "parent_id": company.id},
    )

    repository.upsert_by_external_id(db_session, "user-1", {"external_id": "7", "name": "Beta", "type": "company"})
    db_session.commit()

    assert staff.type == "company"
    assert staff.parent_id is None


def test_find_existing_follows_lookup_order(db_session: Session, repository: ContactRepository) -> None:
    by_email = repository.upsert(db_session, "user-1", {"name": "Sam", "email": "sam@acme.test"})
    keyed = repository.upsert(db_session, "user-1", {"external_id": "u-9", "name": "Kay", "email": "kay@acme.test"})

    assert repository.find_existing(db_session, "user-1", {"email": "sam@acme.test"}) is by_email
    assert repository.find_existing(db_session, "user-1", {"external_id": "u-9", "email": "sam@acme.test"}) is keyed
    assert repository.find_existing(db_session, "user-1", {"external_id": "u-0", "email": "sam@acme.test"}) is None
    assert repository.find_existing(db_session, "user-2", {"email": "sam@acme.test"}) is None


def test_insert_batch_never_merges(db_session: Session, repository: ContactRepository) -> None:
    rows = [ParsedContact(name="Ann", email="ann@example.com"), ParsedContact(name="Ben")]

    assert repository.insert_batch(db_session, "user-1", rows) == 2
    assert repository.insert_batch(db_session, "user-1", rows) == 2
    assert repository.insert_batch(db_session, "user-1", []) == 0
    db_session.commit()

    contacts = db_session.scalars(select(CRMContact)).all()
    assert len(contacts) == 4
    assert {contact.user_id for contact in contacts} == {"user-1"}
    assert {contact.type for contact in contacts} == {"individual"}


def test_find_children_and_list_are_owner_scoped(db_session: Session, repository: ContactRepository) -> None:
    company = repository.upsert_by_external_id(db_session, "user-1", {"external_id": "biz-1", "name": "Acme", "type": "company"})
    repository.upsert_by_external_id(db_session, "user-1", {"external_id": "u-2", "name": "Zed", "parent_id": company.id})
    repository.upsert_by_external_id(db_session, "user-1", {"external_id": "u-1", "name": "Ann", "parent_id": company.id})
    repository.upsert_by_external_id(db_session, "user-2", {"external_id": "u-9", "name": "Intruder", "parent_id": company.id})
    db_session.commit()

    children = repository.find_children_by_parent(db_session, "user-1", company.id)
    assert [child.name for child in children] == ["Ann", "Zed"]

    listed = repository.list_for_user(db_session, "user-1", filters={"type": "company"})
    assert [contact.name for contact in listed] == ["Acme"]
    assert repository.list_for_user(db_session, "user-1", filters={"q": "ZE"})[0].name == "Zed"
    assert repository.get(db_session, "user-2", company.id) is None


def test_delete_detaches_children_and_snapshot(db_session: Session, repository: ContactRepository) -> None:
    company = repository.upsert_by_external_id(db_session, "user-1", {"external_id": "biz-1", "name": "Acme", "type": "company"})
    staff = repository.upsert_by_external_id(db_session, "user-1", {"external_id": "u-1", "name": "Ann", "parent_id": company.id})
    snapshot = ExternalBusinessRepository().upsert_by_business_id(
        db_session,
        "user-1",
        {"business_id": "biz-1", "contact_id": company.id, "name": "Acme"},
    )
    db_session.commit()

    repository.delete(db_session, "user-1", company)
    db_session.commit()
    db_session.expire_all()

    assert db_session.get(CRMContact, company.id) is None
    assert db_session.get(CRMContact, staff.id).parent_id is None
    assert db_session.get(CRMExternalBusiness, snapshot.id).contact_id is None


def test_snapshot_upsert_is_keyed_by_business_id(db_session: Session) -> None:
    repository = ExternalBusinessRepository()
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    first = repository.upsert_by_business_id(
        db_session,
        "user-1",
        {"business_id": "biz-1", "name": "Acme", "status": "active", "created_at": created, "updated_at": created},
    )
    later = created + timedelta(days=3)
    second = repository.upsert_by_business_id(
        db_session,
        "user-1",
        {"business_id": "biz-1", "name": "Acme", "status": "inactive", "created_at": created, "updated_at": later},
    )
    db_session.commit()

    assert second.id == first.id
    assert second.status == "inactive"
    assert second.updated_at.replace(tzinfo=timezone.utc) == later
    assert db_session.scalar(select(func.count()).select_from(CRMExternalBusiness)) == 1
