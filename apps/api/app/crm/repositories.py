from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Select, and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from app.crm.models import CRMContact, CRMExternalBusiness, utcnow
from app.crm.schemas import ParsedContact


# Columns a keyed upsert may overwrite on an existing contact.
MERGE_FIELDS = (
    "name",
    "email",
    "phone",
    "company",
    "location",
    "category",
    "type",
    "status",
    "external_data",
    "contact_person",
)

ContactLookup = Callable[[Session, str, dict[str, Any]], "CRMContact | None"]


@dataclass(frozen=True)
class LookupStrategy:
    name: str
    applies: Callable[[dict[str, Any]], bool]
    find: ContactLookup


def _find_by_external_id(session: Session, user_id: str, payload: dict[str, Any]) -> CRMContact | None:
    return session.scalar(
        select(CRMContact)
        .where(and_(CRMContact.user_id == user_id, CRMContact.external_id == payload["external_id"]))
        .limit(1)
    )


def _find_by_email(session: Session, user_id: str, payload: dict[str, Any]) -> CRMContact | None:
    return session.scalar(
        select(CRMContact)
        .where(
            and_(
                CRMContact.user_id == user_id,
                CRMContact.email == payload["email"],
                CRMContact.external_id.is_(None),
            )
        )
        .order_by(CRMContact.id.asc())
        .limit(1)
    )


EXTERNAL_ID_LOOKUP = LookupStrategy(
    name="external_id",
    applies=lambda payload: bool(payload.get("external_id")),
    find=_find_by_external_id,
)
EMAIL_AND_OWNER_LOOKUP = LookupStrategy(
    name="email_and_owner",
    applies=lambda payload: not payload.get("external_id") and bool(payload.get("email")),
    find=_find_by_email,
)
DEFAULT_LOOKUPS: tuple[LookupStrategy, ...] = (EXTERNAL_ID_LOOKUP, EMAIL_AND_OWNER_LOOKUP)


class ContactRepository:
    """Owner-scoped persistence for contacts.

    Keyed writes resolve the target row through an ordered list of lookup
    strategies; the first strategy that applies to the payload and finds a row
    wins, and a payload no strategy matches is inserted. File import bypasses
    the lookups entirely through :meth:`insert_batch`.
    """

    def __init__(self, lookups: Sequence[LookupStrategy] = DEFAULT_LOOKUPS) -> None:
        self.lookups = tuple(lookups)

    def upsert(self, session: Session, user_id: str, payload: dict[str, Any]) -> CRMContact:
        return self._upsert_with(session, user_id, payload, self.lookups)

    def find_existing(self, session: Session, user_id: str, payload: dict[str, Any]) -> CRMContact | None:
        """Row that :meth:`upsert` would merge the payload into, if any."""
        return self._find_with(session, user_id, payload, self.lookups)

    def upsert_by_external_id(self, session: Session, user_id: str, payload: dict[str, Any]) -> CRMContact:
        return self._upsert_with(session, user_id, payload, (EXTERNAL_ID_LOOKUP,))

    def upsert_by_email_and_owner(self, session: Session, user_id: str, payload: dict[str, Any]) -> CRMContact:
        return self._upsert_with(session, user_id, payload, (EMAIL_AND_OWNER_LOOKUP,))

    def insert_batch(self, session: Session, user_id: str, contacts: Sequence[ParsedContact]) -> int:
        if not contacts:
            return 0
        rows = [CRMContact(user_id=user_id, type="individual", **contact.model_dump()) for contact in contacts]
        session.add_all(rows)
        session.flush()
        return len(rows)

    def find_children_by_parent(self, session: Session, user_id: str, parent_id: int) -> list[CRMContact]:
        stmt = (
            select(CRMContact)
            .where(and_(CRMContact.user_id == user_id, CRMContact.parent_id == parent_id))
            .order_by(CRMContact.name.asc(), CRMContact.id.asc())
        )
        return list(session.scalars(stmt).all())

    def get(self, session: Session, user_id: str, contact_id: int) -> CRMContact | None:
        return session.scalar(
            select(CRMContact).where(and_(CRMContact.id == contact_id, CRMContact.user_id == user_id))
        )

    def list_for_user(
        self,
        session: Session,
        user_id: str,
        *,
        filters: dict[str, Any],
        offset: int = 0,
        limit: int = 50,
    ) -> list[CRMContact]:
        stmt: Select[tuple[CRMContact]] = select(CRMContact).where(CRMContact.user_id == user_id)

        search = filters.get("q")
        if search:
            pattern = f"%{str(search).lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(CRMContact.name).like(pattern),
                    func.lower(CRMContact.email).like(pattern),
                    func.lower(CRMContact.company).like(pattern),
                )
            )
        if filters.get("status"):
            stmt = stmt.where(CRMContact.status == filters["status"])
        if filters.get("type"):
            stmt = stmt.where(CRMContact.type == filters["type"])

        stmt = stmt.order_by(CRMContact.created_at.desc(), CRMContact.id.desc()).offset(offset).limit(limit)
        return list(session.scalars(stmt).all())

    def count_for_user(self, session: Session, user_id: str) -> int:
        return int(session.scalar(select(func.count()).select_from(CRMContact).where(CRMContact.user_id == user_id)) or 0)

    def delete(self, session: Session, user_id: str, contact: CRMContact) -> None:
        # Staff and snapshots outlive their company; detach them explicitly so
        # stores without foreign key enforcement behave the same.
        session.execute(
            update(CRMContact)
            .where(and_(CRMContact.user_id == user_id, CRMContact.parent_id == contact.id))
            .values(parent_id=None, updated_at=utcnow())
        )
        session.execute(
            update(CRMExternalBusiness)
            .where(and_(CRMExternalBusiness.user_id == user_id, CRMExternalBusiness.contact_id == contact.id))
            .values(contact_id=None)
        )
        session.execute(delete(CRMContact).where(CRMContact.id == contact.id))

    def _upsert_with(
        self,
        session: Session,
        user_id: str,
        payload: dict[str, Any],
        lookups: Sequence[LookupStrategy],
    ) -> CRMContact:
        existing = self._find_with(session, user_id, payload, lookups)
        if existing is not None:
            self._merge(existing, payload)
            session.flush()
            return existing

        contact = CRMContact(user_id=user_id, **payload)
        session.add(contact)
        session.flush()
        return contact

    @staticmethod
    def _find_with(
        session: Session,
        user_id: str,
        payload: dict[str, Any],
        lookups: Sequence[LookupStrategy],
    ) -> CRMContact | None:
        for strategy in lookups:
            if not strategy.applies(payload):
                continue
            existing = strategy.find(session, user_id, payload)
            if existing is not None:
                return existing
        return None

    @staticmethod
    def _merge(contact: CRMContact, payload: dict[str, Any]) -> None:
        for field_name in MERGE_FIELDS:
            if field_name not in payload:
                continue
            value = payload[field_name]
            if getattr(contact, field_name) != value:
                setattr(contact, field_name, value)

        # Companies never carry a parent, even when the row used to be an individual.
        if payload.get("type") == "company":
            if contact.parent_id is not None:
                contact.parent_id = None
            return
        parent_id = payload.get("parent_id")
        if parent_id is not None and contact.parent_id != parent_id:
            contact.parent_id = parent_id


class ExternalBusinessRepository:
    snapshot_fields = (
        "contact_id",
        "name",
        "category",
        "owner_user_id",
        "status",
        "subscription",
        "contact_info",
        "owner_info",
        "users",
    )

    def upsert_by_business_id(self, session: Session, user_id: str, payload: dict[str, Any]) -> CRMExternalBusiness:
        existing = session.scalar(
            select(CRMExternalBusiness).where(
                and_(
                    CRMExternalBusiness.user_id == user_id,
                    CRMExternalBusiness.business_id == payload["business_id"],
                )
            )
        )
        if existing is None:
            snapshot = CRMExternalBusiness(user_id=user_id, **payload)
            session.add(snapshot)
            session.flush()
            return snapshot

        changed = False
        for field_name in self.snapshot_fields:
            if field_name in payload and getattr(existing, field_name) != payload[field_name]:
                setattr(existing, field_name, payload[field_name])
                changed = True
        if changed:
            existing.updated_at = payload.get("updated_at") or utcnow()
        session.flush()
        return existing

    def get_by_contact_id(self, session: Session, user_id: str, contact_id: int) -> CRMExternalBusiness | None:
        return session.scalar(
            select(CRMExternalBusiness).where(
                and_(CRMExternalBusiness.user_id == user_id, CRMExternalBusiness.contact_id == contact_id)
            )
        )
