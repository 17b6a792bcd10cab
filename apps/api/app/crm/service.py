from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit
from app.core.config import get_settings
from app.crm.importer import ContactImportError, decode_base64_content, parse_file
from app.crm.models import CRMContact
from app.crm.reconciler import DirectoryReconciler
from app.crm.repositories import ContactRepository, ExternalBusinessRepository
from app.crm.schemas import (
    ContactCreate,
    ContactImportRequest,
    ContactImportResult,
    ContactRead,
    ContactUpdate,
    DirectorySyncResult,
    ExternalBusinessRead,
)
from app.directory.client import DirectoryClient
from app.metrics import observe_contact_import


import_logger = logging.getLogger("app.crm.import")
tracer = trace.get_tracer("app.crm.service")

contact_repository = ContactRepository()
external_business_repository = ExternalBusinessRepository()


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def _unprocessable(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class ContactService:
    entity_type = "crm.contact"

    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        self._validate_parent(session, actor_user, dto.type, dto.parent_id, contact_id=None)

        values = dto.model_dump()
        values["email"] = str(dto.email) if dto.email is not None else None
        contact = CRMContact(user_id=actor_user.user_id, **values)
        session.add(contact)
        session.commit()
        session.refresh(contact)

        read_model = ContactRead.model_validate(contact)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(contact.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        return read_model

    def list_contacts(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        offset: int = 0,
        limit: int = 50,
    ) -> list[ContactRead]:
        contacts = contact_repository.list_for_user(
            session,
            actor_user.user_id,
            filters=filters,
            offset=offset,
            limit=limit,
        )
        return [ContactRead.model_validate(contact) for contact in contacts]

    def get_contact(self, session: Session, actor_user: ActorUser, contact_id: int) -> ContactRead:
        return ContactRead.model_validate(self._get_owned(session, actor_user, contact_id))

    def list_related_contacts(self, session: Session, actor_user: ActorUser, contact_id: int) -> list[ContactRead]:
        contact = self._get_owned(session, actor_user, contact_id)
        children = contact_repository.find_children_by_parent(session, actor_user.user_id, contact.id)
        return [ContactRead.model_validate(child) for child in children]

    def update_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: int,
        dto: ContactUpdate,
    ) -> ContactRead:
        contact = self._get_owned(session, actor_user, contact_id)
        before = ContactRead.model_validate(contact).model_dump(mode="json")
        payload = dto.model_dump(exclude_unset=True)

        if "name" in payload:
            if payload["name"] is None or not str(payload["name"]).strip():
                raise _unprocessable("name cannot be empty")
            payload["name"] = str(payload["name"]).strip()
        for required in ("type", "status"):
            if required in payload and payload[required] is None:
                raise _unprocessable(f"{required} cannot be null")
        if payload.get("email") is not None:
            payload["email"] = str(payload["email"])

        next_type = payload.get("type", contact.type)
        next_parent_id = payload["parent_id"] if "parent_id" in payload else contact.parent_id
        if "parent_id" in payload or "type" in payload:
            self._validate_parent(session, actor_user, next_type, next_parent_id, contact_id=contact.id)
        if next_type != "company" and contact.type == "company":
            if contact_repository.find_children_by_parent(session, actor_user.user_id, contact.id):
                raise _unprocessable("contact has related contacts and must remain a company")

        changes = {key: value for key, value in payload.items() if getattr(contact, key) != value}
        if not changes:
            return ContactRead.model_validate(contact)

        for key, value in changes.items():
            setattr(contact, key, value)
        session.commit()
        session.refresh(contact)

        read_model = ContactRead.model_validate(contact)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(contact.id),
            action="update",
            before=before,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        return read_model

    def delete_contact(self, session: Session, actor_user: ActorUser, contact_id: int) -> None:
        contact = self._get_owned(session, actor_user, contact_id)
        before = ContactRead.model_validate(contact).model_dump(mode="json")
        contact_repository.delete(session, actor_user.user_id, contact)
        session.commit()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(contact_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )

    def get_external_business(self, session: Session, actor_user: ActorUser, contact_id: int) -> ExternalBusinessRead:
        contact = self._get_owned(session, actor_user, contact_id)
        snapshot = external_business_repository.get_by_contact_id(session, actor_user.user_id, contact.id)
        if snapshot is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="external business not found")
        return ExternalBusinessRead.model_validate(snapshot)

    def _get_owned(self, session: Session, actor_user: ActorUser, contact_id: int) -> CRMContact:
        contact = contact_repository.get(session, actor_user.user_id, contact_id)
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
        return contact

    def _validate_parent(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_type: str,
        parent_id: int | None,
        *,
        contact_id: int | None,
    ) -> None:
        if parent_id is None:
            return
        if contact_type != "individual":
            raise _unprocessable("only individual contacts can have a parent")
        if contact_id is not None and parent_id == contact_id:
            raise _unprocessable("contact cannot be its own parent")
        parent = contact_repository.get(session, actor_user.user_id, parent_id)
        if parent is None:
            raise _unprocessable("parent contact not found")
        if parent.type != "company":
            raise _unprocessable("parent contact must be a company")


class ContactImportService:
    """Turns an uploaded spreadsheet into new contacts for the acting user.

    Import never merges: every valid row becomes a new contact, inserted in a
    single batch. Row problems are reported next to the counts; decode and
    storage failures fail the whole request with nothing inserted.
    """

    entity_type = "crm.contact_import"

    def import_file(self, session: Session, actor_user: ActorUser, request: ContactImportRequest) -> ContactImportResult:
        settings = get_settings()

        with tracer.start_as_current_span("crm.contacts.import") as span:
            span.set_attribute("file_kind", request.file_kind)
            span.set_attribute("correlation_id", actor_user.correlation_id or "")

            try:
                content = decode_base64_content(request.file_content_base64)
                parsed = parse_file(content, request.file_kind)
                inserted = contact_repository.insert_batch(session, actor_user.user_id, parsed.contacts)
                session.commit()
            except (ContactImportError, SQLAlchemyError) as exc:
                session.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                observe_contact_import(request.file_kind, "failed", 0, 0)
                import_logger.exception(
                    "contacts.import_failed",
                    extra={
                        "user_id": actor_user.user_id,
                        "file_kind": request.file_kind,
                        "file_name": request.file_name,
                        "error": str(exc),
                    },
                )
                return ContactImportResult(
                    success=False,
                    inserted=0,
                    total=0,
                    errors=[f"Failed to import contacts: {exc}"],
                    error_count=1,
                )

            total = len(parsed.contacts)
            error_count = len(parsed.errors)
            span.set_attribute("inserted", inserted)
            span.set_attribute("error_count", error_count)

        observe_contact_import(request.file_kind, "succeeded", inserted, error_count)
        import_logger.info(
            "contacts.imported",
            extra={
                "user_id": actor_user.user_id,
                "file_kind": request.file_kind,
                "file_name": request.file_name,
                "inserted": inserted,
                "total": total,
                "error_count": error_count,
            },
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=request.file_name,
            action="import",
            before=None,
            after={"inserted": inserted, "total": total, "error_count": error_count},
            correlation_id=actor_user.correlation_id,
        )
        return ContactImportResult(
            success=True,
            inserted=inserted,
            total=total,
            errors=summarize_errors(parsed.errors, settings.import_max_reported_errors),
            error_count=error_count,
        )


def summarize_errors(errors: list[str], limit: int) -> list[str] | None:
    if not errors:
        return None
    if len(errors) <= limit:
        return list(errors)
    return [*errors[:limit], f"...and {len(errors) - limit} more errors"]


class DirectorySyncService:
    entity_type = "crm.directory_sync"

    def __init__(self, reconciler: DirectoryReconciler | None = None) -> None:
        self.reconciler = reconciler or DirectoryReconciler(contact_repository, external_business_repository)

    def sync(self, session: Session, actor_user: ActorUser, client: DirectoryClient) -> DirectorySyncResult:
        report = self.reconciler.sync(session, actor_user.user_id, client)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=actor_user.user_id,
            action="sync",
            before=None,
            after={"count": report.count, "synced": report.synced, "failed": report.failed},
            correlation_id=actor_user.correlation_id,
        )
        return DirectorySyncResult(success=True, count=report.count)
