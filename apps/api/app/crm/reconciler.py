from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.crm.models import CRMContact, utcnow
from app.crm.repositories import ContactRepository, ExternalBusinessRepository
from app.directory.client import DirectoryClient
from app.directory.schemas import DirectoryBusiness, DirectoryOwner, parse_business
from app.metrics import observe_directory_business, observe_directory_sync


logger = logging.getLogger("app.crm.directory")
tracer = trace.get_tracer("app.crm.reconciler")

UNKNOWN_STAFF_NAME = "Unknown Staff"


def derive_contact_status(business: DirectoryBusiness) -> str:
    return "customer" if business.is_active else "lead"


def _owner_snapshot(owner: DirectoryOwner | None) -> dict[str, Any] | None:
    if owner is None:
        return None
    return owner.model_dump(include={"id", "name", "email", "phone"})


@dataclass
class ReconcileReport:
    count: int = 0
    synced: int = 0
    failed: int = 0


class DirectoryReconciler:
    """Merges directory businesses into one owner's contact store.

    Each business becomes a company contact keyed by the business id, each
    reachable staff member an individual contact linked to it through
    ``parent_id``, plus a snapshot row carrying the raw vendor metadata.
    Every business is committed on its own; a failing business is rolled
    back and logged without affecting the rest of the batch.
    """

    def __init__(
        self,
        contacts: ContactRepository | None = None,
        businesses: ExternalBusinessRepository | None = None,
    ) -> None:
        self.contacts = contacts or ContactRepository()
        self.businesses = businesses or ExternalBusinessRepository()

    def sync(self, session: Session, user_id: str, client: DirectoryClient) -> ReconcileReport:
        # Fetch failures propagate; nothing has been written yet.
        payloads = client.list_businesses()
        return self.reconcile(session, user_id, payloads)

    def reconcile(self, session: Session, user_id: str, payloads: Sequence[Any]) -> ReconcileReport:
        started = time.perf_counter()
        report = ReconcileReport(count=len(payloads))

        with tracer.start_as_current_span("crm.directory.sync") as span:
            span.set_attribute("user_id", user_id)
            span.set_attribute("business_count", report.count)
            for payload in payloads:
                business_id = payload.get("id") if isinstance(payload, dict) else None
                try:
                    business = parse_business(payload)
                    self.reconcile_business(session, user_id, business)
                    session.commit()
                except (ValidationError, SQLAlchemyError, TypeError, ValueError) as exc:
                    session.rollback()
                    report.failed += 1
                    observe_directory_business("failed")
                    logger.exception(
                        "directory.business_failed",
                        extra={"business_id": business_id, "user_id": user_id, "error": str(exc)},
                    )
                    continue
                report.synced += 1
                observe_directory_business("synced")

            span.set_attribute("failed_count", report.failed)
            if report.failed:
                span.set_status(Status(StatusCode.ERROR, "some businesses failed to reconcile"))

        observe_directory_sync(time.perf_counter() - started)
        logger.info(
            "directory.sync_completed",
            extra={"user_id": user_id, "count": report.count, "failed": report.failed},
        )
        return report

    def reconcile_business(self, session: Session, user_id: str, business: DirectoryBusiness) -> CRMContact:
        best_owner = business.best_owner()
        contact_info = business.contact
        status = derive_contact_status(business)

        company = self.contacts.upsert_by_external_id(
            session,
            user_id,
            {
                "external_id": business.id,
                "name": business.name,
                "email": (best_owner.email if best_owner else None) or contact_info.email,
                "phone": (best_owner.phone if best_owner else None) or contact_info.phone,
                "company": business.name,
                "location": contact_info.address,
                "category": business.category,
                "type": "company",
                "status": status,
                "external_data": business.raw,
            },
        )

        for user in business.users:
            if not user.email:
                continue
            staff_payload = {
                "external_id": user.id,
                "name": user.name or UNKNOWN_STAFF_NAME,
                "email": user.email,
                "phone": user.phone or contact_info.phone,
                "company": business.name,
                "location": contact_info.address,
                "category": business.category,
                "type": "individual",
                "parent_id": company.id,
                "status": status,
                "contact_person": user.role,
                "external_data": user.raw,
            }
            existing = self.contacts.find_existing(session, user_id, staff_payload)
            if existing is not None and existing.type == "company":
                logger.warning(
                    "directory.staff_skipped",
                    extra={"business_id": business.id, "external_id": user.id, "contact_id": existing.id},
                )
                continue
            self.contacts.upsert(session, user_id, staff_payload)

        owner = business.owner
        owner_info = owner if owner is not None and owner.name else best_owner
        self.businesses.upsert_by_business_id(
            session,
            user_id,
            {
                "business_id": business.id,
                "contact_id": company.id,
                "name": business.name,
                "category": business.category,
                "owner_user_id": (owner.id if owner else None) or (best_owner.id if best_owner else None),
                "status": business.status,
                "subscription": business.raw.get("subscription"),
                "contact_info": business.raw.get("contact"),
                "owner_info": _owner_snapshot(owner_info),
                "users": business.raw.get("users"),
                "created_at": _vendor_timestamp(business.created_date),
                "updated_at": _vendor_timestamp(business.modified_date),
            },
        )
        return company


def _vendor_timestamp(value: datetime | None) -> datetime:
    return value if value is not None else utcnow()
