from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


CONTACT_STATUSES = ("prospect", "lead", "customer", "inactive")
CONTACT_TYPES = ("individual", "company")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CRMContact(Base):
    __tablename__ = "crm_contact"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="individual", server_default="individual")
    parent_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("crm_contact.id", ondelete="SET NULL"),
        nullable=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="prospect", server_default="prospect")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = mapped_column(String(500), nullable=True)
    contact_person: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_data: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    last_contacted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "external_id", name="uq_crm_contact_owner_external_id"),
        Index("ix_crm_contact_owner_email", "user_id", "email"),
        Index("ix_crm_contact_parent_id", "parent_id"),
    )


class CRMExternalBusiness(Base):
    __tablename__ = "crm_external_business"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    business_id: Mapped[str] = mapped_column(String(128), nullable=False)
    contact_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("crm_contact.id", ondelete="SET NULL"),
        nullable=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    owner_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    subscription: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    contact_info: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    owner_info: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    users: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "business_id", name="uq_crm_external_business_owner_business"),
        Index("ix_crm_external_business_contact_id", "contact_id"),
    )
