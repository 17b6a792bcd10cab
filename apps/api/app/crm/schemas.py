from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


ContactStatus = Literal["prospect", "lead", "customer", "inactive"]
ContactType = Literal["individual", "company"]
ImportFileKind = Literal["csv", "xlsx", "xls"]


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and value.strip() == "":
        return None
    return value


class ContactCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    location: str | None = None
    category: str | None = None
    type: ContactType = "individual"
    status: ContactStatus = "prospect"
    notes: str | None = None
    website: str | None = None
    contact_person: str | None = None
    parent_id: int | None = None

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


class ContactUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    location: str | None = None
    category: str | None = None
    type: ContactType | None = None
    status: ContactStatus | None = None
    notes: str | None = None
    website: str | None = None
    contact_person: str | None = None
    parent_id: int | None = None
    last_contacted_at: datetime | None = None

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: Any) -> Any:
        return _blank_to_none(value)


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    external_id: str | None
    type: ContactType
    parent_id: int | None
    name: str
    email: str | None
    phone: str | None
    company: str | None
    location: str | None
    category: str | None
    status: ContactStatus
    notes: str | None
    website: str | None
    contact_person: str | None
    external_data: Any | None
    last_contacted_at: datetime | None
    created_at: datetime
    updated_at: datetime


class ParsedContact(BaseModel):
    """A validated import row that has not been assigned an owner yet."""

    name: str
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    location: str | None = None
    category: str | None = None
    status: ContactStatus = "prospect"
    notes: str | None = None
    website: str | None = None
    contact_person: str | None = None


class ContactImportRequest(BaseModel):
    file_content_base64: str = Field(alias="fileContentBase64")
    file_name: str = Field(alias="fileName", min_length=1)
    file_kind: ImportFileKind = Field(alias="fileKind")

    model_config = ConfigDict(populate_by_name=True)


class ContactImportResult(BaseModel):
    success: bool
    inserted: int
    total: int
    errors: list[str] | None = None
    error_count: int = 0


class DirectorySyncResult(BaseModel):
    success: bool
    count: int


class ExternalBusinessRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    business_id: str
    contact_id: int | None
    name: str
    category: str | None
    owner_user_id: str | None
    status: str | None
    subscription: Any | None
    contact_info: Any | None
    owner_info: Any | None
    users: Any | None
    created_at: datetime
    updated_at: datetime
