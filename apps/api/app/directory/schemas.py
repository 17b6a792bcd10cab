"""Typed views over the business-directory admin API payload.

The directory returns schema-less JSON in which unknown values are spelled as
placeholder strings. Every string field passes through
:func:`normalize_sentinel` so that ``"Unknown"``, ``"N/A"`` and empty strings
arrive as ``None`` before any merge logic reads them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


SENTINEL_VALUES = frozenset({"unknown", "n/a", ""})


def normalize_sentinel(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lower() in SENTINEL_VALUES:
            return None
        return stripped
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def parse_vendor_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


class _DirectoryRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class DirectoryContactInfo(_DirectoryRecord):
    address: str | None = None
    phone: str | None = None
    email: str | None = None

    @field_validator("address", "phone", "email", mode="before")
    @classmethod
    def drop_sentinels(cls, value: Any) -> Any:
        return normalize_sentinel(value)


class DirectoryOwner(_DirectoryRecord):
    id: str | None = None
    name: str | None = None
    email: str | None = None
    phone: str | None = None

    @field_validator("id", "name", "email", "phone", mode="before")
    @classmethod
    def drop_sentinels(cls, value: Any) -> Any:
        return normalize_sentinel(value)


class DirectoryUser(DirectoryOwner):
    role: str | None = None
    user_type: str | None = Field(default=None, alias="userType")
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)

    @field_validator("role", "user_type", mode="before")
    @classmethod
    def drop_role_sentinels(cls, value: Any) -> Any:
        return normalize_sentinel(value)

    @property
    def is_business_owner(self) -> bool:
        return (self.user_type or "").lower() == "business_owner"

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == "admin"


class DirectoryBusiness(_DirectoryRecord):
    id: str
    name: str
    category: str | None = None
    status: str | None = None
    contact: DirectoryContactInfo = Field(default_factory=DirectoryContactInfo)
    owner: DirectoryOwner | None = None
    users: list[DirectoryUser] = Field(default_factory=list)
    subscription: Any = None
    created_date: datetime | None = Field(default=None, alias="createdDate")
    modified_date: datetime | None = Field(default=None, alias="modifiedDate")
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)

    @field_validator("id", "name", mode="before")
    @classmethod
    def coerce_identity(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("category", "status", mode="before")
    @classmethod
    def drop_sentinels(cls, value: Any) -> Any:
        return normalize_sentinel(value)

    @field_validator("contact", mode="before")
    @classmethod
    def default_contact(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @field_validator("owner", mode="before")
    @classmethod
    def drop_non_object_owner(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None

    @field_validator("users", mode="before")
    @classmethod
    def keep_object_users(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @field_validator("created_date", "modified_date", mode="before")
    @classmethod
    def lenient_datetime(cls, value: Any) -> datetime | None:
        return parse_vendor_datetime(value)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def best_owner(self) -> DirectoryOwner | None:
        """Staff business owner, else a staff admin, else the declared owner."""
        for predicate in (lambda user: user.is_business_owner, lambda user: user.is_admin):
            match = next((user for user in self.users if predicate(user)), None)
            if match is not None:
                return match
        return self.owner


def parse_business(payload: dict[str, Any]) -> DirectoryBusiness:
    business = DirectoryBusiness.model_validate(payload)
    business.raw = payload
    raw_users = [item for item in payload.get("users") or [] if isinstance(item, dict)]
    for user, raw_user in zip(business.users, raw_users):
        user.raw = raw_user
    return business
