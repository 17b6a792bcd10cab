from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.core.rbac import expand_permissions
from app.crm.schemas import (
    ContactCreate,
    ContactImportRequest,
    ContactImportResult,
    ContactRead,
    ContactStatus,
    ContactType,
    ContactUpdate,
    DirectorySyncResult,
    ExternalBusinessRead,
)
from app.crm.service import ActorUser, ContactImportService, ContactService, DirectorySyncService
from app.directory.client import DirectoryClient, DirectoryFetchError, HttpDirectoryClient


logger = logging.getLogger("app.crm.directory")

contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
import_router = APIRouter(prefix="/api/crm", tags=["crm.import"])
directory_router = APIRouter(prefix="/api/crm", tags=["crm.directory"])
contact_service = ContactService()
import_service = ContactImportService()
directory_sync_service = DirectorySyncService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _http_error(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        permissions=expand_permissions(auth_user.roles),
        correlation_id=correlation_id,
    )


def get_directory_client() -> DirectoryClient:
    return HttpDirectoryClient.from_settings(get_settings())


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@contacts_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    q: str | None = Query(default=None),
    status_filter: ContactStatus | None = Query(default=None, alias="status"),
    type_filter: ContactType | None = Query(default=None, alias="type"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    directory_client: DirectoryClient = Depends(get_directory_client),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        if get_settings().directory_auto_sync_on_list:
            try:
                directory_sync_service.sync(db, user, directory_client)
            except DirectoryFetchError as exc:
                logger.warning("directory.auto_sync_failed", extra={"user_id": user.user_id, "error": exc.message})
        return contact_service.list_contacts(
            db,
            user,
            filters={"q": q, "status": status_filter, "type": type_filter},
            offset=offset,
            limit=limit,
        )
    except HTTPException as exc:
        return _http_error(request, exc, "crm_contact_list_failed")


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.create")
        return contact_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return _http_error(request, exc, "crm_contact_create_failed")


@import_router.post("/contacts/import", response_model=ContactImportResult)
def import_contacts(
    request: Request,
    dto: ContactImportRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactImportResult | JSONResponse:
    try:
        require_permission(user, "crm.contacts.import")
        return import_service.import_file(db, user, dto)
    except HTTPException as exc:
        return _http_error(request, exc, "crm_contact_import_failed")


@directory_router.post("/contacts/sync-external", response_model=DirectorySyncResult)
def sync_external_contacts(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    directory_client: DirectoryClient = Depends(get_directory_client),
) -> DirectorySyncResult | JSONResponse:
    try:
        require_permission(user, "crm.directory.sync")
        return directory_sync_service.sync(db, user, directory_client)
    except HTTPException as exc:
        return _http_error(request, exc, "crm_directory_sync_failed")
    except DirectoryFetchError as exc:
        return error_response(
            request,
            status_code=status.HTTP_502_BAD_GATEWAY,
            code="crm_directory_sync_failed",
            message=exc.message,
            details={"upstream_status": exc.status_code},
        )


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.get_contact(db, user, contact_id)
    except HTTPException as exc:
        return _http_error(request, exc, "crm_contact_get_failed")


@contacts_router.get("/contacts/{contact_id}/related", response_model=list[ContactRead])
def list_related_contacts(
    request: Request,
    contact_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.list_related_contacts(db, user, contact_id)
    except HTTPException as exc:
        return _http_error(request, exc, "crm_contact_related_failed")


@contacts_router.get("/contacts/{contact_id}/external-business", response_model=ExternalBusinessRead)
def get_external_business(
    request: Request,
    contact_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ExternalBusinessRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.get_external_business(db, user, contact_id)
    except HTTPException as exc:
        return _http_error(request, exc, "crm_external_business_get_failed")


@contacts_router.patch("/contacts/{contact_id}", response_model=ContactRead)
def patch_contact(
    request: Request,
    contact_id: int,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.update")
        return contact_service.update_contact(db, user, contact_id, dto)
    except HTTPException as exc:
        return _http_error(request, exc, "crm_contact_update_failed")


@contacts_router.delete("/contacts/{contact_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_contact(
    request: Request,
    contact_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.contacts.delete")
        contact_service.delete_contact(db, user, contact_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _http_error(request, exc, "crm_contact_delete_failed")
