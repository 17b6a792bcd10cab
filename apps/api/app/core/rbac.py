from collections.abc import Callable, Iterable

from fastapi import Depends, HTTPException, status

from app.core.auth import AuthUser, get_current_user


CRM_CONTACT_PERMISSIONS = frozenset(
    {
        "crm.contacts.read",
        "crm.contacts.create",
        "crm.contacts.update",
        "crm.contacts.delete",
        "crm.contacts.import",
    }
)

# Roles granted by the identity provider; any other role string is treated as
# a literal permission.
ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "crm.viewer": frozenset({"crm.contacts.read"}),
    "crm.user": CRM_CONTACT_PERMISSIONS,
    "crm.admin": CRM_CONTACT_PERMISSIONS | {"crm.directory.sync", "system.metrics.read"},
}


def expand_permissions(roles: Iterable[str]) -> set[str]:
    permissions: set[str] = set()
    for role in roles:
        permissions.add(role)
        permissions.update(ROLE_PERMISSIONS.get(role, ()))
    return permissions


def require_permissions(*permissions: str) -> Callable[[AuthUser], AuthUser]:
    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        granted = expand_permissions(user.roles)
        missing_permissions = [permission for permission in permissions if permission not in granted]
        if missing_permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing_permissions)}",
            )
        return user

    return checker
