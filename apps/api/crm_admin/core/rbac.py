from collections.abc import Callable, Iterable
from enum import StrEnum

from fastapi import Depends

from crm_admin.core.auth import Identity, get_current_identity
from crm_admin.core.errors import Forbidden, Unauthenticated


class Role(StrEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    AGENT = "agent"


class Permission(StrEnum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    MANAGE_ALL = "manage_all"
    MANAGE_OWN = "manage_own"


ROLE_PERMISSIONS: dict[str, tuple[Permission, ...]] = {
    Role.ADMIN: (Permission.READ, Permission.WRITE, Permission.DELETE, Permission.MANAGE_ALL),
    Role.MANAGER: (Permission.READ, Permission.WRITE, Permission.DELETE, Permission.MANAGE_ALL),
    # manage_own is granted but no read or write path narrows to owned records
    Role.AGENT: (Permission.READ, Permission.WRITE, Permission.MANAGE_OWN),
}


def permissions_for(role: str) -> list[str]:
    return [str(permission) for permission in ROLE_PERMISSIONS.get(role, ())]


def has_permission(role: str, permission: str) -> bool:
    return permission in ROLE_PERMISSIONS.get(role, ())


def can_manage_all(role: str) -> bool:
    return has_permission(role, Permission.MANAGE_ALL)


def authorize_permission(identity: Identity | None, permission: str) -> Identity:
    if identity is None:
        raise Unauthenticated()
    if not has_permission(identity.role, permission):
        raise Forbidden()
    return identity


def authorize_role(identity: Identity | None, roles: Iterable[str]) -> Identity:
    if identity is None:
        raise Unauthenticated()
    if identity.role not in set(roles):
        raise Forbidden()
    return identity


def require_permission(permission: str) -> Callable[..., Identity]:
    async def checker(identity: Identity = Depends(get_current_identity)) -> Identity:
        return authorize_permission(identity, permission)

    return checker


def require_roles(*roles: str) -> Callable[..., Identity]:
    async def checker(identity: Identity = Depends(get_current_identity)) -> Identity:
        return authorize_role(identity, roles)

    return checker
