import json
from dataclasses import dataclass, field

from fastapi import Depends, Header

from .errors import Forbidden
from .notifications import Scope

ADMIN_ROLE = "admin"
TECHNICIAN_ROLE = "technician"


def parse_roles(raw: str | None) -> list[str]:
    """
    The gateway forwards roles as a JSON list; a bare comma separated
    string is accepted too.
    """
    if not raw:
        return []
    try:
        roles = json.loads(raw)
    except ValueError:
        roles = raw.split(",")
    if isinstance(roles, str):
        roles = [roles]
    if not isinstance(roles, list):
        return []
    return [str(r).strip().lower() for r in roles if str(r).strip()]


@dataclass(frozen=True)
class Caller:
    sub: str | None = None
    roles: list = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles

    def scope(self) -> Scope:
        if self.is_admin:
            return Scope.admin()
        if TECHNICIAN_ROLE in self.roles:
            return Scope.technician(self.sub)
        raise Forbidden("Caller has no notification scope")

    def ensure_acts_for(self, technician_id: str):
        if self.is_admin:
            return
        if TECHNICIAN_ROLE in self.roles and self.sub and self.sub == technician_id:
            return
        raise Forbidden("Caller may not act for this technician")


async def get_caller(
    x_user_sub: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
) -> Caller:
    return Caller(sub=x_user_sub, roles=parse_roles(x_user_roles))


async def caller_scope(caller: Caller = Depends(get_caller)) -> Scope:
    return caller.scope()


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise Forbidden("Admin role required")
    return caller
