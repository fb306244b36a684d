from collections.abc import Awaitable, Callable

from fastapi import Depends

from crm_api.core.auth import Principal, get_current_principal
from crm_api.core.errors import ForbiddenError


def require_roles(*roles: str) -> Callable[..., Awaitable[Principal]]:
    allowed = {role.upper() for role in roles}

    async def checker(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role.upper() not in allowed:
            raise ForbiddenError("Insufficient permissions", details={"required_roles": sorted(allowed)})
        return principal

    return checker
