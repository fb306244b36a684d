from dataclasses import dataclass

from starlette.requests import Request

from crm_api.core.errors import UnauthorizedError
from crm_api.core.security import InvalidTokenError, decode_token


@dataclass
class Principal:
    principal_id: str
    email: str
    role: str


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header[len("Bearer ") :].strip() if auth_header.startswith("Bearer ") else ""


async def get_current_principal(request: Request) -> Principal:
    token = bearer_token(request)
    if not token:
        raise UnauthorizedError("No token provided")

    try:
        payload = decode_token(token, "access")
    except InvalidTokenError as exc:
        raise UnauthorizedError("Invalid or expired token") from exc

    principal = Principal(
        principal_id=str(payload["sub"]),
        email=str(payload.get("email", "")),
        role=str(payload.get("role", "USER")),
    )
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = principal.principal_id
    return principal
