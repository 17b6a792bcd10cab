from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return ""
    return auth_header.removeprefix("Bearer ").strip()


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    subject = str(payload.get("sub", ANONYMOUS_SUBJECT))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles])
