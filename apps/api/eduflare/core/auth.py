from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from eduflare.core.config import get_settings


KNOWN_ROLES = ("staff", "admin", "student")


@dataclass
class AuthUser:
    sub: str
    role: str | None


def issue_token(subject: str, role: str) -> str:
    settings = get_settings()
    return jwt.encode({"sub": subject, "role": role}, settings.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", role=None)

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", role=None)

    subject = str(payload.get("sub", "anonymous"))
    role = payload.get("role")
    if role not in KNOWN_ROLES:
        role = None
    return AuthUser(sub=subject, role=role)
