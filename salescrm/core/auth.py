from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from salescrm.core.config import get_settings


@dataclass
class AuthClaims:
    sub: str | None


async def get_auth_claims(request: Request) -> AuthClaims:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return AuthClaims(sub=None)

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthClaims(sub=None)

    subject = payload.get("sub")
    return AuthClaims(sub=str(subject) if subject is not None else None)


def issue_token(user_id: int) -> str:
    settings = get_settings()
    return jwt.encode({"sub": str(user_id)}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
