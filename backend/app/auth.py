from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.app.settings import Settings

KNOWN_ROLES = frozenset({"admin", "operator", "viewer"})

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    roles: frozenset[str]


def issue_token(
    *,
    secret: str,
    subject: str,
    roles: Iterable[str],
    hours: int = 12,
    algorithm: str = "HS256",
) -> str:
    payload = {
        "sub": subject,
        "roles": sorted({role.strip() for role in roles if role.strip()}),
        "exp": datetime.utcnow() + timedelta(hours=hours),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    settings: Settings = request.app.state.settings
    if not settings.auth_enabled:
        return AuthContext(user_id="dev-local", roles=KNOWN_ROLES)

    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("missing bearer token")
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.InvalidTokenError as exc:
        raise _unauthorized("invalid auth token") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise _unauthorized("token missing subject")
    roles = payload.get("roles", [])
    if not isinstance(roles, list):
        raise _unauthorized("token roles must be a list")
    role_set = frozenset(str(role).strip() for role in roles) & KNOWN_ROLES
    if not role_set:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"token has none of the roles {sorted(KNOWN_ROLES)}",
        )
    return AuthContext(user_id=subject.strip(), roles=role_set)


def require_roles(*required_roles: str) -> Callable[[AuthContext], AuthContext]:
    required = frozenset(role.strip() for role in required_roles if role.strip())

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if required and context.roles.isdisjoint(required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"insufficient role. required any of: {sorted(required)}",
            )
        return context

    return dependency
