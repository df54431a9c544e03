"""
Role hierarchy (admin > manager > user), ownership checks and the FastAPI
dependencies that resolve the caller from the bearer token.
"""
from typing import Optional

from fastapi import Depends, Header, Request

from errors import AuthenticationError, AuthorizationError
from models import User

ROLE_RANK = {"user": 0, "manager": 1, "admin": 2}


def has_role(user: User, minimum: str) -> bool:
    return ROLE_RANK.get(user.role, -1) >= ROLE_RANK[minimum]


def ensure_role(user: User, minimum: str) -> None:
    if not has_role(user, minimum):
        raise AuthorizationError("Accès refusé. Permissions insuffisantes")


def ensure_owner_or_role(user: User, owner_id: Optional[str], minimum: str) -> None:
    """Pass when the caller holds ``minimum`` or is the designated owner."""
    if has_role(user, minimum):
        return
    if owner_id is not None and user.id == owner_id:
        return
    raise AuthorizationError("Accès refusé. Vous n'êtes pas propriétaire de cette ressource")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


def _resolve_user(request: Request, token: str) -> User:
    services = request.app.state.services
    payload = services.auth.decode_token(token)
    user = services.repos.users.get(payload["sub"])
    if user is None:
        raise AuthenticationError("Token invalide - utilisateur non trouvé")
    if not user.is_active:
        raise AuthenticationError("Compte désactivé")
    return user


def get_current_user(request: Request, authorization: Optional[str] = Header(None)) -> User:
    token = _bearer_token(authorization)
    if token is None:
        raise AuthenticationError("Accès refusé. Token manquant")
    return _resolve_user(request, token)


def get_optional_user(request: Request, authorization: Optional[str] = Header(None)) -> Optional[User]:
    """Caller when a valid token is presented, None for anonymous visitors."""
    token = _bearer_token(authorization)
    if token is None:
        return None
    try:
        return _resolve_user(request, token)
    except AuthenticationError:
        return None


def require_role(minimum: str):
    def dep(user: User = Depends(get_current_user)) -> User:
        ensure_role(user, minimum)
        return user
    return dep


require_manager = require_role("manager")
require_admin = require_role("admin")
