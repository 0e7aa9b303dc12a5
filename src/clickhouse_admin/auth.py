"""Bearer-token authentication and caller context construction."""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

import jwt

from .config import settings
from .errors import AuthenticationRequired
from .permissions import SUPER_ADMIN_ROLE, CallerContext, PermissionStore

logger = logging.getLogger(__name__)


def make_access_token(
    user_id: str,
    permissions: Iterable[str] = (),
    admin: bool = False,
    ttl_minutes: Optional[int] = None
) -> str:
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=ttl_minutes or settings.access_token_ttl_minutes)
    payload = {
        "typ": "access",
        "jti": f"at-{uuid.uuid4().hex}",
        "sub": str(user_id),
        "permissions": sorted(set(permissions)),
        "admin": bool(admin),
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def parse_access_token(token: str) -> dict[str, Any]:
    """Verify signature, expiry, issuer and audience.

    Raises:
        AuthenticationRequired: The token is missing, expired or invalid
    """
    if not token:
        raise AuthenticationRequired()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationRequired("Access token has expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationRequired("Access token is invalid") from e
    if payload.get("typ") != "access" or not payload.get("sub"):
        raise AuthenticationRequired("Access token is invalid")
    return payload


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationRequired()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationRequired("Authorization header must be 'Bearer <token>'")
    return token.strip()


def build_caller(
    payload: dict[str, Any],
    store: Optional[PermissionStore] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
) -> CallerContext:
    """Merge token claims with the permission store.

    If the store cannot be read the caller keeps only the permissions that
    were signed into the token.
    """
    user_id = str(payload["sub"])
    permissions = set(payload.get("permissions") or [])
    is_admin = bool(payload.get("admin"))
    if store is not None:
        try:
            permissions |= store.get_user_permissions(user_id)
            is_admin = is_admin or SUPER_ADMIN_ROLE in store.get_user_roles(user_id)
        except Exception:
            logger.exception("Permission lookup failed for %s; using token claims only", user_id)
    return CallerContext(
        user_id=user_id,
        permissions=frozenset(permissions),
        is_admin=is_admin,
        ip_address=ip_address,
        user_agent=user_agent,
    )
