"""Request authentication — resolves a bearer JWT into a ``Requester``.

Tokens are HS256 JWTs carrying ``username``, ``scmContext`` and ``scope``.
A ``build`` (or ``temporal``) scope means the caller is a running build
acting as itself, and ``username`` holds the build id. Anything else is a
human user. ``guest`` tokens may not call the API at all.

Usage:
    from conductor.auth import require_requester

    @router.put("/builds/{build_id}")
    async def update_build(build_id: int, requester: Requester = Depends(require_requester)):
        ...
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from conductor.config import AuthConfig
from conductor.errors import ForbiddenError, UnauthorizedError
from conductor.models import BuildIdentity, HumanUser, Requester

logger = logging.getLogger(__name__)

BUILD_SCOPES = {"build", "temporal"}

_bearer_scheme = HTTPBearer(auto_error=False)

_auth_config: AuthConfig | None = None


def configure(auth_config: AuthConfig) -> None:
    global _auth_config
    _auth_config = auth_config


def create_token(
    secret: str,
    username: str,
    scm_context: str,
    scope: list[str],
    *,
    algorithm: str = "HS256",
    ttl_seconds: int = 3600,
) -> str:
    """Mint a token. Used by the CLI and tests; the API never issues tokens."""
    now = int(time.time())
    payload = {
        "username": username,
        "scmContext": scm_context,
        "scope": scope,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def resolve_requester(claims: dict[str, Any]) -> Requester:
    """Classify decoded token claims as a build identity or a human user."""
    scope = claims.get("scope") or []
    if isinstance(scope, str):
        scope = [scope]
    username = str(claims.get("username", ""))
    scm_context = claims.get("scmContext", "")

    if BUILD_SCOPES.intersection(scope):
        try:
            build_id = int(username)
        except ValueError:
            raise UnauthorizedError(f"Build token has non-numeric identity {username!r}") from None
        return BuildIdentity(build_id=build_id, scm_context=scm_context)

    if "guest" in scope:
        raise ForbiddenError("Guest users cannot perform this action")

    if not username:
        raise UnauthorizedError("Token has no username")
    return HumanUser(username=username, scm_context=scm_context)


def decode_token(token: str, auth_config: AuthConfig) -> dict[str, Any]:
    if not auth_config.jwt_secret:
        raise UnauthorizedError("Token authentication is not configured")
    try:
        return jwt.decode(token, auth_config.jwt_secret, algorithms=[auth_config.jwt_algorithm])
    except jwt.PyJWTError as e:
        raise UnauthorizedError(f"Invalid token: {e}") from None


async def require_requester(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Requester:
    """FastAPI dependency returning the authenticated ``Requester``."""
    if _auth_config is None:
        raise RuntimeError("auth not configured")

    if credentials is None:
        logger.warning(
            "API request without credentials from %s",
            request.client.host if request.client else "unknown",
        )
        raise UnauthorizedError("Missing authentication")

    claims = decode_token(credentials.credentials, _auth_config)
    return resolve_requester(claims)
