"""Shared-token authentication for server-to-server checkout/portal calls."""

import hmac

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.exceptions import MissingConfigError, UnauthorizedError

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_internal_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency that checks the bearer token against INTERNAL_API_TOKEN.

    Usage::

        @router.post("/polar/checkout", dependencies=[Depends(require_internal_token)])
        async def checkout(...):
            ...
    """
    expected = request.app.state.settings.internal_api_token
    if not expected:
        raise MissingConfigError("Missing INTERNAL_API_TOKEN")

    if credentials is None:
        raise UnauthorizedError("Missing authorization header")

    if not hmac.compare_digest(credentials.credentials.encode("utf-8"), expected.encode("utf-8")):
        raise UnauthorizedError("Invalid API token")

    request.state.user_id = "internal"
