"""Dependency injection for the API layer.

Services live in a ServiceContainer stored on ``app.state`` by the
application factory, so tests can build an app around in-memory stores.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, Request

from ..errors import AuthenticationError
from ..services import ServiceContainer

BEARER_PREFIX = "Bearer "


def get_services(request: Request) -> ServiceContainer:
    """Get the service container of the running application."""
    return request.app.state.services


def get_principal(x_user_id: Optional[str] = Header(None, description="Authenticated user id")) -> str:
    """Get the caller's principal id.

    Authentication happens upstream; the gateway forwards the user id in the
    ``X-User-Id`` header.

    Raises:
        AuthenticationError: If the header is missing or empty.
    """
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("Authentication required")
    return x_user_id.strip()


def verify_trigger_secret(
    authorization: Optional[str] = Header(None),
    services: ServiceContainer = Depends(get_services),
) -> None:
    """Check the scheduler's bearer token in constant time.

    Raises:
        AuthenticationError: If no secret is configured or the token does not match.
    """
    secret = services.trigger_secret
    if not secret:
        raise AuthenticationError("Trigger is not configured")
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise AuthenticationError("Missing bearer token")

    token = authorization[len(BEARER_PREFIX) :]
    if not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise AuthenticationError("Invalid trigger token")
