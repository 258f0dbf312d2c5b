"""Gateway authentication and caller identity.

Authentication happens upstream: the auth gateway verifies the user and
forwards ``X-User-Id`` / ``X-User-Role`` together with a shared secret in
``X-Gateway-Token``. Requests without the secret never reach the routes.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from vigil.config import settings
from vigil.liveness.models import Actor, Role

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-Gateway-Token"
USER_HEADER = "X-User-Id"
ROLE_HEADER = "X-User-Role"


class GatewayTokenMiddleware(BaseHTTPMiddleware):
    """Reject requests missing or having an invalid X-Gateway-Token header."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        token = settings.gateway_token
        if not token:
            # No secret configured means no caller can be trusted.
            logger.error("GATEWAY_TOKEN is not set — rejecting %s %s", request.method, request.url.path)
            return JSONResponse(
                status_code=401,
                content={"detail": "Gateway token not configured"},
            )

        provided = request.headers.get(TOKEN_HEADER, "")
        if not hmac.compare_digest(provided.encode(), token.encode()):
            return JSONResponse(
                status_code=401,
                content={"detail": f"Invalid or missing {TOKEN_HEADER}"},
            )

        return await call_next(request)


# ── Dependencies ─────────────────────────────────────────────────────────


def get_actor(request: Request) -> Actor:
    """The caller as asserted by the gateway."""
    user_id = request.headers.get(USER_HEADER, "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail=f"Missing {USER_HEADER}")
    raw_role = request.headers.get(ROLE_HEADER, Role.USER.value).strip().lower()
    try:
        role = Role(raw_role)
    except ValueError:
        logger.warning("Unknown role %r for %s, treating as user", raw_role, user_id)
        role = Role.USER
    return Actor(id=user_id, role=role)
