"""Middleware for the application."""

import logging
from collections.abc import Awaitable, Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from gesmind_server.core.security import (
    is_local_host,
    remote_access_allowed,
    resolve_client_host,
    trust_proxy_headers,
)

logger = logging.getLogger(__name__)

INTERNAL_ERROR_DETAIL = {"code": "internal_error", "message": "Internal server error"}

_NO_STORE_PREFIX = "/setup"


def _apply_security_headers(request: Request, response: Response) -> Response:
    response.headers["X-Content-Type-Options"] = "nosniff"
    if request.url.path.startswith(_NO_STORE_PREFIX):
        # snapshots carry identity details
        response.headers["Cache-Control"] = "no-store"
    return response


def _internal_error_response() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": INTERNAL_ERROR_DETAIL},
    )


async def security_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Enforce loopback binding and keep server errors opaque."""
    client_host = resolve_client_host(
        request.headers,
        request.client.host if request.client else None,
        trust_proxy_headers=trust_proxy_headers(),
    )

    if not remote_access_allowed() and not is_local_host(client_host):
        logger.warning("Blocking remote request from %s", client_host)
        response: Response = JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={
                "detail": (
                    "Remote access is disabled. Set GESMIND_ALLOW_REMOTE=true only on"
                    " trusted networks."
                ),
            },
        )
        return _apply_security_headers(request, response)

    try:
        response = await call_next(request)
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _apply_security_headers(request, _internal_error_response())

    if response.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(
            "Sanitized %s response on %s %s",
            response.status_code,
            request.method,
            request.url.path,
        )
        response = _internal_error_response()

    return _apply_security_headers(request, response)
