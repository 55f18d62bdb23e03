"""Security helpers for the FastAPI application."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:  # pragma: no cover - type hinting helper
    from collections.abc import Mapping

LOCAL_CLIENT_SENTINELS: Final[set[str]] = {
    "127.0.0.1",
    "localhost",
    "::1",
    "testclient",
    "::ffff:127.0.0.1",
}


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").strip().lower() == "true"


def remote_access_allowed() -> bool:
    """Return True when ``GESMIND_ALLOW_REMOTE`` opts out of loopback-only mode."""
    return _env_flag("GESMIND_ALLOW_REMOTE")


def trust_proxy_headers() -> bool:
    """Return True when ``GESMIND_TRUST_PROXY_HEADERS`` honors X-Forwarded-For."""
    return _env_flag("GESMIND_TRUST_PROXY_HEADERS")


def resolve_client_host(
    headers: Mapping[str, str],
    client_host: str | None,
    *,
    trust_proxy_headers: bool = False,
) -> str | None:
    """Resolve the client host honoring proxy headers when present.

    Args:
        headers: Request headers (case-insensitive mapping provided by Starlette).
        client_host: Host extracted from the ASGI scope.
        trust_proxy_headers: Whether to honor `X-Forwarded-For` from trusted proxies.

    Returns:
        The best-effort remote address string or ``None`` when unavailable.

    """
    if trust_proxy_headers:
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            candidate = forwarded.split(",", 1)[0].strip()
            if candidate:
                return candidate

    return client_host


def is_local_host(host: str | None) -> bool:
    """Return True when ``host`` represents a loopback address."""
    if host is None:
        return True

    normalized = host.strip().lower()
    if normalized in LOCAL_CLIENT_SENTINELS:
        return True

    return normalized.startswith(("127.", "::ffff:127."))
