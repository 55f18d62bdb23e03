"""Blocking JSON-over-HTTP helper used by the REST provider binding."""

from __future__ import annotations

import http.client
import json
import os
import time
from urllib.parse import urlencode, urlparse

JsonValue = None | bool | int | float | str | list["JsonValue"] | dict[str, "JsonValue"]

_HTTP_ERROR_STATUS = 400
_DEFAULT_HTTP_TIMEOUT_SECONDS = 30
_IDEMPOTENT_METHODS = {"GET", "HEAD"}
_RETRY_BACKOFF_SECONDS = (0.1, 0.2)


class TransportError(RuntimeError):
    """HTTP request failed at the connection or status level."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        payload: JsonValue = None,
    ) -> None:
        """Create a transport error keeping the parsed error body when present."""
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


def default_timeout_seconds() -> int:
    """Return the request timeout, honoring ``GESMIND_HTTP_TIMEOUT_SECONDS``."""
    raw = os.environ.get("GESMIND_HTTP_TIMEOUT_SECONDS")
    if not raw or not raw.strip():
        return _DEFAULT_HTTP_TIMEOUT_SECONDS
    try:
        parsed = int(raw)
    except ValueError:
        return _DEFAULT_HTTP_TIMEOUT_SECONDS
    return max(1, parsed)


def _parse_error_body(raw_body: str) -> JsonValue:
    try:
        return json.loads(raw_body)
    except json.JSONDecodeError:
        return raw_body


def _send_once(
    conn_cls: type[http.client.HTTPConnection],
    netloc: str,
    method: str,
    path: str,
    body: str | None,
    headers: dict[str, str],
    timeout_seconds: int,
) -> tuple[int, str]:
    conn: http.client.HTTPConnection | None = None
    try:
        conn = conn_cls(netloc, timeout=timeout_seconds)
        conn.request(method, path, body=body, headers=headers)
        response = conn.getresponse()
        return response.status, response.read().decode("utf-8")
    finally:
        if conn is not None:
            conn.close()


def request_json(
    method: str,
    url: str,
    *,
    payload: dict[str, JsonValue] | None = None,
    form: dict[str, str] | None = None,
    timeout_seconds: int | None = None,
) -> JsonValue:
    """Execute an HTTP request and return the parsed JSON response.

    Idempotent methods are retried on connection errors with a short backoff;
    anything else fails on the first connection error.
    """
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        msg = f"Invalid URL: {url}"
        raise TransportError(msg)

    method = method.upper()
    headers = {"Accept": "application/json"}
    body: str | None = None
    if form is not None:
        body = urlencode(form)
        headers["Content-Type"] = "application/x-www-form-urlencoded"
    elif payload is not None:
        body = json.dumps(payload)
        headers["Content-Type"] = "application/json"

    path = parsed.path or "/"
    if parsed.query:
        path = f"{path}?{parsed.query}"

    conn_cls: type[http.client.HTTPConnection] = (
        http.client.HTTPSConnection
        if parsed.scheme == "https"
        else http.client.HTTPConnection
    )
    timeout = timeout_seconds if timeout_seconds is not None else default_timeout_seconds()
    backoff = _RETRY_BACKOFF_SECONDS if method in _IDEMPOTENT_METHODS else ()

    attempt = 0
    while True:
        try:
            status_code, raw_body = _send_once(
                conn_cls,
                parsed.netloc,
                method,
                path,
                body,
                headers,
                timeout,
            )
            break
        except OSError as exc:
            if attempt >= len(backoff):
                msg = f"Connection failed: {exc}"
                raise TransportError(msg) from exc
            time.sleep(backoff[attempt])
            attempt += 1

    if status_code >= _HTTP_ERROR_STATUS:
        msg = f"HTTP {status_code}"
        raise TransportError(
            msg,
            status_code=status_code,
            payload=_parse_error_body(raw_body),
        )

    if not raw_body:
        return None
    try:
        return json.loads(raw_body)
    except json.JSONDecodeError as exc:
        msg = "Response was not valid JSON"
        raise TransportError(msg, status_code=status_code) from exc


__all__ = ["JsonValue", "TransportError", "default_timeout_seconds", "request_json"]
