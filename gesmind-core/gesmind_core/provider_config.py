"""Provider configuration parsing and serialization."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

_FINGERPRINT_LENGTH = 8

# camelCase keys as they appear in the provider console snippet
_KNOWN_KEYS = {
    "apiKey": "api_key",
    "projectId": "project_id",
    "appId": "app_id",
    "authDomain": "auth_domain",
    "storageBucket": "storage_bucket",
    "messagingSenderId": "messaging_sender_id",
    "measurementId": "measurement_id",
    "emulatorHost": "emulator_host",
}


class ConfigurationError(Exception):
    """Provider configuration is missing, malformed or unusable."""

    def __init__(self, code: str, detail: str) -> None:
        """Create a configuration error with a stable code."""
        super().__init__(detail)
        self.code = code
        self.detail = detail


@dataclass(frozen=True)
class ProviderConfig:
    """Connection settings for the Identity & Sync Provider."""

    api_key: str
    project_id: str
    app_id: str | None = None
    auth_domain: str | None = None
    storage_bucket: str | None = None
    messaging_sender_id: str | None = None
    measurement_id: str | None = None
    emulator_host: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """Return the camelCase mapping used for persistence."""
        payload: dict[str, Any] = dict(self.extras)
        for key, attr in _KNOWN_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                payload[key] = value
        return payload

    def to_json(self) -> str:
        """Serialize to the same JSON shape that users paste."""
        return json.dumps(self.to_payload(), sort_keys=True)

    @property
    def api_key_fingerprint(self) -> str:
        """Short digest of the api key, safe for logs and displays."""
        digest = hashlib.sha256(self.api_key.encode("utf-8")).hexdigest()
        return digest[:_FINGERPRINT_LENGTH]


def _decode_raw(raw: str) -> object:
    text = raw.strip()
    if not text:
        msg = "Provider configuration is missing."
        raise ConfigurationError("missing_config", msg)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        msg = f"Provider configuration is not valid JSON: {exc.msg}"
        raise ConfigurationError("syntax_error", msg) from exc


def parse_provider_config(raw: str | Mapping[str, Any] | ProviderConfig) -> ProviderConfig:
    """Validate raw configuration input and build a ``ProviderConfig``.

    Accepts an already-built config, a mapping with camelCase keys, or the
    JSON text pasted by an operator. The api key and project id must both be
    non-empty strings.
    """
    if isinstance(raw, ProviderConfig):
        payload: object = raw.to_payload()
    elif isinstance(raw, str):
        payload = _decode_raw(raw)
    else:
        payload = dict(raw)

    if not isinstance(payload, dict):
        msg = "Provider configuration must be a JSON object."
        raise ConfigurationError("invalid_config", msg)

    api_key = payload.get("apiKey")
    project_id = payload.get("projectId")
    if not isinstance(api_key, str) or not api_key.strip():
        msg = "Provider configuration requires a non-empty apiKey."
        raise ConfigurationError("invalid_config", msg)
    if not isinstance(project_id, str) or not project_id.strip():
        msg = "Provider configuration requires a non-empty projectId."
        raise ConfigurationError("invalid_config", msg)

    values: dict[str, str | None] = {}
    extras: dict[str, Any] = {}
    for key, value in payload.items():
        attr = _KNOWN_KEYS.get(key)
        if attr is None:
            extras[key] = value
            continue
        values[attr] = value.strip() if isinstance(value, str) and value.strip() else None

    return ProviderConfig(
        api_key=api_key.strip(),
        project_id=project_id.strip(),
        app_id=values.get("app_id"),
        auth_domain=values.get("auth_domain"),
        storage_bucket=values.get("storage_bucket"),
        messaging_sender_id=values.get("messaging_sender_id"),
        measurement_id=values.get("measurement_id"),
        emulator_host=values.get("emulator_host"),
        extras=extras,
    )


__all__ = ["ConfigurationError", "ProviderConfig", "parse_provider_config"]
