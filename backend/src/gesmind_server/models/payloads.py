"""Pydantic models for the setup API."""

from typing import Any, Literal

from pydantic import BaseModel, Field


class ConfigPayload(BaseModel):
    """Provider configuration payload.

    ``raw`` is the JSON text as pasted by the user; ``config`` is the same
    object already decoded. Exactly one of them should be set.
    """

    raw: str | None = None
    config: dict[str, Any] | None = None


class LocalModePayload(BaseModel):
    """Local-only mode opt-out; ``confirmed`` mirrors the confirmation dialog."""

    confirmed: bool = False


class NavigationPayload(BaseModel):
    """Navigation inside the sign-in and linking steps."""

    action: Literal[
        "select_mode",
        "select_method",
        "cancel_password_reset",
        "change_phone_number",
    ]
    mode: Literal["LOGIN", "REGISTER", "FORGOT"] | None = None
    method: Literal["EMAIL", "PHONE"] | None = None


class FederatedPayload(BaseModel):
    """Credential obtained by the browser from the federated sign-in popup."""

    id_token: str | None = None
    access_token: str | None = None
    provider_id: str = "google.com"


class EmailAuthPayload(BaseModel):
    """Email sign-in or registration payload."""

    email: str = ""
    password: str = ""
    confirm_password: str | None = None


class PasswordResetPayload(BaseModel):
    """Password reset request payload."""

    email: str = ""


class PhoneCodePayload(BaseModel):
    """Phone code request payload."""

    phone_number: str = ""
    challenge_token: str | None = Field(
        default=None,
        description="Token produced by the anti-abuse challenge widget",
    )


class CodePayload(BaseModel):
    """One-time code confirmation payload."""

    code: str = ""


class EmailPayload(BaseModel):
    """Recovery email payload."""

    email: str = ""
