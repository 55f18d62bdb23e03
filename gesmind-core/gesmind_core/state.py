"""Flow state cursor modeled as a tagged union of steps."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, ClassVar, Literal

from .provider import Identity

OperatingMode = Literal["CLOUD", "LOCAL"]
AuthMode = Literal["LOGIN", "REGISTER", "FORGOT"]
AuthMethod = Literal["EMAIL", "PHONE"]
MissingChannel = Literal["PHONE", "EMAIL"]
LinkStep = Literal["INPUT", "VERIFY"]


@dataclass(frozen=True)
class ConfigStep:
    """Waiting for provider configuration or a local-mode opt-out."""

    step: ClassVar[str] = "CONFIG"


@dataclass(frozen=True)
class AuthStep:
    """Primary authentication.

    ``code_sent`` only applies to the phone method, and the password reset
    branch is always an email form.
    """

    mode: AuthMode = "LOGIN"
    method: AuthMethod = "EMAIL"
    code_sent: bool = False

    step: ClassVar[str] = "AUTH"

    def __post_init__(self) -> None:
        if self.mode == "FORGOT" and self.method != "EMAIL":
            msg = "Password reset is only available for the email method."
            raise ValueError(msg)
        if self.code_sent and self.method != "PHONE":
            msg = "code_sent requires the phone method."
            raise ValueError(msg)


@dataclass(frozen=True)
class SecurityCheckStep:
    """Recovery channel linking for the channel the identity lacks."""

    missing: MissingChannel
    link_step: LinkStep = "INPUT"
    email_sent: bool = False

    step: ClassVar[str] = "SECURITY_CHECK"

    def __post_init__(self) -> None:
        if self.missing == "PHONE" and self.email_sent:
            msg = "email_sent requires the email sub-flow."
            raise ValueError(msg)
        if self.missing == "EMAIL" and self.link_step != "INPUT":
            msg = "The email sub-flow has no code verification step."
            raise ValueError(msg)


@dataclass(frozen=True)
class CompleteStep:
    """Control has been handed back to the host application."""

    mode: OperatingMode

    step: ClassVar[str] = "COMPLETE"


FlowState = ConfigStep | AuthStep | SecurityCheckStep | CompleteStep


def missing_channel(identity: Identity) -> MissingChannel | None:
    """Return the recovery channel to link next; phone goes first."""
    if not identity.phone_number:
        return "PHONE"
    if not (identity.email and identity.email_verified):
        return "EMAIL"
    return None


def is_identity_complete(identity: Identity) -> bool:
    return missing_channel(identity) is None


def state_to_dict(state: FlowState) -> dict[str, Any]:
    return {"step": state.step, **asdict(state)}


def identity_to_dict(identity: Identity | None) -> dict[str, Any] | None:
    if identity is None:
        return None
    return asdict(identity)


__all__ = [
    "AuthMethod",
    "AuthMode",
    "AuthStep",
    "CompleteStep",
    "ConfigStep",
    "FlowState",
    "LinkStep",
    "MissingChannel",
    "OperatingMode",
    "SecurityCheckStep",
    "identity_to_dict",
    "is_identity_complete",
    "missing_channel",
    "state_to_dict",
]
