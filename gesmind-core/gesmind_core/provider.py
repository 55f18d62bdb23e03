"""Identity & Sync Provider contract shared by the bootstrap and the setup flow."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class Identity:
    """Authenticated principal as presented by the provider."""

    uid: str
    email: str | None = None
    email_verified: bool = False
    phone_number: str | None = None
    display_name: str | None = None
    photo_url: str | None = None
    is_anonymous: bool = False


@dataclass(frozen=True)
class FederatedCredential:
    """Credential returned by a federated identity provider sign-in prompt."""

    provider_id: str = "google.com"
    id_token: str | None = None
    access_token: str | None = None


class ProviderError(Exception):
    """Provider-reported failure whose detail is already user-facing."""

    def __init__(self, code: str, detail: str) -> None:
        """Create a provider error carrying the provider's own code and message."""
        super().__init__(detail)
        self.code = code
        self.detail = detail


class OfflinePersistenceError(ProviderError):
    """Offline cache could not be enabled in the current environment."""


FederatedPrompt = Callable[[], Awaitable[FederatedCredential]]


def provider_message(code: str, detail: str | None = None) -> str:
    """Format a message the way the provider SDK presents it to users."""
    if detail:
        return f"Firebase: {detail} ({code})."
    return f"Firebase: Error ({code})."


class IdentityProvider(Protocol):
    """Capability set the setup flow needs from the provider connection."""

    @property
    def current_identity(self) -> Identity | None:
        """Return the identity bound to the connection, if any."""

    async def sign_in_anonymously(self) -> Identity:
        """Establish an anonymous background session."""

    async def sign_in_with_federated(self, credential: FederatedCredential) -> Identity:
        """Sign in with a credential issued by a federated identity provider."""

    async def sign_in_with_email(self, email: str, password: str) -> Identity:
        """Sign in with email and password."""

    async def create_user_with_email(self, email: str, password: str) -> Identity:
        """Create an email/password account and sign it in."""

    async def send_email_verification(self) -> None:
        """Send a verification message to the current identity's email."""

    async def send_password_reset_email(self, email: str) -> None:
        """Send a password reset message to ``email``."""

    async def send_phone_code(self, phone_number: str, challenge_token: str) -> str:
        """Dispatch an OTP and return the opaque confirmation handle."""

    async def confirm_phone_code(self, verification_id: str, code: str) -> Identity:
        """Sign in with a dispatched OTP."""

    async def link_phone_number(self, verification_id: str, code: str) -> Identity:
        """Attach the verified phone number to the current identity."""

    async def verify_before_update_email(self, email: str) -> None:
        """Send a verification link that updates the email once clicked."""

    async def reload(self) -> Identity:
        """Re-fetch the current identity from the provider."""

    def export_session(self) -> str | None:
        """Return an opaque token restoring the current named session, if any."""

    async def resume_session(self, token: str) -> Identity:
        """Sign back in with a token from ``export_session``."""

    async def enable_offline_persistence(self) -> None:
        """Enable the offline cache of synced data."""


__all__ = [
    "FederatedCredential",
    "FederatedPrompt",
    "Identity",
    "IdentityProvider",
    "OfflinePersistenceError",
    "ProviderError",
    "provider_message",
]
