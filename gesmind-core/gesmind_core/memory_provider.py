"""In-process provider used for local demos and as the test double."""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, replace
from typing import NoReturn

from .provider import (
    FederatedCredential,
    Identity,
    OfflinePersistenceError,
    ProviderError,
    provider_message,
)

_MIN_PASSWORD_LENGTH = 6
_PHONE_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")


def _raise_provider(code: str, detail: str | None = None) -> NoReturn:
    raise ProviderError(code, provider_message(code, detail))


@dataclass(frozen=True)
class OutboundMessage:
    """Message the provider would have delivered out-of-band."""

    kind: str
    address: str
    token: str
    uid: str | None = None


@dataclass
class _Account:
    identity: Identity
    password: str | None = None


class InMemoryIdentityProvider:
    """Keeps accounts, dispatched codes and links in memory.

    ``outbox`` records every SMS code and email link so callers can play the
    part of the user: read the code, or ``open_link`` to follow a link.
    """

    def __init__(
        self,
        *,
        fixed_code: str | None = None,
        offline_error: str | None = None,
        anonymous_enabled: bool = True,
    ) -> None:
        self.fixed_code = fixed_code
        self.offline_error = offline_error
        self.anonymous_enabled = anonymous_enabled
        self.outbox: list[OutboundMessage] = []
        self.calls: list[str] = []
        self.challenge_tokens: list[str] = []
        self.offline_enabled = False
        self._accounts: dict[str, _Account] = {}
        self._federated: dict[str, Identity] = {}
        self._pending_codes: dict[str, tuple[str, str]] = {}
        self._pending_links: dict[str, OutboundMessage] = {}
        self._sessions: dict[str, str] = {}
        self._current_uid: str | None = None

    @property
    def current_identity(self) -> Identity | None:
        if self._current_uid is None:
            return None
        return self._accounts[self._current_uid].identity

    # -- seeding helpers ---------------------------------------------------

    def add_account(
        self,
        *,
        email: str | None = None,
        password: str | None = None,
        email_verified: bool = False,
        phone_number: str | None = None,
        display_name: str | None = None,
    ) -> Identity:
        """Create an account directly, bypassing the sign-up checks."""
        identity = Identity(
            uid=secrets.token_hex(8),
            email=email.lower() if email else None,
            email_verified=email_verified,
            phone_number=phone_number,
            display_name=display_name,
        )
        self._accounts[identity.uid] = _Account(identity=identity, password=password)
        return identity

    def add_federated_profile(
        self,
        id_token: str,
        *,
        email: str,
        display_name: str | None = None,
        photo_url: str | None = None,
        email_verified: bool = True,
    ) -> None:
        """Register the profile a federated token resolves to."""
        self._federated[id_token] = Identity(
            uid="",
            email=email.lower(),
            email_verified=email_verified,
            display_name=display_name,
            photo_url=photo_url,
        )

    def last_message(self, kind: str) -> OutboundMessage:
        """Return the most recent outbound message of ``kind``."""
        for message in reversed(self.outbox):
            if message.kind == kind:
                return message
        msg = f"No outbound {kind} message"
        raise LookupError(msg)

    def sign_out(self) -> None:
        """Forget the signed-in account, as a fresh process would."""
        self._current_uid = None

    def open_link(self, token: str) -> Identity:
        """Act on an emailed link as the recipient would."""
        message = self._pending_links.pop(token, None)
        if message is None or message.uid is None:
            _raise_provider("auth/invalid-action-code")
        account = self._accounts[message.uid]
        if message.kind == "verify_and_change_email":
            account.identity = replace(
                account.identity,
                email=message.address,
                email_verified=True,
            )
        elif message.kind == "verify_email":
            account.identity = replace(account.identity, email_verified=True)
        return account.identity

    # -- provider contract -------------------------------------------------

    def _find_by(self, *, email: str | None = None, phone: str | None = None) -> _Account | None:
        for account in self._accounts.values():
            if email is not None and account.identity.email == email:
                return account
            if phone is not None and account.identity.phone_number == phone:
                return account
        return None

    def _current_account(self) -> _Account:
        if self._current_uid is None:
            _raise_provider("auth/no-current-user")
        return self._accounts[self._current_uid]

    def _sign_in(self, account: _Account) -> Identity:
        self._current_uid = account.identity.uid
        return account.identity

    async def sign_in_anonymously(self) -> Identity:
        self.calls.append("sign_in_anonymously")
        if not self.anonymous_enabled:
            _raise_provider("auth/operation-not-allowed")
        identity = Identity(uid=secrets.token_hex(8), is_anonymous=True)
        account = _Account(identity=identity)
        self._accounts[identity.uid] = account
        return self._sign_in(account)

    async def sign_in_with_federated(self, credential: FederatedCredential) -> Identity:
        self.calls.append("sign_in_with_federated")
        profile = self._federated.get(credential.id_token or "")
        if profile is None:
            _raise_provider("auth/invalid-credential")
        account = self._find_by(email=profile.email)
        if account is None:
            identity = replace(profile, uid=secrets.token_hex(8))
            account = _Account(identity=identity)
            self._accounts[identity.uid] = account
        elif profile.email_verified and not account.identity.email_verified:
            account.identity = replace(account.identity, email_verified=True)
        return self._sign_in(account)

    async def sign_in_with_email(self, email: str, password: str) -> Identity:
        self.calls.append("sign_in_with_email")
        account = self._find_by(email=email.strip().lower())
        if account is None or account.password != password:
            _raise_provider("auth/invalid-credential")
        return self._sign_in(account)

    async def create_user_with_email(self, email: str, password: str) -> Identity:
        self.calls.append("create_user_with_email")
        normalized = email.strip().lower()
        if "@" not in normalized:
            _raise_provider("auth/invalid-email")
        if len(password) < _MIN_PASSWORD_LENGTH:
            _raise_provider(
                "auth/weak-password",
                "Password should be at least 6 characters",
            )
        if self._find_by(email=normalized) is not None:
            _raise_provider("auth/email-already-in-use")
        identity = self.add_account(email=normalized, password=password)
        return self._sign_in(self._accounts[identity.uid])

    def _queue_link(self, kind: str, address: str, uid: str | None) -> None:
        message = OutboundMessage(
            kind=kind,
            address=address,
            token=secrets.token_urlsafe(12),
            uid=uid,
        )
        self.outbox.append(message)
        self._pending_links[message.token] = message

    async def send_email_verification(self) -> None:
        self.calls.append("send_email_verification")
        account = self._current_account()
        if not account.identity.email:
            _raise_provider("auth/missing-email")
        self._queue_link("verify_email", account.identity.email, account.identity.uid)

    async def send_password_reset_email(self, email: str) -> None:
        self.calls.append("send_password_reset_email")
        normalized = email.strip().lower()
        if "@" not in normalized:
            _raise_provider("auth/invalid-email")
        account = self._find_by(email=normalized)
        self._queue_link(
            "password_reset",
            normalized,
            account.identity.uid if account else None,
        )

    async def send_phone_code(self, phone_number: str, challenge_token: str) -> str:
        self.calls.append("send_phone_code")
        if not challenge_token:
            _raise_provider("auth/captcha-check-failed")
        if not _PHONE_PATTERN.match(phone_number):
            _raise_provider(
                "auth/invalid-phone-number",
                "Phone number must be in E.164 format",
            )
        code = self.fixed_code or f"{secrets.randbelow(1_000_000):06d}"
        self.challenge_tokens.append(challenge_token)
        # a new code for the same number supersedes earlier ones
        for stale_id, (stale_phone, _stale_code) in list(self._pending_codes.items()):
            if stale_phone == phone_number:
                del self._pending_codes[stale_id]
        verification_id = secrets.token_urlsafe(16)
        self._pending_codes[verification_id] = (phone_number, code)
        self.outbox.append(
            OutboundMessage(kind="sms", address=phone_number, token=code),
        )
        return verification_id

    def _check_code(self, verification_id: str, code: str) -> str:
        pending = self._pending_codes.get(verification_id)
        if pending is None:
            _raise_provider("auth/invalid-verification-id")
        phone_number, expected = pending
        if code != expected:
            _raise_provider("auth/invalid-verification-code")
        del self._pending_codes[verification_id]
        return phone_number

    async def confirm_phone_code(self, verification_id: str, code: str) -> Identity:
        self.calls.append("confirm_phone_code")
        phone_number = self._check_code(verification_id, code)
        account = self._find_by(phone=phone_number)
        if account is None:
            identity = self.add_account(phone_number=phone_number)
            account = self._accounts[identity.uid]
        return self._sign_in(account)

    async def link_phone_number(self, verification_id: str, code: str) -> Identity:
        self.calls.append("link_phone_number")
        account = self._current_account()
        phone_number = self._check_code(verification_id, code)
        owner = self._find_by(phone=phone_number)
        if owner is not None and owner is not account:
            _raise_provider("auth/credential-already-in-use")
        account.identity = replace(account.identity, phone_number=phone_number)
        return account.identity

    async def verify_before_update_email(self, email: str) -> None:
        self.calls.append("verify_before_update_email")
        account = self._current_account()
        normalized = email.strip().lower()
        if "@" not in normalized:
            _raise_provider("auth/invalid-email")
        owner = self._find_by(email=normalized)
        if owner is not None and owner is not account:
            _raise_provider("auth/email-already-in-use")
        self._queue_link("verify_and_change_email", normalized, account.identity.uid)

    async def reload(self) -> Identity:
        self.calls.append("reload")
        return self._current_account().identity

    def export_session(self) -> str | None:
        account = self._accounts.get(self._current_uid or "")
        if account is None or account.identity.is_anonymous:
            return None
        for token, uid in self._sessions.items():
            if uid == account.identity.uid:
                return token
        token = secrets.token_urlsafe(16)
        self._sessions[token] = account.identity.uid
        return token

    async def resume_session(self, token: str) -> Identity:
        self.calls.append("resume_session")
        uid = self._sessions.get(token)
        if uid is None or uid not in self._accounts:
            _raise_provider("auth/invalid-user-token")
        return self._sign_in(self._accounts[uid])

    async def enable_offline_persistence(self) -> None:
        self.calls.append("enable_offline_persistence")
        if self.offline_error:
            msg = f"Offline persistence unavailable ({self.offline_error})"
            raise OfflinePersistenceError(self.offline_error, msg)
        self.offline_enabled = True


__all__ = ["InMemoryIdentityProvider", "OutboundMessage"]
