"""Identity & Sync Provider binding over the Identity Toolkit REST API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, NoReturn, cast
from urllib.parse import urlencode

from .provider import (
    FederatedCredential,
    Identity,
    OfflinePersistenceError,
    ProviderError,
    provider_message,
)
from .provider_config import ProviderConfig
from .transport import JsonValue, TransportError, request_json

IDENTITY_TOOLKIT_HOST = "identitytoolkit.googleapis.com"
SECURE_TOKEN_HOST = "securetoken.googleapis.com"
_IDP_REQUEST_URI = "http://localhost"

logger = logging.getLogger(__name__)

# REST error message -> public auth error code
_ERROR_CODES = {
    "ADMIN_ONLY_OPERATION": "auth/admin-restricted-operation",
    "CAPTCHA_CHECK_FAILED": "auth/captcha-check-failed",
    "CREDENTIAL_TOO_OLD_LOGIN_AGAIN": "auth/requires-recent-login",
    "EMAIL_EXISTS": "auth/email-already-in-use",
    "EMAIL_NOT_FOUND": "auth/user-not-found",
    "INVALID_CODE": "auth/invalid-verification-code",
    "INVALID_EMAIL": "auth/invalid-email",
    "INVALID_ID_TOKEN": "auth/invalid-user-token",
    "INVALID_IDP_RESPONSE": "auth/invalid-credential",
    "INVALID_LOGIN_CREDENTIALS": "auth/invalid-credential",
    "INVALID_PASSWORD": "auth/wrong-password",
    "INVALID_PHONE_NUMBER": "auth/invalid-phone-number",
    "INVALID_REFRESH_TOKEN": "auth/invalid-user-token",
    "INVALID_SESSION_INFO": "auth/invalid-verification-id",
    "MISSING_CODE": "auth/missing-verification-code",
    "MISSING_PASSWORD": "auth/missing-password",
    "MISSING_PHONE_NUMBER": "auth/missing-phone-number",
    "OPERATION_NOT_ALLOWED": "auth/operation-not-allowed",
    "PHONE_NUMBER_EXISTS": "auth/credential-already-in-use",
    "QUOTA_EXCEEDED": "auth/quota-exceeded",
    "SESSION_EXPIRED": "auth/code-expired",
    "TOKEN_EXPIRED": "auth/user-token-expired",
    "TOO_MANY_ATTEMPTS_TRY_LATER": "auth/too-many-requests",
    "USER_DISABLED": "auth/user-disabled",
    "USER_NOT_FOUND": "auth/user-not-found",
    "WEAK_PASSWORD": "auth/weak-password",
}


def _raise_provider(code: str, detail: str | None = None) -> NoReturn:
    raise ProviderError(code, provider_message(code, detail))


def translate_transport_error(exc: TransportError) -> ProviderError:
    """Map a REST failure onto the provider's public error codes."""
    if exc.status_code is None:
        code = "auth/network-request-failed"
        return ProviderError(code, provider_message(code))

    raw_message = ""
    payload = exc.payload
    if isinstance(payload, dict):
        error_obj = payload.get("error")
        if isinstance(error_obj, dict) and isinstance(error_obj.get("message"), str):
            raw_message = cast("str", error_obj["message"])

    key, _, detail = raw_message.partition(" : ")
    key = key.strip()
    if key.startswith("API key not valid"):
        code = "auth/api-key-not-valid"
        return ProviderError(code, provider_message(code, "API key not valid"))

    code = _ERROR_CODES.get(key)
    if code is None:
        code = "auth/internal-error"
        return ProviderError(code, provider_message(code, raw_message or None))
    return ProviderError(code, provider_message(code, detail.strip() or None))


def _string_field(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) and value else None


def identity_from_account(account: dict[str, Any]) -> Identity:
    """Build an ``Identity`` from an ``accounts:lookup`` user record."""
    uid = _string_field(account, "localId")
    if uid is None:
        _raise_provider("auth/internal-error", "Account record missing localId")
    email = _string_field(account, "email")
    phone_number = _string_field(account, "phoneNumber")
    linked = account.get("providerUserInfo")
    return Identity(
        uid=uid,
        email=email,
        email_verified=bool(account.get("emailVerified", False)),
        phone_number=phone_number,
        display_name=_string_field(account, "displayName"),
        photo_url=_string_field(account, "photoUrl"),
        is_anonymous=not email and not phone_number and not linked,
    )


class FirebaseRestProvider:
    """Provider connection bound to one project configuration."""

    def __init__(self, config: ProviderConfig) -> None:
        """Prepare endpoints for ``config``; no network access happens here."""
        self.config = config
        if config.emulator_host:
            base = f"http://{config.emulator_host.rstrip('/')}"
            self._toolkit_url = f"{base}/{IDENTITY_TOOLKIT_HOST}/v1"
            self._token_url = f"{base}/{SECURE_TOKEN_HOST}/v1"
        else:
            self._toolkit_url = f"https://{IDENTITY_TOOLKIT_HOST}/v1"
            self._token_url = f"https://{SECURE_TOKEN_HOST}/v1"
        self._id_token: str | None = None
        self._refresh_token: str | None = None
        self._identity: Identity | None = None

    @property
    def current_identity(self) -> Identity | None:
        return self._identity

    def _key_query(self) -> str:
        return urlencode({"key": self.config.api_key})

    async def _call(
        self,
        url: str,
        *,
        payload: dict[str, JsonValue] | None = None,
        form: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            result = await asyncio.to_thread(
                request_json,
                "POST",
                url,
                payload=payload,
                form=form,
            )
        except TransportError as exc:
            raise translate_transport_error(exc) from exc
        return result if isinstance(result, dict) else {}

    async def _toolkit(self, method: str, payload: dict[str, JsonValue]) -> dict[str, Any]:
        logger.debug("Identity Toolkit call %s", method)
        return await self._call(
            f"{self._toolkit_url}/{method}?{self._key_query()}",
            payload=payload,
        )

    def _require_id_token(self) -> str:
        if not self._id_token:
            _raise_provider("auth/no-current-user")
        return self._id_token

    async def _lookup(self) -> Identity:
        result = await self._toolkit(
            "accounts:lookup",
            {"idToken": self._require_id_token()},
        )
        users = result.get("users")
        if not isinstance(users, list) or not users or not isinstance(users[0], dict):
            _raise_provider("auth/user-not-found")
        self._identity = identity_from_account(users[0])
        return self._identity

    async def _adopt_session(self, result: dict[str, Any]) -> Identity:
        id_token = _string_field(result, "idToken")
        if id_token is None:
            _raise_provider("auth/internal-error", "Response missing idToken")
        self._id_token = id_token
        self._refresh_token = _string_field(result, "refreshToken") or self._refresh_token
        return await self._lookup()

    async def sign_in_anonymously(self) -> Identity:
        result = await self._toolkit("accounts:signUp", {"returnSecureToken": True})
        return await self._adopt_session(result)

    async def sign_in_with_federated(self, credential: FederatedCredential) -> Identity:
        post_body: dict[str, str] = {"providerId": credential.provider_id}
        if credential.id_token:
            post_body["id_token"] = credential.id_token
        elif credential.access_token:
            post_body["access_token"] = credential.access_token
        else:
            _raise_provider("auth/argument-error", "Missing identity provider token")
        result = await self._toolkit(
            "accounts:signInWithIdp",
            {
                "postBody": urlencode(post_body),
                "requestUri": _IDP_REQUEST_URI,
                "returnIdpCredential": True,
                "returnSecureToken": True,
            },
        )
        return await self._adopt_session(result)

    async def sign_in_with_email(self, email: str, password: str) -> Identity:
        result = await self._toolkit(
            "accounts:signInWithPassword",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        return await self._adopt_session(result)

    async def create_user_with_email(self, email: str, password: str) -> Identity:
        result = await self._toolkit(
            "accounts:signUp",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        return await self._adopt_session(result)

    async def send_email_verification(self) -> None:
        await self._toolkit(
            "accounts:sendOobCode",
            {"requestType": "VERIFY_EMAIL", "idToken": self._require_id_token()},
        )

    async def send_password_reset_email(self, email: str) -> None:
        await self._toolkit(
            "accounts:sendOobCode",
            {"requestType": "PASSWORD_RESET", "email": email},
        )

    async def send_phone_code(self, phone_number: str, challenge_token: str) -> str:
        result = await self._toolkit(
            "accounts:sendVerificationCode",
            {"phoneNumber": phone_number, "recaptchaToken": challenge_token},
        )
        session_info = _string_field(result, "sessionInfo")
        if session_info is None:
            _raise_provider("auth/internal-error", "Response missing sessionInfo")
        return session_info

    async def confirm_phone_code(self, verification_id: str, code: str) -> Identity:
        result = await self._toolkit(
            "accounts:signInWithPhoneNumber",
            {"sessionInfo": verification_id, "code": code},
        )
        return await self._adopt_session(result)

    async def link_phone_number(self, verification_id: str, code: str) -> Identity:
        result = await self._toolkit(
            "accounts:signInWithPhoneNumber",
            {
                "sessionInfo": verification_id,
                "code": code,
                "idToken": self._require_id_token(),
            },
        )
        return await self._adopt_session(result)

    async def verify_before_update_email(self, email: str) -> None:
        await self._toolkit(
            "accounts:sendOobCode",
            {
                "requestType": "VERIFY_AND_CHANGE_EMAIL",
                "idToken": self._require_id_token(),
                "newEmail": email,
            },
        )

    async def reload(self) -> Identity:
        if not self._refresh_token:
            _raise_provider("auth/no-current-user")
        result = await self._call(
            f"{self._token_url}/token?{self._key_query()}",
            form={"grant_type": "refresh_token", "refresh_token": self._refresh_token},
        )
        id_token = _string_field(result, "id_token")
        if id_token is None:
            _raise_provider("auth/internal-error", "Token refresh missing id_token")
        self._id_token = id_token
        self._refresh_token = _string_field(result, "refresh_token") or self._refresh_token
        return await self._lookup()

    def export_session(self) -> str | None:
        if self._identity is None or self._identity.is_anonymous:
            return None
        return self._refresh_token

    async def resume_session(self, token: str) -> Identity:
        """Exchange a persisted refresh token for a fresh session."""
        self._id_token = None
        self._refresh_token = token
        try:
            return await self.reload()
        except ProviderError:
            self._refresh_token = None
            self._identity = None
            raise

    async def enable_offline_persistence(self) -> None:
        msg = "Offline persistence is not available over the REST binding."
        raise OfflinePersistenceError("unimplemented", msg)


__all__ = [
    "FirebaseRestProvider",
    "identity_from_account",
    "translate_transport_error",
]
