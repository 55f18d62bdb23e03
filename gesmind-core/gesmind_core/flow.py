"""Setup state machine: configuration, primary sign-in and recovery linking."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar

from .bootstrap import ProviderBootstrap
from .challenge import PRIMARY_SURFACE, RECOVERY_SURFACE, ChallengeError, ChallengeVerifier
from .provider import FederatedPrompt, Identity, IdentityProvider, ProviderError
from .provider_config import ConfigurationError
from .state import (
    AuthMethod,
    AuthMode,
    AuthStep,
    CompleteStep,
    ConfigStep,
    FlowState,
    OperatingMode,
    SecurityCheckStep,
    identity_to_dict,
    missing_channel,
    state_to_dict,
)
from .verification import VerificationError, VerificationSession, VerificationSlot

CompletionCallback = Callable[[OperatingMode, Identity | None], None]

_DEFAULT_RESET_RETURN_SECONDS = 4.0
_UNEXPECTED_ERROR_MESSAGE = "Something went wrong. Please try again."
RESET_SENT_MESSAGE = "Password reset email sent. Check your inbox."
EMAIL_PENDING_MESSAGE = "Email not verified yet."

logger = logging.getLogger(__name__)


class FlowError(Exception):
    """Input or step problem detected before any provider call."""

    def __init__(self, code: str, detail: str) -> None:
        """Create a flow error with a stable code."""
        super().__init__(detail)
        self.code = code
        self.detail = detail


class _Superseded(Exception):
    """A provider call returned after the flow moved on."""


def password_reset_return_seconds() -> float:
    """Return the delay before FORGOT falls back to LOGIN."""
    raw = os.environ.get("GESMIND_PASSWORD_RESET_RETURN_SECONDS")
    if not raw or not raw.strip():
        return _DEFAULT_RESET_RETURN_SECONDS
    try:
        return max(0.0, float(raw))
    except ValueError:
        return _DEFAULT_RESET_RETURN_SECONDS


R = TypeVar("R")
T = TypeVar("T")


def flow_operation(
    failure: R,
) -> Callable[[Callable[..., Awaitable[R]]], Callable[..., Awaitable[R]]]:
    """Turn every failure of a flow operation into ``SetupFlow.error``.

    The wrapped operation returns ``failure`` instead of raising, so the
    state machine never leaves the current step on an error it did not
    handle itself.
    """

    def decorator(func: Callable[..., Awaitable[R]]) -> Callable[..., Awaitable[R]]:
        @wraps(func)
        async def wrapper(self: SetupFlow, *args: Any, **kwargs: Any) -> R:
            self.settle()
            self.error = None
            self.message = None
            try:
                return await func(self, *args, **kwargs)
            except _Superseded:
                logger.debug("Discarded stale result of %s", func.__name__)
            except ProviderError as e:
                logger.info("%s rejected by provider: %s", func.__name__, e.code)
                self.error = e.detail
            except (ChallengeError, VerificationError, FlowError, ConfigurationError) as e:
                logger.info("%s failed: %s", func.__name__, e.code)
                self.error = e.detail
            except Exception:
                logger.exception("Unexpected failure in %s", func.__name__)
                self.error = _UNEXPECTED_ERROR_MESSAGE
            return failure

        return wrapper

    return decorator


class SetupFlow:
    """Drives a user from first run to a complete identity or local mode.

    Every transition bumps an epoch; provider results that come back after
    the epoch moved are dropped. The challenge surface matching the current
    step is armed on each transition and disarmed when the step no longer
    shows it, on completion, and on ``close``.
    """

    def __init__(
        self,
        bootstrap: ProviderBootstrap,
        verifier: ChallengeVerifier,
        *,
        on_complete: CompletionCallback | None = None,
        federated_prompt: FederatedPrompt | None = None,
        reset_return_delay: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bootstrap = bootstrap
        self.verifier = verifier
        self.on_complete = on_complete
        self.federated_prompt = federated_prompt
        self.reset_return_delay = (
            password_reset_return_seconds() if reset_return_delay is None else reset_return_delay
        )
        self._clock = clock
        self._state: FlowState = ConfigStep()
        self._epoch = 0
        self._reset_deadline: float | None = None
        self._primary = VerificationSlot(PRIMARY_SURFACE)
        self._recovery = VerificationSlot(RECOVERY_SURFACE)
        self.identity: Identity | None = None
        self.error: str | None = None
        self.message: str | None = None
        self.prefill_email: str | None = None
        self.completed_mode: OperatingMode | None = None

    # -- cursor ------------------------------------------------------------

    @property
    def state(self) -> FlowState:
        self.settle()
        return self._state

    @property
    def completed(self) -> bool:
        return self.completed_mode is not None

    @property
    def primary_session(self) -> VerificationSession | None:
        return self._primary.current

    @property
    def recovery_session(self) -> VerificationSession | None:
        return self._recovery.current

    def settle(self) -> None:
        """Apply the password-reset return once its delay has elapsed."""
        if self._reset_deadline is None or self._clock() < self._reset_deadline:
            return
        self._reset_deadline = None
        self.message = None
        if isinstance(self._state, AuthStep) and self._state.mode == "FORGOT":
            self._transition(AuthStep(mode="LOGIN"))

    def snapshot(self) -> dict[str, Any]:
        state = self.state
        return {
            "state": state_to_dict(state),
            "error": self.error,
            "message": self.message,
            "prefill_email": self.prefill_email,
            "identity": identity_to_dict(self.identity),
            "completed": self.completed,
        }

    def _transition(self, state: FlowState) -> None:
        self._epoch += 1
        self._reset_deadline = None
        self._state = state
        self._mount_challenge()

    def _mount_challenge(self) -> None:
        state = self._state
        surface = None
        if isinstance(state, AuthStep) and state.method == "PHONE":
            surface = PRIMARY_SURFACE
        elif isinstance(state, SecurityCheckStep) and state.missing == "PHONE":
            surface = RECOVERY_SURFACE
        if surface is None:
            self.verifier.disarm()
            return
        try:
            self.verifier.arm(surface)
        except ChallengeError:
            # retried when a code is requested
            pass

    async def _current(self, epoch: int, awaitable: Awaitable[T]) -> T:
        try:
            result = await awaitable
        except Exception:
            if self._epoch != epoch:
                raise _Superseded from None
            raise
        if self._epoch != epoch:
            raise _Superseded
        return result

    async def _challenge_token(self, supplied: str | None) -> str:
        if supplied and supplied.strip():
            return supplied.strip()
        return await self.verifier.token()

    def _provider(self) -> IdentityProvider:
        provider = self.bootstrap.provider
        if provider is None:
            msg = "Provider configuration missing."
            raise FlowError("provider-missing", msg)
        return provider

    def _auth_step(self, *modes: AuthMode, method: AuthMethod | None = None) -> AuthStep:
        state = self._state
        if (
            not isinstance(state, AuthStep)
            or state.mode not in modes
            or (method is not None and state.method != method)
        ):
            msg = "This action is not available on the current step."
            raise FlowError("invalid-step", msg)
        return state

    def _security_step(self, missing: str) -> SecurityCheckStep:
        state = self._state
        if not isinstance(state, SecurityCheckStep) or state.missing != missing:
            msg = "This action is not available on the current step."
            raise FlowError("invalid-step", msg)
        return state

    def _after_authentication(self, identity: Identity) -> None:
        """Completeness decision shared by every sign-in method."""
        self.identity = identity
        self.error = None
        self.bootstrap.remember_session()
        channel = missing_channel(identity)
        if channel is None:
            self._complete("CLOUD", identity)
            return
        if identity.email and not identity.email_verified:
            self.prefill_email = identity.email
        self._transition(SecurityCheckStep(missing=channel))

    def _complete(self, mode: OperatingMode, identity: Identity | None) -> None:
        if self.completed_mode is not None:
            return
        self.completed_mode = mode
        self._primary.discard()
        self._recovery.discard()
        self._transition(CompleteStep(mode=mode))
        logger.info("Setup completed in %s mode", mode)
        if self.on_complete is not None:
            self.on_complete(mode, identity)

    def _enter_cloud(self) -> None:
        provider = self._provider()
        identity = provider.current_identity
        if identity is not None and not identity.is_anonymous:
            self._after_authentication(identity)
        else:
            self._transition(AuthStep())

    # -- bootstrap ---------------------------------------------------------

    @flow_operation(None)
    async def start(self) -> FlowState | None:
        """Pick the first step from persisted state and any resumed session.

        A no-op once the flow has left the config step.
        """
        if self.completed or not isinstance(self._state, ConfigStep):
            return self._state
        mode = await self.bootstrap.start()
        if mode is None:
            self._transition(ConfigStep())
        elif mode == "LOCAL":
            self._complete("LOCAL", None)
        else:
            self._enter_cloud()
        return self._state

    @flow_operation(False)
    async def submit_config(self, raw: str) -> bool:
        if not isinstance(self._state, ConfigStep):
            msg = "This action is not available on the current step."
            raise FlowError("invalid-step", msg)
        epoch = self._epoch
        await self._current(epoch, self.bootstrap.configure(raw))
        self._enter_cloud()
        return True

    @flow_operation(False)
    async def opt_out_to_local(self, confirmed: bool) -> bool:
        """Switch to local-only mode once the user accepted that data stays here."""
        if self.completed or not confirmed:
            return False
        self.bootstrap.enter_local_mode()
        self.identity = None
        self._complete("LOCAL", None)
        return True

    # -- navigation --------------------------------------------------------

    @flow_operation(False)
    async def select_mode(self, mode: AuthMode) -> bool:
        state = self._auth_step("LOGIN", "REGISTER", "FORGOT")
        if mode == "FORGOT" and state.mode != "LOGIN":
            msg = "Password reset is only reachable from sign-in."
            raise FlowError("invalid-step", msg)
        method = "EMAIL" if mode == "FORGOT" else state.method
        self._primary.discard()
        self._transition(AuthStep(mode=mode, method=method))
        return True

    @flow_operation(False)
    async def select_method(self, method: AuthMethod) -> bool:
        state = self._auth_step("LOGIN", "REGISTER")
        self._primary.discard()
        self._transition(AuthStep(mode=state.mode, method=method))
        return True

    @flow_operation(False)
    async def cancel_password_reset(self) -> bool:
        self._auth_step("FORGOT")
        self._transition(AuthStep(mode="LOGIN"))
        return True

    @flow_operation(False)
    async def change_phone_number(self) -> bool:
        """Abandon the dispatched code and go back to phone number entry."""
        state = self._state
        if isinstance(state, AuthStep) and state.code_sent:
            self._primary.discard()
            self._transition(AuthStep(mode=state.mode, method="PHONE"))
            return True
        if isinstance(state, SecurityCheckStep) and state.link_step == "VERIFY":
            self._recovery.discard()
            self._transition(SecurityCheckStep(missing="PHONE"))
            return True
        msg = "No verification code is pending."
        raise FlowError("invalid-step", msg)

    # -- primary authentication ---------------------------------------------

    @flow_operation(False)
    async def sign_in_federated(self) -> bool:
        self._auth_step("LOGIN", "REGISTER")
        provider = self._provider()
        if self.federated_prompt is None:
            msg = "Federated sign-in is not available here."
            raise FlowError("federated-unavailable", msg)
        epoch = self._epoch
        credential = await self._current(epoch, self.federated_prompt())
        identity = await self._current(epoch, provider.sign_in_with_federated(credential))
        self._after_authentication(identity)
        return True

    @flow_operation(False)
    async def sign_in_or_register_by_email(
        self,
        email: str,
        password: str,
        confirm_password: str | None = None,
    ) -> bool:
        """Sign in, or create the account and send its verification email."""
        state = self._auth_step("LOGIN", "REGISTER", method="EMAIL")
        if state.mode == "REGISTER" and password != confirm_password:
            msg = "Passwords mismatch."
            raise FlowError("password-mismatch", msg)
        if not email.strip():
            msg = "Email required"
            raise FlowError("missing-email", msg)
        provider = self._provider()
        epoch = self._epoch
        if state.mode == "LOGIN":
            identity = await self._current(
                epoch,
                provider.sign_in_with_email(email.strip(), password),
            )
        else:
            identity = await self._current(
                epoch,
                provider.create_user_with_email(email.strip(), password),
            )
            await self._current(epoch, provider.send_email_verification())
        self._after_authentication(identity)
        return True

    @flow_operation(False)
    async def request_password_reset(self, email: str) -> bool:
        """Send a reset email; the flow returns to LOGIN after the delay."""
        self._auth_step("FORGOT")
        if not email.strip():
            self._transition(AuthStep(mode="LOGIN"))
            msg = "Email required"
            raise FlowError("missing-email", msg)
        provider = self._provider()
        epoch = self._epoch
        await self._current(epoch, provider.send_password_reset_email(email.strip()))
        self.message = RESET_SENT_MESSAGE
        self._reset_deadline = self._clock() + self.reset_return_delay
        return True

    @flow_operation(None)
    async def request_phone_code(
        self,
        phone_number: str,
        challenge_token: str | None = None,
    ) -> VerificationSession | None:
        """Dispatch a sign-in code.

        A host-supplied ``challenge_token`` is used for this request only;
        without one the armed widget supplies the token.
        """
        state = self._auth_step("LOGIN", "REGISTER", method="PHONE")
        if not phone_number.strip():
            msg = "Phone number required"
            raise FlowError("missing-phone", msg)
        provider = self._provider()
        self.verifier.arm(PRIMARY_SURFACE)
        epoch = self._epoch
        token = await self._current(epoch, self._challenge_token(challenge_token))
        verification_id = await self._current(
            epoch,
            provider.send_phone_code(phone_number.strip(), token),
        )
        session = self._primary.replace(phone_number.strip(), verification_id)
        self._transition(AuthStep(mode=state.mode, method="PHONE", code_sent=True))
        return session

    @flow_operation(False)
    async def confirm_phone_code(
        self,
        code: str,
        session: VerificationSession | None = None,
    ) -> bool:
        """Confirm an OTP; the session is spent whatever the outcome."""
        state = self._auth_step("LOGIN", "REGISTER", method="PHONE")
        if not code.strip():
            msg = "Verification code required"
            raise FlowError("missing-code", msg)
        provider = self._provider()
        taken = self._primary.take(session)
        epoch = self._epoch
        try:
            identity = await self._current(
                epoch,
                provider.confirm_phone_code(taken.verification_id, code.strip()),
            )
        except ProviderError:
            self._transition(AuthStep(mode=state.mode, method="PHONE"))
            raise
        self._after_authentication(identity)
        return True

    # -- recovery channel linking -------------------------------------------

    @flow_operation(None)
    async def request_link_code(
        self,
        phone_number: str,
        challenge_token: str | None = None,
    ) -> VerificationSession | None:
        self._security_step("PHONE")
        if not phone_number.strip():
            msg = "Phone number required"
            raise FlowError("missing-phone", msg)
        provider = self._provider()
        self.verifier.arm(RECOVERY_SURFACE)
        epoch = self._epoch
        token = await self._current(epoch, self._challenge_token(challenge_token))
        verification_id = await self._current(
            epoch,
            provider.send_phone_code(phone_number.strip(), token),
        )
        session = self._recovery.replace(phone_number.strip(), verification_id)
        self._transition(SecurityCheckStep(missing="PHONE", link_step="VERIFY"))
        return session

    @flow_operation(False)
    async def confirm_link(
        self,
        code: str,
        session: VerificationSession | None = None,
    ) -> bool:
        """Attach the phone to the signed-in identity and finish.

        Failures stay on VERIFY with the session kept for another attempt.
        """
        state = self._security_step("PHONE")
        if state.link_step != "VERIFY":
            msg = "Request a verification code first."
            raise VerificationError("no-session", msg)
        if not code.strip():
            msg = "Verification code required"
            raise FlowError("missing-code", msg)
        provider = self._provider()
        pending = self._recovery.peek(session)
        epoch = self._epoch
        await self._current(
            epoch,
            provider.link_phone_number(pending.verification_id, code.strip()),
        )
        self._recovery.discard()
        identity = await self._current(epoch, provider.reload())
        self.identity = identity
        self.bootstrap.remember_session()
        self._complete("CLOUD", identity)
        return True

    @flow_operation(False)
    async def request_link_email(self, email: str) -> bool:
        self._security_step("EMAIL")
        if not email.strip():
            msg = "Email required"
            raise FlowError("missing-email", msg)
        provider = self._provider()
        epoch = self._epoch
        await self._current(epoch, provider.verify_before_update_email(email.strip()))
        self.prefill_email = email.strip()
        self._transition(SecurityCheckStep(missing="EMAIL", email_sent=True))
        return True

    @flow_operation(False)
    async def confirm_email_verified(self) -> bool:
        """Re-fetch the identity and finish once the email link was followed."""
        self._security_step("EMAIL")
        provider = self._provider()
        epoch = self._epoch
        identity = await self._current(epoch, provider.reload())
        self.identity = identity
        if missing_channel(identity) == "EMAIL":
            self.error = EMAIL_PENDING_MESSAGE
            return False
        self._after_authentication(identity)
        return True

    def close(self) -> None:
        """Tear the flow down; pending provider results are discarded."""
        self._epoch += 1
        self._reset_deadline = None
        self._primary.discard()
        self._recovery.discard()
        self.verifier.disarm()


__all__ = [
    "EMAIL_PENDING_MESSAGE",
    "RESET_SENT_MESSAGE",
    "CompletionCallback",
    "FlowError",
    "SetupFlow",
    "flow_operation",
    "password_reset_return_seconds",
]
