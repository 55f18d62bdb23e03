"""Setup flow state machine tests."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import pytest

from gesmind_core.bootstrap import ProviderBootstrap
from gesmind_core.challenge import (
    PRIMARY_SURFACE,
    RECOVERY_SURFACE,
    ChallengeVerifier,
    TokenSourceRenderer,
)
from gesmind_core.flow import EMAIL_PENDING_MESSAGE, RESET_SENT_MESSAGE, SetupFlow
from gesmind_core.memory_provider import InMemoryIdentityProvider
from gesmind_core.provider import FederatedCredential, Identity
from gesmind_core.state import AuthStep, CompleteStep, ConfigStep, SecurityCheckStep
from gesmind_core.storage import CONFIG_KEY, MODE_KEY, SESSION_KEY, MemoryStateStore

if TYPE_CHECKING:
    from .conftest import CompletionRecorder, FakeClock

CONFIG_JSON = '{"apiKey":"x","projectId":"p"}'
PHONE = "+33612345678"


async def _configured(flow: SetupFlow) -> SetupFlow:
    await flow.start()
    assert await flow.submit_config(CONFIG_JSON)
    return flow


async def _signed_in_without_phone(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
) -> SetupFlow:
    provider.add_account(email="a@b.com", password="secret1", email_verified=True)
    await _configured(flow)
    assert await flow.sign_in_or_register_by_email("a@b.com", "secret1")
    return flow


@pytest.mark.asyncio
async def test_unconfigured_start_asks_for_config(flow: SetupFlow) -> None:
    assert await flow.start() == ConfigStep()
    assert flow.completed is False


@pytest.mark.asyncio
async def test_invalid_config_is_reported_inline(
    flow: SetupFlow,
    store: MemoryStateStore,
) -> None:
    await flow.start()

    assert await flow.submit_config('{"apiKey":"x"}') is False

    assert flow.state == ConfigStep()
    assert flow.error == "Provider configuration requires a non-empty projectId."
    assert store.values == {}


@pytest.mark.asyncio
async def test_config_then_sign_in_form(
    flow: SetupFlow,
    store: MemoryStateStore,
    provider: InMemoryIdentityProvider,
) -> None:
    await _configured(flow)

    assert flow.state == AuthStep(mode="LOGIN", method="EMAIL")
    assert store.values[MODE_KEY] == "CLOUD"
    assert CONFIG_KEY in store.values
    assert "sign_in_anonymously" in provider.calls


@pytest.mark.asyncio
async def test_register_password_mismatch_fails_before_network(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
) -> None:
    await _configured(flow)
    await flow.select_mode("REGISTER")
    calls_before = list(provider.calls)

    ok = await flow.sign_in_or_register_by_email("a@b.com", "pw1", "pw2")

    assert ok is False
    assert flow.error == "Passwords mismatch."
    assert provider.calls == calls_before
    assert flow.state == AuthStep(mode="REGISTER")


@pytest.mark.asyncio
async def test_register_sends_verification_and_prefills_email(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
) -> None:
    await _configured(flow)
    await flow.select_mode("REGISTER")

    assert await flow.sign_in_or_register_by_email("new@b.com", "secret1", "secret1")

    assert provider.last_message("verify_email").address == "new@b.com"
    assert flow.state == SecurityCheckStep(missing="PHONE")
    assert flow.prefill_email == "new@b.com"


@pytest.mark.asyncio
async def test_provider_errors_are_shown_verbatim(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
) -> None:
    provider.add_account(email="a@b.com", password="secret1")
    await _configured(flow)

    assert await flow.sign_in_or_register_by_email("a@b.com", "wrong") is False

    assert flow.error == "Firebase: Error (auth/invalid-credential)."
    assert flow.state == AuthStep()


@pytest.mark.asyncio
async def test_complete_identity_finishes_once(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
    completions: CompletionRecorder,
) -> None:
    provider.add_account(
        email="a@b.com",
        password="secret1",
        email_verified=True,
        phone_number=PHONE,
    )
    await _configured(flow)

    assert await flow.sign_in_or_register_by_email("a@b.com", "secret1")

    assert flow.state == CompleteStep(mode="CLOUD")
    assert len(completions.calls) == 1
    mode, identity = completions.calls[0]
    assert mode == "CLOUD"
    assert identity is not None
    assert identity.email == "a@b.com"


@pytest.mark.asyncio
async def test_verified_email_without_phone_shows_phone_linking(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
) -> None:
    await _signed_in_without_phone(flow, provider)

    assert flow.state == SecurityCheckStep(missing="PHONE", link_step="INPUT")
    assert flow.prefill_email is None
    assert flow.verifier.surface_id == RECOVERY_SURFACE


@pytest.mark.asyncio
async def test_recovery_phone_link_completes_exactly_once(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
    completions: CompletionRecorder,
    renderer: TokenSourceRenderer,
) -> None:
    await _signed_in_without_phone(flow, provider)

    session = await flow.request_link_code(PHONE)
    assert session is not None
    assert session.surface_id == RECOVERY_SURFACE
    assert flow.state == SecurityCheckStep(missing="PHONE", link_step="VERIFY")

    assert await flow.confirm_link("000000") is False
    assert flow.error == "Firebase: Error (auth/invalid-verification-code)."
    assert flow.state == SecurityCheckStep(missing="PHONE", link_step="VERIFY")

    assert await flow.confirm_link("123456")
    assert flow.state == CompleteStep(mode="CLOUD")
    assert len(completions.calls) == 1
    assert completions.calls[0][1] is not None
    assert completions.calls[0][1].phone_number == PHONE
    assert renderer.is_rendered(RECOVERY_SURFACE) is False

    assert await flow.confirm_link("123456") is False
    assert len(completions.calls) == 1


@pytest.mark.asyncio
async def test_registered_user_linking_a_phone_completes_once(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
    completions: CompletionRecorder,
) -> None:
    await _configured(flow)
    await flow.select_mode("REGISTER")
    assert await flow.sign_in_or_register_by_email("a@b.com", "secret1", "secret1")
    assert flow.state == SecurityCheckStep(missing="PHONE")

    await flow.request_link_code(PHONE)
    assert await flow.confirm_link("123456")

    assert flow.state == CompleteStep(mode="CLOUD")
    assert len(completions.calls) == 1
    identity = completions.calls[0][1]
    assert identity is not None
    assert identity.phone_number == PHONE
    assert identity.email_verified is False


@pytest.mark.asyncio
async def test_sign_in_and_phone_link_persist_the_session(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
    store: MemoryStateStore,
) -> None:
    await _signed_in_without_phone(flow, provider)
    token = store.values[SESSION_KEY]

    await flow.request_link_code(PHONE)
    assert await flow.confirm_link("123456")

    assert store.values[SESSION_KEY] == token
    provider.sign_out()
    identity = await provider.resume_session(token)
    assert identity.phone_number == PHONE


@pytest.mark.asyncio
async def test_start_again_keeps_pending_verification(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
) -> None:
    await _signed_in_without_phone(flow, provider)
    await flow.request_link_code(PHONE)

    await flow.start()

    assert flow.state == SecurityCheckStep(missing="PHONE", link_step="VERIFY")
    assert flow.recovery_session is not None
    assert await flow.confirm_link("123456")


@pytest.mark.asyncio
async def test_phone_linking_without_email_moves_to_email_linking(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
) -> None:
    await _configured(flow)
    await flow.select_method("PHONE")
    await flow.request_phone_code(PHONE)
    assert await flow.confirm_phone_code("123456")

    assert flow.state == SecurityCheckStep(missing="EMAIL")
    assert flow.verifier.surface_id is None


@pytest.mark.asyncio
async def test_new_phone_code_supersedes_previous_session(flow: SetupFlow) -> None:
    await _configured(flow)
    await flow.select_method("PHONE")
    assert flow.verifier.surface_id == PRIMARY_SURFACE

    old = await flow.request_phone_code(PHONE)
    new = await flow.request_phone_code(PHONE)
    assert old is not None
    assert new is not None

    assert await flow.confirm_phone_code("123456", old) is False
    assert flow.error == "This code request was replaced by a newer one."
    assert flow.primary_session == new

    assert await flow.confirm_phone_code("123456", new)


@pytest.mark.asyncio
async def test_failed_primary_confirmation_discards_session(flow: SetupFlow) -> None:
    await _configured(flow)
    await flow.select_method("PHONE")
    await flow.request_phone_code(PHONE)
    assert flow.state == AuthStep(method="PHONE", code_sent=True)

    assert await flow.confirm_phone_code("999999") is False

    assert flow.error == "Firebase: Error (auth/invalid-verification-code)."
    assert flow.primary_session is None
    assert flow.state == AuthStep(method="PHONE", code_sent=False)


@pytest.mark.asyncio
async def test_change_phone_number_returns_to_entry(flow: SetupFlow) -> None:
    await _configured(flow)
    await flow.select_method("PHONE")
    await flow.request_phone_code(PHONE)

    assert await flow.change_phone_number()

    assert flow.state == AuthStep(method="PHONE")
    assert flow.primary_session is None


@pytest.mark.asyncio
async def test_phone_code_needs_a_challenge_token(
    bootstrap: ProviderBootstrap,
    provider: InMemoryIdentityProvider,
) -> None:
    renderer = TokenSourceRenderer()
    flow = SetupFlow(bootstrap, ChallengeVerifier(renderer))
    await _configured(flow)
    await flow.select_method("PHONE")

    assert await flow.request_phone_code(PHONE) is None
    assert flow.error == "Complete the anti-abuse challenge before requesting a code."
    assert "send_phone_code" not in provider.calls

    renderer.submit_token(PRIMARY_SURFACE, "solved")
    assert await flow.request_phone_code(PHONE) is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("entry", ["primary", "recovery"])
async def test_supplied_challenge_token_is_spent_by_its_own_request(
    entry: str,
    bootstrap: ProviderBootstrap,
    provider: InMemoryIdentityProvider,
) -> None:
    flow = SetupFlow(bootstrap, ChallengeVerifier(TokenSourceRenderer()))
    if entry == "primary":
        await _configured(flow)
        await flow.select_method("PHONE")
        request = flow.request_phone_code
    else:
        await _signed_in_without_phone(flow, provider)
        request = flow.request_link_code

    assert await request("", "token-1") is None
    assert flow.error == "Phone number required"

    assert await request(PHONE, "token-2") is not None
    assert provider.challenge_tokens == ["token-2"]


@pytest.mark.asyncio
async def test_password_reset_missing_email_returns_to_login(flow: SetupFlow) -> None:
    await _configured(flow)
    await flow.select_mode("FORGOT")

    assert await flow.request_password_reset("  ") is False

    assert flow.error == "Email required"
    assert flow.state == AuthStep(mode="LOGIN")


@pytest.mark.asyncio
async def test_password_reset_success_returns_to_login_after_delay(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
    clock: FakeClock,
) -> None:
    await _configured(flow)
    await flow.select_mode("FORGOT")

    assert await flow.request_password_reset("a@b.com")
    assert flow.message == RESET_SENT_MESSAGE
    assert provider.last_message("password_reset").address == "a@b.com"

    clock.advance(3.9)
    assert flow.state == AuthStep(mode="FORGOT")

    clock.advance(0.2)
    assert flow.state == AuthStep(mode="LOGIN")
    assert flow.message is None


@pytest.mark.asyncio
async def test_password_reset_timer_is_cancelled_by_navigation(
    flow: SetupFlow,
    clock: FakeClock,
) -> None:
    await _configured(flow)
    await flow.select_mode("FORGOT")
    await flow.request_password_reset("a@b.com")

    assert await flow.cancel_password_reset()
    await flow.select_mode("REGISTER")
    clock.advance(10)

    assert flow.state == AuthStep(mode="REGISTER")


@pytest.mark.asyncio
async def test_password_reset_provider_error_stays_on_form(
    flow: SetupFlow,
) -> None:
    await _configured(flow)
    await flow.select_mode("FORGOT")

    assert await flow.request_password_reset("not-an-email") is False

    assert flow.error == "Firebase: Error (auth/invalid-email)."
    assert flow.state == AuthStep(mode="FORGOT")


@pytest.mark.asyncio
async def test_password_reset_is_only_reachable_from_login(flow: SetupFlow) -> None:
    await _configured(flow)
    await flow.select_mode("REGISTER")

    assert await flow.select_mode("FORGOT") is False
    assert flow.state == AuthStep(mode="REGISTER")


@pytest.mark.asyncio
async def test_email_linking_polls_until_verified(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
    completions: CompletionRecorder,
) -> None:
    provider.add_account(email="old@b.com", password="secret1", phone_number=PHONE)
    await _configured(flow)
    await flow.sign_in_or_register_by_email("old@b.com", "secret1")

    assert flow.state == SecurityCheckStep(missing="EMAIL")
    assert flow.prefill_email == "old@b.com"

    assert await flow.request_link_email("new@b.com")
    assert flow.state == SecurityCheckStep(missing="EMAIL", email_sent=True)

    assert await flow.confirm_email_verified() is False
    assert flow.error == EMAIL_PENDING_MESSAGE
    assert completions.calls == []

    provider.open_link(provider.last_message("verify_and_change_email").token)
    assert await flow.confirm_email_verified()
    assert flow.state == CompleteStep(mode="CLOUD")
    assert len(completions.calls) == 1


@pytest.mark.asyncio
async def test_federated_sign_in_routes_through_completeness(
    bootstrap: ProviderBootstrap,
    provider: InMemoryIdentityProvider,
    renderer: TokenSourceRenderer,
) -> None:
    provider.add_federated_profile("google-token", email="g@example.com")

    async def prompt() -> FederatedCredential:
        return FederatedCredential(id_token="google-token")

    flow = SetupFlow(bootstrap, ChallengeVerifier(renderer), federated_prompt=prompt)
    await _configured(flow)

    assert await flow.sign_in_federated()
    assert flow.state == SecurityCheckStep(missing="PHONE")
    assert flow.identity is not None
    assert flow.identity.email == "g@example.com"


@pytest.mark.asyncio
async def test_federated_sign_in_without_prompt_is_reported(flow: SetupFlow) -> None:
    await _configured(flow)

    assert await flow.sign_in_federated() is False
    assert flow.error == "Federated sign-in is not available here."


@pytest.mark.asyncio
async def test_local_opt_out_requires_confirmation(
    flow: SetupFlow,
    store: MemoryStateStore,
    completions: CompletionRecorder,
) -> None:
    await flow.start()

    assert await flow.opt_out_to_local(confirmed=False) is False
    assert flow.state == ConfigStep()

    assert await flow.opt_out_to_local(confirmed=True)
    assert flow.state == CompleteStep(mode="LOCAL")
    assert store.values[MODE_KEY] == "LOCAL"
    assert completions.calls == [("LOCAL", None)]


@pytest.mark.asyncio
async def test_persisted_local_mode_completes_at_start(
    store: MemoryStateStore,
    renderer: TokenSourceRenderer,
    completions: CompletionRecorder,
) -> None:
    store.set(MODE_KEY, "LOCAL")
    flow = SetupFlow(ProviderBootstrap(store), ChallengeVerifier(renderer), on_complete=completions)

    await flow.start()

    assert flow.state == CompleteStep(mode="LOCAL")
    assert completions.calls == [("LOCAL", None)]


@pytest.mark.asyncio
async def test_restored_named_session_resumes(
    store: MemoryStateStore,
    provider: InMemoryIdentityProvider,
    renderer: TokenSourceRenderer,
    completions: CompletionRecorder,
) -> None:
    provider.add_account(email="a@b.com", password="secret1", email_verified=True, phone_number=PHONE)
    await provider.sign_in_with_email("a@b.com", "secret1")
    store.set(MODE_KEY, "CLOUD")
    store.set(CONFIG_KEY, CONFIG_JSON)
    flow = SetupFlow(
        ProviderBootstrap(store, lambda _config: provider),
        ChallengeVerifier(renderer),
        on_complete=completions,
    )

    await flow.start()

    assert flow.state == CompleteStep(mode="CLOUD")
    assert "sign_in_anonymously" not in provider.calls
    assert len(completions.calls) == 1


class GatedProvider(InMemoryIdentityProvider):
    """Holds email sign-in until the test releases it."""

    def __init__(self) -> None:
        super().__init__(fixed_code="123456")
        self.gate = asyncio.Event()

    async def sign_in_with_email(self, email: str, password: str) -> Identity:
        await self.gate.wait()
        return await super().sign_in_with_email(email, password)


@pytest.mark.asyncio
async def test_stale_result_after_navigation_is_discarded(
    store: MemoryStateStore,
    renderer: TokenSourceRenderer,
    completions: CompletionRecorder,
) -> None:
    provider = GatedProvider()
    provider.add_account(email="a@b.com", password="secret1", email_verified=True, phone_number=PHONE)
    flow = SetupFlow(
        ProviderBootstrap(store, lambda _config: provider),
        ChallengeVerifier(renderer),
        on_complete=completions,
    )
    await _configured(flow)

    pending = asyncio.create_task(flow.sign_in_or_register_by_email("a@b.com", "secret1"))
    await asyncio.sleep(0)
    await flow.select_mode("REGISTER")
    provider.gate.set()

    assert await pending is False
    assert flow.state == AuthStep(mode="REGISTER")
    assert flow.error is None
    assert completions.calls == []


@pytest.mark.asyncio
async def test_close_disarms_challenge(
    flow: SetupFlow,
    renderer: TokenSourceRenderer,
) -> None:
    await _configured(flow)
    await flow.select_method("PHONE")
    assert renderer.is_rendered(PRIMARY_SURFACE) is True

    flow.close()

    assert renderer.is_rendered(PRIMARY_SURFACE) is False


@pytest.mark.asyncio
async def test_unexpected_errors_are_contained(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    await _configured(flow)

    async def explode(_email: str, _password: str) -> Identity:
        msg = "provider bug"
        raise KeyError(msg)

    monkeypatch.setattr(provider, "sign_in_with_email", explode)
    caplog.set_level(logging.ERROR, logger="gesmind_core.flow")

    assert await flow.sign_in_or_register_by_email("a@b.com", "secret1") is False
    assert flow.error == "Something went wrong. Please try again."
    assert "Unexpected failure in sign_in_or_register_by_email" in caplog.text


@pytest.mark.asyncio
async def test_secrets_stay_out_of_logs(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.DEBUG)
    await _signed_in_without_phone(flow, provider)
    await flow.request_link_code(PHONE)
    await flow.confirm_link("000000")
    await flow.confirm_link("123456")

    for secret in ("secret1", "123456", "challenge-token"):
        assert secret not in caplog.text


@pytest.mark.asyncio
async def test_snapshot_reports_state_and_identity(
    flow: SetupFlow,
    provider: InMemoryIdentityProvider,
) -> None:
    await _signed_in_without_phone(flow, provider)

    snapshot = flow.snapshot()

    assert snapshot["state"] == {
        "step": "SECURITY_CHECK",
        "missing": "PHONE",
        "link_step": "INPUT",
        "email_sent": False,
    }
    assert snapshot["identity"]["email"] == "a@b.com"
    assert snapshot["completed"] is False
    assert snapshot["error"] is None
