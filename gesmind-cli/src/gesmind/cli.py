"""CLI entry point using Typer."""

import asyncio
import json
import os
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer
from gesmind_core import (
    CONFIG_KEY,
    MODE_KEY,
    AuthStep,
    ChallengeVerifier,
    ConfigStep,
    FederatedCredential,
    FileStateStore,
    Identity,
    ProviderBootstrap,
    ProviderFactory,
    SecurityCheckStep,
    SetupFlow,
    TokenSourceRenderer,
    default_provider_factory,
    parse_provider_config,
    preconfigured_from_env,
)
from gesmind_core.state import OperatingMode

from gesmind.logging_utils import setup_logging

app = typer.Typer(help="Gesmind CLI - account access setup")
config_app = typer.Typer(help="Provider configuration and operating mode")

app.add_typer(config_app, name="config")

LOCAL_MODE_PROMPT = "Offline Mode: Data is local only. Continue?"
_AUTH_ACTIONS = ("login", "register", "phone", "google", "forgot", "local")


def _state_store() -> FileStateStore:
    return FileStateStore()


def _provider_factory() -> ProviderFactory:
    return default_provider_factory


def _bootstrap() -> ProviderBootstrap:
    return ProviderBootstrap(
        _state_store(),
        _provider_factory(),
        preconfigured=preconfigured_from_env(),
    )


R = TypeVar("R")


def handle_cli_errors(func: Callable[..., R]) -> Callable[..., R]:
    """Handle common CLI errors.

    Wraps CLI commands to catch known exceptions and print user-friendly error messages.

    Args:
        func: The CLI command function to wrap.

    Returns:
        The wrapped function with error handling.

    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> R:
        try:
            return func(*args, **kwargs)
        except (typer.Exit, typer.Abort):
            raise
        except Exception as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(code=1) from e

    return wrapper


def _read_config_input(json_text: str | None, file: Path | None) -> str:
    if (json_text is None) == (file is None):
        msg = "Provide exactly one of --json or --file"
        raise typer.BadParameter(msg)
    if file is not None:
        return file.read_text(encoding="utf-8")
    return json_text or ""


@config_app.command("show")
@handle_cli_errors
def cmd_config_show() -> None:
    """Show the persisted operating mode and provider configuration."""
    setup_logging()
    store = _state_store()
    raw = store.get(CONFIG_KEY)
    config = parse_provider_config(raw) if raw else None
    typer.echo(
        json.dumps(
            {
                "mode": store.get(MODE_KEY),
                "project_id": config.project_id if config else None,
                "api_key_fingerprint": config.api_key_fingerprint if config else None,
                "emulator_host": config.emulator_host if config else None,
                "state_file": str(store.path),
            },
            indent=2,
        ),
    )


@config_app.command("set")
@handle_cli_errors
def cmd_config_set(
    json_text: Annotated[
        str | None,
        typer.Option("--json", help="Provider config JSON (apiKey, projectId, ...)"),
    ] = None,
    file: Annotated[
        Path | None,
        typer.Option(help="File containing the provider config JSON"),
    ] = None,
) -> None:
    """Validate, persist and connect a provider configuration."""
    setup_logging()
    raw = _read_config_input(json_text, file)
    config = parse_provider_config(raw)
    bootstrap = _bootstrap()
    asyncio.run(bootstrap.configure(config))
    typer.echo(
        f"Saved provider config for project {config.project_id} "
        f"(api key {config.api_key_fingerprint}) to {bootstrap.store.path}",
    )


@config_app.command("local")
@handle_cli_errors
def cmd_config_local(
    yes: Annotated[
        bool,
        typer.Option("--yes", help="Skip the confirmation prompt"),
    ] = False,
) -> None:
    """Switch to local-only mode; data stays on this device."""
    setup_logging()
    if not yes:
        typer.confirm(LOCAL_MODE_PROMPT, abort=True)
    _bootstrap().enter_local_mode()
    typer.echo("Local mode enabled; data stays on this device.")


def _challenge_token(_surface_id: str) -> str:
    token = os.environ.get("GESMIND_CHALLENGE_TOKEN")
    if token and token.strip():
        return token.strip()
    return typer.prompt("Anti-abuse challenge token", hide_input=True)


async def _prompt_federated_credential() -> FederatedCredential:
    id_token = typer.prompt("Google ID token", hide_input=True)
    return FederatedCredential(provider_id="google.com", id_token=id_token.strip())


def _optional(text: str, default: str = "") -> str:
    return typer.prompt(text, default=default, show_default=bool(default)).strip()


def _report(flow: SetupFlow) -> None:
    if flow.error:
        typer.echo(f"Error: {flow.error}", err=True)
    if flow.message:
        typer.echo(flow.message)


async def _config_step(flow: SetupFlow) -> None:
    raw = typer.prompt("Paste provider config JSON (or 'local' for offline mode)")
    if raw.strip().lower() == "local":
        await flow.opt_out_to_local(typer.confirm(LOCAL_MODE_PROMPT))
        return
    await flow.submit_config(raw)


async def _email_form(flow: SetupFlow, state: AuthStep) -> None:
    action = typer.prompt(f"Choose [{'/'.join(_AUTH_ACTIONS)}]", default="login").strip().lower()
    if action == "local":
        await flow.opt_out_to_local(typer.confirm(LOCAL_MODE_PROMPT))
    elif action == "phone":
        await flow.select_method("PHONE")
    elif action == "google":
        await flow.sign_in_federated()
    elif action == "forgot":
        if state.mode != "LOGIN":
            await flow.select_mode("LOGIN")
        await flow.select_mode("FORGOT")
    elif action in {"login", "register"}:
        mode = "LOGIN" if action == "login" else "REGISTER"
        if state.mode != mode:
            await flow.select_mode(mode)
        email = typer.prompt("Email")
        password = typer.prompt("Password", hide_input=True)
        confirm = typer.prompt("Confirm password", hide_input=True) if mode == "REGISTER" else None
        await flow.sign_in_or_register_by_email(email, password, confirm)
    else:
        typer.echo(f"Unknown choice: {action}", err=True)


async def _auth_step(flow: SetupFlow, state: AuthStep) -> None:
    if state.mode == "FORGOT":
        email = _optional("Email for the password reset link")
        if await flow.request_password_reset(email):
            _report(flow)
            await asyncio.sleep(flow.reset_return_delay)
        return
    if state.method == "PHONE" and state.code_sent:
        code = _optional("Verification code (blank to change number)")
        if code:
            await flow.confirm_phone_code(code)
        else:
            await flow.change_phone_number()
        return
    if state.method == "PHONE":
        phone = _optional("Phone number in E.164 format (blank to use email)")
        if phone:
            await flow.request_phone_code(phone)
        else:
            await flow.select_method("EMAIL")
        return
    await _email_form(flow, state)


async def _security_step(flow: SetupFlow, state: SecurityCheckStep) -> None:
    if state.missing == "PHONE":
        if state.link_step == "INPUT":
            typer.echo("Secure your account: add a phone number.")
            await flow.request_link_code(typer.prompt("Phone number in E.164 format"))
            return
        code = _optional("Verification code (blank to change number)")
        if code:
            await flow.confirm_link(code)
        else:
            await flow.change_phone_number()
        return
    if not state.email_sent:
        typer.echo("Secure your account: verify an email address.")
        await flow.request_link_email(_optional("Email", flow.prefill_email or ""))
        return
    answer = _optional("Press Enter once you followed the emailed link, or type another email")
    if answer:
        await flow.request_link_email(answer)
    else:
        await flow.confirm_email_verified()


async def _run_setup() -> tuple[OperatingMode, Identity | None]:
    outcome: list[tuple[OperatingMode, Identity | None]] = []
    flow = SetupFlow(
        _bootstrap(),
        ChallengeVerifier(TokenSourceRenderer(_challenge_token)),
        on_complete=lambda mode, identity: outcome.append((mode, identity)),
        federated_prompt=_prompt_federated_credential,
    )
    await flow.start()
    try:
        while not flow.completed:
            state = flow.state
            _report(flow)
            if isinstance(state, ConfigStep):
                await _config_step(flow)
            elif isinstance(state, AuthStep):
                await _auth_step(flow, state)
            elif isinstance(state, SecurityCheckStep):
                await _security_step(flow, state)
    finally:
        flow.close()
    return outcome[0]


@app.command("setup")
@handle_cli_errors
def cmd_setup() -> None:
    """Walk through configuration, sign-in and recovery channel setup."""
    setup_logging()
    mode, identity = asyncio.run(_run_setup())
    if mode == "LOCAL":
        typer.echo("Setup complete: local mode, data stays on this device.")
        return
    who = (identity.email or identity.phone_number) if identity else None
    typer.echo(f"Setup complete: signed in as {who}.")


if __name__ == "__main__":
    app()
