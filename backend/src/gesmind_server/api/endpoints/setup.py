"""Setup flow endpoints.

Every endpoint answers with the flow snapshot. A failed operation answers
400 with the same snapshot under ``detail``; its ``error`` field carries the
user-facing message.
"""

import json
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from gesmind_core import FederatedCredential, SetupFlow

from gesmind_server.core.setup import SetupService, get_setup_service
from gesmind_server.models.payloads import (
    CodePayload,
    ConfigPayload,
    EmailAuthPayload,
    EmailPayload,
    FederatedPayload,
    LocalModePayload,
    NavigationPayload,
    PasswordResetPayload,
    PhoneCodePayload,
)

router = APIRouter(prefix="/setup", tags=["setup"])


async def _started_service() -> SetupService:
    service = get_setup_service()
    await service.ensure_started()
    return service


Service = Annotated[SetupService, Depends(_started_service)]


def _respond(flow: SetupFlow) -> dict[str, Any]:
    snapshot = flow.snapshot()
    if flow.error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=snapshot)
    return snapshot


@router.get("/state")
async def get_state_endpoint(service: Service) -> dict[str, Any]:
    """Return the current step without changing it."""
    return service.flow.snapshot()


@router.post("/config")
async def submit_config_endpoint(payload: ConfigPayload, service: Service) -> dict[str, Any]:
    """Validate, persist and connect the pasted provider configuration."""
    raw = payload.raw if payload.raw is not None else ""
    if payload.config is not None:
        raw = json.dumps(payload.config)
    await service.flow.submit_config(raw)
    return _respond(service.flow)


@router.post("/local")
async def local_mode_endpoint(payload: LocalModePayload, service: Service) -> dict[str, Any]:
    """Switch to local-only mode once the user confirmed."""
    await service.flow.opt_out_to_local(payload.confirmed)
    return _respond(service.flow)


@router.post("/navigation")
async def navigation_endpoint(payload: NavigationPayload, service: Service) -> dict[str, Any]:
    flow = service.flow
    if payload.action == "select_mode":
        if payload.mode is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail="mode is required for select_mode",
            )
        await flow.select_mode(payload.mode)
    elif payload.action == "select_method":
        if payload.method is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail="method is required for select_method",
            )
        await flow.select_method(payload.method)
    elif payload.action == "cancel_password_reset":
        await flow.cancel_password_reset()
    else:
        await flow.change_phone_number()
    return _respond(flow)


@router.post("/auth/federated")
async def federated_endpoint(payload: FederatedPayload, service: Service) -> dict[str, Any]:
    """Sign in with the credential the browser obtained from the popup."""
    service.offer_credential(
        FederatedCredential(
            provider_id=payload.provider_id,
            id_token=payload.id_token,
            access_token=payload.access_token,
        ),
    )
    await service.flow.sign_in_federated()
    return _respond(service.flow)


@router.post("/auth/email")
async def email_auth_endpoint(payload: EmailAuthPayload, service: Service) -> dict[str, Any]:
    await service.flow.sign_in_or_register_by_email(
        payload.email,
        payload.password,
        payload.confirm_password,
    )
    return _respond(service.flow)


@router.post("/auth/password-reset")
async def password_reset_endpoint(
    payload: PasswordResetPayload,
    service: Service,
) -> dict[str, Any]:
    await service.flow.request_password_reset(payload.email)
    return _respond(service.flow)


@router.post("/auth/phone/code")
async def phone_code_endpoint(payload: PhoneCodePayload, service: Service) -> dict[str, Any]:
    await service.flow.request_phone_code(payload.phone_number, payload.challenge_token)
    return _respond(service.flow)


@router.post("/auth/phone/confirm")
async def phone_confirm_endpoint(payload: CodePayload, service: Service) -> dict[str, Any]:
    await service.flow.confirm_phone_code(payload.code)
    return _respond(service.flow)


@router.post("/security/phone/code")
async def link_code_endpoint(payload: PhoneCodePayload, service: Service) -> dict[str, Any]:
    await service.flow.request_link_code(payload.phone_number, payload.challenge_token)
    return _respond(service.flow)


@router.post("/security/phone/confirm")
async def link_confirm_endpoint(payload: CodePayload, service: Service) -> dict[str, Any]:
    await service.flow.confirm_link(payload.code)
    return _respond(service.flow)


@router.post("/security/email")
async def link_email_endpoint(payload: EmailPayload, service: Service) -> dict[str, Any]:
    await service.flow.request_link_email(payload.email)
    return _respond(service.flow)


@router.post("/security/email/check")
async def email_check_endpoint(service: Service) -> dict[str, Any]:
    """Re-check the identity after the user followed the emailed link."""
    await service.flow.confirm_email_verified()
    return _respond(service.flow)
