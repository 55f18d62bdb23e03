"""Process-wide setup flow shared by the API endpoints.

One flow per process: the browser shell is assumed to run in a single tab.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from gesmind_core import (
    ChallengeVerifier,
    FederatedCredential,
    Identity,
    ProviderError,
    SetupFlow,
    TokenSourceRenderer,
    get_bootstrap,
)
from gesmind_core.provider import provider_message
from gesmind_core.state import OperatingMode

logger = logging.getLogger(__name__)


class SetupService:
    """Holds the flow, its challenge renderer and the pending federated credential."""

    def __init__(self) -> None:
        self.renderer = TokenSourceRenderer()
        self._credential: FederatedCredential | None = None
        self._started = False
        self.flow = SetupFlow(
            get_bootstrap(),
            ChallengeVerifier(self.renderer),
            on_complete=self._on_complete,
            federated_prompt=self._federated_credential,
        )

    async def ensure_started(self) -> SetupFlow:
        """Start the flow on first use and return it."""
        if not self._started:
            self._started = True
            await self.flow.start()
        return self.flow

    def offer_credential(self, credential: FederatedCredential) -> None:
        """Hand the popup result to the next federated sign-in."""
        self._credential = credential

    async def _federated_credential(self) -> FederatedCredential:
        credential, self._credential = self._credential, None
        if credential is None or not (credential.id_token or credential.access_token):
            code = "auth/popup-closed-by-user"
            raise ProviderError(code, provider_message(code))
        return credential

    @staticmethod
    def _on_complete(mode: OperatingMode, identity: Identity | None) -> None:
        logger.info(
            "Setup finished in %s mode (identity %s)",
            mode,
            identity.uid if identity else "none",
        )

    def close(self) -> None:
        self.flow.close()


@lru_cache(maxsize=1)
def get_setup_service() -> SetupService:
    """Create and cache the process-wide setup service."""
    return SetupService()


def clear_setup_service_cache() -> None:
    """Close and forget the cached setup service."""
    if get_setup_service.cache_info().currsize:
        get_setup_service().close()
    get_setup_service.cache_clear()


__all__ = [
    "SetupService",
    "clear_setup_service_cache",
    "get_setup_service",
]
