"""Process-wide provider bootstrap and operating mode.

Initialization order: state store, provider factory, persisted or
pre-configured config, provider handle, resumed or anonymous session,
offline cache, readiness event. ``clear_bootstrap_cache`` is the single
teardown entry point.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Mapping
from functools import lru_cache
from typing import Any

from .firebase import FirebaseRestProvider
from .provider import IdentityProvider, OfflinePersistenceError, ProviderError
from .provider_config import ConfigurationError, ProviderConfig, parse_provider_config
from .state import OperatingMode
from .storage import CONFIG_KEY, MODE_KEY, SESSION_KEY, FileStateStore, StateStore

ProviderFactory = Callable[[ProviderConfig], IdentityProvider]

logger = logging.getLogger(__name__)

# offline cache failures that only degrade the session
_DEGRADED_OFFLINE_CODES = {"failed-precondition", "unimplemented"}


def default_provider_factory(config: ProviderConfig) -> IdentityProvider:
    return FirebaseRestProvider(config)


def preconfigured_from_env() -> str | None:
    """Return the operator-supplied config from ``GESMIND_PROVIDER_CONFIG_JSON``."""
    raw = os.environ.get("GESMIND_PROVIDER_CONFIG_JSON")
    if raw is None or not raw.strip():
        return None
    return raw


class ProviderBootstrap:
    """Owns the shared provider handle, its config and the operating mode."""

    def __init__(
        self,
        store: StateStore,
        provider_factory: ProviderFactory | None = None,
        *,
        preconfigured: str | None = None,
    ) -> None:
        self.store = store
        self._provider_factory = provider_factory or default_provider_factory
        self._preconfigured = preconfigured
        self._mode: OperatingMode | None = None
        self._provider: IdentityProvider | None = None
        self._config: ProviderConfig | None = None
        self._ready = asyncio.Event()
        self._started = False

    @property
    def mode(self) -> OperatingMode | None:
        return self._mode

    @property
    def provider(self) -> IdentityProvider | None:
        return self._provider

    @property
    def config(self) -> ProviderConfig | None:
        return self._config

    @property
    def is_configured(self) -> bool:
        return self._mode is not None

    async def start(self) -> OperatingMode | None:
        """Restore the mode from persisted state; runs once per bootstrap.

        A persisted LOCAL mode wins. Otherwise the operator's pre-configured
        config is tried before the stored one. Unusable configs are logged and
        leave the bootstrap unconfigured.
        """
        if self._started:
            return self._mode
        self._started = True

        if self.store.get(MODE_KEY) == "LOCAL":
            self._mode = "LOCAL"
            self._ready.set()
            logger.info("Restored local operating mode")
            return self._mode

        candidates = [
            ("pre-configured", self._preconfigured),
            ("stored", self.store.get(CONFIG_KEY)),
        ]
        for source, raw in candidates:
            if not raw:
                continue
            try:
                await self._connect(raw, resume=True)
            except ConfigurationError as exc:
                logger.warning("Ignoring %s provider config: %s", source, exc.code)
                continue
            return self._mode
        return self._mode

    async def configure(
        self,
        raw: str | Mapping[str, Any] | ProviderConfig,
    ) -> IdentityProvider:
        """Validate, persist and connect; replaces any existing CLOUD config.

        A new configuration forgets the persisted signed-in session.

        Raises ``ConfigurationError`` without touching persisted state when
        the input is unusable or the provider cannot be initialized.
        """
        return await self._connect(raw, resume=False)

    async def _connect(
        self,
        raw: str | Mapping[str, Any] | ProviderConfig,
        *,
        resume: bool,
    ) -> IdentityProvider:
        config = parse_provider_config(raw)
        try:
            provider = self._provider_factory(config)
        except Exception as e:
            logger.warning("Provider initialization failed for project %s", config.project_id)
            msg = f"Provider initialization failed: {e}"
            raise ConfigurationError("init_failed", msg) from e

        self._ready.clear()
        if not resume:
            self.store.delete(SESSION_KEY)
        self.store.set(CONFIG_KEY, config.to_json())
        self.store.set(MODE_KEY, "CLOUD")
        self._config = config
        self._provider = provider
        self._mode = "CLOUD"
        self._started = True
        logger.info(
            "Provider initialized for project %s (api key %s)",
            config.project_id,
            config.api_key_fingerprint,
        )

        if resume:
            await self._resume_session(provider)
        await self._establish_background_session(provider)
        await self._enable_offline_cache(provider)
        self._ready.set()
        return provider

    async def _resume_session(self, provider: IdentityProvider) -> None:
        token = self.store.get(SESSION_KEY)
        if not token or provider.current_identity is not None:
            return
        try:
            identity = await provider.resume_session(token)
        except ProviderError as exc:
            logger.warning("Stored session could not be resumed: %s", exc.code)
            self.store.delete(SESSION_KEY)
            return
        logger.info("Resumed signed-in session for %s", identity.uid)

    def remember_session(self) -> None:
        """Persist the provider's named session so a restart can resume it."""
        if self._provider is None:
            return
        token = self._provider.export_session()
        if token:
            self.store.set(SESSION_KEY, token)
        else:
            self.store.delete(SESSION_KEY)

    async def _establish_background_session(self, provider: IdentityProvider) -> None:
        if provider.current_identity is not None:
            return
        try:
            await provider.sign_in_anonymously()
        except ProviderError as exc:
            logger.warning("Anonymous session failed: %s", exc.code)

    async def _enable_offline_cache(self, provider: IdentityProvider) -> None:
        try:
            await provider.enable_offline_persistence()
        except OfflinePersistenceError as exc:
            if exc.code == "failed-precondition":
                logger.warning("Offline persistence unavailable: multiple tabs open")
            elif exc.code in _DEGRADED_OFFLINE_CODES:
                logger.warning("Offline persistence not supported in this environment")
            else:
                logger.warning("Offline persistence failed: %s", exc.code)

    def enter_local_mode(self) -> None:
        """Switch to LOCAL; no provider handle survives. Idempotent."""
        self._provider = None
        self._config = None
        self._mode = "LOCAL"
        self._started = True
        self.store.set(MODE_KEY, "LOCAL")
        self.store.delete(SESSION_KEY)
        self._ready.set()
        logger.info("Entered local operating mode")

    async def wait_ready(self) -> None:
        await self._ready.wait()

    def reset(self) -> None:
        """Drop in-memory state; the next ``start`` re-reads persisted state."""
        self._provider = None
        self._config = None
        self._mode = None
        self._started = False
        self._ready = asyncio.Event()


@lru_cache(maxsize=1)
def get_bootstrap() -> ProviderBootstrap:
    """Create and cache the bootstrap from the environment."""
    return ProviderBootstrap(FileStateStore(), preconfigured=preconfigured_from_env())


def clear_bootstrap_cache() -> None:
    """Tear down the cached bootstrap for tests and reconfiguration."""
    if get_bootstrap.cache_info().currsize:
        get_bootstrap().reset()
    get_bootstrap.cache_clear()


__all__ = [
    "ProviderBootstrap",
    "ProviderFactory",
    "clear_bootstrap_cache",
    "default_provider_factory",
    "get_bootstrap",
    "preconfigured_from_env",
]
