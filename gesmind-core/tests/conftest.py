"""Shared fixtures for gesmind-core tests."""

from __future__ import annotations

import pytest

from gesmind_core import (
    ChallengeVerifier,
    Identity,
    InMemoryIdentityProvider,
    MemoryStateStore,
    ProviderBootstrap,
    SetupFlow,
    TokenSourceRenderer,
)
from gesmind_core.state import OperatingMode


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CompletionRecorder:
    def __init__(self) -> None:
        self.calls: list[tuple[OperatingMode, Identity | None]] = []

    def __call__(self, mode: OperatingMode, identity: Identity | None) -> None:
        self.calls.append((mode, identity))


@pytest.fixture
def provider() -> InMemoryIdentityProvider:
    return InMemoryIdentityProvider(fixed_code="123456")


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def renderer() -> TokenSourceRenderer:
    return TokenSourceRenderer(lambda _surface: "challenge-token")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def completions() -> CompletionRecorder:
    return CompletionRecorder()


@pytest.fixture
def bootstrap(
    store: MemoryStateStore,
    provider: InMemoryIdentityProvider,
) -> ProviderBootstrap:
    return ProviderBootstrap(store, lambda _config: provider)


@pytest.fixture
def flow(
    bootstrap: ProviderBootstrap,
    renderer: TokenSourceRenderer,
    completions: CompletionRecorder,
    clock: FakeClock,
) -> SetupFlow:
    return SetupFlow(
        bootstrap,
        ChallengeVerifier(renderer),
        on_complete=completions,
        reset_return_delay=4.0,
        clock=clock,
    )
