"""Test configuration."""

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from gesmind_core import InMemoryIdentityProvider, clear_bootstrap_cache
from gesmind_server.core.setup import clear_setup_service_cache
from gesmind_server.main import app

CONFIG_JSON = '{"apiKey":"AIza-secret","projectId":"demo-project"}'


@pytest.fixture
def provider() -> InMemoryIdentityProvider:
    return InMemoryIdentityProvider(fixed_code="123456")


@pytest.fixture(autouse=True)
def isolated_setup(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    provider: InMemoryIdentityProvider,
) -> Iterator[Path]:
    """Point persisted state at a temp dir and bind the in-memory provider."""
    monkeypatch.setenv("GESMIND_HOME", str(tmp_path))
    monkeypatch.delenv("GESMIND_PROVIDER_CONFIG_JSON", raising=False)
    monkeypatch.delenv("GESMIND_ALLOW_REMOTE", raising=False)
    monkeypatch.delenv("GESMIND_TRUST_PROXY_HEADERS", raising=False)
    monkeypatch.setattr(
        "gesmind_core.bootstrap.default_provider_factory",
        lambda _config: provider,
    )
    clear_setup_service_cache()
    clear_bootstrap_cache()
    yield tmp_path
    clear_setup_service_cache()
    clear_bootstrap_cache()


@pytest.fixture
def test_client() -> TestClient:
    """Create a test client for the setup API."""
    return TestClient(app)


@pytest.fixture
def configured_client(test_client: TestClient) -> TestClient:
    """Test client whose flow already accepted a provider configuration."""
    response = test_client.post("/setup/config", json={"raw": CONFIG_JSON})
    assert response.status_code == 200
    return test_client
