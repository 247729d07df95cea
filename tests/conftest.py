"""Shared fixtures for repochief tests.

- Every test gets its own config directory (REPOCHIEF_CONFIG_DIR) and an
  in-memory keyring, so nothing touches the real keychain or home dir.
- clock drives sleeps and clocks so polling/backoff/heartbeat cadence
  is asserted without real time passing.
- mock_http builds an httpx.AsyncClient backed by httpx.MockTransport.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path

import httpx
import keyring
import pytest
from keyring.backends.fail import Keyring as FailKeyring

from repochief.config import ClientConfig
from repochief.constants import AUTO_IDENTITY_ENV_VAR, CONFIG_DIR_ENV_VAR, IDENTITY_NAME_ENV_VAR
from tests.helpers import API_URL, FakeClock, FakeServer, Handler, MemoryKeyring


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point all local state at a temp dir and clear naming/CI overrides."""
    config_dir = tmp_path / "config"
    monkeypatch.setenv(CONFIG_DIR_ENV_VAR, str(config_dir))
    for name in (IDENTITY_NAME_ENV_VAR, AUTO_IDENTITY_ENV_VAR, "CI", "REPOCHIEF_API_URL"):
        monkeypatch.delenv(name, raising=False)
    return config_dir


@pytest.fixture
def config_dir(isolated_env: Path) -> Path:
    return isolated_env


@pytest.fixture(autouse=True)
def memory_keyring() -> Iterator[MemoryKeyring]:
    """Install an in-memory keyring for the duration of a test."""
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


@pytest.fixture
def no_keyring(memory_keyring: MemoryKeyring) -> Iterator[None]:
    """Simulate a host without native secure storage."""
    keyring.set_keyring(FailKeyring())
    yield
    keyring.set_keyring(memory_keyring)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client_config(config_dir: Path) -> ClientConfig:
    """Config pointing at the mock API with the temp config dir."""
    return ClientConfig(api_url=API_URL, config_dir=config_dir)


@pytest.fixture
async def mock_http() -> AsyncIterator[Callable[[Handler], httpx.AsyncClient]]:
    """Factory for AsyncClients backed by a MockTransport handler."""
    clients: list[httpx.AsyncClient] = []

    def make(handler: Handler) -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield make

    for client in clients:
        await client.aclose()
