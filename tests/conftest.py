"""Shared pytest configuration and fixtures."""

from __future__ import annotations

import pytest

from mcp_token_broker.config import BrokerConfig, ProviderCredentials

SERVER_URL = "https://broker.example.com"
SIGNING_KEY = "k" * 48


def pytest_addoption(parser):
    """Add integration option to pytest."""
    parser.addoption(
        "--integration",
        action="store_true",
        default=False,
        help="run integration tests",
    )


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broker_config(tmp_path) -> BrokerConfig:
    return BrokerConfig(
        server_url=SERVER_URL + "/",
        signing_key=SIGNING_KEY,
        cache_dir=tmp_path / "cache",
        providers={
            "google": ProviderCredentials("google-client", "google-secret"),
            "microsoft": ProviderCredentials("ms-client", "ms-secret", "contoso"),
        },
    )
