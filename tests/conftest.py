"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration and marker
registration. All fixtures here are autouse unless noted.
"""

from __future__ import annotations

from contextlib import suppress
import logging
import os

import pytest

from chatbridge.config import ModelConfig, ProviderConfig
from chatbridge.retry import RetryPolicy
from chatbridge.types import Credential

# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_chatbridge_env(request, monkeypatch):
    """Clear CHATBRIDGE_* env vars so tests never see the developer's settings.

    Opt-out: @pytest.mark.allow_env_pollution
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return
    for key in list(os.environ.keys()):
        if key.startswith("CHATBRIDGE_"):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_configure(config):
    """Configure custom markers for test organization."""
    markers = [
        "unit: Fast, isolated unit tests",
        "contract: Wire-shape tests against fake HTTP transports",
        "integration: Component integration tests with mocked APIs",
        "allow_dotenv: Let python-dotenv read .env files",
        "allow_env_pollution: Keep CHATBRIDGE_* environment variables",
    ]
    for marker in markers:
        config.addinivalue_line("markers", marker)


# =============================================================================
# Shared Fixtures (opt-in)
# =============================================================================

NO_RETRY = RetryPolicy(initial_delay_s=0.0, max_delay_s=0.0, max_retries=0)


def make_provider(
    type_: str = "openai-chat-completion",
    *,
    base_url: str = "https://api.example.com",
    models: tuple[ModelConfig, ...] = (ModelConfig(id="test-model"),),
    name: str = "Test",
    retry: RetryPolicy = NO_RETRY,
    **kwargs,
) -> ProviderConfig:
    return ProviderConfig(
        type=type_,
        name=name,
        base_url=base_url,
        models=models,
        retry=retry,
        **kwargs,
    )


@pytest.fixture
def credential() -> Credential:
    return Credential(token="sk-test-0123456789")
