"""Shared fixtures and utilities for IndieAuth client tests."""

import os
from collections.abc import Callable, Generator

import httpx
import pytest

from indieauth_client.auth.discovery import EndpointMetadata
from indieauth_client.auth.sign import SigningKey, import_key


PROFILE_URL = "https://example.com/"
AUTH_ENDPOINT = "https://example.com/auth"
TOKEN_ENDPOINT = "https://example.com/token"
METADATA_URL = "https://example.com/meta"
ISSUER = "https://example.com/"

SECRET = "0123456789abcdef-test-secret"


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def signing_key() -> SigningKey:
    """Create a signing key from a 16+ byte secret."""
    return import_key(SECRET)


@pytest.fixture
def metadata() -> EndpointMetadata:
    """Endpoint metadata with an issuer and S256 support."""
    return EndpointMetadata(
        authorization_endpoint=AUTH_ENDPOINT,
        token_endpoint=TOKEN_ENDPOINT,
        issuer=ISSUER,
        code_challenge_methods_supported=["S256"],
    )


@pytest.fixture
def legacy_metadata() -> EndpointMetadata:
    """Endpoint metadata discovered from legacy links (no issuer)."""
    return EndpointMetadata(
        authorization_endpoint=AUTH_ENDPOINT,
        token_endpoint=TOKEN_ENDPOINT,
    )


# ============================================================================
# HTTP Fixtures
# ============================================================================


Handler = Callable[[httpx.Request], httpx.Response]


def make_client(handler: Handler) -> httpx.AsyncClient:
    """Create an httpx client whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class RequestLog:
    """Records requests seen by a mock transport handler."""

    def __init__(self, handler: Handler):
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def methods(self) -> list[tuple[str, str]]:
        return [(r.method, str(r.url)) for r in self.requests]


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Temporarily clear INDIEAUTH_* environment variables."""
    old_env = os.environ.copy()
    for key in list(os.environ.keys()):
        if key.startswith("INDIEAUTH_"):
            del os.environ[key]
    yield
    os.environ.clear()
    os.environ.update(old_env)
