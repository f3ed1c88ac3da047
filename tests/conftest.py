# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

import socket
from collections.abc import Callable, Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from authlib.jose import JsonWebKey, jwt

from wirus_auth.config import WirusAuthConfig
from wirus_auth.manager import AuthManager
from wirus_auth.server import AuthorizationServer
from wirus_auth.store import MemoryDocumentStore

PLATFORM_B_KEY_URL = "https://keys.platform-b.example/key.pem"


@pytest.fixture(autouse=True)
def mock_dns_resolution() -> Generator[MagicMock, None, None]:
    """
    Globally patches socket.getaddrinfo to return a safe public IP by default.
    Tests that need to verify SSRF logic patch socket.getaddrinfo again.
    """
    safe_response = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("8.8.8.8", 443))]

    with patch("socket.getaddrinfo", return_value=safe_response) as mock:
        yield mock


@pytest.fixture(scope="session")
def app_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture(scope="session")
def platform_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture(scope="session")
def app_private_pem(app_key: Any) -> str:
    return app_key.as_pem(is_private=True).decode("utf-8")  # type: ignore[no-any-return]


@pytest.fixture(scope="session")
def app_public_pem(app_key: Any) -> str:
    return app_key.as_pem(is_private=False).decode("utf-8")  # type: ignore[no-any-return]


@pytest.fixture(scope="session")
def platform_public_pem(platform_key: Any) -> str:
    return platform_key.as_pem(is_private=False).decode("utf-8")  # type: ignore[no-any-return]


@pytest.fixture
def config(app_private_pem: str, app_public_pem: str) -> WirusAuthConfig:
    return WirusAuthConfig(private_key=app_private_pem, public_key=app_public_pem)


@pytest.fixture
def store(platform_public_pem: str) -> MemoryDocumentStore:
    return MemoryDocumentStore(
        {
            "platforms": {
                "platformA": {
                    "client_secret": "secretA",
                    "redirect_uri": "https://platform-a.example/callback",
                    "default_scope": ["wirus.actions.read"],
                    "public_key": platform_public_pem,
                    "name": "Platform A",
                    "description": "Volunteering",
                },
                "platformB": {
                    "client_secret": "secretB",
                    "redirect_uri": None,
                    "default_scope": ["wirus.user.read", "wirus.actions.write"],
                    "public_key": PLATFORM_B_KEY_URL,
                },
            },
            "users": {
                "alice": {
                    "name": "Alice",
                    "email": "alice@example.com",
                    "location": "Berlin",
                    "score": 10,
                    "platforms": {"platformA": {"subject": "pa-alice", "scope": ["wirus.user.name"]}},
                },
                "bob": {
                    "name": "Bob",
                    "email": "bob@example.com",
                    "location": "Hamburg",
                    "platforms": {},
                },
            },
            "codes": {
                "reg-1": {
                    "type": "client_registration",
                    "used": False,
                    "allowed_scope": ["wirus.actions.read", "wirus.user.read"],
                },
                "reg-used": {"type": "client_registration", "used": True, "allowed_scope": []},
                "invite-1": {"type": "invitation", "used": False},
            },
        }
    )


@pytest.fixture
def identity_provider() -> AsyncMock:
    provider = AsyncMock()
    provider.verify_identity_token = AsyncMock(return_value={"sub": "alice", "email": "alice@example.com"})
    return provider


@pytest.fixture
def key_responses(platform_public_pem: str) -> dict[str, httpx.Response]:
    return {PLATFORM_B_KEY_URL: httpx.Response(200, text=platform_public_pem)}


@pytest.fixture
def http_client(key_responses: dict[str, httpx.Response]) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return key_responses.get(str(request.url), httpx.Response(404, text="not found"))

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def manager(
    config: WirusAuthConfig,
    store: MemoryDocumentStore,
    identity_provider: AsyncMock,
    http_client: httpx.AsyncClient,
) -> AuthManager:
    return AuthManager(config, store, identity_provider=identity_provider, client=http_client)


@pytest.fixture
def server(manager: AuthManager) -> AuthorizationServer:
    return manager.server


@pytest.fixture
def sign_platform_token(platform_key: Any) -> Callable[..., str]:
    """Returns a function signing claims as a platform would."""

    def _sign(claims: dict[str, Any], key: Any = None) -> str:
        token = jwt.encode({"alg": "RS256"}, claims, key or platform_key)
        return token.decode("utf-8")  # type: ignore[no-any-return]

    return _sign
