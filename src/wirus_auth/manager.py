# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
AuthManager component for wiring the authorization layer and owning its resources.
"""

from typing import Any

import httpx
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from wirus_auth.config import WirusAuthConfig
from wirus_auth.credentials import CredentialVerifier
from wirus_auth.identity_provider import IdentityProvider, OIDCIdentityProvider
from wirus_auth.keys import PlatformKeyResolver
from wirus_auth.models import AuthRequest, TokenResponse
from wirus_auth.repository import AuthRepository
from wirus_auth.scopes import WIRUS_SCOPES, ScopeModel, ScopeRegistry
from wirus_auth.server import AuthorizationServer
from wirus_auth.store import DocumentStore
from wirus_auth.tokens import TokenIssuer, TokenVerifier
from wirus_auth.transport import SafeAsyncTransport


class AuthManager:
    """
    Async entry point of the package. Handles resources via async context manager.

    Attributes:
        config (WirusAuthConfig): The configuration.
        server (AuthorizationServer): The grant flows.
        credentials (CredentialVerifier): Caller authentication, for the API routes.
    """

    def __init__(
        self,
        config: WirusAuthConfig,
        store: DocumentStore,
        identity_provider: IdentityProvider | None = None,
        client: httpx.AsyncClient | None = None,
        registry: ScopeRegistry = WIRUS_SCOPES,
    ) -> None:
        """
        Initialize the AuthManager.

        Args:
            config: The configuration object.
            store: The document store holding platforms, users and registration codes.
            identity_provider: Verifier for user ID tokens. Built from the `idp_*` settings if omitted.
            client: External async client (optional). If not provided, a `SafeAsyncTransport` client is created.
            registry: The scope registry.
        """
        self.config = config
        self._internal_client = client is None

        if client:
            self._client = client
        else:
            transport = httpx.AsyncHTTPTransport() if config.unsafe_local_dev else SafeAsyncTransport()
            self._client = httpx.AsyncClient(transport=transport, timeout=config.http_timeout)

        HTTPXClientInstrumentor().instrument_client(self._client)

        if identity_provider is None and config.idp_jwks_url and config.idp_issuer and config.idp_audience:
            identity_provider = OIDCIdentityProvider(
                jwks_url=config.idp_jwks_url,
                issuer=config.idp_issuer,
                audience=config.idp_audience,
                client=self._client,
                max_bytes=config.max_response_bytes,
            )

        self.scope_model = ScopeModel(registry)
        self.repository = AuthRepository(store)
        self.token_issuer = TokenIssuer(config.private_key, config.issuer, config.signing_algorithm)
        self.token_verifier = TokenVerifier(config.public_key, config.issuer, config.allowed_algorithms)
        self.key_resolver = PlatformKeyResolver(self._client, max_bytes=config.max_response_bytes)
        self.credentials = CredentialVerifier(
            repository=self.repository,
            token_verifier=self.token_verifier,
            scope_model=self.scope_model,
            identity_provider=identity_provider,
        )
        self.server = AuthorizationServer(
            repository=self.repository,
            scope_model=self.scope_model,
            credentials=self.credentials,
            token_issuer=self.token_issuer,
            token_verifier=self.token_verifier,
            key_resolver=self.key_resolver,
            pii_salt=config.pii_salt,
        )

    async def __aenter__(self) -> "AuthManager":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._internal_client:
            await self._client.aclose()

    async def token(self, body: Any) -> TokenResponse:
        """Handles a token endpoint request. See `AuthorizationServer.token`."""
        return await self.server.token(body)

    async def exchange_platform_token(self, request: AuthRequest) -> str | None:
        """Handles a platform token exchange. See `AuthorizationServer.exchange_platform_token`."""
        return await self.server.exchange_platform_token(request)
