# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
Identity-provider verification of user ID tokens.
"""

import binascii
import time
from typing import Any, Protocol, cast

import anyio
import httpx
from authlib.common.encoding import json_loads, to_bytes, urlsafe_b64decode
from authlib.jose import JsonWebToken
from authlib.jose.errors import ExpiredTokenError, JoseError
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from wirus_auth.exceptions import InvalidTokenError, KeyFetchError, OversizedResponseError, SecurityError
from wirus_auth.transport import fetch_text
from wirus_auth.utils.logger import logger

tracer = trace.get_tracer(__name__)


def _key_ids(jwks: dict[str, Any]) -> set[str]:
    return {key["kid"] for key in jwks["keys"] if isinstance(key, dict) and isinstance(key.get("kid"), str)}


class IdentityProvider(Protocol):
    """Protocol for the upstream identity-provider verification service."""

    async def verify_identity_token(self, token: str) -> dict[str, Any]:
        """
        Verifies a user ID token and returns its claims (containing the user id).
        Raises InvalidTokenError if the token is not valid.
        """
        ...


class OIDCIdentityProvider:
    """
    Verifies identity-provider ID tokens against the provider's JWKS.

    The JWKS is cached for `cache_ttl` seconds and refetched once when a token was signed
    by a key that is not in the cached set.

    Attributes:
        jwks_url (str): Location of the provider's JWKS.
        issuer (str): Expected `iss`.
        audience (str): Expected `aud` (the project id).
        cache_ttl (int): JWKS cache lifetime in seconds.
    """

    def __init__(
        self,
        jwks_url: str,
        issuer: str,
        audience: str,
        client: httpx.AsyncClient,
        allowed_algorithms: list[str] | None = None,
        cache_ttl: int = 3600,
        max_bytes: int = 64 * 1024,
    ) -> None:
        self.jwks_url = jwks_url
        self.issuer = issuer
        self.audience = audience
        self.client = client
        self.cache_ttl = cache_ttl
        self.max_bytes = max_bytes
        self.jwt = JsonWebToken(allowed_algorithms or ["RS256"])
        self._jwks_cache: dict[str, Any] | None = None
        self._last_update: float = 0.0
        self._lock: anyio.Lock | None = None

    async def _fetch_jwks(self) -> dict[str, Any]:
        try:
            status_code, body = await fetch_text(self.client, self.jwks_url, self.max_bytes)
        except (httpx.HTTPError, OversizedResponseError, SecurityError) as e:
            raise KeyFetchError(f"Failed to fetch JWKS from {self.jwks_url}: {e}") from e
        if status_code != 200:
            raise KeyFetchError(f"JWKS endpoint '{self.jwks_url}' responded with status code {status_code}.")
        try:
            jwks = json_loads(body)
        except ValueError as e:
            raise KeyFetchError(f"Invalid JWKS from {self.jwks_url}: {e}") from e
        if not isinstance(jwks, dict) or "keys" not in jwks:
            raise KeyFetchError(f"Invalid JWKS from {self.jwks_url}: missing 'keys'.")
        return jwks

    async def get_jwks(self, force_refresh: bool = False) -> dict[str, Any]:
        """
        Returns the JWKS, using the cache if valid.

        Args:
            force_refresh: If True, bypasses the cache and fetches fresh keys.

        Raises:
            KeyFetchError: If fetching fails.
        """
        if self._lock is None:
            self._lock = anyio.Lock()

        if not force_refresh and self._jwks_cache is not None and time.time() - self._last_update < self.cache_ttl:
            return self._jwks_cache

        async with self._lock:
            # Another task may have refreshed while we waited
            if not force_refresh and self._jwks_cache is not None and time.time() - self._last_update < self.cache_ttl:
                return self._jwks_cache
            self._jwks_cache = await self._fetch_jwks()
            self._last_update = time.time()
            return self._jwks_cache

    @staticmethod
    def _unverified_kid(token: str) -> str | None:
        try:
            header = json_loads(urlsafe_b64decode(to_bytes(token.split(".")[0])))
        except (ValueError, binascii.Error) as e:
            raise InvalidTokenError(f"Malformed identity token: {e}") from e
        if not isinstance(header, dict):
            raise InvalidTokenError("Malformed identity token header.")
        kid = header.get("kid")
        return kid if isinstance(kid, str) else None

    async def verify_identity_token(self, token: str) -> dict[str, Any]:
        """
        Verifies the ID token signature, issuer, audience and expiry.

        Returns:
            dict[str, Any]: The verified claims.

        Raises:
            InvalidTokenError: If the token is invalid.
            KeyFetchError: If the JWKS cannot be retrieved.
        """
        with tracer.start_as_current_span("verify_identity_token") as span:
            token = token.strip()
            claims_options = {
                "exp": {"essential": True},
                "iss": {"essential": True, "value": self.issuer},
                "aud": {"essential": True, "value": self.audience},
            }

            def _decode(jwks: dict[str, Any]) -> dict[str, Any]:
                claims = cast("Any", self.jwt).decode(token, jwks, claims_options=claims_options)
                claims.validate()
                return dict(claims)

            kid = self._unverified_kid(token)
            try:
                jwks = await self.get_jwks()
                if kid is not None and kid not in _key_ids(jwks):
                    logger.info(f"Identity token signed by unknown key {kid}, refreshing JWKS.")
                    span.add_event("refreshing_jwks")
                    jwks = await self.get_jwks(force_refresh=True)
                return _decode(jwks)
            except ExpiredTokenError as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise InvalidTokenError(f"Identity token has expired: {e}") from e
            except (JoseError, ValueError) as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise InvalidTokenError(f"Identity token validation failed: {e}") from e
