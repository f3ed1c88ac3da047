# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
Tests for the token endpoint and the authorization_code grant.
"""

from typing import Any
from unittest.mock import AsyncMock, patch

import anyio
import pytest

from wirus_auth.exceptions import (
    BadRequestError,
    InvalidCredentialsError,
    InvalidTokenError,
    MalformedError,
    SubjectMismatchError,
)
from wirus_auth.models import PlatformPairing
from wirus_auth.repository import AuthRepository
from wirus_auth.server import AuthorizationServer
from wirus_auth.store import MemoryDocumentStore


def _body(code: str | None, client_subject: str | None = "pa-new", **overrides: Any) -> dict[str, Any]:
    body = {
        "grant_type": "authorization_code",
        "client_id": "platformA",
        "client_secret": "secretA",
        "code": code,
        "client_subject": client_subject,
    }
    body.update(overrides)
    return body


async def _pairing(store: MemoryDocumentStore, uid: str, platform_id: str) -> PlatformPairing | None:
    user = await AuthRepository(store).get_user(uid)
    assert user is not None
    return user.pairing(platform_id)


class TestTokenEndpoint:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [None, "grant_type=client_credentials", ["authorization_code"]])
    async def test_body_must_be_object(self, server: AuthorizationServer, body: Any) -> None:
        with pytest.raises(BadRequestError, match="Body must be a json object."):
            await server.token(body)

    @pytest.mark.asyncio
    async def test_grant_type_missing(self, server: AuthorizationServer) -> None:
        with pytest.raises(BadRequestError, match="Grant type missing."):
            await server.token({"client_id": "platformA", "client_secret": "secretA"})

    @pytest.mark.asyncio
    async def test_unknown_grant_type(self, server: AuthorizationServer) -> None:
        with pytest.raises(BadRequestError, match="Unknown grant type 'password'."):
            await server.token({"grant_type": "password"})

    @pytest.mark.asyncio
    async def test_malformed_request(self, server: AuthorizationServer) -> None:
        with pytest.raises(BadRequestError, match="Malformed token request"):
            await server.token({"grant_type": "client_credentials", "client_id": 42})

    @pytest.mark.asyncio
    async def test_wrong_secret(self, server: AuthorizationServer) -> None:
        code = server.token_issuer.issue_authorization_code("alice", [], "platformA")
        with pytest.raises(InvalidCredentialsError, match="Wrong client secret."):
            await server.token(_body(code, client_secret="secretB"))

    @pytest.mark.asyncio
    async def test_response_shape(self, server: AuthorizationServer) -> None:
        code = server.token_issuer.issue_authorization_code("alice", ["wirus.actions.read"], "platformA")
        response = await server.token(_body(code))

        assert response.token_type == "bearer"
        assert response.expires_in == -1
        assert response.refresh_token is None
        assert response.access_token


class TestAuthorizationCodeGrant:
    @pytest.mark.asyncio
    async def test_rebinds_pairing_and_releases_data(
        self, server: AuthorizationServer, store: MemoryDocumentStore
    ) -> None:
        scope = ["wirus.user.name", "wirus.user.email"]
        code = server.token_issuer.issue_authorization_code("alice", scope, "platformA")

        response = await server.token(_body(code, client_subject="pa-new"))

        assert await _pairing(store, "alice", "platformA") == PlatformPairing(subject="pa-new", scope=scope)

        claims = server.token_verifier.verify_access_token(response.access_token, "platformA")
        assert claims.user == "alice"
        assert claims.scope == scope
        assert claims.client_subject == "pa-new"
        assert claims.data == {"name": "Alice", "email": "alice@example.com"}

    @pytest.mark.asyncio
    async def test_creates_pairing_for_unpaired_user(
        self, server: AuthorizationServer, store: MemoryDocumentStore
    ) -> None:
        code = server.token_issuer.issue_authorization_code("bob", ["wirus.actions.read"], "platformA")
        await server.token(_body(code, client_subject="pa-bob"))

        assert await _pairing(store, "bob", "platformA") == PlatformPairing(
            subject="pa-bob", scope=["wirus.actions.read"]
        )

    @pytest.mark.asyncio
    async def test_unchanged_pairing_is_not_rewritten(self, server: AuthorizationServer) -> None:
        code = server.token_issuer.issue_authorization_code("alice", ["wirus.user.name"], "platformA", "pa-alice")

        with patch.object(AuthRepository, "set_pairing", new_callable=AsyncMock) as mock_set:
            await server.token(_body(code, client_subject="pa-alice"))

        mock_set.assert_not_called()

    @pytest.mark.asyncio
    async def test_scope_change_rewrites_pairing(self, server: AuthorizationServer, store: MemoryDocumentStore) -> None:
        code = server.token_issuer.issue_authorization_code("alice", ["wirus.user.read"], "platformA", "pa-alice")
        response = await server.token(_body(code, client_subject="pa-alice"))

        assert await _pairing(store, "alice", "platformA") == PlatformPairing(
            subject="pa-alice", scope=["wirus.user.read"]
        )
        claims = server.token_verifier.verify_access_token(response.access_token, "platformA")
        assert claims.data == {"name": "Alice", "email": "alice@example.com", "location": "Berlin"}

    @pytest.mark.asyncio
    async def test_platform_id_with_dots(self, server: AuthorizationServer, store: MemoryDocumentStore) -> None:
        await store.create("platforms", "shop.example", {"client_secret": "shop-secret"})
        code = server.token_issuer.issue_authorization_code("bob", ["wirus.user.name"], "shop.example")
        body = _body(code, client_subject="shop-bob", client_id="shop.example", client_secret="shop-secret")

        response = await server.token(body)

        assert await _pairing(store, "bob", "shop.example") == PlatformPairing(
            subject="shop-bob", scope=["wirus.user.name"]
        )
        claims = server.token_verifier.verify_access_token(response.access_token, "shop.example")
        assert claims.data == {"name": "Bob"}

        # Later reads of the user still work, also for other platforms
        code = server.token_issuer.issue_authorization_code("bob", ["wirus.actions.read"], "platformA")
        await server.token(_body(code, client_subject="pa-bob"))
        assert await _pairing(store, "bob", "shop.example") is not None

    @pytest.mark.asyncio
    async def test_code_subject_must_match_request(self, server: AuthorizationServer) -> None:
        code = server.token_issuer.issue_authorization_code("alice", [], "platformA", client_subject="pa-alice")

        with pytest.raises(SubjectMismatchError, match="Client subject does not match authorization code."):
            await server.token(_body(code, client_subject="someone-else"))

    @pytest.mark.asyncio
    async def test_code_missing(self, server: AuthorizationServer) -> None:
        with pytest.raises(BadRequestError, match="Authorization code missing."):
            await server.token(_body(None))

    @pytest.mark.asyncio
    async def test_client_subject_missing(self, server: AuthorizationServer) -> None:
        code = server.token_issuer.issue_authorization_code("alice", [], "platformA")
        with pytest.raises(BadRequestError, match="Client subject is missing."):
            await server.token(_body(code, client_subject=None))

    @pytest.mark.asyncio
    async def test_code_for_other_platform(self, server: AuthorizationServer) -> None:
        code = server.token_issuer.issue_authorization_code("alice", [], "platformB")
        with pytest.raises(InvalidTokenError):
            await server.token(_body(code))

    @pytest.mark.asyncio
    async def test_access_token_is_not_a_code(self, server: AuthorizationServer) -> None:
        token = server.token_issuer.issue_access_token("platformA", [], user="alice")
        with pytest.raises(InvalidTokenError):
            await server.token(_body(token))

    @pytest.mark.asyncio
    async def test_unknown_user(self, server: AuthorizationServer) -> None:
        code = server.token_issuer.issue_authorization_code("ghost", [], "platformA")
        with pytest.raises(MalformedError, match="Malformed authorization token."):
            await server.token(_body(code))

    @pytest.mark.asyncio
    async def test_code_can_be_redeemed_again(self, server: AuthorizationServer) -> None:
        code = server.token_issuer.issue_authorization_code("alice", ["wirus.user.name"], "platformA")

        first = await server.token(_body(code, client_subject="pa-alice"))
        second = await server.token(_body(code, client_subject="pa-alice"))

        assert first.access_token
        assert second.access_token

    @pytest.mark.asyncio
    async def test_concurrent_grants_last_write_wins(
        self, server: AuthorizationServer, store: MemoryDocumentStore
    ) -> None:
        code = server.token_issuer.issue_authorization_code("bob", ["wirus.actions.read"], "platformA")
        subjects = ["pa-bob-1", "pa-bob-2"]

        async with anyio.create_task_group() as tg:
            for subject in subjects:
                tg.start_soon(server.token, _body(code, client_subject=subject))

        pairing = await _pairing(store, "bob", "platformA")
        assert pairing is not None
        assert pairing.subject in subjects
