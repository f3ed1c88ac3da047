# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
CredentialVerifier component for authenticating platforms, users and access-token holders.
"""

import re
from collections.abc import Callable, Sequence
from typing import Any

from wirus_auth.exceptions import (
    BadRequestError,
    ForbiddenError,
    IdentityMismatchError,
    InternalError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    UnauthorizedError,
    WirusAuthError,
)
from wirus_auth.identity_mapper import IdentityMapper
from wirus_auth.identity_provider import IdentityProvider
from wirus_auth.models import AccessTokenClaims, AuthRequest, IdentityUser, Platform, User
from wirus_auth.repository import AuthRepository
from wirus_auth.scopes import ScopeModel
from wirus_auth.tokens import TokenVerifier
from wirus_auth.utils.logger import logger

BEARER_PATTERN = re.compile(r"^Bearer\s+(\S+)$")

UserPredicate = Callable[[IdentityUser], bool]


def extract_bearer_token(request: AuthRequest, query_param: str | None = None) -> str | None:
    """
    Returns the token of a `Bearer` Authorization header, falling back to a query parameter.
    """
    header = request.header("Authorization")
    if header:
        match = BEARER_PATTERN.match(header.strip())
        if match:
            return match.group(1)
    if query_param:
        return request.query.get(query_param) or None
    return None


def data_for_scope(scope: Sequence[str], user: User) -> dict[str, Any]:
    """
    Returns the user fields the scope grants access to.

    Each field is released by its own leaf scope or by `wirus.user.read`.
    """
    data: dict[str, Any] = {}
    if "wirus.user.name" in scope or "wirus.user.read" in scope:
        data["name"] = user.name
    if "wirus.user.email" in scope or "wirus.user.read" in scope:
        data["email"] = user.email
    if "wirus.user.location" in scope or "wirus.user.read" in scope:
        data["location"] = user.location
    return data


class CredentialVerifier:
    """
    Authenticates the three kinds of callers: platforms (client credentials), users
    (identity-provider tokens) and platforms acting for users (access tokens).
    """

    def __init__(
        self,
        repository: AuthRepository,
        token_verifier: TokenVerifier,
        scope_model: ScopeModel,
        identity_provider: IdentityProvider | None = None,
        identity_mapper: IdentityMapper | None = None,
    ) -> None:
        self.repository = repository
        self.token_verifier = token_verifier
        self.scope_model = scope_model
        self.identity_provider = identity_provider
        self.identity_mapper = identity_mapper or IdentityMapper()

    async def verify_client_credentials(self, client_id: str | None, client_secret: str | None) -> Platform:
        """
        Checks a client id / secret pair.

        The secret is compared in plaintext against the stored one.

        Raises:
            BadRequestError: If the id or secret is missing.
            NotFoundError: If no platform has the id.
            InvalidCredentialsError: If the secret does not match.
        """
        if not client_id:
            raise BadRequestError("Client id missing.")
        if not client_secret:
            raise BadRequestError("Client secret missing.")

        platform = await self.repository.get_platform(client_id)
        if platform is None:
            raise NotFoundError(f"Client with id '{client_id}' does not exist.")

        if platform.client_secret != client_secret:
            logger.warning(f"Wrong client secret presented for platform {client_id}.")
            raise InvalidCredentialsError("Wrong client secret.")

        return platform

    async def verify_user_token(self, request: AuthRequest, predicate: UserPredicate | None = None) -> IdentityUser:
        """
        Authenticates the app user behind a request.

        The token is read from the Authorization header or the `authorization` query parameter.
        If the route has a `userId` path parameter it must match the token's user.

        Args:
            request: The inbound request.
            predicate: Optional check on the resolved user.

        Raises:
            UnauthorizedError: If the token is missing.
            InvalidTokenError: If the identity provider rejects the token.
            IdentityMismatchError: If the `userId` path parameter names another user.
            ForbiddenError: If the predicate returns False.
        """
        token = extract_bearer_token(request, query_param="authorization")
        if not token:
            raise UnauthorizedError("User authentication token is missing.")

        if self.identity_provider is None:
            raise InternalError("No identity provider is configured.")

        try:
            claims = await self.identity_provider.verify_identity_token(token)
        except WirusAuthError:
            raise
        except Exception as e:
            raise InvalidTokenError(f"User authentication token is invalid: {e}") from e

        user = self.identity_mapper.map_claims(claims)

        path_user_id = request.path_params.get("userId")
        if path_user_id and path_user_id != user.uid:
            raise IdentityMismatchError("User id does not match.")

        if predicate is not None and not predicate(user):
            raise ForbiddenError(f"User is not permitted to access {request.url}.")

        return user

    async def verify_access_token(
        self, request: AuthRequest, client_id: str, required_scope: Sequence[str]
    ) -> AccessTokenClaims:
        """
        Authenticates a platform calling the API with an access token.

        Raises:
            UnauthorizedError: If the Authorization header is missing.
            InvalidTokenError: If the token is not an access token for `client_id`.
            ForbiddenError: If the token's scope does not cover `required_scope`.
        """
        token = extract_bearer_token(request)
        if not token:
            raise UnauthorizedError("Access token header is missing.")

        claims = self.token_verifier.verify_access_token(token, client_id)

        if not self.scope_model.satisfies(claims.scope, required_scope):
            raise ForbiddenError("Not in scope.")

        return claims
