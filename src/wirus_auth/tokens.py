# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
TokenIssuer and TokenVerifier components for signing and checking app and platform tokens.
"""

import binascii
import time
from typing import Any, cast

from authlib.common.encoding import json_loads, to_bytes, urlsafe_b64decode
from authlib.jose import JsonWebToken
from authlib.jose.errors import (
    BadSignatureError,
    ExpiredTokenError,
    InvalidClaimError,
    JoseError,
    MissingClaimError,
)
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel, SecretStr, ValidationError

from wirus_auth.exceptions import InvalidTokenError
from wirus_auth.models import (
    ACCESS_TOKEN_SUBJECT,
    ACCOUNT_PREFIX,
    AUTH_CODE_SUBJECT,
    IDENTITY_PREFIX,
    AccessTokenClaims,
    AuthCodeClaims,
    IdentityClaims,
    PlatformTokenClaims,
    TokenClaims,
    User,
    token_claims_adapter,
)
from wirus_auth.utils.logger import logger

tracer = trace.get_tracer(__name__)


class TokenIssuer:
    """
    Signs app tokens with the app's private key.

    Attributes:
        issuer (str): The app identity, written to `iss`.
        algorithm (str): The signing algorithm.
    """

    def __init__(self, private_key: SecretStr, issuer: str, algorithm: str = "RS256") -> None:
        self._private_key = private_key
        self.issuer = issuer
        self.algorithm = algorithm
        self.jwt = JsonWebToken([algorithm])

    def _sign(self, claims: BaseModel) -> str:
        header = {"alg": self.algorithm, "typ": "JWT"}
        payload = claims.model_dump(exclude_none=True, by_alias=True)
        token = self.jwt.encode(header, payload, self._private_key.get_secret_value())
        return cast("bytes", token).decode("utf-8")

    def issue_authorization_code(
        self, user_id: str, scope: list[str], audience: str, client_subject: str | None = None
    ) -> str:
        """
        Issues an authorization code for the platform `audience`.

        The code carries no expiry claim and nothing marks it as used; it stays redeemable.
        """
        claims = AuthCodeClaims(
            iss=self.issuer,
            aud=audience,
            iat=int(time.time()),
            user=user_id,
            scope=scope,
            client_subject=client_subject,
        )
        return self._sign(claims)

    def issue_access_token(
        self,
        audience: str,
        scope: list[str],
        user: str | None = None,
        client_subject: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> str:
        """
        Issues an access token. Access tokens never expire; `exp` is omitted.
        """
        claims = AccessTokenClaims(
            iss=self.issuer,
            aud=audience,
            iat=int(time.time()),
            user=user,
            scope=scope,
            client_subject=client_subject,
            data=data,
        )
        return self._sign(claims)

    def issue_identity_token(
        self, user: User, audience: str, method: str = "app", platform_subject: str | None = None
    ) -> str:
        """
        Issues an identity token for handing a user over to the platform `audience`.

        The subject is `ac:<uid>` when the user is paired with the platform, `id:<uid>` otherwise.
        For paired users the platform subject defaults to the stored pairing subject.
        """
        pairing = user.pairing(audience)
        if pairing is not None:
            sub = ACCOUNT_PREFIX + user.uid
            platform_subject = platform_subject or pairing.subject
        else:
            sub = IDENTITY_PREFIX + user.uid

        claims = IdentityClaims(
            iss=self.issuer,
            aud=audience,
            sub=sub,
            iat=int(time.time()),
            method=method,
            platform_subject=platform_subject,
        )
        return self._sign(claims)


class TokenVerifier:
    """
    Verifies signatures and standard claims of app and platform tokens.

    Attributes:
        public_key (str): The app's PEM public key, used for app tokens.
        issuer (str): The app identity.
        allowed_algorithms (list[str]): Accepted signing algorithms.
    """

    def __init__(self, public_key: str, issuer: str, allowed_algorithms: list[str]) -> None:
        self.public_key = public_key
        self.issuer = issuer
        self.allowed_algorithms = allowed_algorithms
        # Rejects every algorithm not explicitly allowed, including "none"
        self.jwt = JsonWebToken(allowed_algorithms)

    @staticmethod
    def decode_unverified(token: str) -> dict[str, Any]:
        """
        Reads the payload of a token without checking its signature.

        Only used to learn which platform claims to have issued a token.

        Raises:
            InvalidTokenError: If the token is not a well-formed JWT.
        """
        parts = token.strip().split(".")
        if len(parts) != 3:
            raise InvalidTokenError("Malformed token.")
        try:
            payload = json_loads(urlsafe_b64decode(to_bytes(parts[1])))
        except (ValueError, binascii.Error) as e:
            raise InvalidTokenError(f"Malformed token: {e}") from e
        if not isinstance(payload, dict):
            raise InvalidTokenError("Malformed token payload.")
        return payload

    def verify(
        self,
        token: str,
        audience: str,
        subject: str | None = None,
        key: str | None = None,
        issuer: str | None = None,
    ) -> dict[str, Any]:
        """
        Verifies the signature and the issuer, audience and subject claims.

        Args:
            token: The raw token.
            audience: The expected `aud`.
            subject: The expected `sub`. If None, any subject (or none) is accepted.
            key: PEM key to verify with. Defaults to the app's public key.
            issuer: The expected `iss`. Defaults to the app identity.

        Returns:
            dict[str, Any]: The verified claims.

        Raises:
            InvalidTokenError: If the token fails any check.
        """
        with tracer.start_as_current_span("verify_token") as span:
            span.set_attribute("token.audience", audience)
            claims_options: dict[str, Any] = {
                "iss": {"essential": True, "value": issuer or self.issuer},
                "aud": {"essential": True, "value": audience},
            }
            if subject is not None:
                claims_options["sub"] = {"essential": True, "value": subject}

            try:
                jwt_any = cast("Any", self.jwt)
                claims = jwt_any.decode(token.strip(), key or self.public_key, claims_options=claims_options)
                claims.validate()
                span.set_status(Status(StatusCode.OK))
                return dict(claims)
            except ExpiredTokenError as e:
                message = f"Token has expired: {e}"
            except InvalidClaimError as e:
                message = f"Invalid claim: {e}"
            except MissingClaimError as e:
                message = f"Missing claim: {e}"
            except BadSignatureError as e:
                message = f"Invalid signature: {e}"
            except JoseError as e:
                message = f"Token validation failed: {e}"
            except ValueError as e:
                # authlib raises ValueError for keys it cannot load
                message = f"Invalid signature or key: {e}"

            logger.warning(f"Validation failed: {message}")
            span.set_status(Status(StatusCode.ERROR, message))
            raise InvalidTokenError(message)

    def verify_authorization_code(self, token: str, audience: str) -> AuthCodeClaims:
        return self._parse(AuthCodeClaims, self.verify(token, audience, subject=AUTH_CODE_SUBJECT))

    def verify_access_token(self, token: str, audience: str) -> AccessTokenClaims:
        return self._parse(AccessTokenClaims, self.verify(token, audience, subject=ACCESS_TOKEN_SUBJECT))

    def verify_claims(self, token: str, audience: str) -> TokenClaims:
        """
        Verifies an app token of any kind and returns its claims model, chosen by the subject.
        """
        claims = self.verify(token, audience)
        try:
            return token_claims_adapter.validate_python(claims)
        except ValidationError as e:
            raise InvalidTokenError(f"Malformed token claims: {e}") from e

    def verify_identity_token(self, token: str, audience: str) -> IdentityClaims:
        """
        Verifies an app-issued identity token (`ac:` or `id:` subject).
        """
        claims = self.verify_claims(token, audience)
        if not isinstance(claims, IdentityClaims):
            raise InvalidTokenError(f"Token subject '{claims.sub}' is not an identity subject.")
        return claims

    def verify_platform_token(self, token: str, platform_id: str, key: str) -> PlatformTokenClaims:
        """
        Verifies a token signed by a platform: issued by `platform_id`, addressed to the app.
        """
        claims = self.verify(token, audience=self.issuer, key=key, issuer=platform_id)
        return self._parse(PlatformTokenClaims, claims)

    @staticmethod
    def _parse(model: type[Any], claims: dict[str, Any]) -> Any:
        try:
            return model.model_validate(claims)
        except ValidationError as e:
            raise InvalidTokenError(f"Malformed token claims: {e}") from e
