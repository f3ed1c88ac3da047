# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
AuthorizationServer component implementing the grant flows.

Every flow is a single request/response. The only state carried between requests is the
platform and user data in the document store.
"""

from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import SecretStr, ValidationError

from wirus_auth.credentials import CredentialVerifier, data_for_scope, extract_bearer_token
from wirus_auth.exceptions import (
    BadRequestError,
    InvalidTokenError,
    MalformedError,
    NotFoundError,
    SubjectMismatchError,
    UnauthorizedError,
    WirusAuthError,
)
from wirus_auth.keys import KEY_URL_PREFIX, PlatformKeyResolver
from wirus_auth.models import (
    AuthRequest,
    Platform,
    PlatformInfo,
    PlatformPairing,
    Redirect,
    RegistrationRequest,
    TokenRequest,
    TokenResponse,
    User,
    is_valid_redirect_uri,
)
from wirus_auth.repository import AuthRepository
from wirus_auth.scopes import ScopeModel
from wirus_auth.tokens import TokenIssuer, TokenVerifier
from wirus_auth.utils.logger import logger
from wirus_auth.utils.pii import anonymize

tracer = trace.get_tracer(__name__)

GRANT_TYPES = ("authorization_code", "client_credentials")
CLIENT_REGISTRATION = "client_registration"
EXCHANGE_METHOD = "platform"


class AuthorizationServer:
    """
    Orchestrates verification, scope binding and token issuance for every grant.

    Attributes:
        repository (AuthRepository): Platform and user persistence.
        scope_model (ScopeModel): Scope arithmetic.
        credentials (CredentialVerifier): Caller authentication.
        token_issuer (TokenIssuer): Signs app tokens.
        token_verifier (TokenVerifier): Checks app and platform tokens.
        key_resolver (PlatformKeyResolver): Obtains platform public keys.
    """

    def __init__(
        self,
        repository: AuthRepository,
        scope_model: ScopeModel,
        credentials: CredentialVerifier,
        token_issuer: TokenIssuer,
        token_verifier: TokenVerifier,
        key_resolver: PlatformKeyResolver,
        pii_salt: SecretStr,
    ) -> None:
        self.repository = repository
        self.scope_model = scope_model
        self.credentials = credentials
        self.token_issuer = token_issuer
        self.token_verifier = token_verifier
        self.key_resolver = key_resolver
        self.pii_salt = pii_salt

    # Token endpoint

    async def token(self, body: Any) -> TokenResponse:
        """
        Handles a token request with grant type `authorization_code` or `client_credentials`.

        Args:
            body: The decoded JSON body of the request.

        Returns:
            TokenResponse: The issued access token.

        Raises:
            BadRequestError: If the body is malformed or the grant type unknown.
            WirusAuthError: Any failure of the grant flow, with its literal reason.
        """
        if not isinstance(body, Mapping):
            raise BadRequestError("Body must be a json object.")

        grant_type = body.get("grant_type")
        if not grant_type:
            raise BadRequestError("Grant type missing.")
        if grant_type not in GRANT_TYPES:
            raise BadRequestError(f"Unknown grant type '{grant_type}'.")

        try:
            request = TokenRequest.model_validate(body)
        except ValidationError as e:
            raise BadRequestError(f"Malformed token request: {e}") from e

        with tracer.start_as_current_span(f"grant.{grant_type}") as span:
            try:
                platform = await self.credentials.verify_client_credentials(request.client_id, request.client_secret)
                span.set_attribute("platform.id", platform.id)

                if request.grant_type == "authorization_code":
                    access_token = await self.authorization_code_grant(platform, request)
                else:
                    access_token = await self.client_credentials_grant(platform, request)
            except WirusAuthError as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            span.set_status(Status(StatusCode.OK))
            return TokenResponse(access_token=access_token)

    async def authorization_code_grant(self, platform: Platform, request: TokenRequest) -> str:
        """
        Redeems an authorization code, (re)binding the user's pairing to the platform.

        The pairing is read, compared and rewritten without a transaction. Concurrent grants for
        the same user and platform race and the last write wins.
        """
        if not request.code:
            raise BadRequestError("Authorization code missing.")
        if not request.client_subject:
            raise BadRequestError("Client subject is missing.")

        code = self.token_verifier.verify_authorization_code(request.code, platform.id)

        user = await self.repository.get_user(code.user)
        if user is None:
            raise MalformedError("Malformed authorization token.")

        if code.client_subject and code.client_subject != request.client_subject:
            raise SubjectMismatchError("Client subject does not match authorization code.")

        pairing = user.pairing(platform.id)
        if pairing is None or pairing.subject != request.client_subject or set(pairing.scope) != set(code.scope):
            logger.info(f"Binding user {anonymize(user.uid, self.pii_salt)} to platform {platform.id}.")
            await self.repository.set_pairing(
                user.uid, platform.id, PlatformPairing(subject=request.client_subject, scope=code.scope)
            )

        return self.token_issuer.issue_access_token(
            audience=platform.id,
            scope=code.scope,
            user=code.user,
            client_subject=request.client_subject,
            data=data_for_scope(code.scope, user),
        )

    async def client_credentials_grant(self, platform: Platform, request: TokenRequest) -> str:
        """
        Issues an access token to the platform itself, optionally acting for a paired user.

        User data scopes are always removed from the grant.
        """
        user: User | None = None
        if request.client_subject:
            user = await self.repository.find_user_by_pairing(platform.id, request.client_subject)
            if user is None:
                raise NotFoundError("Could not find associated user to provided client subject.")

        pairing = user.pairing(platform.id) if user else None
        scope = pairing.scope if pairing else platform.default_scope

        if request.scope:
            scope = self.scope_model.bind(request.scope, scope)

        scope = self.scope_model.without_user_scopes(scope)

        if user is None:
            return self.token_issuer.issue_access_token(audience=platform.id, scope=scope)

        return self.token_issuer.issue_access_token(
            audience=platform.id,
            scope=scope,
            user=user.uid,
            client_subject=request.client_subject,
            data=data_for_scope(scope, user),
        )

    # Platform token exchange

    async def exchange_platform_token(self, request: AuthRequest) -> str | None:
        """
        Exchanges a token signed by a platform for an app token of the paired user.

        The platform token arrives as Bearer header; an app identity token of the browser
        session may arrive as `idToken` query parameter and is used to create the pairing.

        Returns:
            str | None: An `ac:` token for the paired user, or None when there is nothing to exchange
            (anonymous platform user, or unknown subject without identity token).

        Raises:
            BadRequestError: If the header is missing or the identity token has an `ac:` subject.
            UnauthorizedError: If the issuing platform is unknown.
            KeyFetchError: If the platform key cannot be retrieved.
            InvalidTokenError: If either token fails verification.
            SubjectMismatchError: If the platform subject conflicts with the identity token or pairing.
        """
        platform_token = extract_bearer_token(request)
        if not platform_token:
            raise BadRequestError("Platform authentication header is missing.")

        with tracer.start_as_current_span("exchange_platform_token") as span:
            platform_id = self.token_verifier.decode_unverified(platform_token).get("iss")
            if not isinstance(platform_id, str) or not platform_id:
                raise InvalidTokenError("Platform token has no issuer.")
            span.set_attribute("platform.id", platform_id)

            platform = await self.repository.get_platform(platform_id)
            if platform is None:
                raise UnauthorizedError(f"Authentication token has unknown issuer {platform_id}.")

            key = await self.key_resolver.resolve(platform)
            platform_claims = self.token_verifier.verify_platform_token(platform_token, platform.id, key)

            subject = platform_claims.sub
            if not subject:
                return None

            user = await self.repository.find_user_by_pairing(platform.id, subject)
            if user is not None:
                return self.token_issuer.issue_identity_token(
                    user, platform.id, method=EXCHANGE_METHOD, platform_subject=subject
                )

            id_token = request.query.get("idToken")
            if not id_token:
                return None

            identity = self.token_verifier.verify_identity_token(id_token, platform.id)
            if identity.is_account_bound:
                raise BadRequestError("User token must be of subject type 'id'.")

            user = await self.repository.get_user(identity.user_id)
            if user is None:
                raise MalformedError(f"Unknown user in subject {identity.sub} of user id token.")

            if identity.platform_subject and identity.platform_subject != subject:
                raise SubjectMismatchError(
                    f"Provided platform token subject {subject} does not match related subject "
                    f"{identity.platform_subject} of included user id token."
                )

            pairing = user.pairing(platform.id)
            if pairing is not None:
                if pairing.subject != subject:
                    raise SubjectMismatchError(
                        f"Provided platform token subject {subject} does not match stored subject {pairing.subject}."
                    )
            else:
                logger.info(f"Pairing user {anonymize(user.uid, self.pii_salt)} with platform {platform.id}.")
                await self.repository.set_pairing_subject(user.uid, platform.id, subject)
                pairing = PlatformPairing(subject=subject)
                user = user.model_copy(update={"platforms": {**user.platforms, platform.id: pairing}})

            span.set_status(Status(StatusCode.OK))
            return self.token_issuer.issue_identity_token(
                user, platform.id, method=EXCHANGE_METHOD, platform_subject=subject
            )

    # Consent and redirects

    async def _get_platform(self, client_id: str | None) -> Platform:
        if not client_id:
            raise BadRequestError("Client id missing.")
        platform = await self.repository.get_platform(client_id)
        if platform is None:
            raise NotFoundError(f"Client with id '{client_id}' does not exist.")
        return platform

    async def _get_user(self, uid: str) -> User:
        user = await self.repository.get_user(uid)
        if user is None:
            raise NotFoundError(f"User with id '{uid}' does not exist.")
        return user

    @staticmethod
    def _redirect_uri(platform: Platform, redirect_uri: str | None) -> str:
        if platform.redirect_uri:
            if redirect_uri and redirect_uri != platform.redirect_uri:
                raise BadRequestError(f"Illegal redirect uri '{redirect_uri}'.")
            return platform.redirect_uri
        if not redirect_uri:
            raise BadRequestError("Redirect uri is missing.")
        if not is_valid_redirect_uri(redirect_uri):
            raise BadRequestError("Redirect uri has a wrong format.")
        return redirect_uri

    def _requested_scope(self, platform: Platform, scope: str | None) -> list[str]:
        if scope:
            return self.scope_model.bind(self.scope_model.parse(scope), platform.default_scope)
        return list(platform.default_scope)

    async def platform_info(
        self, client_id: str | None, redirect_uri: str | None = None, scope: str | None = None
    ) -> PlatformInfo:
        """
        Returns what the consent screen shows about a platform.
        """
        platform = await self._get_platform(client_id)
        bound = self._requested_scope(platform, scope)
        return PlatformInfo(
            id=platform.id,
            name=platform.name,
            description=platform.description,
            logo=platform.logo,
            redirect_uri=self._redirect_uri(platform, redirect_uri),
            scope=bound,
            scope_description=self.scope_model.describe(bound),
        )

    async def authorize(
        self,
        request: AuthRequest,
        client_id: str | None,
        redirect_uri: str | None = None,
        scope: str | None = None,
        state: str | None = None,
    ) -> Redirect:
        """
        Issues an authorization code for the signed-in user and redirects to the platform.

        The redirect carries `scope`, `client_subject` (for paired users), `state` and `code`.
        """
        identity = await self.credentials.verify_user_token(request)
        user = await self._get_user(identity.uid)
        platform = await self._get_platform(client_id)

        uri = self._redirect_uri(platform, redirect_uri)
        bound = self._requested_scope(platform, scope)

        query = [f"scope={self.scope_model.encode(bound)}"]
        pairing = user.pairing(platform.id)
        client_subject = pairing.subject if pairing else None
        if client_subject:
            query.append(f"client_subject={quote(client_subject, safe='')}")
        if state:
            query.append(f"state={quote(state, safe='')}")

        code = self.token_issuer.issue_authorization_code(user.uid, bound, platform.id, client_subject)
        query.append(f"code={code}")

        logger.info(f"Issued authorization code for user {anonymize(user.uid, self.pii_salt)} to {platform.id}.")
        return Redirect(location=f"{uri}?{'&'.join(query)}")

    async def identity_redirect(self, request: AuthRequest, platform_id: str, method: str | None = None) -> Redirect:
        """
        Hands the signed-in user over to a platform with an identity token.
        """
        identity = await self.credentials.verify_user_token(request)
        user = await self._get_user(identity.uid)
        platform = await self._get_platform(platform_id)
        if not platform.redirect_uri:
            raise BadRequestError(f"Platform with id '{platform.id}' has no redirect uri.")

        token = self.token_issuer.issue_identity_token(user, platform.id, method=method or "app")
        return Redirect(location=f"{platform.redirect_uri}?token={token}")

    # Registration

    def _validate_registration(self, body: Mapping[str, Any]) -> RegistrationRequest:
        client_id = body.get("client_id")
        if not client_id:
            raise BadRequestError("Client id is required in request body.")
        if not isinstance(client_id, str) or len(client_id) > 40:
            raise BadRequestError("Client id must be a string of max length 40.")

        client_secret = body.get("client_secret")
        if not client_secret:
            raise BadRequestError("Client secret is required in request body.")
        if not isinstance(client_secret, str) or len(client_secret) > 256:
            raise BadRequestError("Client secret must be a string of max length 256.")

        redirect_uri = body.get("redirect_uri")
        if redirect_uri and not is_valid_redirect_uri(redirect_uri):
            raise BadRequestError("Redirect uri has a wrong format.")

        default_scope = body.get("default_scope")
        if default_scope:
            if not isinstance(default_scope, list) or not all(isinstance(s, str) for s in default_scope):
                raise BadRequestError("Default scope must be an array of strings.")
            for scope in default_scope:
                if not self.scope_model.is_known(scope):
                    raise BadRequestError(f"Wrong scope '{scope}'.")

        public_key = body.get("public_key")
        key_prefixes = (KEY_URL_PREFIX, "-----BEGIN")
        if public_key and not (isinstance(public_key, str) and public_key.strip().startswith(key_prefixes)):
            raise BadRequestError("Public key must be a PEM encoded key or an https url.")

        try:
            return RegistrationRequest.model_validate(body)
        except ValidationError as e:
            raise BadRequestError(f"Malformed registration request: {e}") from e

    async def register_platform(self, registration_code: str | None, body: Any) -> Platform:
        """
        Registers a new platform by redeeming a registration code.

        The platform's default scope is the requested default scope bound to the code's allowed
        scope, or the allowed scope when none was requested.

        Raises:
            BadRequestError: On invalid input, or if the code is used or of another type.
            NotFoundError: If the registration code does not exist.
            ConflictError: If the client id is taken.
        """
        if not registration_code:
            raise BadRequestError("No registration code provided.")
        if not isinstance(body, Mapping):
            raise BadRequestError("Body must be a json object.")

        request = self._validate_registration(body)

        code = await self.repository.get_registration_code(registration_code)
        if code is None:
            raise NotFoundError(f"Registration code '{registration_code}' does not exist.")
        if code.used or code.type != CLIENT_REGISTRATION:
            raise BadRequestError(f"Registration code '{registration_code}' cannot be used.")

        if request.default_scope:
            allowed = self.scope_model.expand(code.allowed_scope)
            for scope in request.default_scope:
                if scope not in allowed:
                    raise BadRequestError(f"Illegal scope '{scope}'.")
            client_scope = self.scope_model.bind(request.default_scope, code.allowed_scope)
        else:
            client_scope = list(code.allowed_scope)

        platform = Platform(
            id=request.client_id,
            client_secret=request.client_secret,
            redirect_uri=request.redirect_uri,
            default_scope=client_scope,
            public_key=request.public_key,
        )
        await self.repository.create_platform(platform)
        await self.repository.redeem_registration_code(registration_code, platform.id)

        logger.info(f"Registered platform {platform.id}.")
        return platform

    # Published data

    def public_key(self) -> str:
        return self.token_verifier.public_key

    def scopes(self) -> dict[str, dict[str, object]]:
        return self.scope_model.as_dict()
