# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
Data models for the wirus-auth package.
"""

import re
from collections.abc import Mapping
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_validator,
)

REDIRECT_URI_PATTERN = re.compile(r"^https://[.a-zA-Z0-9\-_]+(:[0-9]+)?[/a-zA-Z0-9\-_]*$")

AUTH_CODE_SUBJECT = "auth_code"
ACCESS_TOKEN_SUBJECT = "access_token"
ACCOUNT_PREFIX = "ac:"
IDENTITY_PREFIX = "id:"


def is_valid_redirect_uri(uri: Any) -> bool:
    return isinstance(uri, str) and REDIRECT_URI_PATTERN.match(uri) is not None


class PlatformPairing(BaseModel):
    """
    The stored association between a user and a platform.

    Attributes:
        subject (str): The platform-side identifier of the user.
        scope (list[str]): The scope the pairing was last established under.
    """

    model_config = ConfigDict(extra="ignore")

    subject: str
    scope: list[str] = Field(default_factory=list)


class Platform(BaseModel):
    """
    A registered third-party client. `id` doubles as the OAuth `client_id`.

    Attributes:
        id (str): Document id and client id.
        client_secret (str): Compared in plaintext. Never shown in repr.
        redirect_uri (str | None): Fixed redirect target; if absent the caller supplies one.
        default_scope (list[str]): Scope granted absent an explicit request.
        public_key (str | None): PEM key, or an https URL serving it, for platform-signed tokens.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., max_length=40)
    client_secret: str = Field(..., max_length=256, repr=False)
    redirect_uri: str | None = None
    default_scope: list[str] = Field(default_factory=list)
    public_key: str | None = None
    name: str | None = None
    description: str | None = None
    logo: str | None = None


class User(BaseModel):
    """
    A user record. Only the fields the authorization layer reads are modelled.
    """

    model_config = ConfigDict(extra="ignore")

    uid: str
    name: str = ""
    email: str | None = None
    location: str = ""
    platforms: dict[str, PlatformPairing] = Field(default_factory=dict)

    @field_validator("email", mode="before")
    @classmethod
    def empty_email_is_none(cls, v: Any) -> Any:
        return v or None

    def pairing(self, platform_id: str) -> PlatformPairing | None:
        return self.platforms.get(platform_id)

    def __repr__(self) -> str:
        # PII fields MUST be redacted in __repr__
        return f"User(uid='<REDACTED>', name='<REDACTED>', email='<REDACTED>', platforms={sorted(self.platforms)!r})"

    def __str__(self) -> str:
        return self.__repr__()


class IdentityUser(BaseModel):
    """
    The identity-provider account behind a user token.
    """

    model_config = ConfigDict(frozen=True)

    uid: str
    email: str | None = None
    claims: dict[str, Any] = Field(default_factory=dict, repr=False)


class AuthRequest(BaseModel):
    """
    The parts of an inbound HTTP request the verifiers look at.

    Header lookup is case-insensitive.
    """

    headers: dict[str, str] = Field(default_factory=dict)
    query: dict[str, str] = Field(default_factory=dict)
    path_params: dict[str, str] = Field(default_factory=dict)
    url: str = ""

    @field_validator("headers", mode="before")
    @classmethod
    def lower_header_names(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            return {str(k).lower(): val for k, val in v.items()}
        return v

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


class _Claims(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    iss: str
    aud: str
    sub: str
    iat: int | None = None


class AuthCodeClaims(_Claims):
    """Claims of an authorization code."""

    sub: Literal["auth_code"] = AUTH_CODE_SUBJECT
    user: str
    scope: list[str] = Field(default_factory=list)
    client_subject: str | None = None


class AccessTokenClaims(_Claims):
    """Claims of an access token. `user` and `data` are only present for user-bound grants."""

    sub: Literal["access_token"] = ACCESS_TOKEN_SUBJECT
    user: str | None = None
    scope: list[str] = Field(default_factory=list)
    client_subject: str | None = None
    data: dict[str, Any] | None = None


class IdentityClaims(_Claims):
    """
    Claims of an identity token. The subject is `ac:<uid>` for users paired with the
    audience platform and `id:<uid>` otherwise.
    """

    sub: Annotated[str, Field(pattern=r"^(ac|id):.+")]
    method: str | None = None
    platform_subject: str | None = Field(default=None, alias="platformSubject")

    @property
    def user_id(self) -> str:
        return self.sub[3:]

    @property
    def is_account_bound(self) -> bool:
        return self.sub.startswith(ACCOUNT_PREFIX)


def _claims_kind(value: Any) -> str | None:
    sub = value.get("sub") if isinstance(value, Mapping) else getattr(value, "sub", None)
    if sub in (AUTH_CODE_SUBJECT, ACCESS_TOKEN_SUBJECT):
        return str(sub)
    if isinstance(sub, str) and sub.startswith((ACCOUNT_PREFIX, IDENTITY_PREFIX)):
        return "identity"
    return None


TokenClaims = Annotated[
    Union[
        Annotated[AuthCodeClaims, Tag(AUTH_CODE_SUBJECT)],
        Annotated[AccessTokenClaims, Tag(ACCESS_TOKEN_SUBJECT)],
        Annotated[IdentityClaims, Tag("identity")],
    ],
    Discriminator(_claims_kind),
]

token_claims_adapter: TypeAdapter[TokenClaims] = TypeAdapter(TokenClaims)


class PlatformTokenClaims(BaseModel):
    """
    Claims of a token signed by a platform. A missing subject means an anonymous platform user.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    iss: str
    aud: str | list[str]
    sub: str | None = None


class TokenRequest(BaseModel):
    """
    Body of a token endpoint request.
    """

    model_config = ConfigDict(extra="ignore")

    grant_type: Literal["authorization_code", "client_credentials"]
    client_id: str | None = None
    client_secret: str | None = None
    code: str | None = None
    client_subject: str | None = None
    scope: list[str] | None = None

    @field_validator("scope", mode="before")
    @classmethod
    def split_scope_string(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [s for s in v.split(" ") if s]
        return v


class TokenResponse(BaseModel):
    """
    Response of the token endpoint.

    Attributes:
        access_token (str): The signed access token.
        token_type (str): Always "bearer".
        expires_in (int): Always -1; access tokens do not expire.
        refresh_token (str | None): Always None; refresh is not supported.
    """

    access_token: str
    token_type: str = "bearer"
    expires_in: int = -1
    refresh_token: str | None = None


class PlatformInfo(BaseModel):
    """Public consent-screen data about a platform."""

    id: str
    name: str | None = None
    description: str | None = None
    logo: str | None = None
    redirect_uri: str
    scope: list[str]
    scope_description: str = Field(serialization_alias="scopeDescription")


class RegistrationCode(BaseModel):
    """A single-use code that allows registering one platform."""

    model_config = ConfigDict(extra="ignore")

    type: str
    used: bool = False
    allowed_scope: list[str] = Field(default_factory=list)
    client_id: str | None = None


class RegistrationRequest(BaseModel):
    """Body of a platform registration."""

    model_config = ConfigDict(extra="ignore")

    client_id: str = Field(..., min_length=1, max_length=40)
    client_secret: str = Field(..., min_length=1, max_length=256, repr=False)
    redirect_uri: str | None = None
    default_scope: list[str] | None = None
    public_key: str | None = None


class Redirect(BaseModel):
    """A redirect the routing layer should answer with."""

    location: str
    status_code: int = 303
