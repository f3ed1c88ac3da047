# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
Configuration for the wirus-auth package.
"""

from pydantic import Field, SecretStr, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PEM_PREFIX = "-----BEGIN"


class WirusAuthConfig(BaseSettings):
    """
    Configuration settings for wirus-auth.

    Attributes:
        issuer (str): The fixed app identity. `iss` of every app token, `aud` of platform tokens.
        private_key (SecretStr): PEM private key used to sign app tokens.
        public_key (str): PEM public key, published to platforms and used for internal verification.
        signing_algorithm (str): Algorithm of issued tokens.
        allowed_algorithms (list[str]): Algorithms accepted when verifying tokens.
        http_timeout (float | None): Timeout for outbound HTTP. None means no timeout.
        max_response_bytes (int): Upper bound for fetched public keys and JWKS documents.
        unsafe_local_dev (bool): Disables SSRF pinning of outbound requests.
        pii_salt (SecretStr): Salt for anonymizing user ids in logs/traces.
        idp_issuer (str | None): Expected issuer of identity-provider ID tokens.
        idp_audience (str | None): Expected audience of identity-provider ID tokens.
        idp_jwks_url (str | None): JWKS location of the identity provider.
    """

    model_config = SettingsConfigDict(
        env_prefix="WIRUS_AUTH_",
        case_sensitive=False,
    )

    issuer: str = "wirus-app"
    private_key: SecretStr
    public_key: str
    signing_algorithm: str = "RS256"
    allowed_algorithms: list[str] = Field(default_factory=lambda: ["RS256"])
    http_timeout: float | None = None
    max_response_bytes: int = Field(default=64 * 1024, gt=0)
    unsafe_local_dev: bool = False
    pii_salt: SecretStr = SecretStr("wirus-unsafe-default-salt")
    idp_issuer: str | None = None
    idp_audience: str | None = None
    idp_jwks_url: str | None = None

    @field_validator("private_key")
    @classmethod
    def validate_private_pem(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().strip().startswith(PEM_PREFIX):
            raise ValueError("private_key must be a PEM encoded key.")
        return v

    @field_validator("public_key")
    @classmethod
    def validate_public_pem(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(PEM_PREFIX):
            raise ValueError("public_key must be a PEM encoded key.")
        return v

    @field_validator("idp_jwks_url", mode="after")
    @classmethod
    def validate_https(cls, v: str | None, info: ValidationInfo) -> str | None:
        """
        Ensures that the JWKS location uses HTTPS, unless strictly opted out for local dev.
        """
        if v and not v.startswith("https://") and not info.data.get("unsafe_local_dev", False):
            raise ValueError("HTTPS is required for production. Set 'unsafe_local_dev=True' only for local testing.")
        return v

    @model_validator(mode="after")
    def validate_algorithms(self) -> "WirusAuthConfig":
        if self.signing_algorithm not in self.allowed_algorithms:
            raise ValueError(
                f"Signing algorithm '{self.signing_algorithm}' is not in allowed algorithms {self.allowed_algorithms}."
            )
        return self
