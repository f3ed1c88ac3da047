# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
IdentityMapper component for mapping identity-provider claims to IdentityUser.
"""

from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator

from wirus_auth.exceptions import InvalidTokenError
from wirus_auth.models import IdentityUser


class RawIdPClaims(BaseModel):
    """
    Internal model to normalize incoming identity-provider claims.
    The user id may arrive as `uid`, `user_id` or `sub`, in that order of preference.
    """

    uid: str = Field(..., min_length=1)
    email: str | None = None

    @model_validator(mode="before")
    @classmethod
    def resolve_uid(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("uid"):
            data = {**data, "uid": data.get("user_id") or data.get("sub")}
        return data


class IdentityMapper:
    """
    Maps verified identity-provider claims to the IdentityUser model.
    """

    def map_claims(self, claims: dict[str, Any]) -> IdentityUser:
        """
        Args:
            claims: The verified claims returned by the identity provider.

        Returns:
            IdentityUser: The user account behind the token.

        Raises:
            InvalidTokenError: If no user id can be found in the claims.
        """
        try:
            raw = RawIdPClaims.model_validate(claims)
        except ValidationError as e:
            raise InvalidTokenError(f"Identity token carries no user id: {e}") from e

        return IdentityUser(uid=raw.uid, email=raw.email, claims=dict(claims))
