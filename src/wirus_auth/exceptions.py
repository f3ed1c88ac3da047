# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
Custom exceptions for the wirus-auth package.

Every exception carries the HTTP status code the routing layer should answer with.
Not-found and conflict conditions are reported as 400, like any other bad request.
"""


class WirusAuthError(Exception):
    """Base exception for all wirus-auth errors."""

    status_code: int = 500


class BadRequestError(WirusAuthError):
    """Raised when input is malformed or missing."""

    status_code = 400


class MalformedError(BadRequestError):
    """Raised when a token or document references data that does not exist."""


class SubjectMismatchError(BadRequestError):
    """Raised when two client subjects that must agree differ."""


class NotFoundError(BadRequestError):
    """Raised when a platform, user or document cannot be found."""


class ConflictError(BadRequestError):
    """Raised when a document that must not exist already exists."""


class UnauthorizedError(WirusAuthError):
    """Raised when the caller could not be authenticated."""

    status_code = 401


class InvalidCredentialsError(UnauthorizedError):
    """Raised when a client secret does not match the registered platform."""


class InvalidTokenError(UnauthorizedError):
    """
    Raised when a token is invalid (bad signature, wrong audience, issuer or subject, etc.).
    """


class ForbiddenError(UnauthorizedError):
    """Raised when an authenticated caller lacks the required scope or permission."""


class IdentityMismatchError(UnauthorizedError):
    """Raised when the token subject does not match the addressed user."""


class InternalError(WirusAuthError):
    """Raised for unexpected server side failures."""

    status_code = 500


class KeyFetchError(InternalError):
    """Raised when a platform public key cannot be retrieved."""


class StoreError(InternalError):
    """Raised when the document store fails."""


class OversizedResponseError(InternalError):
    """Raised when an HTTP response is too large."""


class SecurityError(InternalError):
    """Raised when an outbound request targets a blocked address."""
