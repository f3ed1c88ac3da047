# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
Authorization layer granting third-party platforms scoped, delegated access to Wirus users.
"""

__version__ = "0.1.0"

from .config import WirusAuthConfig
from .credentials import CredentialVerifier, data_for_scope
from .exceptions import InvalidTokenError, WirusAuthError
from .manager import AuthManager
from .models import AuthRequest, Platform, PlatformPairing, TokenResponse, User
from .scopes import WIRUS_SCOPES, ScopeModel
from .server import AuthorizationServer
from .store import DocumentStore, MemoryDocumentStore
from .tokens import TokenIssuer, TokenVerifier

__all__ = [
    "AuthManager",
    "AuthRequest",
    "AuthorizationServer",
    "CredentialVerifier",
    "DocumentStore",
    "InvalidTokenError",
    "MemoryDocumentStore",
    "Platform",
    "PlatformPairing",
    "ScopeModel",
    "TokenIssuer",
    "TokenResponse",
    "TokenVerifier",
    "User",
    "WIRUS_SCOPES",
    "WirusAuthConfig",
    "WirusAuthError",
    "data_for_scope",
]
