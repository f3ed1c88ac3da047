# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
AuthRepository maps platform, user and registration-code documents to models.
"""

from typing import Any

from pydantic import ValidationError

from wirus_auth.exceptions import ConflictError, StoreError, WirusAuthError
from wirus_auth.models import Platform, PlatformPairing, RegistrationCode, User
from wirus_auth.store import Document, DocumentStore, FieldPath
from wirus_auth.utils.logger import logger

PLATFORMS = "platforms"
USERS = "users"
CODES = "codes"

# User field mapping platform ids to pairings
PAIRINGS = "platforms"


class AuthRepository:
    """
    Typed access to the collections the authorization layer uses.

    Attributes:
        store (DocumentStore): The backing document store.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def _get(self, collection: str, doc_id: str) -> Document | None:
        try:
            return await self.store.get(collection, doc_id)
        except WirusAuthError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to read {collection}/{doc_id}: {e}") from e

    @staticmethod
    def _to_platform(doc: Document) -> Platform:
        try:
            return Platform.model_validate({**doc.data, "id": doc.id})
        except ValidationError as e:
            raise StoreError(f"Stored platform '{doc.id}' is invalid: {e}") from e

    @staticmethod
    def _to_user(doc: Document) -> User:
        try:
            return User.model_validate({**doc.data, "uid": doc.id})
        except ValidationError as e:
            raise StoreError(f"Stored user '{doc.id}' is invalid: {e}") from e

    async def get_platform(self, platform_id: str) -> Platform | None:
        doc = await self._get(PLATFORMS, platform_id)
        return self._to_platform(doc) if doc else None

    async def get_user(self, uid: str) -> User | None:
        doc = await self._get(USERS, uid)
        return self._to_user(doc) if doc else None

    async def find_user_by_pairing(self, platform_id: str, subject: str) -> User | None:
        """
        Finds the user paired to the platform under the given subject.

        Subjects are expected to be unique per platform. If several users match, the first one is used.
        """
        try:
            docs = await self.store.query(USERS, (PAIRINGS, platform_id, "subject"), "==", subject)
        except WirusAuthError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to query users of platform {platform_id}: {e}") from e

        if not docs:
            return None
        if len(docs) > 1:
            logger.warning(f"Platform {platform_id} has {len(docs)} users paired under the same subject.")
        return self._to_user(docs[0])

    async def set_pairing(self, uid: str, platform_id: str, pairing: PlatformPairing) -> None:
        await self._update(USERS, uid, {(PAIRINGS, platform_id): pairing.model_dump()})

    async def set_pairing_subject(self, uid: str, platform_id: str, subject: str) -> None:
        await self._update(USERS, uid, {(PAIRINGS, platform_id, "subject"): subject})

    async def create_platform(self, platform: Platform) -> None:
        try:
            await self.store.create(PLATFORMS, platform.id, platform.model_dump(exclude={"id"}))
        except ConflictError as e:
            raise ConflictError(f"Client with id '{platform.id}' already exists.") from e
        except WirusAuthError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to create platform {platform.id}: {e}") from e

    async def get_registration_code(self, code: str) -> RegistrationCode | None:
        doc = await self._get(CODES, code)
        if doc is None:
            return None
        try:
            return RegistrationCode.model_validate(doc.data)
        except ValidationError as e:
            raise StoreError(f"Stored registration code is invalid: {e}") from e

    async def redeem_registration_code(self, code: str, client_id: str) -> None:
        await self._update(CODES, code, {"used": True, "client_id": client_id})

    async def _update(self, collection: str, doc_id: str, fields: dict[FieldPath, Any]) -> None:
        try:
            await self.store.update(collection, doc_id, fields)
        except WirusAuthError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to update {collection}/{doc_id}: {e}") from e
