# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
Document store contract and an in-memory implementation.

Each document update is atomic on its own; nothing spans several calls.
"""

import copy
import operator
import uuid
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from wirus_auth.exceptions import ConflictError, NotFoundError, StoreError

_MISSING = object()

# A dotted string, or a tuple of segments for keys that may themselves contain dots
FieldPath = str | tuple[str, ...]

QUERY_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda field_value, values: field_value in values,
}


class Document(BaseModel):
    """A stored document and its id."""

    model_config = ConfigDict(frozen=True)

    id: str
    data: dict[str, Any] = Field(default_factory=dict)


class DocumentStore(Protocol):
    """
    Protocol for the persistent document store.

    Field paths address nested values, either dotted (`platforms.alice.subject`) or as a tuple of
    segments (`("platforms", platform_id, "subject")`). A segment of a tuple path is never split.
    """

    async def get(self, collection: str, doc_id: str) -> Document | None:
        """Returns the document or None if it does not exist."""
        ...

    async def query(self, collection: str, field: FieldPath, op: str, value: Any) -> list[Document]:
        """Returns all documents whose field compares to value."""
        ...

    async def create(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Creates a document. Raises ConflictError if it exists."""
        ...

    async def update(self, collection: str, doc_id: str, fields: Mapping[FieldPath, Any]) -> None:
        """Merges fields into an existing document. Raises NotFoundError if it does not exist."""
        ...

    async def add(self, collection: str, fields: dict[str, Any]) -> str:
        """Creates a document with a generated id and returns the id."""
        ...


def path_segments(path: FieldPath) -> tuple[str, ...]:
    segments = tuple(path.split(".")) if isinstance(path, str) else tuple(path)
    if not segments or not all(segments):
        raise StoreError(f"Invalid field path {path!r}.")
    return segments


def get_path(data: dict[str, Any], path: FieldPath) -> Any:
    """Resolves a field path, returning a sentinel when any segment is missing."""
    current: Any = data
    for segment in path_segments(path):
        if not isinstance(current, dict) or segment not in current:
            return _MISSING
        current = current[segment]
    return current


def set_path(data: dict[str, Any], path: FieldPath, value: Any) -> None:
    *parents, leaf = path_segments(path)
    current = data
    for segment in parents:
        child = current.get(segment)
        if not isinstance(child, dict):
            child = {}
            current[segment] = child
        current = child
    current[leaf] = value


class MemoryDocumentStore:
    """
    In-memory implementation of DocumentStore.
    Suitable for tests and single-process use; state is lost when the process exits.
    """

    def __init__(self, initial: dict[str, dict[str, dict[str, Any]]] | None = None) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = copy.deepcopy(initial or {})

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def get(self, collection: str, doc_id: str) -> Document | None:
        data = self._collection(collection).get(doc_id)
        if data is None:
            return None
        return Document(id=doc_id, data=copy.deepcopy(data))

    async def query(self, collection: str, field: FieldPath, op: str, value: Any) -> list[Document]:
        compare = QUERY_OPERATORS.get(op)
        if compare is None:
            raise StoreError(f"Unsupported query operator '{op}'.")

        results = []
        for doc_id, data in self._collection(collection).items():
            field_value = get_path(data, field)
            if field_value is _MISSING:
                continue
            try:
                matched = compare(field_value, value)
            except TypeError:
                matched = False
            if matched:
                results.append(Document(id=doc_id, data=copy.deepcopy(data)))
        return results

    async def create(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        docs = self._collection(collection)
        if doc_id in docs:
            raise ConflictError(f"Document '{collection}/{doc_id}' already exists.")
        docs[doc_id] = copy.deepcopy(fields)

    async def update(self, collection: str, doc_id: str, fields: Mapping[FieldPath, Any]) -> None:
        data = self._collection(collection).get(doc_id)
        if data is None:
            raise NotFoundError(f"Document '{collection}/{doc_id}' does not exist.")
        for path, value in fields.items():
            set_path(data, path, copy.deepcopy(value))

    async def add(self, collection: str, fields: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        await self.create(collection, doc_id, fields)
        return doc_id
