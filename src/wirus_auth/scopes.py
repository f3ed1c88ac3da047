# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
Permission scopes for users and platforms.

Scopes form a tree of exactly one level: a super-scope lists `children` and
grants all of them, a leaf scope optionally names its `parent` for display
grouping. The registry is immutable and handed to `ScopeModel`, which holds
all scope arithmetic.
"""

from collections.abc import Iterable, Mapping, Sequence
from types import MappingProxyType
from urllib.parse import quote, unquote_plus

from pydantic import BaseModel, ConfigDict, Field

ScopeSet = list[str]

USER_SCOPE_PREFIX = "wirus.user"


class ScopeDefinition(BaseModel):
    """
    A registry entry.

    Attributes:
        name (str): Display name, shown on the consent screen.
        parent (str | None): The super-scope this scope is grouped under.
        children (tuple[str, ...]): Scopes granted along with this one. Non-empty for super-scopes.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    parent: str | None = None
    children: tuple[str, ...] = Field(default_factory=tuple)

    @property
    def is_super_scope(self) -> bool:
        return bool(self.children)


ScopeRegistry = Mapping[str, ScopeDefinition]


def _registry(entries: dict[str, dict[str, object]]) -> ScopeRegistry:
    return MappingProxyType({scope: ScopeDefinition.model_validate(e) for scope, e in entries.items()})


WIRUS_SCOPES: ScopeRegistry = _registry(
    {
        "wirus.user.email": {"name": "Email", "parent": "wirus.user.read"},
        "wirus.user.name": {"name": "Name", "parent": "wirus.user.read"},
        "wirus.user.location": {"name": "Location", "parent": "wirus.user.read"},
        "wirus.user.read": {
            "name": "User",
            "children": ("wirus.user.email", "wirus.user.name", "wirus.user.location"),
        },
        "wirus.platform.read": {"name": "Platform"},
        "wirus.platform.write": {"name": "Platform"},
        "wirus.actions.get": {"name": "Action", "parent": "wirus.actions.read"},
        "wirus.actions.list": {"name": "Actions", "parent": "wirus.actions.read"},
        "wirus.actions.read": {"name": "Actions", "children": ("wirus.actions.get", "wirus.actions.list")},
        "wirus.actions.create": {"name": "Action", "parent": "wirus.actions.write"},
        "wirus.actions.complete": {"name": "Action", "parent": "wirus.actions.write"},
        "wirus.actions.write": {"name": "Actions", "children": ("wirus.actions.create", "wirus.actions.complete")},
    }
)


class ScopeModel:
    """
    Scope arithmetic over an injected registry.

    Attributes:
        registry (ScopeRegistry): The read-only scope registry.
    """

    def __init__(self, registry: ScopeRegistry = WIRUS_SCOPES) -> None:
        self.registry = registry

    def is_known(self, scope: str) -> bool:
        return scope in self.registry

    def expand(self, scopes: Iterable[str], keep_parent: bool = True) -> ScopeSet:
        """
        Expands super-scopes into their direct children.

        Unknown scopes are dropped. Only one level is expanded, which matches the registry depth.

        Args:
            scopes: The scopes to expand.
            keep_parent: Whether a super-scope stays in the result next to its children.

        Returns:
            The expanded scopes, in input order.
        """
        expanded: ScopeSet = []
        for scope in scopes:
            definition = self.registry.get(scope)
            if definition is None:
                continue
            if definition.is_super_scope:
                if keep_parent:
                    expanded.append(scope)
                expanded.extend(definition.children)
            else:
                expanded.append(scope)
        return expanded

    def bind(self, requested: Sequence[str] | None, allowed: Sequence[str] | None) -> ScopeSet:
        """
        Narrows the requested scopes to the allowed ceiling.

        For every allowed scope: keep it if it was requested; if it is a super-scope and some of
        its children were requested, keep exactly those children; otherwise keep it as the
        default grant. An empty request therefore yields `allowed` unchanged.

        Args:
            requested: Scopes asked for by the platform.
            allowed: Scopes the platform (or pairing) may hold.

        Returns:
            The bound scopes. Every element is contained in `expand(allowed)`.
        """
        requested = list(requested or [])
        bound: ScopeSet = []
        for scope in allowed or []:
            if scope in requested:
                bound.append(scope)
                continue
            definition = self.registry.get(scope)
            if definition is not None and definition.is_super_scope:
                children = [s for s in requested if s in definition.children]
                if children:
                    bound.extend(children)
                    continue
            bound.append(scope)
        return bound

    def satisfies(self, granted: Iterable[str], required: Iterable[str]) -> bool:
        """
        Checks if the granted scopes cover the required scopes.

        A super-scope grant covers each of its children; a super-scope requirement is
        satisfied once all of its children are granted.
        """
        expanded_required = self.expand(required, keep_parent=False)
        expanded_granted = set(self.expand(granted))
        return all(scope in expanded_granted for scope in expanded_required)

    def describe(self, scopes: Iterable[str]) -> str:
        """
        Returns the consent-screen text for the user data covered by the scopes, e.g. "Email, Name und Location".
        """
        names = [
            self.registry[s].name for s in self.expand(scopes, keep_parent=False) if s.startswith(USER_SCOPE_PREFIX)
        ]
        if not names:
            return ""
        if len(names) == 1:
            return names[0]
        return ", ".join(names[:-1]) + " und " + names[-1]

    def unknown(self, scopes: Iterable[str]) -> ScopeSet:
        return [s for s in scopes if s not in self.registry]

    @staticmethod
    def without_user_scopes(scopes: Iterable[str]) -> ScopeSet:
        return [s for s in scopes if not s.startswith(USER_SCOPE_PREFIX)]

    @staticmethod
    def parse(value: str) -> ScopeSet:
        """Parses a space delimited, URL encoded scope string."""
        return [s for s in unquote_plus(value).split(" ") if s]

    @staticmethod
    def encode(scopes: Iterable[str]) -> str:
        """Encodes scopes for use in a query string."""
        return quote(" ".join(scopes), safe="!~*'()")

    def as_dict(self) -> dict[str, dict[str, object]]:
        return {scope: d.model_dump(exclude_none=True, exclude_defaults=True) for scope, d in self.registry.items()}
