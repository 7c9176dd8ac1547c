"""
Scope values and an immutable scope set with explicit set algebra.
Scopes are stored space-separated and sorted; unknown values never enter a ScopeSet.
"""
from enum import Enum
from typing import Iterable, Iterator


class Scope(str, Enum):
    OPENID = "openid"
    EMAIL = "email"
    PROFILE = "profile"
    OFFLINE_ACCESS = "offline_access"
    GAME_DATA = "game_data"
    ACHIEVEMENTS = "achievements"
    USER_ID = "user_id"
    MODTOOLS = "modtools"


SUPPORTED_SCOPES = tuple(s.value for s in Scope)

# Shown on the consent and registration pages
SCOPE_DESCRIPTIONS = {
    Scope.OPENID: "Log you in with your account",
    Scope.EMAIL: "See your email address",
    Scope.PROFILE: "See your name and when your account was created",
    Scope.OFFLINE_ACCESS: "Keep access while you are not using the application",
    Scope.GAME_DATA: "See your pixel counts and rankings",
    Scope.ACHIEVEMENTS: "See your badges",
    Scope.USER_ID: "See your user id and account level",
    Scope.MODTOOLS: "Use moderation tools in your name",
}

_BY_VALUE = {s.value: s for s in Scope}


class ScopeSet:
    """Immutable set of Scope members."""

    __slots__ = ("_items",)

    def __init__(self, scopes: Iterable["Scope | str"] = ()):
        items = set()
        for s in scopes:
            if isinstance(s, Scope):
                items.add(s)
                continue
            member = _BY_VALUE.get(str(s).strip().lower())
            if member is not None:
                items.add(member)
        self._items = frozenset(items)

    @classmethod
    def parse(cls, value: "str | Iterable[str] | None") -> "ScopeSet":
        """Parse a space-separated string (or list of strings). Duplicates and unknown values are dropped."""
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(value.split())
        parts = []
        for v in value:
            parts.extend(str(v).split())
        return cls(parts)

    def union(self, other: Iterable["Scope | str"]) -> "ScopeSet":
        return ScopeSet(self._items | ScopeSet._coerce(other))

    def intersection(self, other: Iterable["Scope | str"]) -> "ScopeSet":
        return ScopeSet(self._items & ScopeSet._coerce(other))

    def difference(self, other: Iterable["Scope | str"]) -> "ScopeSet":
        return ScopeSet(self._items - ScopeSet._coerce(other))

    def issubset(self, other: Iterable["Scope | str"]) -> bool:
        return self._items <= ScopeSet._coerce(other)

    def issuperset(self, other: Iterable["Scope | str"]) -> bool:
        return self._items >= ScopeSet._coerce(other)

    def to_list(self) -> list[str]:
        return sorted(s.value for s in self._items)

    @staticmethod
    def _coerce(other) -> frozenset:
        if isinstance(other, ScopeSet):
            return other._items
        return ScopeSet(other)._items

    def __contains__(self, item) -> bool:
        if isinstance(item, Scope):
            return item in self._items
        return _BY_VALUE.get(str(item)) in self._items

    def __iter__(self) -> Iterator[Scope]:
        return iter(sorted(self._items, key=lambda s: s.value))

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __eq__(self, other) -> bool:
        if isinstance(other, ScopeSet):
            return self._items == other._items
        if isinstance(other, (set, frozenset)):
            return self._items == ScopeSet(other)._items
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._items)

    def __or__(self, other):
        return self.union(other)

    def __and__(self, other):
        return self.intersection(other)

    def __sub__(self, other):
        return self.difference(other)

    def __le__(self, other):
        return self.issubset(other)

    def __ge__(self, other):
        return self.issuperset(other)

    def __str__(self) -> str:
        return " ".join(self.to_list())

    def __repr__(self) -> str:
        return f"ScopeSet({self.to_list()!r})"
