"""
Core data types for design token synchronization.

Remote types mirror the design tool's variables payload; local types mirror
the token store. Everything here is immutable so snapshots can be passed
around freely without one stage observing another stage's edits.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from .errors import MalformedValue


class TokenType(str, Enum):
    COLOR = "COLOR"
    SPACING = "SPACING"
    TYPOGRAPHY = "TYPOGRAPHY"
    BORDER_RADIUS = "BORDER_RADIUS"
    SHADOW = "SHADOW"
    FONT_SIZE = "FONT_SIZE"
    FONT_WEIGHT = "FONT_WEIGHT"
    LINE_HEIGHT = "LINE_HEIGHT"
    OPACITY = "OPACITY"
    Z_INDEX = "Z_INDEX"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: Any) -> "TokenType":
        """Parse a token type, falling back to OTHER for unknown names."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.OTHER


NUMERIC_TYPES = frozenset(
    {
        TokenType.SPACING,
        TokenType.FONT_SIZE,
        TokenType.OPACITY,
        TokenType.Z_INDEX,
        TokenType.LINE_HEIGHT,
        TokenType.BORDER_RADIUS,
    }
)


class ResolvedType(str, Enum):
    """Value type of a remote variable."""

    BOOLEAN = "BOOLEAN"
    FLOAT = "FLOAT"
    STRING = "STRING"
    COLOR = "COLOR"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> "ResolvedType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.UNKNOWN


class ChangeOrigin(str, Enum):
    MANUAL = "MANUAL"
    FIGMA = "FIGMA"
    AUTOMATION = "AUTOMATION"
    AI = "AI"

    @property
    def is_human(self) -> bool:
        return self in (ChangeOrigin.MANUAL, ChangeOrigin.FIGMA)


class DivergenceKind(str, Enum):
    ADDED = "ADDED"
    REMOVED = "REMOVED"
    MODIFIED = "MODIFIED"


class Choice(str, Enum):
    KEEP_LOCAL = "KEEP_LOCAL"
    USE_REMOTE = "USE_REMOTE"
    EXPLICIT = "EXPLICIT"


# Keyword -> type inference for FLOAT variables. Order matters: the first
# matching entry wins, so the more specific font keywords come first.
_FLOAT_NAME_HINTS: Tuple[Tuple[Tuple[str, ...], TokenType], ...] = (
    (("font-size", "fontsize", "font_size"), TokenType.FONT_SIZE),
    (("font-weight", "fontweight", "font_weight"), TokenType.FONT_WEIGHT),
    (("line-height", "lineheight", "line_height", "leading"), TokenType.LINE_HEIGHT),
    (("z-index", "zindex", "z_index"), TokenType.Z_INDEX),
    (("radius",), TokenType.BORDER_RADIUS),
    (("opacity",), TokenType.OPACITY),
    (("spacing", "space", "gap", "padding", "margin"), TokenType.SPACING),
)


def map_remote_type(resolved_type: ResolvedType, name: str) -> TokenType:
    """Map a remote variable type onto the local token type enumeration.

    Total: anything that cannot be classified maps to OTHER.
    """
    name_lower = name.lower()
    if resolved_type == ResolvedType.COLOR:
        return TokenType.COLOR
    if resolved_type == ResolvedType.FLOAT:
        for keywords, token_type in _FLOAT_NAME_HINTS:
            if any(k in name_lower for k in keywords):
                return token_type
        return TokenType.OTHER
    if resolved_type == ResolvedType.STRING:
        if "font" in name_lower:
            return TokenType.TYPOGRAPHY
        return TokenType.OTHER
    return TokenType.OTHER


# =============================================================================
# Local side
# =============================================================================


@dataclass(frozen=True)
class Token:
    """A named design value owned by one project."""

    id: str
    name: str
    value: str
    type: TokenType
    category: str
    description: Optional[str] = None
    external_ref: Optional[str] = None
    last_remote_value: Optional[str] = None
    version: int = 1
    deleted_at: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def fields(self) -> Dict[str, Any]:
        """Audited fields, keyed by the names used in history entries."""
        return {
            "name": self.name,
            "value": self.value,
            "type": self.type.value,
            "category": self.category,
            "description": self.description,
            "externalRef": self.external_ref,
            "lastRemoteValue": self.last_remote_value,
        }

    def with_changes(self, **changes: Any) -> "Token":
        return replace(self, **changes)


@dataclass(frozen=True)
class LocalSnapshot:
    """Atomically-read view of one project's tokens."""

    project_id: str
    tokens: Tuple[Token, ...] = ()
    dismissed: FrozenSet[str] = frozenset()
    # token id -> number of components using it (informational)
    component_usage: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self):
        active = tuple(t for t in self.tokens if not t.is_deleted)
        object.__setattr__(self, "tokens", active)

    def by_id(self) -> Dict[str, Token]:
        return {t.id: t for t in self.tokens}


# =============================================================================
# Remote side
# =============================================================================


@dataclass(frozen=True)
class RemoteMode:
    mode_id: str
    name: str


@dataclass(frozen=True)
class RemoteCollection:
    id: str
    name: str
    modes: Tuple[RemoteMode, ...]
    default_mode_id: Optional[str] = None
    remote: bool = False

    def select_mode(self, mode_name: Optional[str] = None) -> Optional[str]:
        """Pick the comparison mode id.

        A mode matching ``mode_name`` (case-insensitive) wins, then the
        default mode, then the first mode listed.
        """
        if mode_name:
            wanted = mode_name.strip().lower()
            for mode in self.modes:
                if mode.name.lower() == wanted:
                    return mode.mode_id
        if self.default_mode_id:
            return self.default_mode_id
        if self.modes:
            return self.modes[0].mode_id
        return None


@dataclass(frozen=True)
class RemoteVariable:
    id: str
    name: str
    collection_id: str
    resolved_type: ResolvedType
    values_by_mode: Mapping[str, Any]
    remote: bool = False
    description: Optional[str] = None


def is_alias(value: Any) -> bool:
    return (
        isinstance(value, Mapping)
        and value.get("type") == "VARIABLE_ALIAS"
        and "id" in value
    )


@dataclass(frozen=True)
class RemoteSnapshot:
    """Complete remote state for one file, as delivered by the fetcher."""

    collections: Mapping[str, RemoteCollection] = field(default_factory=dict)
    variables: Mapping[str, RemoteVariable] = field(default_factory=dict)

    def collection_of(self, variable: RemoteVariable) -> Optional[RemoteCollection]:
        return self.collections.get(variable.collection_id)

    def category_of(self, variable: RemoteVariable) -> str:
        collection = self.collection_of(variable)
        if collection and collection.name:
            return collection.name
        return "Imported"

    def raw_value(self, variable: RemoteVariable, mode_name: Optional[str] = None) -> Any:
        """Value of ``variable`` in its comparison mode, aliases not followed."""
        collection = self.collection_of(variable)
        mode_id = collection.select_mode(mode_name) if collection else None
        if mode_id is not None and mode_id in variable.values_by_mode:
            return variable.values_by_mode[mode_id]
        # Fall back to the first value the payload listed.
        for value in variable.values_by_mode.values():
            return value
        return None

    def comparison_value(
        self, variable_id: str, mode_name: Optional[str] = None
    ) -> Any:
        """Value of a variable in its comparison mode with aliases followed.

        Raises MalformedValue for dangling or cyclic aliases.
        """
        seen = []
        current = self.variables.get(variable_id)
        if current is None:
            raise MalformedValue(variable_id, None, "unknown variable")
        while True:
            seen.append(current.id)
            value = self.raw_value(current, mode_name)
            if not is_alias(value):
                return value
            target = self.variables.get(value["id"])
            if target is None:
                raise MalformedValue(
                    value, None, f"alias to missing variable {value['id']}"
                )
            if target.id in seen:
                chain = " -> ".join(seen + [target.id])
                raise MalformedValue(value, None, f"alias cycle: {chain}")
            current = target


# =============================================================================
# Divergences
# =============================================================================


@dataclass(frozen=True)
class Divergence:
    """One discrepancy between the remote and local representations.

    ``key`` is stable across recomputation from the same snapshots and is
    what callers hand back when submitting a resolution.
    """

    key: str
    kind: DivergenceKind
    token_name: str
    token_type: TokenType
    category: str
    token_id: Optional[str] = None
    variable_id: Optional[str] = None
    local_value: Optional[str] = None
    remote_value: Optional[str] = None
    local_valid: bool = True
    remote_valid: bool = True
    local_version: Optional[int] = None
    # True when the pair was matched by name and the link is not persisted yet
    proposed_link: bool = False
    # Token ids that matched by name but could not be paired unambiguously
    candidates: Tuple[str, ...] = ()
    description: Optional[str] = None
    affected_components: int = 0

    @property
    def is_ambiguous(self) -> bool:
        return len(self.candidates) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "kind": self.kind.value,
            "tokenName": self.token_name,
            "tokenType": self.token_type.value,
            "category": self.category,
            "tokenId": self.token_id,
            "variableId": self.variable_id,
            "localValue": self.local_value,
            "remoteValue": self.remote_value,
            "localValid": self.local_valid,
            "remoteValid": self.remote_valid,
            "proposedLink": self.proposed_link,
            "candidates": list(self.candidates),
            "affectedComponents": self.affected_components,
        }


def added_key(variable_id: str) -> str:
    return f"added:{variable_id}"


def removed_key(token_id: str) -> str:
    return f"removed:{token_id}"


def modified_key(token_id: str) -> str:
    return f"modified:{token_id}"
