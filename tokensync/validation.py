"""
Explicit input validation.

Every external payload passes through one of these functions before it
reaches the diff engine. Each returns a ValidationResult instead of raising,
so callers decide whether a partial result is acceptable.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Mapping, Optional, TypeVar

from .types import (
    RemoteCollection,
    RemoteMode,
    RemoteSnapshot,
    RemoteVariable,
    ResolvedType,
    Token,
    TokenType,
)

T = TypeVar("T")

MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500


@dataclass(frozen=True)
class ValidationResult(Generic[T]):
    """Parsed value (None on failure) plus every problem found."""

    value: Optional[T]
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.value is not None

    @classmethod
    def failure(cls, *errors: str) -> "ValidationResult[T]":
        return cls(value=None, errors=list(errors))


def _get(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in data:
            return data[name]
    return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


# =============================================================================
# Local tokens
# =============================================================================


def validate_token(
    data: Any, token_id: Optional[str] = None
) -> ValidationResult[Token]:
    """Validate a token record (camelCase or snake_case keys)."""
    if not isinstance(data, Mapping):
        return ValidationResult.failure("token must be an object")

    errors: List[str] = []
    tid = _optional_str(_get(data, "id")) or token_id
    if not tid:
        errors.append("id is required")

    name = _get(data, "name")
    if not isinstance(name, str) or not name.strip():
        errors.append("name is required")
    elif len(name) > MAX_NAME_LENGTH:
        errors.append(f"name must be at most {MAX_NAME_LENGTH} characters")

    value = _get(data, "value")
    if not isinstance(value, str) or not value.strip():
        errors.append("value is required")

    raw_type = _get(data, "type")
    token_type: Optional[TokenType] = None
    try:
        token_type = TokenType(str(raw_type).upper())
    except ValueError:
        errors.append(f"type {raw_type!r} must be one of {[t.value for t in TokenType]}")

    category = _get(data, "category")
    if not isinstance(category, str) or not category.strip():
        errors.append("category is required")

    description = _optional_str(_get(data, "description"))
    if description and len(description) > MAX_DESCRIPTION_LENGTH:
        errors.append(
            f"description must be at most {MAX_DESCRIPTION_LENGTH} characters"
        )

    version = _get(data, "version")
    if version is None:
        version = 1
    elif isinstance(version, bool) or not isinstance(version, int) or version < 1:
        errors.append(f"version must be a positive integer, got {version!r}")

    if errors:
        return ValidationResult(value=None, errors=errors)

    return ValidationResult(
        value=Token(
            id=tid,
            name=name.strip(),
            value=value,
            type=token_type,
            category=category.strip(),
            description=description,
            external_ref=_optional_str(
                _get(data, "externalRef", "external_ref", "figmaVariableId")
            ),
            last_remote_value=_optional_str(
                _get(data, "lastRemoteValue", "last_remote_value")
            ),
            version=version,
            deleted_at=_optional_str(_get(data, "deletedAt", "deleted_at")),
        )
    )


def token_to_dict(token: Token) -> Dict[str, Any]:
    data = {"id": token.id, **token.fields(), "version": token.version}
    if token.deleted_at:
        data["deletedAt"] = token.deleted_at
    return data


# =============================================================================
# Remote variables payload
# =============================================================================


def _validate_collection(cid: str, data: Any) -> ValidationResult[RemoteCollection]:
    if not isinstance(data, Mapping):
        return ValidationResult.failure(f"collection {cid}: must be an object")
    modes = []
    for mode in data.get("modes") or []:
        if isinstance(mode, Mapping) and mode.get("modeId"):
            modes.append(
                RemoteMode(mode_id=str(mode["modeId"]), name=str(mode.get("name", "")))
            )
    return ValidationResult(
        value=RemoteCollection(
            id=str(data.get("id") or cid),
            name=str(data.get("name") or ""),
            modes=tuple(modes),
            default_mode_id=_optional_str(data.get("defaultModeId")),
            remote=bool(data.get("remote", False)),
        )
    )


def _validate_variable(vid: str, data: Any) -> ValidationResult[RemoteVariable]:
    if not isinstance(data, Mapping):
        return ValidationResult.failure(f"variable {vid}: must be an object")
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        return ValidationResult.failure(f"variable {vid}: name is required")
    collection_id = data.get("variableCollectionId")
    if not collection_id:
        return ValidationResult.failure(
            f"variable {name}: variableCollectionId is required"
        )
    values = data.get("valuesByMode")
    if not isinstance(values, Mapping) or not values:
        return ValidationResult.failure(f"variable {name}: valuesByMode is empty")
    return ValidationResult(
        value=RemoteVariable(
            id=str(data.get("id") or vid),
            name=name.strip(),
            collection_id=str(collection_id),
            resolved_type=ResolvedType.parse(data.get("resolvedType")),
            values_by_mode=dict(values),
            remote=bool(data.get("remote", False)),
            description=_optional_str(data.get("description")),
        )
    )


def parse_remote_snapshot(payload: Any) -> ValidationResult[RemoteSnapshot]:
    """Parse a local-variables response into a RemoteSnapshot.

    Accepts either the full response (``{"meta": {...}}``) or the bare
    ``meta`` object. Every problem is collected, and any problem fails the
    whole payload: a snapshot missing one variable would report the tokens
    linked to it as removed.
    """
    if not isinstance(payload, Mapping):
        return ValidationResult.failure("payload must be an object")
    if payload.get("error") is True:
        return ValidationResult.failure(
            f"remote reported an error (status {payload.get('status')})"
        )
    meta = payload.get("meta", payload)
    if not isinstance(meta, Mapping):
        return ValidationResult.failure("meta must be an object")

    raw_collections = meta.get("variableCollections", {})
    raw_variables = meta.get("variables", {})
    if not isinstance(raw_collections, Mapping) or not isinstance(
        raw_variables, Mapping
    ):
        return ValidationResult.failure(
            "variableCollections and variables must be objects"
        )

    errors: List[str] = []
    collections: Dict[str, RemoteCollection] = {}
    for cid, data in raw_collections.items():
        result = _validate_collection(str(cid), data)
        errors.extend(result.errors)
        if result.ok:
            collections[result.value.id] = result.value

    variables: Dict[str, RemoteVariable] = {}
    for vid, data in raw_variables.items():
        result = _validate_variable(str(vid), data)
        errors.extend(result.errors)
        if result.ok:
            variables[result.value.id] = result.value

    if errors:
        return ValidationResult.failure(*errors)
    return ValidationResult(
        value=RemoteSnapshot(collections=collections, variables=variables),
        errors=errors,
    )
