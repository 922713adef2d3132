"""Helpers for building tokens and remote payloads in tests."""

from typing import Any, Dict, Iterable, Optional

from ..types import (
    RemoteCollection,
    RemoteMode,
    RemoteSnapshot,
    RemoteVariable,
    ResolvedType,
    Token,
    TokenType,
)

COLLECTION_ID = "VariableCollectionId:1:0"
LIGHT = "1:0"
DARK = "1:1"


def make_token(
    token_id: str,
    name: str,
    value: str,
    token_type: TokenType = TokenType.COLOR,
    category: str = "Core",
    external_ref: Optional[str] = None,
    last_remote_value: Optional[str] = None,
    version: int = 1,
    description: Optional[str] = None,
) -> Token:
    return Token(
        id=token_id,
        name=name,
        value=value,
        type=token_type,
        category=category,
        description=description,
        external_ref=external_ref,
        last_remote_value=last_remote_value,
        version=version,
    )


def rgb(hex_color: str, alpha: float = 1.0) -> Dict[str, float]:
    """Remote color dict for a #RRGGBB string."""
    h = hex_color.lstrip("#")
    return {
        "r": int(h[0:2], 16) / 255,
        "g": int(h[2:4], 16) / 255,
        "b": int(h[4:6], 16) / 255,
        "a": alpha,
    }


def make_variable(
    variable_id: str,
    name: str,
    value: Any,
    resolved_type: ResolvedType = ResolvedType.COLOR,
    dark_value: Any = None,
    collection_id: str = COLLECTION_ID,
    description: Optional[str] = None,
) -> RemoteVariable:
    values = {LIGHT: value}
    if dark_value is not None:
        values[DARK] = dark_value
    return RemoteVariable(
        id=variable_id,
        name=name,
        collection_id=collection_id,
        resolved_type=resolved_type,
        values_by_mode=values,
        description=description,
    )


def make_collection(
    collection_id: str = COLLECTION_ID, name: str = "Core"
) -> RemoteCollection:
    return RemoteCollection(
        id=collection_id,
        name=name,
        modes=(RemoteMode(LIGHT, "Light"), RemoteMode(DARK, "Dark")),
        default_mode_id=LIGHT,
    )


def make_remote(
    variables: Iterable[RemoteVariable] = (),
    collections: Iterable[RemoteCollection] = (),
) -> RemoteSnapshot:
    collections = list(collections) or [make_collection()]
    return RemoteSnapshot(
        collections={c.id: c for c in collections},
        variables={v.id: v for v in variables},
    )


def variables_payload(variables: Dict[str, Dict[str, Any]], name: str = "Core") -> Dict[str, Any]:
    """Local-variables response body with a single collection."""
    return {
        "status": 200,
        "error": False,
        "meta": {
            "variableCollections": {
                COLLECTION_ID: {
                    "id": COLLECTION_ID,
                    "name": name,
                    "modes": [
                        {"modeId": LIGHT, "name": "Light"},
                        {"modeId": DARK, "name": "Dark"},
                    ],
                    "defaultModeId": LIGHT,
                    "remote": False,
                }
            },
            "variables": {
                vid: {"id": vid, "variableCollectionId": COLLECTION_ID, **data}
                for vid, data in variables.items()
            },
        },
    }
