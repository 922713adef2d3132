"""
Mutations, mutation batches, and their plaintext serialization.

This module contains:
1. Serialization utilities (format_line, parse_line, etc.)
2. Mutation - one concrete create/update/delete instruction
3. MutationBatch - the interface between resolution and application

A batch serializes to one line per mutation and parses back losslessly,
so a plan can be reviewed, stored, and applied later.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import re

from .types import ChangeOrigin


# =============================================================================
# Serialization Utilities
# =============================================================================

_ESCAPES = {"\\": "\\\\", '"': '\\"', "\n": "\\n", "\r": "\\r", "\t": "\\t"}
_UNESCAPES = {"n": "\n", "r": "\r", "t": "\t"}


def _needs_quotes(value: str) -> bool:
    if not value:
        return True
    if any(c in value for c in ' =",[]\\\n\r\t'):
        return True
    # Anything that would not parse back as this exact string.
    return parse_value(value) != value


def format_value(value: Any) -> str:
    """Format a value for serialization."""
    if isinstance(value, str):
        if _needs_quotes(value):
            escaped = "".join(_ESCAPES.get(c, c) for c in value)
            return f'"{escaped}"'
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        formatted = ", ".join(format_value(v) for v in value)
        return f"[{formatted}]"
    return str(value)


def parse_value(s: str) -> Any:
    """Parse a serialized value."""
    s = s.strip()

    if s.startswith('"') and s.endswith('"') and len(s) >= 2:
        inner = s[1:-1]
        return re.sub(r"\\(.)", lambda m: _UNESCAPES.get(m.group(1), m.group(1)), inner, flags=re.DOTALL)

    if s.startswith("[") and s.endswith("]"):
        inner = s[1:-1].strip()
        if not inner:
            return []
        return [parse_value(item) for item in _split(inner, ",")]

    if s == "true":
        return True
    if s == "false":
        return False

    try:
        if "." in s:
            return float(s)
        return int(s)
    except ValueError:
        return s


def _split(s: str, sep: str) -> List[str]:
    """Split on ``sep`` outside quotes and brackets."""
    items = []
    current = ""
    in_quotes = False
    in_brackets = 0
    escape = False

    for c in s:
        if escape:
            current += c
            escape = False
        elif c == "\\":
            current += c
            escape = True
        elif c == '"':
            current += c
            in_quotes = not in_quotes
        elif c == "[" and not in_quotes:
            current += c
            in_brackets += 1
        elif c == "]" and not in_quotes:
            current += c
            in_brackets -= 1
        elif c == sep and not in_quotes and in_brackets == 0:
            if current.strip():
                items.append(current.strip())
            current = ""
        else:
            current += c

    if current.strip():
        items.append(current.strip())
    return items


def format_line(kind: str, fields: Dict[str, Any]) -> str:
    """Format a single line: KIND key=value key=value ..."""
    parts = [kind]
    for key, value in fields.items():
        parts.append(f"{key}={format_value(value)}")
    return " ".join(parts)


def parse_line(line: str) -> Tuple[str, Dict[str, Any]]:
    """Parse a single line into (kind, fields) tuple."""
    line = line.strip()
    if not line or line.startswith("#"):
        raise ValueError(f"Cannot parse empty or comment line: {line!r}")

    tokens = _split(line, " ")
    if not tokens:
        raise ValueError(f"No tokens in line: {line!r}")

    kind = tokens[0]
    fields: Dict[str, Any] = {}

    for token in tokens[1:]:
        if "=" not in token:
            raise ValueError(f"Invalid field (no '='): {token!r}")
        key, value_str = token.split("=", 1)
        fields[key] = parse_value(value_str)

    return kind, fields


# =============================================================================
# Mutations
# =============================================================================


class MutationKind(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    DISMISS = "DISMISS"
    NOOP = "NOOP"


# Token attributes a mutation may set, in serialization order.
MUTABLE_FIELDS = (
    "name",
    "value",
    "type",
    "category",
    "description",
    "external_ref",
    "last_remote_value",
)


@dataclass(frozen=True)
class Mutation:
    """A concrete instruction against the local store.

    ``changes`` holds (attribute, new value) pairs in MUTABLE_FIELDS order.
    For CREATE it is the full token payload.
    """

    kind: MutationKind
    divergence_key: str
    origin: ChangeOrigin = ChangeOrigin.MANUAL
    token_id: Optional[str] = None
    expected_version: Optional[int] = None
    changes: Tuple[Tuple[str, Optional[str]], ...] = ()
    # History action override, e.g. "imported" for bulk imports
    action: Optional[str] = None

    def __post_init__(self):
        unknown = [k for k, _ in self.changes if k not in MUTABLE_FIELDS]
        if unknown:
            raise ValueError(f"Unknown mutation fields: {unknown}")
        ordered = tuple(
            sorted(self.changes, key=lambda kv: MUTABLE_FIELDS.index(kv[0]))
        )
        object.__setattr__(self, "changes", ordered)

    @property
    def changes_dict(self) -> Dict[str, Optional[str]]:
        return dict(self.changes)

    @property
    def is_noop(self) -> bool:
        return self.kind == MutationKind.NOOP

    @property
    def touches_token(self) -> bool:
        return self.kind in (
            MutationKind.CREATE,
            MutationKind.UPDATE,
            MutationKind.DELETE,
        )

    def to_line(self) -> str:
        fields: Dict[str, Any] = {"key": self.divergence_key, "origin": self.origin.value}
        if self.token_id is not None:
            fields["token"] = self.token_id
        if self.expected_version is not None:
            fields["expected"] = self.expected_version
        if self.action:
            fields["action"] = self.action
        for name, value in self.changes:
            # None means "clear the field"; the empty string round-trips to it.
            fields[name] = "" if value is None else value
        return format_line(self.kind.value, fields)

    @classmethod
    def from_line(cls, line: str) -> "Mutation":
        kind, fields = parse_line(line)
        changes = []
        for name in MUTABLE_FIELDS:
            if name in fields:
                value = fields[name]
                changes.append((name, None if value == "" else str(value)))
        expected = fields.get("expected")
        token = fields.get("token")
        return cls(
            kind=MutationKind(kind),
            divergence_key=str(fields["key"]),
            origin=ChangeOrigin(fields.get("origin", ChangeOrigin.MANUAL.value)),
            token_id=None if token is None else str(token),
            expected_version=None if expected is None else int(expected),
            changes=tuple(changes),
            action=fields.get("action"),
        )


@dataclass
class MutationBatch:
    """The complete apply plan for one project - pure, serializable."""

    project_id: str
    mutations: List[Mutation] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return all(m.is_noop for m in self.mutations)

    @property
    def effective(self) -> List[Mutation]:
        return [m for m in self.mutations if not m.is_noop]

    def count(self, kind: MutationKind) -> int:
        return sum(1 for m in self.mutations if m.kind == kind)

    def to_plaintext(self) -> str:
        """Serialize to plaintext - a header plus one line per mutation."""
        lines = [format_line("BATCH", {"project": self.project_id})]
        lines.extend(m.to_line() for m in self.mutations)
        return "\n".join(lines) + "\n"

    @classmethod
    def from_plaintext(cls, text: str) -> "MutationBatch":
        """Parse plaintext back to a MutationBatch."""
        project_id: Optional[str] = None
        mutations: List[Mutation] = []

        for line in text.strip().split("\n"):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("BATCH "):
                _, fields = parse_line(line)
                project_id = str(fields["project"])
                continue
            mutations.append(Mutation.from_line(line))

        if project_id is None:
            raise ValueError("Missing BATCH header")
        return cls(project_id=project_id, mutations=mutations)

    def to_diagnostics(self) -> List[Dict[str, Any]]:
        """Convert to user-facing diagnostics (dry-run output)."""
        diagnostics: List[Dict[str, Any]] = []
        for m in self.effective:
            changes = m.changes_dict
            name = changes.get("name") or m.token_id or m.divergence_key
            if m.kind == MutationKind.CREATE:
                body = f"Token {name} will be created with value {changes.get('value')}"
                severity = "info"
            elif m.kind == MutationKind.DELETE:
                body = f"Token {m.token_id} will be deleted"
                severity = "warning"
            elif m.kind == MutationKind.DISMISS:
                body = f"{m.divergence_key} will be dismissed"
                severity = "info"
            else:
                fields = ", ".join(f"{k}={v}" for k, v in m.changes)
                body = f"Token {m.token_id} will be updated: {fields}"
                severity = "info"
            diagnostics.append(
                {
                    "kind": f"tokensync.plan.{m.kind.value.lower()}",
                    "severity": severity,
                    "body": body,
                    "key": m.divergence_key,
                }
            )
        return diagnostics


def log_changeset(batch: MutationBatch, logger: Any) -> None:
    """Log a mutation batch as INFO-level messages."""
    for mutation in batch.mutations:
        logger.info(f"CHANGESET {mutation.to_line()}")
