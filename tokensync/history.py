"""
History recorder: append-only audit trail of token changes.

record() compares two token states field by field and produces a
HistoryEntry holding only the fields that differ, or None when nothing
changed. HistoryLog accumulates entries for one apply and serializes them one
line per entry, the same way mutation batches are serialized.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
import uuid

from .changeset import format_line, parse_line
from .types import ChangeOrigin, Token

ACTIONS = ("created", "updated", "deleted", "imported")

TokenState = Union[Token, Mapping[str, Any], None]


@dataclass(frozen=True)
class FieldChange:
    before: Optional[Any]
    after: Optional[Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"before": self.before, "after": self.after}


@dataclass(frozen=True)
class HistoryEntry:
    """An immutable audit record of one applied change."""

    id: str
    token_id: str
    action: str
    changes: Tuple[Tuple[str, FieldChange], ...]
    origin: ChangeOrigin
    timestamp: str
    token_name: str = ""
    user_id: Optional[str] = None
    # Assigned by the store on append; breaks timestamp ties
    sequence: int = 0

    @property
    def changes_dict(self) -> Dict[str, FieldChange]:
        return dict(self.changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tokenId": self.token_id,
            "tokenName": self.token_name,
            "action": self.action,
            "changes": {k: c.to_dict() for k, c in self.changes},
            "origin": self.origin.value,
            "userId": self.user_id,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
        }

    def to_line(self) -> str:
        fields: Dict[str, Any] = {
            "token": self.token_id,
            "action": self.action,
            "origin": self.origin.value,
        }
        if self.token_name:
            fields["name"] = self.token_name
        if self.user_id:
            fields["user"] = self.user_id
        for name, change in self.changes:
            fields[name] = [
                "" if change.before is None else str(change.before),
                "" if change.after is None else str(change.after),
            ]
        return format_line("HISTORY", fields)


def _state(value: TokenState) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, Token):
        return value.fields()
    return dict(value)


def field_changes(before: TokenState, after: TokenState) -> Tuple[Tuple[str, FieldChange], ...]:
    """Fields whose values differ between two token states, in sorted order."""
    old = _state(before)
    new = _state(after)
    changes = []
    for name in sorted(set(old) | set(new)):
        a = old.get(name)
        b = new.get(name)
        if a != b:
            changes.append((name, FieldChange(a, b)))
    return tuple(changes)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def record(
    token_id: str,
    action: str,
    before: TokenState,
    after: TokenState,
    origin: ChangeOrigin,
    user: Optional[str] = None,
    token_name: str = "",
    timestamp: Optional[str] = None,
) -> Optional[HistoryEntry]:
    """Build the history entry for one change, or None if nothing differs.

    Non-human origins never carry a user.
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown history action {action!r}; expected one of {ACTIONS}")
    if user and not origin.is_human:
        raise ValueError(f"{origin.value} changes must not carry a user")
    changes = field_changes(before, after)
    if not changes:
        return None
    if not token_name:
        token_name = (_state(after) or _state(before)).get("name") or ""
    return HistoryEntry(
        id=str(uuid.uuid4()),
        token_id=token_id,
        action=action,
        changes=changes,
        origin=origin,
        timestamp=timestamp or _now(),
        token_name=token_name,
        user_id=user,
    )


@dataclass
class HistoryLog:
    """Entries produced by one apply, in application order."""

    entries: List[HistoryEntry] = field(default_factory=list)

    def emit(self, entry: Optional[HistoryEntry]) -> None:
        if entry is not None:
            self.entries.append(entry)

    def __len__(self) -> int:
        return len(self.entries)

    def for_token(self, token_id: str) -> List[HistoryEntry]:
        return [e for e in self.entries if e.token_id == token_id]

    def to_plaintext(self) -> str:
        if not self.entries:
            return ""
        return "\n".join(e.to_line() for e in self.entries) + "\n"

    def log_to(self, logger) -> None:
        """Log all entries as INFO-level messages."""
        for entry in self.entries:
            logger.info(entry.to_line())


def parse_history_line(line: str) -> Tuple[str, Dict[str, Any]]:
    """Parse a HISTORY line into (token id, fields); used by tests and tooling."""
    kind, fields = parse_line(line)
    if kind != "HISTORY":
        raise ValueError(f"Not a history line: {line!r}")
    return str(fields.pop("token")), fields


def history_entry_from_dict(data: Mapping[str, Any]) -> HistoryEntry:
    """Inverse of HistoryEntry.to_dict, for stores that persist entries as JSON."""
    changes = tuple(
        (name, FieldChange(change.get("before"), change.get("after")))
        for name, change in sorted((data.get("changes") or {}).items())
    )
    return HistoryEntry(
        id=str(data["id"]),
        token_id=str(data["tokenId"]),
        action=str(data["action"]),
        changes=changes,
        origin=ChangeOrigin(data["origin"]),
        timestamp=str(data["timestamp"]),
        token_name=str(data.get("tokenName") or ""),
        user_id=data.get("userId"),
        sequence=int(data.get("sequence") or 0),
    )
