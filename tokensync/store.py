"""
Token persistence.

TokenStore is the contract the sync pipeline needs from storage: an atomic
snapshot read, and a transaction inside which every write either commits
together or not at all. Two implementations are provided: an in-memory store
(tests, embedding) and a JSON file store used by the CLI.
"""

from abc import ABC, abstractmethod
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Union
import json
import logging
import os
import tempfile
import threading

from .errors import PersistenceFailure
from .history import HistoryEntry, history_entry_from_dict
from .types import LocalSnapshot, Token
from .validation import token_to_dict, validate_token

logger = logging.getLogger("tokensync.store")


@dataclass(frozen=True)
class HistoryPage:
    entries: List[HistoryEntry]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


@dataclass
class ProjectState:
    """Everything stored for one project."""

    # token id -> token, soft-deleted tokens included
    tokens: Dict[str, Token] = field(default_factory=dict)
    dismissed: Set[str] = field(default_factory=set)
    history: List[HistoryEntry] = field(default_factory=list)
    component_usage: Dict[str, int] = field(default_factory=dict)

    def copy(self) -> "ProjectState":
        # Tokens and entries are immutable, so shallow copies are enough.
        return ProjectState(
            tokens=dict(self.tokens),
            dismissed=set(self.dismissed),
            history=list(self.history),
            component_usage=dict(self.component_usage),
        )

    def active(self) -> List[Token]:
        return sorted(
            (t for t in self.tokens.values() if not t.is_deleted),
            key=lambda t: (t.category, t.name, t.id),
        )

    def snapshot(self, project_id: str) -> LocalSnapshot:
        return LocalSnapshot(
            project_id=project_id,
            tokens=tuple(self.active()),
            dismissed=frozenset(self.dismissed),
            component_usage=dict(self.component_usage),
        )


class Transaction:
    """Working copy of one project's state.

    Reads see earlier writes of the same transaction. Nothing is visible to
    other readers until the owning store commits.
    """

    def __init__(self, store: "TokenStore", project_id: str, state: ProjectState):
        self._store = store
        self.project_id = project_id
        self.state = state

    def get(self, token_id: str, include_deleted: bool = False) -> Optional[Token]:
        token = self.state.tokens.get(token_id)
        if token is None or (token.is_deleted and not include_deleted):
            return None
        return token

    def find_by_external_ref(self, external_ref: str) -> Optional[Token]:
        matches = [
            t for t in self.state.active() if t.external_ref == external_ref
        ]
        return matches[0] if matches else None

    def _check_unique(self, token: Token) -> None:
        if token.is_deleted:
            return
        for other in self.state.tokens.values():
            if (
                other.id != token.id
                and not other.is_deleted
                and other.name == token.name
                and other.category == token.category
            ):
                raise PersistenceFailure(
                    f"Token name {token.name!r} already exists in category "
                    f"{token.category!r} (token {other.id})"
                )

    def insert(self, token: Token) -> None:
        if token.id in self.state.tokens:
            raise PersistenceFailure(f"Token id {token.id} already exists")
        self._check_unique(token)
        self._store.before_write("insert", token)
        self.state.tokens[token.id] = token

    def put(self, token: Token) -> None:
        if token.id not in self.state.tokens:
            raise PersistenceFailure(f"Token {token.id} does not exist")
        self._check_unique(token)
        self._store.before_write("put", token)
        self.state.tokens[token.id] = token

    def dismiss(self, key: str) -> bool:
        """Remember a dismissed divergence key; False if it already was."""
        if key in self.state.dismissed:
            return False
        self.state.dismissed.add(key)
        return True

    def append_history(self, entry: HistoryEntry) -> HistoryEntry:
        sequence = len(self.state.history) + 1
        entry = replace(entry, sequence=sequence)
        self.state.history.append(entry)
        return entry


class TokenStore(ABC):
    """Persistence contract for the sync pipeline."""

    @abstractmethod
    def read_local_snapshot(self, project_id: str) -> LocalSnapshot:
        ...

    @abstractmethod
    def transaction(self, project_id: str) -> Iterator[Transaction]:
        """Context manager yielding a Transaction; commits on clean exit."""
        ...

    @abstractmethod
    def history(
        self,
        project_id: str,
        token_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> HistoryPage:
        ...

    @abstractmethod
    def stats(self, project_id: str) -> Dict[str, Any]:
        ...

    def before_write(self, op: str, token: Token) -> None:
        """Hook called before every token write inside a transaction."""


class InMemoryTokenStore(TokenStore):
    def __init__(self):
        self._projects: Dict[str, ProjectState] = {}
        self._lock = threading.RLock()

    def _state(self, project_id: str) -> ProjectState:
        return self._projects.get(project_id) or ProjectState()

    def seed(
        self,
        project_id: str,
        tokens: Iterable[Token] = (),
        dismissed: Iterable[str] = (),
        component_usage: Optional[Mapping[str, int]] = None,
    ) -> None:
        """Load tokens directly, bypassing history. For fixtures and imports of existing data."""
        with self._lock:
            state = self._state(project_id).copy()
            for token in tokens:
                state.tokens[token.id] = token
            state.dismissed.update(dismissed)
            state.component_usage.update(component_usage or {})
            self._projects[project_id] = state

    def read_local_snapshot(self, project_id: str) -> LocalSnapshot:
        with self._lock:
            return self._state(project_id).snapshot(project_id)

    def all_tokens(self, project_id: str, include_deleted: bool = False) -> List[Token]:
        with self._lock:
            state = self._state(project_id)
            if include_deleted:
                return sorted(state.tokens.values(), key=lambda t: t.id)
            return state.active()

    def project_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._projects)

    @contextmanager
    def transaction(self, project_id: str) -> Iterator[Transaction]:
        with self._lock:
            previous = self._projects.get(project_id)
            tx = Transaction(self, project_id, self._state(project_id).copy())
            yield tx
            self._projects[project_id] = tx.state
            try:
                self._persist()
            except PersistenceFailure:
                if previous is None:
                    del self._projects[project_id]
                else:
                    self._projects[project_id] = previous
                raise

    def _persist(self) -> None:
        """Make committed state durable. Raises PersistenceFailure."""

    def history(
        self,
        project_id: str,
        token_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> HistoryPage:
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")
        with self._lock:
            entries = [
                e
                for e in self._state(project_id).history
                if token_id is None or e.token_id == token_id
            ]
        entries.sort(key=lambda e: (e.timestamp, e.sequence), reverse=True)
        start = (page - 1) * limit
        return HistoryPage(
            entries=entries[start:start + limit],
            total=len(entries),
            page=page,
            limit=limit,
        )

    def stats(self, project_id: str) -> Dict[str, Any]:
        with self._lock:
            tokens = self._state(project_id).active()
        return {
            "total": len(tokens),
            "byType": dict(sorted(Counter(t.type.value for t in tokens).items())),
            "byCategory": dict(sorted(Counter(t.category for t in tokens).items())),
        }


class JsonFileTokenStore(InMemoryTokenStore):
    """In-memory store mirrored to a single JSON file on every commit.

    The file is replaced atomically, so a crash mid-write leaves the previous
    committed state on disk.
    """

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceFailure(f"Cannot read store {self.path}: {e}")
        if not isinstance(data, dict):
            raise PersistenceFailure(f"Store {self.path} must contain a JSON object")

        for project_id, raw in (data.get("projects") or {}).items():
            state = ProjectState()
            for raw_token in raw.get("tokens") or []:
                result = validate_token(raw_token)
                if not result.ok:
                    raise PersistenceFailure(
                        f"Invalid token in {self.path} ({project_id}): "
                        f"{'; '.join(result.errors)}"
                    )
                state.tokens[result.value.id] = result.value
            state.dismissed = set(raw.get("dismissed") or [])
            state.history = [
                history_entry_from_dict(e) for e in raw.get("history") or []
            ]
            state.component_usage = {
                str(k): int(v) for k, v in (raw.get("componentUsage") or {}).items()
            }
            self._projects[project_id] = state
        logger.debug(f"Loaded {len(self._projects)} project(s) from {self.path}")

    def _to_json(self) -> Dict[str, Any]:
        projects = {}
        for project_id, state in sorted(self._projects.items()):
            projects[project_id] = {
                "tokens": [
                    token_to_dict(t)
                    for t in sorted(state.tokens.values(), key=lambda t: t.id)
                ],
                "dismissed": sorted(state.dismissed),
                "history": [e.to_dict() for e in state.history],
                "componentUsage": state.component_usage,
            }
        return {"projects": projects}

    def _persist(self) -> None:
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{self.path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self._to_json(), f, indent=2, sort_keys=True)
                    f.write("\n")
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise PersistenceFailure(f"Cannot write store {self.path}: {e}")
        logger.debug(f"Saved store to {self.path}")

    def seed(self, project_id: str, tokens: Iterable[Token] = (), **kwargs: Any) -> None:
        super().seed(project_id, tokens, **kwargs)
        with self._lock:
            self._persist()
