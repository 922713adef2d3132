"""
Apply/commit engine.

Applies a MutationBatch to a TokenStore inside one transaction. Phases run in
a fixed order so that deletions free names before creations claim them:

    1. DELETE
    2. CREATE (or UPDATE when the external reference already exists)
    3. UPDATE
    4. DISMISS

Every mutation is idempotent: when the state it would produce already holds,
it is skipped without a version check and without history. Otherwise UPDATE
and DELETE check the version captured at diff time and raise StaleTarget on
mismatch. Any error aborts the transaction, so history is only ever written
together with the token writes it describes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging
import time
import uuid

from .changeset import Mutation, MutationBatch, MutationKind
from .errors import PersistenceFailure, StaleTarget, TokenSyncError
from .history import HistoryLog, record
from .store import TokenStore, Transaction
from .types import Token, TokenType

logger = logging.getLogger("tokensync.apply")

_TOKEN_NAMESPACE = uuid.UUID("5f0c8a4e-2b7d-4c1e-9a3f-6d2e8b1c7a90")

# Fields a CREATE may overwrite when it lands on an existing linked token.
_RELINK_FIELDS = ("value", "last_remote_value")


def derive_token_id(project_id: str, external_ref: str) -> str:
    """Stable id for a token created from a remote variable."""
    return str(uuid.uuid5(_TOKEN_NAMESPACE, f"{project_id}/{external_ref}"))


@dataclass
class ApplyResult:
    # Mutations that changed the store
    applied: List[Mutation] = field(default_factory=list)
    # Mutations whose target state already held (noops, retries)
    skipped: List[Mutation] = field(default_factory=list)
    history: HistoryLog = field(default_factory=HistoryLog)
    dismissed: List[str] = field(default_factory=list)
    # divergence key -> token id the mutation wrote
    token_ids: Dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.applied)

    def summary(self) -> Dict[str, Any]:
        return {
            "applied": len(self.applied),
            "skipped": len(self.skipped),
            "history": len(self.history),
            "dismissed": len(self.dismissed),
        }


def _apply_changes(token: Token, changes: Dict[str, Optional[str]]) -> Token:
    updates: Dict[str, Any] = dict(changes)
    if "type" in updates:
        updates["type"] = TokenType(updates["type"])
    return token.with_changes(**updates)


def _check_version(token: Token, mutation: Mutation) -> None:
    expected = mutation.expected_version
    if expected is not None and token.version != expected:
        raise StaleTarget(token.id, expected, token.version)


class _Applier:
    """Carries the per-apply context through the phases."""

    def __init__(
        self,
        tx: Transaction,
        result: ApplyResult,
        user: Optional[str],
        timestamp: str,
    ):
        self.tx = tx
        self.result = result
        self.user = user
        self.timestamp = timestamp

    def _record(
        self,
        mutation: Mutation,
        action: str,
        before: Optional[Token],
        after: Optional[Token],
    ) -> None:
        user = self.user if mutation.origin.is_human else None
        entry = record(
            token_id=(after or before).id,
            action=action,
            before=before,
            after=after,
            origin=mutation.origin,
            user=user,
            timestamp=self.timestamp,
        )
        if entry is not None:
            self.result.history.emit(self.tx.append_history(entry))

    def _done(self, mutation: Mutation, token_id: Optional[str] = None) -> None:
        self.result.applied.append(mutation)
        if token_id:
            self.result.token_ids[mutation.divergence_key] = token_id

    def _skip(self, mutation: Mutation, reason: str) -> None:
        logger.debug(f"Skipping {mutation.kind.value} {mutation.divergence_key}: {reason}")
        self.result.skipped.append(mutation)

    # =========================================================================
    # Phase 1: Deletions
    # =========================================================================

    def delete(self, mutation: Mutation) -> None:
        token = self.tx.get(mutation.token_id)
        if token is None:
            self._skip(mutation, "already absent")
            return
        _check_version(token, mutation)
        deleted = token.with_changes(deleted_at=self.timestamp, version=token.version + 1)
        self.tx.put(deleted)
        self._record(mutation, "deleted", token, None)
        self._done(mutation, token.id)
        logger.info(f"Deleted token {token.name} ({token.id})")

    # =========================================================================
    # Phase 2: Creations
    # =========================================================================

    def create(self, mutation: Mutation) -> None:
        changes = mutation.changes_dict
        external_ref = changes.get("external_ref")
        existing = (
            self.tx.find_by_external_ref(external_ref) if external_ref else None
        )
        if existing is not None:
            relink = {k: v for k, v in changes.items() if k in _RELINK_FIELDS}
            target = _apply_changes(existing, relink)
            if target == existing:
                self._skip(mutation, f"already linked as {existing.id}")
                self.result.token_ids[mutation.divergence_key] = existing.id
                return
            target = target.with_changes(version=existing.version + 1)
            self.tx.put(target)
            self._record(mutation, "updated", existing, target)
            self._done(mutation, existing.id)
            logger.info(f"Updated already-linked token {existing.name} ({existing.id})")
            return

        token_id = str(uuid.uuid4())
        if external_ref:
            derived = derive_token_id(self.tx.project_id, external_ref)
            if self.tx.get(derived, include_deleted=True) is None:
                token_id = derived
        try:
            token = Token(
                id=token_id,
                name=changes["name"],
                value=changes["value"],
                type=TokenType(changes["type"]),
                category=changes["category"],
                description=changes.get("description"),
                external_ref=external_ref,
                last_remote_value=changes.get("last_remote_value"),
            )
        except (KeyError, ValueError) as e:
            raise PersistenceFailure(
                f"Incomplete CREATE for {mutation.divergence_key}: {e}"
            )
        self.tx.insert(token)
        self._record(mutation, mutation.action or "created", None, token)
        self._done(mutation, token.id)
        logger.info(f"Created token {token.name} ({token.id})")

    # =========================================================================
    # Phase 3: Updates
    # =========================================================================

    def update(self, mutation: Mutation) -> None:
        token = self.tx.get(mutation.token_id)
        if token is None:
            raise StaleTarget(mutation.token_id, mutation.expected_version, None)
        target = _apply_changes(token, mutation.changes_dict)
        if target == token:
            self._skip(mutation, "already up to date")
            self.result.token_ids[mutation.divergence_key] = token.id
            return
        _check_version(token, mutation)
        target = target.with_changes(version=token.version + 1)
        self.tx.put(target)
        self._record(mutation, mutation.action or "updated", token, target)
        self._done(mutation, token.id)
        logger.info(f"Updated token {token.name} ({token.id})")

    # =========================================================================
    # Phase 4: Dismissals
    # =========================================================================

    def dismiss(self, mutation: Mutation) -> None:
        if self.tx.dismiss(mutation.divergence_key):
            self.result.dismissed.append(mutation.divergence_key)
            self._done(mutation)
        else:
            self._skip(mutation, "already dismissed")


_PHASES = (
    (MutationKind.DELETE, "delete"),
    (MutationKind.CREATE, "create"),
    (MutationKind.UPDATE, "update"),
    (MutationKind.DISMISS, "dismiss"),
)


def apply(
    store: TokenStore,
    batch: MutationBatch,
    user: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> ApplyResult:
    """Apply ``batch`` atomically.

    Raises StaleTarget or PersistenceFailure with the store unchanged.
    """
    start = time.time()
    result = ApplyResult()
    timestamp = timestamp or datetime.now(timezone.utc).isoformat()

    for mutation in batch.mutations:
        if mutation.kind == MutationKind.NOOP:
            result.skipped.append(mutation)

    try:
        with store.transaction(batch.project_id) as tx:
            applier = _Applier(tx, result, user, timestamp)
            for kind, method in _PHASES:
                for mutation in batch.mutations:
                    if mutation.kind == kind:
                        getattr(applier, method)(mutation)
    except TokenSyncError as e:
        logger.error(f"Apply of {len(batch.mutations)} mutation(s) failed: {e}")
        raise

    elapsed_ms = (time.time() - start) * 1000
    logger.info(
        f"Applied {len(result.applied)} mutation(s), skipped {len(result.skipped)}, "
        f"{len(result.history)} history entr{'y' if len(result.history) == 1 else 'ies'} "
        f"in {elapsed_ms:.1f}ms"
    )
    return result
