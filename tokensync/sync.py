"""
Sync pipeline entry points.

    remote payload -> RemoteSnapshot ─┐
                                      ├─> diff -> divergences
    store -> LocalSnapshot ───────────┘        │
                               resolutions ────┴─> resolve -> batch -> apply

run_sync() runs the whole pipeline for one project. Without resolutions it
only diffs, which is how a caller obtains the divergence keys to resolve in a
follow-up call. bulk_import() adopts every remote variable, one item at a
time, so a single bad variable never aborts the import.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
import json
import logging
import threading
import time

from .apply import ApplyResult, apply
from .changeset import Mutation, MutationBatch, log_changeset
from .config import SyncConfig
from .diff import diff, log_divergences
from .errors import RemoteFetchFailure, SyncCancelled, TokenSyncError
from .history import HistoryLog
from .resolve import Resolution, resolve, resolve_all
from .store import TokenStore
from .types import ChangeOrigin, Divergence, DivergenceKind, RemoteSnapshot
from .validation import parse_remote_snapshot

logger = logging.getLogger("tokensync.sync")


@dataclass
class SyncResult:
    """Result of a sync operation."""

    divergences: Tuple[Divergence, ...]
    applied: List[Mutation] = field(default_factory=list)
    diagnostics: List[Dict[str, Any]] = field(default_factory=list)
    history: HistoryLog = field(default_factory=HistoryLog)
    batch: Optional[MutationBatch] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "divergences": [d.to_dict() for d in self.divergences],
            "applied": [
                {"key": m.divergence_key, "kind": m.kind.value, "tokenId": m.token_id}
                for m in self.applied
            ],
            "diagnostics": self.diagnostics,
        }


@dataclass
class ImportResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    # (variable name, reason) per failed item
    errors: List[Tuple[str, str]] = field(default_factory=list)
    history: HistoryLog = field(default_factory=HistoryLog)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": [{"name": n, "reason": r} for n, r in self.errors],
        }


# =============================================================================
# Remote snapshot loading
# =============================================================================


def load_remote_snapshot(payload: Any) -> RemoteSnapshot:
    """Parse a variables payload. Any invalid item makes it a fetch failure."""
    result = parse_remote_snapshot(payload)
    if not result.ok:
        raise RemoteFetchFailure(f"Invalid remote payload: {'; '.join(result.errors)}")
    return result.value


def load_remote_file(path: Union[str, Path]) -> RemoteSnapshot:
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise RemoteFetchFailure(f"Cannot read remote payload {path}: {e}")
    return load_remote_snapshot(payload)


# =============================================================================
# Pipeline
# =============================================================================


def _check_cancelled(
    cancel_event: Optional[threading.Event], divergences: Sequence[Divergence]
) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info("Sync cancelled before apply; nothing written")
        raise SyncCancelled("Sync cancelled before apply", divergences=tuple(divergences))


def resolve_and_apply(
    store: TokenStore,
    project_id: str,
    divergences: Sequence[Divergence],
    resolutions: Mapping[str, Resolution],
    config: Optional[SyncConfig] = None,
    actor: ChangeOrigin = ChangeOrigin.MANUAL,
    user: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
    dry_run: bool = False,
    diagnostics: Optional[List[Dict[str, Any]]] = None,
) -> SyncResult:
    """Resolve previously computed divergences and apply the resulting batch.

    Errors raised here carry ``divergences`` so the caller can present them
    again without refetching.
    """
    divergences = tuple(divergences)
    diagnostics = diagnostics if diagnostics is not None else []
    try:
        batch = resolve_all(project_id, divergences, resolutions, actor, config)
        log_changeset(batch, logger)
        if dry_run:
            diagnostics.extend(batch.to_diagnostics())
            return SyncResult(divergences=divergences, diagnostics=diagnostics, batch=batch)
        _check_cancelled(cancel_event, divergences)
        applied: ApplyResult = apply(store, batch, user=user)
    except TokenSyncError as e:
        if e.divergences is None:
            e.divergences = divergences
        raise

    applied.history.log_to(logger)
    return SyncResult(
        divergences=divergences,
        applied=applied.applied,
        diagnostics=diagnostics,
        history=applied.history,
        batch=batch,
    )


def run_sync(
    remote: RemoteSnapshot,
    store: TokenStore,
    project_id: str,
    config: Optional[SyncConfig] = None,
    resolutions: Optional[Mapping[str, Resolution]] = None,
    actor: ChangeOrigin = ChangeOrigin.MANUAL,
    user: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
    dry_run: bool = False,
) -> SyncResult:
    """Diff ``remote`` against the project's tokens, then apply ``resolutions``."""
    start_time = time.time()
    config = config or SyncConfig()
    logger.info(f"Starting token sync for project {project_id}")

    local = store.read_local_snapshot(project_id)
    diagnostics: List[Dict[str, Any]] = []
    divergences = diff(remote, local, config, diagnostics)
    log_divergences(divergences, logger)

    if not resolutions:
        _check_cancelled(cancel_event, divergences)
        result = SyncResult(divergences=divergences, diagnostics=diagnostics)
    else:
        result = resolve_and_apply(
            store,
            project_id,
            divergences,
            resolutions,
            config=config,
            actor=actor,
            user=user,
            cancel_event=cancel_event,
            dry_run=dry_run,
            diagnostics=diagnostics,
        )

    elapsed_ms = (time.time() - start_time) * 1000
    logger.info(
        f"Sync finished in {elapsed_ms:.1f}ms: {len(result.divergences)} divergence(s), "
        f"{len(result.applied)} applied"
    )
    return result


def bulk_import(
    remote: RemoteSnapshot,
    store: TokenStore,
    project_id: str,
    config: Optional[SyncConfig] = None,
    collection: Optional[str] = None,
    actor: ChangeOrigin = ChangeOrigin.MANUAL,
    user: Optional[str] = None,
) -> ImportResult:
    """Adopt remote values for every ADDED and MODIFIED divergence.

    ``collection`` restricts the import to one collection, by id or name.
    Each item is applied on its own; failures are collected per item.
    """
    config = config or SyncConfig()
    local = store.read_local_snapshot(project_id)
    divergences = diff(remote, local, config)
    result = ImportResult()

    for divergence in divergences:
        if divergence.kind == DivergenceKind.REMOVED:
            continue
        if collection is not None:
            variable = remote.variables[divergence.variable_id]
            owner = remote.collection_of(variable)
            if collection not in (variable.collection_id, owner.name if owner else None):
                continue
        try:
            mutation = resolve(divergence, Resolution.use_remote(), actor, config)
            if divergence.kind == DivergenceKind.ADDED:
                mutation = replace(mutation, action="imported")
            applied = apply(
                store, MutationBatch(project_id, [mutation]), user=user
            )
        except TokenSyncError as e:
            logger.warning(f"Import of {divergence.token_name} failed: {e}")
            result.errors.append((divergence.token_name, str(e)))
            continue

        for entry in applied.history.entries:
            result.history.emit(entry)
            if entry.action in ("created", "imported"):
                result.created += 1
            else:
                result.updated += 1
        if not applied.applied:
            result.skipped += 1

    logger.info(
        f"Import into {project_id}: {result.created} created, {result.updated} updated, "
        f"{len(result.errors)} error(s)"
    )
    return result
