"""
Diff engine: remote snapshot + local snapshot -> ordered divergences.

diff() is a pure function of its two snapshots (and config). Running it twice
on the same inputs yields an identical, identically ordered tuple, which is
what lets callers refer to divergences by key across requests.

Ordering: ADDED by remote name, then REMOVED by local name, then MODIFIED by
local name; ids break ties.
"""

from typing import Any, Dict, List, Optional, Tuple
import logging

from .changeset import format_line
from .config import SyncConfig
from .errors import MalformedValue
from .matcher import MatchResult, match
from .normalize import CanonicalValue, normalize, render_raw, try_normalize
from .types import (
    Divergence,
    DivergenceKind,
    LocalSnapshot,
    RemoteSnapshot,
    RemoteVariable,
    Token,
    TokenType,
    added_key,
    map_remote_type,
    modified_key,
    removed_key,
)

logger = logging.getLogger("tokensync.diff")


def _add_diagnostic(
    diagnostics: Optional[List[Dict[str, Any]]],
    kind: str,
    severity: str,
    body: str,
    key: str = "",
) -> None:
    if diagnostics is not None:
        diagnostics.append({"kind": kind, "severity": severity, "body": body, "key": key})


class _RemoteValue:
    """Remote side of a comparison: canonical form, or the raw text if invalid."""

    def __init__(self, canonical: Optional[CanonicalValue], text: str, error: str = ""):
        self.canonical = canonical
        self.text = text
        self.error = error

    @property
    def valid(self) -> bool:
        return self.canonical is not None


def _remote_value(
    remote: RemoteSnapshot,
    variable: RemoteVariable,
    token_type: TokenType,
    config: SyncConfig,
) -> _RemoteValue:
    raw: Any = None
    try:
        raw = remote.comparison_value(variable.id, config.comparison_mode)
        canonical = normalize(
            raw, token_type, config.numeric_precision, config.default_unit
        )
    except MalformedValue as e:
        if raw is None:
            raw = remote.raw_value(variable, config.comparison_mode)
        return _RemoteValue(None, render_raw(raw, config.numeric_precision), str(e))
    return _RemoteValue(canonical, canonical.display)


def _acknowledged(token: Token, remote_value: _RemoteValue, config: SyncConfig) -> bool:
    """True if the remote value equals what the token last saw remotely."""
    if token.last_remote_value is None:
        return False
    if not remote_value.valid:
        return token.last_remote_value == remote_value.text
    last = try_normalize(
        token.last_remote_value,
        token.type,
        config.numeric_precision,
        config.default_unit,
    )
    return last is not None and last == remote_value.canonical


def _compare_pair(
    token: Token,
    variable: RemoteVariable,
    remote: RemoteSnapshot,
    local: LocalSnapshot,
    m: MatchResult,
    config: SyncConfig,
    diagnostics: Optional[List[Dict[str, Any]]],
) -> Optional[Divergence]:
    key = modified_key(token.id)
    remote_value = _remote_value(remote, variable, token.type, config)
    local_canonical = try_normalize(
        token.value, token.type, config.numeric_precision, config.default_unit
    )

    if remote_value.valid and local_canonical is not None:
        if local_canonical == remote_value.canonical:
            return None
    elif remote_value.valid and token.value.strip() == remote_value.text:
        return None

    if _acknowledged(token, remote_value, config):
        logger.debug(f"Drift on {token.name} already acknowledged, not reported")
        return None

    if not remote_value.valid:
        logger.warning(f"Remote value of {variable.name} is invalid: {remote_value.error}")
        _add_diagnostic(
            diagnostics, "tokensync.malformed_value", "warning",
            f"Remote value for {token.name}: {remote_value.error}", key,
        )
    if local_canonical is None:
        _add_diagnostic(
            diagnostics, "tokensync.malformed_value", "warning",
            f"Local value {token.value!r} of {token.name} is not a valid {token.type.value}",
            key,
        )

    return Divergence(
        key=key,
        kind=DivergenceKind.MODIFIED,
        token_name=token.name,
        token_type=token.type,
        category=token.category,
        token_id=token.id,
        variable_id=variable.id,
        local_value=token.value,
        remote_value=remote_value.text,
        local_valid=local_canonical is not None,
        remote_valid=remote_value.valid,
        local_version=token.version,
        proposed_link=m.is_proposed(variable.id),
        description=token.description,
        affected_components=local.component_usage.get(token.id, 0),
    )


def diff(
    remote: RemoteSnapshot,
    local: LocalSnapshot,
    config: Optional[SyncConfig] = None,
    diagnostics: Optional[List[Dict[str, Any]]] = None,
) -> Tuple[Divergence, ...]:
    """Compute every divergence between ``remote`` and ``local``.

    Per-item problems never abort: malformed values become MODIFIED
    divergences flagged invalid, ambiguous name matches become ADDED
    divergences listing their candidates. Both are also appended to
    ``diagnostics`` when given.
    """
    config = config or SyncConfig()
    m = match(remote, local, exact_case_first=config.match_exact_case_first)
    tokens = local.by_id()

    for ref, token_ids in sorted(m.duplicate_refs.items()):
        _add_diagnostic(
            diagnostics, "tokensync.duplicate_external_ref", "warning",
            f"External ref {ref} is carried by tokens {', '.join(token_ids)}",
        )

    added: List[Divergence] = []
    removed: List[Divergence] = []
    modified: List[Divergence] = []

    # ═══════════════════════════════════════════════════════════════════════
    # ADDED: remote variables with no local counterpart
    # ═══════════════════════════════════════════════════════════════════════
    for vid, variable in remote.variables.items():
        if m.token_for(vid) is not None:
            continue
        key = added_key(vid)
        if key in local.dismissed:
            continue
        token_type = map_remote_type(variable.resolved_type, variable.name)
        remote_value = _remote_value(remote, variable, token_type, config)
        candidates = m.ambiguous.get(vid, ())
        if candidates:
            _add_diagnostic(
                diagnostics, "tokensync.ambiguous_match", "warning",
                f"{variable.name} matches {len(candidates)} local tokens by name; "
                "not pairing",
                key,
            )
        if not remote_value.valid:
            _add_diagnostic(
                diagnostics, "tokensync.malformed_value", "warning",
                f"Remote value for {variable.name}: {remote_value.error}", key,
            )
        added.append(
            Divergence(
                key=key,
                kind=DivergenceKind.ADDED,
                token_name=variable.name,
                token_type=token_type,
                category=remote.category_of(variable),
                variable_id=vid,
                remote_value=remote_value.text,
                remote_valid=remote_value.valid,
                candidates=candidates,
                description=variable.description,
            )
        )

    # ═══════════════════════════════════════════════════════════════════════
    # REMOVED: linked tokens whose remote variable is gone
    # ═══════════════════════════════════════════════════════════════════════
    for token in local.tokens:
        if not token.external_ref or token.external_ref in remote.variables:
            continue
        key = removed_key(token.id)
        if key in local.dismissed:
            continue
        removed.append(
            Divergence(
                key=key,
                kind=DivergenceKind.REMOVED,
                token_name=token.name,
                token_type=token.type,
                category=token.category,
                token_id=token.id,
                variable_id=token.external_ref,
                local_value=token.value,
                local_version=token.version,
                description=token.description,
                affected_components=local.component_usage.get(token.id, 0),
            )
        )

    # ═══════════════════════════════════════════════════════════════════════
    # MODIFIED: matched pairs whose canonical values differ
    # ═══════════════════════════════════════════════════════════════════════
    pairs = list(m.links.items()) + list(m.proposed.items())
    for vid, tid in pairs:
        divergence = _compare_pair(
            tokens[tid], remote.variables[vid], remote, local, m, config, diagnostics
        )
        if divergence is not None:
            modified.append(divergence)

    added.sort(key=lambda d: (d.token_name, d.variable_id))
    removed.sort(key=lambda d: (d.token_name, d.token_id))
    modified.sort(key=lambda d: (d.token_name, d.token_id))

    logger.info(
        f"Diff: +{len(added)} -{len(removed)} ~{len(modified)} "
        f"({len(remote.variables)} remote, {len(local.tokens)} local)"
    )
    return tuple(added + removed + modified)


def divergence_line(divergence: Divergence) -> str:
    fields: Dict[str, Any] = {
        "key": divergence.key,
        "name": divergence.token_name,
        "type": divergence.token_type.value,
    }
    if divergence.local_value is not None:
        fields["local"] = divergence.local_value
    if divergence.remote_value is not None:
        fields["remote"] = divergence.remote_value
    if not divergence.remote_valid:
        fields["remote_valid"] = False
    if not divergence.local_valid:
        fields["local_valid"] = False
    if divergence.proposed_link:
        fields["proposed"] = True
    if divergence.candidates:
        fields["candidates"] = list(divergence.candidates)
    return format_line(divergence.kind.value, fields)


def log_divergences(divergences: Tuple[Divergence, ...], logger: Any) -> None:
    """Log divergences as INFO-level messages."""
    for divergence in divergences:
        logger.info(f"DIVERGENCE {divergence_line(divergence)}")
