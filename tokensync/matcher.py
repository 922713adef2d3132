"""
Identity matching between remote variables and local tokens.

Pass 1 links by external reference. Pass 2 proposes links by
case-insensitive name within the same category for tokens that have no
external reference at all. Anything that cannot be paired unambiguously is
left unmatched and reported, never guessed.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import logging

from .types import LocalSnapshot, RemoteSnapshot, Token

logger = logging.getLogger("tokensync.matcher")


@dataclass(frozen=True)
class MatchResult:
    # variable id -> token id, linked through the token's external reference
    links: Dict[str, str] = field(default_factory=dict)
    # variable id -> token id, matched by name; not persisted until applied
    proposed: Dict[str, str] = field(default_factory=dict)
    # variable id -> candidate token ids that could not be told apart
    ambiguous: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    # external refs carried by more than one token: ref -> token ids
    duplicate_refs: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    def token_for(self, variable_id: str) -> Optional[str]:
        return self.links.get(variable_id) or self.proposed.get(variable_id)

    def is_proposed(self, variable_id: str) -> bool:
        return variable_id in self.proposed

    @property
    def matched_token_ids(self) -> set:
        return set(self.links.values()) | set(self.proposed.values())


def _name_key(category: str, name: str) -> Tuple[str, str]:
    return category.strip().lower(), name.strip().lower()


def match(
    remote: RemoteSnapshot,
    local: LocalSnapshot,
    exact_case_first: bool = True,
) -> MatchResult:
    """Pair remote variables with local tokens."""
    # ─────────────────────────────────────────────────────────────────────────
    # Pass 1: external references
    # ─────────────────────────────────────────────────────────────────────────
    by_ref: Dict[str, List[Token]] = {}
    for token in local.tokens:
        if token.external_ref:
            by_ref.setdefault(token.external_ref, []).append(token)

    duplicate_refs: Dict[str, Tuple[str, ...]] = {}
    links: Dict[str, str] = {}
    for ref, tokens in by_ref.items():
        tokens = sorted(tokens, key=lambda t: (t.name, t.id))
        if len(tokens) > 1:
            duplicate_refs[ref] = tuple(t.id for t in tokens)
            logger.warning(
                f"External ref {ref} is carried by {len(tokens)} tokens; "
                f"linking {tokens[0].name}"
            )
        if ref in remote.variables:
            links[ref] = tokens[0].id

    # ─────────────────────────────────────────────────────────────────────────
    # Pass 2: names, only among tokens without any external reference
    # ─────────────────────────────────────────────────────────────────────────
    by_name: Dict[Tuple[str, str], List[Token]] = {}
    for token in local.tokens:
        if not token.external_ref:
            by_name.setdefault(_name_key(token.category, token.name), []).append(token)

    proposed: Dict[str, str] = {}
    ambiguous: Dict[str, Tuple[str, ...]] = {}
    claims: Dict[str, List[str]] = {}

    for vid in sorted(remote.variables):
        if vid in links:
            continue
        variable = remote.variables[vid]
        key = _name_key(remote.category_of(variable), variable.name)
        candidates = by_name.get(key, [])
        if not candidates:
            continue

        chosen: Optional[Token] = None
        exact = [t for t in candidates if t.name == variable.name]
        if exact_case_first and len(exact) == 1:
            chosen = exact[0]
        elif len(candidates) == 1:
            chosen = candidates[0]

        if chosen is None:
            ambiguous[vid] = tuple(sorted(t.id for t in candidates))
            continue
        proposed[vid] = chosen.id
        claims.setdefault(chosen.id, []).append(vid)

    # A token may be claimed by several variables whose names differ only
    # in case. Exact case wins; otherwise nobody gets it.
    tokens_by_id = local.by_id()
    for token_id, vids in claims.items():
        if len(vids) == 1:
            continue
        token = tokens_by_id[token_id]
        exact_vids = [v for v in vids if remote.variables[v].name == token.name]
        keep = exact_vids[0] if exact_case_first and len(exact_vids) == 1 else None
        for vid in vids:
            if vid != keep:
                del proposed[vid]
                ambiguous[vid] = (token_id,)

    if ambiguous:
        logger.warning(f"{len(ambiguous)} variable(s) have ambiguous name matches")

    return MatchResult(
        links=links,
        proposed=proposed,
        ambiguous=ambiguous,
        duplicate_refs=duplicate_refs,
    )
