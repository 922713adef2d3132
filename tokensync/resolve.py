"""
Resolution policy: (divergence, choice) -> mutation.

Pure. The same divergence and choice always produce the same mutation, and
nothing here touches a store.

    choice       ADDED            REMOVED             MODIFIED
    KEEP_LOCAL   dismiss / noop   dismiss / noop      mark remote value seen
    USE_REMOTE   create           delete              update value
    EXPLICIT     create(value)    update(value), unlink   update(value)
"""

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .changeset import Mutation, MutationBatch, MutationKind
from .config import SyncConfig
from .errors import MalformedValue, ResolutionError
from .normalize import normalize
from .types import ChangeOrigin, Choice, Divergence, DivergenceKind

DEFAULT_DESCRIPTION = "Imported from Figma"


@dataclass(frozen=True)
class Resolution:
    """A caller's decision for one divergence."""

    choice: Choice
    value: Optional[str] = None

    def __post_init__(self):
        if self.choice == Choice.EXPLICIT and (self.value is None or not self.value.strip()):
            raise ResolutionError("EXPLICIT resolution requires a non-empty value")

    @classmethod
    def keep_local(cls) -> "Resolution":
        return cls(Choice.KEEP_LOCAL)

    @classmethod
    def use_remote(cls) -> "Resolution":
        return cls(Choice.USE_REMOTE)

    @classmethod
    def explicit(cls, value: str) -> "Resolution":
        return cls(Choice.EXPLICIT, value)


def origin_for(choice: Choice, actor: ChangeOrigin) -> ChangeOrigin:
    """Origin recorded in history for a resolution made by ``actor``.

    Unattended and agent runs keep their own origin; human sessions record
    FIGMA when adopting the remote value and MANUAL otherwise.
    """
    if actor in (ChangeOrigin.AUTOMATION, ChangeOrigin.AI):
        return actor
    if choice == Choice.USE_REMOTE:
        return ChangeOrigin.FIGMA
    return ChangeOrigin.MANUAL


def _checked_explicit(divergence: Divergence, value: str, config: SyncConfig) -> str:
    try:
        normalize(value, divergence.token_type, config.numeric_precision, config.default_unit)
    except MalformedValue as e:
        raise ResolutionError(f"{divergence.token_name}: {e}")
    return value


def _require_valid_remote(divergence: Divergence) -> str:
    if not divergence.remote_valid or divergence.remote_value is None:
        raise ResolutionError(
            f"{divergence.token_name}: remote value {divergence.remote_value!r} is "
            "invalid; keep the local value or supply an explicit one"
        )
    return divergence.remote_value


def _dismiss_or_noop(divergence: Divergence, origin: ChangeOrigin, config: SyncConfig) -> Mutation:
    kind = MutationKind.DISMISS if config.persist_dismissals else MutationKind.NOOP
    return Mutation(kind=kind, divergence_key=divergence.key, origin=origin)


def _create(divergence: Divergence, value: str, origin: ChangeOrigin) -> Mutation:
    changes: List[Tuple[str, Optional[str]]] = [
        ("name", divergence.token_name),
        ("value", value),
        ("type", divergence.token_type.value),
        ("category", divergence.category),
        ("description", divergence.description or DEFAULT_DESCRIPTION),
        ("external_ref", divergence.variable_id),
        ("last_remote_value", divergence.remote_value),
    ]
    return Mutation(
        kind=MutationKind.CREATE,
        divergence_key=divergence.key,
        origin=origin,
        changes=tuple(changes),
    )


def _update(
    divergence: Divergence,
    origin: ChangeOrigin,
    changes: List[Tuple[str, Optional[str]]],
) -> Mutation:
    if divergence.proposed_link:
        changes.append(("external_ref", divergence.variable_id))
    return Mutation(
        kind=MutationKind.UPDATE,
        divergence_key=divergence.key,
        origin=origin,
        token_id=divergence.token_id,
        expected_version=divergence.local_version,
        changes=tuple(changes),
    )


def resolve(
    divergence: Divergence,
    resolution: Resolution,
    actor: ChangeOrigin = ChangeOrigin.MANUAL,
    config: Optional[SyncConfig] = None,
) -> Mutation:
    """Turn one resolution into the mutation that realizes it.

    Raises ResolutionError for USE_REMOTE against an invalid remote value and
    for EXPLICIT values that do not normalize under the token's type.
    """
    config = config or SyncConfig()
    choice = resolution.choice
    origin = origin_for(choice, actor)

    if divergence.kind == DivergenceKind.ADDED:
        if choice == Choice.KEEP_LOCAL:
            return _dismiss_or_noop(divergence, origin, config)
        if choice == Choice.USE_REMOTE:
            return _create(divergence, _require_valid_remote(divergence), origin)
        return _create(
            divergence, _checked_explicit(divergence, resolution.value, config), origin
        )

    if divergence.kind == DivergenceKind.REMOVED:
        if choice == Choice.KEEP_LOCAL:
            return _dismiss_or_noop(divergence, origin, config)
        if choice == Choice.USE_REMOTE:
            return Mutation(
                kind=MutationKind.DELETE,
                divergence_key=divergence.key,
                origin=origin,
                token_id=divergence.token_id,
                expected_version=divergence.local_version,
            )
        # The remote variable is gone, so the explicit value also unlinks it.
        value = _checked_explicit(divergence, resolution.value, config)
        return _update(
            divergence,
            origin,
            [("value", value), ("external_ref", None), ("last_remote_value", None)],
        )

    # MODIFIED
    if choice == Choice.KEEP_LOCAL:
        return _update(divergence, origin, [("last_remote_value", divergence.remote_value)])
    if choice == Choice.USE_REMOTE:
        remote_value = _require_valid_remote(divergence)
        return _update(
            divergence,
            origin,
            [("value", remote_value), ("last_remote_value", remote_value)],
        )
    value = _checked_explicit(divergence, resolution.value, config)
    return _update(
        divergence,
        origin,
        [("value", value), ("last_remote_value", divergence.remote_value)],
    )


def resolve_all(
    project_id: str,
    divergences: Sequence[Divergence],
    resolutions: Mapping[str, Resolution],
    actor: ChangeOrigin = ChangeOrigin.MANUAL,
    config: Optional[SyncConfig] = None,
) -> MutationBatch:
    """Build a batch from resolutions keyed by divergence key.

    Divergences without a resolution are left out. Keys that match no
    divergence raise ResolutionError so stale submissions are caught.
    """
    by_key: Dict[str, Divergence] = {d.key: d for d in divergences}
    unknown = sorted(set(resolutions) - set(by_key))
    if unknown:
        raise ResolutionError(f"Unknown divergence keys: {', '.join(unknown)}")
    mutations = [
        resolve(d, resolutions[d.key], actor, config)
        for d in divergences
        if d.key in resolutions
    ]
    return MutationBatch(project_id=project_id, mutations=mutations)
