"""
Error taxonomy for token synchronization.

Per-item problems (MalformedValue, AmbiguousMatch) are turned into
divergences and diagnostics by the diff engine. Batch-level errors
(PersistenceFailure, StaleTarget, RemoteFetchFailure) abort the whole
operation with the local store untouched.
"""

from typing import Any, Optional, Sequence


class TokenSyncError(Exception):
    """Base class. ``divergences`` is set when a sync aborts after diffing."""

    kind = "error"

    def __init__(self, message: str, divergences: Optional[Sequence[Any]] = None):
        super().__init__(message)
        self.divergences = divergences


class MalformedValue(TokenSyncError, ValueError):
    kind = "malformed_value"

    def __init__(self, raw: Any, token_type: Any, reason: str = ""):
        type_name = getattr(token_type, "value", token_type)
        message = f"Cannot parse {raw!r}"
        if type_name:
            message += f" as {type_name}"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.raw = raw
        self.token_type = token_type
        self.reason = reason


class AmbiguousMatch(TokenSyncError):
    """Several local tokens claim one variable by name. Reported on the divergence, not raised."""

    kind = "ambiguous_match"


class ResolutionError(TokenSyncError, ValueError):
    kind = "invalid_resolution"


class PersistenceFailure(TokenSyncError):
    kind = "persistence_failure"


class StaleTarget(TokenSyncError):
    kind = "stale_target"

    def __init__(
        self,
        token_id: str,
        expected_version: Optional[int],
        actual_version: Optional[int],
    ):
        if actual_version is None:
            message = f"Token {token_id} no longer exists"
        else:
            message = (
                f"Token {token_id} changed since diff "
                f"(expected version {expected_version}, found {actual_version})"
            )
        super().__init__(message)
        self.token_id = token_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class RemoteFetchFailure(TokenSyncError):
    kind = "remote_fetch_failure"


class SyncCancelled(TokenSyncError):
    kind = "cancelled"


class ConfigError(TokenSyncError, ValueError):
    kind = "config_error"
