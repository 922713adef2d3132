"""
Sync configuration, read from a JSON file with environment overrides.
"""

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union
import json
import logging
import os

from .errors import ConfigError

logger = logging.getLogger("tokensync.config")

ENV_PREFIX = "TOKENSYNC_"


@dataclass(frozen=True)
class SyncConfig:
    # Mode name compared against local values; None means each collection's default
    comparison_mode: Optional[str] = None
    # Remember KEEP_LOCAL on ADDED/REMOVED so the divergence is not re-surfaced
    persist_dismissals: bool = False
    numeric_precision: int = 4
    default_unit: str = "px"
    match_exact_case_first: bool = True

    def __post_init__(self):
        if self.numeric_precision < 0:
            raise ConfigError(
                f"numeric_precision must be >= 0, got {self.numeric_precision}"
            )
        if not self.default_unit:
            raise ConfigError("default_unit must not be empty")


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ConfigError(f"Not a boolean: {value!r}")


def _coerce(name: str, raw: Any) -> Any:
    if name in ("persist_dismissals", "match_exact_case_first"):
        return _parse_bool(raw) if isinstance(raw, str) else bool(raw)
    if name == "numeric_precision":
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"numeric_precision must be an integer, got {raw!r}")
    if name == "comparison_mode":
        return str(raw) if raw not in (None, "") else None
    return str(raw)


def config_from_mapping(data: Mapping[str, Any]) -> SyncConfig:
    known = {f.name for f in fields(SyncConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
    return SyncConfig(**{k: _coerce(k, v) for k, v in data.items()})


def apply_env(config: SyncConfig, environ: Mapping[str, str]) -> SyncConfig:
    overrides: Dict[str, Any] = {}
    for f in fields(SyncConfig):
        env_name = ENV_PREFIX + f.name.upper()
        if env_name in environ:
            overrides[f.name] = _coerce(f.name, environ[env_name])
    if overrides:
        logger.debug(f"Config overrides from environment: {sorted(overrides)}")
        return replace(config, **overrides)
    return config


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SyncConfig:
    """Load config from an optional JSON file, then apply env overrides."""
    config = SyncConfig()
    if path is not None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must contain a JSON object")
        config = config_from_mapping(data)
        logger.info(f"Loaded sync config from {path}")
    return apply_env(config, os.environ if environ is None else environ)
