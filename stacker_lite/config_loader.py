"""stacker_lite.config_loader

Lightweight config loader for stacker_lite.

- Reads YAML (PyYAML) or, for ``.json`` files, JSON.
- Environment variables (``STACKER_*``) override file values.
- Exposes a typed dataclass `Config` and a `load_config()` helper that accepts
  an optional path override.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "stacker" / "config.yaml"
DEFAULT_DATA_PATH = str(Path.home() / ".local" / "share" / "stacker" / "tasks.json")

# environment variable -> config key
ENV_OVERRIDES = {
    "STACKER_DATA_PATH": "data_path",
    "STACKER_BUFFER_DAYS": "buffer_days",
    "STACKER_LOOKBACK_DAYS": "lookback_days",
    "STACKER_SAVE_TIMEOUT": "save_timeout_seconds",
    "STACKER_SAVE_RETRIES": "save_retries",
    "STACKER_MAX_OCCURRENCES": "max_occurrences_per_rule",
    "STACKER_PER_OCCURRENCE_SUBTASKS": "per_occurrence_subtasks",
    "STACKER_LOG_LEVEL": "log_level",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class Config:
    """Typed configuration for stacker_lite.

    Fields:
        data_path: JSON task document location
        buffer_days: extra days expanded past the view window for dedup (0..365)
        lookback_days: how far back rollover looks for missed occurrences (1..365)
        save_timeout_seconds: per-attempt save timeout
        save_retries: extra save attempts after a failure (0..5)
        max_occurrences_per_rule: expansion cap per rule per call
        per_occurrence_subtasks: toggle subtasks per occurrence instead of per series
        log_level: logging level name
    """

    data_path: str = DEFAULT_DATA_PATH
    buffer_days: int = 30
    lookback_days: int = 60
    save_timeout_seconds: float = 5.0
    save_retries: int = 1
    max_occurrences_per_rule: int = 1000
    per_occurrence_subtasks: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> Config:
        """Create Config from a plain mapping, applying defaults and validation.

        Numeric-like values are coerced and clamped to their allowed ranges,
        logging a warning for every coercion.
        """
        if data is None:
            data = {}

        def _coerce_int(key: str, default: int, low: int, high: int) -> int:
            raw = data.get(key, default)
            try:
                value = int(raw)
            except (TypeError, ValueError):
                logger.warning("Config %s=%r is not an int; using default %d", key, raw, default)
                return default
            if value < low:
                logger.warning("%s %d below minimum; coercing to %d", key, value, low)
                return low
            if value > high:
                logger.warning("%s %d above maximum; coercing to %d", key, value, high)
                return high
            return value

        raw_timeout = data.get("save_timeout_seconds", 5.0)
        try:
            save_timeout = float(raw_timeout)
        except (TypeError, ValueError):
            logger.warning("Config save_timeout_seconds=%r is not a number; using default 5.0", raw_timeout)
            save_timeout = 5.0
        if save_timeout <= 0:
            logger.warning("save_timeout_seconds %s must be positive; coercing to 5.0", save_timeout)
            save_timeout = 5.0

        per_occurrence = data.get("per_occurrence_subtasks", False)
        if isinstance(per_occurrence, str):
            per_occurrence = per_occurrence.strip().lower() in _TRUE_VALUES

        data_path = data.get("data_path") or DEFAULT_DATA_PATH
        log_level = data.get("log_level", "INFO")
        log_level = str(log_level).upper() if log_level is not None else "INFO"

        return cls(
            data_path=str(data_path),
            buffer_days=_coerce_int("buffer_days", 30, 0, 365),
            lookback_days=_coerce_int("lookback_days", 60, 1, 365),
            save_timeout_seconds=save_timeout,
            save_retries=_coerce_int("save_retries", 1, 0, 5),
            max_occurrences_per_rule=_coerce_int("max_occurrences_per_rule", 1000, 1, 100_000),
            per_occurrence_subtasks=bool(per_occurrence),
            log_level=log_level,
        )

    @property
    def resolved_data_path(self) -> Path:
        return Path(self.data_path).expanduser()


def apply_env_overrides(data: Mapping[str, Any], environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Return a copy of ``data`` with ``STACKER_*`` environment values applied."""
    environ = os.environ if environ is None else environ
    merged = dict(data)
    for env_name, key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None and value != "":
            logger.debug("Config %s overridden by %s", key, env_name)
            merged[key] = value
    return merged


def _load_mapping(path: Path) -> Any:
    """Load a YAML document, or JSON for ``.json`` files.

    The `yaml` import is deferred to keep package import light.
    """
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return json.loads(text)

    import yaml  # noqa: PLC0415

    loaded = yaml.safe_load(text)
    # safe_load returns None for empty files
    return {} if loaded is None else loaded


def load_config(path: str | os.PathLike[str] | None = None, environ: Mapping[str, str] | None = None) -> Config:
    """Load configuration from a YAML/JSON file and return a Config instance.

    Args:
        path: Optional config file path. Defaults to ``$STACKER_CONFIG`` or
              ~/.config/stacker/config.yaml.
        environ: Environment mapping used for overrides (defaults to os.environ).

    Behavior:
    - If file is missing: defaults (plus environment overrides).
    - If file exists but top-level is not a mapping: raises ValueError.
    """
    env = os.environ if environ is None else environ
    p = Path(path or env.get("STACKER_CONFIG") or DEFAULT_CONFIG_PATH).expanduser()
    logger.debug("Attempting to load config from %s", p)

    raw: Any = {}
    if p.exists():
        raw = _load_mapping(p)
        if not isinstance(raw, dict):
            logger.warning("Config file %s parsed but top-level is not a mapping: %r", p, raw)
            raise ValueError("Config file must contain a mapping at top level")  # noqa: TRY004
        logger.info("Loaded configuration from %s", p)
    else:
        logger.info("Config file %s not found; using defaults", p)

    cfg = Config.from_dict(apply_env_overrides(raw, env))
    logger.debug("Configuration values: %s", cfg)
    return cfg
