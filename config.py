from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

"""Config loader and validator.

Provides `load_config` which accepts either a path to a YAML file,
a dictionary or None and returns a normalized configuration dict
using DEFAULTS for missing values.
"""


ALPHABET_NAMES = ("classic", "emoji")
SCHEDULER_NAMES = ("inline", "thread")

DEFAULTS: dict[str, Any] = {
    "slice_steps": 50000,
    "optimize": False,
    "alphabet": "classic",
    "scheduler": "inline",
    "yield_delay": 0.001,
    "step_limit": None,
    "trace_steps": False,
    "lenient_log": False,
}


class ConfigError(ValueError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def _as_bool(v: Any) -> bool:
    if isinstance(v, str):
        low = v.strip().lower()
        if low in ("1", "true", "yes", "on"):
            return True
        if low in ("0", "false", "no", "off", ""):
            return False
        msg = f"not a boolean: {v!r}"
        raise ValueError(msg)
    return bool(v)


def _convert_types(cfg: dict[str, Any]) -> None:
    """Normalize types for configuration values in-place.

    Raises ConfigError on conversion failure.
    """
    try:
        cfg["slice_steps"] = int(cfg.get("slice_steps", DEFAULTS["slice_steps"]))

        # step_limit
        v = cfg.get("step_limit")
        if v is None:
            cfg["step_limit"] = None
        else:
            cfg["step_limit"] = int(v)

        yd = cfg.get("yield_delay", DEFAULTS["yield_delay"])
        cfg["yield_delay"] = float(yd) if yd is not None else 0.0

        cfg["alphabet"] = str(cfg.get("alphabet", DEFAULTS["alphabet"])).strip().lower()
        cfg["scheduler"] = str(cfg.get("scheduler", DEFAULTS["scheduler"])).strip().lower()

        # bool flags
        for key in ("optimize", "trace_steps", "lenient_log"):
            cfg[key] = _as_bool(cfg.get(key, DEFAULTS[key]))
    except Exception as e:
        msg = f"Bad types in config: {e}"
        raise ConfigError(msg) from e


def _validate_cfg(cfg: dict[str, Any]) -> None:
    """Perform semantic validation on normalized config dict.

    Raises ConfigError on invalid values.
    """
    if cfg["slice_steps"] <= 0:
        msg = "slice_steps must be positive"
        raise ConfigError(msg)

    if cfg["step_limit"] is not None and cfg["step_limit"] <= 0:
        msg = "step_limit must be positive or null"
        raise ConfigError(msg)

    if cfg["yield_delay"] < 0:
        msg = "yield_delay must be non-negative"
        raise ConfigError(msg)

    if cfg["alphabet"] not in ALPHABET_NAMES:
        msg = f"alphabet must be one of {', '.join(ALPHABET_NAMES)} (got {cfg['alphabet']!r})"
        raise ConfigError(msg)

    if cfg["scheduler"] not in SCHEDULER_NAMES:
        msg = f"scheduler must be one of {', '.join(SCHEDULER_NAMES)} (got {cfg['scheduler']!r})"
        raise ConfigError(msg)


def load_config(path_or_dict: str | Path | dict[str, Any] | None = None) -> dict[str, Any]:
    """Load and normalize configuration.

    Accepts:
      - None -> returns DEFAULTS copy
      - dict -> overlay DEFAULTS with provided dict
      - str or Path -> load YAML and overlay DEFAULTS

    Returns a normalized dict or raises ConfigError.
    """
    if path_or_dict is None:
        cfg: dict[str, Any] = dict(DEFAULTS)
    elif isinstance(path_or_dict, dict):
        cfg = dict(DEFAULTS)
        cfg.update(path_or_dict)
    elif isinstance(path_or_dict, (str, Path)):
        p = Path(path_or_dict)
        if not p.exists():
            msg = f"Config file not found: {path_or_dict}"
            raise ConfigError(msg)
        try:
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except Exception as e:
            msg = f"Failed to load config file {path_or_dict}: {e}"
            raise ConfigError(msg) from e
        if not isinstance(data, dict):
            msg = f"Config file {path_or_dict} does not contain a mapping"
            raise ConfigError(msg)
        cfg = dict(DEFAULTS)
        cfg.update(data)
    else:
        msg = "Unsupported config input"
        raise ConfigError(msg)

    # convert types and validate semantics
    _convert_types(cfg)
    _validate_cfg(cfg)

    return cfg
