from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .errors import ValidationError
from .fsutil import write_json_atomic

DEFAULT_GIT_BIN = "git"
DEFAULT_GIT_TIMEOUT_S = 120.0
DEFAULT_HASH_TIMEOUT_S = 30.0


@dataclass(frozen=True)
class Config:
    git_bin: str = DEFAULT_GIT_BIN
    git_timeout_s: float = DEFAULT_GIT_TIMEOUT_S  # clone, checkout, rev-parse, show
    hash_timeout_s: float = DEFAULT_HASH_TIMEOUT_S  # one directory fingerprint


def config_path(path_override: str | Path | None = None) -> Path:
    override = path_override if path_override is not None else os.getenv("SKV_CONFIG_PATH")
    if override:
        return Path(override).expanduser()
    return user_config_path("skv") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    """Read the config file; unknown keys are ignored and a missing file gives the defaults."""
    path = config_path(path_override)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return Config()
    except json.JSONDecodeError as e:
        raise ValidationError(f"invalid config file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ValidationError(f"invalid config file {path}: expected a JSON object")

    known = {f.name for f in fields(Config)}
    return Config(**{k: v for k, v in raw.items() if k in known})


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    write_json_atomic(path, asdict(cfg))
    return path


def _float_or(value: Any, fallback: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def apply_env(cfg: Config) -> Config:
    """Environment overrides the config file."""
    return replace(
        cfg,
        git_bin=os.getenv("SKV_GIT_BIN") or cfg.git_bin,
        git_timeout_s=_float_or(os.getenv("SKV_GIT_TIMEOUT_S") or cfg.git_timeout_s, cfg.git_timeout_s),
        hash_timeout_s=_float_or(os.getenv("SKV_HASH_TIMEOUT_S") or cfg.hash_timeout_s, cfg.hash_timeout_s),
    )
