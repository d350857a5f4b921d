# service/config_schema.py
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CRONS: dict[str, str] = {
    "scrape_all": "0 0 * * *",  # daily at midnight
    "cleanup_errors": "0 */12 * * *",  # every 12 hours
}
_CRON_FIELDS = {"second", "minute", "hour", "day", "day_of_week", "month", "timezone", "jitter"}


class ConfigError(ValueError):
    """Raised when the config is invalid."""


@dataclass
class _LoadResult:
    cfg: dict[str, Any]
    source: str


def load_config(path: str | None = None) -> dict[str, Any]:
    """
    Load the service configuration.

    Resolution order:
      1) Explicit `path` argument (if provided)
      2) os.environ['CONFIG_PATH'] (if set)
      3) Internal default (default crons, empty job_board kwargs)

    Returns a dict with at least:
        {"timezone": str, "executor_workers": int,
         "crons": {"scrape_all": ..., "cleanup_errors": ...},
         "job_board": {...}}
    """
    resolved_path = path or os.environ.get("CONFIG_PATH")
    if not resolved_path:
        logger.info("CONFIG_PATH not provided; using default config.")
        cfg: dict[str, Any] = {}
    else:
        cfg = _read_any(resolved_path).cfg

    _apply_top_level_defaults(cfg)
    return cfg


def validate(cfg: dict[str, Any]) -> None:
    """
    Validate the configuration. Raise ConfigError on any problem.
    No prints, no sys.exit().
    """
    if not isinstance(cfg, dict):
        raise ConfigError("Config must be a dict.")

    tz = cfg.get("timezone")
    if tz is not None and not isinstance(tz, str):
        raise ConfigError("'timezone' must be a string if provided.")

    workers = cfg.get("executor_workers")
    if workers is not None and (not isinstance(workers, int) or isinstance(workers, bool) or workers < 1):
        raise ConfigError("'executor_workers' must be an integer >= 1.")

    grace = cfg.get("misfire_grace_time")
    if grace is not None and (not isinstance(grace, int) or isinstance(grace, bool) or grace < 0):
        raise ConfigError("'misfire_grace_time' must be an integer >= 0.")

    crons = cfg.get("crons", {})
    if not isinstance(crons, dict):
        raise ConfigError("'crons' must be an object.")
    for name, spec in crons.items():
        if name not in DEFAULT_CRONS:
            raise ConfigError(f"Unknown cron {name!r}; expected one of {sorted(DEFAULT_CRONS)}.")
        _validate_cron(name, spec)

    jb = cfg.get("job_board", {})
    if not isinstance(jb, dict):
        raise ConfigError("'job_board' must be an object of settings.")

    # Settings does its own typed validation
    from modules.job_board.lib.config import ConfigError as SettingsError
    from modules.job_board.lib.config import Settings

    try:
        Settings.from_env_and_kwargs(jb)
    except SettingsError as e:
        raise ConfigError(str(e)) from e


def _validate_cron(name: str, spec: Any) -> None:
    if spec is None:
        return  # disabled
    if isinstance(spec, str):
        fields = spec.strip().split()
        if len(fields) not in (5, 6):
            raise ConfigError(f"crons.{name}: crontab must have 5 or 6 fields (got {len(fields)}).")
        return
    if isinstance(spec, dict):
        unknown = set(spec) - _CRON_FIELDS
        if unknown:
            raise ConfigError(f"crons.{name}: unknown field(s) {sorted(unknown)}.")
        return
    raise ConfigError(f"crons.{name}: must be a crontab string, an object of cron fields, or null.")


def _apply_top_level_defaults(cfg: dict[str, Any]) -> None:
    tz = cfg.get("timezone")
    if not isinstance(tz, str) or not tz.strip():
        cfg["timezone"] = os.environ.get("TZ", "UTC")

    if cfg.get("executor_workers") is None:
        cfg["executor_workers"] = 10

    crons = cfg.get("crons")
    if not isinstance(crons, dict):
        crons = {}
    # Explicit null disables a cron; a missing key gets the default.
    merged = dict(DEFAULT_CRONS)
    merged.update(crons)
    cfg["crons"] = merged

    if not isinstance(cfg.get("job_board"), dict):
        cfg["job_board"] = {}


def _read_any(path: str) -> _LoadResult:
    lower = path.lower()
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {path}: {e}") from e

    if lower.endswith(".json"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError("Top-level JSON must be an object.")
        return _LoadResult(cfg=data, source=path)

    if lower.endswith(".yml") or lower.endswith(".yaml"):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Top-level YAML must be a mapping/object.")
        return _LoadResult(cfg=data, source=path)

    # Try JSON as a fallback if extension is unknown
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return _LoadResult(cfg=data, source=path)
    except json.JSONDecodeError:
        pass

    raise ConfigError(f"Unsupported config format for {path}. Use .json or .yml/.yaml.")
