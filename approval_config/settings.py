"""
Engine settings (``approval_config.settings``).

Responsibility
--------------
Resolve the approval engine's runtime settings from built-in defaults,
an optional YAML file, and ``APPROVAL_*`` environment variables (in that
order of precedence, lowest first).

Invariants enforced
-------------------
* ``EngineSettings`` is frozen; every field is validated on construction
  paths through ``get_settings``.
* Bad values raise ``ValueError`` naming the offending key -- there are
  no silent fallbacks.

Environment variables
---------------------
``APPROVAL_CONFIG_FILE``, ``APPROVAL_DATABASE_URL``,
``APPROVAL_QUORUM_COUNTING``, ``APPROVAL_STEP_CONDITION_MODE``,
``APPROVAL_SCAN_INTERVAL_SECONDS``, ``APPROVAL_MAX_PENDING_HOURS``,
``APPROVAL_MAX_ATTEMPTS``, ``APPROVAL_LOG_LEVEL``,
``APPROVAL_TEMPLATES_DIR``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from approval_kernel.domain.approval import QuorumCounting, StepConditionMode

ENV_PREFIX = "APPROVAL_"
CONFIG_FILE_ENV = "APPROVAL_CONFIG_FILE"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings for the approval engine."""

    database_url: str = "sqlite:///approvals.db"
    quorum_counting: QuorumCounting = QuorumCounting.DISTINCT_APPROVERS
    step_condition_mode: StepConditionMode = StepConditionMode.IGNORE
    scan_interval_seconds: float = 300
    max_pending_hours: Decimal | None = None
    max_attempts: int = 3
    log_level: str = "INFO"
    templates_dir: Path | None = None

    @property
    def log_level_number(self) -> int:
        return getattr(logging, self.log_level)


def _parse_quorum(value: Any) -> QuorumCounting:
    try:
        return QuorumCounting(str(value).strip().upper())
    except ValueError as exc:
        raise ValueError(
            f"quorum_counting must be one of {[m.value for m in QuorumCounting]}, "
            f"got {value!r}"
        ) from exc


def _parse_mode(value: Any) -> StepConditionMode:
    try:
        return StepConditionMode(str(value).strip().upper())
    except ValueError as exc:
        raise ValueError(
            f"step_condition_mode must be one of {[m.value for m in StepConditionMode]}, "
            f"got {value!r}"
        ) from exc


def _parse_positive_float(key: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key} must be a number, got {value!r}") from exc
    if number <= 0:
        raise ValueError(f"{key} must be positive, got {value!r}")
    return number


def _parse_optional_hours(key: str, value: Any) -> Decimal | None:
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "none")):
        return None
    try:
        hours = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"{key} must be a number of hours, got {value!r}") from exc
    if hours <= 0:
        raise ValueError(f"{key} must be positive, got {value!r}")
    return hours


def _parse_attempts(value: Any) -> int:
    try:
        attempts = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"max_attempts must be an integer, got {value!r}") from exc
    if attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {value!r}")
    return attempts


def _parse_log_level(value: Any) -> str:
    level = str(value).strip().upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"log_level must be one of {list(_LOG_LEVELS)}, got {value!r}")
    return level


def _parse_optional_path(value: Any) -> Path | None:
    if value is None or value == "":
        return None
    return Path(value)


_PARSERS = {
    "database_url": lambda v: str(v),
    "quorum_counting": _parse_quorum,
    "step_condition_mode": _parse_mode,
    "scan_interval_seconds": lambda v: _parse_positive_float("scan_interval_seconds", v),
    "max_pending_hours": lambda v: _parse_optional_hours("max_pending_hours", v),
    "max_attempts": _parse_attempts,
    "log_level": _parse_log_level,
    "templates_dir": _parse_optional_path,
}


def _apply(settings: EngineSettings, values: Mapping[str, Any], source: str) -> EngineSettings:
    known = {f.name for f in fields(EngineSettings)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown settings in {source}: {sorted(unknown)}")
    parsed = {key: _PARSERS[key](value) for key, value in values.items()}
    return replace(settings, **parsed)


def load_settings_file(path: Path) -> dict[str, Any]:
    """Read a YAML settings file; an ``approval:`` top-level key is optional."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")
    if "approval" in data and isinstance(data["approval"], dict):
        data = data["approval"]
    return data


def get_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineSettings:
    """Resolve settings: defaults <- YAML file <- environment.

    Args:
        path: YAML settings file.  Falls back to ``APPROVAL_CONFIG_FILE``.
        environ: Environment mapping (``os.environ`` by default).

    Raises:
        ValueError: on unknown keys or invalid values.
        FileNotFoundError: when the named settings file does not exist.
    """
    env = os.environ if environ is None else environ
    settings = EngineSettings()

    config_path = path or env.get(CONFIG_FILE_ENV)
    if config_path:
        settings = _apply(settings, load_settings_file(Path(config_path)), str(config_path))

    from_env = {}
    for f in fields(EngineSettings):
        key = f"{ENV_PREFIX}{f.name.upper()}"
        if key in env:
            from_env[f.name] = env[key]
    if from_env:
        settings = _apply(settings, from_env, "environment")

    return settings
