# DukaRecon - Back-office sales & M-Pesa reconciliation for small shops
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Configuration helpers for DukaRecon.

This module is responsible for:
- loading the application configuration from a TOML file,
- validating its values,
- exposing typed dataclasses used by the rest of the application.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover - fallback for older Python
    import tomli as tomllib  # type: ignore[import]

from .db import DEFAULT_BATCH_LIMIT, DatabaseConfig

DEFAULT_CONFIG_FILE = "dukarecon_config.toml"

_DISPLAY_MODES = {"table", "csv", "both"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class BusinessConfig:
    """The shop the CLI works on by default."""

    business_id: Optional[str]
    name: Optional[str]
    currency: str


@dataclass(frozen=True)
class AppConfig:
    """
    Application-wide configuration for DukaRecon.

    This aggregates:
    - the default business and its currency,
    - the database configuration (where records are stored),
    - the statement import options (batch-write cap),
    - display options for reports,
    - the logging level.
    """

    business: BusinessConfig
    database: DatabaseConfig
    batch_limit: int
    display_mode: str
    log_level: str


def _load_toml(path: Path) -> dict[str, Any]:
    """
    Load a TOML file and return its content as a dictionary.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if the TOML content cannot be parsed or is not a table.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"Failed to parse TOML config file: {path}") from exc

    if not isinstance(data, dict):
        raise ValueError(f"Invalid TOML root type in {path}, expected a table.")

    return data


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, Mapping):
        return {}
    return section


def _parse_business(raw: Mapping[str, Any]) -> BusinessConfig:
    section = _section(raw, "business")

    business_id = section.get("business_id") or None
    name = section.get("name") or None
    currency = str(section.get("currency") or "KES")

    return BusinessConfig(
        business_id=str(business_id).strip() if business_id else None,
        name=str(name) if name else None,
        currency=currency,
    )


def _parse_batch_limit(raw: Mapping[str, Any]) -> int:
    section = _section(raw, "import")
    value = section.get("batch_limit", DEFAULT_BATCH_LIMIT)
    try:
        batch_limit = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(
            "Invalid value for 'import.batch_limit' in the configuration. "
            "Expected an integer."
        ) from exc

    if batch_limit <= 0:
        raise ValueError("'import.batch_limit' must be a positive integer.")
    return batch_limit


def load_app_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load the DukaRecon application configuration from a TOML file.

    Expected top-level sections in the TOML file
    --------------------------------------------
    [business]
        Default business id (the "BIZ-XXXXX" shop id), display name and
        currency (default "KES").

    [database]
        Database engine ("sqlite") and the SQLite file path.

    [import]
        ``batch_limit``: maximum number of writes committed at once by a
        statement import (default 500).

    [display]
        ``mode``: "table", "csv" or "both".

    [logging]
        ``level``: standard logging level name (default "WARNING").

    All file paths in the TOML are resolved relative to the directory of
    the TOML file itself.

    Parameters
    ----------
    config_path : str, optional
        Path to the TOML configuration file. Defaults to
        ``dukarecon_config.toml`` in the current working directory.

    Returns
    -------
    AppConfig
        Parsed and validated application configuration.
    """
    if config_path is None:
        config_file = Path(DEFAULT_CONFIG_FILE).resolve()
    else:
        config_file = Path(config_path).resolve()

    raw = _load_toml(config_file)
    base_dir = config_file.parent

    # 1) Business section
    business = _parse_business(raw)

    # 2) Database section
    database_section = _section(raw, "database")
    db_engine = str(database_section.get("engine") or "sqlite")
    db_path_raw = database_section.get("path") or "data/db/dukarecon.sqlite"
    db_path = (base_dir / str(db_path_raw)).resolve()

    database_config = DatabaseConfig(engine=db_engine, path=db_path)

    # 3) Import options
    batch_limit = _parse_batch_limit(raw)

    # 4) Display options
    display_mode = str(_section(raw, "display").get("mode", "table"))
    if display_mode not in _DISPLAY_MODES:
        raise ValueError(
            f"Invalid display mode {display_mode!r}; "
            f"expected one of {sorted(_DISPLAY_MODES)}."
        )

    # 5) Logging
    log_level = str(_section(raw, "logging").get("level", "WARNING")).upper()
    if log_level not in _LOG_LEVELS:
        raise ValueError(f"Invalid logging level {log_level!r}.")

    return AppConfig(
        business=business,
        database=database_config,
        batch_limit=batch_limit,
        display_mode=display_mode,
        log_level=log_level,
    )
