"""
Ledger Configuration.

Defines the runtime settings of the sales kernel and loads them from YAML.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown keys or invalid values  -> ``ValueError``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Self

import yaml

from sales_kernel.logging_config import get_logger

logger = get_logger("config")

DATABASE_URL_ENV = "SALES_KERNEL_DATABASE_URL"


@dataclass(frozen=True)
class LedgerConfig:
    """
    Configuration schema for the sales kernel.

        config = LedgerConfig(
            database_url="postgresql+psycopg2://app@localhost/sales",
            lock_timeout_seconds=5.0,
        )
    """

    database_url: str = "sqlite:///:memory:"
    echo: bool = False

    # Pool (PostgreSQL only)
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800

    # Row-lock wait before BusyError
    lock_timeout_seconds: float = 3.0

    # Credit above the remaining balance absorbed as rounding, in minor units
    overpayment_tolerance_minor: int = 1

    log_level: str = "INFO"

    def __post_init__(self):
        if not self.database_url:
            raise ValueError("database_url is required")
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be positive")
        if self.overpayment_tolerance_minor < 0:
            raise ValueError("overpayment_tolerance_minor cannot be negative")
        if self.pool_size <= 0:
            raise ValueError("pool_size must be positive")
        if self.max_overflow < 0:
            raise ValueError("max_overflow cannot be negative")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"log_level must be a logging level name, got '{self.log_level}'")

        logger.info(
            "ledger_config_initialized",
            extra={
                "dialect": self.database_url.split(":", 1)[0],
                "lock_timeout_seconds": self.lock_timeout_seconds,
                "overpayment_tolerance_minor": self.overpayment_tolerance_minor,
                "log_level": self.log_level,
            },
        )

    @property
    def engine_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for db.engine.build_engine()."""
        return {
            "echo": self.echo,
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "lock_timeout_seconds": self.lock_timeout_seconds,
        }

    @classmethod
    def with_defaults(cls) -> Self:
        logger.info("ledger_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create config from a dictionary (e.g. a parsed YAML file)."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        logger.info(
            "ledger_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        return cls(**data)


def load_config(path: str | Path | None = None, env: dict[str, str] | None = None) -> LedgerConfig:
    """
    Load LedgerConfig from a YAML file, then apply environment overrides.

    The file may hold the settings at top level or under a ``sales_kernel``
    key.  ``SALES_KERNEL_DATABASE_URL`` replaces database_url when set.
    """
    data: dict[str, Any] = {}
    if path is not None:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        data = dict(raw.get("sales_kernel", raw))

    environ = os.environ if env is None else env
    if environ.get(DATABASE_URL_ENV):
        data["database_url"] = environ[DATABASE_URL_ENV]

    return LedgerConfig.from_dict(data)
