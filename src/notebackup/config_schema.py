"""Unified configuration schema for notebackup.

Defines Pydantic models for the unified config structure with dedicated
sections for the backup target and logging.

Usage:
    from notebackup.config_loader import load_hierarchical_config
    from notebackup.config_schema import build_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
    unified = apply_cli_overrides(unified, {"directory": "~/Backup"})
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class BackupConfig(BaseModel):
    """Backup target settings.

    All location fields are optional to support zero-config: CLI args can
    supply them at runtime instead.
    """

    directory: str | None = Field(
        default=None, description="Backup directory on disk"
    )
    store: str | None = Field(
        default=None, description="JSON document store file"
    )
    scope: str | None = Field(
        default=None,
        description="Manifest scope key (defaults to the collection id)",
    )
    bidirectional: bool = Field(
        default=True,
        description="Pull changes from disk before pushing",
    )
    read_only: bool = Field(
        default=False,
        description="Never mutate the document collection during pull",
    )
    recent_import_window_ms: int = Field(
        default=30_000,
        ge=0,
        description="De-dup window for documents created by pull (ms)",
    )
    path_override_ttl_ms: int = Field(
        default=3_600_000,
        ge=1,
        description="How long a preferred path recorded by pull stays usable (ms)",
    )
    max_path_overrides: int = Field(
        default=1024,
        ge=1,
        description="Maximum remembered preferred paths between passes",
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has sensible defaults, so ``UnifiedConfig()``
    (zero-config) is always valid.
    """

    backup: BackupConfig = Field(default_factory=BackupConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully: anything absent gets defaults.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


def apply_cli_overrides(
    unified: UnifiedConfig, cli_overrides: dict | None = None
) -> UnifiedConfig:
    """Return a copy of *unified* with non-empty CLI values applied.

    Precedence: CLI override > config file value > default.  ``None`` and
    ``False`` overrides are ignored so unset flags never clobber the file.
    """
    overrides = {
        key: value
        for key, value in (cli_overrides or {}).items()
        if value is not None and value is not False
    }
    if not overrides:
        return unified
    backup = BackupConfig(**{**unified.backup.model_dump(), **overrides})
    return unified.model_copy(update={"backup": backup})
