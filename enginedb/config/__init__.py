"""
Configuration management for enginedb.

This module loads engine defaults (pool sizing, concurrency bounds, batch
settings) from TOML files. The packaged `enginedb.toml` holds the defaults;
`--config` on the command line points at an override file with the same
layout. Keys missing from an override fall back to the defaults below.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from enginedb.core.pool import JOURNAL_MODES

logger = logging.getLogger(__name__)

# Path to the config directory
CONFIG_DIR = Path(__file__).parent
DEFAULT_CONFIG_PATH = CONFIG_DIR / "enginedb.toml"


@dataclass
class PoolConfig:
    """Connection pool sizing and timeouts (seconds)."""

    size: int = 4
    acquire_timeout: float = 30.0
    busy_timeout: float = 10.0
    # Empty keeps the journal mode stored in the library file
    journal_mode: str = ""


@dataclass
class HousekeepingConfig:
    concurrency: int = 4
    # Finding kinds repaired by `enginedb repair` when `--repair` is not given
    repair_kinds: list[str] = field(
        default_factory=lambda: [
            "dangling_reference",
            "duplicate_identity",
            "ordinal_gap",
            "malformed_blob",
            "cyclic_relation",
        ]
    )


@dataclass
class ArtworkConfig:
    jpeg_quality: int = 70
    max_ratio: float = 0.75
    validation_concurrency: int = 4


@dataclass
class EngineConfig:
    """Loaded engine configuration."""

    pool: PoolConfig = field(default_factory=PoolConfig)
    housekeeping: HousekeepingConfig = field(default_factory=HousekeepingConfig)
    artwork: ArtworkConfig = field(default_factory=ArtworkConfig)
    chunk_size: int = 128
    file_check_concurrency: int = 4
    source: Path | None = None

    def validate(self) -> None:
        """Reject values the engine cannot work with."""
        if self.pool.size < 1:
            raise ValueError("pool.size must be at least 1")
        if self.pool.journal_mode and self.pool.journal_mode.lower() not in JOURNAL_MODES:
            modes = ", ".join(sorted(JOURNAL_MODES))
            raise ValueError(f"pool.journal_mode must be empty or one of: {modes}")
        if self.housekeeping.concurrency < 1:
            raise ValueError("housekeeping.concurrency must be at least 1")
        if self.chunk_size < 1:
            raise ValueError("batch.chunk_size must be at least 1")
        if not 1 <= self.artwork.jpeg_quality <= 95:
            raise ValueError("artwork.jpeg_quality must be between 1 and 95")
        if not 0.0 < self.artwork.max_ratio <= 1.0:
            raise ValueError("artwork.max_ratio must be in (0, 1]")


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ValueError(f"[{name}] must be a table")
    return value


def _parse(data: dict[str, Any], source: Path | None) -> EngineConfig:
    pool = _section(data, "pool")
    housekeeping = _section(data, "housekeeping")
    artwork = _section(data, "artwork")
    batch = _section(data, "batch")
    defaults = EngineConfig()

    config = EngineConfig(
        pool=PoolConfig(
            size=int(pool.get("size", defaults.pool.size)),
            acquire_timeout=float(pool.get("acquire_timeout", defaults.pool.acquire_timeout)),
            busy_timeout=float(pool.get("busy_timeout", defaults.pool.busy_timeout)),
            journal_mode=str(pool.get("journal_mode", defaults.pool.journal_mode)),
        ),
        housekeeping=HousekeepingConfig(
            concurrency=int(housekeeping.get("concurrency", defaults.housekeeping.concurrency)),
            repair_kinds=list(housekeeping.get("repair_kinds", defaults.housekeeping.repair_kinds)),
        ),
        artwork=ArtworkConfig(
            jpeg_quality=int(artwork.get("jpeg_quality", defaults.artwork.jpeg_quality)),
            max_ratio=float(artwork.get("max_ratio", defaults.artwork.max_ratio)),
            validation_concurrency=int(
                artwork.get("validation_concurrency", defaults.artwork.validation_concurrency)
            ),
        ),
        chunk_size=int(batch.get("chunk_size", defaults.chunk_size)),
        file_check_concurrency=int(
            batch.get("file_check_concurrency", defaults.file_check_concurrency)
        ),
        source=source,
    )
    config.validate()
    return config


def load_config(config_path: Path | None = None) -> EngineConfig:
    """
    Load engine configuration from a TOML file.

    Args:
        config_path: Path to a TOML file. If None, uses the packaged defaults.

    Returns:
        Loaded EngineConfig instance.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    logger.debug("Loading engine config from %s", config_path)

    with config_path.open("rb") as f:
        data = tomllib.load(f)

    return _parse(data, config_path)


# Global singleton instance (lazy loaded)
_config: EngineConfig | None = None


def get_config() -> EngineConfig:
    """
    Get the global engine configuration (lazy loaded singleton).

    Returns:
        The EngineConfig instance.
    """
    global _config

    if _config is None:
        _config = load_config()

    return _config


def reload_config(config_path: Path | None = None) -> EngineConfig:
    """
    Force reload of the engine configuration.

    Returns:
        The newly loaded EngineConfig instance.
    """
    global _config
    _config = load_config(config_path)
    return _config
