"""
Library facade.

Opens one library database file, validates compatibility before anything
else touches data, and wires the engine components for the detected schema
version:

    async with Library("Engine Library/Database2/m.db") as library:
        findings = await library.check()
        outcome = await library.repair(findings)

Opening fails with `SchemaMismatchError` when the `Information` row is
missing or ambiguous, the version is unsupported, or a declared table or
column is missing.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path

import aiosqlite

from enginedb.config import EngineConfig
from enginedb.core import SchemaMismatchError
from enginedb.core import batch
from enginedb.core.checker import ConsistencyChecker, Finding, FindingKind
from enginedb.core.db import schema
from enginedb.core.db.mapper import SchemaMapper
from enginedb.core.db.models import LibraryInformation, SchemaVersion, UnsupportedSchema
from enginedb.core.housekeeping import (
    BatchOutcome,
    HousekeepingEngine,
    ProgressCallback,
    RepairPlanner,
    RepairPolicy,
)
from enginedb.core.images import ImageValidator, PillowImageValidator
from enginedb.core.playlists import ImportMode, ImportResult, import_playlist
from enginedb.core.pool import ConnectionPool
from enginedb.core.repository import (
    ArtworkRepository,
    CheckpointRepository,
    CrateRepository,
    CuePointRepository,
    InformationRepository,
    LibraryMaintenance,
    MembershipRepository,
    PerformanceDataRepository,
    TrackRepository,
)
from enginedb.core.track_files import TrackFileIssue, find_track_file_issues
from enginedb.core.transaction import Transaction, TransactionCoordinator

logger = logging.getLogger(__name__)


async def create_library(
    db_path: str | Path, *, version: SchemaVersion = schema.LATEST_VERSION
) -> None:
    """Create an empty library file with the declared layout of `version`."""
    async with aiosqlite.connect(str(db_path), isolation_level=None) as conn:
        await schema.create_schema(conn, version=version)


class Library:
    """
    One open library.

    Repositories (`tracks`, `crates`, `memberships`, `artwork`, `cue_points`,
    `performance`) are only available after `open()`; they are rebuilt when
    the schema version changes (see `upgrade()`).
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        pool_size: int = 4,
        acquire_timeout: float = 30.0,
        busy_timeout: float = 10.0,
        journal_mode: str | None = None,
        validator: ImageValidator | None = None,
        validation_concurrency: int = 4,
    ) -> None:
        self.db_path = Path(db_path)
        self.pool = ConnectionPool(
            self.db_path,
            size=pool_size,
            acquire_timeout=acquire_timeout,
            busy_timeout=busy_timeout,
            journal_mode=journal_mode,
        )
        self.checkpoints = CheckpointRepository()
        self.coordinator = TransactionCoordinator(self.pool, self.checkpoints)
        self.information = InformationRepository()
        self.maintenance = LibraryMaintenance()
        self.validator = validator or PillowImageValidator()
        self._validation_concurrency = validation_concurrency

        self._info: LibraryInformation | None = None
        self._mapper: SchemaMapper | None = None

    @classmethod
    def from_config(cls, db_path: str | Path, config: EngineConfig) -> Library:
        return cls(
            db_path,
            pool_size=config.pool.size,
            acquire_timeout=config.pool.acquire_timeout,
            busy_timeout=config.pool.busy_timeout,
            journal_mode=config.pool.journal_mode or None,
            validation_concurrency=config.artwork.validation_concurrency,
        )

    @property
    def is_open(self) -> bool:
        return self._mapper is not None

    @property
    def library_dir(self) -> Path:
        """Directory stored track paths are relative to."""
        return self.db_path.resolve().parent

    @property
    def info(self) -> LibraryInformation:
        if self._info is None:
            raise RuntimeError("Library is not open. Call await library.open() first.")
        return self._info

    @property
    def version(self) -> SchemaVersion:
        return self.info.schema_version

    @property
    def mapper(self) -> SchemaMapper:
        if self._mapper is None:
            raise RuntimeError("Library is not open. Call await library.open() first.")
        return self._mapper

    async def __aenter__(self) -> Library:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def open(self) -> None:
        if not self.db_path.exists():
            raise FileNotFoundError(self.db_path)
        # Compatibility is decided on a read-only connection; pooled
        # connections (and their PRAGMAs) only exist for supported files.
        uri = f"{self.db_path.resolve().as_uri()}?mode=ro"
        async with aiosqlite.connect(uri, uri=True) as conn:
            conn.row_factory = aiosqlite.Row
            info, detected = await self._inspect(Transaction(conn, read_only=True))
        await self.pool.open()
        self._info = info
        self._wire(SchemaMapper(detected))
        logger.info(
            "Opened library %s (uuid %s, schema %s)", self.db_path, self.info.uuid, self.version
        )

    async def close(self) -> None:
        await self.pool.close()
        self._mapper = None
        self._info = None

    async def _inspect(self, tx: Transaction) -> tuple[LibraryInformation, SchemaVersion]:
        """Detect and verify the schema version of the file behind `tx`."""
        info = await self.information.load(tx)
        detected = schema.detect_version(info)
        if isinstance(detected, UnsupportedSchema):
            raise SchemaMismatchError(schema.INFORMATION, None, detected.reason)
        schema.verify_tables(detected, await self.maintenance.table_columns(tx))
        return info, detected

    async def _load(self) -> None:
        """Re-detect the schema through the pool and rebuild the repositories."""
        info, detected = await self.coordinator.run(self._inspect, read_only=True)
        self._info = info
        self._wire(SchemaMapper(detected))

    def _wire(self, mapper: SchemaMapper) -> None:
        self._mapper = mapper
        self.performance = PerformanceDataRepository()
        self.cue_points = CuePointRepository(mapper)
        self.memberships = MembershipRepository(mapper)
        self.artwork = ArtworkRepository(mapper)
        self.crates = CrateRepository(mapper, memberships=self.memberships)
        self.tracks = TrackRepository(
            mapper,
            cue_points=self.cue_points,
            memberships=self.memberships,
            performance=self.performance,
        )
        self.checker = ConsistencyChecker(
            tracks=self.tracks,
            crates=self.crates,
            memberships=self.memberships,
            cue_points=self.cue_points,
            artwork=self.artwork,
            performance=self.performance,
            validator=self.validator,
            concurrency=self._validation_concurrency,
        )
        self.planner = RepairPlanner(
            tracks=self.tracks,
            crates=self.crates,
            memberships=self.memberships,
            cue_points=self.cue_points,
            artwork=self.artwork,
            performance=self.performance,
            validator=self.validator,
        )

    # -- Operations ----------------------------------------------------------

    def housekeeping(
        self, *, concurrency: int = 4, on_progress: ProgressCallback | None = None
    ) -> HousekeepingEngine:
        return HousekeepingEngine(self.coordinator, concurrency=concurrency, on_progress=on_progress)

    async def check(self, kinds: Iterable[FindingKind] | None = None) -> list[Finding]:
        if not self.is_open:
            raise RuntimeError("Library is not open. Call await library.open() first.")
        return await self.checker.run(self.coordinator, kinds)

    async def repair(
        self,
        findings: Iterable[Finding] | None = None,
        *,
        policy: RepairPolicy | None = None,
        concurrency: int = 4,
        on_progress: ProgressCallback | None = None,
    ) -> BatchOutcome:
        """Repair the given findings (a fresh check when None) under `policy`."""
        policy = policy or RepairPolicy()
        if findings is None:
            findings = await self.check(policy.kinds)
        items = self.planner.plan_repairs(findings, policy)
        logger.info("Planned %d repairs", len(items))
        engine = self.housekeeping(concurrency=concurrency, on_progress=on_progress)
        return await engine.run(items)

    async def find_track_file_issues(self, *, concurrency: int = 4) -> list[TrackFileIssue]:
        return await find_track_file_issues(
            self.coordinator, self.tracks, self.library_dir, concurrency=concurrency
        )

    async def upgrade(self, *, chunk_size: int = 128) -> batch.UpgradeResult:
        """Upgrade to the latest schema and rebuild the repositories for it."""
        result = await batch.upgrade_schema(
            self.coordinator, self.information, self.maintenance, chunk_size=chunk_size
        )
        await self._load()
        return result

    async def optimize(self) -> None:
        await batch.optimize_library(self.coordinator, self.maintenance)

    async def housekeep(
        self,
        settings: batch.ShrinkSettings | None = None,
        *,
        concurrency: int = 4,
        on_progress: ProgressCallback | None = None,
    ) -> batch.HousekeepingReport:
        engine = self.housekeeping(concurrency=concurrency, on_progress=on_progress)
        return await batch.housekeep(engine, self.artwork, self.maintenance, settings)

    async def import_playlist(
        self,
        crate_path: str,
        files: Sequence[Path],
        *,
        mode: ImportMode = ImportMode.APPEND,
    ) -> ImportResult:
        """Add the tracks behind `files` (see `playlists.read_m3u`) to a crate."""
        return await import_playlist(
            self.coordinator,
            crates=self.crates,
            memberships=self.memberships,
            tracks=self.tracks,
            library_dir=self.library_dir,
            crate_path=crate_path,
            files=files,
            mode=mode,
        )
