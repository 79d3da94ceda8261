"""
Library-wide batch operations.

Two styles are used here, depending on what the operation needs:

- Work-item builders (`purge_unused_artwork_items`, `delete_empty_crate_items`)
  produce `WorkItem`s for the housekeeping engine: one small transaction per
  row, per-item failure isolation.
- Chunked jobs (`shrink_artwork`, `upgrade_schema`) walk a whole table in id
  order through `TransactionCoordinator.run_chunked`, so an interrupted run
  resumes from its checkpoint instead of starting over.

`housekeep` chains purge, shrink and optimize.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Sequence
from dataclasses import dataclass

from enginedb.core import CoreError, RepairFailure
from enginedb.core.db import schema
from enginedb.core.db.models import ArtworkFormat, EntityType, SchemaVersion
from enginedb.core.housekeeping import BatchOutcome, HousekeepingEngine, ItemStatus, WorkItem
from enginedb.core.images import LOSSLESS_FORMATS, EncodedImage, encode_jpeg
from enginedb.core.repository import (
    ArtworkBlob,
    ArtworkRepository,
    CrateRepository,
    InformationRepository,
    LibraryMaintenance,
)
from enginedb.core.transaction import Transaction, TransactionCoordinator

logger = logging.getLogger(__name__)

SHRINK_TASK = "shrink-artwork"
UPGRADE_TASK = "upgrade-3.0"


# ---------------------------------------------------------------------------
# Work-item builders
# ---------------------------------------------------------------------------


async def purge_unused_artwork_items(
    coordinator: TransactionCoordinator, artwork: ArtworkRepository
) -> list[WorkItem]:
    """One item per artwork row that no track references."""
    unused = await coordinator.run(artwork.unused_ids, read_only=True)

    def _purge(artwork_id: int) -> WorkItem:
        async def _action(tx: Transaction) -> ItemStatus:
            if not await artwork.exists(tx, artwork_id):
                return ItemStatus.SKIPPED
            if await artwork.reference_count(tx, artwork_id):
                return ItemStatus.SKIPPED
            await artwork.delete(tx, artwork_id)
            return ItemStatus.SUCCEEDED

        return WorkItem(key=f"purge:artwork:{artwork_id}", action=_action, lock_key=f"artwork:{artwork_id}")

    logger.info("Found %d unused artwork rows", len(unused))
    return [_purge(artwork_id) for artwork_id in unused]


async def delete_empty_crate_items(
    coordinator: TransactionCoordinator, crates: CrateRepository
) -> list[WorkItem]:
    """
    One item per crate without tracks and without child crates.

    Parents that become empty once their children are gone are left for the
    next run.
    """
    empty = await coordinator.run(crates.find_empty, read_only=True)

    def _delete(crate_id: int) -> WorkItem:
        async def _action(tx: Transaction) -> ItemStatus:
            if not await crates.exists(tx, crate_id) or not await crates.is_empty(tx, crate_id):
                return ItemStatus.SKIPPED
            await crates.delete(tx, crate_id)
            return ItemStatus.SUCCEEDED

        return WorkItem(key=f"delete:crate:{crate_id}", action=_action, lock_key=f"crate:{crate_id}")

    logger.info("Found %d empty crates", len(empty))
    return [_delete(crate_id) for crate_id in empty]


# ---------------------------------------------------------------------------
# Artwork shrinking
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ShrinkSettings:
    quality: int = 70
    # Keep the JPEG only if it is at most this fraction of the original size
    max_ratio: float = 0.75
    chunk_size: int = 128
    concurrency: int = 4


@dataclass(frozen=True, slots=True)
class _Converted:
    blob: ArtworkBlob
    image: EncodedImage | None = None
    error: BaseException | None = None


def _convert(blob: ArtworkBlob, quality: int) -> _Converted:
    try:
        return _Converted(blob, image=encode_jpeg(blob.data or b"", quality=quality))
    except Exception as e:
        return _Converted(blob, error=e)


async def shrink_artwork(
    coordinator: TransactionCoordinator,
    artwork: ArtworkRepository,
    settings: ShrinkSettings | None = None,
    *,
    dry_run: bool = False,
) -> BatchOutcome:
    """
    Re-encode lossless artwork (PNG, BMP, TGA) as JPEG when that saves space.

    JPEG and other formats, empty blobs and rows flagged corrupt are skipped.
    The content hash is left untouched. Conversion failures are recorded per
    row; the rest of the chunk still commits.
    """
    settings = settings or ShrinkSettings()
    outcome = BatchOutcome()
    semaphore = asyncio.Semaphore(max(1, settings.concurrency))

    async def _convert_bounded(blob: ArtworkBlob) -> _Converted:
        async with semaphore:
            return await asyncio.to_thread(_convert, blob, settings.quality)

    async def _process(tx: Transaction, ids: Sequence[int]) -> BatchOutcome:
        # Counted into `outcome` only once the chunk has committed
        tally = BatchOutcome()
        candidates: list[ArtworkBlob] = []
        for artwork_id in ids:
            blob = await artwork.blob(tx, artwork_id)
            if blob is None or blob.data is None or blob.is_corrupt:
                tally.skipped += 1
                continue
            tag = (blob.format_tag or "").lower()
            if tag not in {f.value for f in LOSSLESS_FORMATS}:
                logger.debug("Skipping artwork %d with format %s", artwork_id, tag or "unknown")
                tally.skipped += 1
                continue
            candidates.append(blob)

        for converted in await asyncio.gather(*(_convert_bounded(b) for b in candidates)):
            blob = converted.blob
            if converted.error is not None:
                logger.warning("Failed to re-encode artwork %d as JPEG: %s", blob.id, converted.error)
                tally.failures.append(RepairFailure(f"shrink:artwork:{blob.id}", converted.error))
                continue

            image = converted.image
            if image is None:
                continue
            old_size = len(blob.data or b"")
            ratio = len(image.data) / old_size
            if ratio > settings.max_ratio:
                logger.debug("Keeping artwork %d: JPEG would be %.1f%%", blob.id, ratio * 100.0)
                tally.skipped += 1
                continue

            if not dry_run:
                await artwork.replace_image(
                    tx, blob.id, image.data, ArtworkFormat.JPEG, image.width, image.height
                )
            logger.info(
                "Converted artwork %d from %s to JPEG: %.1f%%",
                blob.id,
                (blob.format_tag or "").upper(),
                ratio * 100.0,
            )
            tally.succeeded += 1
        return tally

    async def _scan(tx: Transaction) -> None:
        # Dry run: single read-only pass, no checkpoint
        after: int | None = None
        while ids := await artwork.ids_after(tx, after, settings.chunk_size):
            outcome.merge(await _process(tx, ids))
            after = ids[-1]

    try:
        if dry_run:
            await coordinator.run(_scan, read_only=True)
        else:
            await coordinator.run_chunked(
                SHRINK_TASK,
                EntityType.ARTWORK,
                artwork.ids_after,
                _process,
                chunk_size=settings.chunk_size,
                on_commit=outcome.merge,
            )
    except CoreError as e:
        # Committed chunks stay; a re-run resumes from the checkpoint
        logger.error("Shrink artwork aborted: %s", e)
        outcome.aborted_error = e

    logger.info("Shrink artwork: %s", outcome.summary())
    return outcome


# ---------------------------------------------------------------------------
# Schema upgrade 2.20 -> 3.0
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class UpgradeResult:
    from_version: SchemaVersion
    to_version: SchemaVersion
    altered_tables: tuple[str, ...]
    backfilled: int


async def upgrade_schema(
    coordinator: TransactionCoordinator,
    information: InformationRepository,
    maintenance: LibraryMaintenance,
    *,
    chunk_size: int = 128,
    timestamp: int | None = None,
) -> UpgradeResult:
    """
    Upgrade a 2.20 library to 3.0.

    Steps, each committed on its own:
    1. add the `lastEditTime` columns (skipped where already present)
    2. backfill `lastEditTime` for tracks and crates in checkpointed chunks
    3. record the new version in the `Information` row

    Safe to re-run after an interruption; finished steps are no-ops.
    """
    info = await coordinator.run(information.load, read_only=True)
    if info is None:
        raise CoreError("library has no Information row")
    current = info.schema_version
    target = schema.LATEST_VERSION
    if (current.major, current.minor) == (target.major, target.minor):
        logger.info("Library already at schema %s", current)
        return UpgradeResult(current, current, (), 0)
    if not schema.is_supported(current):
        schema.layouts_for(current)  # raises SchemaMismatchError

    altered = await coordinator.run(maintenance.add_edit_time_columns)
    stamp = int(time.time()) if timestamp is None else timestamp

    backfilled = 0
    for table, entity_type in ((schema.TRACK, EntityType.TRACK), (schema.PLAYLIST, EntityType.CRATE)):

        async def _fetch(tx: Transaction, after: int | None, limit: int, table: str = table) -> list[int]:
            return await maintenance.ids_without_edit_time(tx, table, after, limit)

        async def _fill(tx: Transaction, ids: Sequence[int], table: str = table) -> None:
            await maintenance.backfill_edit_time(tx, table, ids, stamp)

        run = await coordinator.run_chunked(
            UPGRADE_TASK, entity_type, _fetch, _fill, chunk_size=chunk_size
        )
        backfilled += run.processed

    async def _bump(tx: Transaction) -> None:
        await information.set_schema_version(tx, info.id, target)

    await coordinator.run(_bump)
    logger.info(
        "Upgraded library from %s to %s (%d rows backfilled)", current, target, backfilled
    )
    return UpgradeResult(current, target, tuple(altered), backfilled)


async def optimize_library(
    coordinator: TransactionCoordinator, maintenance: LibraryMaintenance
) -> None:
    """Rebuild the database file and refresh planner statistics."""
    await coordinator.autocommit(maintenance.optimize)
    logger.info("Optimized database %s", coordinator.pool.db_path)


# ---------------------------------------------------------------------------
# Combined housekeeping
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class HousekeepingReport:
    purged: BatchOutcome
    shrunk: BatchOutcome | None = None
    optimized: bool = False
    optimize_error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return (
            self.purged.ok
            and self.shrunk is not None
            and self.shrunk.ok
            and self.optimized
        )

    def summary(self) -> str:
        lines = [f"purge unused artwork: {self.purged.summary()}"]
        if self.shrunk is not None:
            lines.append(f"shrink artwork: {self.shrunk.summary()}")
        if self.optimized:
            lines.append("optimize: done")
        elif self.optimize_error is not None:
            lines.append(f"optimize: failed ({self.optimize_error})")
        return "\n".join(lines)


async def housekeep(
    engine: HousekeepingEngine,
    artwork: ArtworkRepository,
    maintenance: LibraryMaintenance,
    settings: ShrinkSettings | None = None,
) -> HousekeepingReport:
    """
    Purge unused artwork, shrink what is left, then optimize the file.

    A cancelled or aborted purge stops the sequence. Shrinking problems are
    reported but do not prevent the optimize step.
    """
    coordinator = engine.coordinator
    logger.info("Housekeeping: purging unused artwork")
    items = await purge_unused_artwork_items(coordinator, artwork)
    report = HousekeepingReport(purged=await engine.run(items))
    if report.purged.cancelled or report.purged.aborted_error is not None:
        return report

    logger.info("Housekeeping: shrinking artwork")
    report.shrunk = await shrink_artwork(coordinator, artwork, settings)

    logger.info("Housekeeping: optimizing")
    try:
        await optimize_library(coordinator, maintenance)
        report.optimized = True
    except (CoreError, sqlite3.Error) as e:
        logger.warning("Failed to optimize database: %s", e)
        report.optimize_error = e
    logger.info("Finished housekeeping")
    return report
