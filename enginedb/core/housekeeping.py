"""
Housekeeping engine: bounded concurrent execution of work items.

A work item is a keyed action that receives its own transaction. The engine:
- runs at most `concurrency` items at a time (dispatch suspends at the bound)
- serializes items that share a `lock_key` (e.g. `crate:12`)
- isolates failures: an exception inside one item rolls back that item only
  and is recorded as a `RepairFailure`
- stops dispatching on fatal errors (schema mismatch, pool exhaustion) and
  reports the run as aborted

Repairs for checker findings are planned by `RepairPlanner.plan_repairs()`.
Every repair action re-validates its condition inside its own transaction
and returns `ItemStatus.SKIPPED` if the problem is already gone.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterable, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from enginedb.core import (
    CoreError,
    InvariantViolationError,
    PoolExhaustedError,
    RepairFailure,
    SchemaMismatchError,
)
from enginedb.core.checker import Finding, FindingKind
from enginedb.core.db.mapper import decode_beat_grid
from enginedb.core.db.models import EntityType
from enginedb.core.images import ImageValidator, PillowImageValidator
from enginedb.core.repository import (
    ArtworkRepository,
    CrateRepository,
    CuePointRepository,
    MembershipRepository,
    PerformanceDataRepository,
    TrackRepository,
)
from enginedb.core.transaction import Transaction, TransactionCoordinator

logger = logging.getLogger(__name__)

# Errors that make continuing pointless for every remaining item
FATAL_ERRORS: tuple[type[BaseException], ...] = (SchemaMismatchError, PoolExhaustedError)


class ItemStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"


Action = Callable[[Transaction], Awaitable[ItemStatus]]


@dataclass(frozen=True, slots=True)
class WorkItem:
    key: str
    action: Action
    lock_key: str | None = None


@dataclass(slots=True)
class BatchOutcome:
    """Aggregate report of one housekeeping run."""

    succeeded: int = 0
    skipped: int = 0
    failures: list[RepairFailure] = field(default_factory=list)
    cancelled: bool = False
    aborted_error: BaseException | None = None

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def completed(self) -> int:
        return self.succeeded + self.skipped + self.failed

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cancelled and self.aborted_error is None

    def merge(self, other: BatchOutcome) -> None:
        """Add the counts and failures of `other` to this outcome."""
        self.succeeded += other.succeeded
        self.skipped += other.skipped
        self.failures.extend(other.failures)

    def summary(self) -> str:
        text = f"{self.succeeded} succeeded, {self.skipped} skipped, {self.failed} failed"
        if self.cancelled:
            text += " (cancelled)"
        if self.aborted_error is not None:
            text += f" (aborted: {self.aborted_error})"
        return text


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    key: str
    status: ItemStatus | None
    error: BaseException | None
    succeeded: int
    skipped: int
    failed: int


ProgressCallback = Callable[[ProgressEvent], None]


class HousekeepingEngine:
    """
    Usage:
        engine = HousekeepingEngine(coordinator, concurrency=4)
        outcome = await engine.run(items)

    `cancel()` stops dispatching new items. Items already running finish (or
    roll back) normally; the outcome is flagged `cancelled`.
    """

    def __init__(
        self,
        coordinator: TransactionCoordinator,
        *,
        concurrency: int = 4,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._coordinator = coordinator
        self._concurrency = concurrency
        self._on_progress = on_progress
        self._cancel_requested = False
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def coordinator(self) -> TransactionCoordinator:
        return self._coordinator

    @property
    def concurrency(self) -> int:
        return self._concurrency

    def cancel(self) -> None:
        """Stop dispatching; pending items never start."""
        self._cancel_requested = True

    def _lock_for(self, lock_key: str | None) -> contextlib.AbstractAsyncContextManager[object]:
        if lock_key is None:
            return contextlib.nullcontext()
        lock = self._locks.get(lock_key)
        if lock is None:
            lock = self._locks[lock_key] = asyncio.Lock()
        return lock

    async def run(self, items: Iterable[WorkItem] | AsyncIterable[WorkItem]) -> BatchOutcome:
        """
        Execute all items and return the aggregate outcome.

        Per-item errors never escape. If the task running this coroutine is
        cancelled, in-flight items are awaited before the cancellation
        propagates.
        """
        self._cancel_requested = False
        self._locks = {}
        outcome = BatchOutcome()
        slots = asyncio.Semaphore(self._concurrency)
        in_flight: set[asyncio.Task[None]] = set()

        async def _dispatch(item: WorkItem) -> bool:
            if self._cancel_requested or outcome.aborted_error is not None:
                return False
            await slots.acquire()
            if self._cancel_requested or outcome.aborted_error is not None:
                slots.release()
                return False
            task = asyncio.create_task(self._run_item(item, outcome, slots))
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
            return True

        try:
            if isinstance(items, AsyncIterable):
                async for item in items:
                    if not await _dispatch(item):
                        break
            else:
                for item in items:
                    if not await _dispatch(item):
                        break
            if in_flight:
                await asyncio.wait(set(in_flight))
        except asyncio.CancelledError:
            outcome.cancelled = True
            if in_flight:
                logger.info("Run cancelled; waiting for %d in-flight items", len(in_flight))
                await asyncio.wait(set(in_flight))
            raise

        if self._cancel_requested:
            outcome.cancelled = True
        if outcome.aborted_error is not None:
            logger.error("Housekeeping aborted: %s", outcome.aborted_error)
        logger.info("Housekeeping finished: %s", outcome.summary())
        return outcome

    async def _run_item(
        self, item: WorkItem, outcome: BatchOutcome, slots: asyncio.Semaphore
    ) -> None:
        status: ItemStatus | None = None
        error: BaseException | None = None
        try:
            async with self._lock_for(item.lock_key):
                result = await self._coordinator.run(item.action)
            status = ItemStatus.SUCCEEDED if result is None else ItemStatus(result)
        except FATAL_ERRORS as e:
            error = e
            if outcome.aborted_error is None:
                outcome.aborted_error = e
            outcome.failures.append(RepairFailure(item.key, e))
            logger.error("Item %s hit a fatal error: %s", item.key, e)
        except Exception as e:
            error = e
            outcome.failures.append(RepairFailure(item.key, e))
            logger.warning("Item %s failed: %s: %s", item.key, type(e).__name__, e)
        finally:
            slots.release()

        if status is ItemStatus.SUCCEEDED:
            outcome.succeeded += 1
        elif status is ItemStatus.SKIPPED:
            outcome.skipped += 1
        logger.debug("Item %s: %s", item.key, status.value if status else "failed")

        if self._on_progress is not None:
            self._on_progress(
                ProgressEvent(
                    key=item.key,
                    status=status,
                    error=error,
                    succeeded=outcome.succeeded,
                    skipped=outcome.skipped,
                    failed=outcome.failed,
                )
            )


# ---------------------------------------------------------------------------
# Repair planning
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RepairPolicy:
    """Which finding kinds are repaired; everything else is only reported."""

    kinds: frozenset[FindingKind] = frozenset(FindingKind)

    @classmethod
    def only(cls, *kinds: FindingKind) -> RepairPolicy:
        return cls(kinds=frozenset(kinds))

    @classmethod
    def from_names(cls, names: Iterable[str]) -> RepairPolicy:
        """Build from kind values, e.g. `["dangling_reference", "ordinal_gap"]`."""
        kinds = set()
        for name in names:
            try:
                kinds.add(FindingKind(name.strip().lower().replace("-", "_")))
            except ValueError:
                valid = ", ".join(k.value for k in FindingKind)
                raise ValueError(f"unknown repair kind {name!r} (expected: {valid})") from None
        return cls(kinds=frozenset(kinds))

    def allows(self, kind: FindingKind) -> bool:
        return kind in self.kinds


class RepairPlanner:
    """
    Maps findings to work items.

    Policy per kind (conservative and data preserving):
    - DanglingReference: delete the referencing join row (membership, cue
      point, performance data) or clear the nullable foreign key (track
      artwork, crate parent). Targets are never fabricated.
    - DuplicateIdentity: keep the lowest id, delete the rest.
    - OrdinalGap: renumber contiguously, preserving (ordinal, id) order.
    - CyclicRelation: detach the reported crate from its parent.
    - MalformedBlob: mark artwork corrupt and null the tracks' references;
      clear a malformed beat grid.
    """

    def __init__(
        self,
        *,
        tracks: TrackRepository,
        crates: CrateRepository,
        memberships: MembershipRepository,
        cue_points: CuePointRepository,
        artwork: ArtworkRepository,
        performance: PerformanceDataRepository,
        validator: ImageValidator | None = None,
    ) -> None:
        self._tracks = tracks
        self._crates = crates
        self._memberships = memberships
        self._cue_points = cue_points
        self._artwork = artwork
        self._performance = performance
        self._validator = validator or PillowImageValidator()

    def plan_repairs(
        self, findings: Iterable[Finding], policy: RepairPolicy | None = None
    ) -> list[WorkItem]:
        policy = policy or RepairPolicy()
        items = []
        for finding in findings:
            if not policy.allows(finding.kind):
                continue
            items.append(self.plan(finding))
        return items

    def plan(self, finding: Finding) -> WorkItem:
        ref = finding.entity_ref
        key = f"{finding.kind.value}:{ref}"
        if finding.related and finding.kind is FindingKind.DANGLING_REFERENCE:
            key = f"{key}->{finding.related[0]}"
        handler = {
            FindingKind.DANGLING_REFERENCE: self._dangling,
            FindingKind.DUPLICATE_IDENTITY: self._duplicate,
            FindingKind.ORDINAL_GAP: self._ordinal_gap,
            FindingKind.CYCLIC_RELATION: self._cycle,
            FindingKind.MALFORMED_BLOB: self._malformed,
        }[finding.kind]
        action, lock_key = handler(finding)
        return WorkItem(key=key, action=action, lock_key=lock_key)

    @staticmethod
    def _unsupported(finding: Finding) -> CoreError:
        return CoreError(
            f"no repair for {finding.kind.value} on {finding.entity_ref.type.value}"
        )

    # -- DanglingReference ---------------------------------------------------

    def _dangling(self, finding: Finding) -> tuple[Action, str | None]:
        ref = finding.entity_ref
        owner_key = str(finding.owner) if finding.owner is not None else None

        if ref.type is EntityType.MEMBERSHIP:

            async def _delete_membership(tx: Transaction) -> ItemStatus:
                membership = await self._memberships.get(tx, ref.id)
                if membership is None:
                    return ItemStatus.SKIPPED
                crate_ok = await self._crates.exists(tx, membership.crate_id)
                track_ok = await self._tracks.exists(tx, membership.track_id)
                if crate_ok and track_ok:
                    return ItemStatus.SKIPPED
                await self._memberships.delete_ids(tx, [ref.id])
                if crate_ok:
                    await self._memberships.renumber(tx, membership.crate_id)
                return ItemStatus.SUCCEEDED

            return _delete_membership, owner_key

        if ref.type is EntityType.CUE_POINT:

            async def _delete_cue(tx: Transaction) -> ItemStatus:
                cue = await self._cue_points.get(tx, ref.id)
                if cue is None or await self._tracks.exists(tx, cue.track_id):
                    return ItemStatus.SKIPPED
                await self._cue_points.delete(tx, ref.id)
                return ItemStatus.SUCCEEDED

            return _delete_cue, owner_key

        if ref.type is EntityType.PERFORMANCE_DATA:

            async def _delete_performance(tx: Transaction) -> ItemStatus:
                if not await self._performance.exists(tx, ref.id):
                    return ItemStatus.SKIPPED
                if await self._tracks.exists(tx, ref.id):
                    return ItemStatus.SKIPPED
                await self._performance.delete(tx, ref.id)
                return ItemStatus.SUCCEEDED

            return _delete_performance, owner_key

        if ref.type is EntityType.TRACK:

            async def _clear_artwork(tx: Transaction) -> ItemStatus:
                artwork_id = await self._tracks.artwork_of(tx, ref.id)
                if artwork_id is None or await self._artwork.exists(tx, artwork_id):
                    return ItemStatus.SKIPPED
                await self._tracks.clear_artwork(tx, ref.id)
                return ItemStatus.SUCCEEDED

            return _clear_artwork, f"track:{ref.id}"

        if ref.type is EntityType.CRATE:

            async def _clear_parent(tx: Transaction) -> ItemStatus:
                if not await self._crates.exists(tx, ref.id):
                    return ItemStatus.SKIPPED
                parent_id = await self._crates.parent_of(tx, ref.id)
                if parent_id is None or await self._crates.exists(tx, parent_id):
                    return ItemStatus.SKIPPED
                await self._crates.set_parent(tx, ref.id, None)
                return ItemStatus.SUCCEEDED

            return _clear_parent, f"crate:{ref.id}"

        raise self._unsupported(finding)

    # -- DuplicateIdentity ---------------------------------------------------

    def _duplicate(self, finding: Finding) -> tuple[Action, str | None]:
        ref = finding.entity_ref
        owner_key = str(finding.owner) if finding.owner is not None else None

        if ref.type is EntityType.CUE_POINT:

            async def _dedupe_cues(tx: Transaction) -> ItemStatus:
                cue = await self._cue_points.get(tx, ref.id)
                if cue is None:
                    return ItemStatus.SKIPPED
                ids = await self._cue_points.ids_with_index(tx, cue.track_id, cue.index)
                if len(ids) < 2:
                    return ItemStatus.SKIPPED
                for cue_id in ids[1:]:
                    await self._cue_points.delete(tx, cue_id)
                return ItemStatus.SUCCEEDED

            return _dedupe_cues, owner_key

        if ref.type is EntityType.MEMBERSHIP:

            async def _dedupe_memberships(tx: Transaction) -> ItemStatus:
                membership = await self._memberships.get(tx, ref.id)
                if membership is None:
                    return ItemStatus.SKIPPED
                ids = await self._memberships.ids_for_track_in_crate(
                    tx, membership.crate_id, membership.track_id
                )
                if len(ids) < 2:
                    return ItemStatus.SKIPPED
                await self._memberships.delete_ids(tx, ids[1:])
                await self._memberships.renumber(tx, membership.crate_id)
                return ItemStatus.SUCCEEDED

            return _dedupe_memberships, owner_key

        raise self._unsupported(finding)

    # -- OrdinalGap ----------------------------------------------------------

    def _ordinal_gap(self, finding: Finding) -> tuple[Action, str | None]:
        crate_id = finding.entity_ref.id

        async def _renumber(tx: Transaction) -> ItemStatus:
            changed = await self._memberships.renumber(tx, crate_id)
            return ItemStatus.SUCCEEDED if changed else ItemStatus.SKIPPED

        return _renumber, f"crate:{crate_id}"

    # -- CyclicRelation ------------------------------------------------------

    def _cycle(self, finding: Finding) -> tuple[Action, str | None]:
        crate_id = finding.entity_ref.id

        async def _detach(tx: Transaction) -> ItemStatus:
            seen: set[int] = set()
            current = await self._crates.parent_of(tx, crate_id)
            while current is not None and current not in seen:
                if current == crate_id:
                    await self._crates.set_parent(tx, crate_id, None)
                    return ItemStatus.SUCCEEDED
                seen.add(current)
                current = await self._crates.parent_of(tx, current)
            return ItemStatus.SKIPPED

        # Parent links are shared state across the whole cycle.
        return _detach, "crate-tree"

    # -- MalformedBlob -------------------------------------------------------

    def _malformed(self, finding: Finding) -> tuple[Action, str | None]:
        ref = finding.entity_ref

        if ref.type is EntityType.ARTWORK:

            async def _quarantine(tx: Transaction) -> ItemStatus:
                blob = await self._artwork.blob(tx, ref.id)
                if blob is None or blob.is_corrupt or blob.data is None:
                    return ItemStatus.SKIPPED
                check = await asyncio.to_thread(
                    self._validator.validate, blob.data, blob.format_tag
                )
                if check.ok:
                    return ItemStatus.SKIPPED
                await self._artwork.mark_corrupt(tx, ref.id)
                detached = await self._artwork.detach(tx, ref.id)
                logger.info("Artwork %d marked corrupt, %d tracks detached", ref.id, detached)
                return ItemStatus.SUCCEEDED

            return _quarantine, f"artwork:{ref.id}"

        if ref.type is EntityType.PERFORMANCE_DATA:

            async def _clear_beat_grid(tx: Transaction) -> ItemStatus:
                blob = await self._performance.get_blob(tx, ref.id)
                try:
                    decode_beat_grid(blob)
                except InvariantViolationError:
                    await self._performance.clear(tx, ref.id)
                    return ItemStatus.SUCCEEDED
                return ItemStatus.SKIPPED

            return _clear_beat_grid, f"track:{ref.id}"

        raise self._unsupported(finding)
