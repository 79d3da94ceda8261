"""
Consistency checker.

Read-only traversal of a library that reports invariant violations as
`Finding` values. It never mutates state: `check()` is meant to be run
inside a read-only transaction, which the coordinator always rolls back.

Ordering:
- kinds are reported in `KIND_ORDER`
- within a kind, findings are sorted by entity id, then entity type, then detail

Running the checker twice on an unmodified library yields identical lists.
All data is read through the repositories; the checker itself has no SQL.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Iterable
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum

from enginedb.core import InvariantViolationError
from enginedb.core.db.mapper import decode_beat_grid
from enginedb.core.db.models import EntityRef, EntityType
from enginedb.core.images import ImageCheck, ImageValidator, PillowImageValidator
from enginedb.core.repository import (
    ArtworkBlob,
    ArtworkRepository,
    CrateRepository,
    CuePointRepository,
    MembershipRepository,
    PerformanceDataRepository,
    TrackRepository,
)
from enginedb.core.transaction import Transaction, TransactionCoordinator

logger = logging.getLogger(__name__)


class FindingKind(str, Enum):
    DANGLING_REFERENCE = "dangling_reference"
    DUPLICATE_IDENTITY = "duplicate_identity"
    ORDINAL_GAP = "ordinal_gap"
    MALFORMED_BLOB = "malformed_blob"
    CYCLIC_RELATION = "cyclic_relation"


KIND_ORDER: tuple[FindingKind, ...] = tuple(FindingKind)


@dataclass(frozen=True, slots=True)
class Finding:
    """
    One detected integrity violation.

    - `entity_ref`: the row the finding is about (the one a repair touches)
    - `related`: other rows involved (missing target, duplicates, cycle members)
    - `owner`: aggregate the row belongs to, if any (crate of a membership,
      track of a cue point); repairs serialize on it
    """

    kind: FindingKind
    entity_ref: EntityRef
    detail: str
    related: tuple[EntityRef, ...] = ()
    owner: EntityRef | None = None

    @property
    def sort_key(self) -> tuple[int, str, str]:
        return (self.entity_ref.id, self.entity_ref.type.value, self.detail)


def _sorted(findings: Iterable[Finding]) -> list[Finding]:
    return sorted(findings, key=lambda f: f.sort_key)


def _ref(entity_type: EntityType, entity_id: int) -> EntityRef:
    return EntityRef(id=entity_id, type=entity_type)


def find_cycles(parents: dict[int, int | None]) -> list[list[int]]:
    """
    Find every cycle in a parent graph (each node has at most one parent).

    Each cycle is returned once, as its members sorted ascending; the list is
    ordered by the smallest member.
    """
    done: set[int] = set()
    cycles: list[list[int]] = []
    for start in sorted(parents):
        if start in done:
            continue
        path: list[int] = []
        on_path: dict[int, int] = {}
        node: int | None = start
        while node is not None and node in parents and node not in done:
            if node in on_path:
                cycles.append(sorted(path[on_path[node]:]))
                break
            on_path[node] = len(path)
            path.append(node)
            node = parents[node]
        done.update(path)
    cycles.sort(key=lambda members: members[0])
    return cycles


class ConsistencyChecker:
    """
    Usage:
        checker = ConsistencyChecker(tracks=..., crates=..., ...)
        findings = await checker.run(coordinator)

    `validator` is the image collaborator used for artwork blobs; blob
    validation runs in threads with at most `concurrency` blobs in flight.
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
        concurrency: int = 4,
    ) -> None:
        self._tracks = tracks
        self._crates = crates
        self._memberships = memberships
        self._cue_points = cue_points
        self._artwork = artwork
        self._performance = performance
        self._validator = validator or PillowImageValidator()
        self._concurrency = max(1, concurrency)

    async def run(
        self, coordinator: TransactionCoordinator, kinds: Iterable[FindingKind] | None = None
    ) -> list[Finding]:
        """Check inside a fresh read-only transaction."""
        return await coordinator.run(lambda tx: self.check(tx, kinds), read_only=True)

    async def check(
        self, tx: Transaction, kinds: Iterable[FindingKind] | None = None
    ) -> list[Finding]:
        return [finding async for finding in self.iter_findings(tx, kinds)]

    async def iter_findings(
        self, tx: Transaction, kinds: Iterable[FindingKind] | None = None
    ) -> AsyncIterator[Finding]:
        selected = set(KIND_ORDER if kinds is None else kinds)
        passes = {
            FindingKind.DANGLING_REFERENCE: self._dangling_references,
            FindingKind.DUPLICATE_IDENTITY: self._duplicate_identities,
            FindingKind.ORDINAL_GAP: self._ordinal_gaps,
            FindingKind.MALFORMED_BLOB: self._malformed_blobs,
            FindingKind.CYCLIC_RELATION: self._cyclic_relations,
        }
        for kind in KIND_ORDER:
            if kind not in selected:
                continue
            findings = await passes[kind](tx)
            logger.debug("%s: %d findings", kind.value, len(findings))
            for finding in findings:
                yield finding

    # -- DanglingReference ---------------------------------------------------

    async def _dangling_references(self, tx: Transaction) -> list[Finding]:
        track_ids = set(await self._tracks.ids(tx))
        crate_ids = set(await self._crates.ids(tx))
        artwork_ids = set(await self._artwork.ids(tx))
        findings: list[Finding] = []

        def _dangling(
            source: EntityRef, target: EntityRef, owner: EntityRef | None = None
        ) -> Finding:
            return Finding(
                kind=FindingKind.DANGLING_REFERENCE,
                entity_ref=source,
                detail=f"{source} references missing {target}",
                related=(target,),
                owner=owner,
            )

        async for membership in self._memberships.find_by(tx, "all"):
            source = _ref(EntityType.MEMBERSHIP, membership.id)
            crate = _ref(EntityType.CRATE, membership.crate_id)
            if membership.crate_id not in crate_ids:
                findings.append(_dangling(source, crate, crate))
            if membership.track_id not in track_ids:
                findings.append(_dangling(source, _ref(EntityType.TRACK, membership.track_id), crate))

        async for cue in self._cue_points.find_by(tx, "all"):
            if cue.track_id not in track_ids:
                target = _ref(EntityType.TRACK, cue.track_id)
                findings.append(_dangling(_ref(EntityType.CUE_POINT, cue.id), target, target))

        async for track_id, _blob in self._performance.stream_raw(tx):
            if track_id not in track_ids:
                target = _ref(EntityType.TRACK, track_id)
                findings.append(
                    _dangling(_ref(EntityType.PERFORMANCE_DATA, track_id), target, target)
                )

        async for track_id, artwork_id in self._tracks.artwork_links(tx):
            if artwork_id not in artwork_ids:
                findings.append(
                    _dangling(_ref(EntityType.TRACK, track_id), _ref(EntityType.ARTWORK, artwork_id))
                )

        async for crate_id, parent_id in self._crates.parent_links(tx):
            if parent_id is not None and parent_id not in crate_ids:
                findings.append(
                    _dangling(_ref(EntityType.CRATE, crate_id), _ref(EntityType.CRATE, parent_id))
                )

        return _sorted(findings)

    # -- DuplicateIdentity ---------------------------------------------------

    async def _duplicate_identities(self, tx: Transaction) -> list[Finding]:
        findings: list[Finding] = []

        cues: dict[tuple[int, int], list[int]] = defaultdict(list)
        async for cue in self._cue_points.find_by(tx, "all"):
            cues[(cue.track_id, cue.index)].append(cue.id)
        for (track_id, index), ids in cues.items():
            if len(ids) < 2:
                continue
            keep, *rest = sorted(ids)
            findings.append(
                Finding(
                    kind=FindingKind.DUPLICATE_IDENTITY,
                    entity_ref=_ref(EntityType.CUE_POINT, keep),
                    detail=f"{len(ids)} cue points share index {index} on track {track_id}",
                    related=tuple(_ref(EntityType.CUE_POINT, i) for i in rest),
                    owner=_ref(EntityType.TRACK, track_id),
                )
            )

        members: dict[tuple[int, int], list[int]] = defaultdict(list)
        async for membership in self._memberships.find_by(tx, "all"):
            members[(membership.crate_id, membership.track_id)].append(membership.id)
        for (crate_id, track_id), ids in members.items():
            if len(ids) < 2:
                continue
            keep, *rest = sorted(ids)
            findings.append(
                Finding(
                    kind=FindingKind.DUPLICATE_IDENTITY,
                    entity_ref=_ref(EntityType.MEMBERSHIP, keep),
                    detail=f"track {track_id} appears {len(ids)} times in crate {crate_id}",
                    related=tuple(_ref(EntityType.MEMBERSHIP, i) for i in rest),
                    owner=_ref(EntityType.CRATE, crate_id),
                )
            )

        return _sorted(findings)

    # -- OrdinalGap ----------------------------------------------------------

    async def _ordinal_gaps(self, tx: Transaction) -> list[Finding]:
        crate_ids = set(await self._crates.ids(tx))
        ordinals: dict[int, list[int]] = defaultdict(list)
        async for membership in self._memberships.find_by(tx, "all"):
            if membership.crate_id in crate_ids:
                ordinals[membership.crate_id].append(membership.ordinal)

        findings = []
        for crate_id, values in ordinals.items():
            values.sort()
            if values == list(range(len(values))):
                continue
            shown = values if len(values) <= 16 else [*values[:16], "..."]
            findings.append(
                Finding(
                    kind=FindingKind.ORDINAL_GAP,
                    entity_ref=_ref(EntityType.CRATE, crate_id),
                    detail=f"ordinals {shown} are not contiguous from 0",
                    owner=_ref(EntityType.CRATE, crate_id),
                )
            )
        return _sorted(findings)

    # -- MalformedBlob -------------------------------------------------------

    async def _malformed_blobs(self, tx: Transaction) -> list[Finding]:
        findings: list[Finding] = []

        semaphore = asyncio.Semaphore(self._concurrency)
        tasks: list[asyncio.Task[tuple[ArtworkBlob, ImageCheck]]] = []

        async def _validate(blob: ArtworkBlob) -> tuple[ArtworkBlob, ImageCheck]:
            try:
                check = await asyncio.to_thread(self._validator.validate, blob.data, blob.format_tag)
            finally:
                semaphore.release()
            return blob, check

        try:
            async with aclosing(self._artwork.blobs(tx)) as blobs:
                async for blob in blobs:
                    # Already flagged rows are left to the vendor application.
                    if blob.is_corrupt or blob.data is None:
                        continue
                    await semaphore.acquire()
                    tasks.append(asyncio.create_task(_validate(blob)))
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for blob, check in results:
            if not check.ok:
                findings.append(
                    Finding(
                        kind=FindingKind.MALFORMED_BLOB,
                        entity_ref=_ref(EntityType.ARTWORK, blob.id),
                        detail=f"artwork blob rejected: {check.reason}",
                    )
                )

        async for track_id, beat_data in self._performance.stream_raw(tx):
            try:
                decode_beat_grid(beat_data)
            except InvariantViolationError as e:
                findings.append(
                    Finding(
                        kind=FindingKind.MALFORMED_BLOB,
                        entity_ref=_ref(EntityType.PERFORMANCE_DATA, track_id),
                        detail=f"beat grid rejected: {e}",
                        owner=_ref(EntityType.TRACK, track_id),
                    )
                )

        return _sorted(findings)

    # -- CyclicRelation ------------------------------------------------------

    async def _cyclic_relations(self, tx: Transaction) -> list[Finding]:
        parents = {crate_id: parent async for crate_id, parent in self._crates.parent_links(tx)}
        findings = []
        for members in find_cycles(parents):
            head, *rest = members
            findings.append(
                Finding(
                    kind=FindingKind.CYCLIC_RELATION,
                    entity_ref=_ref(EntityType.CRATE, head),
                    detail=f"crate parent chain loops through {members}",
                    related=tuple(_ref(EntityType.CRATE, i) for i in rest),
                )
            )
        return _sorted(findings)
