"""
Entity repositories: the only layer that issues SQL against a library.

Design:
- Every operation takes an active `Transaction`; repositories never open
  connections or transactions themselves.
- `find_by(tx, relation, key)` returns an async iterator backed by a
  streaming cursor. Relations with a natural ordering always honor it.
- SQL text is assembled once per repository from the declared layout
  constants in `enginedb.core.db.schema`; values are always bound.
- Conflict checks run inside the caller's transaction. Writers hold
  `BEGIN IMMEDIATE`, so check-then-write is not racy.

Important:
- Entities returned here are projections of the current transaction only.
  Callers re-fetch after a commit instead of reusing them.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from enginedb.core import (
    ConflictError,
    InvariantViolationError,
    NotFoundError,
    ReferentialViolationError,
    SchemaMismatchError,
)
from enginedb.core.db import schema
from enginedb.core.db.mapper import SchemaMapper, encode_beat_grid
from enginedb.core.db.models import (
    Artwork,
    ArtworkFormat,
    BeatMarker,
    Crate,
    CuePoint,
    EntityType,
    LibraryInformation,
    Membership,
    SchemaVersion,
    Track,
)

if TYPE_CHECKING:
    from enginedb.core.transaction import Transaction

logger = logging.getLogger(__name__)

E = TypeVar("E")


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class _EntityRepository(Generic[E]):
    """Shared plumbing for repositories keyed by an integer primary key."""

    table: ClassVar[str]
    entity: ClassVar[str]
    relations: ClassVar[tuple[str, ...]] = ("all",)

    def __init__(self, mapper: SchemaMapper) -> None:
        self._mapper = mapper
        self._layout = mapper.layout(self.table)
        key = self._layout.key

        self._sql_select = self._layout.select_sql
        self._sql_by_id = f'{self._sql_select} WHERE "{key}" = ?'
        self._sql_all = f'{self._sql_select} ORDER BY "{key}"'
        self._sql_exists = f'SELECT 1 FROM "{self.table}" WHERE "{key}" = ?'
        self._sql_count = f'SELECT COUNT(*) FROM "{self.table}"'
        self._sql_ids = f'SELECT "{key}" FROM "{self.table}" ORDER BY "{key}"'
        self._sql_ids_after = (
            f'SELECT "{key}" FROM "{self.table}" WHERE "{key}" > ? ORDER BY "{key}" LIMIT ?'
        )
        self._sql_ids_first = f'SELECT "{key}" FROM "{self.table}" ORDER BY "{key}" LIMIT ?'
        self._sql_delete = f'DELETE FROM "{self.table}" WHERE "{key}" = ?'

    async def _decode(self, tx: Transaction, row: Any) -> E:
        raise NotImplementedError

    async def _stream(self, tx: Transaction, sql: str, params: Sequence[Any] = ()) -> AsyncIterator[E]:
        async with aclosing(tx.stream(sql, params)) as rows:
            async for row in rows:
                yield await self._decode(tx, row)

    def _require_relation(self, relation: str) -> None:
        if relation not in self.relations:
            raise ValueError(
                f"unknown relation {relation!r} for {self.entity} "
                f"(expected one of: {', '.join(self.relations)})"
            )

    async def get(self, tx: Transaction, entity_id: int) -> E | None:
        row = await tx.fetch_one(self._sql_by_id, (entity_id,))
        if row is None:
            return None
        return await self._decode(tx, row)

    async def get_required(self, tx: Transaction, entity_id: int) -> E:
        entity = await self.get(tx, entity_id)
        if entity is None:
            raise NotFoundError(self.entity, entity_id)
        return entity

    async def exists(self, tx: Transaction, entity_id: int) -> bool:
        return await tx.fetch_one(self._sql_exists, (entity_id,)) is not None

    async def count(self, tx: Transaction) -> int:
        return int(await tx.fetch_value(self._sql_count))

    async def ids(self, tx: Transaction) -> list[int]:
        """All primary keys in ascending order."""
        return [row[0] for row in await tx.fetch_all(self._sql_ids)]

    async def ids_after(self, tx: Transaction, after: int | None, limit: int) -> list[int]:
        """Next `limit` primary keys greater than `after` (ascending)."""
        if after is None:
            rows = await tx.fetch_all(self._sql_ids_first, (limit,))
        else:
            rows = await tx.fetch_all(self._sql_ids_after, (after, limit))
        return [row[0] for row in rows]

    async def _require_exists(self, tx: Transaction, entity_id: int | None) -> int:
        if entity_id is None:
            raise InvariantViolationError(f"{self.entity} has no id")
        if not await self.exists(tx, entity_id):
            raise NotFoundError(self.entity, entity_id)
        return entity_id

    async def _insert_row(self, tx: Transaction, row: dict[str, Any]) -> int:
        key = self._layout.key
        if row.get(key) is not None:
            if await self.exists(tx, row[key]):
                raise ConflictError(f"{self.entity} {row[key]} already exists")
            return await tx.insert(self._layout.insert_with_key_sql, row)
        params = {c: row[c] for c in self._layout.data_columns}
        return await tx.insert(self._layout.insert_sql, params)

    async def _update_row(self, tx: Transaction, row: dict[str, Any]) -> None:
        await tx.execute(self._layout.update_sql, row)


# ---------------------------------------------------------------------------
# Library information
# ---------------------------------------------------------------------------


class InformationRepository:
    """Access to the single `Information` row; usable before the version is known."""

    _SQL_SELECT = f"{schema.INFORMATION_LAYOUT.select_sql} ORDER BY \"id\" LIMIT 2"
    _SQL_BY_ID = f"{schema.INFORMATION_LAYOUT.select_sql} WHERE \"id\" = ?"
    _SQL_SET_VERSION = (
        'UPDATE "Information" SET "schemaVersionMajor" = ?, "schemaVersionMinor" = ?, '
        '"schemaVersionPatch" = ? WHERE "id" = ?'
    )

    async def load(self, tx: Transaction) -> LibraryInformation | None:
        """
        Load library information.

        Returns None when the table is empty; more than one row is a schema
        mismatch (the engine cannot tell which one is authoritative).
        """
        rows = await tx.fetch_all(self._SQL_SELECT)
        if len(rows) > 1:
            raise SchemaMismatchError(schema.INFORMATION, None, "expected exactly one row")
        if not rows:
            return None
        return SchemaMapper.decode_information(rows[0])

    async def get(self, tx: Transaction, info_id: int) -> LibraryInformation | None:
        row = await tx.fetch_one(self._SQL_BY_ID, (info_id,))
        return None if row is None else SchemaMapper.decode_information(row)

    async def get_required(self, tx: Transaction, info_id: int) -> LibraryInformation:
        info = await self.get(tx, info_id)
        if info is None:
            raise NotFoundError("information", info_id)
        return info

    async def update(self, tx: Transaction, info: LibraryInformation) -> None:
        """Rewrite uuid, version and played counter of an existing row."""
        row = SchemaMapper.encode_information(info)
        if await tx.execute(schema.INFORMATION_LAYOUT.update_sql, row) == 0:
            raise NotFoundError("information", info.id)

    async def set_schema_version(
        self, tx: Transaction, info_id: int, version: SchemaVersion
    ) -> None:
        changed = await tx.execute(
            self._SQL_SET_VERSION, (version.major, version.minor, version.patch, info_id)
        )
        if changed == 0:
            raise NotFoundError("information", info_id)


# ---------------------------------------------------------------------------
# Performance data (beat grids)
# ---------------------------------------------------------------------------


class PerformanceDataRepository:
    """Beat grid blobs keyed by track id."""

    _SQL_GET = 'SELECT "beatData" FROM "PerformanceData" WHERE "trackId" = ?'
    _SQL_ALL = 'SELECT "trackId", "beatData" FROM "PerformanceData" ORDER BY "trackId"'
    _SQL_UPSERT = (
        'INSERT INTO "PerformanceData" ("trackId", "beatData") VALUES (?, ?) '
        'ON CONFLICT("trackId") DO UPDATE SET "beatData" = excluded."beatData"'
    )
    _SQL_CLEAR = 'UPDATE "PerformanceData" SET "beatData" = NULL WHERE "trackId" = ?'
    _SQL_DELETE = 'DELETE FROM "PerformanceData" WHERE "trackId" = ?'

    async def get_blob(self, tx: Transaction, track_id: int) -> bytes | None:
        return await tx.fetch_value(self._SQL_GET, (track_id,))

    async def exists(self, tx: Transaction, track_id: int) -> bool:
        return await tx.fetch_one(self._SQL_GET, (track_id,)) is not None

    async def stream_raw(self, tx: Transaction) -> AsyncIterator[tuple[int, bytes | None]]:
        """Yield (track_id, beatData) pairs ordered by track id, undecoded."""
        async with aclosing(tx.stream(self._SQL_ALL)) as rows:
            async for row in rows:
                blob = row["beatData"]
                if isinstance(blob, memoryview):
                    blob = blob.tobytes()
                yield row["trackId"], blob

    async def put(self, tx: Transaction, track_id: int, grid: tuple[BeatMarker, ...]) -> None:
        await tx.execute(self._SQL_UPSERT, (track_id, encode_beat_grid(grid)))

    async def clear(self, tx: Transaction, track_id: int) -> bool:
        return await tx.execute(self._SQL_CLEAR, (track_id,)) > 0

    async def delete(self, tx: Transaction, track_id: int) -> bool:
        return await tx.execute(self._SQL_DELETE, (track_id,)) > 0


# ---------------------------------------------------------------------------
# Cue points
# ---------------------------------------------------------------------------


class CuePointRepository(_EntityRepository[CuePoint]):
    table = schema.CUE_POINT
    entity = "cue_point"
    relations = ("all", "track")

    def __init__(self, mapper: SchemaMapper) -> None:
        super().__init__(mapper)
        self._sql_by_track = f'{self._sql_select} WHERE "trackId" = ? ORDER BY "cueIndex", "id"'
        self._sql_index_taken = (
            'SELECT "id" FROM "CuePoint" WHERE "trackId" = ? AND "cueIndex" = ? AND "id" != ?'
        )
        self._sql_same_index = (
            'SELECT "id" FROM "CuePoint" WHERE "trackId" = ? AND "cueIndex" = ? ORDER BY "id"'
        )
        self._sql_delete_for_track = 'DELETE FROM "CuePoint" WHERE "trackId" = ?'

    async def _decode(self, tx: Transaction, row: Any) -> CuePoint:
        return self._mapper.decode_cue_point(row)

    def find_by(self, tx: Transaction, relation: str, key: int | None = None) -> AsyncIterator[CuePoint]:
        """
        Relations:
        - "all": every cue point, by id
        - "track": cue points of track `key`, by cue index then id
        """
        self._require_relation(relation)
        if relation == "track":
            return self._stream(tx, self._sql_by_track, (key,))
        return self._stream(tx, self._sql_all)

    async def for_track(self, tx: Transaction, track_id: int) -> list[CuePoint]:
        return [cue async for cue in self.find_by(tx, "track", track_id)]

    async def ids_with_index(self, tx: Transaction, track_id: int, index: int) -> list[int]:
        rows = await tx.fetch_all(self._sql_same_index, (track_id, index))
        return [row[0] for row in rows]

    async def _check_index_free(self, tx: Transaction, cue: CuePoint) -> None:
        taken = await tx.fetch_one(self._sql_index_taken, (cue.track_id, cue.index, cue.id or -1))
        if taken is not None:
            raise ConflictError(
                f"track {cue.track_id} already has cue point index {cue.index} (id {taken[0]})"
            )

    async def insert(self, tx: Transaction, cue: CuePoint) -> int:
        row = self._mapper.encode_cue_point(cue)
        if not await tx.fetch_one('SELECT 1 FROM "Track" WHERE "id" = ?', (cue.track_id,)):
            raise NotFoundError("track", cue.track_id)
        await self._check_index_free(tx, cue)
        return await self._insert_row(tx, row)

    async def update(self, tx: Transaction, cue: CuePoint) -> None:
        row = self._mapper.encode_cue_point(cue)
        await self._require_exists(tx, cue.id)
        await self._check_index_free(tx, cue)
        await self._update_row(tx, row)

    async def delete(self, tx: Transaction, cue_id: int, cascade: bool = False) -> None:
        """Cue points are leaves; `cascade` has nothing to follow."""
        await self._require_exists(tx, cue_id)
        await tx.execute(self._sql_delete, (cue_id,))

    async def delete_for_track(self, tx: Transaction, track_id: int) -> int:
        return await tx.execute(self._sql_delete_for_track, (track_id,))


# ---------------------------------------------------------------------------
# Memberships
# ---------------------------------------------------------------------------


class MembershipRepository(_EntityRepository[Membership]):
    table = schema.PLAYLIST_ENTITY
    entity = "membership"
    relations = ("all", "crate", "track")

    def __init__(self, mapper: SchemaMapper) -> None:
        super().__init__(mapper)
        self._sql_by_crate = (
            f'{self._sql_select} WHERE "listId" = ? ORDER BY "membershipReference", "id"'
        )
        self._sql_by_track = f'{self._sql_select} WHERE "trackId" = ? ORDER BY "id"'
        self._sql_count_crate = 'SELECT COUNT(*) FROM "PlaylistEntity" WHERE "listId" = ?'
        self._sql_count_track = 'SELECT COUNT(*) FROM "PlaylistEntity" WHERE "trackId" = ?'
        self._sql_ordinal_taken = (
            'SELECT "id" FROM "PlaylistEntity" '
            'WHERE "listId" = ? AND "membershipReference" = ? AND "id" != ?'
        )
        self._sql_track_taken = (
            'SELECT "id" FROM "PlaylistEntity" WHERE "listId" = ? AND "trackId" = ? AND "id" != ?'
        )
        self._sql_same_track = (
            'SELECT "id" FROM "PlaylistEntity" WHERE "listId" = ? AND "trackId" = ? ORDER BY "id"'
        )
        self._sql_order = (
            'SELECT "id", "membershipReference" FROM "PlaylistEntity" '
            'WHERE "listId" = ? ORDER BY "membershipReference", "id"'
        )
        self._sql_set_ordinal = 'UPDATE "PlaylistEntity" SET "membershipReference" = ? WHERE "id" = ?'
        self._sql_crates_of_track = (
            'SELECT DISTINCT "listId" FROM "PlaylistEntity" WHERE "trackId" = ? ORDER BY "listId"'
        )
        self._sql_delete_for_track = 'DELETE FROM "PlaylistEntity" WHERE "trackId" = ?'
        self._sql_delete_for_crate = 'DELETE FROM "PlaylistEntity" WHERE "listId" = ?'
        self._sql_tracks_in_crate = (
            'SELECT "trackId" FROM "PlaylistEntity" WHERE "listId" = ? ORDER BY "membershipReference", "id"'
        )

    async def _decode(self, tx: Transaction, row: Any) -> Membership:
        return self._mapper.decode_membership(row)

    def find_by(self, tx: Transaction, relation: str, key: int | None = None) -> AsyncIterator[Membership]:
        """
        Relations:
        - "all": every membership, by id
        - "crate": memberships of crate `key`, by ordinal then id
        - "track": memberships of track `key`, by id
        """
        self._require_relation(relation)
        if relation == "crate":
            return self._stream(tx, self._sql_by_crate, (key,))
        if relation == "track":
            return self._stream(tx, self._sql_by_track, (key,))
        return self._stream(tx, self._sql_all)

    async def count_in_crate(self, tx: Transaction, crate_id: int) -> int:
        return int(await tx.fetch_value(self._sql_count_crate, (crate_id,)))

    async def count_for_track(self, tx: Transaction, track_id: int) -> int:
        return int(await tx.fetch_value(self._sql_count_track, (track_id,)))

    async def ordinals(self, tx: Transaction, crate_id: int) -> list[tuple[int, int]]:
        """(membership id, ordinal) pairs of a crate in (ordinal, id) order."""
        rows = await tx.fetch_all(self._sql_order, (crate_id,))
        return [(row[0], row[1]) for row in rows]

    async def ids_for_track_in_crate(self, tx: Transaction, crate_id: int, track_id: int) -> list[int]:
        rows = await tx.fetch_all(self._sql_same_track, (crate_id, track_id))
        return [row[0] for row in rows]

    async def crates_of_track(self, tx: Transaction, track_id: int) -> list[int]:
        return [row[0] for row in await tx.fetch_all(self._sql_crates_of_track, (track_id,))]

    async def track_ids_in_crate(self, tx: Transaction, crate_id: int) -> list[int]:
        return [row[0] for row in await tx.fetch_all(self._sql_tracks_in_crate, (crate_id,))]

    async def _check_membership(self, tx: Transaction, membership: Membership) -> None:
        if not await tx.fetch_one('SELECT 1 FROM "Playlist" WHERE "id" = ?', (membership.crate_id,)):
            raise NotFoundError("crate", membership.crate_id)
        if not await tx.fetch_one('SELECT 1 FROM "Track" WHERE "id" = ?', (membership.track_id,)):
            raise NotFoundError("track", membership.track_id)

        own_id = membership.id if membership.id is not None else -1
        taken = await tx.fetch_one(
            self._sql_track_taken, (membership.crate_id, membership.track_id, own_id)
        )
        if taken is not None:
            raise ConflictError(
                f"track {membership.track_id} is already in crate {membership.crate_id}"
            )
        taken = await tx.fetch_one(
            self._sql_ordinal_taken, (membership.crate_id, membership.ordinal, own_id)
        )
        if taken is not None:
            raise ConflictError(
                f"ordinal {membership.ordinal} is already used in crate {membership.crate_id}"
            )

    async def insert(self, tx: Transaction, membership: Membership) -> int:
        """
        Insert a membership.

        The ordinal must be the next free position of the crate; anything
        larger would leave a gap.
        """
        row = self._mapper.encode_membership(membership)
        await self._check_membership(tx, membership)
        size = await self.count_in_crate(tx, membership.crate_id)
        if membership.ordinal > size:
            raise InvariantViolationError(
                f"ordinal {membership.ordinal} would leave a gap in crate "
                f"{membership.crate_id} ({size} members)"
            )
        return await self._insert_row(tx, row)

    async def append(self, tx: Transaction, crate_id: int, track_id: int) -> int:
        """Add a track at the end of a crate."""
        size = await self.count_in_crate(tx, crate_id)
        return await self.insert(tx, Membership(crate_id=crate_id, track_id=track_id, ordinal=size))

    async def update(self, tx: Transaction, membership: Membership) -> None:
        row = self._mapper.encode_membership(membership)
        await self._require_exists(tx, membership.id)
        await self._check_membership(tx, membership)
        await self._update_row(tx, row)

    async def delete(self, tx: Transaction, membership_id: int, cascade: bool = False) -> None:
        """Remove one membership and close the ordinal gap it leaves."""
        membership = await self.get_required(tx, membership_id)
        await tx.execute(self._sql_delete, (membership_id,))
        await self.renumber(tx, membership.crate_id)

    async def delete_ids(self, tx: Transaction, membership_ids: Iterable[int]) -> int:
        """Delete rows without renumbering (repairs renumber explicitly)."""
        deleted = 0
        for membership_id in membership_ids:
            deleted += await tx.execute(self._sql_delete, (membership_id,))
        return deleted

    async def delete_for_track(self, tx: Transaction, track_id: int) -> list[int]:
        """Delete all memberships of a track; returns the affected crate ids."""
        crates = await self.crates_of_track(tx, track_id)
        await tx.execute(self._sql_delete_for_track, (track_id,))
        return crates

    async def delete_for_crate(self, tx: Transaction, crate_id: int) -> int:
        return await tx.execute(self._sql_delete_for_crate, (crate_id,))

    async def renumber(self, tx: Transaction, crate_id: int) -> int:
        """
        Make ordinals of a crate contiguous from zero.

        Relative order is (ordinal, id). Returns the number of rows changed.
        """
        changed = 0
        for position, (membership_id, ordinal) in enumerate(await self.ordinals(tx, crate_id)):
            if ordinal != position:
                await tx.execute(self._sql_set_ordinal, (position, membership_id))
                changed += 1
        if changed:
            logger.debug("Renumbered %d memberships of crate %d", changed, crate_id)
        return changed


# ---------------------------------------------------------------------------
# Tracks
# ---------------------------------------------------------------------------


class TrackRepository(_EntityRepository[Track]):
    table = schema.TRACK
    entity = "track"
    relations = ("all", "artwork", "crate")

    def __init__(
        self,
        mapper: SchemaMapper,
        *,
        cue_points: CuePointRepository,
        memberships: MembershipRepository,
        performance: PerformanceDataRepository,
    ) -> None:
        super().__init__(mapper)
        self._cue_points = cue_points
        self._memberships = memberships
        self._performance = performance

        self._sql_by_artwork = f'{self._sql_select} WHERE "albumArtId" = ? ORDER BY "id"'
        self._sql_by_crate = (
            f'SELECT {self._layout.qualified_columns("t")} FROM "Track" AS t '
            'JOIN "PlaylistEntity" AS pe ON pe."trackId" = t."id" '
            'WHERE pe."listId" = ? ORDER BY pe."membershipReference", pe."id"'
        )
        self._sql_artwork_links = (
            'SELECT "id", "albumArtId" FROM "Track" WHERE "albumArtId" IS NOT NULL ORDER BY "id"'
        )
        self._sql_paths = 'SELECT "id", "path" FROM "Track" ORDER BY "id"'
        self._sql_id_by_path = 'SELECT "id" FROM "Track" WHERE "path" = ? ORDER BY "id" LIMIT 1'
        self._sql_artwork_of = 'SELECT "albumArtId" FROM "Track" WHERE "id" = ?'
        self._sql_clear_artwork = 'UPDATE "Track" SET "albumArtId" = NULL WHERE "id" = ?'

    async def _decode(self, tx: Transaction, row: Any) -> Track:
        track_id = row["id"]
        beat_data = await self._performance.get_blob(tx, track_id)
        cues = await self._cue_points.for_track(tx, track_id)
        return self._mapper.decode_track(row, beat_data=beat_data, cue_points=cues)

    def find_by(self, tx: Transaction, relation: str, key: int | None = None) -> AsyncIterator[Track]:
        """
        Relations:
        - "all": every track, by id
        - "artwork": tracks using artwork `key`, by id
        - "crate": tracks of crate `key`, in membership order
        """
        self._require_relation(relation)
        if relation == "artwork":
            return self._stream(tx, self._sql_by_artwork, (key,))
        if relation == "crate":
            return self._stream(tx, self._sql_by_crate, (key,))
        return self._stream(tx, self._sql_all)

    async def artwork_links(self, tx: Transaction) -> AsyncIterator[tuple[int, int]]:
        """Yield (track_id, artwork_id) for tracks that reference artwork."""
        async with aclosing(tx.stream(self._sql_artwork_links)) as rows:
            async for row in rows:
                yield row[0], row[1]

    async def paths(self, tx: Transaction) -> AsyncIterator[tuple[int, str]]:
        async with aclosing(tx.stream(self._sql_paths)) as rows:
            async for row in rows:
                yield row[0], row[1]

    async def find_id_by_path(self, tx: Transaction, path: str) -> int | None:
        return await tx.fetch_value(self._sql_id_by_path, (path,))

    async def artwork_of(self, tx: Transaction, track_id: int) -> int | None:
        return await tx.fetch_value(self._sql_artwork_of, (track_id,))

    async def clear_artwork(self, tx: Transaction, track_id: int) -> bool:
        return await tx.execute(self._sql_clear_artwork, (track_id,)) > 0

    async def _write_children(self, tx: Transaction, track_id: int, track: Track) -> None:
        if track.beat_grid:
            await self._performance.put(tx, track_id, track.beat_grid)
        else:
            await self._performance.delete(tx, track_id)
        # Cue points are matched by index, so kept cues keep their ids
        existing: dict[int, int] = {}
        stale: list[int] = []
        for cue in await self._cue_points.for_track(tx, track_id):
            if cue.index in existing:
                stale.append(cue.id)
            else:
                existing[cue.index] = cue.id
        wanted = {cue.index for cue in track.cue_points}
        stale.extend(cue_id for index, cue_id in existing.items() if index not in wanted)
        for cue_id in stale:
            await self._cue_points.delete(tx, cue_id)

        for cue in track.cue_points:
            cue_id = existing.get(cue.index)
            if cue_id is None:
                await self._cue_points.insert(tx, replace(cue, track_id=track_id, id=None))
            else:
                await self._cue_points.update(tx, replace(cue, track_id=track_id, id=cue_id))

    async def insert(self, tx: Transaction, track: Track) -> int:
        """Insert a track with its beat grid and cue points; returns the new id."""
        row = self._mapper.encode_track(track)
        track_id = await self._insert_row(tx, row)
        await self._write_children(tx, track_id, track)
        return track_id

    async def update(self, tx: Transaction, track: Track) -> None:
        """Update a track row; beat grid and cue points are replaced as a whole."""
        row = self._mapper.encode_track(track)
        track_id = await self._require_exists(tx, track.id)
        await self._update_row(tx, row)
        await self._write_children(tx, track_id, track)

    async def delete(self, tx: Transaction, track_id: int, cascade: bool = False) -> None:
        """
        Delete a track.

        Owned rows (cue points, performance data) always go with it. Crate
        memberships block the delete unless `cascade` is set, in which case
        they are removed and the affected crates renumbered.
        """
        await self._require_exists(tx, track_id)
        references = await self._memberships.count_for_track(tx, track_id)
        if references and not cascade:
            raise ReferentialViolationError(
                f"track {track_id} is referenced by {references} crate memberships"
            )
        if references:
            for crate_id in await self._memberships.delete_for_track(tx, track_id):
                await self._memberships.renumber(tx, crate_id)

        await self._cue_points.delete_for_track(tx, track_id)
        await self._performance.delete(tx, track_id)
        await tx.execute(self._sql_delete, (track_id,))


# ---------------------------------------------------------------------------
# Artwork
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ArtworkBlob:
    """Undecoded artwork projection used for blob validation."""

    id: int
    data: bytes | None
    format_tag: str | None
    is_corrupt: bool


class ArtworkRepository(_EntityRepository[Artwork]):
    table = schema.ALBUM_ART
    entity = "artwork"
    relations = ("all", "hash")

    def __init__(self, mapper: SchemaMapper) -> None:
        super().__init__(mapper)
        self._sql_by_hash = f'{self._sql_select} WHERE "hash" = ? ORDER BY "id"'
        self._sql_blobs = (
            'SELECT "id", "albumArt", "format", "isCorrupt" FROM "AlbumArt" ORDER BY "id"'
        )
        self._sql_blob = (
            'SELECT "id", "albumArt", "format", "isCorrupt" FROM "AlbumArt" WHERE "id" = ?'
        )
        self._sql_replace_image = (
            'UPDATE "AlbumArt" SET "albumArt" = ?, "format" = ?, "width" = ?, "height" = ? '
            'WHERE "id" = ?'
        )
        self._sql_ref_count = 'SELECT COUNT(*) FROM "Track" WHERE "albumArtId" = ?'
        self._sql_detach = 'UPDATE "Track" SET "albumArtId" = NULL WHERE "albumArtId" = ?'
        self._sql_mark_corrupt = 'UPDATE "AlbumArt" SET "isCorrupt" = 1 WHERE "id" = ?'
        self._sql_unused = (
            'SELECT "id" FROM "AlbumArt" WHERE "id" NOT IN '
            '(SELECT "albumArtId" FROM "Track" WHERE "albumArtId" IS NOT NULL) ORDER BY "id"'
        )
        self._sql_delete_unused = (
            'DELETE FROM "AlbumArt" WHERE "id" NOT IN '
            '(SELECT "albumArtId" FROM "Track" WHERE "albumArtId" IS NOT NULL)'
        )

    async def _decode(self, tx: Transaction, row: Any) -> Artwork:
        return self._mapper.decode_artwork(row)

    def find_by(self, tx: Transaction, relation: str, key: str | None = None) -> AsyncIterator[Artwork]:
        """
        Relations:
        - "all": every artwork, by id
        - "hash": artwork rows with content hash `key`, by id
        """
        self._require_relation(relation)
        if relation == "hash":
            return self._stream(tx, self._sql_by_hash, (key,))
        return self._stream(tx, self._sql_all)

    @staticmethod
    def _blob_from_row(row: Any) -> ArtworkBlob:
        data = row["albumArt"]
        if isinstance(data, memoryview):
            data = data.tobytes()
        return ArtworkBlob(
            id=row["id"],
            data=data,
            format_tag=row["format"],
            is_corrupt=bool(row["isCorrupt"]),
        )

    async def blobs(self, tx: Transaction) -> AsyncIterator[ArtworkBlob]:
        async with aclosing(tx.stream(self._sql_blobs)) as rows:
            async for row in rows:
                yield self._blob_from_row(row)

    async def blob(self, tx: Transaction, artwork_id: int) -> ArtworkBlob | None:
        row = await tx.fetch_one(self._sql_blob, (artwork_id,))
        return None if row is None else self._blob_from_row(row)

    async def replace_image(
        self,
        tx: Transaction,
        artwork_id: int,
        data: bytes,
        image_format: ArtworkFormat,
        width: int,
        height: int,
    ) -> None:
        """Swap the image blob; the content hash is kept so the vendor app still dedupes."""
        changed = await tx.execute(
            self._sql_replace_image, (data, image_format.value, width, height, artwork_id)
        )
        if changed == 0:
            raise NotFoundError(self.entity, artwork_id)

    async def reference_count(self, tx: Transaction, artwork_id: int) -> int:
        """Number of tracks using this artwork (derived, never stored)."""
        return int(await tx.fetch_value(self._sql_ref_count, (artwork_id,)))

    async def detach(self, tx: Transaction, artwork_id: int) -> int:
        """Null the artwork reference of every track using it."""
        return await tx.execute(self._sql_detach, (artwork_id,))

    async def mark_corrupt(self, tx: Transaction, artwork_id: int) -> None:
        if await tx.execute(self._sql_mark_corrupt, (artwork_id,)) == 0:
            raise NotFoundError(self.entity, artwork_id)

    async def unused_ids(self, tx: Transaction) -> list[int]:
        return [row[0] for row in await tx.fetch_all(self._sql_unused)]

    async def delete_unused(self, tx: Transaction) -> int:
        """Delete every artwork row no track references; returns the count."""
        return await tx.execute(self._sql_delete_unused)

    async def insert(self, tx: Transaction, artwork: Artwork) -> int:
        return await self._insert_row(tx, self._mapper.encode_artwork(artwork))

    async def update(self, tx: Transaction, artwork: Artwork) -> None:
        row = self._mapper.encode_artwork(artwork)
        await self._require_exists(tx, artwork.id)
        await self._update_row(tx, row)

    async def delete(self, tx: Transaction, artwork_id: int, cascade: bool = False) -> None:
        """Delete artwork; with `cascade`, referencing tracks lose their artwork."""
        await self._require_exists(tx, artwork_id)
        references = await self.reference_count(tx, artwork_id)
        if references and not cascade:
            raise ReferentialViolationError(
                f"artwork {artwork_id} is used by {references} tracks"
            )
        if references:
            await self.detach(tx, artwork_id)
        await tx.execute(self._sql_delete, (artwork_id,))


# ---------------------------------------------------------------------------
# Crates
# ---------------------------------------------------------------------------


class CrateRepository(_EntityRepository[Crate]):
    table = schema.PLAYLIST
    entity = "crate"
    relations = ("all", "parent")

    def __init__(self, mapper: SchemaMapper, *, memberships: MembershipRepository) -> None:
        super().__init__(mapper)
        self._memberships = memberships
        self._sql_children = f'{self._sql_select} WHERE "parentListId" = ? ORDER BY "id"'
        self._sql_roots = f'{self._sql_select} WHERE "parentListId" IS NULL ORDER BY "id"'
        self._sql_child_ids = 'SELECT "id" FROM "Playlist" WHERE "parentListId" = ? ORDER BY "id"'
        self._sql_parent_of = 'SELECT "parentListId" FROM "Playlist" WHERE "id" = ?'
        self._sql_child_by_title = (
            'SELECT "id" FROM "Playlist" WHERE "parentListId" IS ? AND "title" = ? ORDER BY "id" LIMIT 1'
        )
        self._sql_links = 'SELECT "id", "parentListId" FROM "Playlist" ORDER BY "id"'
        self._sql_set_parent = 'UPDATE "Playlist" SET "parentListId" = ? WHERE "id" = ?'
        self._sql_empty = (
            'SELECT p."id" FROM "Playlist" AS p '
            'WHERE NOT EXISTS (SELECT 1 FROM "PlaylistEntity" AS pe WHERE pe."listId" = p."id") '
            'AND NOT EXISTS (SELECT 1 FROM "Playlist" AS c WHERE c."parentListId" = p."id") '
            'ORDER BY p."id"'
        )

    async def _decode(self, tx: Transaction, row: Any) -> Crate:
        return self._mapper.decode_crate(row)

    def find_by(self, tx: Transaction, relation: str, key: int | None = None) -> AsyncIterator[Crate]:
        """
        Relations:
        - "all": every crate, by id
        - "parent": children of crate `key` by id; `key=None` yields root crates
        """
        self._require_relation(relation)
        if relation == "parent":
            if key is None:
                return self._stream(tx, self._sql_roots)
            return self._stream(tx, self._sql_children, (key,))
        return self._stream(tx, self._sql_all)

    async def parent_links(self, tx: Transaction) -> AsyncIterator[tuple[int, int | None]]:
        """Yield (crate_id, parent_id) for every crate, by id."""
        async with aclosing(tx.stream(self._sql_links)) as rows:
            async for row in rows:
                yield row[0], row[1]

    async def parent_of(self, tx: Transaction, crate_id: int) -> int | None:
        return await tx.fetch_value(self._sql_parent_of, (crate_id,))

    async def child_ids(self, tx: Transaction, crate_id: int) -> list[int]:
        return [row[0] for row in await tx.fetch_all(self._sql_child_ids, (crate_id,))]

    async def find_child_by_title(self, tx: Transaction, parent_id: int | None, title: str) -> int | None:
        """Id of the crate titled `title` under `parent_id` (a root crate when None)."""
        return await tx.fetch_value(self._sql_child_by_title, (parent_id, title))

    async def set_parent(self, tx: Transaction, crate_id: int, parent_id: int | None) -> None:
        if await tx.execute(self._sql_set_parent, (parent_id, crate_id)) == 0:
            raise NotFoundError(self.entity, crate_id)

    async def find_empty(self, tx: Transaction) -> list[int]:
        """Crates with neither memberships nor child crates, by id."""
        return [row[0] for row in await tx.fetch_all(self._sql_empty)]

    async def is_empty(self, tx: Transaction, crate_id: int) -> bool:
        return (
            not await self.child_ids(tx, crate_id)
            and await self._memberships.count_in_crate(tx, crate_id) == 0
        )

    async def _check_parent(self, tx: Transaction, crate: Crate) -> None:
        if crate.parent_id is None:
            return
        if not await self.exists(tx, crate.parent_id):
            raise NotFoundError(self.entity, crate.parent_id)
        if crate.id is None:
            return
        # Walk up from the new parent; reaching ourselves means a cycle.
        seen: set[int] = set()
        current: int | None = crate.parent_id
        while current is not None and current not in seen:
            if current == crate.id:
                raise InvariantViolationError(
                    f"moving crate {crate.id} under {crate.parent_id} would create a cycle"
                )
            seen.add(current)
            current = await self.parent_of(tx, current)

    async def insert(self, tx: Transaction, crate: Crate) -> int:
        row = self._mapper.encode_crate(crate)
        await self._check_parent(tx, crate)
        return await self._insert_row(tx, row)

    async def update(self, tx: Transaction, crate: Crate) -> None:
        row = self._mapper.encode_crate(crate)
        await self._require_exists(tx, crate.id)
        await self._check_parent(tx, crate)
        await self._update_row(tx, row)

    async def descendants(self, tx: Transaction, crate_id: int) -> list[int]:
        """All crates below `crate_id` (breadth first); safe against cycles."""
        found: list[int] = []
        seen = {crate_id}
        queue = [crate_id]
        while queue:
            current = queue.pop(0)
            for child in await self.child_ids(tx, current):
                if child not in seen:
                    seen.add(child)
                    found.append(child)
                    queue.append(child)
        return found

    async def delete(self, tx: Transaction, crate_id: int, cascade: bool = False) -> None:
        """
        Delete a crate.

        Child crates or memberships block the delete unless `cascade` is set;
        then the whole subtree and its memberships are removed.
        """
        await self._require_exists(tx, crate_id)
        children = await self.child_ids(tx, crate_id)
        members = await self._memberships.count_in_crate(tx, crate_id)
        if (children or members) and not cascade:
            raise ReferentialViolationError(
                f"crate {crate_id} has {len(children)} child crates and {members} memberships"
            )
        for target in [crate_id, *await self.descendants(tx, crate_id)]:
            await self._memberships.delete_for_crate(tx, target)
            await tx.execute(self._sql_delete, (target,))


# ---------------------------------------------------------------------------
# Checkpoints and maintenance
# ---------------------------------------------------------------------------


class CheckpointRepository:
    """Resume points for chunked jobs: last committed id per (task, entity type)."""

    _SQL_TABLE_EXISTS = "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?"
    _SQL_CREATE = (
        f'CREATE TABLE IF NOT EXISTS "{schema.CHECKPOINT}" ('
        '"task" TEXT NOT NULL, "entityType" TEXT NOT NULL, "lastId" INTEGER NOT NULL, '
        'PRIMARY KEY ("task", "entityType"))'
    )
    _SQL_LOAD = f'SELECT "lastId" FROM "{schema.CHECKPOINT}" WHERE "task" = ? AND "entityType" = ?'
    _SQL_SAVE = (
        f'INSERT INTO "{schema.CHECKPOINT}" ("task", "entityType", "lastId") VALUES (?, ?, ?) '
        'ON CONFLICT("task", "entityType") DO UPDATE SET "lastId" = excluded."lastId"'
    )
    _SQL_CLEAR = f'DELETE FROM "{schema.CHECKPOINT}" WHERE "task" = ? AND "entityType" = ?'

    async def _has_table(self, tx: Transaction) -> bool:
        return await tx.fetch_one(self._SQL_TABLE_EXISTS, (schema.CHECKPOINT,)) is not None

    async def load(self, tx: Transaction, task: str, entity_type: EntityType) -> int | None:
        if not await self._has_table(tx):
            return None
        return await tx.fetch_value(self._SQL_LOAD, (task, entity_type.value))

    async def save(self, tx: Transaction, task: str, entity_type: EntityType, last_id: int) -> None:
        await tx.execute(self._SQL_CREATE)
        await tx.execute(self._SQL_SAVE, (task, entity_type.value, last_id))

    async def clear(self, tx: Transaction, task: str, entity_type: EntityType) -> None:
        if await self._has_table(tx):
            await tx.execute(self._SQL_CLEAR, (task, entity_type.value))


class LibraryMaintenance:
    """Layout-level statements: introspection, upgrades, VACUUM/ANALYZE."""

    _SQL_COLUMNS = "SELECT name FROM pragma_table_info(?)"
    _SQL_TABLES = "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"

    # Tables that gained lastEditTime in 3.x
    EDIT_TIME_TABLES: ClassVar[tuple[str, ...]] = (schema.TRACK, schema.PLAYLIST)

    async def table_columns(self, tx: Transaction) -> dict[str, set[str]]:
        """Live layout: table name -> column names."""
        layout: dict[str, set[str]] = {}
        for row in await tx.fetch_all(self._SQL_TABLES):
            name = row[0]
            columns = await tx.fetch_all(self._SQL_COLUMNS, (name,))
            layout[name] = {c[0] for c in columns}
        return layout

    async def add_edit_time_columns(self, tx: Transaction) -> list[str]:
        """Apply the 2.20 -> 3.0 DDL for columns not yet present; returns tables altered."""
        live = await self.table_columns(tx)
        altered = []
        for table, ddl in zip(self.EDIT_TIME_TABLES, schema.UPGRADE_V2_TO_V3_DDL):
            if "lastEditTime" not in live.get(table, set()):
                await tx.execute(ddl)
                altered.append(table)
        return altered

    async def ids_without_edit_time(
        self, tx: Transaction, table: str, after: int | None, limit: int
    ) -> list[int]:
        if table not in self.EDIT_TIME_TABLES:
            raise ValueError(f"{table} has no lastEditTime column")
        rows = await tx.fetch_all(
            f'SELECT "id" FROM "{table}" WHERE "lastEditTime" IS NULL AND "id" > ? '
            'ORDER BY "id" LIMIT ?',
            (after if after is not None else -1, limit),
        )
        return [row[0] for row in rows]

    async def backfill_edit_time(
        self, tx: Transaction, table: str, ids: Sequence[int], timestamp: int
    ) -> int:
        if table not in self.EDIT_TIME_TABLES:
            raise ValueError(f"{table} has no lastEditTime column")
        if not ids:
            return 0
        return await tx.execute(
            f'UPDATE "{table}" SET "lastEditTime" = ? '
            f'WHERE "lastEditTime" IS NULL AND "id" IN ({_placeholders(len(ids))})',
            (timestamp, *ids),
        )

    async def optimize(self, tx: Transaction) -> None:
        """VACUUM then ANALYZE. Needs a handle from `TransactionCoordinator.autocommit`."""
        await tx.execute("VACUUM")
        await tx.execute("ANALYZE")
