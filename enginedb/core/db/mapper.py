"""
Schema mapper: translates raw rows into typed entities and back.

Design:
- A `SchemaMapper` is bound to one detected `SchemaVersion` and only reads or
  writes the columns declared for that version in `enginedb.core.db.schema`.
- Decoding checks presence and storage type of every declared column before an
  entity is constructed. Missing or mistyped columns raise `SchemaMismatchError`
  carrying the offending column; required columns are never defaulted.
- Encoding checks local invariants first and raises `InvariantViolationError`,
  so invalid state never reaches storage.

Rows are anything indexable by column name with a `keys()` method
(`aiosqlite.Row`, `sqlite3.Row`, or a plain dict in tests).
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterable
from typing import Any, Protocol

from enginedb.core import InvariantViolationError, SchemaMismatchError
from enginedb.core.db import schema
from enginedb.core.db.models import (
    Artwork,
    ArtworkFormat,
    BeatMarker,
    Crate,
    CuePoint,
    LibraryInformation,
    Membership,
    SchemaVersion,
    Track,
    normalize_text,
)
from enginedb.core.db.schema import Column, TableLayout

# beatData blob: u32 marker count, then (f64 position, f64 bpm) per marker
logger = logging.getLogger(__name__)

_BEAT_COUNT = struct.Struct("<I")
_BEAT_MARKER = struct.Struct("<dd")

# Crate titles are joined into vendor playlist paths with this separator.
CRATE_PATH_SEPARATOR = ";"


class RowLike(Protocol):
    def keys(self) -> Iterable[str]: ...

    def __getitem__(self, key: str) -> Any: ...


def _read(row: RowLike, table: str, column: Column) -> Any:
    """Read one declared column, validating presence, nullability and storage type."""
    if column.name not in row.keys():
        raise SchemaMismatchError(table, column.name, "column is missing")
    value = row[column.name]

    if value is None:
        if column.required:
            raise SchemaMismatchError(table, column.name, "NULL in required column")
        return None

    if column.affinity == "INTEGER":
        if isinstance(value, bool) or not isinstance(value, int):
            raise SchemaMismatchError(
                table, column.name, f"expected INTEGER, got {type(value).__name__}"
            )
        return value
    if column.affinity == "REAL":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise SchemaMismatchError(
                table, column.name, f"expected REAL, got {type(value).__name__}"
            )
        return float(value)
    if column.affinity == "TEXT":
        if not isinstance(value, str):
            raise SchemaMismatchError(
                table, column.name, f"expected TEXT, got {type(value).__name__}"
            )
        return value
    # BLOB
    if isinstance(value, memoryview):
        value = value.tobytes()
    if not isinstance(value, bytes):
        raise SchemaMismatchError(
            table, column.name, f"expected BLOB, got {type(value).__name__}"
        )
    return value


def _read_all(row: RowLike, layout: TableLayout) -> dict[str, Any]:
    return {c.name: _read(row, layout.name, c) for c in layout.columns}


# ---------------------------------------------------------------------------
# Beat grid blob codec (version independent)
# ---------------------------------------------------------------------------


def validate_beat_grid(markers: Iterable[BeatMarker]) -> None:
    previous: float | None = None
    for marker in markers:
        if marker.bpm <= 0:
            raise InvariantViolationError(f"beat marker at {marker.position} has bpm {marker.bpm}")
        if previous is not None and marker.position <= previous:
            raise InvariantViolationError(
                f"beat grid not ordered by position ({marker.position} after {previous})"
            )
        previous = marker.position


def encode_beat_grid(markers: tuple[BeatMarker, ...]) -> bytes | None:
    """Pack a beat grid; an empty grid is stored as NULL."""
    if not markers:
        return None
    validate_beat_grid(markers)
    parts = [_BEAT_COUNT.pack(len(markers))]
    parts.extend(_BEAT_MARKER.pack(m.position, m.bpm) for m in markers)
    return b"".join(parts)


def decode_beat_grid(blob: bytes | None, *, strict: bool = True) -> tuple[BeatMarker, ...]:
    """
    Unpack a beat grid blob.

    Raises `InvariantViolationError` for truncated blobs and, when `strict`,
    for unordered grids.
    """
    if not blob:
        return ()
    if len(blob) < _BEAT_COUNT.size:
        raise InvariantViolationError("beat grid blob is truncated")
    (count,) = _BEAT_COUNT.unpack_from(blob, 0)
    expected = _BEAT_COUNT.size + count * _BEAT_MARKER.size
    if len(blob) != expected:
        raise InvariantViolationError(
            f"beat grid blob has {len(blob)} bytes, expected {expected} for {count} markers"
        )
    markers = tuple(
        BeatMarker(*_BEAT_MARKER.unpack_from(blob, _BEAT_COUNT.size + i * _BEAT_MARKER.size))
        for i in range(count)
    )
    if strict:
        validate_beat_grid(markers)
    return markers


def _stored_beat_grid(track_id: int, blob: bytes | None) -> tuple[BeatMarker, ...]:
    try:
        return decode_beat_grid(blob, strict=False)
    except InvariantViolationError as e:
        logger.warning("Track %d has an unreadable beat grid: %s", track_id, e)
        return ()


def validate_cue_points(track_id: int | None, cue_points: Iterable[CuePoint]) -> None:
    seen: set[int] = set()
    for cue in cue_points:
        if cue.index < 0:
            raise InvariantViolationError(f"cue point index {cue.index} is negative")
        if cue.index in seen:
            raise InvariantViolationError(f"duplicate cue point index {cue.index}")
        if track_id is not None and cue.track_id != track_id:
            raise InvariantViolationError(
                f"cue point {cue.index} belongs to track {cue.track_id}, not {track_id}"
            )
        seen.add(cue.index)


def is_valid_crate_title(title: str) -> bool:
    return normalize_text(title) is not None and CRATE_PATH_SEPARATOR not in title


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------


class SchemaMapper:
    """
    Row <-> entity translation for one schema version.

    Usage:
        mapper = SchemaMapper(version)
        track = mapper.decode_track(row, cue_points=cues, beat_data=blob)
        params = mapper.encode_track(track)
    """

    def __init__(self, version: SchemaVersion) -> None:
        self.version = version
        self._layouts = schema.layouts_for(version)

    @property
    def has_edit_time(self) -> bool:
        return "lastEditTime" in self._layouts[schema.TRACK].column_names

    def layout(self, table: str) -> TableLayout:
        return self._layouts[table]

    # -- Information ---------------------------------------------------------

    @staticmethod
    def decode_information(row: RowLike) -> LibraryInformation:
        """
        Decode the `Information` row.

        Version independent: the version is what we are about to detect.
        """
        values = _read_all(row, schema.INFORMATION_LAYOUT)
        return LibraryInformation(
            id=values["id"],
            uuid=values["uuid"],
            schema_version=SchemaVersion(
                values["schemaVersionMajor"],
                values["schemaVersionMinor"],
                values["schemaVersionPatch"],
            ),
            current_played_indicator=values["currentPlayedIndicator"],
        )

    @staticmethod
    def encode_information(info: LibraryInformation) -> dict[str, Any]:
        if not info.uuid:
            raise InvariantViolationError("library uuid must not be empty")
        version = info.schema_version
        if min(version.major, version.minor, version.patch) < 0:
            raise InvariantViolationError(f"invalid schema version {version}")
        return {
            "id": info.id,
            "uuid": info.uuid,
            "schemaVersionMajor": version.major,
            "schemaVersionMinor": version.minor,
            "schemaVersionPatch": version.patch,
            "currentPlayedIndicator": info.current_played_indicator,
        }

    # -- Track ---------------------------------------------------------------

    def decode_track(
        self,
        row: RowLike,
        *,
        beat_data: bytes | None = None,
        cue_points: Iterable[CuePoint] = (),
    ) -> Track:
        values = _read_all(row, self._layouts[schema.TRACK])
        return Track(
            id=values["id"],
            path=values["path"],
            filename=values["filename"],
            length=values["length"],
            sample_rate=values["sampleRate"],
            title=values["title"],
            artist=values["artist"],
            album=values["album"],
            genre=values["genre"],
            artwork_id=values["albumArtId"],
            beat_grid=_stored_beat_grid(values["id"], beat_data),
            cue_points=tuple(cue_points),
            last_edit_time=values.get("lastEditTime"),
        )

    def encode_track(self, track: Track) -> dict[str, Any]:
        """Encode the `Track` row. Beat grid and cue points are validated, not included."""
        if not track.path:
            raise InvariantViolationError("track path must not be empty")
        validate_beat_grid(track.beat_grid)
        validate_cue_points(track.id, track.cue_points)
        if track.last_edit_time is not None and not self.has_edit_time:
            raise InvariantViolationError(
                f"schema {self.version} has no lastEditTime column for tracks"
            )

        row: dict[str, Any] = {
            "id": track.id,
            "path": track.path,
            "filename": track.filename,
            "length": track.length,
            "sampleRate": track.sample_rate,
            "title": track.title,
            "artist": track.artist,
            "album": track.album,
            "genre": track.genre,
            "albumArtId": track.artwork_id,
        }
        if self.has_edit_time:
            row["lastEditTime"] = track.last_edit_time
        return row

    # -- CuePoint ------------------------------------------------------------

    def decode_cue_point(self, row: RowLike) -> CuePoint:
        values = _read_all(row, self._layouts[schema.CUE_POINT])
        return CuePoint(
            id=values["id"],
            track_id=values["trackId"],
            index=values["cueIndex"],
            position=values["position"],
            label=values["label"],
            color=values["color"],
        )

    def encode_cue_point(self, cue: CuePoint) -> dict[str, Any]:
        validate_cue_points(None, (cue,))
        return {
            "id": cue.id,
            "trackId": cue.track_id,
            "cueIndex": cue.index,
            "position": float(cue.position),
            "label": cue.label,
            "color": cue.color,
        }

    # -- Artwork -------------------------------------------------------------

    def decode_artwork(self, row: RowLike) -> Artwork:
        values = _read_all(row, self._layouts[schema.ALBUM_ART])
        return Artwork(
            id=values["id"],
            hash=values["hash"],
            image_data=values["albumArt"],
            format=parse_artwork_format(values["format"]),
            width=values["width"],
            height=values["height"],
            is_corrupt=bool(values["isCorrupt"]),
        )

    def encode_artwork(self, artwork: Artwork) -> dict[str, Any]:
        for name in ("width", "height"):
            value = getattr(artwork, name)
            if value is not None and value <= 0:
                raise InvariantViolationError(f"artwork {name} must be positive, got {value}")
        if artwork.image_data is not None and artwork.format is None:
            raise InvariantViolationError("artwork with image data needs a declared format")
        return {
            "id": artwork.id,
            "hash": artwork.hash,
            "albumArt": artwork.image_data,
            "format": artwork.format.value if artwork.format is not None else None,
            "width": artwork.width,
            "height": artwork.height,
            "isCorrupt": 1 if artwork.is_corrupt else 0,
        }

    # -- Crate ---------------------------------------------------------------

    def decode_crate(self, row: RowLike) -> Crate:
        values = _read_all(row, self._layouts[schema.PLAYLIST])
        return Crate(
            id=values["id"],
            title=values["title"],
            parent_id=values["parentListId"],
            last_edit_time=values.get("lastEditTime"),
        )

    def encode_crate(self, crate: Crate) -> dict[str, Any]:
        if not is_valid_crate_title(crate.title):
            raise InvariantViolationError(f"invalid crate title {crate.title!r}")
        if crate.id is not None and crate.parent_id == crate.id:
            raise InvariantViolationError(f"crate {crate.id} cannot be its own parent")
        if crate.last_edit_time is not None and not self.has_edit_time:
            raise InvariantViolationError(
                f"schema {self.version} has no lastEditTime column for crates"
            )
        row: dict[str, Any] = {
            "id": crate.id,
            "title": crate.title,
            "parentListId": crate.parent_id,
        }
        if self.has_edit_time:
            row["lastEditTime"] = crate.last_edit_time
        return row

    # -- Membership ----------------------------------------------------------

    def decode_membership(self, row: RowLike) -> Membership:
        values = _read_all(row, self._layouts[schema.PLAYLIST_ENTITY])
        return Membership(
            id=values["id"],
            crate_id=values["listId"],
            track_id=values["trackId"],
            ordinal=values["membershipReference"],
        )

    def encode_membership(self, membership: Membership) -> dict[str, Any]:
        if membership.ordinal < 0:
            raise InvariantViolationError(f"membership ordinal {membership.ordinal} is negative")
        return {
            "id": membership.id,
            "listId": membership.crate_id,
            "trackId": membership.track_id,
            "membershipReference": membership.ordinal,
        }


def parse_artwork_format(tag: str | None) -> ArtworkFormat | None:
    """Parse a declared format tag; unknown tags are an invariant violation."""
    if tag is None:
        return None
    try:
        return ArtworkFormat(tag.lower())
    except ValueError:
        raise InvariantViolationError(f"unknown artwork format tag {tag!r}") from None
