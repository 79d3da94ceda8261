"""
Entity models (DTOs) for the library database.

This module is intentionally lightweight:
- No DB connection knowledge
- No SQL
- Pure dataclasses + small helpers

Entities are transient projections of rows. They are never assumed valid
across a transaction boundary; repairs re-fetch what they modify.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import NewType

TrackId = NewType("TrackId", int)
ArtworkId = NewType("ArtworkId", int)
CrateId = NewType("CrateId", int)
MembershipId = NewType("MembershipId", int)
CuePointId = NewType("CuePointId", int)


@dataclass(frozen=True, slots=True, order=True)
class SchemaVersion:
    """Schema version as recorded in the `Information` row."""

    major: int
    minor: int
    patch: int = 0

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True, slots=True)
class UnsupportedSchema:
    """Tagged outcome of version detection for layouts we do not support."""

    found: SchemaVersion | None
    reason: str


@dataclass(frozen=True, slots=True)
class LibraryInformation:
    """The single `Information` row describing the library."""

    id: int
    uuid: str
    schema_version: SchemaVersion
    current_played_indicator: int | None = None


@dataclass(frozen=True, slots=True)
class BeatMarker:
    """One tempo marker of a beat grid (position in seconds)."""

    position: float
    bpm: float


@dataclass(frozen=True, slots=True)
class CuePoint:
    """
    A named, positioned marker within a track.

    `index` is the natural key within one track (hot cue slot).
    """

    track_id: int
    index: int
    position: float
    label: str | None = None
    color: int | None = None
    id: int | None = None


@dataclass(frozen=True, slots=True)
class Track:
    """
    Canonical track record.

    Notes:
    - `path` is relative to the library directory, as written by the vendor app.
    - `beat_grid` and `cue_points` are loaded from their own tables.
    - `last_edit_time` only exists in schema 3.x (unix seconds).
    """

    path: str
    filename: str | None = None
    length: float | None = None
    sample_rate: int | None = None
    title: str | None = None
    artist: str | None = None
    album: str | None = None
    genre: str | None = None
    artwork_id: int | None = None
    beat_grid: tuple[BeatMarker, ...] = ()
    cue_points: tuple[CuePoint, ...] = ()
    last_edit_time: int | None = None
    id: int | None = None


class ArtworkFormat(str, Enum):
    """Declared image format tags stored next to artwork blobs."""

    JPEG = "jpeg"
    PNG = "png"
    BMP = "bmp"
    GIF = "gif"
    WEBP = "webp"
    TGA = "tga"


@dataclass(frozen=True, slots=True)
class Artwork:
    """
    Album art as stored in the `AlbumArt` table.

    The image blob is opaque here; decoding is delegated to the image collaborator.
    """

    hash: str | None = None
    image_data: bytes | None = field(default=None, repr=False)
    format: ArtworkFormat | None = None
    width: int | None = None
    height: int | None = None
    is_corrupt: bool = False
    id: int | None = None


@dataclass(frozen=True, slots=True)
class Crate:
    """A playlist-like collection of tracks, optionally nested under a parent."""

    title: str
    parent_id: int | None = None
    last_edit_time: int | None = None
    id: int | None = None


@dataclass(frozen=True, slots=True)
class Membership:
    """Join entity: a track at a given ordinal position within a crate."""

    crate_id: int
    track_id: int
    ordinal: int
    id: int | None = None


class EntityType(str, Enum):
    """Entity types addressable in findings and checkpoints."""

    TRACK = "track"
    ARTWORK = "artwork"
    CRATE = "crate"
    MEMBERSHIP = "membership"
    CUE_POINT = "cue_point"
    PERFORMANCE_DATA = "performance_data"


@dataclass(frozen=True, slots=True, order=True)
class EntityRef:
    """Reference to one row of one entity type (ordered by id, then type)."""

    id: int
    type: EntityType

    def __str__(self) -> str:
        return f"{self.type.value}:{self.id}"


def normalize_text(value: str | None) -> str | None:
    """
    Normalize optional text fields:
    - strip whitespace
    - coerce empty strings to None
    """
    if value is None:
        return None
    v = value.strip()
    return v if v else None
