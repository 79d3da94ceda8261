"""
Tests for enginedb.core.db (schema declarations and the row <-> entity mapper).

These tests verify:
- version detection and table verification
- decode validates column presence, type and nullability
- encode rejects entities that violate local invariants
- beat grid blob codec
"""

from __future__ import annotations

import struct

import pytest

from enginedb.core import InvariantViolationError, SchemaMismatchError
from enginedb.core.db import schema
from enginedb.core.db.mapper import (
    SchemaMapper,
    decode_beat_grid,
    encode_beat_grid,
    is_valid_crate_title,
)
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
    UnsupportedSchema,
)

V3 = SchemaVersion(3, 0, 0)
V2 = SchemaVersion(2, 20, 1)


def _track_row(**overrides: object) -> dict[str, object]:
    row: dict[str, object] = {
        "id": 7,
        "path": "../Music/a.mp3",
        "filename": "a.mp3",
        "length": 215.5,
        "sampleRate": 44100,
        "title": "A",
        "artist": "Artist",
        "album": "Album",
        "genre": "House",
        "albumArtId": 3,
        "lastEditTime": 1700000000,
    }
    row.update(overrides)
    return row


# =============================================================================
# Version detection
# =============================================================================


class TestDetectVersion:
    """Tests for schema.detect_version and verify_tables."""

    def _info(self, major: int, minor: int, patch: int = 0) -> LibraryInformation:
        return LibraryInformation(id=1, uuid="u", schema_version=SchemaVersion(major, minor, patch))

    def test_supported_versions(self) -> None:
        assert schema.detect_version(self._info(3, 0, 5)) == SchemaVersion(3, 0, 5)
        assert schema.detect_version(self._info(2, 20, 3)) == SchemaVersion(2, 20, 3)

    def test_unsupported_version_is_tagged(self) -> None:
        result = schema.detect_version(self._info(2, 18))
        assert isinstance(result, UnsupportedSchema)
        assert result.found == SchemaVersion(2, 18, 0)

    def test_missing_information(self) -> None:
        result = schema.detect_version(None)
        assert isinstance(result, UnsupportedSchema)
        assert result.found is None

    def test_layouts_for_unsupported_raises(self) -> None:
        with pytest.raises(SchemaMismatchError):
            schema.layouts_for(SchemaVersion(1, 0))

    def test_verify_tables_accepts_extra_columns(self) -> None:
        live = {
            name: {*layout.column_names, "somethingNew"}
            for name, layout in schema.layouts_for(V3).items()
        }
        schema.verify_tables(V3, live)

    def test_verify_tables_missing_column(self) -> None:
        live = {name: set(layout.column_names) for name, layout in schema.layouts_for(V3).items()}
        live["Track"].discard("lastEditTime")
        with pytest.raises(SchemaMismatchError) as exc:
            schema.verify_tables(V3, live)
        assert exc.value.table == "Track"
        assert exc.value.column == "lastEditTime"

    def test_verify_tables_missing_table(self) -> None:
        live = {name: set(layout.column_names) for name, layout in schema.layouts_for(V2).items()}
        del live["AlbumArt"]
        with pytest.raises(SchemaMismatchError) as exc:
            schema.verify_tables(V2, live)
        assert exc.value.table == "AlbumArt"

    def test_v2_has_no_edit_time(self) -> None:
        assert "lastEditTime" not in schema.layouts_for(V2)["Track"].column_names
        assert "lastEditTime" in schema.layouts_for(V3)["Playlist"].column_names


# =============================================================================
# Decode
# =============================================================================


class TestDecode:
    """Decoding validates every declared column before building an entity."""

    def test_decode_track(self) -> None:
        mapper = SchemaMapper(V3)
        grid = (BeatMarker(0.0, 120.0), BeatMarker(30.0, 124.0))
        cues = [CuePoint(track_id=7, index=0, position=1.5, label="Intro", id=1)]
        track = mapper.decode_track(
            _track_row(), beat_data=encode_beat_grid(grid), cue_points=cues
        )
        assert track.id == 7
        assert track.sample_rate == 44100
        assert track.artwork_id == 3
        assert track.beat_grid == grid
        assert track.cue_points == tuple(cues)
        assert track.last_edit_time == 1700000000

    def test_decode_track_keeps_damaged_children(self) -> None:
        cues = [
            CuePoint(track_id=7, index=2, position=1.0, id=1),
            CuePoint(track_id=7, index=2, position=2.0, id=2),
        ]
        track = SchemaMapper(V3).decode_track(
            _track_row(), beat_data=struct.pack("<I", 4), cue_points=cues
        )
        assert track.cue_points == tuple(cues)
        assert track.beat_grid == ()

    def test_integer_length_is_accepted_as_real(self) -> None:
        track = SchemaMapper(V3).decode_track(_track_row(length=200))
        assert track.length == 200.0
        assert isinstance(track.length, float)

    def test_missing_column(self) -> None:
        row = _track_row()
        del row["genre"]
        with pytest.raises(SchemaMismatchError) as exc:
            SchemaMapper(V3).decode_track(row)
        assert exc.value.column == "genre"

    def test_wrong_type(self) -> None:
        with pytest.raises(SchemaMismatchError) as exc:
            SchemaMapper(V3).decode_track(_track_row(sampleRate="44.1k"))
        assert exc.value.column == "sampleRate"
        assert "INTEGER" in exc.value.reason

    def test_null_in_required_column(self) -> None:
        with pytest.raises(SchemaMismatchError) as exc:
            SchemaMapper(V3).decode_track(_track_row(path=None))
        assert exc.value.column == "path"

    def test_v3_column_missing_from_row(self) -> None:
        row = _track_row()
        del row["lastEditTime"]
        with pytest.raises(SchemaMismatchError):
            SchemaMapper(V3).decode_track(row)
        # ... while the 2.20 mapper never looks at it
        assert SchemaMapper(V2).decode_track(row).last_edit_time is None

    def test_decode_artwork(self) -> None:
        art = SchemaMapper(V3).decode_artwork(
            {
                "id": 2,
                "hash": "abc",
                "albumArt": b"\x89PNG",
                "format": "PNG",
                "width": 10,
                "height": 12,
                "isCorrupt": 0,
            }
        )
        assert art.format is ArtworkFormat.PNG
        assert art.is_corrupt is False
        assert art.image_data == b"\x89PNG"

    def test_decode_artwork_unknown_format_tag(self) -> None:
        with pytest.raises(InvariantViolationError):
            SchemaMapper(V3).decode_artwork(
                {
                    "id": 2,
                    "hash": None,
                    "albumArt": b"x",
                    "format": "tiff",
                    "width": None,
                    "height": None,
                    "isCorrupt": 0,
                }
            )

    def test_decode_information(self) -> None:
        info = SchemaMapper.decode_information(
            {
                "id": 1,
                "uuid": "abc-def",
                "schemaVersionMajor": 2,
                "schemaVersionMinor": 20,
                "schemaVersionPatch": 3,
                "currentPlayedIndicator": None,
            }
        )
        assert info.schema_version == SchemaVersion(2, 20, 3)
        assert info.uuid == "abc-def"
        assert SchemaMapper.decode_information(SchemaMapper.encode_information(info)) == info

    def test_decode_membership_and_crate(self) -> None:
        mapper = SchemaMapper(V2)
        membership = mapper.decode_membership(
            {"id": 1, "listId": 2, "trackId": 3, "membershipReference": 0}
        )
        assert membership == Membership(crate_id=2, track_id=3, ordinal=0, id=1)
        crate = mapper.decode_crate({"id": 2, "title": "Techno", "parentListId": None})
        assert crate == Crate(title="Techno", id=2)


# =============================================================================
# Encode
# =============================================================================


class TestEncode:
    """Encoding rejects invalid state before a row is produced."""

    def test_track_round_trip(self) -> None:
        mapper = SchemaMapper(V3)
        track = Track(
            id=4,
            path="../Music/b.flac",
            filename="b.flac",
            length=100.0,
            sample_rate=48000,
            title="B",
            artwork_id=None,
            beat_grid=(BeatMarker(0.5, 128.0),),
            last_edit_time=5,
        )
        row = mapper.encode_track(track)
        decoded = mapper.decode_track(row, beat_data=encode_beat_grid(track.beat_grid))
        assert decoded == track

    def test_duplicate_cue_indices_rejected(self) -> None:
        track = Track(
            path="x.mp3",
            cue_points=(
                CuePoint(track_id=0, index=5, position=1.0),
                CuePoint(track_id=0, index=5, position=2.0),
            ),
        )
        with pytest.raises(InvariantViolationError, match="duplicate cue point index 5"):
            SchemaMapper(V3).encode_track(track)

    def test_unordered_beat_grid_rejected(self) -> None:
        track = Track(path="x.mp3", beat_grid=(BeatMarker(10.0, 120.0), BeatMarker(5.0, 120.0)))
        with pytest.raises(InvariantViolationError):
            SchemaMapper(V3).encode_track(track)

    def test_negative_ordinal_rejected(self) -> None:
        with pytest.raises(InvariantViolationError):
            SchemaMapper(V3).encode_membership(Membership(crate_id=1, track_id=1, ordinal=-1))

    def test_crate_title_rules(self) -> None:
        mapper = SchemaMapper(V3)
        for title in ("", "   ", "a;b"):
            with pytest.raises(InvariantViolationError):
                mapper.encode_crate(Crate(title=title))
        assert is_valid_crate_title("Warm up")

    def test_self_parent_rejected(self) -> None:
        with pytest.raises(InvariantViolationError):
            SchemaMapper(V3).encode_crate(Crate(title="Loop", parent_id=3, id=3))

    def test_edit_time_not_writable_in_v2(self) -> None:
        with pytest.raises(InvariantViolationError):
            SchemaMapper(V2).encode_crate(Crate(title="New", last_edit_time=1))
        row = SchemaMapper(V2).encode_crate(Crate(title="New"))
        assert "lastEditTime" not in row

    def test_artwork_needs_format_with_data(self) -> None:
        with pytest.raises(InvariantViolationError):
            SchemaMapper(V3).encode_artwork(Artwork(image_data=b"abc"))
        row = SchemaMapper(V3).encode_artwork(
            Artwork(hash="h", image_data=b"abc", format=ArtworkFormat.JPEG, is_corrupt=True)
        )
        assert row["format"] == "jpeg"
        assert row["isCorrupt"] == 1


# =============================================================================
# Beat grid blob
# =============================================================================


class TestBeatGrid:
    """Tests for the packed beatData codec."""

    def test_layout_is_little_endian(self) -> None:
        blob = encode_beat_grid((BeatMarker(1.0, 120.0),))
        assert blob == struct.pack("<I", 1) + struct.pack("<dd", 1.0, 120.0)

    def test_empty_grid_is_null(self) -> None:
        assert encode_beat_grid(()) is None
        assert decode_beat_grid(None) == ()
        assert decode_beat_grid(b"") == ()

    def test_truncated_blob(self) -> None:
        blob = struct.pack("<I", 3) + struct.pack("<dd", 0.0, 120.0)
        with pytest.raises(InvariantViolationError, match="expected"):
            decode_beat_grid(blob)

    def test_unordered_blob(self) -> None:
        blob = struct.pack("<I", 2) + struct.pack("<dddd", 5.0, 120.0, 1.0, 120.0)
        with pytest.raises(InvariantViolationError, match="not ordered"):
            decode_beat_grid(blob)
        # Lenient reads keep the stored order
        assert [m.position for m in decode_beat_grid(blob, strict=False)] == [5.0, 1.0]
