"""
Tests for enginedb.core.repository.

These tests verify:
- CRUD round trips through a real library file
- uniqueness checks raise ConflictError inside the caller's transaction
- cascade rules for track, artwork and crate deletes
- find_by relations honor their documented ordering
"""

from __future__ import annotations

from dataclasses import replace

import pytest

from enginedb.core import (
    ConflictError,
    InvariantViolationError,
    NotFoundError,
    ReferentialViolationError,
)
from enginedb.core.db.mapper import encode_beat_grid
from enginedb.core.db.models import (
    Artwork,
    ArtworkFormat,
    BeatMarker,
    Crate,
    CuePoint,
    EntityType,
    Membership,
    Track,
)
from enginedb.core.library import Library
from enginedb.core.transaction import Transaction


async def _crate(library: Library, title: str, parent_id: int | None = None) -> int:
    return await library.coordinator.run(
        lambda tx: library.crates.insert(tx, Crate(title=title, parent_id=parent_id))
    )


async def _fill_crate(library: Library, crate_id: int, track_ids: list[int]) -> None:
    async def _scope(tx: Transaction) -> None:
        for track_id in track_ids:
            await library.memberships.append(tx, crate_id, track_id)

    await library.coordinator.run(_scope)


# =============================================================================
# Tracks
# =============================================================================


class TestTrackRepository:
    """Tests for TrackRepository."""

    async def test_insert_and_get_with_children(self, library: Library) -> None:
        track = Track(
            path="../Music/intro.flac",
            filename="intro.flac",
            length=312.0,
            sample_rate=44100,
            title="Intro",
            artist="Someone",
            beat_grid=(BeatMarker(0.0, 122.0), BeatMarker(60.0, 123.0)),
            cue_points=(
                CuePoint(track_id=0, index=1, position=32.0, label="Drop"),
                CuePoint(track_id=0, index=0, position=0.5, label="Start"),
            ),
            last_edit_time=1700000000,
        )
        track_id = await library.coordinator.run(lambda tx: library.tracks.insert(tx, track))

        stored = await library.coordinator.run(
            lambda tx: library.tracks.get_required(tx, track_id), read_only=True
        )
        assert stored.id == track_id
        assert stored.title == "Intro"
        assert stored.beat_grid == track.beat_grid
        # Cue points come back ordered by index
        assert [c.label for c in stored.cue_points] == ["Start", "Drop"]
        assert all(c.track_id == track_id for c in stored.cue_points)

    async def test_get_missing_returns_none(self, library: Library) -> None:
        assert await library.coordinator.run(lambda tx: library.tracks.get(tx, 999)) is None
        with pytest.raises(NotFoundError) as exc:
            await library.coordinator.run(lambda tx: library.tracks.get_required(tx, 999))
        assert exc.value.entity_id == 999

    async def test_insert_with_existing_id_conflicts(self, library: Library, add_tracks) -> None:
        (track_id,) = await add_tracks(1)
        with pytest.raises(ConflictError):
            await library.coordinator.run(
                lambda tx: library.tracks.insert(tx, Track(path="x.mp3", id=track_id))
            )

    async def test_update_replaces_cue_points(self, library: Library, add_tracks) -> None:
        (track_id,) = await add_tracks(1)

        async def _edit(tx: Transaction) -> None:
            track = await library.tracks.get_required(tx, track_id)
            cues = (CuePoint(track_id=track_id, index=3, position=10.0),)
            await library.tracks.update(tx, replace(track, cue_points=cues))

        await library.coordinator.run(_edit)

        cues = await library.coordinator.run(lambda tx: library.cue_points.for_track(tx, track_id))
        assert [c.index for c in cues] == [3]

    async def test_update_keeps_cue_point_ids(self, library: Library, add_tracks) -> None:
        (track_id,) = await add_tracks(1)

        async def _seed(tx: Transaction) -> list[int]:
            return [
                await library.cue_points.insert(
                    tx, CuePoint(track_id=track_id, index=i, position=float(i))
                )
                for i in range(3)
            ]

        first, second, third = await library.coordinator.run(_seed)

        async def _edit(tx: Transaction) -> None:
            track = await library.tracks.get_required(tx, track_id)
            cues = (
                replace(track.cue_points[0], label="Intro"),
                replace(track.cue_points[2], position=30.0),
                CuePoint(track_id=track_id, index=7, position=70.0),
            )
            await library.tracks.update(tx, replace(track, title="Edited", cue_points=cues))

        await library.coordinator.run(_edit)

        cues = await library.coordinator.run(lambda tx: library.cue_points.for_track(tx, track_id))
        assert [(c.index, c.id) for c in cues[:2]] == [(0, first), (2, third)]
        assert cues[0].label == "Intro"
        assert cues[1].position == 30.0
        assert cues[2].index == 7
        assert cues[2].id not in {first, second, third}

    async def test_damaged_children_still_readable(self, library: Library, add_tracks, sql) -> None:
        """Invariants are enforced on write; reads return what is stored."""
        dup, unordered, truncated = await add_tracks(3)
        cue_sql = 'INSERT INTO "CuePoint" ("trackId", "cueIndex", "position") VALUES (?, ?, ?)'
        await sql(cue_sql, (dup, 5, 1.0))
        await sql(cue_sql, (dup, 5, 2.0))
        perf_sql = 'INSERT INTO "PerformanceData" ("trackId", "beatData") VALUES (?, ?)'
        blob = encode_beat_grid((BeatMarker(0.0, 120.0), BeatMarker(10.0, 120.0)))
        swapped = blob[:4] + blob[20:] + blob[4:20]
        await sql(perf_sql, (unordered, swapped))
        await sql(perf_sql, (truncated, b"\x02\x00\x00\x00\x00"))

        async def _read(tx: Transaction) -> list[Track]:
            return [track async for track in library.tracks.find_by(tx, "all")]

        tracks = {t.id: t for t in await library.coordinator.run(_read, read_only=True)}
        assert [c.index for c in tracks[dup].cue_points] == [5, 5]
        assert [m.position for m in tracks[unordered].beat_grid] == [10.0, 0.0]
        assert tracks[truncated].beat_grid == ()

        with pytest.raises(InvariantViolationError, match="duplicate cue point index 5"):
            await library.coordinator.run(lambda tx: library.tracks.update(tx, tracks[dup]))

    async def test_update_missing_track(self, library: Library) -> None:
        with pytest.raises(NotFoundError):
            await library.coordinator.run(
                lambda tx: library.tracks.update(tx, Track(path="x.mp3", id=42))
            )

    async def test_delete_with_membership_requires_cascade(
        self, library: Library, add_tracks
    ) -> None:
        first, second, third = await add_tracks(3)
        crate_id = await _crate(library, "Peak")
        await _fill_crate(library, crate_id, [first, second, third])

        with pytest.raises(ReferentialViolationError):
            await library.coordinator.run(lambda tx: library.tracks.delete(tx, second))
        # Nothing was removed by the failed attempt
        assert await library.coordinator.run(lambda tx: library.tracks.exists(tx, second))

        await library.coordinator.run(lambda tx: library.tracks.delete(tx, second, cascade=True))

        remaining = await library.coordinator.run(
            lambda tx: library.memberships.ordinals(tx, crate_id), read_only=True
        )
        assert [ordinal for _id, ordinal in remaining] == [0, 1]
        tracks = await library.coordinator.run(
            lambda tx: _collect(library.tracks.find_by(tx, "crate", crate_id)), read_only=True
        )
        assert [t.id for t in tracks] == [first, third]

    async def test_delete_removes_owned_rows(self, library: Library) -> None:
        track = Track(
            path="a.mp3",
            beat_grid=(BeatMarker(0.0, 120.0),),
            cue_points=(CuePoint(track_id=0, index=0, position=1.0),),
        )
        track_id = await library.coordinator.run(lambda tx: library.tracks.insert(tx, track))
        await library.coordinator.run(lambda tx: library.tracks.delete(tx, track_id))

        async def _state(tx: Transaction) -> tuple[int, bool]:
            return (
                await library.cue_points.count(tx),
                await library.performance.exists(tx, track_id),
            )

        assert await library.coordinator.run(_state, read_only=True) == (0, False)

    async def test_find_by_artwork(self, library: Library) -> None:
        async def _scope(tx: Transaction) -> None:
            art = await library.artwork.insert(tx, Artwork(hash="h1"))
            ids = []
            for name in ("b", "a", "c"):
                ids.append(await library.tracks.insert(tx, Track(path=f"{name}.mp3", artwork_id=art)))
            await library.tracks.insert(tx, Track(path="other.mp3"))
            found = await _collect(library.tracks.find_by(tx, "artwork", art))
            assert [t.id for t in found] == sorted(ids)

        await library.coordinator.run(_scope)

    async def test_unknown_relation(self, library: Library) -> None:
        with pytest.raises(ValueError, match="unknown relation"):
            await library.coordinator.run(
                lambda tx: _collect(library.tracks.find_by(tx, "genre", 1)), read_only=True
            )


# =============================================================================
# Cue points
# =============================================================================


class TestCuePointRepository:
    """Tests for CuePointRepository."""

    async def test_duplicate_index_conflicts(self, library: Library, add_tracks) -> None:
        (track_id,) = await add_tracks(1)
        await library.coordinator.run(
            lambda tx: library.cue_points.insert(tx, CuePoint(track_id=track_id, index=5, position=1.0))
        )
        with pytest.raises(ConflictError, match="index 5"):
            await library.coordinator.run(
                lambda tx: library.cue_points.insert(
                    tx, CuePoint(track_id=track_id, index=5, position=9.0)
                )
            )
        count = await library.coordinator.run(library.cue_points.count, read_only=True)
        assert count == 1

    async def test_same_index_on_other_track_is_fine(self, library: Library, add_tracks) -> None:
        first, second = await add_tracks(2)

        async def _scope(tx: Transaction) -> None:
            await library.cue_points.insert(tx, CuePoint(track_id=first, index=0, position=1.0))
            await library.cue_points.insert(tx, CuePoint(track_id=second, index=0, position=1.0))

        await library.coordinator.run(_scope)

    async def test_insert_for_missing_track(self, library: Library) -> None:
        with pytest.raises(NotFoundError):
            await library.coordinator.run(
                lambda tx: library.cue_points.insert(tx, CuePoint(track_id=77, index=0, position=0.0))
            )

    async def test_update_into_taken_index(self, library: Library, add_tracks) -> None:
        (track_id,) = await add_tracks(1)

        async def _scope(tx: Transaction) -> None:
            await library.cue_points.insert(tx, CuePoint(track_id=track_id, index=0, position=1.0))
            cue_id = await library.cue_points.insert(
                tx, CuePoint(track_id=track_id, index=1, position=2.0)
            )
            await library.cue_points.update(
                tx, CuePoint(track_id=track_id, index=0, position=2.0, id=cue_id)
            )

        with pytest.raises(ConflictError):
            await library.coordinator.run(_scope)


# =============================================================================
# Memberships
# =============================================================================


class TestMembershipRepository:
    """Tests for MembershipRepository."""

    async def test_append_assigns_next_ordinal(self, library: Library, add_tracks) -> None:
        ids = await add_tracks(3)
        crate_id = await _crate(library, "Warmup")
        await _fill_crate(library, crate_id, ids)

        members = await library.coordinator.run(
            lambda tx: _collect(library.memberships.find_by(tx, "crate", crate_id)), read_only=True
        )
        assert [(m.track_id, m.ordinal) for m in members] == list(zip(ids, range(3)))

    async def test_track_twice_in_crate_conflicts(self, library: Library, add_tracks) -> None:
        (track_id,) = await add_tracks(1)
        crate_id = await _crate(library, "Warmup")
        await _fill_crate(library, crate_id, [track_id])
        with pytest.raises(ConflictError, match="already in crate"):
            await _fill_crate(library, crate_id, [track_id])

    async def test_taken_ordinal_conflicts(self, library: Library, add_tracks) -> None:
        first, second = await add_tracks(2)
        crate_id = await _crate(library, "Warmup")
        await _fill_crate(library, crate_id, [first])
        with pytest.raises(ConflictError, match="ordinal 0"):
            await library.coordinator.run(
                lambda tx: library.memberships.insert(
                    tx, Membership(crate_id=crate_id, track_id=second, ordinal=0)
                )
            )

    async def test_ordinal_gap_rejected(self, library: Library, add_tracks) -> None:
        (track_id,) = await add_tracks(1)
        crate_id = await _crate(library, "Warmup")
        with pytest.raises(InvariantViolationError, match="gap"):
            await library.coordinator.run(
                lambda tx: library.memberships.insert(
                    tx, Membership(crate_id=crate_id, track_id=track_id, ordinal=2)
                )
            )

    async def test_missing_crate_or_track(self, library: Library, add_tracks) -> None:
        (track_id,) = await add_tracks(1)
        crate_id = await _crate(library, "Warmup")
        with pytest.raises(NotFoundError) as exc:
            await _fill_crate(library, 404, [track_id])
        assert exc.value.entity == "crate"
        with pytest.raises(NotFoundError) as exc:
            await _fill_crate(library, crate_id, [404])
        assert exc.value.entity == "track"

    async def test_delete_closes_gap(self, library: Library, add_tracks) -> None:
        ids = await add_tracks(4)
        crate_id = await _crate(library, "Warmup")
        await _fill_crate(library, crate_id, ids)

        async def _delete_second(tx: Transaction) -> None:
            members = await _collect(library.memberships.find_by(tx, "crate", crate_id))
            await library.memberships.delete(tx, members[1].id)

        await library.coordinator.run(_delete_second)
        tracks = await library.coordinator.run(
            lambda tx: _collect(library.tracks.find_by(tx, "crate", crate_id)), read_only=True
        )
        ordinals = await library.coordinator.run(
            lambda tx: library.memberships.ordinals(tx, crate_id), read_only=True
        )
        assert [t.id for t in tracks] == [ids[0], ids[2], ids[3]]
        assert [o for _id, o in ordinals] == [0, 1, 2]


# =============================================================================
# Crates
# =============================================================================


class TestCrateRepository:
    """Tests for CrateRepository."""

    async def test_children_and_roots(self, library: Library) -> None:
        root = await _crate(library, "Sets")
        other = await _crate(library, "Genres")
        child_b = await _crate(library, "2024", root)
        child_a = await _crate(library, "2023", root)

        async def _scope(tx: Transaction) -> tuple[list[int], list[int]]:
            roots = [c.id for c in await _collect(library.crates.find_by(tx, "parent", None))]
            children = [c.id for c in await _collect(library.crates.find_by(tx, "parent", root))]
            return roots, children

        roots, children = await library.coordinator.run(_scope, read_only=True)
        assert roots == [root, other]
        assert children == [child_b, child_a]

    async def test_missing_parent(self, library: Library) -> None:
        with pytest.raises(NotFoundError):
            await _crate(library, "Orphan", parent_id=55)

    async def test_move_under_descendant_is_rejected(self, library: Library) -> None:
        top = await _crate(library, "Top")
        middle = await _crate(library, "Middle", top)
        bottom = await _crate(library, "Bottom", middle)
        with pytest.raises(InvariantViolationError, match="cycle"):
            await library.coordinator.run(
                lambda tx: library.crates.update(tx, Crate(title="Top", parent_id=bottom, id=top))
            )

    async def test_delete_non_empty_requires_cascade(self, library: Library, add_tracks) -> None:
        (track_id,) = await add_tracks(1)
        top = await _crate(library, "Top")
        child = await _crate(library, "Child", top)
        grandchild = await _crate(library, "Grandchild", child)
        await _fill_crate(library, grandchild, [track_id])

        with pytest.raises(ReferentialViolationError):
            await library.coordinator.run(lambda tx: library.crates.delete(tx, top))

        await library.coordinator.run(lambda tx: library.crates.delete(tx, top, cascade=True))

        async def _state(tx: Transaction) -> tuple[int, int, bool]:
            return (
                await library.crates.count(tx),
                await library.memberships.count(tx),
                await library.tracks.exists(tx, track_id),
            )

        # Tracks are never owned by crates
        assert await library.coordinator.run(_state, read_only=True) == (0, 0, True)

    async def test_find_empty(self, library: Library, add_tracks) -> None:
        (track_id,) = await add_tracks(1)
        parent = await _crate(library, "Parent")
        empty_child = await _crate(library, "Empty", parent)
        full = await _crate(library, "Full")
        lonely = await _crate(library, "Lonely")
        await _fill_crate(library, full, [track_id])

        empty = await library.coordinator.run(library.crates.find_empty, read_only=True)
        assert empty == [empty_child, lonely]

    async def test_edit_time_round_trip(self, library: Library) -> None:
        crate_id = await library.coordinator.run(
            lambda tx: library.crates.insert(tx, Crate(title="Stamped", last_edit_time=123))
        )
        crate = await library.coordinator.run(
            lambda tx: library.crates.get_required(tx, crate_id), read_only=True
        )
        assert crate.last_edit_time == 123

    async def test_v2_library_has_no_edit_time(self, library_v2: Library) -> None:
        with pytest.raises(InvariantViolationError):
            await library_v2.coordinator.run(
                lambda tx: library_v2.crates.insert(tx, Crate(title="New", last_edit_time=1))
            )
        crate_id = await library_v2.coordinator.run(
            lambda tx: library_v2.crates.insert(tx, Crate(title="New"))
        )
        assert crate_id > 0


# =============================================================================
# Artwork
# =============================================================================


class TestArtworkRepository:
    """Tests for ArtworkRepository."""

    async def test_delete_in_use_requires_cascade(self, library: Library) -> None:
        async def _setup(tx: Transaction) -> tuple[int, int]:
            art = await library.artwork.insert(
                tx, Artwork(hash="abc", image_data=b"data", format=ArtworkFormat.JPEG)
            )
            track = await library.tracks.insert(tx, Track(path="a.mp3", artwork_id=art))
            return art, track

        art, track = await library.coordinator.run(_setup)
        with pytest.raises(ReferentialViolationError):
            await library.coordinator.run(lambda tx: library.artwork.delete(tx, art))

        await library.coordinator.run(lambda tx: library.artwork.delete(tx, art, cascade=True))
        stored = await library.coordinator.run(
            lambda tx: library.tracks.get_required(tx, track), read_only=True
        )
        assert stored.artwork_id is None

    async def test_reference_count_and_unused(self, library: Library) -> None:
        async def _scope(tx: Transaction) -> None:
            used = await library.artwork.insert(tx, Artwork(hash="u"))
            unused = await library.artwork.insert(tx, Artwork(hash="n"))
            for name in ("a", "b"):
                await library.tracks.insert(tx, Track(path=f"{name}.mp3", artwork_id=used))
            assert await library.artwork.reference_count(tx, used) == 2
            assert await library.artwork.unused_ids(tx) == [unused]

        await library.coordinator.run(_scope)

    async def test_find_by_hash(self, library: Library) -> None:
        async def _scope(tx: Transaction) -> list[int]:
            await library.artwork.insert(tx, Artwork(hash="x"))
            await library.artwork.insert(tx, Artwork(hash="y"))
            await library.artwork.insert(tx, Artwork(hash="x"))
            return [a.id for a in await _collect(library.artwork.find_by(tx, "hash", "x"))]

        assert await library.coordinator.run(_scope) == [1, 3]


# =============================================================================
# Library information
# =============================================================================


class TestInformationRepository:
    async def test_get_and_update(self, library: Library) -> None:
        info = library.info
        await library.coordinator.run(
            lambda tx: library.information.update(
                tx, replace(info, uuid="renamed", current_played_indicator=42)
            )
        )
        stored = await library.coordinator.run(
            lambda tx: library.information.get_required(tx, info.id), read_only=True
        )
        assert stored.uuid == "renamed"
        assert stored.current_played_indicator == 42
        assert stored.schema_version == info.schema_version

    async def test_missing_row(self, library: Library) -> None:
        assert (
            await library.coordinator.run(
                lambda tx: library.information.get(tx, 99), read_only=True
            )
            is None
        )
        with pytest.raises(NotFoundError):
            await library.coordinator.run(
                lambda tx: library.information.update(tx, replace(library.info, id=99))
            )

    async def test_empty_uuid_rejected(self, library: Library) -> None:
        with pytest.raises(InvariantViolationError):
            await library.coordinator.run(
                lambda tx: library.information.update(tx, replace(library.info, uuid=""))
            )


# =============================================================================
# Checkpoints
# =============================================================================


class TestCheckpointRepository:
    """The checkpoint table is created on first save."""

    async def test_load_without_table(self, library: Library) -> None:
        value = await library.coordinator.run(
            lambda tx: library.checkpoints.load(tx, "job", EntityType.TRACK), read_only=True
        )
        assert value is None

    async def test_save_load_clear(self, library: Library) -> None:
        await library.coordinator.run(
            lambda tx: library.checkpoints.save(tx, "job", EntityType.TRACK, 10)
        )
        await library.coordinator.run(
            lambda tx: library.checkpoints.save(tx, "job", EntityType.TRACK, 20)
        )
        value = await library.coordinator.run(
            lambda tx: library.checkpoints.load(tx, "job", EntityType.TRACK), read_only=True
        )
        assert value == 20
        await library.coordinator.run(
            lambda tx: library.checkpoints.clear(tx, "job", EntityType.TRACK)
        )
        value = await library.coordinator.run(
            lambda tx: library.checkpoints.load(tx, "job", EntityType.TRACK), read_only=True
        )
        assert value is None


async def _collect(iterator):
    return [item async for item in iterator]
