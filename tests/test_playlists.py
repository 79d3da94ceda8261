"""
Tests for enginedb.core.playlists (M3U import into crates).

These tests verify:
- M3U parsing: comments, file URLs and relative entries
- crate paths: nested titles, trailing separator, creation of missing crates
- append keeps existing members and ignores duplicates
- replace drops the old members and numbers the new ones from zero
- an unknown track path rolls the whole import back
"""

from __future__ import annotations

from pathlib import Path

import pytest

from enginedb.core import CoreError, InvariantViolationError
from enginedb.core.checker import FindingKind
from enginedb.core.db.models import Crate, Track
from enginedb.core.library import Library
from enginedb.core.playlists import (
    ImportMode,
    library_relative_path,
    read_m3u,
    split_crate_path,
)
from enginedb.core.transaction import Transaction


class TestReadM3u:
    def test_comments_and_blank_lines_skipped(self, tmp_path: Path) -> None:
        lines = ["#EXTM3U", "", "#EXTINF:215,Artist - A", "a.mp3", "  sub/b.flac  "]
        assert read_m3u(lines, tmp_path) == [tmp_path / "a.mp3", tmp_path / "sub" / "b.flac"]

    def test_absolute_and_file_url_entries(self, tmp_path: Path) -> None:
        lines = [str(tmp_path / "a.mp3"), "file:///music/My%20Track.mp3"]
        assert read_m3u(lines) == [tmp_path / "a.mp3", Path("/music/My Track.mp3")]

    def test_relative_entry_needs_base(self) -> None:
        with pytest.raises(ValueError, match="line 2"):
            read_m3u(["#EXTM3U", "a.mp3"])

    def test_remote_url_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="not a local file URL"):
            read_m3u(["http://example.com/a.mp3"], tmp_path)


class TestCratePath:
    def test_split(self) -> None:
        assert split_crate_path("Sets;Warm up") == ["Sets", "Warm up"]
        assert split_crate_path("Sets;Warm up;") == ["Sets", "Warm up"]
        assert split_crate_path("Single") == ["Single"]

    @pytest.mark.parametrize("path", ["", ";", "Sets;;Warm up", "Sets; ;"])
    def test_invalid(self, path: str) -> None:
        with pytest.raises(InvariantViolationError):
            split_crate_path(path)

    def test_library_relative_path(self, tmp_path: Path) -> None:
        library_dir = tmp_path / "Database2"
        assert library_relative_path(library_dir, tmp_path / "Music" / "a.mp3") == "../Music/a.mp3"
        assert library_relative_path(library_dir, library_dir / "x" / ".." / "b.mp3") == "b.mp3"


@pytest.fixture
async def music(library: Library) -> dict[str, int]:
    """Three tracks stored the way the vendor application stores them."""

    async def _seed(tx: Transaction) -> dict[str, int]:
        return {
            name: await library.tracks.insert(tx, Track(path=f"../Music/{name}.mp3", title=name))
            for name in ("a", "b", "c")
        }

    return await library.coordinator.run(_seed)


def _files(library: Library, *names: str) -> list[Path]:
    return [library.library_dir.parent / "Music" / f"{name}.mp3" for name in names]


async def _members(library: Library, crate_id: int) -> list[tuple[int, int]]:
    async def _load(tx: Transaction) -> list[tuple[int, int]]:
        return [(m.track_id, m.ordinal) async for m in library.memberships.find_by(tx, "crate", crate_id)]

    return await library.coordinator.run(_load, read_only=True)


class TestImportPlaylist:
    """Tests for Library.import_playlist."""

    async def test_creates_nested_crates(self, library: Library, music: dict[str, int]) -> None:
        result = await library.import_playlist("Sets;Warm up;", _files(library, "b", "a"))
        assert (result.added, result.ignored, result.created_crates) == (2, 0, 2)
        assert await _members(library, result.crate_id) == [(music["b"], 0), (music["a"], 1)]

        crate = await library.coordinator.run(
            lambda tx: library.crates.get_required(tx, result.crate_id), read_only=True
        )
        assert crate.title == "Warm up"
        parent = await library.coordinator.run(
            lambda tx: library.crates.get_required(tx, crate.parent_id), read_only=True
        )
        assert (parent.title, parent.parent_id) == ("Sets", None)

    async def test_append_ignores_duplicates(self, library: Library, music: dict[str, int]) -> None:
        first = await library.import_playlist("Set", _files(library, "a"))
        again = await library.import_playlist("Set", _files(library, "a", "c", "c"))
        assert again.crate_id == first.crate_id
        assert (again.added, again.ignored, again.created_crates) == (1, 2, 0)
        assert await _members(library, first.crate_id) == [(music["a"], 0), (music["c"], 1)]

    async def test_append_after_gap(self, library: Library, music: dict[str, int], sql) -> None:
        crate_id = await library.coordinator.run(lambda tx: library.crates.insert(tx, Crate(title="Set")))
        await sql(
            'INSERT INTO "PlaylistEntity" ("listId", "trackId", "membershipReference") '
            "VALUES (?, ?, 0), (?, ?, 3)",
            (crate_id, music["a"], crate_id, music["b"]),
        )
        await library.import_playlist("Set", _files(library, "c"))
        assert await _members(library, crate_id) == [
            (music["a"], 0),
            (music["b"], 1),
            (music["c"], 2),
        ]
        assert not await library.check([FindingKind.ORDINAL_GAP])

    async def test_replace(self, library: Library, music: dict[str, int]) -> None:
        first = await library.import_playlist("Set", _files(library, "a", "b"))
        result = await library.import_playlist("Set", _files(library, "c", "a"), mode=ImportMode.REPLACE)
        assert (result.added, result.removed) == (2, 2)
        assert await _members(library, first.crate_id) == [(music["c"], 0), (music["a"], 1)]

    async def test_unknown_track_rolls_back(self, library: Library, music: dict[str, int]) -> None:
        files = [*_files(library, "a"), library.library_dir / "missing.mp3"]
        with pytest.raises(CoreError, match='unknown track path "missing.mp3"'):
            await library.import_playlist("New;Crate", files)
        assert await library.coordinator.run(library.crates.count, read_only=True) == 0
        assert await library.coordinator.run(library.memberships.count, read_only=True) == 0

    async def test_existing_crate_is_found_not_duplicated(
        self, library: Library, music: dict[str, int]
    ) -> None:
        async def _seed(tx: Transaction) -> int:
            root = await library.crates.insert(tx, Crate(title="Sets"))
            return await library.crates.insert(tx, Crate(title="Peak", parent_id=root))

        peak = await library.coordinator.run(_seed)
        result = await library.import_playlist("Sets;Peak", _files(library, "b"))
        assert result.crate_id == peak
        assert result.created_crates == 0
        # Same title at the root is a different crate
        other = await library.import_playlist("Peak", _files(library, "b"))
        assert other.crate_id != peak
        assert other.created_crates == 1
