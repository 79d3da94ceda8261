"""
Tests for the command line entry point (enginedb.__main__).

`main()` drives its own event loop, so these tests are synchronous and set
up libraries with the sqlite3 module directly.
"""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path

import pytest

from enginedb.__main__ import COMMANDS, main, parse_args
from enginedb.core.db.models import SchemaVersion
from enginedb.core.library import create_library


@pytest.fixture
def db_file(tmp_path: Path) -> Path:
    path = tmp_path / "Database2" / "m.db"
    path.parent.mkdir()
    asyncio.run(create_library(path))
    return path


def _exec(path: Path, *statements: str) -> None:
    conn = sqlite3.connect(path)
    try:
        for statement in statements:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def damaged_file(db_file: Path) -> Path:
    """Two tracks in a crate with an ordinal gap plus one dangling membership."""
    _exec(
        db_file,
        'INSERT INTO "Track" ("path") VALUES (\'../Music/a.mp3\')',
        'INSERT INTO "Track" ("path") VALUES (\'../Music/b.mp3\')',
        'INSERT INTO "Playlist" ("title") VALUES (\'Set\')',
        'INSERT INTO "PlaylistEntity" ("listId", "trackId", "membershipReference") VALUES (1, 1, 0)',
        'INSERT INTO "PlaylistEntity" ("listId", "trackId", "membershipReference") VALUES (1, 2, 4)',
        'INSERT INTO "PlaylistEntity" ("listId", "trackId", "membershipReference") VALUES (1, 9, 5)',
    )
    return db_file


class TestParseArgs:
    def test_every_command_takes_a_database(self) -> None:
        for command in COMMANDS:
            args = parse_args([command, "m.db"])
            assert args.command == command
            assert args.database == Path("m.db")

    def test_repair_kinds_repeatable(self) -> None:
        args = parse_args(
            ["repair", "m.db", "--repair", "ordinal_gap,cyclic_relation", "--repair", "duplicate_identity"]
        )
        assert args.kinds == ["ordinal_gap,cyclic_relation", "duplicate_identity"]
        assert args.dry_run is False

    def test_global_options(self) -> None:
        args = parse_args(["-v", "--concurrency", "2", "optimize", "m.db"])
        assert args.verbose
        assert args.concurrency == 2


class TestMain:
    """Exit codes and output of `enginedb <command>`."""

    def test_info(self, db_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["info", str(db_file)]) == 0
        out = capsys.readouterr().out
        assert "schema:   3.0.0" in out
        assert "tracks:" in out

    def test_analyze_clean(self, db_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["analyze", str(db_file)]) == 0
        assert "0 findings" in capsys.readouterr().out

    def test_analyze_then_repair(self, damaged_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["analyze", str(damaged_file)]) == 1
        out = capsys.readouterr().out
        assert "dangling_reference" in out
        assert "ordinal_gap" in out

        assert main(["repair", "--dry-run", str(damaged_file)]) == 0
        assert "would repair" in capsys.readouterr().out
        assert main(["analyze", str(damaged_file)]) == 1

        assert main(["repair", str(damaged_file)]) == 0
        assert "0 failed" in capsys.readouterr().out
        assert main(["analyze", str(damaged_file)]) == 0

    def test_analyze_selected_kinds(self, damaged_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["analyze", str(damaged_file), "--repair", "cyclic_relation"]) == 0
        assert "0 findings" in capsys.readouterr().out

    def test_unknown_kind(self, db_file: Path) -> None:
        assert main(["repair", str(db_file), "--repair", "everything"]) == 1

    def test_missing_database(self, tmp_path: Path) -> None:
        assert main(["info", str(tmp_path / "missing.db")]) == 1

    def test_find_missing_tracks(self, damaged_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["find-missing-tracks", str(damaged_file)]) == 1
        out = capsys.readouterr().out
        assert "track 1: missing" in out
        assert "2 track file issues" in out

    def test_delete_empty_crates(self, db_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        _exec(db_file, 'INSERT INTO "Playlist" ("title") VALUES (\'Empty\')')
        assert main(["delete-empty-crates", "--dry-run", str(db_file)]) == 0
        assert "would run delete:crate:1" in capsys.readouterr().out
        assert main(["delete-empty-crates", str(db_file)]) == 0
        assert "1 succeeded" in capsys.readouterr().out

    def test_upgrade_and_optimize(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        path = tmp_path / "old.db"
        asyncio.run(create_library(path, version=SchemaVersion(2, 20, 1)))
        assert main(["upgrade", str(path)]) == 0
        assert "schema 2.20.1 -> 3.0.0" in capsys.readouterr().out
        assert main(["optimize", str(path)]) == 0
        assert main(["info", str(path)]) == 0
        assert "schema:   3.0.0" in capsys.readouterr().out

    def test_import_playlist(self, damaged_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        music = damaged_file.parent.parent / "Music"
        music.mkdir()
        m3u = music / "Warm up.m3u"
        m3u.write_text("#EXTM3U\n#EXTINF:215,A\na.mp3\nb.mp3\n", encoding="utf-8")

        assert main(["import-playlist", str(damaged_file), "--m3u-file", str(m3u)]) == 0
        assert "2 added, 0 ignored, 0 removed, 1 crates created" in capsys.readouterr().out
        assert main(["import-playlist", str(damaged_file), "--m3u-file", str(m3u)]) == 0
        assert "0 added, 2 ignored" in capsys.readouterr().out

        m3u.write_text("b.mp3\n", encoding="utf-8")
        args = ["import-playlist", str(damaged_file), "--m3u-file", str(m3u), "--mode", "replace"]
        assert main(args) == 0
        assert "1 added, 0 ignored, 2 removed" in capsys.readouterr().out

        conn = sqlite3.connect(damaged_file)
        try:
            rows = conn.execute(
                'SELECT pe."trackId", pe."membershipReference" FROM "PlaylistEntity" AS pe '
                'JOIN "Playlist" AS p ON p."id" = pe."listId" WHERE p."title" = ?',
                ("Warm up",),
            ).fetchall()
        finally:
            conn.close()
        assert rows == [(2, 0)]

    def test_import_playlist_unknown_track(self, db_file: Path, tmp_path: Path) -> None:
        m3u = tmp_path / "set.m3u"
        m3u.write_text("/nowhere/x.mp3\n", encoding="utf-8")
        assert main(["import-playlist", str(db_file), "--m3u-file", str(m3u)]) == 1
        conn = sqlite3.connect(db_file)
        try:
            assert conn.execute('SELECT COUNT(*) FROM "Playlist"').fetchone() == (0,)
        finally:
            conn.close()

    def test_housekeeping(self, db_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        _exec(
            db_file,
            'INSERT INTO "AlbumArt" ("hash") VALUES (\'a\')',
            'INSERT INTO "AlbumArt" ("hash") VALUES (\'b\')',
        )
        assert main(["housekeeping", str(db_file)]) == 0
        out = capsys.readouterr().out
        assert "purge unused artwork: 2 succeeded" in out
        assert "shrink artwork: 0 succeeded" in out
        assert "optimize: done" in out
