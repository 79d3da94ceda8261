"""
Database schema declarations for supported library versions.

The vendor application does not publish a formal schema. What we support is
declared here, per schema version, as the exact set of columns the engine
reads and writes. This declaration is effectively the wire format: anything
that does not match it is rejected before data is touched.

Design notes:
- The version lives in the single `Information` row (major/minor/patch).
- Only the major/minor pairs in `SUPPORTED_VERSIONS` are accepted (any patch).
- SQL statements are derived once from the declared constants below. They are
  *static* strings; user input never reaches SQL text, only bound parameters.
- `create_schema()` builds an empty library with the declared layout. It is
  used for fresh libraries and by the tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Literal

import aiosqlite

from enginedb.core import SchemaMismatchError
from enginedb.core.db.models import LibraryInformation, SchemaVersion, UnsupportedSchema

Affinity = Literal["INTEGER", "REAL", "TEXT", "BLOB"]

# Table names (vendor layout)
INFORMATION: Final[str] = "Information"
TRACK: Final[str] = "Track"
PERFORMANCE_DATA: Final[str] = "PerformanceData"
CUE_POINT: Final[str] = "CuePoint"
ALBUM_ART: Final[str] = "AlbumArt"
PLAYLIST: Final[str] = "Playlist"
PLAYLIST_ENTITY: Final[str] = "PlaylistEntity"

# Engine-owned bookkeeping for chunked transactions (not part of the vendor layout)
CHECKPOINT: Final[str] = "EnginedbCheckpoint"


@dataclass(frozen=True, slots=True)
class Column:
    name: str
    affinity: Affinity
    required: bool = False


@dataclass(frozen=True, slots=True)
class TableLayout:
    """
    Declared layout of one table for one schema version.

    `key` is the primary key column. It is excluded from INSERT/UPDATE column
    lists so the storage engine allocates ids.
    """

    name: str
    key: str
    columns: tuple[Column, ...]

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    @property
    def data_columns(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns if c.name != self.key)

    @property
    def select_sql(self) -> str:
        cols = ", ".join(f'"{c}"' for c in self.column_names)
        return f'SELECT {cols} FROM "{self.name}"'

    def qualified_columns(self, alias: str) -> str:
        """Column list for joins, e.g. `t."id" AS "id", ...`."""
        return ", ".join(f'{alias}."{c}" AS "{c}"' for c in self.column_names)

    @property
    def insert_sql(self) -> str:
        cols = ", ".join(f'"{c}"' for c in self.data_columns)
        params = ", ".join(f":{c}" for c in self.data_columns)
        return f'INSERT INTO "{self.name}" ({cols}) VALUES ({params})'

    @property
    def insert_with_key_sql(self) -> str:
        cols = ", ".join(f'"{c}"' for c in self.column_names)
        params = ", ".join(f":{c}" for c in self.column_names)
        return f'INSERT INTO "{self.name}" ({cols}) VALUES ({params})'

    @property
    def update_sql(self) -> str:
        assignments = ", ".join(f'"{c}" = :{c}' for c in self.data_columns)
        return f'UPDATE "{self.name}" SET {assignments} WHERE "{self.key}" = :{self.key}'


# ---------------------------------------------------------------------------
# Column declarations
# ---------------------------------------------------------------------------

_INFORMATION_COLUMNS: Final = (
    Column("id", "INTEGER", required=True),
    Column("uuid", "TEXT", required=True),
    Column("schemaVersionMajor", "INTEGER", required=True),
    Column("schemaVersionMinor", "INTEGER", required=True),
    Column("schemaVersionPatch", "INTEGER", required=True),
    Column("currentPlayedIndicator", "INTEGER"),
)

_TRACK_COLUMNS_V2: Final = (
    Column("id", "INTEGER", required=True),
    Column("path", "TEXT", required=True),
    Column("filename", "TEXT"),
    Column("length", "REAL"),
    Column("sampleRate", "INTEGER"),
    Column("title", "TEXT"),
    Column("artist", "TEXT"),
    Column("album", "TEXT"),
    Column("genre", "TEXT"),
    Column("albumArtId", "INTEGER"),
)

_TRACK_COLUMNS_V3: Final = (*_TRACK_COLUMNS_V2, Column("lastEditTime", "INTEGER"))

_PERFORMANCE_DATA_COLUMNS: Final = (
    Column("trackId", "INTEGER", required=True),
    Column("beatData", "BLOB"),
)

_CUE_POINT_COLUMNS: Final = (
    Column("id", "INTEGER", required=True),
    Column("trackId", "INTEGER", required=True),
    Column("cueIndex", "INTEGER", required=True),
    Column("position", "REAL", required=True),
    Column("label", "TEXT"),
    Column("color", "INTEGER"),
)

_ALBUM_ART_COLUMNS: Final = (
    Column("id", "INTEGER", required=True),
    Column("hash", "TEXT"),
    Column("albumArt", "BLOB"),
    Column("format", "TEXT"),
    Column("width", "INTEGER"),
    Column("height", "INTEGER"),
    Column("isCorrupt", "INTEGER", required=True),
)

_PLAYLIST_COLUMNS_V2: Final = (
    Column("id", "INTEGER", required=True),
    Column("title", "TEXT", required=True),
    Column("parentListId", "INTEGER"),
)

_PLAYLIST_COLUMNS_V3: Final = (*_PLAYLIST_COLUMNS_V2, Column("lastEditTime", "INTEGER"))

_PLAYLIST_ENTITY_COLUMNS: Final = (
    Column("id", "INTEGER", required=True),
    Column("listId", "INTEGER", required=True),
    Column("trackId", "INTEGER", required=True),
    Column("membershipReference", "INTEGER", required=True),
)


INFORMATION_LAYOUT: Final = TableLayout(INFORMATION, "id", _INFORMATION_COLUMNS)


def _layouts(track: tuple[Column, ...], playlist: tuple[Column, ...]) -> dict[str, TableLayout]:
    return {
        INFORMATION: INFORMATION_LAYOUT,
        TRACK: TableLayout(TRACK, "id", track),
        PERFORMANCE_DATA: TableLayout(PERFORMANCE_DATA, "trackId", _PERFORMANCE_DATA_COLUMNS),
        CUE_POINT: TableLayout(CUE_POINT, "id", _CUE_POINT_COLUMNS),
        ALBUM_ART: TableLayout(ALBUM_ART, "id", _ALBUM_ART_COLUMNS),
        PLAYLIST: TableLayout(PLAYLIST, "id", playlist),
        PLAYLIST_ENTITY: TableLayout(PLAYLIST_ENTITY, "id", _PLAYLIST_ENTITY_COLUMNS),
    }


# Keyed by (major, minor); any patch level of a supported pair is accepted.
SUPPORTED_VERSIONS: Final[dict[tuple[int, int], dict[str, TableLayout]]] = {
    (2, 20): _layouts(_TRACK_COLUMNS_V2, _PLAYLIST_COLUMNS_V2),
    (3, 0): _layouts(_TRACK_COLUMNS_V3, _PLAYLIST_COLUMNS_V3),
}

LATEST_VERSION: Final[SchemaVersion] = SchemaVersion(3, 0, 0)


def is_supported(version: SchemaVersion) -> bool:
    return (version.major, version.minor) in SUPPORTED_VERSIONS


def layouts_for(version: SchemaVersion) -> dict[str, TableLayout]:
    """Return the declared table layouts for a supported version."""
    try:
        return SUPPORTED_VERSIONS[(version.major, version.minor)]
    except KeyError:
        raise SchemaMismatchError(
            INFORMATION, None, f"unsupported schema version {version}"
        ) from None


def detect_version(info: LibraryInformation | None) -> SchemaVersion | UnsupportedSchema:
    """
    Determine the schema version of a library.

    Returns an `UnsupportedSchema` value (never a guess) if the version is unknown.
    """
    if info is None:
        return UnsupportedSchema(found=None, reason="no Information row")
    version = info.schema_version
    if not is_supported(version):
        supported = ", ".join(f"{major}.{minor}" for major, minor in SUPPORTED_VERSIONS)
        return UnsupportedSchema(
            found=version, reason=f"schema version {version} is not one of {supported}"
        )
    return version


def verify_tables(
    version: SchemaVersion, actual: dict[str, set[str]]
) -> None:
    """
    Compare the live table layout with the declaration for `version`.

    `actual` maps table name -> set of column names (as reported by SQLite).
    Extra columns are tolerated; missing tables or columns are fatal.
    """
    for name, layout in layouts_for(version).items():
        columns = actual.get(name)
        if not columns:
            raise SchemaMismatchError(name, None, "table is missing")
        for column in layout.column_names:
            if column not in columns:
                raise SchemaMismatchError(name, column, "column is missing")


# ---------------------------------------------------------------------------
# DDL for new libraries
# ---------------------------------------------------------------------------

_DDL_COMMON: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS "Information" (
        "id" INTEGER PRIMARY KEY AUTOINCREMENT,
        "uuid" TEXT NOT NULL,
        "schemaVersionMajor" INTEGER NOT NULL,
        "schemaVersionMinor" INTEGER NOT NULL,
        "schemaVersionPatch" INTEGER NOT NULL,
        "currentPlayedIndicator" INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS "PerformanceData" (
        "trackId" INTEGER PRIMARY KEY,
        "beatData" BLOB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS "CuePoint" (
        "id" INTEGER PRIMARY KEY AUTOINCREMENT,
        "trackId" INTEGER NOT NULL,
        "cueIndex" INTEGER NOT NULL,
        "position" REAL NOT NULL,
        "label" TEXT,
        "color" INTEGER
    )
    """,
    'CREATE INDEX IF NOT EXISTS "index_CuePoint_trackId" ON "CuePoint" ("trackId")',
    """
    CREATE TABLE IF NOT EXISTS "AlbumArt" (
        "id" INTEGER PRIMARY KEY AUTOINCREMENT,
        "hash" TEXT,
        "albumArt" BLOB,
        "format" TEXT,
        "width" INTEGER,
        "height" INTEGER,
        "isCorrupt" INTEGER NOT NULL DEFAULT 0
    )
    """,
    'CREATE INDEX IF NOT EXISTS "index_AlbumArt_hash" ON "AlbumArt" ("hash")',
    """
    CREATE TABLE IF NOT EXISTS "PlaylistEntity" (
        "id" INTEGER PRIMARY KEY AUTOINCREMENT,
        "listId" INTEGER NOT NULL,
        "trackId" INTEGER NOT NULL,
        "membershipReference" INTEGER NOT NULL
    )
    """,
    'CREATE INDEX IF NOT EXISTS "index_PlaylistEntity_listId" ON "PlaylistEntity" ("listId")',
    'CREATE INDEX IF NOT EXISTS "index_PlaylistEntity_trackId" ON "PlaylistEntity" ("trackId")',
)

_DDL_V2: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS "Track" (
        "id" INTEGER PRIMARY KEY AUTOINCREMENT,
        "path" TEXT NOT NULL,
        "filename" TEXT,
        "length" REAL,
        "sampleRate" INTEGER,
        "title" TEXT,
        "artist" TEXT,
        "album" TEXT,
        "genre" TEXT,
        "albumArtId" INTEGER
    )
    """,
    'CREATE INDEX IF NOT EXISTS "index_Track_albumArtId" ON "Track" ("albumArtId")',
    """
    CREATE TABLE IF NOT EXISTS "Playlist" (
        "id" INTEGER PRIMARY KEY AUTOINCREMENT,
        "title" TEXT NOT NULL,
        "parentListId" INTEGER
    )
    """,
)

# 3.x only adds columns; the upgrade path in `enginedb.core.batch` relies on that.
UPGRADE_V2_TO_V3_DDL: Final[tuple[str, ...]] = (
    'ALTER TABLE "Track" ADD COLUMN "lastEditTime" INTEGER',
    'ALTER TABLE "Playlist" ADD COLUMN "lastEditTime" INTEGER',
)


async def create_schema(
    conn: aiosqlite.Connection,
    *,
    version: SchemaVersion = LATEST_VERSION,
    uuid: str = "00000000-0000-0000-0000-000000000000",
) -> None:
    """
    Create an empty library with the declared layout of `version`.

    Assumes `conn` is an open aiosqlite connection in autocommit mode.
    """
    layouts_for(version)  # fail fast on unsupported versions

    for ddl in (*_DDL_COMMON, *_DDL_V2):
        await conn.execute(ddl)
    if version.major >= 3:
        for ddl in UPGRADE_V2_TO_V3_DDL:
            await conn.execute(ddl)

    await conn.execute(
        """
        INSERT INTO "Information"
            ("uuid", "schemaVersionMajor", "schemaVersionMinor", "schemaVersionPatch",
             "currentPlayedIndicator")
        VALUES (?, ?, ?, ?, 0)
        """,
        (uuid, version.major, version.minor, version.patch),
    )
    await conn.commit()
