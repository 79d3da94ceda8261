"""
M3U playlist import into crates.

A crate is addressed by its path in the crate hierarchy: the titles from the
root down, joined with ";" (a trailing ";" is allowed), e.g. "Sets;Warm up".
Missing crates along the path are created.

M3U entries are plain file paths or file:// URLs; "#" lines (#EXTM3U,
#EXTINF, ...) are ignored. Entries are mapped to tracks by their path
relative to the library directory, which is how tracks store them.

The whole import runs in one transaction: an unknown track path rolls
everything back, including crates created on the way.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from urllib.parse import unquote, urlparse

from enginedb.core import CoreError, InvariantViolationError
from enginedb.core.db.mapper import CRATE_PATH_SEPARATOR
from enginedb.core.db.models import Crate
from enginedb.core.repository import CrateRepository, MembershipRepository, TrackRepository
from enginedb.core.transaction import Transaction, TransactionCoordinator

logger = logging.getLogger(__name__)


class ImportMode(str, Enum):
    APPEND = "append"
    REPLACE = "replace"


@dataclass(frozen=True, slots=True)
class ImportResult:
    crate_id: int
    added: int
    # Tracks already in the crate, or listed twice
    ignored: int
    removed: int = 0
    created_crates: int = 0


def split_crate_path(crate_path: str) -> list[str]:
    """Split "Parent;Child;" into crate titles."""
    path = crate_path.removesuffix(CRATE_PATH_SEPARATOR)
    titles = path.split(CRATE_PATH_SEPARATOR)
    if not path or any(not title.strip() for title in titles):
        raise InvariantViolationError(f"invalid crate path {crate_path!r}")
    return titles


def read_m3u(lines: Iterable[str], base_path: Path | None = None) -> list[Path]:
    """
    Parse M3U lines into absolute file paths.

    Relative entries are resolved against `base_path`; without one they are
    rejected.
    """
    paths: list[Path] = []
    for number, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "://" in line:
            url = urlparse(line)
            if url.scheme != "file" or url.netloc not in ("", "localhost"):
                raise ValueError(f"line {number}: {line!r} is not a local file URL")
            path = Path(unquote(url.path))
        else:
            path = Path(line)
        if not path.is_absolute():
            if base_path is None:
                raise ValueError(f"line {number}: unresolved relative path {line!r}")
            path = base_path / path
        paths.append(path)
    return paths


def library_relative_path(library_dir: Path, file_path: Path) -> str:
    """Stored form of a file path: relative to the library directory, "/" separated."""
    relative = os.path.relpath(os.path.normpath(file_path), library_dir)
    return Path(relative).as_posix()


async def resolve_crate(
    tx: Transaction, crates: CrateRepository, titles: Sequence[str], *, create: bool = True
) -> tuple[int | None, int]:
    """
    Find the crate at `titles`, creating missing crates when `create` is set.

    Returns (crate id or None, number of crates created).
    """
    parent_id: int | None = None
    created = 0
    for title in titles:
        crate_id = await crates.find_child_by_title(tx, parent_id, title)
        if crate_id is None:
            if not create:
                return None, created
            crate_id = await crates.insert(tx, Crate(title=title, parent_id=parent_id))
            logger.info("Created crate %r (id %d)", title, crate_id)
            created += 1
        parent_id = crate_id
    return parent_id, created


async def import_playlist(
    coordinator: TransactionCoordinator,
    *,
    crates: CrateRepository,
    memberships: MembershipRepository,
    tracks: TrackRepository,
    library_dir: Path,
    crate_path: str,
    files: Sequence[Path],
    mode: ImportMode = ImportMode.APPEND,
) -> ImportResult:
    """Add the tracks behind `files` to the crate at `crate_path`."""
    titles = split_crate_path(crate_path)

    async def _import(tx: Transaction) -> ImportResult:
        track_ids: list[int] = []
        for file_path in files:
            stored = library_relative_path(library_dir, file_path)
            track_id = await tracks.find_id_by_path(tx, stored)
            if track_id is None:
                raise CoreError(f'unknown track path "{stored}"')
            track_ids.append(track_id)

        crate_id, created = await resolve_crate(tx, crates, titles)
        assert crate_id is not None
        removed = 0
        if mode is ImportMode.REPLACE:
            removed = await memberships.delete_for_crate(tx, crate_id)
        else:
            # Appending after a gap would collide with a used ordinal
            await memberships.renumber(tx, crate_id)

        present = set(await memberships.track_ids_in_crate(tx, crate_id))
        added = ignored = 0
        for track_id in track_ids:
            if track_id in present:
                ignored += 1
                continue
            await memberships.append(tx, crate_id, track_id)
            present.add(track_id)
            added += 1
        return ImportResult(crate_id, added, ignored, removed=removed, created_crates=created)

    result = await coordinator.run(_import)
    if result.ignored:
        logger.warning("Ignored %d duplicate tracks in crate %r", result.ignored, crate_path)
    logger.info(
        "Imported %d tracks into crate %r (%s, %d removed)",
        result.added,
        crate_path,
        mode.value,
        result.removed,
    )
    return result
