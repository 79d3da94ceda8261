"""
Read-only checks for the audio files tracks point to.

Track paths are stored relative to the library directory by the vendor
application. A track is reported when its file is missing, or when the file
exists but cannot be opened as audio (mutagen fails to parse it).

Concurrency:
- the track list is streamed inside one read-only transaction
- file checks run in threads via asyncio.to_thread, bounded by a semaphore
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from mutagen import File as mutagen_file
from mutagen import MutagenError

from enginedb.core.repository import TrackRepository
from enginedb.core.transaction import Transaction, TransactionCoordinator

logger = logging.getLogger(__name__)


class FileIssueKind(str, Enum):
    MISSING = "missing"
    UNREADABLE = "unreadable"


@dataclass(frozen=True, slots=True)
class TrackFileIssue:
    track_id: int
    db_path: str
    file_path: Path
    kind: FileIssueKind
    message: str | None = None


def resolve_track_path(library_dir: Path, db_path: str) -> Path:
    """Map a stored track path onto the file system."""
    path = Path(db_path)
    if path.is_absolute():
        return path
    return (library_dir / path).resolve()


def check_file(path: Path) -> tuple[FileIssueKind, str | None] | None:
    """
    Check one audio file (blocking).

    Returns None if the file looks fine, otherwise the issue kind and message.
    """
    try:
        if not path.exists():
            return FileIssueKind.MISSING, None
        if not path.is_file():
            return FileIssueKind.UNREADABLE, "not a regular file"
        audio = mutagen_file(path)
    except (MutagenError, OSError) as e:
        return FileIssueKind.UNREADABLE, f"{type(e).__name__}: {e}"

    if audio is None:
        return FileIssueKind.UNREADABLE, "unrecognized audio format"
    return None


async def find_track_file_issues(
    coordinator: TransactionCoordinator,
    tracks: TrackRepository,
    library_dir: Path,
    *,
    concurrency: int = 4,
    check: Callable[[Path], tuple[FileIssueKind, str | None] | None] = check_file,
) -> list[TrackFileIssue]:
    """Report missing or unreadable track files, ordered by track id."""

    async def _load(tx: Transaction) -> list[tuple[int, str]]:
        return [item async for item in tracks.paths(tx)]

    entries = await coordinator.run(_load, read_only=True)
    semaphore = asyncio.Semaphore(max(1, concurrency))
    issues: list[TrackFileIssue] = []

    async def _check(track_id: int, db_path: str) -> None:
        file_path = resolve_track_path(library_dir, db_path)
        async with semaphore:
            result = await asyncio.to_thread(check, file_path)
        if result is None:
            return
        kind, message = result
        issues.append(TrackFileIssue(track_id, db_path, file_path, kind, message))
        if kind is FileIssueKind.MISSING:
            logger.warning('File "%s" of track %d is missing', file_path, track_id)
        else:
            logger.warning('File "%s" of track %d is unreadable: %s', file_path, track_id, message)

    if entries:
        await asyncio.gather(*(_check(track_id, db_path) for track_id, db_path in entries))

    issues.sort(key=lambda issue: issue.track_id)
    logger.info("Checked %d track files, %d issues", len(entries), len(issues))
    return issues
