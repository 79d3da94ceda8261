"""
Shared fixtures: a fresh library file per test and raw SQL access for
setting up states the repositories refuse to create (i.e. corruption).
"""

from __future__ import annotations

import io
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
from PIL import Image

from enginedb.core.db.models import SchemaVersion, Track
from enginedb.core.library import Library, create_library
from enginedb.core.transaction import Transaction

RawSql = Callable[..., Awaitable[int]]


@pytest.fixture
async def library(tmp_path: Path) -> AsyncIterator[Library]:
    """An empty 3.0 library opened with a small pool."""
    path = tmp_path / "Database2" / "m.db"
    path.parent.mkdir()
    await create_library(path)
    lib = Library(path, pool_size=4, acquire_timeout=5.0)
    await lib.open()
    yield lib
    await lib.close()


@pytest.fixture
async def library_v2(tmp_path: Path) -> AsyncIterator[Library]:
    """An empty 2.20 library."""
    path = tmp_path / "m2.db"
    await create_library(path, version=SchemaVersion(2, 20, 3))
    lib = Library(path, pool_size=2, acquire_timeout=5.0)
    await lib.open()
    yield lib
    await lib.close()


@pytest.fixture
def sql(library: Library) -> RawSql:
    """Run one raw write statement in its own transaction; returns rowcount."""

    async def _run(statement: str, params: Any = ()) -> int:
        async def _scope(tx: Transaction) -> int:
            return await tx.execute(statement, params)

        return await library.coordinator.run(_scope)

    return _run


@pytest.fixture
def add_tracks(library: Library) -> Callable[[int], Awaitable[list[int]]]:
    """Insert `n` plain tracks and return their ids."""

    async def _add(count: int) -> list[int]:
        async def _scope(tx: Transaction) -> list[int]:
            return [
                await library.tracks.insert(
                    tx, Track(path=f"../Music/track{i:03d}.mp3", title=f"Track {i}")
                )
                for i in range(count)
            ]

        return await library.coordinator.run(_scope)

    return _add


def make_image(fmt: str = "PNG", size: tuple[int, int] = (64, 64), noisy: bool = False) -> bytes:
    """Encode a small test image with Pillow."""
    img = Image.new("RGB", size, (200, 40, 90))
    if noisy:
        # Photo-like content: a smooth gradient with pixel noise defeats PNG
        # filtering, while JPEG quantizes the noise away.
        rng = random.Random(7)
        for x in range(size[0]):
            for y in range(size[1]):
                base = (x + y) % 200
                img.putpixel(
                    (x, y),
                    tuple(min(255, base + offset + rng.randint(0, 12)) for offset in (20, 40, 0)),
                )
    out = io.BytesIO()
    img.save(out, format=fmt)
    return out.getvalue()


@pytest.fixture
def image_bytes() -> Callable[..., bytes]:
    return make_image
