"""
Internal DB subpackage for enginedb.

Splits the storage contract into focused units: entity models, per-version
schema declarations, and the row <-> entity mapper. Repositories in
`enginedb.core.repository` are the only consumers that talk to storage.
"""

from __future__ import annotations

# Models / DTOs
from .models import (
    Artwork,
    ArtworkFormat,
    BeatMarker,
    Crate,
    CuePoint,
    EntityRef,
    EntityType,
    LibraryInformation,
    Membership,
    SchemaVersion,
    Track,
    UnsupportedSchema,
)

# Schema declarations
from .schema import LATEST_VERSION, create_schema, detect_version, verify_tables

# Mapper
from .mapper import SchemaMapper, decode_beat_grid, encode_beat_grid

__all__ = [
    # models
    "Artwork",
    "ArtworkFormat",
    "BeatMarker",
    "Crate",
    "CuePoint",
    "EntityRef",
    "EntityType",
    "LibraryInformation",
    "Membership",
    "SchemaVersion",
    "Track",
    "UnsupportedSchema",
    # schema
    "LATEST_VERSION",
    "create_schema",
    "detect_version",
    "verify_tables",
    # mapper
    "SchemaMapper",
    "decode_beat_grid",
    "encode_beat_grid",
]
