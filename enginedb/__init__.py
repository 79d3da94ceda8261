"""
enginedb - integrity and batch access engine for Engine DJ library databases.

enginedb maps the vendor's SQLite layout into typed entities, detects and
repairs referential and structural damage, and runs bulk operations with
bounded concurrency, all without the vendor application.
"""

__version__ = "0.1.0"
__author__ = "enginedb Contributors"
__license__ = "GPL-2.0"

from enginedb.core.library import Library, create_library

__all__ = ["Library", "create_library", "__version__"]
