"""
Flarum to Discourse Migration Tool

Migrates a Flarum forum (users, tags, discussions, posts, likes, reactions,
group memberships) into Discourse. Runs are re-entrant: everything created is
recorded in Discourse's import bookkeeping and skipped by the next run.
"""

from __future__ import annotations

from .cli import main
from .content import MarkupTransformer
from .exceptions import (
    DuplicateMappingError,
    MigrationError,
    RecordSkippedError,
    RecordValidationError,
    ReferentialIntegrityError,
    StoreConnectionError,
    TargetCreateError,
)
from .identity import IdentityMapper, InMemoryMappingStore
from .orchestrator import MigrationResult, MigrationStats, Migrator
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "DuplicateMappingError",
    "IdentityMapper",
    "InMemoryMappingStore",
    "MarkupTransformer",
    "MigrationError",
    "MigrationResult",
    "MigrationStats",
    "Migrator",
    "RecordSkippedError",
    "RecordValidationError",
    "ReferentialIntegrityError",
    "StoreConnectionError",
    "TargetCreateError",
    "main",
    "setup_logging",
]
