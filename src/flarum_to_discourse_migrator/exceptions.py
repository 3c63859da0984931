"""
Custom exception classes for the Flarum to Discourse migration tool.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base exception for migration errors."""


class StoreConnectionError(MigrationError):
    """Raised when the source or target store cannot be reached. Aborts the run."""


class RecordSkippedError(MigrationError):
    """Base class for records that are skipped and not retried within a run."""


class RecordValidationError(RecordSkippedError):
    """Raised when a source record is missing required data or has invalid values."""


class ReferentialIntegrityError(RecordSkippedError):
    """Raised when a record references a parent that has not been migrated."""


class TargetCreateError(MigrationError):
    """Raised when the target store rejects a create operation."""


class DuplicateMappingError(MigrationError):
    """Raised when registering a mapping would break the one-to-one correspondence."""
