from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class FormatError(RuntimeError):
    """Raised when an archive's container structure is not recognized."""


class UnsupportedSource(RuntimeError):
    """Raised when a source type has no registered decoder/normalizer pair."""


class RecordCorrupt(RuntimeError):
    """Raised when a single archive item cannot be decoded or validated."""


class ResourceExhausted(RuntimeError):
    """Raised when an import exceeds a memory or size limit."""


class StorageError(RuntimeError):
    """Raised when reading or writing state in SQLite fails."""


class ExportError(RuntimeError):
    """Raised when writing an export file fails."""
