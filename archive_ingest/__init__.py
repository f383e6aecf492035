from __future__ import annotations

from .config import config_sha256, load_config, with_account
from .config_schema import AppConfig
from .errors import (
    ConfigError,
    ExportError,
    FormatError,
    RecordCorrupt,
    ResourceExhausted,
    StorageError,
    UnsupportedSource,
)
from .importer import ImportResult, Importer, SourceRegistry, default_registry
from .post import Post, SourceType

__all__ = [
    "AppConfig",
    "ConfigError",
    "ExportError",
    "FormatError",
    "ImportResult",
    "Importer",
    "Post",
    "RecordCorrupt",
    "ResourceExhausted",
    "SourceRegistry",
    "SourceType",
    "StorageError",
    "UnsupportedSource",
    "config_sha256",
    "default_registry",
    "load_config",
    "with_account",
]
