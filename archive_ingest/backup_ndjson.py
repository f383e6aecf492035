from __future__ import annotations

import gzip
import json
import zlib
from typing import Any, Mapping

from pydantic import ValidationError

from .context import ImportContext
from .errors import FormatError
from .normalize import decode_text
from .post import BACKUP_FORMAT_VERSION, SCHEMA_VERSION, Post

_GZIP_MAGIC = b"\x1f\x8b"


def _major(version: Any) -> str:
    return str(version or "").strip().split(".", 1)[0]


def _unpack(raw: bytes | str) -> str:
    if isinstance(raw, (bytes, bytearray)) and bytes(raw[:2]) == _GZIP_MAGIC:
        try:
            raw = gzip.decompress(bytes(raw))
        except (OSError, EOFError, zlib.error) as e:
            raise FormatError(f"Backup is not a readable gzip file: {e}") from e
    return decode_text(raw, label="NDJSON backup")


def check_metadata(metadata: Mapping[str, Any], context: ImportContext) -> None:
    """
    Refuse backups this version cannot read.

    A different format major version or a newer post schema is an error; an
    older schema is read anyway, and posts that no longer validate are
    rejected one by one.
    """
    if not metadata.get("version"):
        raise FormatError("Backup metadata has no format version")
    if not isinstance(metadata.get("counts"), dict):
        raise FormatError("Backup metadata has no per-source counts")
    if _major(metadata["version"]) != _major(BACKUP_FORMAT_VERSION):
        raise FormatError(
            f"Backup format {metadata['version']} is not supported (expected {BACKUP_FORMAT_VERSION})"
        )

    schema = metadata.get("schema_version")
    if not isinstance(schema, int) or isinstance(schema, bool):
        raise FormatError("Backup metadata has no schema version")
    if schema > SCHEMA_VERSION:
        raise FormatError(
            f"Backup was written with post schema {schema}; this version reads up to {SCHEMA_VERSION}"
        )
    if schema < SCHEMA_VERSION:
        context.log_warning("backup_schema_older", schema_version=schema, current=SCHEMA_VERSION)


def decode_backup(raw: bytes | str, context: ImportContext) -> list[Post]:
    """
    Decode an NDJSON backup written by `export_ndjson`, gzip-compressed or not.

    The first non-empty line must be the metadata object; every later
    `{"type": "post", "data": {...}}` line becomes one Post.
    """
    lines = [(n, line.strip()) for n, line in enumerate(_unpack(raw).splitlines(), start=1)]
    lines = [(n, line) for n, line in lines if line]
    if not lines:
        raise FormatError("NDJSON backup is empty")

    first_line, first = lines[0]
    try:
        metadata = json.loads(first)
    except json.JSONDecodeError as e:
        raise FormatError(f"Backup metadata on line {first_line} is not JSON: {e}") from e
    if not isinstance(metadata, dict) or metadata.get("type") != "metadata":
        raise FormatError("NDJSON backup does not start with a metadata line")
    check_metadata(metadata, context)

    out: list[Post] = []
    for line_no, line in lines[1:]:
        try:
            item = json.loads(line)
        except json.JSONDecodeError:
            context.reject("invalid_json_line", line=line_no)
            continue
        if not isinstance(item, dict) or not isinstance(item.get("data"), dict):
            context.reject("invalid_item", line=line_no)
            continue
        if item.get("type") != "post":
            context.reject("unsupported_item_type", line=line_no, item_type=str(item.get("type")))
            continue
        try:
            out.append(Post.from_json_dict(item["data"]))
        except ValidationError as e:
            context.reject("invalid_post", line=line_no, errors=e.error_count())

    total = metadata.get("total")
    if isinstance(total, int) and total != len(out):
        context.log_warning("backup_count_mismatch", expected=total, found=len(out))
    return out


def native_id(post: Post) -> str:
    return post.source_id


def normalize_backup_post(post: Post, context: ImportContext) -> Post:
    # Backups already hold normalized posts; they keep their original import time.
    return post
