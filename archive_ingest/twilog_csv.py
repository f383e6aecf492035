from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .context import ImportContext
from .errors import FormatError, RecordCorrupt
from .normalize import (
    decode_text,
    extract_hashtags,
    extract_mentions,
    extract_urls,
    sanitize_content,
)
from .post import Author, Mention, Post, UrlEntry

_ID_RE = re.compile(r"^\d+$")
_URL_USER_RE = re.compile(r"(?:twitter\.com|x\.com)/([^/]+)/status", re.IGNORECASE)
_DATE_FORMATS = ("%Y/%m/%d %H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y/%m/%d %H:%M")


@dataclass(frozen=True)
class TwilogRow:
    """One data row of a Twilog CSV export: ID, URL, date, text."""

    id: str
    url: str
    created_at: str
    text: str
    line: int = 0


def read_csv_rows(text: str) -> list[list[str]]:
    """
    Split CSV text into rows of fields.

    Quoted fields may contain commas, doubled quotes and line breaks; rows
    may end in CRLF, LF or CR.
    """
    try:
        return [row for row in csv.reader(io.StringIO(text, newline=""))]
    except csv.Error as e:
        raise FormatError(f"Malformed CSV: {e}") from e


def _is_header(fields: list[str]) -> bool:
    names = {f.strip().strip('"').upper() for f in fields}
    return "ID" in names and "URL" in names


def parse_row(fields: list[str], *, line: int = 0) -> TwilogRow:
    if len(fields) < 4:
        raise RecordCorrupt("short_row")

    status_id, url, created_at, body = (f.strip() for f in fields[:4])
    if not _ID_RE.match(status_id):
        raise RecordCorrupt("invalid_id")
    if not url.lower().startswith(("http://", "https://")):
        raise RecordCorrupt("invalid_url")

    return TwilogRow(id=status_id, url=url, created_at=created_at, text=body, line=line)


def decode_twilog_csv(raw: bytes | str, context: ImportContext) -> list[TwilogRow]:
    text = decode_text(raw, label="Twilog CSV")
    rows = read_csv_rows(text)
    if not rows:
        raise FormatError("Twilog CSV is empty")

    start = 1 if _is_header(rows[0]) else 0
    out: list[TwilogRow] = []

    for line, fields in enumerate(rows[start:], start=start + 1):
        if not any(f.strip() for f in fields):
            continue
        try:
            out.append(parse_row(fields, line=line))
        except RecordCorrupt as e:
            context.reject(str(e), line=line, fields=len(fields))

    return out


def native_id(row: TwilogRow) -> str:
    return row.id


def parse_twilog_date(value: str, context: ImportContext) -> datetime:
    s = (value or "").strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).replace(tzinfo=context.twilog_tz)
        except ValueError:
            continue
    parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=context.twilog_tz)
    return parsed


def url_username(url: str) -> str | None:
    m = _URL_USER_RE.search(url or "")
    return m.group(1) if m else None


def normalize_twilog_row(row: TwilogRow, context: ImportContext) -> Post:
    content = sanitize_content(row.text.replace("\r\n", "\n").replace("\r", "\n"))
    url_user = url_username(row.url)
    account = context.account

    is_repost = bool(account and url_user and url_user.casefold() != account.casefold())
    username = url_user if is_repost else (account or url_user or "twitter_user")

    source_specific: dict[str, Any] = {"import_source": "twilog", "csv_line": row.line}
    if is_repost:
        source_specific["original_author"] = url_user

    return Post(
        source_id=row.id,
        source_type="twitter",
        created_at=parse_twilog_date(row.created_at, context),
        content=content,
        author=Author(name=username, username=username),
        language=context.default_language,
        urls=tuple(UrlEntry(url=u) for u in extract_urls(content)),
        hashtags=extract_hashtags(content),
        mentions=tuple(Mention(username=m) for m in extract_mentions(content)),
        is_repost=is_repost,
        source_specific=source_specific,
        canonical_url=row.url,
        imported_at=context.imported_at,
    )
