from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping
from urllib.parse import urlsplit

from .context import ImportContext
from .errors import FormatError
from .normalize import (
    clean_canonical_url,
    coerce_count,
    coerce_str,
    decode_text,
    fingerprint,
    html_to_text,
    normalize_language,
    sanitize_content,
)
from .post import Author, MediaEntry, Mention, Metrics, Post

PUBLIC_COLLECTION = "https://www.w3.org/ns/activitystreams#Public"
_PUBLIC_ALIASES = frozenset({PUBLIC_COLLECTION, "as:Public", "Public"})

_ACCOUNT_URI_RE = re.compile(r"^https?://([^/]+)/(?:users/|@)([^/?#]+)")
_STATUS_ID_RE = re.compile(r"(?:statuses|@[^/]+)/(\d+)")


@dataclass(frozen=True)
class ActivityStatus:
    """A `Create`d note or an `Announce` (boost) taken from an outbox."""

    activity_id: str
    status_id: str
    kind: str
    published: str
    actor: str
    note: Mapping[str, Any] = field(default_factory=dict)
    reblog: Mapping[str, Any] | None = None
    to: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()


def account_handle(uri: Any) -> str:
    """
    Map an actor URI to `user@instance`.

    Both `https://host/users/name` and `https://host/@name` are understood;
    anything else yields "unknown".
    """
    m = _ACCOUNT_URI_RE.match(coerce_str(uri) or "")
    if not m:
        return "unknown"
    host, name = m.group(1).lower(), m.group(2).lstrip("@")
    return f"{name}@{host}" if name else "unknown"


def _as_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list):
        return tuple(v for v in value if isinstance(v, str))
    return ()


def _collection_items(data: Mapping[str, Any]) -> list[Any]:
    if not any("OrderedCollection" in t for t in _as_tuple(data.get("type"))):
        raise FormatError("outbox.json is not an ActivityPub OrderedCollection")

    items = data.get("orderedItems")
    if items is None:
        first = data.get("first")
        if isinstance(first, str):
            raise FormatError("Paged outbox is not supported: first page is a link")
        if isinstance(first, dict):
            if first.get("next"):
                raise FormatError("Paged outbox is not supported: collection has more pages")
            items = first.get("orderedItems")

    if not isinstance(items, list):
        raise FormatError("outbox.json has no orderedItems")
    return items


def _status_id(*candidates: Any) -> str | None:
    for value in candidates:
        s = coerce_str(value)
        if not s:
            continue
        m = _STATUS_ID_RE.search(s)
        if m:
            return m.group(1)
    for value in candidates:
        s = coerce_str(value)
        if s:
            return s
    return None


def _original_author(activity: Mapping[str, Any]) -> str | None:
    for key in ("cc", "to"):
        for recipient in _as_tuple(activity.get(key)):
            if recipient in _PUBLIC_ALIASES or recipient.rstrip("/").endswith("/followers"):
                continue
            return recipient
    return None


def decode_outbox(raw: bytes | str, context: ImportContext) -> list[ActivityStatus]:
    """Decode a Mastodon `outbox.json` export into notes and boosts, in order."""
    text = decode_text(raw, label="outbox.json")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise FormatError(f"outbox.json is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise FormatError("outbox.json must be a JSON object")

    items = _collection_items(data)

    notes: dict[str, Mapping[str, Any]] = {}
    for item in items:
        if isinstance(item, dict) and item.get("type") == "Create":
            obj = item.get("object")
            if isinstance(obj, dict) and coerce_str(obj.get("id")):
                notes[obj["id"]] = obj

    out: list[ActivityStatus] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            context.reject("not_an_object", index=index)
            continue

        kind = item.get("type")
        activity_id = coerce_str(item.get("id")) or ""
        actor = coerce_str(item.get("actor")) or ""
        published = coerce_str(item.get("published")) or ""
        obj = item.get("object")

        if kind == "Create":
            if not isinstance(obj, dict) or obj.get("type") != "Note":
                context.reject("unsupported_object", index=index, activity_id=activity_id)
                continue
            out.append(
                ActivityStatus(
                    activity_id=activity_id,
                    status_id=_status_id(obj.get("id"), activity_id) or "",
                    kind="create",
                    published=published or coerce_str(obj.get("published")) or "",
                    actor=actor,
                    note=obj,
                    to=_as_tuple(obj.get("to") or item.get("to")),
                    cc=_as_tuple(obj.get("cc") or item.get("cc")),
                )
            )
        elif kind == "Announce":
            if isinstance(obj, dict):
                target_uri, target = coerce_str(obj.get("id")), obj
            elif isinstance(obj, str):
                target_uri, target = obj, notes.get(obj)
            else:
                context.reject("announce_without_object", index=index, activity_id=activity_id)
                continue

            author = _original_author(item)
            if author is None and target is not None:
                author = coerce_str(target.get("attributedTo"))

            out.append(
                ActivityStatus(
                    activity_id=activity_id,
                    status_id=_status_id(activity_id) or "",
                    kind="announce",
                    published=published,
                    actor=actor,
                    reblog={"uri": target_uri, "author": author, "note": target},
                    to=_as_tuple(item.get("to")),
                    cc=_as_tuple(item.get("cc")),
                )
            )
        else:
            context.reject("unsupported_activity", index=index, activity_type=str(kind))

    return out


def native_id(status: ActivityStatus) -> str:
    if status.status_id:
        return status.status_id
    content = (status.note or {}).get("content") or ""
    return fingerprint(str(content), status.published)


def _content(note: Mapping[str, Any]) -> str:
    html = coerce_str(note.get("content"))
    if html is None:
        content_map = note.get("contentMap")
        if isinstance(content_map, dict) and content_map:
            html = coerce_str(next(iter(content_map.values())))
    return sanitize_content(html_to_text(html))


def _language(note: Mapping[str, Any], default: str) -> str:
    content_map = note.get("contentMap")
    if isinstance(content_map, dict) and content_map:
        return normalize_language(next(iter(content_map)), default)
    return default


def _visibility(to: tuple[str, ...], cc: tuple[str, ...]) -> str:
    if any(r in _PUBLIC_ALIASES for r in to):
        return "public"
    if any(r in _PUBLIC_ALIASES for r in cc):
        return "unlisted"
    if any(r.rstrip("/").endswith("/followers") for r in to + cc):
        return "private"
    return "direct"


def _media(note: Mapping[str, Any]) -> tuple[MediaEntry, ...]:
    out: list[MediaEntry] = []
    for item in note.get("attachment") or []:
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        if isinstance(url, dict):
            url = url.get("href")
        url = coerce_str(url)
        if not url:
            continue
        mime = coerce_str(item.get("mediaType")) or ""
        kind = mime.split("/", 1)[0] if "/" in mime else "image"
        out.append(MediaEntry(type=kind or "image", url=url, alt=coerce_str(item.get("name"))))
    return tuple(out)


def _tags(note: Mapping[str, Any]) -> tuple[tuple[str, ...], tuple[Mention, ...]]:
    hashtags: list[str] = []
    mentions: list[Mention] = []
    for tag in note.get("tag") or []:
        if not isinstance(tag, dict):
            continue
        name = coerce_str(tag.get("name"))
        if not name:
            continue
        if tag.get("type") == "Hashtag":
            value = name.lstrip("#")
            if value and value not in hashtags:
                hashtags.append(value)
        elif tag.get("type") == "Mention":
            mentions.append(
                Mention(username=name.lstrip("@"), url=coerce_str(tag.get("href")))
            )
    return tuple(hashtags), tuple(mentions)


def _total(value: Any) -> int:
    if isinstance(value, dict):
        return coerce_count(value.get("totalItems"))
    return 0


def parse_published(value: str) -> datetime:
    s = (value or "").strip()
    if not s:
        raise ValueError("activity has no published timestamp")
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


def normalize_status(status: ActivityStatus, context: ImportContext) -> Post:
    owner = account_handle(status.actor)
    instance = urlsplit(status.actor).hostname or ""
    source_id = native_id(status)

    source_specific: dict[str, Any] = {
        "import_source": "mastodon",
        "instance": instance,
        "visibility": _visibility(status.to, status.cc),
        "activity_id": status.activity_id,
    }

    if status.reblog is not None:
        note: Mapping[str, Any] = status.reblog.get("note") or {}
        author_handle = account_handle(status.reblog.get("author"))
        target_uri = coerce_str(status.reblog.get("uri"))
        source_specific["boosted_by"] = owner
        if target_uri:
            source_specific["boosted_uri"] = target_uri
        canonical = clean_canonical_url(coerce_str(note.get("url")) or target_uri)
    else:
        note = status.note
        author_handle = account_handle(note.get("attributedTo") or status.actor)
        canonical = clean_canonical_url(
            coerce_str(note.get("url")) or coerce_str(note.get("id"))
        )
        if not canonical and instance and author_handle != "unknown":
            canonical = f"https://{instance}/@{author_handle.split('@', 1)[0]}/{source_id}"

    if note.get("sensitive") is True:
        source_specific["sensitive"] = True
    spoiler = coerce_str(note.get("summary"))
    if spoiler:
        source_specific["spoiler_text"] = spoiler
    reply_to = coerce_str(note.get("inReplyTo"))
    if reply_to:
        source_specific["in_reply_to"] = reply_to

    hashtags, mentions = _tags(note)
    username = author_handle.split("@", 1)[0] if author_handle != "unknown" else "unknown"

    return Post(
        source_id=source_id,
        source_type="mastodon",
        created_at=parse_published(status.published or coerce_str(note.get("published")) or ""),
        content=_content(note) if note else "",
        author=Author(name=username, username=author_handle),
        metrics=Metrics(
            likes=_total(note.get("likes")),
            shares=_total(note.get("shares")),
            replies=_total(note.get("replies")),
        ),
        language=_language(note, context.default_language),
        media=_media(note),
        hashtags=hashtags,
        mentions=mentions,
        is_repost=status.reblog is not None,
        source_specific=source_specific,
        canonical_url=canonical,
        imported_at=context.imported_at,
    )
