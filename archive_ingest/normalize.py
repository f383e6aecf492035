from __future__ import annotations

import hashlib
import html
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Union

from .context import ImportContext
from .errors import FormatError
from .post import Author, Post, SourceType

_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_JS_SCHEME_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"""on\w+\s*=\s*["'][^"']*["']""", re.IGNORECASE)
_EMBED_TAG_RE = re.compile(r"<(iframe|object|embed|link|meta)[^>]*>", re.IGNORECASE)

_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_P_END_RE = re.compile(r"</p\s*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

_REPEATED_ORIGIN_RE = re.compile(r"^(?:https?://[^/\s]+/)+(?=https?://)", re.IGNORECASE)
_USERS_SEGMENT_RE = re.compile(r"@users@[^/]+/")

_HASHTAG_RE = re.compile(r"#([^\s#]+)")
_MENTION_RE = re.compile(r"@([A-Za-z0-9_]+)")
_URL_RE = re.compile(r"https?://\S+")

_REASON_LIMIT = 300


@dataclass(frozen=True)
class Normalized:
    post: Post


@dataclass(frozen=True)
class Degraded:
    """A placeholder post produced when a native record could not be mapped."""

    post: Post
    reason: str


NormalizeResult = Union[Normalized, Degraded]
NormalizeFn = Callable[[Any, ImportContext], Post]
NativeIdFn = Callable[[Any], str]


def coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def coerce_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        v = value.strip()
        return v if v else None
    if isinstance(value, int):
        return str(value)
    return None


def coerce_count(value: Any) -> int:
    """Archive counters arrive as ints or numeric strings; anything else is 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


def fingerprint(content: str, created_at: str) -> str:
    payload = f"{content or ''}\n{created_at or ''}".encode("utf-8")
    return "h" + hashlib.sha256(payload).hexdigest()[:24]


def sanitize_content(text: str | None) -> str:
    s = text or ""
    s = _SCRIPT_RE.sub("", s)
    s = _JS_SCHEME_RE.sub("", s)
    s = _EVENT_HANDLER_RE.sub("", s)
    s = _EMBED_TAG_RE.sub("", s)
    return s


def html_to_text(value: str | None) -> str:
    s = value or ""
    s = _BR_RE.sub("\n", s)
    s = _P_END_RE.sub("\n\n", s)
    s = _TAG_RE.sub("", s)
    s = html.unescape(s)
    s = _BLANK_RUN_RE.sub("\n\n", s)
    return s.strip()


def clean_canonical_url(url: str | None) -> str | None:
    """
    Repair URLs that federated exports sometimes emit.

    `https://a.example/https://b.example/@x/1` keeps the last full URL and
    `.../@users@host/...` segments are dropped.
    """
    s = (url or "").strip()
    if not s:
        return None
    s = _REPEATED_ORIGIN_RE.sub("", s)
    s = _USERS_SEGMENT_RE.sub("", s)
    return s


def normalize_language(value: Any, default: str) -> str:
    lang = coerce_str(value)
    if not lang:
        return default
    primary = re.split(r"[-_]", lang, maxsplit=1)[0].lower()
    return primary or default


def _unique(values: Iterable[str]) -> tuple[str, ...]:
    out: list[str] = []
    seen: set[str] = set()
    for v in values:
        if v and v not in seen:
            seen.add(v)
            out.append(v)
    return tuple(out)


def extract_hashtags(text: str | None) -> tuple[str, ...]:
    return _unique(m.group(1) for m in _HASHTAG_RE.finditer(text or ""))


def extract_mentions(text: str | None) -> tuple[str, ...]:
    return _unique(m.group(1) for m in _MENTION_RE.finditer(text or ""))


def extract_urls(text: str | None) -> tuple[str, ...]:
    return _unique(m.group(0) for m in _URL_RE.finditer(text or ""))


def _safe_native_id(native_id: NativeIdFn, native: Any) -> str:
    try:
        value = native_id(native)
    except Exception:
        value = ""
    return value or fingerprint(repr(native), "")


def _placeholder(
    native: Any,
    source_type: SourceType,
    context: ImportContext,
    native_id: NativeIdFn,
    reason: str,
) -> Post:
    now: datetime = context.now_fn()
    return Post(
        source_id=_safe_native_id(native_id, native),
        source_type=source_type.record_type or str(getattr(native, "source_type", "")),
        created_at=now,
        content=f"[unavailable: {reason}]",
        author=Author(name="unknown", username="unknown"),
        language=context.default_language,
        source_specific={"degraded": True, "import_source": source_type.value},
        imported_at=context.imported_at or now,
    )


def safe_normalize(
    normalize_fn: NormalizeFn,
    native: Any,
    source_type: SourceType,
    context: ImportContext,
    *,
    native_id: NativeIdFn,
) -> NormalizeResult:
    """
    Run a per-source normalizer without letting item-level failures escape.

    Any exception turns into a Degraded result holding a minimal post whose
    id is still derived from the native record.
    """
    try:
        return Normalized(normalize_fn(native, context))
    except Exception as e:
        reason = f"{type(e).__name__}: {e}"[:_REASON_LIMIT]
        post = _placeholder(native, source_type, context, native_id, reason)
        context.log_warning("record_degraded", source_id=post.source_id, reason=reason)
        return Degraded(post=post, reason=reason)


def decode_text(raw: bytes | str, *, label: str) -> str:
    """Decode archive bytes as UTF-8 (BOM tolerated) or pass text through."""
    if isinstance(raw, str):
        return raw.lstrip("\ufeff")
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise FormatError(f"{label} is not valid UTF-8 text: {e}") from e
