from __future__ import annotations

import gzip
import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Iterable

from .errors import ExportError, StorageError
from .post import BACKUP_FORMAT_VERSION, SCHEMA_VERSION, Post
from .storage import SQLiteStateStore

_EXCEL_FORMULA_PREFIXES = ("=", "+", "-", "@")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _safe_excel_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return str(value)
    s = value
    if not s:
        return s
    if s.startswith(_EXCEL_FORMULA_PREFIXES):
        return "'" + s
    return s


def _fmt_space_join(values: Iterable[str], *, prefix: str = "") -> str:
    out: list[str] = []
    for v in values:
        t = (v or "").strip()
        if t:
            out.append(f"{prefix}{t}" if prefix else t)
    return " ".join(out)


def backup_file_name(now: datetime | None = None, *, compress: bool = True) -> str:
    ts = (now or _utc_now()).strftime("%Y%m%d_%H%M%S")
    return f"archive_backup_{ts}.ndjson" + (".gz" if compress else "")


def _json_line(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str) + "\n"


def export_ndjson(
    store: SQLiteStateStore,
    out_path: str | Path,
    *,
    compress: bool = True,
    now: datetime | None = None,
) -> Path:
    """
    Write every stored post as NDJSON.

    The first line is a metadata object (`type: metadata`), followed by one
    `{"type": "post", "data": {...}}` line per post in creation order.
    """
    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)

    metadata = {
        "type": "metadata",
        "version": BACKUP_FORMAT_VERSION,
        "schema_version": SCHEMA_VERSION,
        "export_date": (now or _utc_now()).isoformat(),
        "counts": store.counts_by_source(),
        "total": store.post_count(),
    }

    fp: IO[str]
    try:
        if compress:
            fp = gzip.open(out, "wt", encoding="utf-8", newline="\n")
        else:
            fp = out.open("w", encoding="utf-8", newline="\n")
        with fp:
            fp.write(_json_line(metadata))
            for post in store.iter_posts():
                fp.write(_json_line({"type": "post", "data": post.to_json_dict()}))
    except (OSError, StorageError) as e:
        raise ExportError(f"Failed to write NDJSON export: {out}: {e}") from e

    return out


def _post_row(post: Post) -> dict[str, Any]:
    return {
        "id": post.id,
        "source_type": post.source_type,
        "created_at": post.created_at.astimezone(timezone.utc).isoformat(),
        "period_key": post.period_key,
        "author": _safe_excel_text(post.author.username),
        "author_name": _safe_excel_text(post.author.name),
        "content": _safe_excel_text(post.content),
        "is_repost": post.is_repost,
        "language": post.language,
        "likes": post.metrics.likes,
        "shares": post.metrics.shares,
        "replies": post.metrics.replies,
        "hashtags": _safe_excel_text(_fmt_space_join(post.hashtags, prefix="#")),
        "mentions": _safe_excel_text(_fmt_space_join((m.username for m in post.mentions), prefix="@")),
        "urls": _safe_excel_text(_fmt_space_join(u.expanded_url or u.url for u in post.urls)),
        "media_count": len(post.media),
        "canonical_url": _safe_excel_text(post.canonical_url),
        "degraded": bool(post.source_specific.get("degraded")),
    }


def export_workbook(store: SQLiteStateStore, out_path: str | Path) -> Path:
    """Write stored posts plus per-source and per-month counts to an .xlsx workbook."""
    try:
        import pandas as pd  # type: ignore[import-not-found]
    except Exception as e:
        raise ExportError("pandas is required for Excel export") from e

    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)

    try:
        posts = list(store.iter_posts())
    except StorageError as e:
        raise ExportError(f"Failed to read posts for export: {e}") from e

    rows = [_post_row(p) for p in posts]
    hashtag_counts: Counter[str] = Counter(h for p in posts for h in p.hashtags)

    summary_rows: list[dict[str, Any]] = [
        {"kind": "source", "label": source, "count": n}
        for source, n in store.counts_by_source().items()
    ]
    summary_rows.extend(
        {"kind": "period", "label": f"{source} {period}", "count": n}
        for source, period, n in store.period_counts()
    )
    summary_rows.extend(
        {"kind": "hashtag", "label": _safe_excel_text(h), "count": n}
        for h, n in hashtag_counts.most_common(200)
    )

    df_posts = pd.DataFrame(rows)
    df_summary = pd.DataFrame(summary_rows)

    try:
        with pd.ExcelWriter(out, engine="openpyxl") as writer:
            df_posts.to_excel(writer, sheet_name="posts", index=False)
            df_summary.to_excel(writer, sheet_name="summary", index=False)

            wb = writer.book
            for name in ("posts", "summary"):
                if name in wb.sheetnames:
                    wb[name].freeze_panes = "A2"
    except Exception as e:
        raise ExportError(f"Failed to write workbook: {out}: {e}") from e

    return out
