from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping, Protocol, Sequence

from .dedupe import key_for
from .errors import StorageError
from .post import Post, SourceType
from .storage_schema import initialize_sqlite


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def _record_type(source_type: SourceType | str | None) -> str | None:
    if source_type is None:
        return None
    return SourceType.parse(source_type).record_type


def _record_type_filter(source_type: SourceType | str | None) -> tuple[str, tuple[Any, ...]]:
    # Backups hold posts of every record type, as does no filter at all.
    rt = _record_type(source_type)
    if rt is None:
        return "", ()
    return " WHERE source_type = ?", (rt,)


class PostStore(Protocol):
    """What the importer needs from persistent storage."""

    def existing_keys(self, source_type: SourceType | str | None) -> set[str]: ...

    def persist(self, posts: Sequence[Post], *, run_id: str | None = None) -> int: ...


@dataclass(frozen=True)
class ImportRunRecord:
    run_id: str
    source_type: str
    file_name: str | None
    started_at: str
    ended_at: str | None
    status: str
    accepted: int
    skipped: int
    failed: int
    config_hash: str
    versions: dict[str, str]


class SQLiteStateStore:
    """
    Post archive and import-run bookkeeping in a single SQLite file.

    Posts are keyed by their duplicate-detection key; persisting a key that
    already exists is a no-op.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row

    @classmethod
    def open(cls, path: str | Path) -> "SQLiteStateStore":
        db_path = str(path)
        if db_path != ":memory:":
            p = Path(db_path)
            p.parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(db_path)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to open sqlite database: {db_path}: {e}") from e

        try:
            initialize_sqlite(conn)
        except Exception as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteStateStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def create_run(
        self,
        *,
        source_type: SourceType | str,
        config_hash: str,
        file_name: str | None = None,
        versions: Mapping[str, str] | None = None,
        run_id: str | None = None,
        started_at: str | None = None,
    ) -> ImportRunRecord:
        rid = (run_id or uuid.uuid4().hex).strip()
        if not rid:
            raise ValueError("run_id must be non-empty")

        cfg_hash = (config_hash or "").strip()
        if not cfg_hash:
            raise ValueError("config_hash must be non-empty")

        st = SourceType.parse(source_type).value
        start = (started_at or _utc_now_iso()).strip()
        versions_json = _json_dumps(dict(versions or {}))

        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT OR IGNORE INTO import_runs(
                      run_id, source_type, file_name, started_at, config_hash, versions_json
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """.strip(),
                    (rid, st, file_name, start, cfg_hash, versions_json),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to create import run record: {e}") from e

        record = self.get_run(rid)
        if record is None:
            raise StorageError("Failed to read import run record after insert")
        return record

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        accepted: int = 0,
        skipped: int = 0,
        failed: int = 0,
        ended_at: str | None = None,
    ) -> None:
        rid = (run_id or "").strip()
        if not rid:
            raise ValueError("run_id must be non-empty")

        end = (ended_at or _utc_now_iso()).strip()

        try:
            with self._conn:
                self._conn.execute(
                    """
                    UPDATE import_runs
                    SET ended_at = ?, status = ?, accepted = ?, skipped = ?, failed = ?
                    WHERE run_id = ?
                    """.strip(),
                    (end, status, int(accepted), int(skipped), int(failed), rid),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to finish import run: {e}") from e

    def get_run(self, run_id: str) -> ImportRunRecord | None:
        rid = (run_id or "").strip()
        if not rid:
            raise ValueError("run_id must be non-empty")

        row = self._conn.execute(
            """
            SELECT run_id, source_type, file_name, started_at, ended_at, status,
                   accepted, skipped, failed, config_hash, versions_json
            FROM import_runs WHERE run_id = ?
            """.strip(),
            (rid,),
        ).fetchone()
        if row is None:
            return None

        try:
            versions = json.loads((row["versions_json"] or "{}").strip())
        except Exception:
            versions = {}

        if not isinstance(versions, dict):
            versions = {}

        return ImportRunRecord(
            run_id=str(row["run_id"]),
            source_type=str(row["source_type"]),
            file_name=str(row["file_name"]) if row["file_name"] is not None else None,
            started_at=str(row["started_at"]),
            ended_at=str(row["ended_at"]) if row["ended_at"] is not None else None,
            status=str(row["status"]),
            accepted=int(row["accepted"]),
            skipped=int(row["skipped"]),
            failed=int(row["failed"]),
            config_hash=str(row["config_hash"]),
            versions={str(k): str(v) for k, v in versions.items()},
        )

    def existing_keys(self, source_type: SourceType | str | None) -> set[str]:
        """Stored duplicate keys for one record type, or for every type when None."""
        where, params = _record_type_filter(source_type)
        try:
            rows = self._conn.execute("SELECT post_key FROM posts" + where, params).fetchall()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to read existing post keys: {e}") from e
        return {str(r["post_key"]) for r in rows}

    def persist(self, posts: Sequence[Post], *, run_id: str | None = None) -> int:
        """Insert a batch in one transaction; returns the number of new rows."""
        rows = [
            (
                key_for(p, p.source_type),
                p.id,
                p.source_type,
                p.created_at.astimezone(timezone.utc).isoformat(),
                p.period_key,
                1 if p.is_repost else 0,
                _json_dumps(p.to_json_dict()),
                p.imported_at.astimezone(timezone.utc).isoformat(),
                run_id,
            )
            for p in posts
        ]
        if not rows:
            return 0

        try:
            with self._conn:
                before = self._conn.total_changes
                self._conn.executemany(
                    """
                    INSERT OR IGNORE INTO posts(
                      post_key, post_id, source_type, created_at, period_key,
                      is_repost, post_json, imported_at, run_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """.strip(),
                    rows,
                )
                return self._conn.total_changes - before
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to persist batch of {len(rows)} posts: {e}") from e

    def post_count(self, source_type: SourceType | str | None = None) -> int:
        where, params = _record_type_filter(source_type)
        row = self._conn.execute("SELECT COUNT(1) AS n FROM posts" + where, params).fetchone()
        return int(row["n"]) if row is not None else 0

    def counts_by_source(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT source_type, COUNT(1) AS n FROM posts GROUP BY source_type ORDER BY source_type"
        ).fetchall()
        return {str(r["source_type"]): int(r["n"]) for r in rows}

    def period_counts(self) -> list[tuple[str, str, int]]:
        rows = self._conn.execute(
            "SELECT source_type, period_key, posts FROM post_period_counts ORDER BY period_key, source_type"
        ).fetchall()
        return [(str(r["source_type"]), str(r["period_key"]), int(r["posts"])) for r in rows]

    def iter_posts(self, source_type: SourceType | str | None = None) -> Iterator[Post]:
        where, params = _record_type_filter(source_type)
        sql = "SELECT post_json FROM posts" + where + " ORDER BY created_at, post_key"

        try:
            rows = self._conn.execute(sql, params)
            for r in rows:
                yield Post.from_json_dict(json.loads(r["post_json"]))
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to read posts: {e}") from e
        except ValueError as e:
            raise StorageError(f"Stored post_json could not be parsed: {e}") from e
