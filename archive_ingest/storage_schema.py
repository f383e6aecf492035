from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

SCHEMA_VERSION = 2


def initialize_sqlite(conn: sqlite3.Connection) -> None:
    """
    Prepare a connection for the post store and bring its schema up to date.

    Safe to call on every open; already-applied migrations are skipped.
    """
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    # In-memory databases reject WAL.
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
    except sqlite3.DatabaseError:
        pass

    current = current_version(conn)
    if current > SCHEMA_VERSION:
        raise RuntimeError(
            f"Database schema version {current} is newer than this program supports ({SCHEMA_VERSION})"
        )
    for version in range(current + 1, SCHEMA_VERSION + 1):
        _apply(conn, version)


def current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("PRAGMA user_version").fetchone()
    return int(row[0]) if row else 0


_MIGRATIONS: dict[int, str] = {
    1: """
CREATE TABLE IF NOT EXISTS schema_migrations (
  version INTEGER PRIMARY KEY,
  applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS import_runs (
  run_id TEXT PRIMARY KEY,
  source_type TEXT NOT NULL,
  file_name TEXT,
  started_at TEXT NOT NULL,
  ended_at TEXT,
  status TEXT NOT NULL DEFAULT 'running',
  accepted INTEGER NOT NULL DEFAULT 0,
  skipped INTEGER NOT NULL DEFAULT 0,
  failed INTEGER NOT NULL DEFAULT 0,
  config_hash TEXT NOT NULL,
  versions_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS posts (
  post_key TEXT PRIMARY KEY,
  post_id TEXT NOT NULL,
  source_type TEXT NOT NULL,
  created_at TEXT NOT NULL,
  period_key TEXT NOT NULL,
  is_repost INTEGER NOT NULL,
  post_json TEXT NOT NULL,
  imported_at TEXT NOT NULL,
  run_id TEXT,
  FOREIGN KEY (run_id) REFERENCES import_runs(run_id) ON DELETE SET NULL
);

CREATE INDEX IF NOT EXISTS idx_posts_source_type
  ON posts(source_type);

CREATE INDEX IF NOT EXISTS idx_posts_created_at
  ON posts(created_at);
""".strip(),
    2: """
CREATE INDEX IF NOT EXISTS idx_posts_period_key
  ON posts(source_type, period_key);

CREATE VIEW IF NOT EXISTS post_period_counts AS
SELECT source_type, period_key, COUNT(1) AS posts
FROM posts
GROUP BY source_type, period_key;
""".strip(),
}


def _apply(conn: sqlite3.Connection, version: int) -> None:
    script = _MIGRATIONS.get(version)
    if not script:
        raise RuntimeError(f"Missing migration script for version={version}")

    applied_at = datetime.now(timezone.utc).isoformat()
    try:
        conn.executescript(
            "BEGIN;\n"
            f"{script}\n"
            "INSERT OR REPLACE INTO schema_migrations(version, applied_at) "
            f"VALUES ({int(version)}, '{applied_at}');\n"
            f"PRAGMA user_version = {int(version)};\n"
            "COMMIT;"
        )
    except sqlite3.Error:
        if conn.in_transaction:
            conn.rollback()
        raise
