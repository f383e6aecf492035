from __future__ import annotations

import json
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, TextIO

_LEVELS = {"info": "INFO", "warn": "WARN", "warning": "WARN", "error": "ERROR"}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _truncate(text: str, *, limit: int) -> str:
    s = str(text or "")
    if len(s) <= limit:
        return s
    return s[: max(0, limit - 1)] + "…"


class RunLogger:
    """
    JSONL event log for archive imports.

    Each line is one JSON object with `ts`, `level` (INFO, WARN or ERROR),
    `event` and the `session_id` of the process that wrote it. Once an import
    run is registered its `run_id` is added too. Fields passed to `bind()` are
    merged into the `data` of every later event.

    The file is appended to by default so one output directory keeps the
    history of every import into it.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        overwrite: bool = False,
        run_id: str | None = None,
        session_id: str | None = None,
    ) -> None:
        self._path = Path(path)
        self._mode = "w" if overwrite else "a"
        self._run_id = (run_id or "").strip() or None
        self._session_id = (session_id or "").strip() or uuid.uuid4().hex
        self._bound: dict[str, Any] = {}
        self._fp: TextIO | None = None
        self._lock = Lock()

    @classmethod
    def open(cls, path: str | Path, **kwargs: Any) -> "RunLogger":
        logger = cls(path, **kwargs)
        logger._ensure_open()
        return logger

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        with self._lock:
            if self._fp is None:
                return
            try:
                self._fp.flush()
            finally:
                self._fp.close()
                self._fp = None

    def __enter__(self) -> "RunLogger":
        self._ensure_open()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def set_run_id(self, run_id: str) -> None:
        rid = (run_id or "").strip()
        if rid:
            self._run_id = rid

    def bind(self, **fields: Any) -> None:
        """Attach fields (e.g. source_type, file_name) to every later event."""
        self._bound.update({k: v for k, v in fields.items() if v is not None})

    def info(self, event: str, **data: Any) -> None:
        self.log("INFO", event, **data)

    def warning(self, event: str, **data: Any) -> None:
        self.log("WARN", event, **data)

    def error(self, event: str, **data: Any) -> None:
        self.log("ERROR", event, **data)

    def exception(self, event: str, *, exc: BaseException, **data: Any) -> None:
        trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        err = {
            "type": type(exc).__name__,
            "message": _truncate(str(exc), limit=2000),
            "traceback": _truncate(trace, limit=12000),
        }
        self.log("ERROR", event, error=err, **data)

    def log(self, level: str, event: str, **data: Any) -> None:
        record: dict[str, Any] = {
            "ts": _utc_now_iso(),
            "level": _LEVELS.get((level or "").strip().lower(), "INFO"),
            "event": (event or "").strip() or "event",
            "session_id": self._session_id,
        }
        if self._run_id:
            record["run_id"] = self._run_id

        payload = {**self._bound, **data}
        if payload:
            record["data"] = payload

        self._write(record)

    def _ensure_open(self) -> None:
        with self._lock:
            if self._fp is not None:
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fp = self._path.open(self._mode, encoding="utf-8", newline="\n")
            # Reopening after close() must not truncate what this run wrote.
            self._mode = "a"

    def _write(self, record: dict[str, Any]) -> None:
        self._ensure_open()
        line = json.dumps(record, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)

        with self._lock:
            if self._fp is None:
                return
            self._fp.write(line + "\n")
            self._fp.flush()
