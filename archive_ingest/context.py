from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .post import DEFAULT_LANGUAGE
from .run_log import RunLogger


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ImportContext:
    """
    Per-import options plus the bookkeeping decoders and normalizers share.

    `account` is the owning account for the source being imported (Twitter
    username, Bluesky handle or Mastodon user@instance).
    """

    account: str | None = None
    default_language: str = DEFAULT_LANGUAGE
    twilog_utc_offset_hours: float = 9.0
    logger: RunLogger | None = None
    now_fn: Callable[[], datetime] = _utc_now
    rejects: Counter = field(default_factory=Counter)
    imported_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.imported_at is None:
            self.imported_at = self.now_fn()

    @property
    def twilog_tz(self) -> timezone:
        return timezone(timedelta(hours=self.twilog_utc_offset_hours))

    @property
    def rejected_count(self) -> int:
        return sum(self.rejects.values())

    def reject(self, reason: str, **data: Any) -> None:
        """Count and log an item dropped during decoding; the import continues."""
        self.rejects[reason] += 1
        if self.logger is not None:
            self.logger.warning("record_rejected", reason=reason, **data)

    def log_info(self, event: str, **data: Any) -> None:
        if self.logger is not None:
            self.logger.info(event, **data)

    def log_warning(self, event: str, **data: Any) -> None:
        if self.logger is not None:
            self.logger.warning(event, **data)
