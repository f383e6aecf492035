from __future__ import annotations

from enum import Enum
from typing import Callable

import psutil

from .config_schema import MemoryConfig


class MemoryPressure(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


def current_rss_bytes() -> int:
    """Resident set size of this process right now (not the peak)."""
    return int(psutil.Process().memory_info().rss)


class MemoryMonitor:
    """
    Classify process memory usage against a configured ceiling.

    Calling the monitor returns a MemoryPressure; without a limit it always
    reports NORMAL. Usage is sampled on every call, so the level drops again
    once memory is released.
    """

    def __init__(
        self,
        *,
        limit_bytes: int | None,
        warning_ratio: float = 0.8,
        critical_ratio: float = 0.9,
        usage_fn: Callable[[], int] = current_rss_bytes,
    ) -> None:
        self._limit = limit_bytes if limit_bytes and limit_bytes > 0 else None
        self._warning = warning_ratio
        self._critical = critical_ratio
        self._usage_fn = usage_fn

    @classmethod
    def from_config(cls, config: MemoryConfig) -> "MemoryMonitor":
        limit = config.limit_mb * 1024 * 1024 if config.limit_mb else None
        return cls(
            limit_bytes=limit,
            warning_ratio=config.warning_ratio,
            critical_ratio=config.critical_ratio,
        )

    def usage_ratio(self) -> float | None:
        if self._limit is None:
            return None
        return self._usage_fn() / self._limit

    def __call__(self) -> MemoryPressure:
        ratio = self.usage_ratio()
        if ratio is None:
            return MemoryPressure.NORMAL
        if ratio > self._critical:
            return MemoryPressure.CRITICAL
        if ratio > self._warning:
            return MemoryPressure.WARNING
        return MemoryPressure.NORMAL
