from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol, Sequence

from .config_schema import BatchConfig
from .dedupe import SeenKeys, key_for
from .errors import ResourceExhausted, StorageError
from .memory import MemoryPressure
from .normalize import Degraded, NormalizeResult
from .post import Post, validate_post
from .run_log import RunLogger


class BatchState(str, Enum):
    IDLE = "idle"
    DECODING = "decoding"
    NORMALIZING = "normalizing"
    DEDUPLICATING = "deduplicating"
    EMITTING = "emitting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class ProgressEvent:
    step: str
    progress: int
    message: str
    processed: int = 0
    total: int = 0


class PostSink(Protocol):
    def persist(self, posts: Sequence[Post]) -> int: ...


ProgressFn = Callable[[ProgressEvent], None]
PressureFn = Callable[[], MemoryPressure]
SleepFn = Callable[[float], None]


@dataclass(frozen=True)
class BatchSettings:
    """
    Batch loop tuning.

    - batch_size: records normalized, filtered and persisted together.
    - pause_seconds: cooperative pause between batches.
    - memory_check_interval: processed-count step at which memory pressure is queried.
    """

    batch_size: int = 500
    pause_seconds: float = 0.05
    memory_check_interval: int = 5000

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.pause_seconds < 0:
            raise ValueError("pause_seconds must be >= 0")
        if self.memory_check_interval < 1:
            raise ValueError("memory_check_interval must be >= 1")

    @classmethod
    def from_config(cls, config: BatchConfig) -> "BatchSettings":
        return cls(
            batch_size=config.batch_size,
            pause_seconds=config.pause_seconds,
            memory_check_interval=config.memory_check_interval,
        )


@dataclass
class BatchOutcome:
    status: str
    total: int
    processed: int = 0
    batches: int = 0
    accepted: list[Post] = field(default_factory=list)
    skipped: int = 0
    failed: int = 0
    degraded_reasons: list[str] = field(default_factory=list)
    error: BaseException | None = None


class BatchProcessor:
    """
    Drive normalization, duplicate filtering, validation and persistence in
    fixed-size batches.

    Source order is preserved. Each batch is persisted before its progress
    event is emitted, so a stop (cancel, memory pressure, storage failure)
    never leaves a half-written batch behind.
    """

    def __init__(
        self,
        *,
        normalize_fn: Callable[[Any], NormalizeResult],
        sink: PostSink | None = None,
        settings: BatchSettings | None = None,
        memory_pressure: PressureFn | None = None,
        should_cancel: Callable[[], bool] | None = None,
        on_progress: ProgressFn | None = None,
        pause_fn: SleepFn = time.sleep,
        logger: RunLogger | None = None,
    ) -> None:
        self._normalize = normalize_fn
        self._sink = sink
        self._settings = settings or BatchSettings()
        self._memory_pressure = memory_pressure
        self._should_cancel = should_cancel
        self._on_progress = on_progress
        self._pause = pause_fn
        self._logger = logger
        self.state = BatchState.IDLE

    def run(self, natives: Sequence[Any], *, existing_keys: set[str] | SeenKeys) -> BatchOutcome:
        seen = existing_keys if isinstance(existing_keys, SeenKeys) else SeenKeys(existing_keys)
        size = self._settings.batch_size
        total = len(natives)
        outcome = BatchOutcome(status=BatchState.COMPLETED.value, total=total)
        next_check = 0

        try:
            for start in range(0, total, size):
                if self._memory_pressure is not None and outcome.processed >= next_check:
                    interval = self._settings.memory_check_interval
                    next_check = (outcome.processed // interval + 1) * interval
                    self._check_memory(outcome.processed)

                batch = natives[start : start + size]
                self._run_batch(batch, seen, outcome)
                outcome.processed += len(batch)
                outcome.batches += 1

                self._emit(
                    ProgressEvent(
                        step="processing",
                        progress=int(outcome.processed * 100 / total),
                        message=f"Processed {outcome.processed}/{total} records",
                        processed=outcome.processed,
                        total=total,
                    )
                )
                self._log(
                    "batch_emitted",
                    batch=outcome.batches,
                    processed=outcome.processed,
                    total=total,
                    accepted=len(outcome.accepted),
                    skipped=outcome.skipped,
                )

                if self._should_cancel is not None and self._should_cancel():
                    self.state = BatchState.CANCELLED
                    outcome.status = BatchState.CANCELLED.value
                    return outcome

                if outcome.processed < total and self._settings.pause_seconds > 0:
                    self._pause(self._settings.pause_seconds)
        except ResourceExhausted as e:
            self.state = BatchState.FAILED
            outcome.status = "aborted"
            outcome.error = e
            return outcome
        except StorageError as e:
            self.state = BatchState.FAILED
            outcome.status = BatchState.FAILED.value
            outcome.error = e
            return outcome

        self.state = BatchState.COMPLETED
        return outcome

    def _check_memory(self, processed: int) -> None:
        assert self._memory_pressure is not None
        pressure = self._memory_pressure()
        if pressure == MemoryPressure.CRITICAL:
            self._log("memory_pressure_critical", processed=processed, level="error")
            raise ResourceExhausted(
                f"Memory usage is critical after {processed} records; import stopped"
            )
        if pressure == MemoryPressure.WARNING:
            self._log("memory_pressure_warning", processed=processed, level="warn")

    def _run_batch(self, batch: Sequence[Any], seen: SeenKeys, outcome: BatchOutcome) -> None:
        self.state = BatchState.NORMALIZING
        results = [self._normalize(native) for native in batch]

        self.state = BatchState.DEDUPLICATING
        pending: list[Post] = []
        pending_keys: list[str] = []
        degraded: list[str] = []
        batch_keys: set[str] = set()
        for result in results:
            post = result.post
            key = key_for(post, post.source_type)
            if seen.has(key) or key in batch_keys:
                outcome.skipped += 1
                continue

            check = validate_post(post)
            if not check.passed:
                outcome.failed += 1
                self._log("record_invalid", source_id=post.source_id, reasons=list(check.reasons))
                continue

            batch_keys.add(key)
            pending.append(post)
            pending_keys.append(key)
            if isinstance(result, Degraded):
                degraded.append(result.reason)

        self.state = BatchState.EMITTING
        if pending and self._sink is not None:
            self._sink.persist(pending)

        for key in pending_keys:
            seen.add(key)
        outcome.accepted.extend(pending)
        outcome.degraded_reasons.extend(degraded)

    def _emit(self, event: ProgressEvent) -> None:
        if self._on_progress is not None:
            self._on_progress(event)

    def _log(self, event: str, *, level: str = "info", **data: Any) -> None:
        if self._logger is not None:
            self._logger.log(level, event, **data)
