from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from archive_fixtures import make_post

from archive_ingest.batch import BatchProcessor, BatchSettings, BatchState, ProgressEvent
from archive_ingest.errors import StorageError
from archive_ingest.memory import MemoryPressure
from archive_ingest.normalize import Degraded, Normalized, NormalizeResult
from archive_ingest.post import Metrics, Post

_BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _normalize(native: Any) -> NormalizeResult:
    return Normalized(
        make_post(str(native), created_at=_BASE + timedelta(minutes=int(native)))
    )


class _ListSink:
    def __init__(self, *, fail_on_call: int | None = None) -> None:
        self.batches: list[list[Post]] = []
        self._fail_on_call = fail_on_call

    def persist(self, posts: Sequence[Post]) -> int:
        if self._fail_on_call is not None and len(self.batches) + 1 == self._fail_on_call:
            raise StorageError("disk full")
        self.batches.append(list(posts))
        return len(posts)


class _Pressure:
    def __init__(self, levels: dict[int, MemoryPressure]) -> None:
        self.calls = 0
        self._levels = levels

    def __call__(self) -> MemoryPressure:
        self.calls += 1
        return self._levels.get(self.calls, MemoryPressure.NORMAL)


class _Log:
    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def log(self, level: str, event: str, **data: Any) -> None:
        self.records.append((level, event, data))

    def events(self) -> list[str]:
        return [e for _, e, _ in self.records]


class TestBatchProcessor(unittest.TestCase):
    def test_progress_events_for_large_import(self) -> None:
        events: list[ProgressEvent] = []
        pauses: list[float] = []
        sink = _ListSink()
        processor = BatchProcessor(
            normalize_fn=_normalize,
            sink=sink,
            settings=BatchSettings(batch_size=500, pause_seconds=0.01),
            on_progress=events.append,
            pause_fn=pauses.append,
        )

        outcome = processor.run(list(range(10_000)), existing_keys=set())

        self.assertEqual(outcome.status, "completed")
        self.assertEqual(processor.state, BatchState.COMPLETED)
        self.assertEqual(len(events), 20)
        processed = [e.processed for e in events]
        self.assertEqual(processed, sorted(set(processed)))
        self.assertEqual(processed[-1], 10_000)
        self.assertEqual(events[-1].progress, 100)
        self.assertTrue(all(e.step == "processing" for e in events))
        self.assertEqual(len(pauses), 19)
        self.assertEqual(len(sink.batches), 20)
        self.assertEqual(len(outcome.accepted), 10_000)

    def test_source_order_is_preserved(self) -> None:
        processor = BatchProcessor(
            normalize_fn=_normalize,
            settings=BatchSettings(batch_size=3, pause_seconds=0),
        )
        outcome = processor.run(list(range(10)), existing_keys=set())
        self.assertEqual([p.source_id for p in outcome.accepted], [str(i) for i in range(10)])

    def test_critical_memory_aborts_between_batches(self) -> None:
        pressure = _Pressure({3: MemoryPressure.CRITICAL})
        sink = _ListSink()
        processor = BatchProcessor(
            normalize_fn=_normalize,
            sink=sink,
            settings=BatchSettings(batch_size=500, pause_seconds=0, memory_check_interval=500),
            memory_pressure=pressure,
        )

        outcome = processor.run(list(range(5_000)), existing_keys=set())

        self.assertEqual(outcome.status, "aborted")
        self.assertEqual(pressure.calls, 3)
        self.assertEqual(len(outcome.accepted), 1_000)
        self.assertEqual(sum(len(b) for b in sink.batches), 1_000)
        self.assertEqual(outcome.processed, 1_000)
        self.assertIn("critical", str(outcome.error))

    def test_memory_checked_at_interval(self) -> None:
        pressure = _Pressure({})
        processor = BatchProcessor(
            normalize_fn=_normalize,
            settings=BatchSettings(batch_size=100, pause_seconds=0, memory_check_interval=250),
            memory_pressure=pressure,
        )
        processor.run(list(range(1_000)), existing_keys=set())
        # before batches starting at 0, 300, 500, 800
        self.assertEqual(pressure.calls, 4)

    def test_memory_warning_is_logged_and_import_continues(self) -> None:
        log = _Log()
        processor = BatchProcessor(
            normalize_fn=_normalize,
            settings=BatchSettings(batch_size=10, pause_seconds=0, memory_check_interval=10),
            memory_pressure=_Pressure({2: MemoryPressure.WARNING}),
            logger=log,  # type: ignore[arg-type]
        )

        outcome = processor.run(list(range(30)), existing_keys=set())

        self.assertEqual(outcome.status, "completed")
        self.assertEqual(len(outcome.accepted), 30)
        warnings = [r for r in log.records if r[1] == "memory_pressure_warning"]
        self.assertEqual(len(warnings), 1)
        self.assertEqual(warnings[0][0], "warn")
        self.assertEqual(warnings[0][2]["processed"], 10)

    def test_cancel_after_in_flight_batch(self) -> None:
        events: list[ProgressEvent] = []
        processor = BatchProcessor(
            normalize_fn=_normalize,
            settings=BatchSettings(batch_size=10, pause_seconds=0),
            should_cancel=lambda: len(events) >= 2,
            on_progress=events.append,
        )

        outcome = processor.run(list(range(100)), existing_keys=set())

        self.assertEqual(outcome.status, "cancelled")
        self.assertEqual(processor.state, BatchState.CANCELLED)
        self.assertEqual(len(outcome.accepted), 20)
        self.assertEqual(outcome.batches, 2)

    def test_storage_failure_keeps_earlier_batches(self) -> None:
        sink = _ListSink(fail_on_call=3)
        processor = BatchProcessor(
            normalize_fn=_normalize,
            sink=sink,
            settings=BatchSettings(batch_size=5, pause_seconds=0),
        )

        outcome = processor.run(list(range(20)), existing_keys=set())

        self.assertEqual(outcome.status, "failed")
        self.assertIsInstance(outcome.error, StorageError)
        self.assertEqual(len(sink.batches), 2)
        self.assertEqual(len(outcome.accepted), 10)

    def test_existing_and_in_batch_duplicates_are_skipped(self) -> None:
        processor = BatchProcessor(
            normalize_fn=_normalize,
            settings=BatchSettings(batch_size=4, pause_seconds=0),
        )

        outcome = processor.run([1, 2, 2, 3, 3, 4], existing_keys={"twitter:1"})

        self.assertEqual([p.source_id for p in outcome.accepted], ["2", "3", "4"])
        self.assertEqual(outcome.skipped, 3)
        self.assertEqual(outcome.status, "completed")

    def test_invalid_posts_are_counted_as_failed(self) -> None:
        log = _Log()

        def normalize(native: Any) -> NormalizeResult:
            post = make_post(str(native))
            if native == 2:
                post = post.model_copy(update={"metrics": Metrics(likes=-1)})
            return Normalized(post)

        processor = BatchProcessor(
            normalize_fn=normalize,
            settings=BatchSettings(batch_size=10, pause_seconds=0),
            logger=log,  # type: ignore[arg-type]
        )
        outcome = processor.run([1, 2, 3], existing_keys=set())

        self.assertEqual(outcome.failed, 1)
        self.assertEqual([p.source_id for p in outcome.accepted], ["1", "3"])
        self.assertIn("record_invalid", log.events())

    def test_degraded_results_are_accepted_and_counted(self) -> None:
        def normalize(native: Any) -> NormalizeResult:
            post = make_post(str(native))
            if native == 1:
                return Degraded(post=post, reason="ValueError: bad date")
            return Normalized(post)

        processor = BatchProcessor(
            normalize_fn=normalize,
            settings=BatchSettings(batch_size=10, pause_seconds=0),
        )
        outcome = processor.run([0, 1], existing_keys=set())

        self.assertEqual(len(outcome.accepted), 2)
        self.assertEqual(outcome.degraded_reasons, ["ValueError: bad date"])

    def test_settings_validation(self) -> None:
        with self.assertRaises(ValueError):
            BatchSettings(batch_size=0)
        with self.assertRaises(ValueError):
            BatchSettings(pause_seconds=-1)
        with self.assertRaises(ValueError):
            BatchSettings(memory_check_interval=0)


if __name__ == "__main__":
    unittest.main()
