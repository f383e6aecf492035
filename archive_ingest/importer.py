from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from . import backup_ndjson, bluesky_car, mastodon_outbox, twilog_csv, twitter_archive
from .batch import (
    BatchOutcome,
    BatchProcessor,
    BatchSettings,
    BatchState,
    ProgressEvent,
    ProgressFn,
    PressureFn,
)
from .config import with_account
from .config_schema import AppConfig
from .context import ImportContext
from .errors import FormatError, ResourceExhausted, StorageError, UnsupportedSource
from .normalize import NativeIdFn, NormalizeFn, NormalizeResult, safe_normalize
from .post import Post, SourceType
from .run_log import RunLogger
from .storage import PostStore

DecodeFn = Callable[[bytes | str, ImportContext], Sequence[Any]]

_UNSAFE_NAME_RE = re.compile(r'[<>:"|?*\x00-\x1f]')


@dataclass(frozen=True)
class SourceHandler:
    source_type: SourceType
    display_name: str
    decode: DecodeFn
    normalize: NormalizeFn
    native_id: NativeIdFn
    extensions: tuple[str, ...]


class SourceRegistry:
    """Explicit mapping from SourceType to its decoder/normalizer pair."""

    def __init__(self, handlers: Sequence[SourceHandler] = ()) -> None:
        self._handlers: dict[SourceType, SourceHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: SourceHandler) -> None:
        self._handlers[handler.source_type] = handler

    def get(self, source_type: SourceType | str) -> SourceHandler:
        try:
            st = SourceType.parse(source_type)
        except ValueError as e:
            raise UnsupportedSource(f"Unknown source type: {source_type!r}") from e
        handler = self._handlers.get(st)
        if handler is None:
            raise UnsupportedSource(f"No importer registered for source type: {st.value}")
        return handler

    def supported(self) -> list[SourceHandler]:
        return [self._handlers[st] for st in SourceType if st in self._handlers]


def default_registry() -> SourceRegistry:
    return SourceRegistry(
        [
            SourceHandler(
                source_type=SourceType.TWITTER,
                display_name="Twitter/X archive (tweets.js)",
                decode=twitter_archive.decode_tweets_js,
                normalize=twitter_archive.normalize_tweet,
                native_id=twitter_archive.native_id,
                extensions=(".js", ".json"),
            ),
            SourceHandler(
                source_type=SourceType.TWILOG,
                display_name="Twilog CSV export",
                decode=twilog_csv.decode_twilog_csv,
                normalize=twilog_csv.normalize_twilog_row,
                native_id=twilog_csv.native_id,
                extensions=(".csv",),
            ),
            SourceHandler(
                source_type=SourceType.BLUESKY,
                display_name="Bluesky repository (CAR)",
                decode=bluesky_car.decode_car,
                normalize=bluesky_car.normalize_block,
                native_id=bluesky_car.native_id,
                extensions=(".car",),
            ),
            SourceHandler(
                source_type=SourceType.MASTODON,
                display_name="Mastodon outbox.json",
                decode=mastodon_outbox.decode_outbox,
                normalize=mastodon_outbox.normalize_status,
                native_id=mastodon_outbox.native_id,
                extensions=(".json",),
            ),
            SourceHandler(
                source_type=SourceType.BACKUP,
                display_name="NDJSON backup (.ndjson / .ndjson.gz)",
                decode=backup_ndjson.decode_backup,
                normalize=backup_ndjson.normalize_backup_post,
                native_id=backup_ndjson.native_id,
                extensions=(".ndjson", ".gz"),
            ),
        ]
    )


@dataclass(frozen=True)
class ImportResult:
    success: bool
    status: str
    source_type: SourceType
    accepted: int
    skipped: int
    failed: int
    total: int
    message: str
    records: tuple[Post, ...] = ()
    degraded: int = 0
    degraded_reasons: tuple[str, ...] = ()
    reject_reasons: Mapping[str, int] = field(default_factory=dict)
    imported_at: datetime | None = None
    error: BaseException | None = None


def detect_source(file_name: str) -> SourceType | None:
    """Guess the import source from an archive's file name."""
    name = Path(file_name or "").name.lower()
    if name.endswith((".ndjson", ".ndjson.gz")):
        return SourceType.BACKUP
    if name.endswith(".car"):
        return SourceType.BLUESKY
    if name.endswith(".csv"):
        return SourceType.TWILOG
    if name.endswith(".js"):
        return SourceType.TWITTER
    if name.endswith(".json"):
        if "outbox" in name:
            return SourceType.MASTODON
        if "tweet" in name:
            return SourceType.TWITTER
    return None


class _RunSink:
    def __init__(self, store: PostStore, run_id: str | None) -> None:
        self._store = store
        self._run_id = run_id

    def persist(self, posts: Sequence[Post]) -> int:
        return self._store.persist(posts, run_id=self._run_id)


class Importer:
    """
    Run one archive through decode, normalization, duplicate filtering and
    persistence.

    Container, resource and storage failures come back as an unsuccessful
    ImportResult holding whatever was accepted before the failure. An
    unregistered source type raises UnsupportedSource before any work.
    """

    def __init__(
        self,
        *,
        registry: SourceRegistry,
        store: PostStore | None = None,
        config: AppConfig | None = None,
        memory_pressure: PressureFn | None = None,
        on_progress: ProgressFn | None = None,
        pause_fn: Callable[[float], None] = time.sleep,
        logger: RunLogger | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._config = config or AppConfig()
        self._memory_pressure = memory_pressure
        self._on_progress = on_progress
        self._pause = pause_fn
        self._logger = logger

    def build_context(
        self, source_type: SourceType | str, *, account: str | None = None
    ) -> ImportContext:
        st = SourceType.parse(source_type)
        accounts = with_account(self._config, st, account).accounts
        return ImportContext(
            account=getattr(accounts, st.record_type) if st.record_type else None,
            default_language=self._config.defaults.language,
            twilog_utc_offset_hours=self._config.defaults.twilog_utc_offset_hours,
            logger=self._logger,
        )

    def import_archive(
        self,
        source_type: SourceType | str,
        raw: bytes | str,
        *,
        context: ImportContext | None = None,
        should_cancel: Callable[[], bool] | None = None,
        run_id: str | None = None,
    ) -> ImportResult:
        handler = self._registry.get(source_type)
        ctx = context or self.build_context(handler.source_type)
        return self._run(handler, raw, ctx, set(), should_cancel, run_id)

    def import_with_diff(
        self,
        source_type: SourceType | str,
        raw: bytes | str,
        *,
        context: ImportContext | None = None,
        should_cancel: Callable[[], bool] | None = None,
        run_id: str | None = None,
    ) -> ImportResult:
        """Like import_archive, but skip every record the store already holds."""
        handler = self._registry.get(source_type)
        ctx = context or self.build_context(handler.source_type)

        existing: set[str] = set()
        if self._store is not None:
            try:
                existing = self._store.existing_keys(handler.source_type)
            except StorageError as e:
                return self._failed(handler.source_type, ctx, e)
            ctx.log_info("existing_keys_loaded", count=len(existing))

        return self._run(handler, raw, ctx, existing, should_cancel, run_id)

    def import_file(
        self,
        path: str | Path,
        *,
        source_type: SourceType | str | None = None,
        account: str | None = None,
        diff: bool = True,
        should_cancel: Callable[[], bool] | None = None,
        run_id: str | None = None,
    ) -> ImportResult:
        p = Path(path)
        if source_type is None:
            detected = detect_source(p.name)
            if detected is None:
                raise UnsupportedSource(f"Cannot detect the archive type of {p.name}")
            source_type = detected

        handler = self._registry.get(source_type)
        ctx = self.build_context(handler.source_type, account=account)

        try:
            self.validate_file(p, handler)
            raw = p.read_bytes()
        except (FormatError, ResourceExhausted) as e:
            return self._failed(handler.source_type, ctx, e)
        except OSError as e:
            return self._failed(handler.source_type, ctx, FormatError(f"Cannot read {p}: {e}"))

        runner = self.import_with_diff if diff else self.import_archive
        return runner(
            handler.source_type, raw, context=ctx, should_cancel=should_cancel, run_id=run_id
        )

    def validate_file(self, path: Path, handler: SourceHandler) -> None:
        if _UNSAFE_NAME_RE.search(path.name):
            raise FormatError(f"File name contains unsupported characters: {path.name}")
        if path.suffix.lower() not in handler.extensions:
            allowed = ", ".join(handler.extensions)
            raise FormatError(f"{handler.display_name} expects a {allowed} file, got {path.name}")
        if not path.is_file():
            raise FormatError(f"File not found: {path}")

        limits = self._config.limits
        limit_mb = (
            limits.max_car_file_mb
            if handler.source_type is SourceType.BLUESKY
            else limits.max_file_mb
        )
        size = path.stat().st_size
        if size == 0:
            raise FormatError(f"File is empty: {path.name}")
        if size > limit_mb * 1024 * 1024:
            raise ResourceExhausted(f"{path.name} is larger than the {limit_mb} MB limit")

    def _emit(self, event: ProgressEvent) -> None:
        if self._on_progress is not None:
            self._on_progress(event)

    def _run(
        self,
        handler: SourceHandler,
        raw: bytes | str,
        ctx: ImportContext,
        existing: set[str],
        should_cancel: Callable[[], bool] | None,
        run_id: str | None,
    ) -> ImportResult:
        st = handler.source_type
        ctx.log_info("import_started", source_type=st.value, size=len(raw))
        self._emit(ProgressEvent(step="init", progress=0, message="Starting import"))

        processor = BatchProcessor(
            normalize_fn=self._normalizer(handler, ctx),
            sink=_RunSink(self._store, run_id) if self._store is not None else None,
            settings=BatchSettings.from_config(self._config.batch),
            memory_pressure=self._memory_pressure,
            should_cancel=should_cancel,
            on_progress=self._on_progress,
            pause_fn=self._pause,
            logger=ctx.logger,
        )

        processor.state = BatchState.DECODING
        try:
            natives = handler.decode(raw, ctx)
        except FormatError as e:
            return self._failed(st, ctx, e)
        except (ValueError, TypeError, KeyError) as e:
            return self._failed(st, ctx, FormatError(f"Malformed {handler.display_name}: {e}"))

        ctx.log_info(
            "decode_completed", source_type=st.value, records=len(natives), rejected=ctx.rejected_count
        )

        max_records = self._config.limits.max_records
        if len(natives) > max_records:
            return self._failed(
                st,
                ctx,
                ResourceExhausted(f"Archive holds {len(natives)} records; the limit is {max_records}"),
                total=len(natives),
            )
        if not natives:
            return self._failed(
                st,
                ctx,
                FormatError(f"No importable records found ({ctx.rejected_count} rejected)"),
            )

        self._emit(
            ProgressEvent(
                step="parsed",
                progress=0,
                message=f"Parsed {len(natives)} records",
                processed=0,
                total=len(natives),
            )
        )

        outcome = processor.run(natives, existing_keys=existing)
        result = self._result(st, ctx, outcome)

        if result.success:
            ctx.log_info(
                "import_completed",
                source_type=st.value,
                accepted=result.accepted,
                skipped=result.skipped,
                failed=result.failed,
                degraded=result.degraded,
            )
        else:
            ctx.log_warning(
                "import_aborted",
                source_type=st.value,
                status=result.status,
                accepted=result.accepted,
                error=str(result.error) if result.error else None,
            )
        return result

    def _normalizer(
        self, handler: SourceHandler, ctx: ImportContext
    ) -> Callable[[Any], NormalizeResult]:
        def _normalize(native: Any) -> NormalizeResult:
            return safe_normalize(
                handler.normalize, native, handler.source_type, ctx, native_id=handler.native_id
            )

        return _normalize

    def _result(self, st: SourceType, ctx: ImportContext, outcome: BatchOutcome) -> ImportResult:
        accepted = len(outcome.accepted)
        failed = outcome.failed + ctx.rejected_count
        return ImportResult(
            success=outcome.status == "completed",
            status=outcome.status,
            source_type=st,
            accepted=accepted,
            skipped=outcome.skipped,
            failed=failed,
            total=outcome.total,
            message=_message(outcome, accepted, failed),
            records=tuple(outcome.accepted),
            degraded=len(outcome.degraded_reasons),
            degraded_reasons=tuple(outcome.degraded_reasons),
            reject_reasons=dict(ctx.rejects),
            imported_at=ctx.imported_at,
            error=outcome.error,
        )

    def _failed(
        self,
        st: SourceType,
        ctx: ImportContext,
        error: BaseException,
        *,
        total: int = 0,
    ) -> ImportResult:
        ctx.log_warning("import_failed", source_type=st.value, error=str(error))
        return ImportResult(
            success=False,
            status="failed",
            source_type=st,
            accepted=0,
            skipped=0,
            failed=ctx.rejected_count,
            total=total,
            message=f"Import failed: {error}",
            reject_reasons=dict(ctx.rejects),
            imported_at=ctx.imported_at,
            error=error,
        )


def _message(outcome: BatchOutcome, accepted: int, failed: int) -> str:
    if outcome.status == "cancelled":
        return (
            f"Import cancelled after {outcome.processed}/{outcome.total} records; "
            f"{accepted} imported"
        )
    if outcome.status == "aborted":
        return f"Import stopped: {outcome.error}. {accepted} records were imported before stopping"
    if outcome.status != "completed":
        return f"Import failed: {outcome.error}. {accepted} records were imported before the failure"

    if accepted == 0 and outcome.skipped and outcome.skipped == outcome.total:
        return f"All {outcome.total} records were already imported; nothing new to add"

    parts = [f"Imported {accepted} records"]
    if outcome.skipped:
        parts.append(f"skipped {outcome.skipped} duplicates")
    if failed:
        parts.append(f"{failed} could not be read")
    return ", ".join(parts)
