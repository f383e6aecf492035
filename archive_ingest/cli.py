from __future__ import annotations

import argparse
import signal
import sys
import threading
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Sequence

from .batch import ProgressEvent
from .config import config_sha256, load_config, with_account
from .errors import ConfigError, ExportError, FormatError, StorageError, UnsupportedSource
from .export import backup_file_name, export_ndjson, export_workbook
from .failure_report import build_failure_report, format_failure_report
from .importer import Importer, default_registry, detect_source
from .memory import MemoryMonitor
from .post import SourceType
from .run_log import RunLogger
from .storage import SQLiteStateStore

_SOURCE_CHOICES = ["auto"] + [st.value for st in SourceType]


def _pkg_version(name: str) -> str:
    try:
        return version(name)
    except PackageNotFoundError:
        return "unknown"
    except Exception:
        return "unknown"


def _versions() -> dict[str, str]:
    return {
        name: _pkg_version(name)
        for name in ("archive-ingest", "atproto", "pydantic", "PyYAML", "psutil")
    }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="archive_ingest")

    subparsers = parser.add_subparsers(dest="command", required=True)

    imp = subparsers.add_parser(
        "import",
        help="Import a social media archive into the local post store.",
    )
    imp.add_argument("--file", required=True, help="Archive file to import.")
    imp.add_argument(
        "--out",
        required=True,
        help="Output directory for state.sqlite and run.log.",
    )
    imp.add_argument(
        "--source",
        choices=_SOURCE_CHOICES,
        default="auto",
        help="Archive type; 'auto' detects it from the file name.",
    )
    imp.add_argument("--config", default=None, help="Path to YAML config file.")
    imp.add_argument(
        "--account",
        default=None,
        help="Owning account for this archive (overrides the config).",
    )
    imp.add_argument(
        "--full",
        action="store_true",
        help="Do not pre-load stored keys; only duplicates within the file are skipped.",
    )
    imp.add_argument(
        "--progress",
        action="store_true",
        help="Print progress events to stderr.",
    )
    imp.set_defaults(_handler=_cmd_import)

    exp = subparsers.add_parser(
        "export",
        help="Export stored posts as an NDJSON backup or an Excel workbook.",
    )
    exp.add_argument("--out", required=True, help="Directory holding state.sqlite.")
    exp.add_argument(
        "--format",
        choices=["ndjson", "xlsx"],
        default="ndjson",
        help="Export format.",
    )
    exp.add_argument(
        "--no-compress",
        action="store_true",
        help="Write plain NDJSON instead of gzip.",
    )
    exp.set_defaults(_handler=_cmd_export)

    src = subparsers.add_parser("sources", help="List supported archive types.")
    src.set_defaults(_handler=_cmd_sources)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _print_progress(event: ProgressEvent) -> None:
    _eprint(f"[{event.step}] {event.progress:3d}% {event.message}")


class _CancelOnInterrupt:
    """
    Turn the first Ctrl-C into a cooperative cancel request.

    The import stops after the batch in flight; a second Ctrl-C raises
    KeyboardInterrupt as usual. Used as a context manager so the previous
    SIGINT handler comes back afterwards.
    """

    def __init__(self, log: RunLogger | None = None) -> None:
        self.requested = False
        self._log = log
        self._previous: Any = None
        self._installed = False

    def __enter__(self) -> "_CancelOnInterrupt":
        # Handlers can only be installed from the main thread.
        if threading.current_thread() is threading.main_thread():
            self._previous = signal.signal(signal.SIGINT, self.handle)
            self._installed = True
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        if self._installed:
            signal.signal(signal.SIGINT, self._previous)
            self._installed = False

    def __call__(self) -> bool:
        return self.requested

    def handle(self, signum: int, frame: Any) -> None:
        if self.requested:
            raise KeyboardInterrupt
        self.requested = True
        if self._log is not None:
            self._log.warning("import_cancel_requested", signal=int(signum))
        _eprint("Interrupt received; stopping after the current batch (press Ctrl-C again to abort)")


def _cmd_import(args: argparse.Namespace) -> int:
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    log_path = out_dir / "run.log"
    with RunLogger.open(log_path) as log:
        log.info(
            "import_command_started",
            file=str(args.file),
            source=str(args.source),
            config_path=str(args.config) if args.config else None,
            out_dir=str(out_dir),
        )

        try:
            cfg = load_config(args.config)

            if args.source == "auto":
                source_type = detect_source(args.file)
                if source_type is None:
                    raise UnsupportedSource(
                        f"Cannot detect the archive type of {Path(args.file).name}; pass --source"
                    )
            else:
                source_type = SourceType.parse(args.source)

            cfg = with_account(cfg, source_type, args.account)
            log.bind(source_type=source_type.value, file_name=Path(args.file).name)

            db_path = out_dir / "state.sqlite"
            with SQLiteStateStore.open(db_path) as store:
                run = store.create_run(
                    source_type=source_type,
                    config_hash=config_sha256(cfg),
                    file_name=Path(args.file).name,
                    versions=_versions(),
                )
                log.set_run_id(run.run_id)

                importer = Importer(
                    registry=default_registry(),
                    store=store,
                    config=cfg,
                    memory_pressure=MemoryMonitor.from_config(cfg.memory),
                    on_progress=_print_progress if args.progress else None,
                    logger=log,
                )
                with _CancelOnInterrupt(log) as cancel:
                    result = importer.import_file(
                        args.file,
                        source_type=source_type,
                        diff=not args.full,
                        should_cancel=cancel,
                        run_id=run.run_id,
                    )
                store.finish_run(
                    run.run_id,
                    status=result.status,
                    accepted=result.accepted,
                    skipped=result.skipped,
                    failed=result.failed,
                )

            print(f"status={result.status}")
            print(f"run_id={run.run_id}")
            print(f"source_type={result.source_type.value}")
            print(f"total={result.total}")
            print(f"accepted={result.accepted}")
            print(f"skipped={result.skipped}")
            print(f"failed={result.failed}")
            print(f"degraded={result.degraded}")
            print(f"message={result.message}")
            print(f"state_db={db_path}")
            print(f"run_log={log_path}")

            if result.success:
                return 0

            report = build_failure_report(result, config=cfg)
            log.warning("import_failure_report", **report)
            _eprint(format_failure_report(report))
            if isinstance(result.error, (FormatError, StorageError)):
                return 3
            return 4
        except Exception as e:
            log.exception("import_command_failed", exc=e)
            raise


def _cmd_export(args: argparse.Namespace) -> int:
    out_dir = Path(args.out)
    db_path = out_dir / "state.sqlite"
    if not db_path.exists():
        raise ExportError(f"No post store found at {db_path}; run an import first")

    with SQLiteStateStore.open(db_path) as store:
        if args.format == "xlsx":
            path = export_workbook(store, out_dir / "posts.xlsx")
        else:
            compress = not args.no_compress
            path = export_ndjson(store, out_dir / backup_file_name(compress=compress), compress=compress)
        count = store.post_count()

    print(f"format={args.format}")
    print(f"posts={count}")
    print(f"path={path}")
    return 0


def _cmd_sources(args: argparse.Namespace) -> int:
    for handler in default_registry().supported():
        exts = ",".join(handler.extensions)
        print(f"{handler.source_type.value}\t{exts}\t{handler.display_name}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except (FormatError, UnsupportedSource, StorageError, ExportError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
