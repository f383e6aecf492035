from __future__ import annotations

from typing import Any, Mapping

from .config_schema import AppConfig
from .errors import FormatError, ResourceExhausted, StorageError
from .importer import ImportResult
from .post import SourceType

_FORMAT_HINTS: dict[SourceType, str] = {
    SourceType.TWITTER: "Use data/tweets.js from the Twitter/X archive download (it starts with window.YTD.tweets.part0 =).",
    SourceType.TWILOG: "Use the CSV exported from Twilog (columns: ID, URL, date, text).",
    SourceType.BLUESKY: "Use the repository .car file from Bluesky Settings > Export my data.",
    SourceType.MASTODON: "Use outbox.json from the Mastodon archive (Settings > Import and export > Request archive).",
    SourceType.BACKUP: "Use a .ndjson or .ndjson.gz file written by `archive_ingest export --format ndjson`.",
}


def build_failure_report(result: ImportResult, *, config: AppConfig) -> dict[str, Any]:
    st = result.status
    error = result.error

    details: dict[str, Any] = {
        "source_type": result.source_type.value,
        "total": int(result.total),
        "accepted": int(result.accepted),
        "skipped": int(result.skipped),
        "failed": int(result.failed),
        "degraded": int(result.degraded),
    }
    if result.reject_reasons:
        details["reject_reasons"] = dict(result.reject_reasons)
    if error is not None:
        details["error_type"] = type(error).__name__

    recommendations: list[str] = []
    summary = result.message or f"Import stopped with status={st}."

    if isinstance(error, FormatError):
        summary = f"The file could not be read as a {result.source_type.value} archive: {error}"
        recommendations = [
            _FORMAT_HINTS[result.source_type],
            "Check that the file was not renamed from another archive type.",
        ]
        if result.reject_reasons:
            recommendations.append(
                "Every row was rejected; see the record_rejected events in run.log for the reasons."
            )

    elif isinstance(error, ResourceExhausted):
        details["batch_size"] = int(config.batch.batch_size)
        details["max_records"] = int(config.limits.max_records)
        summary = (
            f"The import stopped to protect memory or size limits after {result.accepted} "
            f"records: {error}"
        )
        recommendations = [
            "Re-run the import; records already imported are skipped automatically.",
            "Lower batch.batch_size or raise memory.limit_mb if the machine has headroom.",
            "Split very large archives or raise limits.max_records / limits.max_file_mb.",
        ]

    elif isinstance(error, StorageError):
        summary = f"Imported posts could not be saved: {error}"
        recommendations = [
            "Check free disk space and write permissions on the output directory.",
            "Re-run the import; batches saved before the failure are kept.",
        ]

    elif st == "cancelled":
        summary = result.message
        recommendations = ["Re-run the import to continue; saved records are skipped."]

    elif result.accepted == 0 and result.skipped and result.skipped == result.total:
        summary = result.message
        recommendations = ["Nothing to do: this archive was already imported."]

    return {
        "status": st,
        "summary": summary,
        "details": details,
        "recommendations": recommendations,
    }


def format_failure_report(report: Mapping[str, Any]) -> str:
    status = str(report.get("status") or "").strip() or "unknown"
    summary = str(report.get("summary") or "").strip() or f"Import stopped ({status})."

    lines: list[str] = [summary]
    recs = report.get("recommendations")
    if isinstance(recs, list) and recs:
        lines.append("Recommendations:")
        for r in recs:
            t = str(r or "").strip()
            if t:
                lines.append(f"- {t}")

    return "\n".join(lines)
