"""Rendering of reconciliation reports.

``format_sync_report`` produces the text printed by ``wiki-daemon --once``;
``report_to_json`` produces the dict printed with ``--once --json``.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import SyncReport, SyncResult

# Skips without a note come from reconciliation of an unchanged document.
DEFAULT_SKIP_REASON = "unchanged"

# (title, report attribute, arrow from source to destination)
_SECTIONS = (
    ("Downloaded", "downloaded", "->"),
    ("Uploaded", "uploaded", "<-"),
    ("Deleted locally", "deleted_local", "->"),
    ("Deleted remotely", "deleted_remote", "<-"),
)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def pass_duration(report: SyncReport) -> float | None:
    """Seconds between start and completion, if both are known."""
    started = _parse_timestamp(report.started_at)
    completed = _parse_timestamp(report.completed_at)
    if started is None or completed is None:
        return None
    return max((completed - started).total_seconds(), 0.0)


def skip_reasons(report: SyncReport) -> Counter[str]:
    """Count successful skips by their note."""
    return Counter(r.error or DEFAULT_SKIP_REASON for r in report.skipped)


def _describe(result: SyncResult, arrow: str) -> str:
    if arrow == "->":
        return f"  {result.remote_path} -> {result.local_path}"
    return f"  {result.remote_path} <- {result.local_path}"


def format_sync_report(report: SyncReport) -> str:
    """Format a completed pass for the terminal.

    Only non-empty sections are shown; skipped documents are summarised
    as counts per reason.
    """
    deleted = len(report.deleted_local) + len(report.deleted_remote)
    lines = [f"Sync report for space {report.space_id}"]
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        duration = pass_duration(report)
        suffix = f" ({duration:.1f}s)" if duration is not None else ""
        lines.append(f"Completed: {report.completed_at}{suffix}")
    lines += [
        "",
        f"Processed {len(report.results)} documents: "
        f"{len(report.downloaded)} downloaded, "
        f"{len(report.uploaded)} uploaded, "
        f"{deleted} deleted, "
        f"{len(report.errors)} errors",
        "",
    ]

    for title, attribute, arrow in _SECTIONS:
        results = getattr(report, attribute)
        if results:
            lines.append(f"{title}:")
            lines += [_describe(r, arrow) for r in results]
            lines.append("")

    if report.errors:
        lines.append("Errors:")
        for r in report.errors:
            target = r.remote_path or r.local_path or "(space)"
            lines.append(f"  {target}: {r.error}")
        lines.append("")

    reasons = skip_reasons(report)
    if reasons:
        detail = ", ".join(
            f"{reason} {count}" for reason, count in sorted(reasons.items())
        )
        lines.append(f"Skipped: {sum(reasons.values())} documents ({detail})")
        lines.append("")

    if not report.changed and not report.errors:
        lines.append("Everything up to date.")

    return "\n".join(lines).rstrip()


def report_to_json(report: SyncReport) -> dict:
    """Structured form of *report* for JSON output."""
    results = []
    for r in report.results:
        item: dict = {
            "local_path": r.local_path,
            "remote_path": r.remote_path,
            "action": r.action.value,
            "success": r.success,
        }
        if r.error:
            item["error"] = r.error
        results.append(item)

    return {
        "space_id": report.space_id,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "duration_seconds": pass_duration(report),
        "counts": {
            "total": len(report.results),
            "downloaded": len(report.downloaded),
            "uploaded": len(report.uploaded),
            "deleted_local": len(report.deleted_local),
            "deleted_remote": len(report.deleted_remote),
            "errors": len(report.errors),
            "skipped": len(report.skipped),
        },
        "skip_reasons": dict(skip_reasons(report)),
        "results": results,
    }
