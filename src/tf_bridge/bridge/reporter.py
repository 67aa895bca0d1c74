"""Task report formatting functions.

Provides human-readable and machine-readable output for task runs:

- ``format_checkin_report`` -- post-checkin summary (or preview).
- ``format_fetch_report`` -- post-fetch summary.
- ``format_shelve_report`` -- post-shelve summary.
- ``format_shelvesets`` -- one line per shelveset.
- ``format_pending_changes`` -- one line per pending change.
- ``report_to_json`` -- structured dict for any report type.
"""

from __future__ import annotations

from collections import Counter
from typing import Sequence

from tf_bridge.bridge.models import (
    ChangeKind,
    CheckinReport,
    CheckinStatus,
    FetchReport,
    FetchStatus,
    PendingChange,
    Shelveset,
    ShelveReport,
    ShelveStatus,
)

_KIND_LABELS = {
    ChangeKind.ADD: "add",
    ChangeKind.EDIT: "edit",
    ChangeKind.DELETE: "delete",
    ChangeKind.RENAME: "rename",
}

# ------------------------------------------------------------------
# Pending changes
# ------------------------------------------------------------------


def format_pending_changes(changes: Sequence[PendingChange]) -> list[str]:
    """Render pending changes as ``[kind] path`` lines."""
    lines = []
    for change in changes:
        label = _KIND_LABELS[change.kind]
        if change.is_directory:
            label += " folder"
        if change.kind == ChangeKind.RENAME:
            lines.append(
                f"  [{label}] {change.source_path} -> {change.target_path}"
            )
        else:
            lines.append(f"  [{label}] {change.source_path}")
    return lines


def _counts(changes: Sequence[PendingChange]) -> str:
    counter = Counter(c.kind for c in changes)
    parts = [
        f"{counter[kind]} {_KIND_LABELS[kind]}"
        for kind in ChangeKind
        if counter[kind]
    ]
    return ", ".join(parts) or "no changes"


# ------------------------------------------------------------------
# Human-readable reports
# ------------------------------------------------------------------


def format_checkin_report(report: CheckinReport) -> str:
    """Format a checkin report as human-readable text.

    Args:
        report: The completed checkin report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    header = f"Checkin report for {report.server_path}"
    if report.status == CheckinStatus.PREVIEW:
        header += " (PREVIEW)"
    lines.append(header)
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append(f"Status: {report.status.value}")
    lines.append("")

    if report.status == CheckinStatus.UP_TO_DATE and not report.results:
        lines.append("Already up to date.")
        return "\n".join(lines).rstrip()

    for result in report.results:
        commit = result.commit_id[:12]
        if result.changeset is not None:
            lines.append(
                f"Commit {commit} -> changeset {result.changeset} "
                f"({_counts(result.changes)})"
            )
        elif result.error:
            lines.append(f"Commit {commit} FAILED: {result.error}")
        else:
            lines.append(f"Commit {commit}: {_counts(result.changes)}")
        if report.status == CheckinStatus.PREVIEW:
            lines.extend(format_pending_changes(result.changes))
    lines.append("")

    if report.status == CheckinStatus.PARTIAL:
        lines.append(
            f"{len(report.mapped)} of {len(report.results)} commits were "
            f"checked in before the failure; the rest were not."
        )
    if report.error:
        lines.append(f"Error ({report.error_kind.value}): {report.error}")

    return "\n".join(lines).rstrip()


def format_fetch_report(report: FetchReport) -> str:
    """Format a fetch report as human-readable text.

    Args:
        report: The completed fetch report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append(f"Fetch report for {report.server_path}")
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append(f"Status: {report.status.value}")
    lines.append("")

    if report.status == FetchStatus.ALREADY_FETCHED:
        lines.append("Already fetched.")
    for result in report.results:
        lines.append(
            f"Changeset {result.changeset} -> commit {result.commit_id[:12]} "
            f"({result.downloaded} downloaded)"
        )
    if report.fetch_head:
        lines.append("")
        lines.append(
            f"FETCH_HEAD: {report.fetch_head[:12]} "
            f"(changeset {report.latest_changeset})"
        )
    if report.error:
        lines.append("")
        lines.append(
            f"Error at changeset {report.failed_changeset} "
            f"({report.error_kind.value}): {report.error}"
        )

    return "\n".join(lines).rstrip()


def format_shelve_report(report: ShelveReport) -> str:
    """Format a shelve report as human-readable text."""
    lines = [
        f"Shelve report for {report.server_path}",
        f"Status: {report.status.value}",
        "",
    ]
    if report.status == ShelveStatus.NO_CHANGES:
        lines.append("Nothing to shelve.")
    elif report.shelveset is not None:
        lines.append(
            f"Shelved {report.commit_id[:12]} as {report.shelveset.name} "
            f"({_counts(report.changes)})"
        )
        lines.extend(format_pending_changes(report.changes))
    if report.error:
        lines.append(f"Error ({report.error_kind.value}): {report.error}")
    return "\n".join(lines).rstrip()


def format_shelvesets(shelvesets: Sequence[Shelveset]) -> str:
    """Render shelvesets as ``name  owner  date`` rows."""
    if not shelvesets:
        return "No shelvesets."
    width = max(len(s.name) for s in shelvesets)
    lines = []
    for s in shelvesets:
        created = s.created.strftime("%Y-%m-%d %H:%M") if s.created else "-"
        owner = s.owner_display_name or s.owner
        lines.append(f"{s.name:<{width}}  {owner}  {created}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: CheckinReport | FetchReport | ShelveReport) -> dict:
    """Convert a task report to a structured dict for JSON serialisation.

    Args:
        report: A checkin, fetch or shelve report.

    Returns:
        Dict with the task type, status, error details and per-item results.
    """
    data: dict = {
        "server_path": report.server_path,
        "status": report.status.value,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
    }
    if report.error:
        data["error"] = {
            "kind": report.error_kind.value,
            "message": report.error,
        }

    if isinstance(report, ShelveReport):
        data["task"] = "shelve"
        data["name"] = report.name
        data["commit"] = report.commit_id
        data["changes"] = [
            c.model_dump(mode="json", exclude_none=True) for c in report.changes
        ]
        return data

    if isinstance(report, CheckinReport):
        data["task"] = "checkin"
        results = []
        for r in report.results:
            entry: dict = {
                "commit": r.commit_id,
                "changeset": r.changeset,
                "changes": [
                    c.model_dump(mode="json", exclude_none=True)
                    for c in r.changes
                ],
                "success": r.success,
            }
            if r.error:
                entry["error"] = r.error
            results.append(entry)
        data["results"] = results
        data["last_changeset"] = report.last_changeset
        return data

    data["task"] = "fetch"
    data["results"] = [r.model_dump(mode="json") for r in report.results]
    data["fetch_head"] = report.fetch_head
    data["latest_changeset"] = report.latest_changeset
    if report.failed_changeset is not None:
        data["failed_changeset"] = report.failed_changeset
    return data
