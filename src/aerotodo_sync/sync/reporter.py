"""Cycle report formatting.

- ``format_sync_report`` -- post-cycle summary for humans.
- ``format_dry_run_preview`` -- proposed decisions grouped by action.
- ``report_to_json`` -- structured dict for logs and the CLI's ``--json``.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import SyncReport, SyncResult

from .models import SyncAction

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def _label(result: SyncResult) -> str:
    title = result.title or "(untitled)"
    ids = " <-> ".join(
        part for part in (result.task_id, result.remote_event_id) if part
    )
    return f"{title} [{ids}]" if ids else title


def format_sync_report(report: SyncReport) -> str:
    """Format a completed cycle as human-readable text.

    Sections are only included when they contain at least one result.
    Skipped items are summarised by count only.

    Args:
        report: The completed cycle report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    header = f"Sync report for calendar '{report.calendar_id}'"
    if report.dry_run:
        header += " (DRY RUN)"
    lines.append(header)
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    if report.skipped_reason:
        lines.append(f"Cycle skipped: {report.skipped_reason}")
        return "\n".join(lines)

    created = len(report.created_remote) + len(report.created_local)
    lines.append(
        f"Processed {len(report.results)} items: "
        f"{len(report.updated_remote)} pushed, "
        f"{len(report.updated_local)} pulled, "
        f"{created} created, "
        f"{len(report.conflicts)} conflicts, "
        f"{len(report.errors)} errors"
    )
    if report.aborted:
        lines.append("Cycle stopped before all items were processed.")
    lines.append("")

    sections = [
        ("Pushed to calendar:", report.updated_remote),
        ("Pulled from calendar:", report.updated_local),
        ("Created on calendar:", report.created_remote),
        ("Created locally:", report.created_local),
        ("Re-linked:", report.adopted),
        ("Moved to import profile:", report.rehomed),
        ("Unlinked:", report.unlinked),
    ]
    for title, results in sections:
        ok = [r for r in results if r.success]
        if not ok:
            continue
        lines.append(title)
        for r in ok:
            lines.append(f"  {_label(r)}")
        lines.append("")

    if report.conflicts:
        lines.append("Conflicts (local kept):")
        for r in report.conflicts:
            lines.append(f"  {_label(r)}")
        lines.append("")

    if report.errors:
        lines.append("Errors:")
        for r in report.errors:
            lines.append(f"  {_label(r)}: {r.error}")
        lines.append("")

    if report.skipped:
        lines.append(f"Skipped: {len(report.skipped)} items")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Dry-run preview
# ------------------------------------------------------------------


def format_dry_run_preview(report: SyncReport) -> str:
    """Format a dry-run report grouped by action type.

    Args:
        report: A dry-run report (``dry_run=True``).

    Returns:
        Multi-line formatted string.
    """
    lines = [
        "DRY RUN -- No changes will be made",
        f"Calendar: {report.calendar_id}",
        "",
    ]
    if report.skipped_reason:
        lines.append(f"Cycle skipped: {report.skipped_reason}")
        return "\n".join(lines)

    groups: dict[SyncAction, list[SyncResult]] = defaultdict(list)
    for r in report.results:
        groups[r.action].append(r)

    display_order = [
        SyncAction.PUSH,
        SyncAction.PULL,
        SyncAction.CONFLICT,
        SyncAction.CREATE_REMOTE,
        SyncAction.CREATE_LOCAL,
        SyncAction.ADOPT,
        SyncAction.REHOME,
        SyncAction.UNLINK,
        SyncAction.DELETE_REMOTE,
    ]
    for action in display_order:
        if action not in groups:
            continue
        lines.append(f"[{action.value.upper().replace('_', ' ')}]")
        for r in groups[action]:
            suffix = f" ({r.error})" if r.error else ""
            lines.append(f"  {_label(r)}{suffix}")
        lines.append("")

    skip_count = len(groups.get(SyncAction.SKIP, []))
    if skip_count > 0:
        lines.append(f"Skipped: {skip_count} items")
        lines.append("")

    if not any(a != SyncAction.SKIP for a in groups):
        lines.append("No changes needed.")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: SyncReport) -> dict:
    """Convert a cycle report to a JSON-serialisable dict.

    Args:
        report: The cycle report.

    Returns:
        Dict with calendar info, counts, and per-result details.
    """
    results_list = []
    for r in report.results:
        entry: dict = {
            "task_id": r.task_id,
            "remote_event_id": r.remote_event_id,
            "title": r.title,
            "action": r.action.value,
            "success": r.success,
        }
        if r.error:
            entry["error"] = r.error
        results_list.append(entry)

    return {
        "calendar_id": report.calendar_id,
        "dry_run": report.dry_run,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "aborted": report.aborted,
        "skipped_reason": report.skipped_reason,
        "counts": {
            "total": len(report.results),
            "pushed": len(report.updated_remote),
            "pulled": len(report.updated_local),
            "created_remote": len(report.created_remote),
            "created_local": len(report.created_local),
            "conflicts": len(report.conflicts),
            "adopted": len(report.adopted),
            "rehomed": len(report.rehomed),
            "unlinked": len(report.unlinked),
            "errors": len(report.errors),
            "skipped": len(report.skipped),
        },
        "results": results_list,
    }
