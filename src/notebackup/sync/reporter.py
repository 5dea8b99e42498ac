"""Push/pull report formatting functions.

Provides human-readable and machine-readable output for sync passes:

- ``format_push_report`` -- summary of a push.
- ``format_pull_report`` -- summary of a pull, with its error list.
- ``report_to_json`` -- structured dict for ``--json`` output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import PullResult, PushResult

# ------------------------------------------------------------------
# Human-readable reports
# ------------------------------------------------------------------


def format_push_report(result: PushResult) -> str:
    """Format a push result as human-readable text.

    Args:
        result: The completed push.

    Returns:
        Multi-line formatted string.
    """
    if not result.changed:
        return "Push: backup already up to date"

    lines = [
        f"Push: {result.documents_written} documents written, "
        f"{result.assets_written} assets written"
    ]
    if result.cleaned_up:
        lines.append(f"  Removed {result.cleaned_up} orphaned entries")
    if result.manifest_written:
        lines.append("  Manifest updated")
    return "\n".join(lines)


def format_pull_report(result: PullResult) -> str:
    """Format a pull result as human-readable text.

    Errors are listed one per line after the summary.

    Args:
        result: The completed pull.

    Returns:
        Multi-line formatted string.
    """
    lines = [
        f"Pull: {result.created} created, {result.updated} updated, "
        f"{result.deleted} deleted, {len(result.errors)} errors"
    ]
    if result.errors:
        lines.append("")
        lines.append("Errors:")
        for error in result.errors:
            lines.append(f"  {error}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(
    push: PushResult | None = None, pull: PullResult | None = None
) -> dict:
    """Convert pass results to a structured dict for JSON serialisation.

    Args:
        push: Result of the push pass, if one ran.
        pull: Result of the pull pass, if one ran.

    Returns:
        Dict with a ``push`` and/or ``pull`` section and an ``ok`` flag.
    """
    report: dict = {"ok": pull is None or pull.ok}
    if pull is not None:
        report["pull"] = {
            "created": pull.created,
            "updated": pull.updated,
            "deleted": pull.deleted,
            "errors": list(pull.errors),
        }
    if push is not None:
        report["push"] = {
            "documents_written": push.documents_written,
            "assets_written": push.assets_written,
            "manifest_written": push.manifest_written,
            "cleaned_up": push.cleaned_up,
        }
    return report
