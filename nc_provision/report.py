"""
Summary report for a provisioning run.
"""

import logging
from typing import List, Optional

from nc_provision.models import RunStatistics


def summary_lines(stats: RunStatistics, dry_run: bool) -> List[str]:
    """
    Build the lines of the final report.

    Args:
        stats: Statistics of the finished run
        dry_run: Whether creations were only simulated

    Returns:
        Report lines, without trailing newlines
    """
    created_label = "Users that would be created" if dry_run else "Users successfully created"

    lines = [
        "=== Provisioning Summary ===",
        f"Total users processed: {stats.total_processed}",
        f"{created_label}: {stats.created_success}",
        f"Skipped (no email): {stats.skipped_no_email}",
        f"Skipped (existing email): {stats.skipped_existing_email}",
        f"Skipped (existing user ID): {stats.skipped_existing_userid}",
        f"Skipped (existing external ID): {stats.skipped_existing_external_id}",
        f"Failed to create: {stats.created_failed}",
    ]
    if stats.warnings:
        lines.append(f"Created with warnings: {stats.warnings}")

    if stats.error_reasons:
        lines.append("Error breakdown:")
        ordered = sorted(stats.error_reasons.items(), key=lambda item: (-item[1], item[0]))
        for message, count in ordered:
            lines.append(f"  {count}x {message}")

    if dry_run:
        lines.append("Dry run only. Use --do to create the users.")
    return lines


def render_summary(stats: RunStatistics, dry_run: bool) -> str:
    """Render the report as a single string."""
    return "\n".join(summary_lines(stats, dry_run))


def log_summary(stats: RunStatistics, dry_run: bool, logger: Optional[logging.Logger] = None) -> None:
    """Write the report through logging, one record per line."""
    logger = logger or logging.getLogger(__name__)
    for line in summary_lines(stats, dry_run):
        logger.info(line)
