"""
log_utils.py

Utility module for migration-tool log parsing.

Contains:
- Compiled regex patterns for the migration start/complete markers
- Extraction of the fixed-width leading timestamp of a log line
- Migration duration computation from the two marker lines

This module is stateless and has no side effects. It only parses text;
reading the log file is handled by file_processor.py.
"""

import logging
import re
from datetime import datetime
from typing import Iterable, Optional, Pattern, Union

from utils.models import MigrationTiming

logger = logging.getLogger(__name__)


# ============================================================
# Compiled Regex Patterns
# ============================================================

# Migration start marker
# Example: "2025-01-01 10:00:00 [INFO] Initializing kubernetes clients"
RE_MIGRATION_START = re.compile(r"\[INFO\] Initializing kubernetes clients")

# Migration end marker
# Example: "2025-01-01 10:05:30 [INFO] Migration complete"
RE_MIGRATION_END = re.compile(r"\[INFO\] Migration complete")

# Leading "YYYY-MM-DD HH:MM:SS" field
RE_LEADING_TIMESTAMP = re.compile(r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})")

DEFAULT_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


# ============================================================
# Field Extraction
# ============================================================

def extract_timestamp(line: str, timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT) -> Optional[datetime]:
    """
    Parse the fixed-width timestamp at the start of a log line.

    Args:
        line: A single line from a migration log.
        timestamp_format: strptime format of the leading field.

    Returns:
        The parsed datetime, or None if the line does not start with a
        timestamp in the expected format.
    """
    match = RE_LEADING_TIMESTAMP.match(line)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), timestamp_format)
    except ValueError:
        return None


def find_first_match(lines: Iterable[str], pattern: Pattern) -> Optional[str]:
    """Return the first line matching pattern, in file order."""
    for line in lines:
        if pattern.search(line):
            return line
    return None


# ============================================================
# Migration Duration
# ============================================================

def _compile(pattern: Union[str, Pattern]) -> Pattern:
    return re.compile(pattern) if isinstance(pattern, str) else pattern


def extract_migration_timing(
    lines: Iterable[str],
    start_pattern: Union[str, Pattern] = RE_MIGRATION_START,
    end_pattern: Union[str, Pattern] = RE_MIGRATION_END,
    timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT,
) -> MigrationTiming:
    """
    Compute the migration duration from the start and complete markers.

    Each marker is the first occurrence of its own pattern; the two scans
    are independent of each other. A missing marker or an unparseable
    timestamp yields duration None. A negative duration is returned as-is
    with out_of_order set.

    Args:
        lines: Log lines in file order.
        start_pattern: Regex (or pattern string) of the start marker.
        end_pattern: Regex (or pattern string) of the complete marker.
        timestamp_format: strptime format of the leading timestamp.

    Returns:
        MigrationTiming for the run.
    """
    lines = list(lines)
    start_line = find_first_match(lines, _compile(start_pattern))
    end_line = find_first_match(lines, _compile(end_pattern))

    if start_line is None or end_line is None:
        logger.debug("Could not find start or end markers in log")
        return MigrationTiming(start=None, end=None, duration_seconds=None)

    start = extract_timestamp(start_line, timestamp_format)
    end = extract_timestamp(end_line, timestamp_format)
    if start is None or end is None:
        logger.debug("Could not parse marker timestamps: %r / %r", start_line, end_line)
        return MigrationTiming(start=start, end=end, duration_seconds=None)

    duration = (end - start).total_seconds()
    out_of_order = duration < 0
    if out_of_order:
        logger.warning(
            "Migration complete marker (%s) precedes start marker (%s); duration %.2f s",
            end, start, duration,
        )
    return MigrationTiming(start=start, end=end, duration_seconds=float(duration), out_of_order=out_of_order)
