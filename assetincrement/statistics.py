"""Backup statistics extraction from engine output.

Both engines report what a backup did in free text: the diff engine writes
a session-statistics file of "Key value (display unit)" lines, the
snapshot engine prints a summary on stdout. The parsers here are pure
functions of that text. A line that does not match leaves its field at
zero; nothing here raises on unexpected input, since the engine already
reported success by the time statistics are read.
"""

from dataclasses import dataclass, asdict
from typing import Dict, Optional, Tuple
import logging
import re

from assetincrement.config import ENGINE_DIFF, ENGINE_SNAPSHOT
from assetincrement.logger import ErrorCode, log_structured_warning


logger = logging.getLogger(__name__)

# Bump when a pattern below changes to follow a new engine output format
PATTERN_VERSION = 1

# Diff engine session statistics: "ChangedSourceSize 12345 (12.06 KB)"
DIFF_LINE_PATTERN = re.compile(
    r"^\s*(?P<key>[A-Za-z]+)\s*=?\s*(?P<value>-?\d+(?:\.\d+)?)"
    r"(?:\s*\(\s*(?P<display>-?\d+(?:\.\d+)?)\s*(?P<unit>[^)]*)\))?"
)

# Snapshot engine summary lines
SNAPSHOT_PATTERNS: Dict[str, re.Pattern] = {
    "files": re.compile(
        r"Files:\s*(\d+)\s*new,\s*(\d+)\s*changed,\s*(\d+)\s*unmodified"
    ),
    "added": re.compile(
        r"Added to the repository:\s*([\d.]+)\s*([KMGT]?iB|B)\b"
    ),
    "processed": re.compile(
        r"processed\s+\d+\s+files?,\s*([\d.]+)\s*([KMGT]?iB|B)\s+in\s+"
        r"(\d+):(\d+)(?::(\d+))?"
    ),
    "total_size": re.compile(
        r"Total Size:\s*([\d.]+)\s*([KMGT]?iB|B)\b"
    ),
    "total_files": re.compile(
        r"Total File Count:\s*(\d+)"
    ),
}

# Binary (1024-based) exponents for snapshot engine size units
SIZE_UNIT_EXPONENTS: Dict[str, int] = {
    "B": 0,
    "KiB": 1,
    "MiB": 2,
    "GiB": 3,
    "TiB": 4,
}


@dataclass
class BackupStatistics:
    """
    What one backup changed.

    compression_ratio and space_savings are percentages, left None when
    the changed source size is zero or unknown.
    """
    changed_files: int = 0
    changed_source_size: float = 0
    increment_file_size: float = 0
    total_destination_size_change: float = 0
    elapsed_time: float = 0
    compression_ratio: Optional[float] = None
    space_savings: Optional[float] = None
    source_files: Optional[int] = None
    source_size: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


def parse_size(value: str, unit: str) -> float:
    """Convert a snapshot-engine size such as ("1.331", "MiB") to bytes."""
    try:
        number = float(value)
    except ValueError:
        return 0.0
    for _ in range(SIZE_UNIT_EXPONENTS.get(unit, 0)):
        number *= 1024
    return number


def _derive_ratios(
    stats: BackupStatistics,
    increment_bytes: float,
    changed_source_bytes: float,
) -> None:
    if changed_source_bytes <= 0:
        return
    stats.compression_ratio = increment_bytes / changed_source_bytes * 100
    stats.space_savings = 100 - stats.compression_ratio


def _number(text: str) -> float:
    return float(text)


def parse_diff_statistics(content: str) -> BackupStatistics:
    """
    Parse a diff-engine session statistics file.

    Size fields take the parenthesized display figure the engine prints
    (12.06 for "12345 (12.06 KB)"); the ratios are computed from the
    exact leading byte counts so the display units never mix.
    """
    stats = BackupStatistics()
    exact: Dict[str, float] = {}
    matched = False

    for line in content.splitlines():
        match = DIFF_LINE_PATTERN.match(line)
        if not match:
            continue

        key = match.group("key")
        value = _number(match.group("value"))
        display_text = match.group("display")
        display = _number(display_text) if display_text is not None else value

        if key == "ChangedFiles":
            stats.changed_files = int(value)
        elif key == "ChangedSourceSize":
            stats.changed_source_size = display
            exact[key] = value
        elif key == "IncrementFileSize":
            stats.increment_file_size = display
            exact[key] = value
        elif key == "TotalDestinationSizeChange":
            stats.total_destination_size_change = display
        elif key == "ElapsedTime":
            stats.elapsed_time = value
        elif key == "SourceFiles":
            stats.source_files = int(value)
        elif key == "SourceFileSize":
            stats.source_size = display
        else:
            continue
        matched = True

    if not matched:
        log_structured_warning(
            logger,
            "No recognized statistics lines in diff engine output",
            ErrorCode.STATISTICS_NOT_FOUND,
        )
        return stats

    if "ChangedSourceSize" in exact:
        _derive_ratios(
            stats,
            exact.get("IncrementFileSize", 0.0),
            exact["ChangedSourceSize"],
        )
    return stats


def _parse_elapsed(groups: Tuple[Optional[str], ...]) -> float:
    first, second, third = (int(g) if g is not None else None for g in groups)
    if third is None:
        # "M:SS"
        return float(first * 60 + second)
    # "H:MM:SS"
    return float(first * 3600 + second * 60 + third)


def parse_snapshot_output(output: str) -> BackupStatistics:
    """Parse the summary the snapshot engine prints after a backup."""
    stats = BackupStatistics()
    matched = False

    files_match = SNAPSHOT_PATTERNS["files"].search(output)
    if files_match:
        new_files, changed, unmodified = (int(g) for g in files_match.groups())
        stats.changed_files = new_files + changed
        stats.source_files = new_files + changed + unmodified
        matched = True

    added_match = SNAPSHOT_PATTERNS["added"].search(output)
    if added_match:
        stats.increment_file_size = parse_size(*added_match.groups())
        stats.total_destination_size_change = stats.increment_file_size
        matched = True

    processed_match = SNAPSHOT_PATTERNS["processed"].search(output)
    if processed_match:
        size, unit, *elapsed = processed_match.groups()
        stats.changed_source_size = parse_size(size, unit)
        stats.source_size = stats.changed_source_size
        stats.elapsed_time = _parse_elapsed(tuple(elapsed))
        matched = True

    if not matched:
        log_structured_warning(
            logger,
            "No recognized summary lines in snapshot engine output",
            ErrorCode.STATISTICS_NOT_FOUND,
        )
        return stats

    _derive_ratios(stats, stats.increment_file_size, stats.changed_source_size)
    return stats


def parse_snapshot_repository_stats(output: str) -> BackupStatistics:
    """Parse the snapshot engine's repository 'stats' report."""
    stats = BackupStatistics()

    size_match = SNAPSHOT_PATTERNS["total_size"].search(output)
    if size_match:
        stats.source_size = parse_size(*size_match.groups())

    count_match = SNAPSHOT_PATTERNS["total_files"].search(output)
    if count_match:
        stats.source_files = int(count_match.group(1))

    if not size_match and not count_match:
        log_structured_warning(
            logger,
            "No recognized lines in snapshot engine stats output",
            ErrorCode.STATISTICS_NOT_FOUND,
        )
    return stats


def parse(engine_kind: str, raw: str) -> BackupStatistics:
    """
    Extract statistics from engine output.

    Args:
        engine_kind: "diff" (session statistics file content) or
            "snapshot" (backup stdout)
        raw: Text to parse

    Returns:
        BackupStatistics, zero-filled where nothing matched
    """
    if engine_kind == ENGINE_DIFF:
        return parse_diff_statistics(raw or "")
    if engine_kind == ENGINE_SNAPSHOT:
        return parse_snapshot_output(raw or "")
    logger.warning(f"No statistics parser for engine kind '{engine_kind}'")
    return BackupStatistics()


def format_size(size_bytes: float) -> str:
    """Format a byte count for display (1024-based)."""
    if size_bytes == 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(size_bytes)
    index = 0
    while abs(size) >= 1024 and index < len(units) - 1:
        size /= 1024
        index += 1
    return f"{round(size, 2):g} {units[index]}"
