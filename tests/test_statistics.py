"""Tests for engine output statistics parsing."""

import logging

import hypothesis.strategies as st
import pytest
from hypothesis import given

from assetincrement.logger import ErrorCode
from assetincrement.statistics import (
    BackupStatistics,
    format_size,
    parse,
    parse_diff_statistics,
    parse_size,
    parse_snapshot_output,
    parse_snapshot_repository_stats,
)
from conftest import logged_codes


DIFF_SESSION = """\
StartTime 1718245558.00 (Thu Jun 13 12:25:58 2025)
EndTime 1718245558.42 (Thu Jun 13 12:25:58 2025)
ElapsedTime 0.42 (0.42 seconds)
SourceFiles 2
SourceFileSize 2469604 (2.36 MB)
MirrorFiles 2
MirrorFileSize 2457259 (2.34 MB)
NewFiles 0
NewFileSize 0 (0 bytes)
DeletedFiles 0
DeletedFileSize 0 (0 bytes)
ChangedFiles 1
ChangedSourceSize 12345 (12.06 KB)
ChangedMirrorSize 11000 (10.74 KB)
IncrementFiles 1
IncrementFileSize 1234 (1.21 KB)
TotalDestinationSizeChange 2579 (2.52 KB)
Errors 0
"""

RESTIC_BACKUP = """\
open repository
repository 3c2a1f9e opened (version 2, compression level auto)
no parent snapshot found, will read all files

Files:           1 new,     0 changed,     0 unmodified
Dirs:            3 new,     0 changed,     0 unmodified
Added to the repository: 1.331 MiB (367.652 KiB stored)

processed 1 files, 1.330 MiB in 0:02
snapshot 1a2b3c4d saved
"""


class TestDiffStatistics:
    """Tests for diff-engine session statistics."""

    def test_changed_source_size_is_display_figure(self):
        stats = parse_diff_statistics("ChangedSourceSize 12345 (12.06 KB)")
        assert stats.changed_source_size == 12.06

    def test_full_session_file(self):
        stats = parse_diff_statistics(DIFF_SESSION)

        assert stats.changed_files == 1
        assert stats.changed_source_size == 12.06
        assert stats.increment_file_size == 1.21
        assert stats.total_destination_size_change == 2.52
        assert stats.elapsed_time == 0.42
        assert stats.source_files == 2
        assert stats.source_size == 2.36

    def test_ratio_uses_exact_byte_counts(self):
        stats = parse_diff_statistics(DIFF_SESSION)

        assert stats.compression_ratio == pytest.approx(1234 / 12345 * 100)
        assert stats.space_savings == pytest.approx(100 - 1234 / 12345 * 100)

    def test_zero_changed_source_leaves_ratio_undefined(self):
        stats = parse_diff_statistics("ChangedSourceSize 0 (0 bytes)\nIncrementFileSize 0 (0 bytes)")

        assert stats.compression_ratio is None
        assert stats.space_savings is None

    def test_negative_destination_change(self):
        stats = parse_diff_statistics("TotalDestinationSizeChange -2048 (-2.00 KB)")
        assert stats.total_destination_size_change == -2.0

    def test_key_equals_value_form(self):
        stats = parse_diff_statistics("ChangedFiles = 4\nChangedSourceSize = 2048 (2.00 KB)")

        assert stats.changed_files == 4
        assert stats.changed_source_size == 2.0

    def test_unknown_lines_are_ignored(self):
        stats = parse_diff_statistics("FutureKey 99 (99 things)\nChangedFiles 3")
        assert stats.changed_files == 3

    @given(text=st.text(max_size=200))
    def test_never_raises(self, text):
        stats = parse_diff_statistics(text)
        assert isinstance(stats, BackupStatistics)


class TestSnapshotStatistics:
    """Tests for snapshot-engine backup summaries."""

    def test_added_to_repository_in_bytes(self):
        stats = parse_snapshot_output("Added to the repository: 1.331 MiB (367.652 KiB stored)")
        assert stats.increment_file_size == 1.331 * 1024 * 1024

    def test_full_backup_output(self):
        stats = parse_snapshot_output(RESTIC_BACKUP)

        assert stats.changed_files == 1
        assert stats.source_files == 1
        assert stats.increment_file_size == 1.331 * 1024 * 1024
        assert stats.changed_source_size == 1.330 * 1024 * 1024
        assert stats.elapsed_time == 2.0
        assert stats.compression_ratio == pytest.approx(1.331 / 1.330 * 100)

    def test_hours_in_elapsed_time(self):
        stats = parse_snapshot_output("processed 10 files, 2.000 GiB in 1:02:03")

        assert stats.elapsed_time == 3723.0
        assert stats.changed_source_size == 2 * 1024 ** 3

    def test_file_counts(self):
        stats = parse_snapshot_output("Files:  2 new,  3 changed,  10 unmodified")

        assert stats.changed_files == 5
        assert stats.source_files == 15

    def test_plain_bytes_unit(self):
        stats = parse_snapshot_output("Added to the repository: 512 B (400 B stored)")
        assert stats.increment_file_size == 512

    def test_nothing_matched_gives_zeros(self):
        stats = parse_snapshot_output("Fatal: unable to open config file")

        assert stats.changed_files == 0
        assert stats.increment_file_size == 0
        assert stats.compression_ratio is None

    def test_nothing_matched_is_logged_with_code(self, caplog):
        with caplog.at_level(logging.WARNING, logger="assetincrement"):
            parse_snapshot_output("Fatal: unable to open config file")

        assert logged_codes(caplog) == [ErrorCode.STATISTICS_NOT_FOUND.value]

    @given(text=st.text(max_size=200))
    def test_never_raises(self, text):
        assert isinstance(parse_snapshot_output(text), BackupStatistics)


class TestRepositoryStats:
    def test_total_size_and_count(self):
        stats = parse_snapshot_repository_stats(
            "repository 3c2a1f9e opened\nStats in restore-size mode:\n"
            "     Snapshots processed:  4\n    Total File Count:  4\n          Total Size:  5.204 MiB\n"
        )

        assert stats.source_files == 4
        assert stats.source_size == 5.204 * 1024 * 1024


class TestParseDispatch:
    def test_dispatch_by_engine_kind(self):
        assert parse("diff", "ChangedFiles 7").changed_files == 7
        assert parse("snapshot", "Files: 1 new, 1 changed, 0 unmodified").changed_files == 2

    def test_unknown_engine_kind(self):
        assert parse("tape", "ChangedFiles 7") == BackupStatistics()


class TestSizes:
    @pytest.mark.parametrize("value,unit,expected", [
        ("1", "B", 1),
        ("1", "KiB", 1024),
        ("1.5", "MiB", 1.5 * 1024 ** 2),
        ("2", "TiB", 2 * 1024 ** 4),
        ("nan-ish", "KiB", 0),
    ])
    def test_parse_size(self, value, unit, expected):
        assert parse_size(value, unit) == expected

    def test_format_size(self):
        assert format_size(0) == "0 B"
        assert format_size(1536) == "1.5 KB"
        assert format_size(5 * 1024 ** 2) == "5 MB"
