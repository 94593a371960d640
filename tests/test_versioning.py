"""Tests for version numbering."""

import json
from datetime import datetime

import hypothesis.strategies as st
from hypothesis import given

from assetincrement.versioning import (
    MAX_VERSION,
    NO_VERSION,
    VERSIONS_FILE,
    VersionMapper,
    VersionRecord,
    describe_version,
    format_version_number,
)


def clock():
    return datetime(2025, 6, 13, 12, 25, 58)


@given(number=st.integers(min_value=-10, max_value=5000))
def test_format_version_number_is_three_digits(number):
    formatted = format_version_number(number)

    assert len(formatted) == 3
    assert 1 <= int(formatted) <= MAX_VERSION


class TestVersionMapper:
    def test_empty_repository(self, tmp_path):
        mapper = VersionMapper(clock)

        assert mapper.history("a.blend", tmp_path) == []
        assert mapper.current_version("a.blend", tmp_path) == NO_VERSION
        assert mapper.next_version("a.blend", tmp_path) == "001"

    def test_sequential_records(self, tmp_path):
        mapper = VersionMapper(clock)

        for _ in range(5):
            mapper.record("a.blend", tmp_path, 100)

        records = mapper.history("a.blend", tmp_path)
        assert [r.version for r in records] == ["001", "002", "003", "004", "005"]
        assert [r.is_latest for r in records] == [False, False, False, False, True]
        assert mapper.current_version("a.blend", tmp_path) == "005"

    def test_reserved_version_is_used(self, tmp_path):
        mapper = VersionMapper(clock)
        reserved = mapper.next_version("a.blend", tmp_path)

        record = mapper.record("a.blend", tmp_path, 2048, version=reserved, snapshot_id="1a2b3c4d")

        assert record.version == "001"
        assert record.display == "v001"
        assert record.snapshot_id == "1a2b3c4d"
        assert record.timestamp == "2025-06-13T12:25:58"

    def test_numbers_are_never_reused(self, tmp_path):
        mapper = VersionMapper(clock)
        seen = set()
        for _ in range(10):
            version = mapper.record("a.blend", tmp_path, 1).version
            assert version not in seen
            seen.add(version)

    def test_clamped_at_maximum(self, tmp_path):
        mapper = VersionMapper(clock)
        records = [
            VersionRecord(f"{n:03d}", "t", str(tmp_path), 1, is_latest=(n == MAX_VERSION))
            for n in range(1, MAX_VERSION + 1)
        ]
        (tmp_path / VERSIONS_FILE).write_text(
            json.dumps({"version": 1, "records": [r.to_dict() for r in records]})
        )

        assert mapper.next_version("a.blend", tmp_path) == "999"
        mapper.record("a.blend", tmp_path, 42)

        history = mapper.history("a.blend", tmp_path)
        assert len(history) == MAX_VERSION
        assert history[-1].source_file_size == 42
        assert sum(r.is_latest for r in history) == 1

    def test_corrupt_store_reads_empty(self, tmp_path):
        (tmp_path / VERSIONS_FILE).write_text("[1, 2")
        mapper = VersionMapper(clock)

        assert mapper.history("a.blend", tmp_path) == []
        assert mapper.current_version("a.blend", tmp_path) == NO_VERSION

    def test_store_format(self, tmp_path):
        VersionMapper(clock).record("scenes/a.blend", tmp_path, 10)

        data = json.loads((tmp_path / VERSIONS_FILE).read_text())
        assert data["version"] == 1
        assert data["records"][0]["asset_path"] == "scenes/a.blend"
        assert not (tmp_path / "versions.tmp").exists()


def test_describe_version():
    record = VersionRecord("003", "2025-06-13T12:25:58", "/r", 1536)
    assert describe_version(record) == "v003 (2025-06-13T12:25:58) - 1.5 KB"
