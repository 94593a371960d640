"""Human-facing version numbers over engine increments.

Each successful backup gets a three-digit version ("001".."999") stored in
versions.json inside the asset's metadata directory, so the numbering
travels with the repository when it is relocated.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional
import json
import logging

from assetincrement.logger import ErrorCode, log_structured_warning
from assetincrement.statistics import format_size


logger = logging.getLogger(__name__)

VERSIONS_FILE = "versions.json"

MIN_VERSION = 1
MAX_VERSION = 999

# Current version of an asset that has never been backed up
NO_VERSION = "000"


def format_version_number(number: int) -> str:
    """Zero-pad to three digits, clamped to MIN_VERSION..MAX_VERSION."""
    clamped = max(MIN_VERSION, min(MAX_VERSION, number))
    return f"{clamped:03d}"


@dataclass
class VersionRecord:
    """One successful backup."""
    version: str
    timestamp: str
    repository_path: str
    source_file_size: int
    is_latest: bool = False
    asset_path: str = ""
    snapshot_id: Optional[str] = None

    @property
    def display(self) -> str:
        return f"v{self.version}"

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "repository_path": self.repository_path,
            "source_file_size": self.source_file_size,
            "is_latest": self.is_latest,
            "asset_path": self.asset_path,
            "snapshot_id": self.snapshot_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VersionRecord":
        return cls(
            version=str(data["version"]),
            timestamp=str(data["timestamp"]),
            repository_path=str(data.get("repository_path", "")),
            source_file_size=int(data.get("source_file_size", 0)),
            is_latest=bool(data.get("is_latest", False)),
            asset_path=str(data.get("asset_path", "")),
            snapshot_id=data.get("snapshot_id"),
        )


def describe_version(record: VersionRecord) -> str:
    """One-line label, e.g. 'v003 (2025-06-13T12:25:58) - 2.4 MB'."""
    return f"{record.display} ({record.timestamp}) - {format_size(record.source_file_size)}"


class VersionMapper:
    """
    Assigns and stores version numbers per repository.

    Callers serialize access per repository (the orchestrator holds the
    asset lock); the mapper itself does no locking.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock

    @staticmethod
    def store_path(repository_path: Path) -> Path:
        return Path(repository_path) / VERSIONS_FILE

    def history(self, asset_path: str, repository_path: Path) -> List[VersionRecord]:
        """
        Version records of the repository, sorted by version.

        An absent repository or store yields an empty list.
        """
        path = self.store_path(repository_path)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text())
            records = [VersionRecord.from_dict(item) for item in data.get("records", [])]
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            log_structured_warning(
                logger,
                f"Unreadable version store for {asset_path}: {e}",
                ErrorCode.VERSION_STORE_CORRUPT,
                {"store": str(path)},
            )
            return []
        records.sort(key=lambda r: r.version)
        return records

    def current_version(self, asset_path: str, repository_path: Path) -> str:
        """Latest assigned version, or "000" if there is none."""
        records = self.history(asset_path, repository_path)
        for record in reversed(records):
            if record.is_latest:
                return record.version
        return records[-1].version if records else NO_VERSION

    def next_version(self, asset_path: str, repository_path: Path) -> str:
        """Version the next successful backup will receive."""
        natural = len(self.history(asset_path, repository_path)) + 1
        if natural > MAX_VERSION:
            log_structured_warning(
                logger,
                f"Version limit reached for {asset_path}; reusing {MAX_VERSION:03d}",
                ErrorCode.VERSION_CLAMPED,
                {"repository": str(repository_path), "natural": natural},
            )
        return format_version_number(natural)

    def record(
        self,
        asset_path: str,
        repository_path: Path,
        source_file_size: int,
        version: Optional[str] = None,
        snapshot_id: Optional[str] = None,
    ) -> VersionRecord:
        """
        Store the record for a successful backup and make it the latest.

        Args:
            version: Number reserved with next_version before the backup;
                a fresh one is computed when omitted. A version that
                already exists (the clamped maximum) is refreshed in place.
        """
        repository_path = Path(repository_path)
        records = self.history(asset_path, repository_path)
        version = version or self.next_version(asset_path, repository_path)

        for record in records:
            record.is_latest = False

        new_record = VersionRecord(
            version=version,
            timestamp=self.clock().isoformat(timespec="seconds"),
            repository_path=str(repository_path),
            source_file_size=source_file_size,
            is_latest=True,
            asset_path=asset_path,
            snapshot_id=snapshot_id,
        )
        records = [r for r in records if r.version != version]
        records.append(new_record)
        records.sort(key=lambda r: r.version)

        self._save(repository_path, records)
        logger.info(f"Recorded {new_record.display} for {asset_path}")
        return new_record

    def _save(self, repository_path: Path, records: List[VersionRecord]) -> None:
        path = self.store_path(repository_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {"version": 1, "records": [r.to_dict() for r in records]}
        # Atomic write: write to temp file, then rename
        temp_path = path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(data, indent=2))
        temp_path.replace(path)
