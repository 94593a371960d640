"""Common contract for backup engine adapters.

Two adapters implement the same operations against structurally different
engines: DiffEngineAdapter drives a reverse-diff engine (rdiff-backup),
SnapshotEngineAdapter drives a content-addressed snapshot engine (restic).
They share no base class; this module holds the result and option types
they both speak and the factory that picks one from configuration.
"""

from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from assetincrement.config import Configuration, ENGINE_DIFF, ENGINE_SNAPSHOT
from assetincrement.process import ProcessResult, ProcessRunner, tail
from assetincrement.statistics import BackupStatistics


# Selector meaning "most recent increment"
LATEST = "latest"

# Lines of engine stderr kept on a failed result
STDERR_TAIL_LINES = 20


class EngineError(Exception):
    """Raised when an engine name cannot be mapped to an adapter."""
    pass


@dataclass
class BackupOptions:
    """Per-call options for backup and restore."""
    compression: Optional[bool] = None  # None = decided by size threshold
    include_patterns: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)
    tag: str = ""
    force: bool = False


@dataclass
class Increment:
    """One unit of engine-native history."""
    identifier: str
    timestamp: str
    engine: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class BackupResult:
    """Result of a backup, restore or verify call."""
    success: bool
    error: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    repository_path: Optional[Path] = None
    snapshot_id: Optional[str] = None
    statistics: Optional[BackupStatistics] = None
    version_info: Optional[Any] = None
    restored_path: Optional[Path] = None
    warning_recovered: bool = False  # nonzero exit accepted after marker check
    skipped: bool = False  # interval floor not yet elapsed

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view, raw output omitted."""
        data: Dict[str, Any] = {
            "success": self.success,
            "error": self.error,
            "exit_code": self.exit_code,
            "repository_path": str(self.repository_path) if self.repository_path else None,
            "snapshot_id": self.snapshot_id,
            "statistics": self.statistics.to_dict() if self.statistics else None,
            "restored_path": str(self.restored_path) if self.restored_path else None,
            "warning_recovered": self.warning_recovered,
            "skipped": self.skipped,
        }
        if self.version_info is not None:
            data["version_info"] = self.version_info.to_dict()
        if not self.success and self.stderr:
            data["stderr"] = self.stderr
        return data


def failure_from_process(
    result: ProcessResult,
    message: str,
    repository_path: Optional[Path] = None,
) -> BackupResult:
    """Build a failed BackupResult carrying the engine's stderr tail."""
    detail = result.error or f"exit code {result.exit_code}"
    return BackupResult(
        success=False,
        error=f"{message}: {detail}",
        stdout=result.stdout,
        stderr=tail(result.stderr, STDERR_TAIL_LINES),
        exit_code=result.exit_code,
        repository_path=repository_path,
    )


def create_engine(
    config: Configuration,
    runner: Optional[ProcessRunner] = None,
) -> "EngineAdapter":
    """
    Create the adapter for the configured engine kind.

    Raises:
        EngineError: If config.engine names no known engine
    """
    # Imported here: both adapter modules import the types above
    from assetincrement.diff_engine import DiffEngineAdapter
    from assetincrement.snapshot_engine import SnapshotEngineAdapter

    runner = runner or ProcessRunner()
    timeout = config.backup.process_timeout
    if config.engine == ENGINE_DIFF:
        return DiffEngineAdapter(config.engine_path, runner=runner, timeout=timeout)
    if config.engine == ENGINE_SNAPSHOT:
        return SnapshotEngineAdapter(config.engine_path, runner=runner, timeout=timeout)
    raise EngineError(f"Unknown engine '{config.engine}'")


# Either adapter; the names resolve in the adapter modules
EngineAdapter = Union["DiffEngineAdapter", "SnapshotEngineAdapter"]  # noqa: F821
