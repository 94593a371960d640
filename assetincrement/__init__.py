"""asset-increment - Versioned incremental backup of single binary assets."""

__version__ = "0.1.0"

from assetincrement.config import (
    Configuration,
    ConfigurationError,
    ValidationError,
    parse_config,
    parse_config_string,
    format_config,
    create_default_config,
)
from assetincrement.logger import (
    LoggingError,
    setup_logging,
    get_logger,
)
from assetincrement.process import ProcessResult, ProcessRunner
from assetincrement.statistics import BackupStatistics
from assetincrement.engine import (
    BackupOptions,
    BackupResult,
    Increment,
    create_engine,
)
from assetincrement.diff_engine import DiffEngineAdapter
from assetincrement.snapshot_engine import SnapshotEngineAdapter
from assetincrement.locator import RepositoryLocator, resolve_repository_path
from assetincrement.integrity import (
    IntegrityError,
    IntegrityTracker,
    RelocationResult,
)
from assetincrement.versioning import VersionMapper, VersionRecord
from assetincrement.lock import AssetLockRegistry, LockError
from assetincrement.orchestrator import (
    Asset,
    AssetHistory,
    BackupOrchestrator,
)

__all__ = [
    "Configuration",
    "ConfigurationError",
    "ValidationError",
    "parse_config",
    "parse_config_string",
    "format_config",
    "create_default_config",
    "LoggingError",
    "setup_logging",
    "get_logger",
    "ProcessResult",
    "ProcessRunner",
    "BackupStatistics",
    "BackupOptions",
    "BackupResult",
    "Increment",
    "create_engine",
    "DiffEngineAdapter",
    "SnapshotEngineAdapter",
    "RepositoryLocator",
    "resolve_repository_path",
    "IntegrityError",
    "IntegrityTracker",
    "RelocationResult",
    "VersionMapper",
    "VersionRecord",
    "AssetLockRegistry",
    "LockError",
    "Asset",
    "AssetHistory",
    "BackupOrchestrator",
]
