"""Logging configuration for asset-increment.

This module provides logging setup and utility functions for the backup
orchestration layer. It installs separate log and error files with
automatic gzip rotation, and provides structured (JSON) log entries with
error codes so failures can be diagnosed from the log alone.
"""

import gzip
import json
import logging
import os
import shutil
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from assetincrement.config import LoggingConfig


# Logger name for the package; modules log through children of it
LOGGER_NAME = "assetincrement"

DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_BACKUP_COUNT = 5

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


class ErrorCode(Enum):
    """
    Error codes for structured logging and troubleshooting.

    Each code maps to one failure category of the orchestration layer and
    has associated guidance in ERROR_GUIDANCE.
    """
    # Engine errors (1xxx)
    ENGINE_UNAVAILABLE = "E1001"
    ENGINE_SPAWN_FAILED = "E1002"
    ENGINE_TIMEOUT = "E1003"
    ENGINE_FAILED = "E1004"
    ENGINE_INIT_FAILED = "E1005"

    # Repository errors (2xxx)
    REPOSITORY_NOT_FOUND = "E2001"
    REPOSITORY_PATH_INVALID = "E2002"

    # Integrity errors (3xxx)
    INTEGRITY_ARCHIVE_FAILED = "E3001"
    INTEGRITY_MOVE_FAILED = "E3002"
    INTEGRITY_VERIFY_FAILED = "E3003"
    INTEGRITY_LEDGER_CORRUPT = "E3004"

    # Version errors (4xxx)
    VERSION_CLAMPED = "E4001"
    VERSION_STORE_CORRUPT = "E4002"

    # Configuration errors (5xxx)
    CONFIG_INVALID = "E5002"

    # Source errors (6xxx)
    SOURCE_NOT_FOUND = "E6001"
    ASSET_NOT_TRACKED = "E6002"

    # Parse errors (7xxx)
    STATISTICS_NOT_FOUND = "E7001"
    INCREMENTS_UNPARSEABLE = "E7002"

    # Lock errors (8xxx)
    LOCK_TIMEOUT = "E8001"

    # General errors (0xxx)
    UNKNOWN_ERROR = "E0001"


ERROR_GUIDANCE: Dict[ErrorCode, str] = {
    ErrorCode.ENGINE_UNAVAILABLE: "The backup engine executable was not found or did not identify itself. Install it or set engine_path.",
    ErrorCode.ENGINE_SPAWN_FAILED: "The backup engine could not be started. Check engine_path and file permissions.",
    ErrorCode.ENGINE_TIMEOUT: "The backup engine did not finish in time. Raise process_timeout_seconds or check the asset's size.",
    ErrorCode.ENGINE_FAILED: "The backup engine reported an error. The engine's stderr is included in the result.",
    ErrorCode.ENGINE_INIT_FAILED: "The snapshot repository could not be initialized. Check write access to the metadata directory.",

    ErrorCode.REPOSITORY_NOT_FOUND: "No backup history exists for this asset yet. Back it up first.",
    ErrorCode.REPOSITORY_PATH_INVALID: "The repository path could not be computed. Check vault_root, storage_mode and global_backup_root.",

    ErrorCode.INTEGRITY_ARCHIVE_FAILED: "An existing repository at the new location could not be archived. Check folder permissions.",
    ErrorCode.INTEGRITY_MOVE_FAILED: "The backup history could not be moved with the renamed asset. It is still at the old location.",
    ErrorCode.INTEGRITY_VERIFY_FAILED: "The backup history was moved but could not be found afterwards. Inspect both locations manually.",
    ErrorCode.INTEGRITY_LEDGER_CORRUPT: "The rename ledger could not be read. A new ledger was started.",

    ErrorCode.VERSION_CLAMPED: "The asset reached 999 versions. New backups refresh version 999.",
    ErrorCode.VERSION_STORE_CORRUPT: "The version store could not be read. Version numbering restarted from the readable records.",

    ErrorCode.CONFIG_INVALID: "The configuration file is invalid. Fix the key named in the message.",

    ErrorCode.SOURCE_NOT_FOUND: "The asset file does not exist. It may have been moved or deleted.",
    ErrorCode.ASSET_NOT_TRACKED: "The file type is not in asset_extensions, or the path matches ignore_patterns.",

    ErrorCode.STATISTICS_NOT_FOUND: "The engine finished but reported no statistics. The backup itself succeeded.",
    ErrorCode.INCREMENTS_UNPARSEABLE: "The engine's history listing could not be parsed. The engine version may be unsupported.",

    ErrorCode.LOCK_TIMEOUT: "Another operation on this asset is still running. Wait for it to finish.",

    ErrorCode.UNKNOWN_ERROR: "An unexpected error occurred. Check the logs for more details.",
}


@dataclass
class StructuredLogEntry:
    """
    One machine-readable log record, written as a single JSON object.

    error_code and guidance are only set for failures and warnings that map
    to an ErrorCode; context carries whatever the caller knows (asset path,
    repository, engine exit code).
    """
    timestamp: str
    level: str
    message: str
    error_code: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    guidance: Optional[str] = None

    def to_json(self) -> str:
        present = {key: value for key, value in asdict(self).items() if value is not None}
        return json.dumps(present, default=str)

    @classmethod
    def from_json(cls, text: str) -> "StructuredLogEntry":
        return cls(**json.loads(text))

    @classmethod
    def create(
        cls,
        level: str,
        message: str,
        error_code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> "StructuredLogEntry":
        """Stamp a new entry with the current time and the code's guidance."""
        code = error_code.value if error_code is not None else None
        guidance = ERROR_GUIDANCE.get(error_code) if error_code is not None else None
        return cls(
            timestamp=datetime.now().isoformat(),
            level=level.upper(),
            message=message,
            error_code=code,
            context=context,
            guidance=guidance,
        )


def get_error_guidance(error_code: ErrorCode) -> str:
    """Guidance text for error_code, falling back to the generic hint."""
    if error_code in ERROR_GUIDANCE:
        return ERROR_GUIDANCE[error_code]
    return ERROR_GUIDANCE[ErrorCode.UNKNOWN_ERROR]


class LoggingError(Exception):
    """Log files or level could not be set up."""


class GzipRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler whose rolled-over files are gzip members (<name>.N.gz)."""

    def rotation_filename(self, default_name: str) -> str:
        return f"{default_name}.gz"

    def rotate(self, source: str, dest: str) -> None:
        current = Path(source)
        if not current.exists():
            return
        try:
            with current.open("rb") as plain, gzip.open(dest, "wb") as packed:
                shutil.copyfileobj(plain, packed)
            current.unlink()
        except OSError:
            # Uncompressed rollover; a failed rename is dropped so logging continues
            if current.exists():
                plain_dest = dest[: -len(".gz")] if dest.endswith(".gz") else dest
                try:
                    current.replace(plain_dest)
                except OSError:
                    pass


def _prepare_log_path(path: Path) -> Path:
    path = Path(os.path.expanduser(str(path)))
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise LoggingError(f"Cannot create log directory {path.parent}: {e}")
    return path


def _level_number(name: str) -> int:
    name = name.upper()
    if name not in VALID_LOG_LEVELS:
        allowed = ", ".join(sorted(VALID_LOG_LEVELS))
        raise LoggingError(f"Invalid log level '{name}'. Must be one of: {allowed}")
    return getattr(logging, name)


def _attach(
    logger: logging.Logger,
    handler: logging.Handler,
    level: int,
    formatter: logging.Formatter,
) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def setup_logging(
    config: Optional[LoggingConfig] = None,
    log_file: Optional[Path] = None,
    error_log_file: Optional[Path] = None,
    level: Optional[str] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None,
    console: bool = True,
) -> logging.Logger:
    """
    Install the package's handlers on the "assetincrement" logger.

    Everything at or above the level goes to log_file, ERROR and above
    also go to error_log_file, and (unless console is False) the same
    records are echoed to stderr. The MCP server passes console=False
    because its stdout/stderr pair belongs to the protocol.

    A LoggingConfig, when given, supplies the file paths and the level;
    max_bytes and backup_count still override its rotation settings.
    Calling this again replaces the previous handlers.

    Raises:
        LoggingError: A log directory cannot be created or the level is unknown
    """
    if config is not None:
        log_file, error_log_file, level = config.log_file, config.error_log_file, config.level
        max_bytes = config.log_max_bytes if max_bytes is None else max_bytes
        backup_count = config.log_backup_count if backup_count is None else backup_count

    log_dir = Path.home() / ".local/log"
    main_path = _prepare_log_path(log_file or log_dir / "asset-increment.log")
    error_path = _prepare_log_path(error_log_file or log_dir / "asset-increment.err")
    threshold = _level_number(level or "INFO")
    rotation = {
        "maxBytes": DEFAULT_MAX_BYTES if max_bytes is None else max_bytes,
        "backupCount": DEFAULT_BACKUP_COUNT if backup_count is None else backup_count,
        "encoding": "utf-8",
    }

    logger = logging.getLogger(LOGGER_NAME)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    # Filtering happens per handler
    logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    _attach(logger, GzipRotatingFileHandler(main_path, **rotation), threshold, formatter)
    _attach(logger, GzipRotatingFileHandler(error_path, **rotation), logging.ERROR, formatter)
    if console:
        _attach(logger, logging.StreamHandler(), threshold, formatter)

    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


def log_engine_output(logger: logging.Logger, engine_name: str, output: str) -> None:
    """Echo an engine's stdout to the debug log, prefixed with the engine name."""
    for line in output.strip().splitlines():
        logger.debug(f"{engine_name}: {line}")


def log_structured(
    logger: logging.Logger,
    level: str,
    message: str,
    error_code: Optional[ErrorCode] = None,
    context: Optional[Dict[str, Any]] = None,
) -> StructuredLogEntry:
    """Write a StructuredLogEntry as the record message and return it."""
    entry = StructuredLogEntry.create(level, message, error_code, context)
    logger.log(getattr(logging, entry.level, logging.INFO), entry.to_json())
    return entry


def log_structured_error(
    logger: logging.Logger,
    message: str,
    error_code: ErrorCode,
    context: Optional[Dict[str, Any]] = None,
) -> StructuredLogEntry:
    return log_structured(logger, "ERROR", message, error_code, context)


def log_structured_warning(
    logger: logging.Logger,
    message: str,
    error_code: Optional[ErrorCode] = None,
    context: Optional[Dict[str, Any]] = None,
) -> StructuredLogEntry:
    return log_structured(logger, "WARNING", message, error_code, context)


def parse_structured_log(log_line: str) -> Optional[StructuredLogEntry]:
    """
    Recover the entry from a formatted line such as
    "2025-01-07 10:30:00 - assetincrement.orchestrator - ERROR - {...}".

    Plain (non-JSON) records give None.
    """
    brace = log_line.find("{")
    if brace < 0:
        return None
    try:
        return StructuredLogEntry.from_json(log_line[brace:])
    except (json.JSONDecodeError, KeyError, TypeError):
        return None


def get_recent_errors(log_file: Path, max_entries: int = 10) -> List[StructuredLogEntry]:
    """The last max_entries ERROR/CRITICAL entries of log_file, oldest first."""
    try:
        lines = Path(log_file).read_text(encoding="utf-8").splitlines()
    except OSError:
        return []

    found: List[StructuredLogEntry] = []
    for line in reversed(lines):
        if len(found) == max_entries:
            break
        entry = parse_structured_log(line)
        if entry is not None and entry.level in ("ERROR", "CRITICAL"):
            found.append(entry)
    found.reverse()
    return found
