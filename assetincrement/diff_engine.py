"""Adapter for the reverse-diff backup engine (rdiff-backup).

The engine backs up directory trees, so a single asset is backed up as its
parent directory filtered down to one file. Every invocation pins the
command-line API version.
"""

from pathlib import Path
from typing import List, Optional, Sequence
import logging
import re

from assetincrement.config import DEFAULT_ENGINE_PATHS, ENGINE_DIFF
from assetincrement.engine import (
    LATEST,
    BackupOptions,
    BackupResult,
    Increment,
    failure_from_process,
)
from assetincrement.logger import ErrorCode, log_engine_output, log_structured_warning
from assetincrement.process import ProcessResult, ProcessRunner, find_executable
from assetincrement.statistics import BackupStatistics, parse_diff_statistics


logger = logging.getLogger(__name__)

API_VERSION = "201"

# Directory the engine creates inside every repository it owns
DATA_DIR = "rdiff-backup-data"

# Exit code the engine uses for "completed with warnings"
EXIT_WARNING = 1

STATISTICS_GLOB = "session_statistics.*.data"

# increments.2025-06-13T12-25-58+10-00.dir
INCREMENT_PATTERN = re.compile(
    r"increments\.(\d{4}-\d{2}-\d{2})T(\d{2})-(\d{2})-(\d{2})([+-])(\d{2})-(\d{2})\.dir"
)

VERSION_MARKER = "rdiff-backup"


def to_glob_path(path: str) -> str:
    """Normalize a path to forward-slash glob syntax."""
    return path.replace("\\", "/")


def format_increment_timestamp(match: re.Match) -> str:
    """Turn the engine's all-dash timestamp into ISO 8601 with offset."""
    date, hours, minutes, seconds, sign, off_hours, off_minutes = match.groups()
    return f"{date}T{hours}:{minutes}:{seconds}{sign}{off_hours}:{off_minutes}"


def parse_increments(output: str) -> List[Increment]:
    """Parse 'list increments' output into Increments, oldest first."""
    increments = []
    skipped = 0
    for line in output.splitlines():
        if not line.strip() or "Found" in line or "Current mirror" in line:
            continue
        match = INCREMENT_PATTERN.search(line)
        if not match:
            skipped += 1
            continue
        timestamp = format_increment_timestamp(match)
        increments.append(Increment(identifier=timestamp, timestamp=timestamp, engine=ENGINE_DIFF))
    if skipped and not increments:
        log_structured_warning(
            logger,
            f"No increment timestamps in {skipped} line(s) of rdiff-backup output",
            ErrorCode.INCREMENTS_UNPARSEABLE,
        )
    return increments


class DiffEngineAdapter:
    """
    Runs rdiff-backup for single-file assets.

    Args:
        executable: Engine executable name or path
        runner: ProcessRunner used for every invocation
        timeout: Seconds before an engine process is killed (None = never)
        search_dirs: Directories searched for a bundled executable
    """

    engine = ENGINE_DIFF

    def __init__(
        self,
        executable: str = DEFAULT_ENGINE_PATHS[ENGINE_DIFF],
        runner: Optional[ProcessRunner] = None,
        timeout: Optional[float] = None,
        search_dirs: Sequence[Path] = (),
    ):
        self.executable = executable or DEFAULT_ENGINE_PATHS[ENGINE_DIFF]
        self.runner = runner or ProcessRunner()
        self.timeout = timeout
        self.search_dirs = list(search_dirs)

    def _run(self, args: List[str]) -> ProcessResult:
        result = self.runner.run(
            self.executable,
            ["--api-version", API_VERSION, *args],
            timeout=self.timeout,
        )
        log_engine_output(logger, "rdiff-backup", result.stdout)
        return result

    def _answers_version(self, executable: str) -> bool:
        result = self.runner.run(executable, ["--version"], timeout=self.timeout)
        output = f"{result.stdout}\n{result.stderr}".lower()
        if result.success and VERSION_MARKER in output:
            return True
        logger.debug(f"rdiff-backup version check failed for {executable}: {result.error}")
        return False

    def is_available(self) -> bool:
        """
        Find a working executable and use it from now on.

        Candidates come from find_executable; the first whose --version
        output names the engine wins.
        """
        candidates = find_executable(
            self.executable, DEFAULT_ENGINE_PATHS[ENGINE_DIFF], self.search_dirs
        )
        for candidate in candidates:
            if self._answers_version(candidate):
                if candidate != self.executable:
                    logger.info(f"Using rdiff-backup at {candidate}")
                    self.executable = candidate
                return True
        return False

    def repository_exists(self, repository_path: Path) -> bool:
        return (Path(repository_path) / DATA_DIR).is_dir()

    def build_backup_args(
        self,
        source_path: Path,
        repository_path: Path,
        options: BackupOptions,
        force: bool = False,
    ) -> List[str]:
        """
        Arguments for a single-file backup.

        The parent directory is the backup source; an include pattern for
        the file and a catch-all exclude restrict it to that one file.
        """
        source_path = Path(source_path)
        args: List[str] = []
        if force:
            args.append("--force")
        args.extend(["backup", "--create-full-path"])

        if options.compression is True:
            args.append("--compression")
        elif options.compression is False:
            args.append("--no-compression")

        args.extend(["--include", f"**/{to_glob_path(source_path.name)}"])
        for pattern in options.include_patterns:
            args.extend(["--include", to_glob_path(pattern)])
        for pattern in options.exclude_patterns:
            args.extend(["--exclude", to_glob_path(pattern)])
        args.extend(["--exclude", "**"])

        args.extend([str(source_path.parent), str(repository_path)])
        return args

    def backup(
        self,
        source_path: Path,
        repository_path: Path,
        options: Optional[BackupOptions] = None,
    ) -> BackupResult:
        """Back up one file into repository_path."""
        options = options or BackupOptions()
        return self._backup(source_path, repository_path, options, force=options.force)

    def backup_adjacent(
        self,
        source_path: Path,
        repository_path: Path,
        options: Optional[BackupOptions] = None,
    ) -> BackupResult:
        """
        Back up into a repository that sits beside the file.

        Source and repository share a parent directory, which the engine
        refuses on first run without --force.
        """
        return self._backup(source_path, repository_path, options or BackupOptions(), force=True)

    def _backup(
        self,
        source_path: Path,
        repository_path: Path,
        options: BackupOptions,
        force: bool,
    ) -> BackupResult:
        repository_path = Path(repository_path)
        args = self.build_backup_args(source_path, repository_path, options, force=force)
        result = self._run(args)

        warning_recovered = False
        if not result.success:
            if result.exit_code == EXIT_WARNING and self.repository_exists(repository_path):
                logger.warning(
                    f"rdiff-backup exited with warnings for {source_path}; "
                    f"repository data present, treating as success"
                )
                warning_recovered = True
            else:
                return failure_from_process(result, "Backup failed", repository_path)

        return BackupResult(
            success=True,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            repository_path=repository_path,
            statistics=self.repository_statistics(repository_path),
            warning_recovered=warning_recovered,
        )

    def latest_statistics_file(self, repository_path: Path) -> Optional[Path]:
        """Most recent session statistics file; names sort by timestamp."""
        data_dir = Path(repository_path) / DATA_DIR
        if not data_dir.is_dir():
            return None
        files = sorted(data_dir.glob(STATISTICS_GLOB), key=lambda p: p.name)
        return files[-1] if files else None

    def repository_statistics(self, repository_path: Path) -> Optional[BackupStatistics]:
        """Statistics of the most recent session, or None if there is none."""
        stats_file = self.latest_statistics_file(repository_path)
        if stats_file is None:
            log_structured_warning(
                logger,
                f"No session statistics found in {repository_path}",
                ErrorCode.STATISTICS_NOT_FOUND,
            )
            return None
        try:
            content = stats_file.read_text(errors="replace")
        except OSError as e:
            logger.warning(f"Could not read {stats_file}: {e}")
            return None
        return parse_diff_statistics(content)

    def restore(
        self,
        repository_path: Path,
        selector: str,
        target_path: Path,
        options: Optional[BackupOptions] = None,
        source_name: Optional[str] = None,
    ) -> BackupResult:
        """
        Restore the asset from repository_path to target_path.

        Args:
            repository_path: Repository holding the asset
            selector: Increment timestamp, or "latest"
            target_path: File to write; the engine refuses an existing one
                unless options.force
            options: Only force is used
            source_name: Name of the file inside the repository mirror;
                defaults to target_path's name
        """
        options = options or BackupOptions()
        repository_path = Path(repository_path)
        target_path = Path(target_path)
        name = source_name or target_path.name

        args = ["restore"]
        if selector and selector != LATEST:
            args.extend(["--at", selector])
        if options.force:
            args.append("--force")
        args.extend([str(repository_path / name), str(target_path)])

        result = self._run(args)
        if not result.success:
            return failure_from_process(result, "Restore failed", repository_path)

        logger.info(f"Restored {name} ({selector or LATEST}) to {target_path}")
        return BackupResult(
            success=True,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            repository_path=repository_path,
            restored_path=target_path,
        )

    def list_increments(self, repository_path: Path) -> List[Increment]:
        """Increments recorded in the repository; empty on any failure."""
        result = self._run(["list", "increments", str(repository_path)])
        if not result.success:
            logger.warning(f"Failed to list increments for {repository_path}: {result.stderr.strip()}")
            return []
        return parse_increments(result.stdout)

    def verify(self, repository_path: Path) -> BackupResult:
        """Check the repository's mirror against its stored metadata."""
        repository_path = Path(repository_path)
        result = self._run(["verify", str(repository_path)])
        if not result.success:
            return failure_from_process(result, "Verify failed", repository_path)
        return BackupResult(
            success=True,
            stdout=result.stdout,
            stderr=result.stderr,
            repository_path=repository_path,
        )

    def info(self, repository_path: Optional[Path] = None) -> Optional[str]:
        """Engine environment report, or None when the engine cannot run."""
        args = ["info"]
        if repository_path is not None:
            args.append(str(repository_path))
        result = self._run(args)
        return result.stdout if result.success else None
