"""Adapter for the content-addressed snapshot engine (restic).

Each asset gets its own engine repository in a subdirectory of its
metadata directory. Repositories are created without a password; their
confidentiality is left to filesystem permissions.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence
import json
import logging
import re
import shutil
import tempfile

from assetincrement.config import DEFAULT_ENGINE_PATHS, ENGINE_SNAPSHOT
from assetincrement.engine import (
    LATEST,
    BackupOptions,
    BackupResult,
    Increment,
    failure_from_process,
)
from assetincrement.logger import (
    ErrorCode,
    log_engine_output,
    log_structured_error,
    log_structured_warning,
)
from assetincrement.process import ProcessResult, ProcessRunner, find_executable
from assetincrement.statistics import (
    BackupStatistics,
    parse_snapshot_output,
    parse_snapshot_repository_stats,
)


logger = logging.getLogger(__name__)

# Engine repository directory inside the asset's metadata directory
REPOSITORY_DIR = "restic-repository"

# File whose presence marks an initialized engine repository
CONFIG_MARKER = "config"

NO_PASSWORD_FLAG = "--insecure-no-password"

SNAPSHOT_SAVED_PATTERN = re.compile(r"snapshot ([a-f0-9]{8}) saved")

VERSION_MARKER = "restic"


def parse_snapshot_id(output: str) -> Optional[str]:
    """Short snapshot id from the 'snapshot xxxxxxxx saved' line."""
    match = SNAPSHOT_SAVED_PATTERN.search(output)
    return match.group(1) if match else None


def parse_snapshot_list(output: str) -> List[Increment]:
    """Parse 'snapshots --json' output into Increments, oldest first."""
    try:
        snapshots = json.loads(output or "[]")
    except json.JSONDecodeError as e:
        log_structured_warning(
            logger, f"Failed to parse snapshot list JSON: {e}", ErrorCode.INCREMENTS_UNPARSEABLE
        )
        return []
    if not isinstance(snapshots, list):
        log_structured_warning(
            logger, "Snapshot list JSON is not a list", ErrorCode.INCREMENTS_UNPARSEABLE
        )
        return []

    increments = []
    for snapshot in snapshots:
        if not isinstance(snapshot, dict):
            continue
        identifier = snapshot.get("short_id") or str(snapshot.get("id", ""))[:8]
        if not identifier:
            continue
        increments.append(
            Increment(
                identifier=identifier,
                timestamp=str(snapshot.get("time", "")),
                engine=ENGINE_SNAPSHOT,
            )
        )
    increments.sort(key=lambda inc: inc.timestamp)
    return increments


class SnapshotEngineAdapter:
    """
    Runs restic for single-file assets.

    Repository arguments are the asset's metadata directory; the engine
    repository itself lives in its REPOSITORY_DIR subdirectory.
    """

    engine = ENGINE_SNAPSHOT

    def __init__(
        self,
        executable: str = DEFAULT_ENGINE_PATHS[ENGINE_SNAPSHOT],
        runner: Optional[ProcessRunner] = None,
        timeout: Optional[float] = None,
        search_dirs: Sequence[Path] = (),
    ):
        self.executable = executable or DEFAULT_ENGINE_PATHS[ENGINE_SNAPSHOT]
        self.runner = runner or ProcessRunner()
        self.timeout = timeout
        self.search_dirs = list(search_dirs)

    @staticmethod
    def engine_repository(repository_path: Path) -> Path:
        return Path(repository_path) / REPOSITORY_DIR

    def _env(self, repository_path: Path) -> Dict[str, str]:
        return {"RESTIC_REPOSITORY": str(self.engine_repository(repository_path))}

    def _run(
        self,
        repository_path: Path,
        args: List[str],
        working_directory: Optional[Path] = None,
    ) -> ProcessResult:
        result = self.runner.run(
            self.executable,
            [*args, NO_PASSWORD_FLAG],
            working_directory=working_directory,
            timeout=self.timeout,
            env=self._env(repository_path),
        )
        log_engine_output(logger, "restic", result.stdout)
        return result

    def _answers_version(self, executable: str) -> bool:
        result = self.runner.run(executable, ["version"], timeout=self.timeout)
        output = f"{result.stdout}\n{result.stderr}".lower()
        if result.success and VERSION_MARKER in output:
            return True
        logger.debug(f"restic version check failed for {executable}: {result.error}")
        return False

    def is_available(self) -> bool:
        """Try the candidates from find_executable and keep the first that works."""
        candidates = find_executable(
            self.executable, DEFAULT_ENGINE_PATHS[ENGINE_SNAPSHOT], self.search_dirs
        )
        for candidate in candidates:
            if self._answers_version(candidate):
                if candidate != self.executable:
                    logger.info(f"Using restic at {candidate}")
                    self.executable = candidate
                return True
        return False

    def repository_exists(self, repository_path: Path) -> bool:
        return (self.engine_repository(repository_path) / CONFIG_MARKER).is_file()

    def ensure_repository(self, repository_path: Path) -> Optional[BackupResult]:
        """
        Initialize the engine repository if it has no config yet.

        Returns:
            None when the repository is ready, otherwise the failed result
        """
        if self.repository_exists(repository_path):
            return None

        engine_repo = self.engine_repository(repository_path)
        logger.info(f"Initializing restic repository at {engine_repo}")
        try:
            engine_repo.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            failure = BackupResult(
                success=False,
                error=f"Repository initialization failed: {e}",
                repository_path=Path(repository_path),
            )
        else:
            result = self._run(repository_path, ["init"])
            if result.success:
                return None
            failure = failure_from_process(result, "Repository initialization failed", Path(repository_path))

        log_structured_error(
            logger,
            failure.error,
            ErrorCode.ENGINE_INIT_FAILED,
            {"repository": str(engine_repo), "exit_code": failure.exit_code},
        )
        return failure

    def build_backup_args(self, source_path: Path, options: BackupOptions) -> List[str]:
        args = ["backup", str(source_path)]
        if options.tag:
            args.extend(["--tag", options.tag])
        if options.compression is True:
            args.extend(["--compression", "max"])
        elif options.compression is False:
            args.extend(["--compression", "off"])
        for pattern in options.exclude_patterns:
            args.extend(["--exclude", pattern])
        return args

    def backup(
        self,
        source_path: Path,
        repository_path: Path,
        options: Optional[BackupOptions] = None,
    ) -> BackupResult:
        """Snapshot one file into the asset's engine repository."""
        options = options or BackupOptions()
        repository_path = Path(repository_path)

        init_failure = self.ensure_repository(repository_path)
        if init_failure is not None:
            return init_failure

        result = self._run(repository_path, self.build_backup_args(Path(source_path), options))
        if not result.success:
            return failure_from_process(result, "Backup failed", repository_path)

        snapshot_id = parse_snapshot_id(result.stdout)
        if snapshot_id is None:
            logger.warning(f"No snapshot id in restic output for {source_path}")

        return BackupResult(
            success=True,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            repository_path=repository_path,
            snapshot_id=snapshot_id,
            statistics=parse_snapshot_output(result.stdout),
        )

    def backup_adjacent(
        self,
        source_path: Path,
        repository_path: Path,
        options: Optional[BackupOptions] = None,
    ) -> BackupResult:
        # The snapshot engine has no source/destination nesting restriction
        return self.backup(source_path, repository_path, options)

    def restore(
        self,
        repository_path: Path,
        selector: str,
        target_path: Path,
        options: Optional[BackupOptions] = None,
        source_name: Optional[str] = None,
    ) -> BackupResult:
        """
        Restore the asset from a snapshot to target_path.

        The engine recreates the file's absolute path below its --target
        directory, so the snapshot is restored into a temporary directory
        beside target_path and the single restored file is moved into place.

        Args:
            repository_path: Asset metadata directory
            selector: Snapshot id, or "latest"
            target_path: File to write
            options: Only force is used; without it an existing target is
                left alone and the restore fails
            source_name: Unused; a snapshot holds exactly one file
        """
        options = options or BackupOptions()
        repository_path = Path(repository_path)
        target_path = Path(target_path)

        if target_path.exists() and not options.force:
            return BackupResult(
                success=False,
                error=f"Restore target already exists: {target_path}",
                repository_path=repository_path,
            )

        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryDirectory(
                prefix=".restore-", dir=str(target_path.parent)
            ) as staging:
                result = self._run(
                    repository_path,
                    ["restore", selector or LATEST, "--target", staging],
                )
                if not result.success:
                    return failure_from_process(result, "Restore failed", repository_path)

                restored = [p for p in Path(staging).rglob("*") if p.is_file()]
                if len(restored) != 1:
                    return BackupResult(
                        success=False,
                        error=f"Expected one restored file, found {len(restored)}",
                        stdout=result.stdout,
                        repository_path=repository_path,
                    )
                shutil.move(str(restored[0]), str(target_path))
        except OSError as e:
            return BackupResult(
                success=False,
                error=f"Restore failed: cannot write {target_path}: {e}",
                repository_path=repository_path,
            )

        logger.info(f"Restored snapshot {selector or LATEST} to {target_path}")
        return BackupResult(
            success=True,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            repository_path=repository_path,
            restored_path=target_path,
        )

    def list_increments(self, repository_path: Path) -> List[Increment]:
        """Snapshots in the repository; empty on any failure."""
        if not self.repository_exists(repository_path):
            return []
        result = self._run(repository_path, ["snapshots", "--json"])
        if not result.success:
            logger.warning(f"Failed to list snapshots for {repository_path}: {result.stderr.strip()}")
            return []
        return parse_snapshot_list(result.stdout)

    def verify(self, repository_path: Path) -> BackupResult:
        """Run the engine's repository consistency check."""
        repository_path = Path(repository_path)
        result = self._run(repository_path, ["check"])
        if not result.success:
            return failure_from_process(result, "Verify failed", repository_path)
        return BackupResult(
            success=True,
            stdout=result.stdout,
            stderr=result.stderr,
            repository_path=repository_path,
        )

    def info(self, repository_path: Optional[Path] = None) -> Optional[str]:
        """Repository stats report, or None when unavailable."""
        if repository_path is None:
            result = self.runner.run(self.executable, ["version"], timeout=self.timeout)
        else:
            result = self._run(repository_path, ["stats"])
        return result.stdout if result.success else None

    def repository_statistics(self, repository_path: Path) -> Optional[BackupStatistics]:
        """Totals from the engine's stats report, or None."""
        if not self.repository_exists(repository_path):
            return None
        result = self._run(repository_path, ["stats"])
        if not result.success:
            logger.warning(f"Failed to read stats for {repository_path}: {result.stderr.strip()}")
            return None
        return parse_snapshot_repository_stats(result.stdout)
