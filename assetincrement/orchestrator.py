"""Backup orchestration for asset-increment.

BackupOrchestrator is the single entry point the CLI and the MCP server
use. For one call it:
- checks the engine is available and the asset exists
- resolves the repository path
- serializes against other calls for the same asset
- runs the engine adapter
- records the version of a successful backup

Public operations return result values and never raise for engine,
filesystem or configuration failures.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union
from contextlib import contextmanager
import fnmatch
import logging
import threading
import time

from assetincrement.config import Configuration, ConfigurationError, STORAGE_ADJACENT
from assetincrement.engine import (
    LATEST,
    BackupOptions,
    BackupResult,
    EngineAdapter,
    Increment,
    create_engine,
)
from assetincrement.integrity import (
    ACTION_NOT_TRACKED,
    ACTION_UNCHANGED,
    IntegrityTracker,
    RelocationResult,
)
from assetincrement.locator import META_SUFFIX, RepositoryLocator
from assetincrement.lock import AssetLockRegistry, LockError
from assetincrement.logger import ErrorCode, log_structured_error
from assetincrement.process import EXIT_NOT_RUN, TIMEOUT_ERROR, ProcessRunner
from assetincrement.statistics import BackupStatistics
from assetincrement.versioning import NO_VERSION, VersionMapper, VersionRecord


logger = logging.getLogger(__name__)

RESTORED_SUFFIX = ".restored"


@dataclass
class Asset:
    """A tracked file: stable vault-relative path plus where it is now."""
    logical_path: str
    physical_path: Path

    @property
    def size(self) -> int:
        try:
            return self.physical_path.stat().st_size
        except OSError:
            return 0

    @classmethod
    def from_vault(cls, vault_root: Path, path: Union[str, Path]) -> "Asset":
        path = Path(path)
        physical = path if path.is_absolute() else Path(vault_root) / path
        try:
            logical = physical.relative_to(vault_root).as_posix()
        except ValueError:
            logical = physical.as_posix()
        return cls(logical_path=logical, physical_path=physical)


@dataclass
class AssetHistory:
    """Everything known about an asset's backups."""
    has_backup: bool
    repository_path: Optional[Path] = None
    current_version: str = NO_VERSION
    statistics: Optional[BackupStatistics] = None
    increments: List[Increment] = field(default_factory=list)
    versions: List[VersionRecord] = field(default_factory=list)
    historical_paths: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_backup": self.has_backup,
            "repository_path": str(self.repository_path) if self.repository_path else None,
            "current_version": self.current_version,
            "statistics": self.statistics.to_dict() if self.statistics else None,
            "increments": [inc.to_dict() for inc in self.increments],
            "versions": [v.to_dict() for v in self.versions],
            "historical_paths": self.historical_paths,
            "error": self.error,
        }


@dataclass
class _AssetState:
    """Orchestrator bookkeeping for one repository."""
    in_flight: int = 0
    last_backup: Optional[float] = None


AssetRef = Union[Asset, str, Path]


class BackupOrchestrator:
    """
    Runs backup, restore and history operations for single assets.

    Args:
        config: Loaded configuration (never modified)
        engine: Engine adapter; built from config when omitted
        runner: ProcessRunner handed to the default adapter
        lock_timeout: Seconds to wait for a busy asset (None = forever)
        clock: Wall-clock source for the backup interval floor
    """

    def __init__(
        self,
        config: Configuration,
        engine: Optional[EngineAdapter] = None,
        runner: Optional[ProcessRunner] = None,
        lock_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.engine = engine if engine is not None else create_engine(config, runner)
        self.locator = RepositoryLocator(config)
        self.integrity = IntegrityTracker(self.locator, config.storage_mode)
        self.versions = VersionMapper()
        self.locks = AssetLockRegistry(timeout=lock_timeout)
        self.clock = clock
        self._available = False
        self._states: Dict[str, _AssetState] = {}
        self._states_lock = threading.Lock()

    def asset(self, ref: AssetRef) -> Asset:
        if isinstance(ref, Asset):
            return ref
        return Asset.from_vault(self.config.vault_root, ref)

    @contextmanager
    def _operation(self, *repositories: Path) -> Iterator[List[_AssetState]]:
        """Hold the asset locks and register the operation in the state registry."""
        with self.locks.hold(*repositories):
            keys = [str(r) for r in repositories]
            with self._states_lock:
                states = []
                for key in keys:
                    state = self._states.setdefault(key, _AssetState())
                    state.in_flight += 1
                    states.append(state)
            try:
                yield states
            finally:
                with self._states_lock:
                    for key in keys:
                        state = self._states.get(key)
                        if state is None:
                            continue
                        state.in_flight -= 1
                        if state.in_flight <= 0 and state.last_backup is None:
                            del self._states[key]

    def _fail(self, message: str, code: ErrorCode, **context) -> BackupResult:
        log_structured_error(logger, message, code, {k: str(v) for k, v in context.items()})
        return BackupResult(success=False, error=message)

    def _resolve(self, asset: Asset) -> Path:
        return self.locator.resolve(asset.logical_path)

    def last_backup_time(self, ref: AssetRef) -> Optional[float]:
        """Time of the asset's last successful backup in this process."""
        try:
            key = str(self._resolve(self.asset(ref)))
        except ConfigurationError:
            return None
        with self._states_lock:
            state = self._states.get(key)
            return state.last_backup if state else None

    def is_available(self) -> bool:
        """True if the engine executable answers its version check."""
        # A failed check is repeated on the next call
        if not self._available:
            self._available = self.engine.is_available()
        return self._available

    def is_tracked(self, path: AssetRef) -> bool:
        """Whether a file is an asset this configuration backs up."""
        asset = self.asset(path)
        if any(part.endswith(META_SUFFIX) for part in Path(asset.logical_path).parts[:-1]):
            return False
        extensions = {ext.lower() for ext in self.config.backup.asset_extensions}
        if asset.physical_path.suffix.lower() not in extensions:
            return False
        for pattern in self.config.backup.ignore_patterns:
            if fnmatch.fnmatch(asset.logical_path, pattern) or fnmatch.fnmatch(
                asset.physical_path.name, pattern
            ):
                return False
        return True

    def _effective_options(self, asset: Asset, options: Optional[BackupOptions]) -> BackupOptions:
        backup_config = self.config.backup
        options = options or BackupOptions()
        compression = options.compression
        if compression is None:
            compression = asset.size > backup_config.compression_threshold_bytes
        return BackupOptions(
            compression=compression,
            include_patterns=options.include_patterns or list(backup_config.include_patterns),
            exclude_patterns=options.exclude_patterns or list(backup_config.exclude_patterns),
            tag=options.tag or backup_config.tag,
            force=options.force,
        )

    def backup(self, ref: AssetRef, options: Optional[BackupOptions] = None) -> BackupResult:
        """
        Back up one asset.

        A backup within min_backup_interval_seconds of the asset's previous
        one is skipped unless options.force is set.
        """
        asset = self.asset(ref)
        options = options or BackupOptions()

        if not self.is_available():
            return self._fail(
                f"Backup engine '{self.config.engine_path}' is not available",
                ErrorCode.ENGINE_UNAVAILABLE,
            )
        if not asset.physical_path.is_file():
            return self._fail(
                f"Source file not found: {asset.physical_path}",
                ErrorCode.SOURCE_NOT_FOUND,
            )
        if not self.is_tracked(asset):
            return self._fail(
                f"Not a tracked asset: {asset.logical_path}",
                ErrorCode.ASSET_NOT_TRACKED,
            )
        try:
            repository = self._resolve(asset)
        except ConfigurationError as e:
            return self._fail(str(e), ErrorCode.REPOSITORY_PATH_INVALID, asset=asset.logical_path)

        try:
            with self._operation(repository) as (state,):
                return self._backup_locked(asset, repository, options, state)
        except LockError as e:
            return self._fail(str(e), ErrorCode.LOCK_TIMEOUT, asset=asset.logical_path)

    def _backup_locked(
        self,
        asset: Asset,
        repository: Path,
        options: BackupOptions,
        state: _AssetState,
    ) -> BackupResult:
        interval = self.config.backup.min_backup_interval_seconds
        now = self.clock()
        if (
            not options.force
            and interval > 0
            and state.last_backup is not None
            and now - state.last_backup < interval
        ):
            logger.info(
                f"Skipping backup of {asset.logical_path}: last backup "
                f"{now - state.last_backup:.0f}s ago (minimum {interval}s)"
            )
            return BackupResult(
                success=False,
                error=f"Backed up less than {interval} seconds ago",
                repository_path=repository,
                skipped=True,
            )

        effective = self._effective_options(asset, options)
        try:
            repository.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return self._fail(
                f"Cannot create {repository.parent}: {e}",
                ErrorCode.REPOSITORY_PATH_INVALID,
            )

        # Reserved before the engine runs; dropped if the backup fails
        version = self.versions.next_version(asset.logical_path, repository)
        logger.info(f"Backing up {asset.logical_path} as v{version} to {repository}")

        if self.config.storage_mode == STORAGE_ADJACENT:
            result = self.engine.backup_adjacent(asset.physical_path, repository, effective)
        else:
            result = self.engine.backup(asset.physical_path, repository, effective)

        if not result.success:
            code = ErrorCode.ENGINE_FAILED
            if result.error and TIMEOUT_ERROR in result.error:
                code = ErrorCode.ENGINE_TIMEOUT
            elif result.exit_code == EXIT_NOT_RUN:
                code = ErrorCode.ENGINE_SPAWN_FAILED
            log_structured_error(
                logger,
                f"Backup of {asset.logical_path} failed: {result.error}",
                code,
                {"repository": str(repository), "exit_code": result.exit_code},
            )
            return result

        try:
            result.version_info = self.versions.record(
                asset.logical_path,
                repository,
                asset.size,
                version=version,
                snapshot_id=result.snapshot_id,
            )
        except OSError as e:
            logger.warning(f"Backup succeeded but version store write failed: {e}")
        state.last_backup = now
        logger.info(f"Backup of {asset.logical_path} completed")
        return result

    def default_restore_target(self, ref: AssetRef) -> Path:
        asset = self.asset(ref)
        return asset.physical_path.with_name(asset.physical_path.name + RESTORED_SUFFIX)

    def restore(
        self,
        ref: AssetRef,
        selector: Optional[str] = None,
        target: Optional[Path] = None,
        force: bool = False,
    ) -> BackupResult:
        """
        Restore an asset version beside the asset.

        Args:
            selector: Increment timestamp / snapshot id; latest when omitted
            target: File to write (default "<file>.restored"); the asset
                itself is never a valid target
            force: Overwrite an existing target
        """
        asset = self.asset(ref)
        target = Path(target) if target else self.default_restore_target(asset)

        if not self.is_available():
            return self._fail(
                f"Backup engine '{self.config.engine_path}' is not available",
                ErrorCode.ENGINE_UNAVAILABLE,
            )
        if target.resolve() == asset.physical_path.resolve():
            return self._fail(
                f"Refusing to restore over the asset itself: {target}",
                ErrorCode.CONFIG_INVALID,
            )
        try:
            repository = self._resolve(asset)
        except ConfigurationError as e:
            return self._fail(str(e), ErrorCode.REPOSITORY_PATH_INVALID, asset=asset.logical_path)

        try:
            with self._operation(repository):
                if not self.engine.repository_exists(repository):
                    return self._fail(
                        f"No backup found for {asset.logical_path}",
                        ErrorCode.REPOSITORY_NOT_FOUND,
                        repository=repository,
                    )
                result = self.engine.restore(
                    repository,
                    selector or LATEST,
                    target,
                    BackupOptions(force=force),
                    source_name=asset.physical_path.name,
                )
        except LockError as e:
            return self._fail(str(e), ErrorCode.LOCK_TIMEOUT, asset=asset.logical_path)
        except OSError as e:
            return self._fail(
                f"Restore of {asset.logical_path} failed: {e}",
                ErrorCode.ENGINE_FAILED,
                target=target,
            )

        if not result.success:
            log_structured_error(
                logger,
                f"Restore of {asset.logical_path} failed: {result.error}",
                ErrorCode.ENGINE_FAILED,
                {"repository": str(repository), "selector": selector or LATEST},
            )
        return result

    def history(self, ref: AssetRef) -> AssetHistory:
        """Backup history of an asset; has_backup is False when there is none."""
        asset = self.asset(ref)
        try:
            repository = self._resolve(asset)
        except ConfigurationError as e:
            return AssetHistory(has_backup=False, error=str(e))

        try:
            with self._operation(repository):
                paths = self.integrity.historical_paths(asset.logical_path)
                if not self.engine.repository_exists(repository):
                    return AssetHistory(
                        has_backup=False,
                        repository_path=repository,
                        historical_paths=paths,
                    )
                return AssetHistory(
                    has_backup=True,
                    repository_path=repository,
                    current_version=self.versions.current_version(asset.logical_path, repository),
                    statistics=self.engine.repository_statistics(repository),
                    increments=self.engine.list_increments(repository),
                    versions=self.versions.history(asset.logical_path, repository),
                    historical_paths=paths,
                )
        except LockError as e:
            return AssetHistory(has_backup=False, repository_path=repository, error=str(e))

    def verify(self, ref: AssetRef) -> BackupResult:
        """Run the engine's own consistency check on the asset's repository."""
        asset = self.asset(ref)
        if not self.is_available():
            return self._fail(
                f"Backup engine '{self.config.engine_path}' is not available",
                ErrorCode.ENGINE_UNAVAILABLE,
            )
        try:
            repository = self._resolve(asset)
        except ConfigurationError as e:
            return self._fail(str(e), ErrorCode.REPOSITORY_PATH_INVALID)

        try:
            with self._operation(repository):
                if not self.engine.repository_exists(repository):
                    return self._fail(
                        f"No backup found for {asset.logical_path}",
                        ErrorCode.REPOSITORY_NOT_FOUND,
                    )
                return self.engine.verify(repository)
        except LockError as e:
            return self._fail(str(e), ErrorCode.LOCK_TIMEOUT)

    def on_asset_renamed(self, old: AssetRef, new: AssetRef) -> RelocationResult:
        """
        Keep history attached to an asset that was renamed or moved.

        Call after the asset file itself has been renamed.
        """
        old_asset = self.asset(old)
        new_asset = self.asset(new)
        try:
            old_repo = self._resolve(old_asset)
            new_repo = self._resolve(new_asset)
        except ConfigurationError as e:
            return RelocationResult(success=False, action=ACTION_UNCHANGED, error=str(e))

        if (
            not self.is_tracked(old_asset)
            and not self.is_tracked(new_asset)
            and not old_repo.is_dir()
        ):
            return RelocationResult(
                success=True,
                action=ACTION_NOT_TRACKED,
                old_repository=old_repo,
                new_repository=new_repo,
            )

        try:
            with self._operation(old_repo, new_repo):
                result = self.integrity.on_rename(old_asset.logical_path, new_asset.logical_path)
                self._move_state(old_repo, new_repo)
                return result
        except LockError as e:
            return RelocationResult(
                success=False,
                action=ACTION_UNCHANGED,
                old_repository=old_repo,
                new_repository=new_repo,
                error=str(e),
            )

    def _move_state(self, old_repo: Path, new_repo: Path) -> None:
        if old_repo == new_repo:
            return
        with self._states_lock:
            old_state = self._states.get(str(old_repo))
            if old_state is None or old_state.last_backup is None:
                return
            new_state = self._states.setdefault(str(new_repo), _AssetState())
            new_state.last_backup = old_state.last_backup
            old_state.last_backup = None

    def relocate(self, ref: AssetRef, target_mode: str) -> RelocationResult:
        """
        Move an asset's repository to where target_mode places it.

        Used when switching between adjacent and global storage; the
        configuration itself is left for the caller to update.
        """
        asset = self.asset(ref)
        try:
            current = self._resolve(asset)
            destination = self.locator.resolve(asset.logical_path, target_mode)
        except ConfigurationError as e:
            return RelocationResult(success=False, action=ACTION_UNCHANGED, error=str(e))

        if current == destination:
            return RelocationResult(
                success=True,
                action=ACTION_UNCHANGED,
                old_repository=current,
                new_repository=destination,
            )

        try:
            with self._operation(current, destination):
                if not current.is_dir():
                    return RelocationResult(
                        success=False,
                        action=ACTION_UNCHANGED,
                        old_repository=current,
                        new_repository=destination,
                        error=f"No repository to relocate at {current}",
                    )
                return self.integrity.relocate(current, destination)
        except LockError as e:
            return RelocationResult(success=False, action=ACTION_UNCHANGED, error=str(e))
