"""Backup history integrity across asset renames and moves.

In adjacent mode an asset's repository sits beside the asset and is named
after it, so renaming the asset would orphan its history. IntegrityTracker
moves the repository along with the asset and keeps a per-asset rename
ledger from which the asset's earlier paths can be reconstructed.

Relocation runs as four steps, each failing with its own IntegrityError:
1. ensure the destination's parent directory exists
2. archive whatever already occupies the destination (renamed aside,
   never overwritten or deleted)
3. move the repository with a directory rename
4. verify the repository is at the destination and gone from the source

A failed verification is reported, not rolled back. The rename is still
written to the ledger so the asset's path history stays complete.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional
import json
import logging
import os

from assetincrement.config import STORAGE_GLOBAL
from assetincrement.locator import RepositoryLocator
from assetincrement.logger import ErrorCode, log_structured_error


logger = logging.getLogger(__name__)

RENAME_LOG_FILE = "rename-log.json"

# Entries kept per asset; also the hop cap of a history walk
MAX_LEDGER_ENTRIES = 100

ARCHIVE_MARKER = "pre-move-archive"

# Relocation steps, as named in IntegrityError.step
STEP_ENSURE_PARENT = "ensure-parent"
STEP_ARCHIVE = "archive"
STEP_MOVE = "move"
STEP_VERIFY = "verify"

# RelocationResult.action values
ACTION_SKIPPED = "skipped"  # global storage mode
ACTION_UNCHANGED = "unchanged"  # repository path did not change
ACTION_LEDGER_ONLY = "ledger-only"  # no repository to move
ACTION_MOVED = "moved"
ACTION_NOT_TRACKED = "not-tracked"  # neither path is a tracked asset

_STEP_ERROR_CODES = {
    STEP_ENSURE_PARENT: ErrorCode.INTEGRITY_MOVE_FAILED,
    STEP_ARCHIVE: ErrorCode.INTEGRITY_ARCHIVE_FAILED,
    STEP_MOVE: ErrorCode.INTEGRITY_MOVE_FAILED,
    STEP_VERIFY: ErrorCode.INTEGRITY_VERIFY_FAILED,
}


class IntegrityError(Exception):
    """Raised when a relocation step fails."""

    def __init__(self, message: str, step: str):
        super().__init__(message)
        self.step = step


@dataclass
class RenameLogEntry:
    """One recorded rename, paths vault-relative."""
    old_path: str
    new_path: str
    timestamp: str

    def to_dict(self) -> dict:
        return {
            "old_path": self.old_path,
            "new_path": self.new_path,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RenameLogEntry":
        return cls(
            old_path=str(data["old_path"]),
            new_path=str(data["new_path"]),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass
class RelocationResult:
    """Outcome of on_rename or an explicit relocation."""
    success: bool
    action: str
    old_repository: Optional[Path] = None
    new_repository: Optional[Path] = None
    archive_path: Optional[Path] = None
    error: Optional[str] = None
    failed_step: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "action": self.action,
            "old_repository": str(self.old_repository) if self.old_repository else None,
            "new_repository": str(self.new_repository) if self.new_repository else None,
            "archive_path": str(self.archive_path) if self.archive_path else None,
            "error": self.error,
            "failed_step": self.failed_step,
        }


def load_ledger(metadata_dir: Path) -> List[RenameLogEntry]:
    """
    Load the rename ledger in a metadata directory.

    A missing or corrupted ledger reads as empty.
    """
    ledger_path = Path(metadata_dir) / RENAME_LOG_FILE
    if not ledger_path.exists():
        return []
    try:
        data = json.loads(ledger_path.read_text())
        return [RenameLogEntry.from_dict(item) for item in data.get("entries", [])]
    except (OSError, json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
        log_structured_error(
            logger,
            f"Corrupted rename ledger, ignoring it: {e}",
            ErrorCode.INTEGRITY_LEDGER_CORRUPT,
            {"ledger": str(ledger_path)},
        )
        return []


def save_ledger(metadata_dir: Path, entries: List[RenameLogEntry]) -> None:
    """Write the ledger atomically, keeping the newest MAX_LEDGER_ENTRIES."""
    metadata_dir = Path(metadata_dir)
    metadata_dir.mkdir(parents=True, exist_ok=True)
    ledger_path = metadata_dir / RENAME_LOG_FILE
    data = {
        "version": 1,
        "entries": [entry.to_dict() for entry in entries[-MAX_LEDGER_ENTRIES:]],
    }
    # Atomic write: write to temp file, then rename
    temp_path = ledger_path.with_suffix(".tmp")
    temp_path.write_text(json.dumps(data, indent=2))
    temp_path.replace(ledger_path)


def walk_history(entries: List[RenameLogEntry], current_path: str) -> List[str]:
    """
    Reconstruct the chain of paths that led to current_path, oldest first.

    Walks the ledger from newest to oldest following new_path -> old_path
    links, for at most min(len(entries), MAX_LEDGER_ENTRIES) hops.
    """
    chain = [current_path]
    hops_left = min(len(entries), MAX_LEDGER_ENTRIES)
    for entry in reversed(entries):
        if hops_left <= 0:
            break
        if entry.new_path == chain[-1] and entry.old_path != entry.new_path:
            chain.append(entry.old_path)
            hops_left -= 1
    chain.reverse()
    return chain


def archive_name(repository: Path, now: datetime) -> str:
    stamp = now.isoformat().replace(":", "-").replace(".", "-")
    return f"{repository.name}.{ARCHIVE_MARKER}.{stamp}"


def unique_archive_path(repository: Path, now: datetime) -> Path:
    """Archive path beside repository that does not exist yet."""
    candidate = repository.with_name(archive_name(repository, now))
    sequence = 1
    while candidate.exists():
        candidate = repository.with_name(f"{archive_name(repository, now)}-{sequence:02d}")
        sequence += 1
    return candidate


def _same_entry(source: Path, destination: Path) -> bool:
    try:
        return os.path.samefile(source, destination)
    except OSError:
        return False


def relocate_repository(
    source: Path,
    destination: Path,
    now: Optional[datetime] = None,
) -> Optional[Path]:
    """
    Move a repository directory from source to destination.

    Returns:
        The archive path if an existing destination was archived, else None

    Raises:
        IntegrityError: With the name of the step that failed
    """
    source = Path(source)
    destination = Path(destination)
    now = now or datetime.now()

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise IntegrityError(
            f"Cannot create {destination.parent}: {e}", STEP_ENSURE_PARENT
        )

    # Case-only rename on a case-insensitive filesystem: both names are one directory
    same_entry = destination.exists() and _same_entry(source, destination)

    archived: Optional[Path] = None
    if destination.exists() and not same_entry:
        archived = unique_archive_path(destination, now)
        try:
            destination.rename(archived)
        except OSError as e:
            raise IntegrityError(
                f"Cannot archive existing repository {destination}: {e}", STEP_ARCHIVE
            )
        logger.warning(f"Archived existing repository {destination} to {archived.name}")

    try:
        source.rename(destination)
    except OSError as e:
        raise IntegrityError(f"Cannot move {source} to {destination}: {e}", STEP_MOVE)

    if not destination.is_dir() or (source.exists() and not same_entry):
        raise IntegrityError(
            f"Repository not found at {destination} after move", STEP_VERIFY
        )

    logger.info(f"Moved repository {source} -> {destination}")
    return archived


class IntegrityTracker:
    """
    Keeps repositories attached to assets across renames.

    Args:
        locator: Resolves repository paths
        storage_mode: Active storage mode; "global" disables tracking
        clock: Returns the current time (for ledger timestamps)
    """

    def __init__(
        self,
        locator: RepositoryLocator,
        storage_mode: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.locator = locator
        self.storage_mode = storage_mode or locator.storage_mode
        self.clock = clock

    def on_rename(self, old_path: str, new_path: str) -> RelocationResult:
        """
        Move an asset's repository after the asset was renamed.

        Never raises for filesystem failures; they come back as a failed
        RelocationResult naming the step that failed.
        """
        if self.storage_mode == STORAGE_GLOBAL:
            return RelocationResult(success=True, action=ACTION_SKIPPED)

        old_logical = self.locator.logical_path(old_path)
        new_logical = self.locator.logical_path(new_path)
        old_repo = self.locator.resolve(old_logical)
        new_repo = self.locator.resolve(new_logical)
        now = self.clock()

        if old_repo == new_repo:
            self._append(new_repo, old_logical, new_logical, now)
            return RelocationResult(
                success=True,
                action=ACTION_UNCHANGED,
                old_repository=old_repo,
                new_repository=new_repo,
            )

        if not old_repo.is_dir():
            logger.info(f"No repository for {old_logical}; recording rename only")
            self._append(new_repo, old_logical, new_logical, now)
            return RelocationResult(
                success=True,
                action=ACTION_LEDGER_ONLY,
                old_repository=old_repo,
                new_repository=new_repo,
            )

        result = self.relocate(old_repo, new_repo, now)
        # Provenance is kept even when the move failed
        ledger_dir = new_repo if new_repo.is_dir() else old_repo
        self._append(ledger_dir, old_logical, new_logical, now)
        return result

    def relocate(
        self,
        old_repo: Path,
        new_repo: Path,
        now: Optional[datetime] = None,
    ) -> RelocationResult:
        """Run the relocation protocol and report its outcome."""
        try:
            archived = relocate_repository(old_repo, new_repo, now or self.clock())
        except IntegrityError as e:
            log_structured_error(
                logger,
                str(e),
                _STEP_ERROR_CODES.get(e.step, ErrorCode.UNKNOWN_ERROR),
                {"step": e.step, "source": str(old_repo), "destination": str(new_repo)},
            )
            return RelocationResult(
                success=False,
                action=ACTION_MOVED,
                old_repository=old_repo,
                new_repository=new_repo,
                error=str(e),
                failed_step=e.step,
            )
        return RelocationResult(
            success=True,
            action=ACTION_MOVED,
            old_repository=old_repo,
            new_repository=new_repo,
            archive_path=archived,
        )

    def _append(self, metadata_dir: Path, old_path: str, new_path: str, now: datetime) -> None:
        entries = load_ledger(metadata_dir)
        entries.append(RenameLogEntry(old_path, new_path, now.isoformat()))
        try:
            save_ledger(metadata_dir, entries)
        except OSError as e:
            log_structured_error(
                logger,
                f"Failed to write rename ledger in {metadata_dir}: {e}",
                ErrorCode.INTEGRITY_LEDGER_CORRUPT,
            )

    def ledger(self, asset_path: str) -> List[RenameLogEntry]:
        """Rename ledger stored with the asset's repository."""
        return load_ledger(self.locator.resolve(self.locator.logical_path(asset_path)))

    def historical_paths(self, current_path: str) -> List[str]:
        """Paths the asset has had, oldest first, ending with current_path."""
        logical = self.locator.logical_path(current_path)
        return walk_history(self.ledger(logical), logical)
