"""Repository location policy.

Every asset's repository is a sibling-style metadata directory named
"<file name>.meta". In adjacent mode it sits beside the asset; in global
mode it sits at the same vault-relative location under a separate root.
Resolution is pure path arithmetic and never touches the filesystem.
"""

from pathlib import Path, PurePath
from typing import Optional, Union

from assetincrement.config import (
    Configuration,
    ConfigurationError,
    STORAGE_ADJACENT,
    VALID_STORAGE_MODES,
)


META_SUFFIX = ".meta"

PathLike = Union[str, PurePath]


def metadata_name(file_name: str) -> str:
    return f"{file_name}{META_SUFFIX}"


def _absolute(path: PathLike, vault_root: Path) -> Path:
    path = Path(path)
    if not path.is_absolute():
        path = vault_root / path
    return path


def resolve_repository_path(
    asset_path: PathLike,
    storage_mode: str,
    vault_root: PathLike,
    global_root: Optional[PathLike] = None,
) -> Path:
    """
    Compute where an asset's repository lives.

    Args:
        asset_path: Absolute path, or a path relative to vault_root
        storage_mode: "adjacent" or "global"
        vault_root: Absolute vault root
        global_root: Root of the global mirror tree
            (default <vault_root>/.asset-backups)

    Returns:
        Absolute repository path

    Raises:
        ConfigurationError: Unknown mode, empty or non-absolute input, or
            (global mode) an asset outside the vault
    """
    if storage_mode not in VALID_STORAGE_MODES:
        raise ConfigurationError(
            f"Unknown storage mode '{storage_mode}'. "
            f"Must be one of: {', '.join(VALID_STORAGE_MODES)}"
        )
    if not str(asset_path).strip():
        raise ConfigurationError("Asset path must not be empty")

    vault_root = Path(vault_root)
    if not vault_root.is_absolute():
        raise ConfigurationError(f"Vault root must be absolute: {vault_root}")

    asset = _absolute(asset_path, vault_root)
    if not asset.name:
        raise ConfigurationError(f"Asset path has no file name: {asset_path}")

    if storage_mode == STORAGE_ADJACENT:
        return asset.parent / metadata_name(asset.name)

    root = Path(global_root) if global_root else vault_root / ".asset-backups"
    if not root.is_absolute():
        raise ConfigurationError(f"Global backup root must be absolute: {root}")
    try:
        relative_dir = asset.parent.relative_to(vault_root)
    except ValueError:
        raise ConfigurationError(
            f"Asset {asset} is outside the vault {vault_root}; "
            f"it cannot be mirrored under {root}"
        )
    return root / relative_dir / metadata_name(asset.name)


class RepositoryLocator:
    """Resolves repository paths for one configuration."""

    def __init__(self, config: Configuration):
        self.vault_root = config.vault_root
        self.storage_mode = config.storage_mode
        self.global_root = config.effective_global_root

    def resolve(self, asset_path: PathLike, storage_mode: Optional[str] = None) -> Path:
        """Repository path of asset_path in the configured (or given) mode."""
        return resolve_repository_path(
            asset_path,
            storage_mode or self.storage_mode,
            self.vault_root,
            self.global_root,
        )

    def asset_path(self, logical_path: PathLike) -> Path:
        """Physical path of a vault-relative logical path."""
        return _absolute(logical_path, self.vault_root)

    def logical_path(self, asset_path: PathLike) -> str:
        """Vault-relative, forward-slash form of an asset path."""
        path = Path(asset_path)
        if path.is_absolute():
            try:
                path = path.relative_to(self.vault_root)
            except ValueError:
                return path.as_posix()
        return path.as_posix()
