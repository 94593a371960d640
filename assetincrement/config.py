"""TOML configuration for asset-increment.

The file names the vault, the backup engine and where repositories are
stored. It is read with tomllib into the dataclasses below and written
back by format_config for `asset-increment init`.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import tomllib


class ConfigurationError(Exception):
    """Missing or malformed configuration file, or an unknown engine or storage mode."""


class ValidationError(Exception):
    """A configuration key holds a value of the wrong type."""


ENGINE_DIFF = "diff"
ENGINE_SNAPSHOT = "snapshot"
VALID_ENGINES = (ENGINE_DIFF, ENGINE_SNAPSHOT)

STORAGE_ADJACENT = "adjacent"
STORAGE_GLOBAL = "global"
VALID_STORAGE_MODES = (STORAGE_ADJACENT, STORAGE_GLOBAL)

DEFAULT_ENGINE_PATHS: Dict[str, str] = {
    ENGINE_DIFF: "rdiff-backup",
    ENGINE_SNAPSHOT: "restic",
}

# Binary asset types tracked by default
DEFAULT_ASSET_EXTENSIONS: List[str] = [
    ".blend",
    ".psd",
    ".kra",
    ".xcf",
    ".pdf",
    ".ai",
    ".svg",
    ".indd",
    ".afphoto",
    ".afdesign",
    ".afpub",
]


@dataclass
class BackupConfig:
    """Per-backup behaviour."""
    compression_threshold_bytes: int = 1024 * 1024
    include_patterns: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)
    asset_extensions: List[str] = field(
        default_factory=lambda: DEFAULT_ASSET_EXTENSIONS.copy()
    )
    ignore_patterns: List[str] = field(default_factory=list)
    min_backup_interval_seconds: int = 60  # 0 disables the floor
    process_timeout_seconds: int = 0  # 0 = no timeout
    tag: str = ""

    @property
    def process_timeout(self) -> Optional[float]:
        """Timeout in seconds for engine processes, or None when disabled."""
        if self.process_timeout_seconds <= 0:
            return None
        return float(self.process_timeout_seconds)


@dataclass
class LoggingConfig:
    """Log file locations, level and rotation."""
    level: str = "INFO"  # "DEBUG", "INFO", "WARNING", "ERROR"
    log_file: Path = field(
        default_factory=lambda: Path.home() / ".local/log/asset-increment.log"
    )
    error_log_file: Path = field(
        default_factory=lambda: Path.home() / ".local/log/asset-increment.err"
    )
    log_max_size_mb: int = 10
    log_backup_count: int = 5

    @property
    def log_max_bytes(self) -> int:
        return self.log_max_size_mb << 20


@dataclass
class MCPConfig:
    """Whether `asset-increment mcp-server` may start."""
    enabled: bool = True


@dataclass
class Configuration:
    """Main configuration for asset-increment."""
    vault_root: Path
    engine: str = ENGINE_DIFF
    engine_path: str = ""
    storage_mode: str = STORAGE_ADJACENT
    global_backup_root: Optional[Path] = None
    backup: BackupConfig = field(default_factory=BackupConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    mcp: MCPConfig = field(default_factory=MCPConfig)

    def __post_init__(self):
        if not self.engine_path:
            self.engine_path = DEFAULT_ENGINE_PATHS.get(self.engine, "")

    @property
    def effective_global_root(self) -> Path:
        """Root of the global mirror tree."""
        if self.global_backup_root is not None:
            return self.global_backup_root
        return self.vault_root / ".asset-backups"


DEFAULT_CONFIG_PATH = Path.home() / ".config/asset-increment/config.toml"

REQUIRED_KEYS = ["vault_root"]


def _validate_type(value: Any, expected_type: type, key: str) -> None:
    # bool is an int subclass; an int key must not accept true/false
    wrong = not isinstance(value, expected_type) or (
        expected_type is int and isinstance(value, bool)
    )
    if wrong:
        raise ValidationError(
            f"Key '{key}' has invalid type: expected {expected_type.__name__}, "
            f"got {type(value).__name__}"
        )


def _validate_str_list(value: Any, key: str) -> List[str]:
    _validate_type(value, list, key)
    for i, item in enumerate(value):
        _validate_type(item, str, f"{key}[{i}]")
    return list(value)


def _parse_backup_config(data: Dict[str, Any]) -> BackupConfig:
    """Parse backup configuration from dict."""
    backup_data = data.get("backup", {})
    defaults = BackupConfig()

    threshold = backup_data.get(
        "compression_threshold_bytes", defaults.compression_threshold_bytes
    )
    _validate_type(threshold, int, "backup.compression_threshold_bytes")

    include = _validate_str_list(
        backup_data.get("include_patterns", []), "backup.include_patterns"
    )
    exclude = _validate_str_list(
        backup_data.get("exclude_patterns", []), "backup.exclude_patterns"
    )
    extensions = _validate_str_list(
        backup_data.get("asset_extensions", DEFAULT_ASSET_EXTENSIONS.copy()),
        "backup.asset_extensions",
    )
    ignore = _validate_str_list(
        backup_data.get("ignore_patterns", []), "backup.ignore_patterns"
    )

    interval = backup_data.get(
        "min_backup_interval_seconds", defaults.min_backup_interval_seconds
    )
    _validate_type(interval, int, "backup.min_backup_interval_seconds")

    timeout = backup_data.get(
        "process_timeout_seconds", defaults.process_timeout_seconds
    )
    _validate_type(timeout, int, "backup.process_timeout_seconds")

    tag = backup_data.get("tag", "")
    _validate_type(tag, str, "backup.tag")

    return BackupConfig(
        compression_threshold_bytes=threshold,
        include_patterns=include,
        exclude_patterns=exclude,
        asset_extensions=extensions,
        ignore_patterns=ignore,
        min_backup_interval_seconds=interval,
        process_timeout_seconds=timeout,
        tag=tag,
    )


def _typed(section: Dict[str, Any], prefix: str, key: str, default: Any, expected: type) -> Any:
    value = section.get(key, default)
    _validate_type(value, expected, f"{prefix}.{key}")
    return value


def _parse_logging_config(data: Dict[str, Any]) -> LoggingConfig:
    section = data.get("logging", {})
    defaults = LoggingConfig()

    return LoggingConfig(
        level=_typed(section, "logging", "level", defaults.level, str),
        log_file=Path(_typed(section, "logging", "log_file", str(defaults.log_file), str)),
        error_log_file=Path(
            _typed(section, "logging", "error_log_file", str(defaults.error_log_file), str)
        ),
        log_max_size_mb=_typed(section, "logging", "log_max_size_mb", defaults.log_max_size_mb, int),
        log_backup_count=_typed(section, "logging", "log_backup_count", defaults.log_backup_count, int),
    )


def _parse_mcp_config(data: Dict[str, Any]) -> MCPConfig:
    section = data.get("mcp", {})
    return MCPConfig(enabled=_typed(section, "mcp", "enabled", True, bool))


def parse_config_string(toml_content: str) -> Configuration:
    """
    Build a Configuration from TOML text.

    Top-level keys may sit under a [main] table or at the document root;
    [backup], [logging] and [mcp] are optional.

    Raises:
        ConfigurationError: Bad TOML, no vault_root, or an unknown engine/storage_mode
        ValidationError: A key holds a value of the wrong type
    """
    try:
        data = tomllib.loads(toml_content)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML format: {e}")

    main_data = data.get("main", data)

    for key in REQUIRED_KEYS:
        if key not in main_data:
            raise ConfigurationError(f"Missing required configuration key: '{key}'")

    vault_root = main_data["vault_root"]
    _validate_type(vault_root, str, "vault_root")
    if not vault_root.strip():
        raise ConfigurationError("Configuration key 'vault_root' must not be empty")

    engine = main_data.get("engine", ENGINE_DIFF)
    _validate_type(engine, str, "engine")
    if engine not in VALID_ENGINES:
        raise ConfigurationError(
            f"Unknown engine '{engine}'. Must be one of: {', '.join(VALID_ENGINES)}"
        )

    engine_path = main_data.get("engine_path", "")
    _validate_type(engine_path, str, "engine_path")

    storage_mode = main_data.get("storage_mode", STORAGE_ADJACENT)
    _validate_type(storage_mode, str, "storage_mode")
    if storage_mode not in VALID_STORAGE_MODES:
        raise ConfigurationError(
            f"Unknown storage_mode '{storage_mode}'. "
            f"Must be one of: {', '.join(VALID_STORAGE_MODES)}"
        )

    global_root = main_data.get("global_backup_root", "")
    _validate_type(global_root, str, "global_backup_root")

    return Configuration(
        vault_root=Path(vault_root).expanduser(),
        engine=engine,
        engine_path=engine_path,
        storage_mode=storage_mode,
        global_backup_root=Path(global_root).expanduser() if global_root else None,
        backup=_parse_backup_config(data),
        logging=_parse_logging_config(data),
        mcp=_parse_mcp_config(data),
    )


def parse_config(config_path: Optional[Path] = None) -> Configuration:
    """
    Read and parse the configuration file.

    config_path defaults to ~/.config/asset-increment/config.toml.
    Raises ConfigurationError when the file is missing or unreadable, and
    whatever parse_config_string raises for its content.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {path}. Run 'asset-increment init' to create one."
        )
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}")
    return parse_config_string(content)


def _toml_str(value: Any) -> str:
    """Quote value as a TOML basic string."""
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _format_str_list(key: str, values: List[str]) -> List[str]:
    if not values:
        return [f"{key} = []"]
    return [f"{key} = [", *(f"    {_toml_str(v)}," for v in values), "]"]


def format_config(config: Configuration) -> str:
    """Render config as TOML that parse_config_string reads back unchanged."""
    backup = config.backup
    log = config.logging
    lines = [
        "[main]",
        f"vault_root = {_toml_str(config.vault_root)}",
        f"engine = {_toml_str(config.engine)}",
        f"engine_path = {_toml_str(config.engine_path)}",
        f"storage_mode = {_toml_str(config.storage_mode)}",
        f"global_backup_root = {_toml_str(config.global_backup_root or '')}",
        "",
        "[backup]",
        f"compression_threshold_bytes = {backup.compression_threshold_bytes}",
        *_format_str_list("include_patterns", backup.include_patterns),
        *_format_str_list("exclude_patterns", backup.exclude_patterns),
        *_format_str_list("asset_extensions", backup.asset_extensions),
        *_format_str_list("ignore_patterns", backup.ignore_patterns),
        f"min_backup_interval_seconds = {backup.min_backup_interval_seconds}",
        f"process_timeout_seconds = {backup.process_timeout_seconds}",
        f"tag = {_toml_str(backup.tag)}",
        "",
        "[logging]",
        f"level = {_toml_str(log.level)}",
        f"log_file = {_toml_str(log.log_file)}",
        f"error_log_file = {_toml_str(log.error_log_file)}",
        f"log_max_size_mb = {log.log_max_size_mb}",
        f"log_backup_count = {log.log_backup_count}",
        "",
        "[mcp]",
        f"enabled = {str(config.mcp.enabled).lower()}",
    ]
    return "\n".join(lines)


def create_default_config() -> str:
    """
    Generate default configuration TOML for `asset-increment init`.

    Returns:
        TOML formatted string with default configuration
    """
    template = '''# asset-increment configuration file

[main]
# Absolute path to the vault whose assets are tracked
vault_root = "~/Vault"

# Backup engine: "diff" (rdiff-backup) or "snapshot" (restic)
engine = "diff"
# Engine executable; leave empty to use the engine's default name on PATH
engine_path = ""

# "adjacent" keeps <file>.meta/ beside each asset,
# "global" mirrors the vault layout under global_backup_root
storage_mode = "adjacent"
# Empty means <vault_root>/.asset-backups
global_backup_root = ""

[backup]
# Enable engine compression for files larger than this many bytes
compression_threshold_bytes = 1048576
include_patterns = []
exclude_patterns = []
# File types that are backed up
asset_extensions = [
'''

    for extension in DEFAULT_ASSET_EXTENSIONS:
        template += f'    "{extension}",\n'

    template += ''']
ignore_patterns = []
# Skip a backup if the same asset was backed up less than this many seconds ago
min_backup_interval_seconds = 60
# Kill engine processes after this many seconds (0 = never)
process_timeout_seconds = 0
# Tag attached to snapshot-engine backups
tag = ""

[logging]
# Log level: DEBUG, INFO, WARNING, ERROR
level = "INFO"
log_file = "~/.local/log/asset-increment.log"
error_log_file = "~/.local/log/asset-increment.err"
log_max_size_mb = 10
log_backup_count = 5

[mcp]
enabled = true
'''

    return template
