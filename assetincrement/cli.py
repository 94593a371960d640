"""Command-line interface for asset-increment.

This module provides the CLI for asset-increment, supporting commands for:
- init: Write a default configuration file
- backup: Back up one asset now
- restore: Restore an asset version beside the asset
- history: Show versions, increments and earlier paths of an asset
- renamed: Tell the backup store that an asset was renamed or moved
- verify: Run the engine's consistency check on an asset's repository
- check: Check that the configured engine is usable
- mcp-server: Start the MCP server on stdio
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from assetincrement import __version__
from assetincrement.config import (
    Configuration,
    ConfigurationError,
    ValidationError,
    create_default_config,
    parse_config,
    DEFAULT_CONFIG_PATH,
    STORAGE_GLOBAL,
)
from assetincrement.engine import BackupOptions
from assetincrement.logger import LoggingError, get_recent_errors, setup_logging
from assetincrement.orchestrator import BackupOrchestrator
from assetincrement.statistics import BackupStatistics, format_size
from assetincrement.versioning import describe_version


EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_ENGINE_UNAVAILABLE = 2
EXIT_OPERATION_FAILED = 3
EXIT_INTERRUPTED = 130

RECENT_ERRORS_SHOWN = 5


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog='asset-increment',
        description='Versioned incremental backup of single binary assets'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to config file (default: ~/.config/asset-increment/config.toml)',
        metavar='PATH'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose output'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    init_parser = subparsers.add_parser(
        'init',
        help='Create default config'
    )
    init_parser.add_argument(
        '--force', '-f',
        action='store_true',
        help='Overwrite existing config file'
    )

    backup_parser = subparsers.add_parser(
        'backup',
        help='Back up an asset now'
    )
    backup_parser.add_argument(
        'path',
        type=Path,
        help='Asset path (absolute or relative to the vault)'
    )
    backup_parser.add_argument(
        '--force', '-f',
        action='store_true',
        help='Ignore the minimum backup interval'
    )
    compression = backup_parser.add_mutually_exclusive_group()
    compression.add_argument(
        '--compress',
        dest='compression',
        action='store_const',
        const=True,
        help='Force engine compression on'
    )
    compression.add_argument(
        '--no-compress',
        dest='compression',
        action='store_const',
        const=False,
        help='Force engine compression off'
    )
    backup_parser.add_argument(
        '--tag',
        default='',
        help='Tag for the snapshot engine'
    )

    restore_parser = subparsers.add_parser(
        'restore',
        help='Restore an asset version'
    )
    restore_parser.add_argument(
        'path',
        type=Path,
        help='Asset path (absolute or relative to the vault)'
    )
    restore_parser.add_argument(
        '--at',
        dest='selector',
        help='Increment timestamp or snapshot id (default: latest)'
    )
    restore_parser.add_argument(
        '--to',
        dest='destination',
        type=Path,
        help='Destination file (default: <asset>.restored)'
    )
    restore_parser.add_argument(
        '--force', '-f',
        action='store_true',
        help='Overwrite an existing destination'
    )

    history_parser = subparsers.add_parser(
        'history',
        help='Show backup history of an asset'
    )
    history_parser.add_argument(
        'path',
        type=Path,
        help='Asset path (absolute or relative to the vault)'
    )
    history_parser.add_argument(
        '--json',
        action='store_true',
        help='Output as JSON'
    )

    renamed_parser = subparsers.add_parser(
        'renamed',
        help='Record that an asset was renamed or moved'
    )
    renamed_parser.add_argument(
        'old',
        type=Path,
        help='Previous asset path'
    )
    renamed_parser.add_argument(
        'new',
        type=Path,
        help='Current asset path'
    )

    verify_parser = subparsers.add_parser(
        'verify',
        help="Check an asset's repository with the engine"
    )
    verify_parser.add_argument(
        'path',
        type=Path,
        help='Asset path (absolute or relative to the vault)'
    )

    subparsers.add_parser(
        'check',
        help='Check that the configured engine is usable'
    )

    subparsers.add_parser(
        'mcp-server',
        help='Start MCP server on stdio'
    )

    return parser


def load_config(config_path: Optional[Path], verbose: bool = False) -> Optional[Configuration]:
    """Parse the config file, printing the problem and returning None if it is unusable."""
    try:
        config = parse_config(config_path)
    except (ConfigurationError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return None
    if verbose:
        print(f"Using configuration {config_path or DEFAULT_CONFIG_PATH}")
    return config


def create_orchestrator(config: Configuration) -> BackupOrchestrator:
    return BackupOrchestrator(config)


def _prepare(args: argparse.Namespace, need_engine: bool = True):
    """
    Load config, set up logging and build the orchestrator.

    Returns:
        (orchestrator, None) on success, (None, exit_code) on failure
    """
    config = load_config(args.config, args.verbose)
    if config is None:
        return None, EXIT_CONFIG_ERROR

    try:
        setup_logging(config.logging, console=args.verbose)
    except LoggingError as e:
        print(f"Warning: logging disabled: {e}", file=sys.stderr)

    orchestrator = create_orchestrator(config)
    if need_engine and not orchestrator.is_available():
        print(
            f"Backup engine not available: {config.engine_path}. "
            f"Install it or set engine_path in the config.",
            file=sys.stderr,
        )
        return None, EXIT_ENGINE_UNAVAILABLE
    return orchestrator, None


def _print_statistics(stats: Optional[BackupStatistics]) -> None:
    if stats is None:
        return
    print(f"  Changed files: {stats.changed_files}")
    print(f"  Increment size: {stats.increment_file_size:g}")
    if stats.compression_ratio is not None:
        print(f"  Compression ratio: {stats.compression_ratio:.1f}%")
    print(f"  Elapsed: {stats.elapsed_time:.2f}s")


def cmd_init(args: argparse.Namespace) -> int:
    """Write a commented default configuration file."""
    target = args.config or DEFAULT_CONFIG_PATH
    if target.exists() and not args.force:
        print(f"{target} already exists; pass --force to replace it.", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(create_default_config(), encoding="utf-8")
    print(f"Wrote {target}")
    print("Edit vault_root and the engine settings before the first backup.")
    return EXIT_SUCCESS


def cmd_backup(args: argparse.Namespace) -> int:
    """Execute the 'backup' command - back up one asset now."""
    orchestrator, exit_code = _prepare(args)
    if orchestrator is None:
        return exit_code

    options = BackupOptions(
        compression=args.compression,
        tag=args.tag,
        force=args.force,
    )
    result = orchestrator.backup(args.path, options)

    if result.skipped:
        print(f"Skipped: {result.error}")
        return EXIT_SUCCESS
    if not result.success:
        print(f"Backup failed: {result.error}", file=sys.stderr)
        if result.stderr:
            print(result.stderr, file=sys.stderr)
        return EXIT_OPERATION_FAILED

    label = result.version_info.display if result.version_info else "backup"
    print(f"Backed up {args.path} as {label}")
    if result.warning_recovered:
        print("  (engine reported warnings)")
    if args.verbose:
        print(f"  Repository: {result.repository_path}")
        _print_statistics(result.statistics)
    return EXIT_SUCCESS


def cmd_restore(args: argparse.Namespace) -> int:
    """Execute the 'restore' command - restore an asset version."""
    orchestrator, exit_code = _prepare(args)
    if orchestrator is None:
        return exit_code

    result = orchestrator.restore(
        args.path,
        selector=args.selector,
        target=args.destination,
        force=args.force,
    )
    if not result.success:
        print(f"Restore failed: {result.error}", file=sys.stderr)
        if result.stderr:
            print(result.stderr, file=sys.stderr)
        return EXIT_OPERATION_FAILED

    print(f"Restored to {result.restored_path}")
    return EXIT_SUCCESS


def cmd_history(args: argparse.Namespace) -> int:
    """Execute the 'history' command - show backup history of an asset."""
    orchestrator, exit_code = _prepare(args, need_engine=False)
    if orchestrator is None:
        return exit_code

    history = orchestrator.history(args.path)

    if args.json:
        print(json.dumps(history.to_dict(), indent=2))
        return EXIT_SUCCESS if history.error is None else EXIT_OPERATION_FAILED

    if history.error:
        print(f"History unavailable: {history.error}", file=sys.stderr)
        return EXIT_OPERATION_FAILED

    print(f"History of {args.path}")
    print("=" * 40)
    if not history.has_backup:
        print("No backups yet")
        return EXIT_SUCCESS

    print(f"Current version: v{history.current_version}")
    print(f"Repository: {history.repository_path}")
    if history.statistics and history.statistics.source_size is not None:
        print(f"Backed-up size: {format_size(history.statistics.source_size)}")
    if len(history.historical_paths) > 1:
        print(f"Earlier paths: {' -> '.join(history.historical_paths)}")

    print()
    print(f"Versions ({len(history.versions)}):")
    for record in reversed(history.versions):
        marker = " (latest)" if record.is_latest else ""
        print(f"  {describe_version(record)}{marker}")

    if history.increments:
        print()
        print(f"Engine increments ({len(history.increments)}):")
        for increment in reversed(history.increments):
            print(f"  {increment.identifier}  {increment.timestamp}")
    return EXIT_SUCCESS


def cmd_renamed(args: argparse.Namespace) -> int:
    """Execute the 'renamed' command - keep history attached after a rename."""
    orchestrator, exit_code = _prepare(args, need_engine=False)
    if orchestrator is None:
        return exit_code

    result = orchestrator.on_asset_renamed(args.old, args.new)
    if not result.success:
        print(f"Relocation failed: {result.error}", file=sys.stderr)
        return EXIT_OPERATION_FAILED

    print(f"Recorded rename {args.old} -> {args.new} ({result.action})")
    if result.archive_path:
        print(f"  Existing repository archived to {result.archive_path}")
    return EXIT_SUCCESS


def cmd_verify(args: argparse.Namespace) -> int:
    """Execute the 'verify' command - check an asset's repository."""
    orchestrator, exit_code = _prepare(args)
    if orchestrator is None:
        return exit_code

    result = orchestrator.verify(args.path)
    if result.success:
        print("Status: PASSED")
        return EXIT_SUCCESS

    print("Status: FAILED")
    print(f"  {result.error}", file=sys.stderr)
    if result.stderr:
        print(result.stderr, file=sys.stderr)
    return EXIT_OPERATION_FAILED


def cmd_check(args: argparse.Namespace) -> int:
    """Execute the 'check' command - report engine, storage settings and recent errors."""
    orchestrator, exit_code = _prepare(args, need_engine=False)
    if orchestrator is None:
        return exit_code

    config = orchestrator.config
    available = orchestrator.is_available()
    print("asset-increment Status")
    print("=" * 40)
    print(f"Vault: {config.vault_root}")
    print(f"Engine: {config.engine} ({config.engine_path})")
    print(f"  Available: {'yes' if available else 'no'}")
    print(f"Storage mode: {config.storage_mode}")
    if config.storage_mode == STORAGE_GLOBAL:
        print(f"  Global root: {config.effective_global_root}")
    print(f"Compression above: {format_size(config.backup.compression_threshold_bytes)}")

    recent = get_recent_errors(
        Path(config.logging.error_log_file).expanduser(), max_entries=RECENT_ERRORS_SHOWN
    )
    if recent:
        print(f"Recent errors ({len(recent)}):")
        for entry in recent:
            print(f"  {entry.timestamp} [{entry.error_code or '-'}] {entry.message}")
    return EXIT_SUCCESS if available else EXIT_ENGINE_UNAVAILABLE


def cmd_mcp_server(args: argparse.Namespace) -> int:
    """Execute the 'mcp-server' command - start MCP server."""
    from assetincrement.mcp_server import run_server

    try:
        enabled = parse_config(args.config).mcp.enabled
    except (ConfigurationError, ValidationError):
        # The server still starts; its tools report the configuration error
        enabled = True
    if not enabled:
        print("The MCP server is disabled in the configuration ([mcp] enabled = false).", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        run_server(config_path=args.config)
        return EXIT_SUCCESS
    except KeyboardInterrupt:
        return EXIT_SUCCESS
    except Exception as e:
        print(f"MCP server error: {e}", file=sys.stderr)
        return EXIT_OPERATION_FAILED


COMMANDS = {
    'init': cmd_init,
    'backup': cmd_backup,
    'restore': cmd_restore,
    'history': cmd_history,
    'renamed': cmd_renamed,
    'verify': cmd_verify,
    'check': cmd_check,
    'mcp-server': cmd_mcp_server,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Parse argv (default sys.argv[1:]), run the command and return its exit code."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_SUCCESS

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.error(f"unknown command {args.command!r}")

    try:
        return handler(args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
