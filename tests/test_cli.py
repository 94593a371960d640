"""Unit tests for CLI commands.

Tests each CLI command with valid inputs and error handling.
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from assetincrement.cli import (
    main,
    create_parser,
    EXIT_SUCCESS,
    EXIT_CONFIG_ERROR,
    EXIT_ENGINE_UNAVAILABLE,
    EXIT_OPERATION_FAILED,
)
from assetincrement.config import MCPConfig, format_config, parse_config
from assetincrement.logger import ErrorCode, StructuredLogEntry
from assetincrement.orchestrator import BackupOrchestrator
from conftest import FakeEngine


@pytest.fixture
def config_file(tmp_path, make_config):
    path = tmp_path / "config.toml"
    path.write_text(format_config(make_config()))
    return path


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def patched(engine):
    """Build orchestrators around the fake engine."""
    with patch(
        "assetincrement.cli.create_orchestrator",
        side_effect=lambda config: BackupOrchestrator(config, engine=engine),
    ):
        yield engine


@pytest.fixture
def asset(vault):
    path = vault / "shot.blend"
    path.write_bytes(b"blend data")
    return path


class TestArgumentParser:
    """Tests for CLI argument parser setup."""

    def test_parser_creation(self):
        parser = create_parser()
        assert parser.prog == 'asset-increment'

    def test_global_options(self):
        args = create_parser().parse_args(['--config', '/path/to/config.toml', '-v', 'check'])

        assert args.config == Path('/path/to/config.toml')
        assert args.verbose
        assert args.command == 'check'

    def test_backup_options(self):
        args = create_parser().parse_args(['backup', 'a.blend', '--force', '--no-compress', '--tag', 'wip'])

        assert args.path == Path('a.blend')
        assert args.force
        assert args.compression is False
        assert args.tag == 'wip'

    def test_compression_default_is_undecided(self):
        args = create_parser().parse_args(['backup', 'a.blend'])
        assert args.compression is None

    def test_compress_flags_are_exclusive(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(['backup', 'a.blend', '--compress', '--no-compress'])

    def test_restore_options(self):
        args = create_parser().parse_args(['restore', 'a.blend', '--at', '1a2b3c4d', '--to', 'out.blend'])

        assert args.selector == '1a2b3c4d'
        assert args.destination == Path('out.blend')
        assert not args.force

    def test_renamed(self):
        args = create_parser().parse_args(['renamed', 'old.blend', 'new.blend'])
        assert (args.old, args.new) == (Path('old.blend'), Path('new.blend'))

    def test_no_command_prints_help(self, capsys):
        assert main([]) == EXIT_SUCCESS
        assert 'usage' in capsys.readouterr().out


class TestCommands:
    def test_init_creates_config(self, tmp_path):
        config_path = tmp_path / "new" / "config.toml"

        assert main(['--config', str(config_path), 'init']) == EXIT_SUCCESS
        assert parse_config(config_path).engine == "diff"

    def test_init_refuses_overwrite(self, config_file):
        before = config_file.read_text()

        assert main(['--config', str(config_file), 'init']) == EXIT_CONFIG_ERROR
        assert config_file.read_text() == before

    def test_init_force_overwrites(self, config_file):
        assert main(['--config', str(config_file), 'init', '--force']) == EXIT_SUCCESS

    def test_missing_config(self, tmp_path, capsys):
        code = main(['--config', str(tmp_path / "nope.toml"), 'backup', 'a.blend'])

        assert code == EXIT_CONFIG_ERROR
        assert 'Configuration error' in capsys.readouterr().err

    def test_backup(self, config_file, patched, asset, capsys):
        code = main(['--config', str(config_file), 'backup', str(asset)])

        assert code == EXIT_SUCCESS
        assert 'v001' in capsys.readouterr().out
        assert patched.calls[0][3].compression is False

    def test_backup_compress_flag(self, config_file, patched, asset):
        main(['--config', str(config_file), 'backup', str(asset), '--compress'])
        assert patched.calls[0][3].compression is True

    def test_backup_relative_to_vault(self, config_file, patched, asset):
        assert main(['--config', str(config_file), 'backup', 'shot.blend']) == EXIT_SUCCESS

    def test_backup_missing_file(self, config_file, patched, vault, capsys):
        code = main(['--config', str(config_file), 'backup', str(vault / "gone.blend")])

        assert code == EXIT_OPERATION_FAILED
        assert 'Backup failed' in capsys.readouterr().err

    def test_backup_engine_unavailable(self, config_file, patched, asset):
        patched.available = False
        code = main(['--config', str(config_file), 'backup', str(asset)])

        assert code == EXIT_ENGINE_UNAVAILABLE
        assert patched.calls == []

    def test_restore(self, config_file, patched, asset, capsys):
        main(['--config', str(config_file), 'backup', str(asset)])

        code = main(['--config', str(config_file), 'restore', str(asset)])

        assert code == EXIT_SUCCESS
        assert 'shot.blend.restored' in capsys.readouterr().out
        assert asset.with_name('shot.blend.restored').read_bytes() == b"restored"

    def test_restore_without_backup(self, config_file, patched, asset):
        assert main(['--config', str(config_file), 'restore', str(asset)]) == EXIT_OPERATION_FAILED

    def test_history_json(self, config_file, patched, asset, capsys):
        main(['--config', str(config_file), 'backup', str(asset)])
        capsys.readouterr()

        code = main(['--config', str(config_file), 'history', str(asset), '--json'])

        assert code == EXIT_SUCCESS
        data = json.loads(capsys.readouterr().out)
        assert data["has_backup"] is True
        assert data["current_version"] == "001"

    def test_history_text(self, config_file, patched, asset, capsys):
        main(['--config', str(config_file), 'backup', str(asset)])

        assert main(['--config', str(config_file), 'history', str(asset)]) == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert 'Current version: v001' in out
        assert '(latest)' in out

    def test_history_without_backup(self, config_file, patched, asset, capsys):
        assert main(['--config', str(config_file), 'history', str(asset)]) == EXIT_SUCCESS
        assert 'No backups yet' in capsys.readouterr().out

    def test_renamed(self, config_file, patched, asset, vault, capsys):
        main(['--config', str(config_file), 'backup', str(asset)])
        renamed = asset.with_name('final.blend')
        asset.rename(renamed)

        code = main(['--config', str(config_file), 'renamed', str(asset), str(renamed)])

        assert code == EXIT_SUCCESS
        assert '(moved)' in capsys.readouterr().out
        assert (vault / 'final.blend.meta').is_dir()

    def test_verify(self, config_file, patched, asset, capsys):
        main(['--config', str(config_file), 'backup', str(asset)])

        assert main(['--config', str(config_file), 'verify', str(asset)]) == EXIT_SUCCESS
        assert 'PASSED' in capsys.readouterr().out

    def test_verify_without_backup(self, config_file, patched, asset):
        assert main(['--config', str(config_file), 'verify', str(asset)]) == EXIT_OPERATION_FAILED

    def test_check(self, config_file, patched, capsys):
        assert main(['--config', str(config_file), 'check']) == EXIT_SUCCESS
        assert 'Available: yes' in capsys.readouterr().out

    def test_check_lists_recent_errors(self, tmp_path, config_file, patched, capsys):
        error_log = tmp_path / "logs" / "asset-increment.err"
        error_log.parent.mkdir(parents=True, exist_ok=True)
        entry = StructuredLogEntry.create(
            "ERROR", "Backup of shot.blend failed: exit 2", ErrorCode.ENGINE_FAILED
        )
        error_log.write_text(f"2026-01-01 00:00:00 - assetincrement - ERROR - {entry.to_json()}\n")

        assert main(['--config', str(config_file), 'check']) == EXIT_SUCCESS

        out = capsys.readouterr().out
        assert 'Recent errors (1):' in out
        assert '[E1004] Backup of shot.blend failed: exit 2' in out

    def test_check_unavailable(self, config_file, patched):
        patched.available = False
        assert main(['--config', str(config_file), 'check']) == EXIT_ENGINE_UNAVAILABLE

    def test_mcp_server_disabled(self, tmp_path, make_config, capsys):
        config_path = tmp_path / "disabled.toml"
        config_path.write_text(format_config(make_config(mcp=MCPConfig(enabled=False))))

        with patch("assetincrement.mcp_server.run_server") as run_server:
            assert main(['--config', str(config_path), 'mcp-server']) == EXIT_CONFIG_ERROR

        run_server.assert_not_called()
        assert 'disabled' in capsys.readouterr().err

    def test_mcp_server_enabled(self, config_file):
        with patch("assetincrement.mcp_server.run_server") as run_server:
            assert main(['--config', str(config_file), 'mcp-server']) == EXIT_SUCCESS

        run_server.assert_called_once_with(config_path=config_file)
