"""Pytest configuration and fixtures for asset-increment tests."""

from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import threading
import time

import pytest
from hypothesis import settings, Phase

from assetincrement.config import Configuration, LoggingConfig
from assetincrement.engine import BackupResult, Increment
from assetincrement.logger import parse_structured_log
from assetincrement.process import ProcessResult
from assetincrement.statistics import BackupStatistics

# Configure hypothesis to use fewer examples for faster test runs
# Disable shrinking phase to speed up tests further
settings.register_profile(
    "fast",
    max_examples=10,
    deadline=10000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate]
)
settings.register_profile("ci", max_examples=100, deadline=10000)
settings.register_profile("dev", max_examples=10, deadline=10000)

# Use the fast profile by default
settings.load_profile("fast")


class StubRunner:
    """
    ProcessRunner stand-in that records invocations and replays canned output.

    respond(executable, args, env) returns the ProcessResult for one call;
    by default every call succeeds with empty output.
    """

    def __init__(self, respond: Optional[Callable[..., ProcessResult]] = None):
        self.respond = respond
        self.calls: List[Dict] = []

    def run(
        self,
        executable: str,
        args: Sequence[str],
        working_directory: Optional[Path] = None,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessResult:
        call = {
            "executable": executable,
            "args": list(args),
            "working_directory": working_directory,
            "timeout": timeout,
            "env": dict(env or {}),
        }
        self.calls.append(call)
        if self.respond is None:
            return ProcessResult(True, "", "", 0)
        return self.respond(executable, list(args), call["env"])


class FakeEngine:
    """In-memory engine adapter recording how it was called."""

    engine = "diff"

    def __init__(self, available: bool = True, duration: float = 0.0):
        self.available = available
        self.duration = duration
        self.fail_with: Optional[str] = None
        self.fail_exit_code = 2
        self.calls: List[Tuple] = []
        self.lifetimes: List[Tuple[float, float]] = []
        self.availability_checks = 0
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        self.availability_checks += 1
        return self.available

    def repository_exists(self, repository_path: Path) -> bool:
        return (Path(repository_path) / "data").is_dir()

    def _backup(self, kind, source_path, repository_path, options) -> BackupResult:
        start = time.monotonic()
        if self.duration:
            time.sleep(self.duration)
        end = time.monotonic()
        with self._lock:
            self.calls.append((kind, Path(source_path), Path(repository_path), options))
            self.lifetimes.append((start, end))
        if self.fail_with:
            return BackupResult(success=False, error=self.fail_with, exit_code=self.fail_exit_code)
        (Path(repository_path) / "data").mkdir(parents=True, exist_ok=True)
        return BackupResult(
            success=True,
            repository_path=Path(repository_path),
            statistics=BackupStatistics(changed_files=1),
        )

    def backup(self, source_path, repository_path, options=None):
        return self._backup("backup", source_path, repository_path, options)

    def backup_adjacent(self, source_path, repository_path, options=None):
        return self._backup("backup_adjacent", source_path, repository_path, options)

    def restore(self, repository_path, selector, target_path, options=None, source_name=None):
        self.calls.append(("restore", repository_path, selector, target_path, options, source_name))
        Path(target_path).write_bytes(b"restored")
        return BackupResult(success=True, repository_path=repository_path, restored_path=Path(target_path))

    def list_increments(self, repository_path):
        return [Increment("2025-06-13T12:25:58+00:00", "2025-06-13T12:25:58+00:00", "diff")]

    def repository_statistics(self, repository_path):
        return BackupStatistics(source_size=5.0)

    def verify(self, repository_path):
        return BackupResult(success=True, repository_path=repository_path)


def logged_codes(caplog) -> List[str]:
    """Error codes of the structured entries caplog captured."""
    entries = (parse_structured_log(record.getMessage()) for record in caplog.records)
    return [entry.error_code for entry in entries if entry is not None and entry.error_code]


def ok(stdout: str = "", stderr: str = "") -> ProcessResult:
    return ProcessResult(True, stdout, stderr, 0)


def failed(exit_code: int, stderr: str = "boom") -> ProcessResult:
    return ProcessResult(False, "", stderr, exit_code, error=f"engine exited with code {exit_code}")


@pytest.fixture
def stub_runner():
    return StubRunner()


@pytest.fixture
def vault(tmp_path):
    """An empty vault directory."""
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def make_config(tmp_path, vault):
    """Build a Configuration rooted at the test vault."""
    def _make(**overrides) -> Configuration:
        backup_overrides = overrides.pop("backup", {})
        config = Configuration(
            vault_root=vault,
            logging=LoggingConfig(
                level="DEBUG",
                log_file=tmp_path / "logs" / "asset-increment.log",
                error_log_file=tmp_path / "logs" / "asset-increment.err",
            ),
            **overrides,
        )
        for key, value in backup_overrides.items():
            setattr(config.backup, key, value)
        return config
    return _make
