"""Cross-platform invocation of backup engine executables.

ProcessRunner spawns an engine, waits for it, and reports stdout, stderr
and the exit code as a ProcessResult. It never raises for a nonzero exit,
a missing executable or a timeout: each of those becomes a failed result.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence
import logging
import os
import shutil
import subprocess
import sys


logger = logging.getLogger(__name__)

# Exit code reported when the process never produced one
EXIT_NOT_RUN = -1

TIMEOUT_ERROR = "timed out"

# Makes powershell -Command exit with the last native exit code
POWERSHELL_EXIT = "exit $LASTEXITCODE"

# Grace period between terminate() and kill() after a timeout
TERMINATE_GRACE_SECONDS = 5


@dataclass
class ProcessResult:
    """Outcome of one engine invocation."""
    success: bool
    stdout: str
    stderr: str
    exit_code: int
    error: Optional[str] = None


def _is_windows(platform: Optional[str] = None) -> bool:
    return (platform or sys.platform).startswith("win")


def quote_argument(arg: str) -> str:
    """Wrap an argument in double quotes if it contains whitespace."""
    if any(ch.isspace() for ch in arg):
        return f'"{arg}"'
    return arg


def format_command_line(
    executable: str,
    args: Sequence[str],
    platform: Optional[str] = None,
) -> str:
    """
    Render the command line the way the host's command interpreter expects it.

    On Windows, PowerShell needs the call operator (&) in front of a quoted
    executable path; elsewhere the quoted path is used as is.
    """
    quoted_args = " ".join(quote_argument(a) for a in args)
    quoted_exe = quote_argument(executable)
    if _is_windows(platform) and quoted_exe != executable:
        line = f"& {quoted_exe}"
    else:
        line = quoted_exe
    if quoted_args:
        line = f"{line} {quoted_args}"
    return line


def build_invocation(
    executable: str,
    args: Sequence[str],
    platform: Optional[str] = None,
) -> List[str]:
    """
    Build the argv actually handed to the operating system.

    Windows goes through PowerShell with the rendered command line,
    followed by an explicit exit so PowerShell reports the engine's own
    exit code instead of 0/1 from $?. On POSIX the engine is exec'd
    directly, so no shell sees glob patterns such as the diff engine's
    "**" exclude.
    """
    if _is_windows(platform):
        return [
            "powershell.exe",
            "-NoProfile",
            "-Command",
            f"{format_command_line(executable, args, platform)}; {POWERSHELL_EXIT}",
        ]
    return [executable, *args]


class ProcessRunner:
    """
    Runs external executables and captures their output.

    No retries are performed; a caller that wants them wraps run().
    """

    def __init__(self, platform: Optional[str] = None):
        self.platform = platform or sys.platform

    def run(
        self,
        executable: str,
        args: Sequence[str],
        working_directory: Optional[Path] = None,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessResult:
        """
        Run an executable to completion.

        Args:
            executable: Engine executable name or path
            args: Arguments, unquoted
            working_directory: Optional cwd for the child
            timeout: Seconds before the child is killed (None = wait forever)
            env: Extra environment variables merged over os.environ

        Returns:
            ProcessResult; success is exit_code == 0
        """
        argv = build_invocation(executable, args, self.platform)
        logger.info(f"Executing: {format_command_line(executable, args, self.platform)}")

        child_env = None
        if env:
            child_env = {**os.environ, **env}

        try:
            process = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                cwd=str(working_directory) if working_directory else None,
                env=child_env,
            )
        except OSError as e:
            # Executable missing, not executable, bad cwd
            logger.error(f"Failed to start {executable}: {e}")
            return ProcessResult(
                success=False,
                stdout="",
                stderr=str(e),
                exit_code=EXIT_NOT_RUN,
                error=str(e),
            )

        try:
            stdout_bytes, stderr_bytes = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            process.terminate()
            try:
                stdout_bytes, stderr_bytes = process.communicate(
                    timeout=TERMINATE_GRACE_SECONDS
                )
            except subprocess.TimeoutExpired:
                process.kill()
                stdout_bytes, stderr_bytes = process.communicate()

            # The child may have exited on its own just as the timeout fired
            if process.returncode == 0:
                logger.debug(f"{executable} completed as the timeout fired; keeping its result")
            else:
                logger.warning(f"{executable} timed out after {timeout} seconds")
                return ProcessResult(
                    success=False,
                    stdout=_decode(stdout_bytes),
                    stderr=_decode(stderr_bytes),
                    exit_code=EXIT_NOT_RUN,
                    error=TIMEOUT_ERROR,
                )

        exit_code = process.returncode
        stdout = _decode(stdout_bytes)
        stderr = _decode(stderr_bytes)

        if exit_code == 0:
            logger.debug(f"{executable} completed successfully")
            return ProcessResult(True, stdout, stderr, exit_code)

        logger.warning(f"{executable} exited with code {exit_code}: {stderr.strip()}")
        return ProcessResult(
            success=False,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            error=f"{Path(executable).name} exited with code {exit_code}",
        )


def _decode(data: Optional[bytes]) -> str:
    # Engines print file names; undecodable bytes must not break parsing
    return data.decode("utf-8", errors="replace") if data else ""


def find_executable(
    configured: str,
    default_name: str,
    search_dirs: Sequence[Path] = (),
    platform: Optional[str] = None,
) -> List[str]:
    """
    List candidate executables in order of preference.

    Order: executables inside search_dirs (with .exe variants on Windows),
    the configured path, then the default name resolved on PATH.
    """
    candidates: List[str] = []
    if _is_windows(platform):
        names = [f"{default_name}.exe", default_name]
    else:
        names = [default_name, f"{default_name}.exe"]

    for directory in search_dirs:
        for name in names:
            candidate = Path(directory) / name
            if candidate.exists():
                candidates.append(str(candidate))

    if configured and configured != default_name:
        candidates.append(configured)

    on_path = shutil.which(default_name)
    if on_path:
        candidates.append(on_path)
    candidates.append(default_name)

    # Drop duplicates, keep order
    seen = set()
    unique = []
    for candidate in candidates:
        if candidate not in seen:
            seen.add(candidate)
            unique.append(candidate)
    return unique


def tail(text: str, lines: int = 20) -> str:
    """Return the last lines of text, for error messages."""
    parts = text.strip().splitlines()
    return "\n".join(parts[-lines:])
