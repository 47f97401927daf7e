"""Subprocess helpers and bridge error types for ADB capture."""
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Sequence


class BridgeError(RuntimeError):
    """Base class for failures talking to the adb bridge tool."""


class BridgeUnavailable(BridgeError):
    """Raised when the bridge executable cannot be launched."""

    def __init__(self, executable: str, reason: BaseException | str):
        super().__init__(f"Cannot launch '{executable}': {reason}")
        self.executable = executable
        self.reason = reason


class BridgeTimeout(BridgeError):
    """Raised when a bridge invocation exceeds its time bound."""

    def __init__(self, cmd: Sequence[str], timeout: float | None):
        super().__init__(f"Command {' '.join(cmd)} timed out after {timeout}s")
        self.cmd = cmd
        self.timeout = timeout


class CommandError(BridgeError):
    """Raised when an external command fails."""

    def __init__(self, cmd: Sequence[str], returncode: int, stdout: str, stderr: str):
        super().__init__(
            f"Command {' '.join(cmd)} failed with exit code {returncode}: {stderr.strip() or stdout.strip()}"
        )
        self.cmd = cmd
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def run_command(cmd: Sequence[str], *, timeout: float | None = None) -> str:
    """Run a command to completion and return stdout.

    Args:
        cmd: The command and arguments to execute.
        timeout: Optional timeout in seconds. The child is killed on expiry.

    Raises:
        BridgeUnavailable: The executable could not be started.
        BridgeTimeout: The command did not finish within *timeout*.
        CommandError: The command exited with a non-zero status.
    """

    try:
        proc = subprocess.run(
            list(cmd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise BridgeTimeout(cmd, timeout) from exc
    except OSError as exc:
        raise BridgeUnavailable(cmd[0], exc) from exc
    if proc.returncode != 0:
        raise CommandError(cmd, proc.returncode, proc.stdout, proc.stderr)
    return proc.stdout.strip()


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
