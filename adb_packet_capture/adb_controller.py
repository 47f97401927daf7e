"""ADB helpers for running tcpdump on Android devices."""
from __future__ import annotations

import enum
import logging
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from .config import DEFAULT_TARGET, CaptureOptions, RemoteCaptureTarget, build_capture_command
from .utils import BridgeTimeout, BridgeUnavailable, CommandError, ensure_directory, run_command

logger = logging.getLogger(__name__)

DEVICE_STATUS_MARKER = "\tdevice"
_MISSING_FILE_MARKERS = ("No such file", "does not exist")

OutputCallback = Callable[[str, str], None]


class ParseError(ValueError):
    """Raised when adb output cannot be interpreted."""


class SizeStatus(enum.Enum):
    SIZE = "size"
    NOT_FOUND = "not_found"
    PARSE_ERROR = "parse_error"


@dataclass(frozen=True)
class RemoteFileSize:
    """Result of a remote size query.

    A missing file and an unreadable listing are reported as such instead of
    being folded into a zero size.
    """

    status: SizeStatus
    size: Optional[int] = None
    raw: str = ""

    @classmethod
    def found(cls, size: int, raw: str = "") -> "RemoteFileSize":
        return cls(SizeStatus.SIZE, size, raw)

    @classmethod
    def not_found(cls, raw: str = "") -> "RemoteFileSize":
        return cls(SizeStatus.NOT_FOUND, None, raw)

    @classmethod
    def unparseable(cls, raw: str) -> "RemoteFileSize":
        return cls(SizeStatus.PARSE_ERROR, None, raw)

    @property
    def known(self) -> bool:
        return self.status is SizeStatus.SIZE

    def __str__(self) -> str:
        if self.status is SizeStatus.SIZE:
            return f"{self.size} bytes"
        if self.status is SizeStatus.NOT_FOUND:
            return "file not found"
        return "unknown (unparseable listing)"


def parse_device_list(output: str) -> list[str]:
    """Return serials of online devices from ``adb devices`` output."""

    devices: list[str] = []
    for line in output.splitlines():
        if DEVICE_STATUS_MARKER not in line:
            continue
        serial = line.split("\t", 1)[0].strip()
        if not serial:
            raise ParseError(f"Device line has no identifier: {line!r}")
        devices.append(serial)
    return devices


def _is_missing_file(text: str) -> bool:
    return any(marker in text for marker in _MISSING_FILE_MARKERS)


def parse_file_size(listing: str) -> RemoteFileSize:
    """Extract the size column from an ``ls -l`` line."""

    text = listing.strip()
    if _is_missing_file(text):
        return RemoteFileSize.not_found(text)
    if not text:
        return RemoteFileSize.unparseable(text)
    parts = text.splitlines()[0].split()
    if len(parts) < 5 or not parts[4].isdigit():
        return RemoteFileSize.unparseable(text)
    return RemoteFileSize.found(int(parts[4]), text)


class CaptureProcess:
    """Handle on a long-running ``adb shell`` process.

    Output from both pipes is read line by line on background threads, since
    the process only ends when it is stopped.
    """

    def __init__(self, process: subprocess.Popen, *, on_output: Optional[OutputCallback] = None) -> None:
        self._process = process
        self._on_output = on_output
        self._readers: list[threading.Thread] = []
        for name, stream in (("stdout", process.stdout), ("stderr", process.stderr)):
            if stream is None:
                continue
            reader = threading.Thread(
                target=self._pump, args=(name, stream), name=f"capture-{name}-{process.pid}", daemon=True
            )
            reader.start()
            self._readers.append(reader)

    @classmethod
    def launch(cls, cmd: Sequence[str], *, on_output: Optional[OutputCallback] = None) -> "CaptureProcess":
        try:
            process = subprocess.Popen(
                list(cmd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            raise BridgeUnavailable(cmd[0], exc) from exc
        logger.info("Launched %s (pid %s)", " ".join(cmd), process.pid)
        return cls(process, on_output=on_output)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def args(self) -> list[str]:
        return list(self._process.args)

    @property
    def returncode(self) -> Optional[int]:
        return self._process.poll()

    def is_running(self) -> bool:
        return self._process.poll() is None

    def _pump(self, name: str, stream) -> None:
        for line in iter(stream.readline, ""):
            line = line.rstrip()
            if not line:
                continue
            logger.debug("[%s] %s", name, line)
            if self._on_output is not None:
                self._on_output(name, line)
        stream.close()

    def _join_readers(self, timeout: float) -> None:
        for reader in self._readers:
            reader.join(timeout)

    def stop(self, timeout: float) -> Optional[int]:
        """Terminate the process if needed and return its exit code."""

        if self._process.poll() is None:
            self._process.terminate()
            try:
                self._process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("pid %s ignored terminate; killing", self._process.pid)
                self._process.kill()
                try:
                    self._process.wait(timeout=timeout)
                except subprocess.TimeoutExpired as exc:
                    raise BridgeTimeout(self.args, timeout) from exc
        self._join_readers(timeout)
        return self._process.returncode


class AdbController:
    def __init__(
        self,
        *,
        adb_path: str = "adb",
        timeout_s: float = 10.0,
        pull_timeout_s: float = 120.0,
        stop_timeout_s: float = 5.0,
        target: RemoteCaptureTarget = DEFAULT_TARGET,
    ) -> None:
        self._adb_path = adb_path
        self._timeout_s = timeout_s
        self._pull_timeout_s = pull_timeout_s
        self._stop_timeout_s = stop_timeout_s
        self.target = target

    def _base_cmd(self, serial: str | None = None) -> list[str]:
        cmd = [self._adb_path]
        if serial:
            cmd.extend(["-s", serial])
        return cmd

    def run(self, serial: str | None, *args: str) -> str:
        cmd = self._base_cmd(serial) + list(args)
        return run_command(cmd, timeout=self._timeout_s)

    def list_devices(self) -> list[str]:
        return parse_device_list(self.run(None, "devices"))

    def prepare_remote_directory(self, serial: str) -> None:
        self.run(serial, "shell", "mkdir", "-p", self.target.directory)

    def start_remote_capture(
        self,
        serial: str,
        options: CaptureOptions,
        *,
        on_output: Optional[OutputCallback] = None,
    ) -> CaptureProcess:
        command = build_capture_command(options, self.target)
        return CaptureProcess.launch(self._base_cmd(serial) + ["shell", command], on_output=on_output)

    def stop_remote_capture(self, process: CaptureProcess) -> Optional[int]:
        return process.stop(self._stop_timeout_s)

    def pull_capture_file(self, serial: str, local_path: Path) -> Path:
        local_path = Path(local_path)
        ensure_directory(local_path.parent)
        cmd = self._base_cmd(serial) + ["pull", self.target.path, str(local_path)]
        run_command(cmd, timeout=self._pull_timeout_s)
        return local_path

    def remove_remote_capture_file(self, serial: str) -> None:
        self.run(serial, "shell", "rm", "-f", self.target.path)

    def get_remote_capture_file_size(self, serial: str) -> RemoteFileSize:
        try:
            output = self.run(serial, "shell", "ls", "-l", self.target.path)
        except CommandError as exc:
            listing = exc.stderr.strip() or exc.stdout.strip()
            if _is_missing_file(listing):
                return RemoteFileSize.not_found(listing)
            raise
        return parse_file_size(output)
