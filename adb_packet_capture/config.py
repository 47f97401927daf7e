"""Configuration models and the remote capture command builder."""
from __future__ import annotations

import datetime as dt
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

REMOTE_CAPTURE_DIR = "/storage/my_capture_Data"
REMOTE_CAPTURE_FILE = "capture.pcap"
REMOTE_CAPTURE_TOOL = "tcpdump"
DEFAULT_INTERFACE = "any"
DEFAULT_LOG_FILE = "capture_log.txt"

# Characters the device shell would treat as syntax rather than filter text.
SHELL_CONTROL_CHARACTERS = frozenset(";&|$`<>()\\\n\r")
# tcpdump flags that run programs or move, rotate or replace the capture file.
RESTRICTED_TCPDUMP_FLAGS = frozenset("zZwWCGr")
# tcpdump flags whose argument may be attached, as in ``-s0``.
TCPDUMP_FLAGS_WITH_ARGUMENT = frozenset("BcCEFGijmMQrsTVwWyzZ")


@dataclass(frozen=True)
class RemoteCaptureTarget:
    """Location of the single capture file on the device."""

    directory: str = REMOTE_CAPTURE_DIR
    filename: str = REMOTE_CAPTURE_FILE

    def __post_init__(self) -> None:
        if not self.directory.startswith("/"):
            raise ValueError("Remote capture directory must be an absolute path")
        if not self.filename or "/" in self.filename:
            raise ValueError("Remote capture filename must be a bare file name")

    @property
    def path(self) -> str:
        return f"{self.directory.rstrip('/')}/{self.filename}"


DEFAULT_TARGET = RemoteCaptureTarget()


def _restricted_flags(token: str) -> list[str]:
    if not token.startswith("-") or token.startswith("--") or len(token) < 2:
        return []
    found = []
    for char in token[1:]:
        if char in RESTRICTED_TCPDUMP_FLAGS:
            found.append(char)
        if char in TCPDUMP_FLAGS_WITH_ARGUMENT:
            break
    return found


def check_filter_expression(expression: str) -> None:
    """Reject filter text that would be interpreted by the remote shell.

    Options that make tcpdump run a program (``-z``, ``-Z``) or write, rotate
    or read some other file (``-w``, ``-W``, ``-C``, ``-G``, ``-r``) are
    rejected as well; the capture must land in the one remote file that is
    later pulled.
    """

    found = sorted({char for char in expression if char in SHELL_CONTROL_CHARACTERS})
    if found:
        shown = ", ".join(repr(char) for char in found)
        raise ValueError(
            f"Filter expression contains shell control characters ({shown}); "
            "rewrite it with 'and'/'or'/'not' or enable allow_shell_syntax"
        )
    flags = sorted({flag for token in expression.split() for flag in _restricted_flags(token)})
    if flags:
        shown = ", ".join(f"-{flag}" for flag in flags)
        raise ValueError(
            f"Filter expression uses restricted tcpdump options ({shown}); "
            "enable allow_shell_syntax to pass them through"
        )


@dataclass(frozen=True)
class CaptureOptions:
    """Interface and tcpdump filter for one capture.

    ``filter_expression`` is passed to tcpdump verbatim. Unless
    ``allow_shell_syntax`` is set, text containing shell control characters is
    rejected, since adb hands the whole command line to the device shell, and
    so are tcpdump options that execute programs or redirect the capture file.
    With ``allow_shell_syntax`` the caller is trusted with both.
    """

    interface: str = DEFAULT_INTERFACE
    filter_expression: str = ""
    allow_shell_syntax: bool = False

    def __post_init__(self) -> None:
        if not self.interface or not self.interface.strip():
            raise ValueError("Capture interface cannot be empty")
        if any(char.isspace() or char in SHELL_CONTROL_CHARACTERS for char in self.interface):
            raise ValueError(f"Invalid capture interface name: {self.interface!r}")
        if not self.allow_shell_syntax:
            check_filter_expression(self.filter_expression)


def build_capture_command(
    options: CaptureOptions, target: RemoteCaptureTarget = DEFAULT_TARGET
) -> str:
    command = f"{REMOTE_CAPTURE_TOOL} -i {options.interface} -w {target.path}"
    if options.filter_expression:
        command += f" {options.filter_expression}"
    return command


def default_output_dir() -> Path:
    desktop = Path.home() / "Desktop"
    return desktop if desktop.is_dir() else Path.cwd()


@dataclass
class AppConfig:
    """Top level settings for the capture tool."""

    adb_path: str = "adb"
    adb_timeout_s: float = 10.0
    pull_timeout_s: float = 120.0
    stop_timeout_s: float = 5.0
    poll_interval_s: float = 2.0
    remote_dir: str = REMOTE_CAPTURE_DIR
    remote_filename: str = REMOTE_CAPTURE_FILE
    interface: str = DEFAULT_INTERFACE
    filter_expression: str = ""
    allow_shell_syntax: bool = False
    keep_remote_on_failed_pull: bool = False
    output_dir: Path = field(default_factory=default_output_dir)
    log_file: Path = Path(DEFAULT_LOG_FILE)

    def validate(self) -> None:
        if not self.adb_path:
            raise ValueError("adb_path cannot be empty")
        for name in ("adb_timeout_s", "pull_timeout_s", "stop_timeout_s", "poll_interval_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        self.remote_target()
        self.capture_options()

    def remote_target(self) -> RemoteCaptureTarget:
        return RemoteCaptureTarget(directory=self.remote_dir, filename=self.remote_filename)

    def capture_options(self) -> CaptureOptions:
        return CaptureOptions(
            interface=self.interface,
            filter_expression=self.filter_expression,
            allow_shell_syntax=self.allow_shell_syntax,
        )

    def default_capture_path(self, now: dt.datetime | None = None) -> Path:
        stamp = (now or dt.datetime.now()).strftime("%Y%m%d_%H%M%S")
        return self.output_dir / f"capture_{stamp}.pcap"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AppConfig":
        defaults = cls()
        config = cls(
            adb_path=str(data.get("adb_path", defaults.adb_path)),
            adb_timeout_s=float(data.get("adb_timeout_s", defaults.adb_timeout_s)),
            pull_timeout_s=float(data.get("pull_timeout_s", defaults.pull_timeout_s)),
            stop_timeout_s=float(data.get("stop_timeout_s", defaults.stop_timeout_s)),
            poll_interval_s=float(data.get("poll_interval_s", defaults.poll_interval_s)),
            remote_dir=str(data.get("remote_dir", defaults.remote_dir)),
            remote_filename=str(data.get("remote_filename", defaults.remote_filename)),
            interface=str(data.get("interface", defaults.interface)),
            filter_expression=str(data.get("filter_expression") or ""),
            allow_shell_syntax=bool(data.get("allow_shell_syntax", False)),
            keep_remote_on_failed_pull=bool(data.get("keep_remote_on_failed_pull", False)),
            output_dir=Path(data.get("output_dir", defaults.output_dir)),
            log_file=Path(data.get("log_file", defaults.log_file)),
        )
        config.validate()
        return config

    @classmethod
    def load(cls, path: Path) -> "AppConfig":
        """Load a configuration file from JSON or YAML."""

        with open(path, "r", encoding="utf-8") as handle:
            if path.suffix.lower() in {".yaml", ".yml"}:
                data = yaml.safe_load(handle)
            else:
                data = json.load(handle)

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("Configuration file must define an object at the top level")
        return cls.from_mapping(data)
