from __future__ import annotations

import io
import subprocess
from pathlib import Path

import pytest

from adb_packet_capture import adb_controller


class FakePopen:
    """Stand-in for ``subprocess.Popen`` that never exits on its own."""

    instances: list["FakePopen"] = []
    stdout_text = ""
    stderr_text = ""

    def __init__(self, args, **kwargs):
        self.args = list(args)
        self.kwargs = kwargs
        self.pid = 4242 + len(FakePopen.instances)
        self.stdout = io.StringIO(self.stdout_text)
        self.stderr = io.StringIO(self.stderr_text)
        self.returncode = None
        self.terminated = 0
        self.killed = 0
        FakePopen.instances.append(self)

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated += 1
        self.returncode = -15

    def kill(self):
        self.killed += 1
        self.returncode = -9

    def wait(self, timeout=None):
        if self.returncode is None:
            raise subprocess.TimeoutExpired(self.args, timeout)
        return self.returncode


class FakeBridge:
    """Records ``run_command`` calls and answers them like adb would."""

    def __init__(self):
        self.calls: list[list[str]] = []
        self.devices_output = "List of devices attached\nABC123\tdevice\n"
        self.ls_output = "-rw-rw---- 1 root sdcard_rw 48213 2024-01-01 12:00 /storage/my_capture_Data/capture.pcap"
        self.pull_payload: bytes | None = b"\xd4\xc3\xb2\xa1" + b"\x00" * 20
        self.failures: dict[str, Exception] = {}

    def __call__(self, cmd, *, timeout=None):
        cmd = list(cmd)
        self.calls.append(cmd)
        args = cmd[3:] if len(cmd) > 2 and cmd[1] == "-s" else cmd[1:]
        key = args[1] if args[0] == "shell" else args[0]
        if key in self.failures:
            raise self.failures[key]
        if args[0] == "devices":
            return self.devices_output
        if args[0] == "pull":
            if self.pull_payload is not None:
                Path(args[2]).write_bytes(self.pull_payload)
            return ""
        if key == "ls":
            return self.ls_output
        return ""

    def commands(self, name: str) -> list[list[str]]:
        return [cmd for cmd in self.calls if name in cmd]


@pytest.fixture
def fake_popen(monkeypatch):
    FakePopen.instances = []
    FakePopen.stdout_text = ""
    FakePopen.stderr_text = ""
    monkeypatch.setattr(adb_controller.subprocess, "Popen", FakePopen)
    return FakePopen


@pytest.fixture
def fake_bridge(monkeypatch):
    bridge = FakeBridge()
    monkeypatch.setattr(adb_controller, "run_command", bridge)
    return bridge
