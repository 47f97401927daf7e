from __future__ import annotations

import sys
import threading

import pytest

from adb_packet_capture.adb_controller import (
    AdbController,
    CaptureProcess,
    ParseError,
    RemoteFileSize,
    SizeStatus,
    parse_device_list,
    parse_file_size,
)
from adb_packet_capture.config import CaptureOptions, RemoteCaptureTarget
from adb_packet_capture.utils import BridgeUnavailable, CommandError

REMOTE = "/storage/my_capture_Data/capture.pcap"


def test_parse_device_list_keeps_online_devices():
    output = "\n".join(["List of devices attached", "ABC123\tdevice", "DEF456\toffline"])
    assert parse_device_list(output) == ["ABC123"]


def test_parse_device_list_preserves_order_and_ignores_noise():
    output = (
        "* daemon not running; starting now at tcp:5037\n"
        "* daemon started successfully\n"
        "List of devices attached\n"
        "emulator-5554\tdevice\n"
        "XYZ\tunauthorized\n"
        "192.168.1.20:5555\tdevice\n"
        "\n"
    )
    assert parse_device_list(output) == ["emulator-5554", "192.168.1.20:5555"]


def test_parse_device_list_empty():
    assert parse_device_list("List of devices attached\n") == []


def test_parse_device_list_rejects_missing_identifier():
    with pytest.raises(ParseError):
        parse_device_list("List of devices attached\n\tdevice\n")


def test_parse_file_size():
    listing = f"-rw-rw---- 1 root sdcard_rw 48213 2024-01-01 12:00 {REMOTE}"
    result = parse_file_size(listing)
    assert result == RemoteFileSize.found(48213, listing)
    assert result.known
    assert str(result) == "48213 bytes"


def test_parse_file_size_zero_byte_file_is_a_size():
    result = parse_file_size(f"-rw-rw---- 1 root sdcard_rw 0 2024-01-01 12:00 {REMOTE}")
    assert result.status is SizeStatus.SIZE
    assert result.size == 0


@pytest.mark.parametrize(
    "listing",
    ["", "-rw-rw---- 1 root", f"-rw-rw---- 1 root sdcard_rw 4.2K 2024-01-01 {REMOTE}"],
)
def test_parse_file_size_unknown(listing):
    result = parse_file_size(listing)
    assert result.status is SizeStatus.PARSE_ERROR
    assert result.size is None
    assert not result.known


def test_parse_file_size_missing_file():
    result = parse_file_size(f"ls: {REMOTE}: No such file or directory")
    assert result.status is SizeStatus.NOT_FOUND


def test_list_devices_invokes_adb(fake_bridge):
    fake_bridge.devices_output = "List of devices attached\nABC123\tdevice\nDEF456\toffline"
    adb = AdbController(adb_path="/opt/adb")
    assert adb.list_devices() == ["ABC123"]
    assert fake_bridge.calls == [["/opt/adb", "devices"]]


def test_list_devices_bridge_unavailable(tmp_path):
    adb = AdbController(adb_path=str(tmp_path / "missing-adb"))
    with pytest.raises(BridgeUnavailable):
        adb.list_devices()


def test_size_query_command(fake_bridge):
    adb = AdbController()
    assert adb.get_remote_capture_file_size("ABC123").size == 48213
    assert fake_bridge.calls == [["adb", "-s", "ABC123", "shell", "ls", "-l", REMOTE]]


def test_size_query_missing_file_from_exit_status(fake_bridge):
    fake_bridge.failures["ls"] = CommandError(
        ["adb"], 1, "", f"ls: {REMOTE}: No such file or directory"
    )
    result = AdbController().get_remote_capture_file_size("ABC123")
    assert result.status is SizeStatus.NOT_FOUND


def test_size_query_other_failures_propagate(fake_bridge):
    fake_bridge.failures["ls"] = CommandError(["adb"], 1, "", "error: device offline")
    with pytest.raises(CommandError):
        AdbController().get_remote_capture_file_size("ABC123")


def test_pull_remove_and_prepare_commands(fake_bridge, tmp_path):
    target = RemoteCaptureTarget(directory="/data/local/tmp", filename="x.pcap")
    adb = AdbController(target=target)
    local = tmp_path / "nested" / "out.pcap"
    assert adb.pull_capture_file("ABC123", local) == local
    assert local.parent.is_dir()
    adb.remove_remote_capture_file("ABC123")
    adb.prepare_remote_directory("ABC123")
    assert fake_bridge.calls == [
        ["adb", "-s", "ABC123", "pull", "/data/local/tmp/x.pcap", str(local)],
        ["adb", "-s", "ABC123", "shell", "rm", "-f", "/data/local/tmp/x.pcap"],
        ["adb", "-s", "ABC123", "shell", "mkdir", "-p", "/data/local/tmp"],
    ]


def test_start_remote_capture_arguments(fake_popen):
    adb = AdbController()
    process = adb.start_remote_capture("ABC123", CaptureOptions(interface="any", filter_expression="-X"))
    assert process.args == [
        "adb",
        "-s",
        "ABC123",
        "shell",
        "tcpdump -i any -w /storage/my_capture_Data/capture.pcap -X",
    ]
    assert " ".join(process.args[1:]) == (
        "-s ABC123 shell tcpdump -i any -w /storage/my_capture_Data/capture.pcap -X"
    )
    assert process.is_running()
    assert adb.stop_remote_capture(process) == -15
    assert not process.is_running()


def test_start_remote_capture_bridge_unavailable(tmp_path):
    adb = AdbController(adb_path=str(tmp_path / "missing-adb"))
    with pytest.raises(BridgeUnavailable):
        adb.start_remote_capture("ABC123", CaptureOptions())


def test_stop_escalates_to_kill(fake_popen):
    process = CaptureProcess.launch(["adb", "shell", "tcpdump"])
    popen = fake_popen.instances[0]

    def ignore_terminate():
        popen.terminated += 1

    popen.terminate = ignore_terminate
    assert process.stop(0.01) == -9
    assert popen.terminated == 1
    assert popen.killed == 1


def test_output_is_streamed_to_callback():
    received = []
    done = threading.Event()

    def on_output(stream, line):
        received.append((stream, line))
        if len(received) == 2:
            done.set()

    script = "import sys; print('listening on any'); print('permission denied', file=sys.stderr)"
    process = CaptureProcess.launch([sys.executable, "-c", script], on_output=on_output)
    assert done.wait(10)
    process.stop(10)
    assert sorted(received) == [("stderr", "permission denied"), ("stdout", "listening on any")]


def test_stop_is_idempotent_on_real_process():
    process = CaptureProcess.launch([sys.executable, "-c", "import time; time.sleep(60)"])
    assert process.is_running()
    first = process.stop(10)
    assert first is not None
    assert not process.is_running()
    assert process.stop(10) == first
    assert AdbController().stop_remote_capture(process) == first


def test_stop_after_natural_exit():
    process = CaptureProcess.launch([sys.executable, "-c", "raise SystemExit(3)"])
    process._process.wait(10)
    assert process.stop(10) == 3
    assert process.stop(10) == 3
