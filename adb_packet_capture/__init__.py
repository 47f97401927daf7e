"""Packet capture on Android devices through adb and tcpdump."""

from .adb_controller import AdbController, CaptureProcess, ParseError, RemoteFileSize, SizeStatus
from .capture_log import CaptureLogHandler, attach_capture_log
from .config import AppConfig, CaptureOptions, RemoteCaptureTarget, build_capture_command
from .session import (
    CaptureEvent,
    CaptureSession,
    CaptureSessionController,
    EventKind,
    InvalidSessionState,
    RetrievalIncomplete,
    SessionState,
    StopResult,
)
from .utils import BridgeError, BridgeTimeout, BridgeUnavailable, CommandError

__all__ = [
    "AdbController",
    "AppConfig",
    "BridgeError",
    "BridgeTimeout",
    "BridgeUnavailable",
    "CaptureEvent",
    "CaptureLogHandler",
    "CaptureOptions",
    "CaptureProcess",
    "CaptureSession",
    "CaptureSessionController",
    "CommandError",
    "EventKind",
    "InvalidSessionState",
    "ParseError",
    "RemoteCaptureTarget",
    "RemoteFileSize",
    "RetrievalIncomplete",
    "SessionState",
    "SizeStatus",
    "StopResult",
    "attach_capture_log",
    "build_capture_command",
]
