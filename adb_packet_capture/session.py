"""Lifecycle of a single remote packet capture."""
from __future__ import annotations

import datetime as dt
import enum
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from .adb_controller import AdbController, CaptureProcess, ParseError, RemoteFileSize
from .config import CaptureOptions
from .utils import BridgeError, CommandError

logger = logging.getLogger(__name__)


class InvalidSessionState(RuntimeError):
    """Raised when start/stop is called in the wrong session state."""


class RetrievalIncomplete(RuntimeError):
    """Raised when a pulled capture file is missing or empty."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"Capture file {path} is {reason} after pull")
        self.path = path
        self.reason = reason


class SessionState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    CAPTURING = "capturing"
    STOPPING = "stopping"


class EventKind(enum.Enum):
    INFO = "info"
    SIZE = "size"
    OUTPUT = "output"
    ERROR = "error"


@dataclass(frozen=True)
class CaptureEvent:
    kind: EventKind
    message: str
    size: Optional[RemoteFileSize] = None
    error: Optional[BaseException] = None
    timestamp: dt.datetime = field(default_factory=dt.datetime.now)


EventCallback = Callable[[CaptureEvent], None]


@dataclass
class CaptureSession:
    """Run state of one capture. Owned by a single controller."""

    serial: str
    options: CaptureOptions
    process: CaptureProcess
    remote_path: str
    started_at: dt.datetime = field(default_factory=dt.datetime.now)
    stop_event: threading.Event = field(default_factory=threading.Event)
    poller: Optional[threading.Thread] = None
    last_size: Optional[RemoteFileSize] = None
    exit_reported: bool = False


@dataclass(frozen=True)
class StepFailure:
    step: str
    error: Exception


@dataclass
class StopResult:
    serial: str
    local_path: Path
    exit_code: Optional[int] = None
    size: Optional[int] = None
    failures: list[StepFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def retrieved(self) -> bool:
        return self.size is not None


class CaptureSessionController:
    """Drives ``Idle -> Starting -> Capturing -> Stopping -> Idle``.

    The state, the current session and every size query are guarded by one
    lock, so a stop never terminates the capture while a query is running.
    Events are delivered to ``on_event`` outside the lock.
    """

    def __init__(
        self,
        adb: AdbController,
        *,
        poll_interval_s: float = 2.0,
        on_event: Optional[EventCallback] = None,
        keep_remote_on_failed_pull: bool = False,
    ) -> None:
        self._adb = adb
        self._poll_interval_s = poll_interval_s
        self._on_event = on_event
        self._keep_remote_on_failed_pull = keep_remote_on_failed_pull
        self._lock = threading.Lock()
        self._state = SessionState.IDLE
        self._session: Optional[CaptureSession] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    def _emit(self, kind: EventKind, message: str, **details: Any) -> None:
        if kind is EventKind.ERROR:
            logger.error(message)
        elif kind is EventKind.OUTPUT:
            logger.debug(message)
        else:
            logger.info(message)
        if self._on_event is None:
            return
        try:
            self._on_event(CaptureEvent(kind=kind, message=message, **details))
        except Exception:
            logger.exception("Event callback failed for %r", message)

    def list_devices(self) -> list[str]:
        try:
            devices = self._adb.list_devices()
        except (BridgeError, ParseError) as exc:
            self._emit(EventKind.ERROR, f"Error refreshing devices: {exc}", error=exc)
            raise
        self._emit(EventKind.INFO, f"Found {len(devices)} device(s): {', '.join(devices) or 'none'}")
        return devices

    def start(self, serial: str, options: CaptureOptions) -> CaptureSession:
        with self._lock:
            if self._state is not SessionState.IDLE:
                raise InvalidSessionState(f"Cannot start a capture while {self._state.value}")
            self._state = SessionState.STARTING

        try:
            try:
                self._adb.prepare_remote_directory(serial)
            except CommandError as exc:
                logger.warning("Could not create remote capture directory: %s", exc)
            process = self._adb.start_remote_capture(serial, options, on_output=self._on_capture_output)
        except Exception as exc:
            with self._lock:
                self._state = SessionState.IDLE
            self._emit(EventKind.ERROR, f"Error starting capture: {exc}", error=exc)
            raise

        session = CaptureSession(
            serial=serial,
            options=options,
            process=process,
            remote_path=self._adb.target.path,
        )
        session.poller = threading.Thread(
            target=self._poll_size, args=(session,), name=f"size-poll-{serial}", daemon=True
        )
        with self._lock:
            self._session = session
            self._state = SessionState.CAPTURING
        self._emit(EventKind.INFO, f"Capture started on {serial}: {' '.join(process.args)}")
        session.poller.start()
        return session

    def _on_capture_output(self, stream: str, line: str) -> None:
        prefix = "Output" if stream == "stdout" else "Error"
        self._emit(EventKind.OUTPUT, f"{prefix}: {line}")

    def _poll_size(self, session: CaptureSession) -> None:
        while not session.stop_event.is_set():
            error: Optional[BridgeError] = None
            size: Optional[RemoteFileSize] = None
            with self._lock:
                if self._state is not SessionState.CAPTURING or self._session is not session:
                    break
                try:
                    size = self._adb.get_remote_capture_file_size(session.serial)
                except BridgeError as exc:
                    error = exc
                exit_code = session.process.returncode
                report_exit = exit_code is not None and not session.exit_reported
                if report_exit:
                    session.exit_reported = True

            if error is not None:
                self._emit(EventKind.ERROR, f"Error monitoring size: {error}", error=error)
            else:
                session.last_size = size
                self._emit(EventKind.SIZE, f"Current capture size: {size}", size=size)
            if report_exit:
                self._emit(EventKind.ERROR, f"Capture process exited unexpectedly with code {exit_code}")

            if session.stop_event.wait(self._poll_interval_s):
                break

    def stop(self, local_path: Path) -> StopResult:
        """Stop the capture, pull the file to *local_path* and clean up.

        An existing directory receives the file under the remote file name.

        Every step runs even if an earlier one failed; failures are collected
        on the returned :class:`StopResult`.
        """

        with self._lock:
            if self._state is not SessionState.CAPTURING or self._session is None:
                raise InvalidSessionState(f"Cannot stop a capture while {self._state.value}")
            self._state = SessionState.STOPPING
            session = self._session
            session.stop_event.set()

        local_path = Path(local_path)
        if local_path.is_dir():
            local_path = local_path / self._adb.target.filename
        result = StopResult(serial=session.serial, local_path=local_path)
        try:
            if session.poller is not None and session.poller is not threading.current_thread():
                session.poller.join()
            result.exit_code = self._run_step(result, "stop", self._adb.stop_remote_capture, session.process)
            result.size = self._run_step(result, "pull", self._retrieve, session.serial, result.local_path)
            if result.size is None and self._keep_remote_on_failed_pull:
                self._emit(EventKind.INFO, f"Keeping {session.remote_path} on device after failed pull")
            else:
                self._run_step(result, "remove", self._adb.remove_remote_capture_file, session.serial)
        finally:
            with self._lock:
                self._session = None
                self._state = SessionState.IDLE

        if result.ok:
            self._emit(EventKind.INFO, f"Capture stopped and saved to {result.local_path} ({result.size} bytes)")
        else:
            steps = ", ".join(failure.step for failure in result.failures)
            self._emit(EventKind.ERROR, f"Capture stopped with failed steps: {steps}")
        return result

    def _retrieve(self, serial: str, local_path: Path) -> int:
        self._adb.pull_capture_file(serial, local_path)
        if not local_path.is_file():
            raise RetrievalIncomplete(local_path, "missing")
        size = local_path.stat().st_size
        if size == 0:
            raise RetrievalIncomplete(local_path, "empty")
        return size

    def _run_step(self, result: StopResult, step: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return func(*args)
        except (BridgeError, RetrievalIncomplete, OSError) as exc:
            result.failures.append(StepFailure(step, exc))
            self._emit(EventKind.ERROR, f"Error during {step}: {exc}", error=exc)
            return None
