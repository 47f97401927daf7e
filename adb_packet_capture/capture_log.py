"""Append-only plain-text log of capture activity."""
from __future__ import annotations

import logging
from pathlib import Path

PACKAGE_LOGGER = "adb_packet_capture"


class CaptureLogHandler(logging.Handler):
    """Appends one ``<timestamp>: <message>`` line per record to *path*.

    The file is opened per record and never read back. Failures to format or
    write a record are dropped so that logging cannot interrupt a capture.
    """

    def __init__(self, path: Path, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.path = Path(path)
        self.setFormatter(logging.Formatter("%(asctime)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except Exception:
            self.handleError(record)

    def handleError(self, record: logging.LogRecord) -> None:
        pass


def attach_capture_log(path: Path, level: int = logging.INFO) -> CaptureLogHandler:
    """Install a :class:`CaptureLogHandler` on the package logger."""

    handler = CaptureLogHandler(path, level)
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.addHandler(handler)
    if package_logger.getEffectiveLevel() > level:
        package_logger.setLevel(level)
    return handler


def detach_capture_log(handler: CaptureLogHandler) -> None:
    logging.getLogger(PACKAGE_LOGGER).removeHandler(handler)
    handler.close()
