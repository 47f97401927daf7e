"""Command-line entry point for capturing packets on an Android device."""
from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

from adb_packet_capture import (
    AdbController,
    AppConfig,
    BridgeError,
    CaptureEvent,
    CaptureOptions,
    CaptureSessionController,
    ParseError,
    attach_capture_log,
)
from adb_packet_capture.capture_log import detach_capture_log

logger = logging.getLogger("adb_packet_capture.cli")


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Capture packets on an Android device with tcpdump")
    parser.add_argument(
        "--config",
        type=Path,
        help="Optional JSON or YAML configuration file",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Append-only capture log (defaults to the configured log_file)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Console logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("devices", help="List connected devices")

    capture = commands.add_parser("capture", help="Run a capture and pull the result")
    capture.add_argument("--serial", help="Device serial; required when several are connected")
    capture.add_argument("--interface", help="Capture interface (default from config, 'any')")
    capture.add_argument("--filter", dest="filter_expression", help="tcpdump filter expression")
    capture.add_argument(
        "--allow-shell-syntax",
        action="store_true",
        help="Pass shell syntax and file or command tcpdump options (-w, -z, ...) through unchecked",
    )
    capture.add_argument(
        "--output",
        type=Path,
        help="Local file or directory for the pulled capture",
    )
    capture.add_argument(
        "--duration",
        type=float,
        help="Seconds to capture before stopping; otherwise stop with Ctrl-C",
    )
    return parser.parse_args(argv)


def _load_config(path: Path | None) -> AppConfig:
    if path is None:
        return AppConfig()
    config = AppConfig.load(path)
    if not config.output_dir.is_absolute():
        config.output_dir = (path.parent / config.output_dir).resolve()
    return config


def _configure_console(level_name: str) -> None:
    level = getattr(logging, level_name)
    console = logging.StreamHandler()
    console.setLevel(level)
    logging.basicConfig(level=level, handlers=[console])


def _print_event(event: CaptureEvent) -> None:
    print(f"{event.timestamp:%H:%M:%S}: {event.message}", flush=True)


def _select_serial(controller: CaptureSessionController, serial: str | None) -> str:
    if serial:
        return serial
    devices = controller.list_devices()
    if not devices:
        raise RuntimeError("No connected devices found")
    if len(devices) > 1:
        raise RuntimeError(
            f"Multiple devices discovered ({', '.join(devices)}). Specify --serial to disambiguate."
        )
    return devices[0]


def _resolve_output(config: AppConfig, output: Path | None) -> Path:
    if output is None:
        return config.default_capture_path()
    if output.is_dir():
        return output / config.default_capture_path().name
    return output


def _wait_for_stop(duration: float | None) -> None:
    try:
        if duration is not None:
            time.sleep(duration)
        else:
            while True:
                time.sleep(1)
    except KeyboardInterrupt:
        print("Stopping capture...", flush=True)


def run_capture(args: argparse.Namespace, config: AppConfig, controller: CaptureSessionController) -> int:
    options = CaptureOptions(
        interface=args.interface or config.interface,
        filter_expression=(
            args.filter_expression if args.filter_expression is not None else config.filter_expression
        ),
        allow_shell_syntax=args.allow_shell_syntax or config.allow_shell_syntax,
    )
    serial = _select_serial(controller, args.serial)
    local_path = _resolve_output(config, args.output)
    controller.start(serial, options)
    _wait_for_stop(args.duration)
    result = controller.stop(local_path)
    for failure in result.failures:
        print(f"{failure.step} failed: {failure.error}", file=sys.stderr)
    return 0 if result.ok else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    _configure_console(args.log_level)
    try:
        config = _load_config(args.config)
    except (OSError, ValueError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    handler = attach_capture_log(args.log_file or config.log_file)
    try:
        return _dispatch(args, config)
    finally:
        detach_capture_log(handler)


def _dispatch(args: argparse.Namespace, config: AppConfig) -> int:
    adb = AdbController(
        adb_path=config.adb_path,
        timeout_s=config.adb_timeout_s,
        pull_timeout_s=config.pull_timeout_s,
        stop_timeout_s=config.stop_timeout_s,
        target=config.remote_target(),
    )
    controller = CaptureSessionController(
        adb,
        poll_interval_s=config.poll_interval_s,
        on_event=_print_event if args.command == "capture" else None,
        keep_remote_on_failed_pull=config.keep_remote_on_failed_pull,
    )

    try:
        if args.command == "devices":
            for serial in controller.list_devices():
                print(serial)
            return 0
        return run_capture(args, config, controller)
    except (RuntimeError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        if not isinstance(exc, (BridgeError, ParseError)):
            logger.error("Error: %s", exc)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
