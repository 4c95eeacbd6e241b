"""
mqtt-capture entrypoint.

CLI:
  mqtt-capture [--config config.yaml] [--duration 10] [--output output-<n>.json] [--log-level INFO]

Connects to the broker from the config file, captures messages for the given
number of seconds, writes them to the output file and prints a summary table.
"""

from __future__ import annotations

import argparse
import logging
import random
import signal
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Optional

from mqtt_capture.config import DEFAULT_CONFIG_PATH, load_config_or_default
from mqtt_capture.log_config import configure_logging
from mqtt_capture.mqtt_client import CaptureError, ConnectError, SubscribeError
from mqtt_capture.output import OutputWriteError
from mqtt_capture.report import render_table, summary_rows
from mqtt_capture.session import DEFAULT_DURATION_S, SessionController

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def get_version_string() -> str:
    try:
        return pkg_version("mqtt-capture")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _positive_int(raw: str) -> int:
    try:
        v = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an integer: {raw!r}") from exc
    if v <= 0:
        raise argparse.ArgumentTypeError("must be > 0")
    return v


def _install_signal_handlers(controller: SessionController) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; stopping capture", signum)
        controller.stop()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mqtt-capture",
        description="Capture MQTT messages for a fixed duration and report throughput.",
    )
    p.add_argument("--version", action="version", version=get_version_string())
    p.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        metavar="PATH",
        help=f"YAML config file (default: {DEFAULT_CONFIG_PATH}; built-in defaults if missing or invalid)",
    )
    p.add_argument(
        "--duration",
        type=_positive_int,
        default=DEFAULT_DURATION_S,
        metavar="SECONDS",
        help=f"Capture duration in seconds (default: {DEFAULT_DURATION_S})",
    )
    p.add_argument(
        "--output",
        default=None,
        metavar="PATH",
        help="Output JSON file (default: output-<random>.json)",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Log level name or number (default: MQTT_CAPTURE_LOG_LEVEL env or INFO)",
    )
    return p


def run_capture_session(args: argparse.Namespace) -> int:
    """
    Run one capture session from parsed CLI args. Returns process exit code.
    """
    cfg = load_config_or_default(args.config)

    controller = SessionController(
        cfg,
        duration_s=args.duration,
        output_path=args.output,
        log=logging.getLogger("mqtt_capture.session"),
        rng=random.Random(),
    )
    _install_signal_handlers(controller)

    logger.info("Connecting to the MQTT server at '%s'", cfg.hostname)
    try:
        result = controller.run()
    except (ConnectError, SubscribeError, OutputWriteError) as exc:
        logger.error("%s", exc)
        return EXIT_FAILURE
    except CaptureError as exc:
        logger.error("Capture failed: %s", exc)
        return EXIT_INTERRUPTED if controller.cancel.is_set() else EXIT_FAILURE

    if controller.cancel.is_set() and result.capture.stats.message_count == 0:
        logger.warning("Interrupted before any messages were captured")
        return EXIT_INTERRUPTED

    rows = summary_rows(
        len(result.topics),
        result.capture.stats,
        result.capture.elapsed_whole_s,
        result.throughput,
    )
    print(render_table(rows))
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    raise SystemExit(run_capture_session(args))


if __name__ == "__main__":
    main()
