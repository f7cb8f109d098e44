"""
Command-line entry point: ``oplog-sync [--config PATH] [--import] [--forever | --no-forever]``.
"""

import argparse
import logging
import signal
import sys
from typing import List, Optional

from prometheus_client import start_http_server
from sqlalchemy.exc import ArgumentError

from .errors import SyncError
from .settings import DEFAULT_CONFIG_PATH, load_settings
from .sync.orchestrator import SyncOrchestrator
from .utils.logging import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oplog-sync",
        description="Replicate MongoDB collections into a relational database by tailing the oplog"
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to the JSON config file"
    )
    parser.add_argument(
        "--import",
        dest="import_first",
        action="store_true",
        help="Recreate target tables and copy every collection before tailing"
    )
    parser.add_argument(
        "--forever",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Reopen the tail session whenever it ends"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except (OSError, ValueError) as e:
        configure_logging()
        logger.error(f"Cannot load config {args.config}: {e}", extra={"config": args.config})
        sys.exit(1)

    configure_logging(settings.log_level, settings.log_json)

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info(f"Metrics exposed on port {settings.metrics_port}")

    try:
        orchestrator = SyncOrchestrator(settings, cli_mode=True)
    except (SyncError, ValueError, ArgumentError) as e:
        logger.error(f"Invalid configuration: {e}", extra={"config": args.config})
        sys.exit(1)

    def signal_handler(signum, frame):
        logger.info(f"Received shutdown signal {signum}")
        orchestrator.request_stop()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    if args.import_first:
        orchestrator.import_and_start(forever=args.forever)
    else:
        orchestrator.start(forever=args.forever)


if __name__ == "__main__":
    main()
