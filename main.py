#!/usr/bin/env python3
"""Bauflex Diagnostics: Entry Point."""

import argparse
import atexit
import logging
import os
import sys

from bauflex_diagnostics.app import create_app
from bauflex_diagnostics.config import Config
from bauflex_diagnostics.monitoring import Monitoring

logger = logging.getLogger(__name__)


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bauflex diagnostic collector")
    parser.add_argument(
        "--config", default=os.environ.get("CONFIG_PATH"),
        help="Path to YAML config file (default: $CONFIG_PATH)",
    )
    parser.add_argument("--host", default=None, help="Bind address (overrides server.host)")
    parser.add_argument("--port", type=int, default=None, help="Port (overrides server.port)")
    return parser


def build_app(config_path=None):
    """Build a started Monitoring plus its Flask app.

    For gunicorn: `gunicorn 'main:build_app()'`
    """
    monitoring = Monitoring(Config(config_path or os.environ.get("CONFIG_PATH")))
    monitoring.start()
    atexit.register(monitoring.stop)
    return create_app(monitoring=monitoring)


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [DIAGNOSTIC] %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    args = build_cli_parser().parse_args()
    config = Config(args.config)
    server = config["server"]
    host = args.host or server["host"]
    port = args.port or server["port"]

    monitoring = Monitoring(config)
    app = create_app(monitoring=monitoring)
    monitoring.start()
    logger.info("Diagnostic collector listening on %s:%d", host, port)
    try:
        app.run(host=host, port=port, debug=server["debug"], use_reloader=False)
    finally:
        monitoring.stop()


if __name__ == "__main__":
    main()
