#!/usr/bin/env python3
"""
Worker Manager - Entry point.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import argparse
import asyncio
import logging
import signal
import sys
import threading
from http.server import HTTPServer

from .config import load_config
from .log import setup_logging
from .manager import ProcessManager
from .web_handler import WebHandler

logger = logging.getLogger("worker_manager")

DISCONNECT_TIMEOUT_SECONDS = 10


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="worker-manager",
                                     description="Supervise worker processes and collect their result files.")
    parser.add_argument("--config", help="Path to the YAML config file (default: $WORKER_MANAGER_CONFIG "
                                         "or worker_manager.yaml)")
    parser.add_argument("--host", help="API host to bind")
    parser.add_argument("--port", type=int, help="API port to bind")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    options = load_config(args.config)
    if args.host:
        options.api_host = args.host
    if args.port:
        options.api_port = args.port

    setup_logging(args.log_level or options.log_level, options.log_dir / "worker_manager.log",
                  options.max_log_size_mb)

    loop = asyncio.new_event_loop()
    loop_thread = threading.Thread(target=loop.run_forever, name="worker-manager-loop", daemon=True)
    loop_thread.start()

    manager = ProcessManager(options)
    WebHandler.manager = manager
    WebHandler.loop = loop
    asyncio.run_coroutine_threadsafe(manager.init(), loop).result()

    def shutdown():
        try:
            asyncio.run_coroutine_threadsafe(manager.disconnect(), loop).result(DISCONNECT_TIMEOUT_SECONDS)
        except Exception:
            logger.exception("Error during shutdown")
        loop.call_soon_threadsafe(loop.stop)

    def signal_handler(sig, frame):
        logger.info("Received signal %s, shutting down", signal.Signals(sig).name)
        shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    server = HTTPServer((options.api_host, options.api_port), WebHandler)
    logger.info("Worker Manager started")
    logger.info("API available at http://%s:%s", options.api_host, options.api_port)
    logger.info("Scripts directory: %s", options.scripts_directory)
    logger.info("Results directory: %s", options.output_directory)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        shutdown()
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
