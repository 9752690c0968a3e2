"""Memory pipeline daemon.

Runs the background side of the pipeline: drains the grouping backlog,
closes idle sessions, expires suggestions, runs habit detection and
scheduled summaries, and optionally serves the JSON API.

Example:
    $ python -m recall.daemon --web
    $ python -m recall.daemon --once --ingest payloads.jsonl
"""

import argparse
import json
import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from .config import ConfigManager
from .errors import MigrationError, RecallError
from .pipeline import PipelineContext, build_context

logger = logging.getLogger(__name__)


class MemoryDaemon:
    """Owns the pipeline context and its threads for one process.

    Attributes:
        context: PipelineContext
        running: False once a shutdown signal arrives
    """

    def __init__(self, context: PipelineContext, enable_web: bool = False,
                 web_host: Optional[str] = None, web_port: Optional[int] = None):
        self.context = context
        self.enable_web = enable_web
        web = context.config.config.web
        self.web_host = web_host or web.host
        self.web_port = web_port or web.port
        self.running = True
        self.web_thread: Optional[threading.Thread] = None

        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.running = False

    def _start_web_server(self):
        from web.app import create_app

        app = create_app(self.context)
        logger.info(f"Starting web server on http://{self.web_host}:{self.web_port}")
        app.run(host=self.web_host, port=self.web_port, debug=False, use_reloader=False)

    def ingest_file(self, path: Path) -> int:
        """Ingest analysis payloads from a JSON list or a JSON-lines file."""
        text = path.read_text()
        stripped = text.lstrip()
        if stripped.startswith('['):
            payloads = json.loads(stripped)
        else:
            payloads = [json.loads(line) for line in text.splitlines() if line.strip()]

        count = 0
        for payload in payloads:
            try:
                self.context.ingest.ingest(payload)
                count += 1
            except RecallError as e:
                logger.warning(f"Skipping payload from {path}: {e}")
        logger.info(f"Ingested {count} analyses from {path}")
        return count

    def run_once(self):
        """Single maintenance pass, with suggestion events handled inline."""
        self.context.ingest.drain()
        self.context.interval.run_once()
        self.context.suggestions.process_pending_events()

    def run(self):
        """Start the background threads and block until a shutdown signal."""
        logger.info("Memory daemon starting...")
        self.context.start()

        if self.enable_web:
            self.web_thread = threading.Thread(target=self._start_web_server, daemon=True)
            self.web_thread.start()

        while self.running:
            time.sleep(1)

        logger.info("Shutting down...")
        self.context.stop()
        logger.info("Memory daemon stopped")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Activity memory pipeline daemon")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("--web", action="store_true", help="Serve the JSON API")
    parser.add_argument("--web-host", help="Web server host (default: from config)")
    parser.add_argument("--web-port", type=int, help="Web server port (default: from config)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    parser.add_argument("--ingest", type=Path, help="Ingest analysis payloads from a JSON/JSONL file")
    parser.add_argument("--once", action="store_true",
                        help="Run one maintenance pass and exit instead of running continuously")
    parser.add_argument("--init-config", action="store_true",
                        help="Write a config file with default values and exit")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    config = ConfigManager(args.config)
    if args.init_config:
        config.create_default_file()
        return 0

    try:
        context = build_context(config)
    except MigrationError as e:
        logger.error(f"Database migration failed, not starting: {e}")
        return 1

    daemon = MemoryDaemon(context, enable_web=args.web, web_host=args.web_host,
                          web_port=args.web_port)
    if args.ingest:
        daemon.ingest_file(args.ingest)
    if args.once:
        daemon.run_once()
        return 0

    daemon.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
