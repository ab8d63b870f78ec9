#!/usr/bin/env python
"""Main entry point for the Tangle notes MCP server."""
import argparse
import atexit
import logging
import os
import sys
from pathlib import Path

from tangle_notes.config import VALID_BACKENDS, config
from tangle_notes.exceptions import TangleError
from tangle_notes.observability import configure_logging, metrics
from tangle_notes.server.mcp_server import TangleMcpServer
from tangle_notes.services.note_store import NoteStore


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Tangle Notes MCP Server")
    parser.add_argument(
        "--backend",
        help="Storage backend",
        choices=VALID_BACKENDS,
        default=None,
    )
    parser.add_argument(
        "--json-path",
        help="JSON document path (json backend)",
        type=str,
        default=None,
    )
    parser.add_argument(
        "--database-path",
        help="SQLite database file path (sql backend)",
        type=str,
        default=None,
    )
    parser.add_argument(
        "--fork-window",
        help="Seconds a note must sit untouched before an update forks it (0 disables)",
        type=float,
        default=None,
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("TANGLE_LOG_LEVEL", "INFO")
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.backend:
        config.backend = args.backend
    if args.json_path:
        config.json_path = Path(args.json_path)
    if args.database_path:
        config.database_path = Path(args.database_path)
    if args.fork_window is not None:
        config.fork_window_seconds = args.fork_window


def _save_metrics_on_exit():
    """Save metrics to disk on server shutdown."""
    try:
        if metrics.save_metrics():
            logging.getLogger(__name__).info("Metrics saved to disk on shutdown")
    except Exception as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on shutdown: {e}")


def main(argv=None):
    """Run the Tangle notes MCP server."""
    args = parse_args(argv)
    update_config(args)

    # Configure logging (console + persistent file logging with rotation)
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(log_dir=config.log_dir, level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    if config.metrics_enabled:
        atexit.register(_save_metrics_on_exit)

    try:
        store = NoteStore.from_config(config)
        logger.info(f"Using {config.backend} backend ({store.backend.describe()})")
        store.open()
    except TangleError as e:
        logger.error(f"Failed to open note store: {e}")
        sys.exit(1)
    atexit.register(store.close)

    try:
        logger.info("Starting Tangle MCP server")
        server = TangleMcpServer(store=store)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
