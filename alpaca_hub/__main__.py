"""
Main entry point for Alpaca Hub.

Usage:
    python -m alpaca_hub [--config CONFIG_PATH]
"""

import argparse
import logging
import signal
import sys

import uvicorn

from alpaca_hub import __version__
from alpaca_hub.api.app import create_app
from alpaca_hub.config.loader import ConfigurationError, load_config
from alpaca_hub.hub import Hub
from alpaca_hub.utils.logging_setup import setup_logging


logger = logging.getLogger(__name__)


# Global resources for cleanup
hub = None


def signal_handler(signum, frame):
    """Handle shutdown signals (SIGINT, SIGTERM)."""
    logger.info(f"Received signal {signum}, shutting down...")
    if hub:
        hub.shutdown()
    sys.exit(0)


def main():
    """Main application entry point."""
    global hub

    parser = argparse.ArgumentParser(description="Alpaca Hub ASCOM Alpaca server")
    parser.add_argument(
        "--config",
        type=str,
        default="config.json",
        help="Path to configuration file (default: config.json)"
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.logging)

    logger.info("=" * 60)
    logger.info(f"Alpaca Hub v{__version__}")
    logger.info("=" * 60)

    try:
        hub = Hub(config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if not hub.devices:
        logger.warning("No devices configured; only the management API will answer")

    app = create_app(config, hub)
    hub.start()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(f"Starting Alpaca API server on {config.server.ip}:{config.server.port}")
    logger.info("Press Ctrl+C to stop")

    try:
        uvicorn.run(
            app,
            host=config.server.ip,
            port=config.server.port,
            log_level=config.logging.level.lower(),
            access_log=False  # Disable noisy HTTP access logs
        )
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.error(f"Server error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        hub.shutdown()
        logger.info("Shutdown complete")


if __name__ == "__main__":
    main()
