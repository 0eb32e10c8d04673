"""Run the PodSite web service.

Usage:
  python -m podsite.run_service [--config config.yaml] [--web-host HOST] [--web-port PORT]
"""

import argparse
import signal
import sys
import time

from .config import Config, load_config
from .logging import configure_logging, get_logger
from .services.auth import create_auth_provider
from .services.message_broker import InMemoryMessageBroker
from .services.notifier import Notifier, create_email_client
from .services.rate_limiter import RateLimiter, reset_default_limiter
from .services.store import create_store
from .services.web_server import WebServer

logger = get_logger(__name__)

def parse_args(args=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Run the PodSite web service")

    # Web server settings
    parser.add_argument("--web-host", default=None, help="Web server host")
    parser.add_argument("--web-port", type=int, default=None, help="Web server port")

    # Store settings
    parser.add_argument("--seed", default=None, help="Seed file for the in-memory store")

    # Configuration
    parser.add_argument("--config", default=None, help="Path to configuration file")
    parser.add_argument("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")

    return parser.parse_args(args)

def build_web_server(config: Config) -> WebServer:
    """Wire the store, broker, notifier and auth provider into a web server."""
    config.validate()

    # One limiter per process, shared by every request handler thread
    limiter = RateLimiter(max_keys=config.rate_limit.max_keys)
    reset_default_limiter(limiter)

    message_broker = InMemoryMessageBroker()
    store = create_store(config.store)
    notifier = Notifier(store, create_email_client(config.email), config)
    notifier.subscribe_to(message_broker)

    return WebServer(
        config=config,
        message_broker=message_broker,
        store=store,
        auth_provider=create_auth_provider(config.auth, config.store),
        notifier=notifier,
        rate_limiter=limiter,
    )

def run_web_service(config: Config) -> int:
    """Start the web service and block until a shutdown signal arrives."""
    web_server = build_web_server(config)
    web_server.message_broker.start()
    web_server.start()

    shutdown_requested = False

    def signal_handler(sig, frame):
        nonlocal shutdown_requested
        logger.info("shutdown_signal_received", signal=sig)
        shutdown_requested = True

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    # Keep the main thread alive
    try:
        while not shutdown_requested:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")
    finally:
        web_server.stop()
        web_server.message_broker.stop()

    return 0

def main(args=None):
    """Run the web service."""
    parsed_args = parse_args(args)

    # Load configuration
    config = load_config(parsed_args.config)

    # Override configuration with command line arguments
    if parsed_args.log_level:
        config.log_level = parsed_args.log_level
    if parsed_args.web_host:
        config.web_server.host = parsed_args.web_host
    if parsed_args.web_port:
        config.web_server.port = parsed_args.web_port
    if parsed_args.seed:
        config.store.seed_path = parsed_args.seed

    configure_logging(log_level=config.log_level)
    logger.info("starting_web_service", host=config.web_server.host, port=config.web_server.port)
    return run_web_service(config)

if __name__ == "__main__":
    sys.exit(main())
