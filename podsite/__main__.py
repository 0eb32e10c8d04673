"""Command-line interface for the PodSite package."""

import sys
import argparse
import json
from typing import List

from .config import load_config
from .logging import configure_logging, get_logger
from .run_service import build_web_server, run_web_service
from .services.notifier import EmailNotConfiguredError, Notifier, create_email_client
from .services.store import StoreError, create_store
from .models import ValidationError

logger = get_logger(__name__)

def parse_args(args: List[str]) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="PodSite - Podcast site content manager."
    )

    # Create subparsers for different modes
    subparsers = parser.add_subparsers(dest="mode", help="Operation mode")

    serve_parser = subparsers.add_parser("serve", help="Run the web service")
    serve_parser.add_argument("--web-host", default=None, help="Web server host")
    serve_parser.add_argument("--web-port", type=int, default=None, help="Web server port")
    serve_parser.add_argument("--seed", default=None, help="Seed file for the in-memory store")

    broadcast_parser = subparsers.add_parser("broadcast", help="Email every subscriber with notifications on")
    broadcast_parser.add_argument("subject", help="Email subject")
    broadcast_parser.add_argument("message", help="Plain text message body")

    notify_parser = subparsers.add_parser("notify", help="Announce a new episode to subscribers")
    notify_parser.add_argument("title", help="Episode title")
    notify_parser.add_argument("--summary", default=None, help="Episode summary")
    notify_parser.add_argument("--episode-id", default=None, help="Episode ID for the listen link")

    health_parser = subparsers.add_parser("health", help="Print the notification system health report")

    # Shared options
    for sub in (serve_parser, broadcast_parser, notify_parser, health_parser):
        sub.add_argument("-c", "--config", default="config.yaml", help="Path to configuration file")

    # Debug flag for all modes
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )

    # If no arguments are provided, show help and exit
    if not args:
        parser.print_help()
        sys.exit(1)

    parsed_args = parser.parse_args(args)

    # If no mode is specified, default to help
    if not parsed_args.mode:
        parser.print_help()
        sys.exit(1)

    return parsed_args

def main(args: List[str] = None) -> int:
    """Main entry point for the command-line interface."""
    if args is None:
        args = sys.argv[1:]

    try:
        parsed_args = parse_args(args)

        config = load_config(parsed_args.config)

        if parsed_args.debug:
            config.log_level = "DEBUG"
        configure_logging(config.log_level)

        if parsed_args.mode == "serve":
            if parsed_args.web_host:
                config.web_server.host = parsed_args.web_host
            if parsed_args.web_port:
                config.web_server.port = parsed_args.web_port
            if parsed_args.seed:
                config.store.seed_path = parsed_args.seed
            return run_web_service(config)

        if parsed_args.mode == "health":
            web_server = build_web_server(config)
            status, report = web_server.health()
            print(json.dumps(report, indent=2))
            return 0 if status == 200 else 1

        config.validate()
        store = create_store(config.store)
        notifier = Notifier(store, create_email_client(config.email), config)

        if parsed_args.mode == "broadcast":
            result = notifier.broadcast(parsed_args.subject, parsed_args.message)
        else:
            result = notifier.notify_new_episode(parsed_args.title, parsed_args.summary,
                                                 parsed_args.episode_id)

        print(json.dumps(result.to_dict(), indent=2))
        return 0 if result.success else 1

    except (ValidationError, EmailNotConfiguredError) as e:
        logger.error("command_rejected", error=str(e))
        return 2

    except StoreError as e:
        logger.error("store_failed", error=str(e))
        return 1

    except KeyboardInterrupt:
        logger.warning("interrupted")
        return 130

    except Exception as e:
        logger.error("command_failed", error=str(e))
        return 1

if __name__ == "__main__":
    sys.exit(main())
