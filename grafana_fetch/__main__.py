"""Entry point for python -m grafana_fetch."""

import argparse
import os
import signal
import sys

import uvicorn
from loguru import logger
from pydantic import ValidationError

from .api import configure_logging, create_app
from .config import CONFIG_ENV_VAR, SettingsProvider, load_settings
from .exceptions import ConfigurationError
from .fetch import create_ssl_context


def create_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="grafana-fetch",
        description="A tool to fetch, cache and serve rendered images from Grafana",
    )
    parser.add_argument("--config", help="config file (default is $HOME/grafana-fetch.yaml)")
    parser.add_argument(
        "-k",
        "--insecure",
        action="store_true",
        default=None,
        help="allow insecure SSL connections",
    )
    parser.add_argument("--cafile", help="CA file")

    subparsers = parser.add_subparsers(dest="command", required=True)

    server_parser = subparsers.add_parser("server", help="Serve rendered Grafana images")
    server_parser.add_argument("--listen", help="listen address (default :8080)")
    server_parser.add_argument("--url", help="grafana base url (default http://grafana:3000)")
    server_parser.add_argument("--cache", help="cache directory")

    return parser


def run_server(args: argparse.Namespace) -> int:
    """Load settings and serve until interrupted."""
    if args.config:
        os.environ[CONFIG_ENV_VAR] = args.config

    overrides = {
        "insecure": args.insecure,
        "cafile": args.cafile,
        "listen": args.listen,
        "url": args.url,
        "cache": args.cache,
    }

    try:
        settings = load_settings(**overrides)
        # Fail before serving if the CA file is unusable
        create_ssl_context(settings.insecure, settings.cafile)
    except (ValidationError, ConfigurationError) as e:
        logger.error("could not load configuration", error=str(e))
        return 1

    configure_logging(settings)
    provider = SettingsProvider(settings, overrides)

    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, lambda signum, frame: provider.reload())

    uvicorn.run(
        create_app(provider),
        host=settings.listen_host,
        port=settings.listen_port,
        log_level=settings.log_level.lower(),
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the command line interface."""
    args = create_parser().parse_args(argv)

    if args.command == "server":
        return run_server(args)
    return 2


if __name__ == "__main__":
    sys.exit(main())
