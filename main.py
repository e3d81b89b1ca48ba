"""
MLCProxy - Forward HTTP/HTTPS Proxy with Traffic Statistics
Main entry point for the application.
"""

import argparse
import sys

import structlog
from dotenv import load_dotenv

from mlcproxy.config import configure_logging, find_config_file, load_settings
from mlcproxy.proxy.server import run_proxy_server
from mlcproxy.version import COPYRIGHT, get_version_info

# Load environment variables
load_dotenv(".env.local")

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="MLCProxy - Forward HTTP/HTTPS Proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                          # Use config.ini if found, else env
  python main.py --port 8888              # Override the listening port
  python main.py --config /etc/mlcproxy/config.ini
  python main.py --version
        """,
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (overrides configuration, default: 3128)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.ini (default: search ., .. and ../..)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=None,
        help="Log level (overrides configuration, default: info)",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version information and exit",
    )
    return parser


def main(argv=None):
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.version:
        print(f"MLCProxy {get_version_info()}")
        print(COPYRIGHT)
        return

    config_path = args.config or find_config_file()
    try:
        settings = load_settings(config_path)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    if args.port is not None:
        settings.server.port = args.port
    if args.log_level is not None:
        settings.server.log_level = args.log_level.upper()

    configure_logging(settings.server.log_level)

    logger.info(
        "starting_mlcproxy",
        version=get_version_info(),
        config_file=str(config_path) if config_path else None,
        port=settings.server.port,
    )

    run_proxy_server(settings)


if __name__ == "__main__":
    main()
