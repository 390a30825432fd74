"""
=============================================================================
HELLOSERVER CLI ENTRY POINT
=============================================================================

    # Run with defaults (all interfaces, port 8080)
    python -m helloserver

    # Localhost only, another port
    python -m helloserver --addr 127.0.0.1:3000

    # Log to a rotated file instead of stderr
    LOG_FILE_LOCATION=/var/log/app/app.log python -m helloserver

=============================================================================
EXIT STATUS
=============================================================================

    0   Shut down after SIGINT/SIGTERM
    1   Could not bind the address, or the listener died
    2   Bad command-line arguments or configuration

=============================================================================
"""

import argparse
import sys

from . import __version__
from .config import LOG_LEVELS, ServerConfig
from .lifecycle import Lifecycle, ListenerError
from .server import BindError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="helloserver",
        description="Minimal HTTP greeting server with graceful shutdown",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
  LOG_FILE_LOCATION   Write logs to this file, rotated (default: stderr)
  LOG_LEVEL           Logging level (default: INFO)

Examples:
  python -m helloserver                          # Listen on :8080
  python -m helloserver --addr 127.0.0.1:3000    # Localhost, port 3000
        """
    )

    parser.add_argument(
        "--addr", "-a",
        default=None,
        help="Address to listen on as host:port (default: :8080, all interfaces)"
    )

    parser.add_argument(
        "--log-level", "-l",
        type=str.upper,
        choices=LOG_LEVELS,
        default=None,
        help="Logging level (default: $LOG_LEVEL or INFO)"
    )

    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=None,
        help="Seconds to let in-flight requests finish on shutdown (default: 10)"
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"helloserver {__version__}"
    )

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Environment first, then CLI flags on top
    config = ServerConfig.from_env()
    if args.addr is not None:
        config.addr = args.addr
    if args.log_level is not None:
        config.log.level = args.log_level
    if args.shutdown_timeout is not None:
        config.shutdown_timeout = args.shutdown_timeout

    try:
        lifecycle = Lifecycle(config)
    except ValueError as e:
        parser.error(str(e))

    try:
        return lifecycle.run()
    except (BindError, ListenerError):
        # Already logged at CRITICAL by the lifecycle
        return 1


if __name__ == "__main__":
    sys.exit(main())
