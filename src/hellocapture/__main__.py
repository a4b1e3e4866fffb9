"""
=============================================================================
CAPTURE SERVER CLI ENTRY POINT
=============================================================================

    # Run with defaults (0.0.0.0:60443, 15 second idle timeout)
    python -m hellocapture

    # Custom address, Go-style or split
    python -m hellocapture --addr :8443
    python -m hellocapture --host 127.0.0.1 --port 8443

    # Shorter idle timeout, JSON records
    python -m hellocapture --timeout 5 --log-format json

Exit status:
    0   Shut down after every connection finished
    1   The listener could not be started
    2   Invalid arguments

=============================================================================
"""

import argparse
import logging
import sys

from . import __version__
from .server import CaptureServer
from .config import CaptureConfig, LOG_FORMATS, LOG_LEVELS, parse_listen_address


def setup_logging(level_name: str):
    """Configure root logging once for the process."""
    level = getattr(logging, level_name.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    logging.getLogger("hellocapture").setLevel(level)


def build_parser(defaults: CaptureConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hellocapture",
        description="Passive TCP listener that records the first bytes clients send",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m hellocapture                        # Listen on 0.0.0.0:60443
  python -m hellocapture --addr :8443           # Custom port, all interfaces
  python -m hellocapture --timeout 5            # 5 second idle timeout
  python -m hellocapture --log-format json      # JSON capture records
        """
    )

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--host", "-H",
        default=defaults.host,
        help=f"Host to bind to (default: {defaults.host})"
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=defaults.port,
        help=f"Port to listen on (default: {defaults.port})"
    )

    parser.add_argument(
        "--addr", "-a",
        help="Address and port to listen on as HOST:PORT, overrides --host/--port (e.g. :60443)"
    )

    parser.add_argument(
        "--timeout", "-t",
        type=float,
        default=defaults.read_timeout,
        help=f"Idle read timeout in seconds (default: {defaults.read_timeout:g})"
    )

    parser.add_argument(
        "--buffer-size",
        type=int,
        default=defaults.buffer_size,
        help=f"Bytes requested per read (default: {defaults.buffer_size})"
    )

    parser.add_argument(
        "--backlog",
        type=int,
        default=defaults.backlog,
        help=f"Listen backlog (default: {defaults.backlog})"
    )

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--log-level", "-l",
        type=str.upper,
        choices=list(LOG_LEVELS),
        default=defaults.log_level.upper(),
        help=f"Logging level (default: {defaults.log_level.upper()})"
    )

    parser.add_argument(
        "--log-format",
        choices=list(LOG_FORMATS),
        default=defaults.log_format,
        help=f"Capture record format (default: {defaults.log_format})"
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"hellocapture {__version__}"
    )

    return parser


def main(argv=None) -> int:
    """
    Main CLI entry point.

    Returns:
        Process exit status.
    """
    try:
        defaults = CaptureConfig.from_env()
    except ValueError as e:
        build_parser(CaptureConfig()).error(f"Invalid environment configuration: {e}")

    parser = build_parser(defaults)
    args = parser.parse_args(argv)

    config = CaptureConfig(
        host=args.host,
        port=args.port,
        read_timeout=args.timeout,
        buffer_size=args.buffer_size,
        backlog=args.backlog,
        log_level=args.log_level,
        log_format=args.log_format,
    )

    try:
        if args.addr:
            config.host, config.port = parse_listen_address(args.addr)
        config.validate()
    except ValueError as e:
        parser.error(str(e))

    setup_logging(config.log_level)

    server = CaptureServer(config)
    try:
        server.run()
    except OSError:
        # Already logged by the listener
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
