"""
chunkmerge CLI - Command-line interface for the chunkmerge package.

Provides subcommands:
- chunkmerge start: Start the upload server
- chunkmerge version: Display version information
"""

import argparse
import os
import sys
from pathlib import Path

from loguru import logger

from chunkmerge.config import (
    DEFAULT_EXPIRY_INTERVAL_MINUTES,
    HTTP_PORT,
    get_cors_origins,
    get_default_data_dir,
    get_session_ttl_minutes,
)
from chunkmerge.server import UploadServer


def get_version() -> str:
    """Get the package version."""
    try:
        from importlib.metadata import PackageNotFoundError, version

        return version("chunkmerge")
    except PackageNotFoundError:
        return "0.0.1"


def cmd_version(args):
    """Handle the 'version' subcommand."""
    print(f"chunkmerge version {get_version()}")
    print(f"Python {sys.version}")


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def _resolve_data_dir(args) -> Path:
    if args.data_dir:
        return Path(args.data_dir).expanduser().resolve()
    return get_default_data_dir()


def _resolve_cors_origins(args) -> list[str]:
    if args.cors_origins is None:
        return get_cors_origins()
    return [origin.strip() for origin in args.cors_origins.split(",") if origin.strip()]


def cmd_start(args):
    """Handle the 'start' subcommand."""
    _configure_logging(args.log_level)

    data_dir = _resolve_data_dir(args)
    ttl_minutes = args.session_ttl_minutes or get_session_ttl_minutes()
    cors_origins = _resolve_cors_origins(args)

    print("=" * 50)
    print(f"chunkmerge v{get_version()}")
    print(f"HTTP Server:    http://{args.host}:{args.port}")
    print(f"  - API docs:   http://{args.host}:{args.port}/docs")
    print(f"Data Directory: {data_dir}")
    print(f"Session TTL:    {ttl_minutes}m (checked every {args.expiry_interval_minutes}m)")
    print(f"CORS Origins:   {', '.join(cors_origins) if cors_origins else 'disabled'}")
    print("=" * 50)

    server = UploadServer(
        host=args.host,
        port=args.port,
        data_dir=data_dir,
        session_ttl_minutes=ttl_minutes,
        expiry_interval_minutes=args.expiry_interval_minutes,
        cors_origins=cors_origins,
    )
    server.run()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chunkmerge",
        description="chunkmerge - chunked file upload and merge server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(
        title="commands",
        description="Available commands",
        dest="command",
        required=True,
    )

    # 'start' subcommand
    start_parser = subparsers.add_parser(
        "start",
        help="Start the upload server",
        description="Start the chunkmerge HTTP server and session expiry job",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  chunkmerge start                              # Start with defaults
  chunkmerge start --port 8000                  # Custom HTTP port
  chunkmerge start --data-dir ./uploads         # Custom data directory
  chunkmerge start --session-ttl-minutes 60     # Expire abandoned sessions after an hour
  chunkmerge start --cors-origins=https://app.example.com
        """,
    )
    start_parser.add_argument(
        "--port", type=int, default=HTTP_PORT, help=f"HTTP server port (default: {HTTP_PORT})"
    )
    start_parser.add_argument(
        "--host", type=str, default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)"
    )
    start_parser.add_argument(
        "--data-dir",
        type=str,
        default=os.environ.get("CHUNKMERGE_DATA_DIR"),
        help="Data directory for chunks and merged files (default: ~/.chunkmerge)",
    )
    start_parser.add_argument(
        "--session-ttl-minutes",
        type=int,
        default=None,
        help="Delete sessions with no upload activity for this long (default: 1440)",
    )
    start_parser.add_argument(
        "--expiry-interval-minutes",
        type=int,
        default=DEFAULT_EXPIRY_INTERVAL_MINUTES,
        help=f"How often to look for stale sessions (default: {DEFAULT_EXPIRY_INTERVAL_MINUTES})",
    )
    start_parser.add_argument(
        "--cors-origins",
        type=str,
        default=None,
        help="Comma-separated allowed CORS origins, empty to disable (default: *)",
    )
    start_parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    start_parser.set_defaults(func=cmd_start)

    # 'version' subcommand
    version_parser = subparsers.add_parser(
        "version",
        help="Display version information",
        description="Display chunkmerge version and Python version",
    )
    version_parser.set_defaults(func=cmd_version)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
