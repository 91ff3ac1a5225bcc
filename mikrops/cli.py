"""Command-line interface for the mikrops service.

Configuration precedence (highest first): command-line flags, ``MIKROPS_*``
environment variables, the ``--config`` file, built-in defaults.
"""

import argparse
import sys
from pathlib import Path

from mikrops import __version__
from mikrops.config import Settings, load_settings_from_file


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="mikrops",
        description="mikrops - ISP back-office and live streams for MikroTik RouterOS",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config", "-c", type=Path, help="Path to configuration file (YAML or TOML)"
    )

    parser.add_argument(
        "--environment", choices=["lab", "staging", "prod"], help="Deployment environment"
    )

    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    parser.add_argument("--log-format", choices=["json", "text"], help="Log output format")

    # HTTP server
    parser.add_argument("--host", help="HTTP server bind address")

    parser.add_argument("--port", type=int, help="HTTP server port")

    # Database
    parser.add_argument("--database-url", help="Database connection URL (SQLite or PostgreSQL)")

    # Event bus
    parser.add_argument("--bus-enabled", action="store_true", help="Publish events to Redis")

    parser.add_argument("--bus-address", help="Redis URL for the event bus")

    # Auth
    parser.add_argument("--jwt-enabled", action="store_true", help="Require JWT bearer tokens")

    parser.add_argument(
        "--generate-encryption-key",
        action="store_true",
        help="Print a new credential encryption key and exit",
    )

    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")

    return parser


def load_config_from_cli(args: list[str] | None = None) -> Settings:
    """Load configuration from CLI arguments and environment.

    Args:
        args: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Configured Settings instance

    Example:
        settings = load_config_from_cli(["--config", "config/prod.yaml", "--port", "9000"])
    """
    parser = create_argument_parser()
    parsed_args = parser.parse_args(args)
    return settings_from_args(parsed_args)


def settings_from_args(parsed_args: argparse.Namespace) -> Settings:
    if parsed_args.config:
        settings = load_settings_from_file(parsed_args.config)
    else:
        settings = Settings()

    cli_overrides: dict[str, object] = {}

    if parsed_args.environment is not None:
        cli_overrides["environment"] = parsed_args.environment

    if parsed_args.debug:
        cli_overrides["debug"] = True

    if parsed_args.log_level is not None:
        cli_overrides["log_level"] = parsed_args.log_level

    if parsed_args.log_format is not None:
        cli_overrides["log_format"] = parsed_args.log_format

    if parsed_args.host is not None:
        cli_overrides["server_host"] = parsed_args.host

    if parsed_args.port is not None:
        cli_overrides["server_port"] = parsed_args.port

    if parsed_args.database_url is not None:
        cli_overrides["database_url"] = parsed_args.database_url

    if parsed_args.bus_enabled:
        cli_overrides["bus_enabled"] = True

    if parsed_args.bus_address is not None:
        cli_overrides["bus_address"] = parsed_args.bus_address

    if parsed_args.jwt_enabled:
        cli_overrides["jwt_enabled"] = True

    if cli_overrides:
        settings = Settings(**{**settings.model_dump(), **cli_overrides})

    return settings


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``mikrops`` command.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    parser = create_argument_parser()
    parsed_args = parser.parse_args(argv)

    if parsed_args.generate_encryption_key:
        from mikrops.security.crypto import generate_encryption_key

        print(generate_encryption_key())
        return 0

    try:
        settings = settings_from_args(parsed_args)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    from mikrops.main import run

    return run(settings)


if __name__ == "__main__":
    sys.exit(main())
