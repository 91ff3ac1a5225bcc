"""Process entry point: logging, startup banner and the uvicorn server.

Shutdown on SIGTERM/SIGINT is handled by uvicorn: it stops accepting
connections, waits up to ``server_shutdown_timeout`` for in-flight requests,
then runs the app lifespan exit which closes subscription sessions, device
connections, the event broker and the database.
"""

import asyncio
import logging
import sys
from urllib.parse import urlparse

import uvicorn

from mikrops import __version__
from mikrops.api.http import create_http_app
from mikrops.config import Settings
from mikrops.infra.observability.logging import setup_logging

logger = logging.getLogger(__name__)


def sanitize_database_url(url: str) -> str:
    """Redact the password in a database URL.

    Example:
        >>> sanitize_database_url("postgresql+asyncpg://app:secret@db:5432/isp")
        'postgresql+asyncpg://app:***@db:5432/isp'
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***REDACTED***"
    if not parsed.password:
        return url
    netloc = f"{parsed.username or ''}:***@{parsed.hostname or ''}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return parsed._replace(netloc=netloc).geturl()


def print_startup_banner(settings: Settings) -> None:
    logger.info("=" * 60)
    logger.info(f"mikrops {__version__}")
    logger.info("=" * 60)
    logger.info(f"  Environment: {settings.environment}")
    logger.info(f"  HTTP: {settings.server_host}:{settings.server_port}")
    logger.info(f"  Database: {sanitize_database_url(settings.database_url)}")
    logger.info(f"  Event bus: {settings.bus_address if settings.bus_enabled else 'in-process'}")
    logger.info(f"  JWT auth: {'enabled' if settings.jwt_enabled else 'disabled'}")
    if settings.device_host:
        logger.info(f"  Bootstrap device: {settings.device_host}:{settings.device_port}")
    if settings.debug:
        logger.warning("Debug mode enabled - not for production use")
    logger.info("=" * 60)


def build_server(settings: Settings) -> uvicorn.Server:
    """Create the uvicorn server for the HTTP/WebSocket app."""
    app = create_http_app(settings)
    config = uvicorn.Config(
        app,
        host=settings.server_host,
        port=settings.server_port,
        log_config=None,
        timeout_keep_alive=int(settings.server_read_timeout),
        timeout_graceful_shutdown=int(settings.server_shutdown_timeout),
        ws_ping_interval=settings.subscription_keepalive_interval,
        ws_ping_timeout=settings.server_write_timeout,
    )
    return uvicorn.Server(config)


def run(settings: Settings) -> int:
    """Run the service until a shutdown signal arrives.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    setup_logging(settings.log_level, json_format=settings.log_format == "json")
    print_startup_banner(settings)

    try:
        asyncio.run(build_server(settings).serve())
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1
    return 0


def main() -> int:
    """Load configuration from the command line and run."""
    from mikrops.cli import main as cli_main

    return cli_main()


if __name__ == "__main__":
    sys.exit(main())
