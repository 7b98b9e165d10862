"""
Feeder Agent - Entry Point

Connects to the monitoring backend, polls every active device register
on its own interval and reports the readings upstream.

Usage:
    feeder-agent                         # Settings from environment
    feeder-agent --config agent.yaml     # YAML file, environment still wins
    feeder-agent --dry-run               # Print config and exit
    feeder-agent --verbose               # Enable debug logging
    feeder-agent --link ABCD-1234        # Link to a workspace after authenticating
"""

import argparse
import asyncio
import re
import signal
import sys

from . import __version__
from .common.config import AgentConfig, ModbusMode, TransportKind, load_agent_config
from .common.exceptions import AuthenticationError, ConfigError, TransportError
from .common.logging_setup import get_service_logger, set_log_level
from .services.device import ModbusReader
from .services.system import HealthServer
from .services.transport import BackendTransport, RestTransport, WebSocketTransport
from .session import AgentSession

logger = get_service_logger("main")

LINK_CODE_PATTERN = re.compile(r"^[A-Z0-9]{4}-[A-Z0-9]{4}$")


def create_transport(config: AgentConfig) -> BackendTransport:
    """Instantiate the configured backend transport"""
    if config.transport == TransportKind.WEBSOCKET:
        return WebSocketTransport(config)
    return RestTransport(config)


def normalize_link_code(code: str) -> str:
    """
    Validate a workspace link code (XXXX-XXXX).

    Raises:
        ValueError: code does not match the expected format
    """
    normalized = code.strip().upper()
    if not LINK_CODE_PATTERN.match(normalized):
        raise ValueError(f"Invalid link code format: {code!r} (expected XXXX-XXXX)")
    return normalized


def print_startup_banner(config: AgentConfig) -> None:
    """Print startup information."""
    print()
    print("=" * 60)
    print(f"  FEEDER AGENT v{config.version}")
    print("=" * 60)
    print()
    print(f"  Backend:     {config.backend_url}")
    print(f"  Transport:   {config.transport.value}")
    print(f"  Modbus mode: {config.modbus_mode.value}")
    if config.transport == TransportKind.REST:
        print(f"  Registry poll: every {config.config_poll_interval_s:g}s")
        print(f"  Test poll:     every {config.tests_poll_interval_s:g}s")
    print(f"  Heartbeat:   every {config.heartbeat_interval_s:g}s")
    print(f"  Health:      http://{config.health_host}:{config.health_port}/health")
    print()
    print("=" * 60)
    print()


async def main_async(config: AgentConfig, link_code: str | None = None) -> int:
    """
    Run one agent session until a shutdown signal.

    Returns:
        Process exit status
    """
    transport = create_transport(config)
    session = AgentSession(
        config,
        transport,
        reader=ModbusReader(config.modbus_mode),
        link_code=link_code,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, session.request_shutdown)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(session.request_shutdown))

    health = HealthServer(session, config.health_host, config.health_port)
    try:
        await health.start()
    except OSError as e:
        logger.warning(f"Health server not started: {e}")
        health = None

    try:
        await session.run()
    except AuthenticationError as e:
        logger.critical(f"Backend rejected the agent: {e.message}")
        return 1
    except (ConfigError, TransportError) as e:
        logger.critical(f"Could not start session: {e.message}")
        return 1
    finally:
        await session.shutdown()
        if health is not None:
            await health.stop()

    logger.info("Feeder agent stopped")
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Feeder Agent - Modbus TCP polling agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
    BACKEND_URL              Backend base URL
    AGENT_SECRET             Agent secret (required)
    AGENT_TRANSPORT          rest | websocket
    MODBUS_MODE              real | simulated
    CONFIG_POLL_INTERVAL_MS  Registry poll interval (REST)
    TESTS_POLL_INTERVAL_MS   Pending test poll interval (REST)
    HEALTH_PORT              Local health server port
        """,
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to a YAML configuration file",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and exit without starting",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging",
    )

    parser.add_argument(
        "--link",
        metavar="CODE",
        help="Link this agent to a workspace with a one-time code (XXXX-XXXX)",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Feeder Agent v{__version__}",
    )

    args = parser.parse_args()

    if args.verbose:
        set_log_level("DEBUG")

    link_code = None
    if args.link:
        try:
            link_code = normalize_link_code(args.link)
        except ValueError as e:
            parser.error(str(e))

    try:
        config = load_agent_config(args.config)
    except ConfigError as e:
        logger.error(e.message)
        sys.exit(1)

    if not config.secret:
        logger.error("AGENT_SECRET is not configured")
        sys.exit(1)

    print_startup_banner(config)

    if args.dry_run:
        print("Dry run mode - configuration valid")
        sys.exit(0)

    if config.modbus_mode == ModbusMode.SIMULATED:
        logger.warning("Modbus mode is simulated: readings are random values")

    print("Press Ctrl+C to stop")
    print()

    try:
        status = asyncio.run(main_async(config, link_code))
    except KeyboardInterrupt:
        print("\nStopped by user")
        status = 0
    sys.exit(status)


if __name__ == "__main__":
    main()
