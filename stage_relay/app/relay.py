import argparse
import asyncio
import signal
from dataclasses import replace
from pathlib import Path
from typing import Optional

from stage_relay.cli.common import add_common_cli_arguments, port_number
from stage_relay.core.api import RelayController, RelayServer
from stage_relay.core.config_manager import get_config_manager
from stage_relay.core.logging_config import configure_logging
from stage_relay.core.logging_utils import get_module_logger
from stage_relay.core.orphan_cleanup import cleanup_orphaned_processes
from stage_relay.core.paths import CONFIG_PATH, RELAY_LOG_FILE, ensure_directories
from stage_relay.core.settings import RelaySettings


logger = get_module_logger("Relay")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments; unset options fall back to config.txt."""
    parser = argparse.ArgumentParser(
        description="Stage Relay - NDI discovery and frame relay for the stage previsualizer"
    )

    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Interface to bind (default: 0.0.0.0)"
    )

    parser.add_argument(
        "--port",
        type=port_number,
        default=None,
        help="Port to listen on (default: $PORT or 8080)"
    )

    parser.add_argument(
        "--media-root",
        type=Path,
        default=None,
        help="Directory /framerate may read from (default: project root)"
    )

    parser.add_argument(
        "--ffmpeg",
        type=str,
        default=None,
        help="ffmpeg executable (default: ffmpeg on PATH)"
    )

    add_common_cli_arguments(parser)

    return parser.parse_args(argv)


async def load_relay_settings(args: argparse.Namespace) -> RelaySettings:
    config_manager = get_config_manager()
    config_path = args.config or CONFIG_PATH
    config = await config_manager.read_config_async(config_path)
    settings = RelaySettings.from_config(config, config_manager).with_args(args)
    if settings.debug and args.log_level is None:
        settings = replace(settings, log_level="debug")
    return settings


async def serve(settings: RelaySettings) -> None:
    """Run the relay until SIGINT/SIGTERM."""
    if settings.cleanup_orphans:
        killed = await asyncio.to_thread(cleanup_orphaned_processes)
        if killed:
            logger.info("Cleaned up %d orphaned capture process(es)", killed)

    controller = RelayController(settings)
    server = RelayServer(
        controller,
        host=settings.host,
        port=settings.port,
        localhost_only=settings.localhost_only,
        debug=settings.debug,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass  # Windows doesn't support add_signal_handler

    await server.start()
    try:
        await stop_event.wait()
    finally:
        await server.stop()


async def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    settings = await load_relay_settings(args)

    ensure_directories()
    configure_logging(
        settings.log_level,
        console=settings.console_output,
        log_file=settings.log_file or RELAY_LOG_FILE,
    )

    logger.info("=" * 60)
    logger.info("Stage Relay starting")
    logger.info("Media root: %s", settings.media_root)
    logger.info("Capture: %s (%s bridge probe)", settings.capture.ffmpeg_path, settings.capture.device_backend)
    logger.info("=" * 60)

    try:
        await serve(settings)
    except OSError as e:
        logger.error("Could not start relay on %s:%d: %s", settings.host, settings.port, e)
        raise SystemExit(1) from e
    except KeyboardInterrupt:
        logger.info("Interrupted")

    logger.info("Stage Relay stopped")
