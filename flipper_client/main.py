"""
Entry point for running a Flipper client from the command line.

    python -m flipper_client.main

Plugins are listed in FLIPPER_PLUGINS_JSON as "module:attribute" strings; the
attribute is called with no arguments to build the plugin (a class or a
factory function both work).
"""

import asyncio
import importlib
import logging
import os
import signal
from logging.handlers import RotatingFileHandler
from typing import Iterable, List

from flipper_client.client import FlipperClient
from flipper_client.config import ClientSettings, load_settings
from flipper_client.plugin import FlipperPlugin

logger = logging.getLogger(__name__)


def configure_logging(log_level: str = "INFO",
                      log_format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                      log_to_file: bool = False, log_file_path: str = "logs/flipper_client.log",
                      max_bytes: int = 1_000_000, max_log_files: int = 5) -> None:
    """
    Configure the root logger with a console handler and an optional
    rotating file handler.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log message format string
        log_to_file: Whether to enable file logging
        log_file_path: Path to log file (directory is created if needed)
        max_bytes: Size of one log file before rotation
        max_log_files: Number of log files to keep
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        logging.basicConfig(level=logging.INFO, format=log_format, force=True)
        logger.error(f"Invalid log level: {log_level}. Using INFO instead.")
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(log_format)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        try:
            log_dir = os.path.dirname(log_file_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                filename=log_file_path,
                maxBytes=max_bytes,
                backupCount=max(max_log_files - 1, 0),
                encoding='utf-8',
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Failed to set up file logging at {log_file_path}: {e}. Continuing with console only.")

    root_logger.setLevel(numeric_level)
    logger.info(f"Logging configured: level={log_level.upper()}, file={'on' if log_to_file else 'off'}")


def load_plugins(specs: Iterable[str]) -> List[FlipperPlugin]:
    """
    Instantiate plugins from "module:attribute" strings.

    Invalid entries are logged and skipped so one broken plugin does not keep
    the others from connecting.
    """
    plugins: List[FlipperPlugin] = []
    for spec in specs:
        module_name, _, attribute = spec.partition(":")
        if not module_name or not attribute:
            logger.error(f"Invalid plugin spec '{spec}' (expected 'module:attribute')")
            continue
        try:
            factory = getattr(importlib.import_module(module_name), attribute)
            plugin = factory()
        except Exception as e:
            logger.error(f"Failed to load plugin '{spec}': {e}", exc_info=True)
            continue
        if not isinstance(plugin, FlipperPlugin):
            logger.error(f"'{spec}' did not produce a Flipper plugin (got {type(plugin).__name__})")
            continue
        plugins.append(plugin)
        logger.info(f"Loaded plugin '{plugin.id}' from {spec}")
    return plugins


async def amain(settings: ClientSettings) -> None:
    """Connect and stay connected until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt.
            pass

    client = FlipperClient(settings, plugins=load_plugins(settings.plugin_specs))
    async with client:
        await stop.wait()
        logger.info("Shutdown requested. Disconnecting...")


def main() -> None:
    settings = load_settings()
    configure_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_to_file=settings.log_to_file,
        log_file_path=settings.log_file_path,
        max_bytes=settings.log_max_bytes,
        max_log_files=settings.log_max_files,
    )
    if settings.tracing_enabled:
        from flipper_client.observability import setup_tracing
        setup_tracing()
    try:
        asyncio.run(amain(settings))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received. Exiting.")


if __name__ == "__main__":
    main()
