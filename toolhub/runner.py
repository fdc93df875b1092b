"""Entry point for the hub process: load config, start discovery, run until interrupted."""

import asyncio
import logging
import signal
from pathlib import Path

from dotenv import load_dotenv

from toolhub.hub import ToolHub
from toolhub.logging_config import setup_logging
from toolhub.settings import load_settings

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def _install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows: KeyboardInterrupt reaches main() instead
            pass


async def main_async() -> None:
    """Bootstrap: settings -> logging -> hub.start -> wait for shutdown -> hub.stop."""
    settings = load_settings()
    log_path = setup_logging(_PROJECT_ROOT, settings)
    hub = ToolHub(settings, _PROJECT_ROOT)

    async def _on_surface_changed(reason: str) -> None:
        logger.info("tool list changed (%s): %d tool(s) exposed", reason, len(hub.list_tools()))

    hub.subscribe(_on_surface_changed)
    logger.info("toolhub starting, logging to %s", log_path)
    shutdown_event = asyncio.Event()
    _install_signal_handlers(shutdown_event)
    await hub.start()
    try:
        await shutdown_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        await hub.stop()


def main() -> None:
    """Synchronous entry: python -m toolhub."""
    load_dotenv(_PROJECT_ROOT / ".env")
    from agents import set_tracing_disabled

    set_tracing_disabled(True)
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        pass


__all__ = ["main"]
