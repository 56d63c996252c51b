from __future__ import annotations

import asyncio
import logging
import signal

from sub_bridge.adapters.web.server import HttpServer
from sub_bridge.capabilities.tunnel.registry import TunnelRegistry
from sub_bridge.config import Config

logger = logging.getLogger("sub_bridge")


def setup_logging(config: Config) -> None:
    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(config.log_file),
        ],
    )


async def wait_for_shutdown() -> None:
    """Block until SIGINT or SIGTERM."""
    stop_event = asyncio.Event()

    def handle_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)
    await stop_event.wait()


async def main() -> None:
    config = Config.from_env()
    setup_logging(config)
    logger.info("sub-bridge starting...")

    # One registry per process; tunnel state is not persisted across restarts.
    registry = TunnelRegistry()
    server = HttpServer(registry, config)
    port = await server.start()
    logger.info("Public URL: %s", server.public_url)
    logger.info("Listening on port %d. Press Ctrl+C to stop.", port)

    await wait_for_shutdown()

    logger.info("Shutting down...")
    await server.stop()
    logger.info("sub-bridge stopped.")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
