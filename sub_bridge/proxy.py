"""Companion proxy process.

Finds a running sub-bridge HTTP server through port discovery, or starts
one inline on the first free port, then forwards tool calls to it.
"""
from __future__ import annotations

import asyncio
import logging

import aiohttp

from sub_bridge.adapters.web.server import HttpServer
from sub_bridge.capabilities.tunnel.registry import TunnelRegistry
from sub_bridge.config import Config
from sub_bridge.core.port import find_port
from sub_bridge.main import setup_logging, wait_for_shutdown

logger = logging.getLogger("sub_bridge.proxy")


async def forward_tool_call(port: int, name: str, arguments: dict | None = None) -> dict:
    """POST a tool call to the HTTP server and return its JSON reply."""
    url = f"http://localhost:{port}/mcp/tools/{name}"
    async with aiohttp.ClientSession() as session:
        async with session.post(
            url, json=arguments or {}, timeout=aiohttp.ClientTimeout(total=30),
        ) as resp:
            return await resp.json(content_type=None)


async def connect(config: Config) -> tuple[int, HttpServer | None]:
    """Return the server port, plus the server if we had to start it."""
    discovery = await find_port(config.port)
    if discovery.has_server:
        logger.info("Found existing HTTP server on port %d", discovery.port)
        return discovery.port, None

    logger.info("No HTTP server found, starting inline on port %d", discovery.port)
    server = HttpServer(TunnelRegistry(), config, port=discovery.port)
    port = await server.start()
    return port, server


async def main() -> None:
    config = Config.from_env()
    setup_logging(config)

    port, server = await connect(config)
    status = await forward_tool_call(port, "get_status")
    for block in status.get("content", []):
        logger.info("%s", block.get("text", ""))

    await wait_for_shutdown()
    if server is not None:
        await server.stop()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
