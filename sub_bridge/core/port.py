"""Port discovery shared by the HTTP server and the proxy.

Both processes run the same scan over the same health-check contract, so
"find an existing instance" and "claim a new port" always agree about
which ports are ours, foreign, or free.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from enum import Enum

import aiohttp

logger = logging.getLogger(__name__)

# Changing any of these breaks discovery against already-deployed clients.
SERVICE_IDENTIFIER = "sub-bridge"
DEFAULT_PORT = 8787
MAX_PORT_TRIES = 10
PROBE_TIMEOUT = 1.0
MAX_PORT = 65535

PORT_ENV = "PORT"
DEFAULT_PORT_ENV = "SUB_BRIDGE_DEFAULT_PORT"


class PortState(Enum):
    FREE = "free"
    OUR_SERVER = "our-server"
    OTHER_SERVICE = "other-service"


@dataclass(frozen=True)
class PortDiscoveryResult:
    port: int
    has_server: bool


class NoPortAvailableError(RuntimeError):
    """The whole scan window was exhausted."""


def health_payload(port: int) -> dict:
    """Body served at ``GET /health``."""
    return {"status": "ok", "service": SERVICE_IDENTIFIER, "port": port}


def _env_port(name: str) -> int | None:
    raw = os.environ.get(name, "").strip()
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def resolve_start_port(start_port: int | None = None) -> int:
    """Explicit port, else $PORT, else $SUB_BRIDGE_DEFAULT_PORT, else 8787."""
    if start_port is not None:
        return start_port
    return _env_port(PORT_ENV) or _env_port(DEFAULT_PORT_ENV) or DEFAULT_PORT


async def classify_port(
    port: int, host: str = "localhost", timeout: float = PROBE_TIMEOUT,
) -> PortState:
    """Probe ``/health`` on *port* and say who, if anyone, is listening."""
    if not 0 < port <= MAX_PORT:
        return PortState.OTHER_SERVICE
    url = f"http://{host}:{port}/health"
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(
                url, timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status < 200 or resp.status >= 300:
                    return PortState.OTHER_SERVICE
                body = await resp.read()
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError):
        return PortState.FREE

    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return PortState.OTHER_SERVICE
    if isinstance(data, dict) and data.get("service") == SERVICE_IDENTIFIER:
        return PortState.OUR_SERVER
    return PortState.OTHER_SERVICE


def _scan_range(start: int) -> range:
    return range(start, min(start + MAX_PORT_TRIES, MAX_PORT + 1))


def _window(start: int) -> str:
    return f"{start}-{min(start + MAX_PORT_TRIES - 1, MAX_PORT)}"


async def find_port(start_port: int | None = None) -> PortDiscoveryResult:
    """Find a running instance, or else the first free port.

    A running instance anywhere in the window wins over a lower free
    port.  Ports held by other services are skipped.
    """
    start = resolve_start_port(start_port)
    ports = list(_scan_range(start))
    states = await asyncio.gather(*(classify_port(p) for p in ports))

    first_free: int | None = None
    for port, state in zip(ports, states):
        logger.debug("Port %d: %s", port, state.value)
        if state is PortState.OUR_SERVER:
            return PortDiscoveryResult(port=port, has_server=True)
        if state is PortState.FREE and first_free is None:
            first_free = port
    if first_free is not None:
        return PortDiscoveryResult(port=first_free, has_server=False)
    raise NoPortAvailableError(
        f"No available port found in range {_window(start)}"
    )


async def find_free_port(start_port: int | None = None) -> int:
    """Find the first free port; running instances don't count."""
    start = resolve_start_port(start_port)
    for port in _scan_range(start):
        state = await classify_port(port)
        logger.debug("Port %d: %s", port, state.value)
        if state is PortState.FREE:
            return port
    raise NoPortAvailableError(
        f"No free port found in range {_window(start)}"
    )
