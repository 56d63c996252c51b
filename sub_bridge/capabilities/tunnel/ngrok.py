"""ngrok provider — spawns the ngrok agent and reads its local API."""
from __future__ import annotations

import asyncio
import logging
import re

import aiohttp

from sub_bridge.capabilities.tunnel.base import (
    PollTimeoutError,
    TunnelInstance,
    TunnelTimeoutError,
)
from sub_bridge.capabilities.tunnel.utils import (
    binary_exists,
    drain_process,
    poll_until,
    spawn_tunnel_process,
    terminate_process,
)

logger = logging.getLogger(__name__)

NGROK_API_URL = "http://127.0.0.1:4040/api/tunnels"
START_TIMEOUT = 30.0
POLL_INTERVAL = 0.5

_NGROK_DOMAIN_RE = re.compile(r"\.ngrok\.(io|app)$")


def subdomain_for(named_url: str) -> str:
    """``myapp.ngrok.io`` → ``myapp``; anything else is passed through."""
    return _NGROK_DOMAIN_RE.sub("", named_url)


async def fetch_https_tunnel_url(api_url: str = NGROK_API_URL) -> str | None:
    """Return the first https public URL listed by the ngrok agent, or None."""
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(
                api_url, timeout=aiohttp.ClientTimeout(total=2),
            ) as resp:
                if resp.status != 200:
                    return None
                data = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
        return None

    for tunnel in data.get("tunnels", []) if isinstance(data, dict) else []:
        public_url = tunnel.get("public_url", "")
        if public_url.startswith("https://"):
            return public_url
    return None


class NgrokTunnelProvider:
    """ngrok tunnels.

    The agent does not print its URL in a parseable way, so readiness is
    detected by polling the agent's control-plane API.
    """

    id = "ngrok"
    name = "ngrok"
    supports_named_tunnels = True

    def __init__(
        self,
        binary: str = "ngrok",
        api_url: str = NGROK_API_URL,
        timeout: float = START_TIMEOUT,
        interval: float = POLL_INTERVAL,
    ) -> None:
        self._binary = binary
        self._api_url = api_url
        self._timeout = timeout
        self._interval = interval
        self._process: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task] = []

    async def is_available(self) -> bool:
        return await binary_exists(self._binary)

    async def start(self, local_port: int, named_url: str | None = None) -> TunnelInstance:
        args = ["http", str(local_port)]
        # Reserved subdomains require an ngrok account.
        if named_url:
            args += ["--subdomain", subdomain_for(named_url)]

        proc = await spawn_tunnel_process(self._binary, *args)
        self._process = proc
        self._readers = drain_process(proc, "ngrok")

        try:
            url = await poll_until(
                lambda: fetch_https_tunnel_url(self._api_url),
                timeout=self._timeout,
                interval=self._interval,
            )
        except PollTimeoutError as e:
            raise TunnelTimeoutError("ngrok tunnel timeout") from e

        logger.info("ngrok tunnel URL: %s", url)

        async def _stop() -> None:
            terminate_process(proc)
            if self._process is proc:
                self._process = None
            logger.info("Stopped ngrok process")

        return TunnelInstance(provider_id=self.id, public_url=url, stop=_stop)

    async def stop(self) -> None:
        proc, self._process = self._process, None
        terminate_process(proc)
