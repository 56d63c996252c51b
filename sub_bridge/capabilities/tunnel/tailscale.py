"""Tailscale Funnel provider."""
from __future__ import annotations

import asyncio
import logging

from sub_bridge.capabilities.tunnel.base import TunnelError, TunnelInstance
from sub_bridge.capabilities.tunnel.utils import (
    binary_exists,
    drain_process,
    exec_json,
    spawn_tunnel_process,
    terminate_process,
)

logger = logging.getLogger(__name__)

# `tailscale funnel` prints no structured readiness signal.
SETTLE_DELAY = 2.0
FUNNEL_OFF_TIMEOUT = 5.0


class TailscaleTunnelProvider:
    """Expose the port through Tailscale Funnel on this node's DNS name.

    Funnel state lives in tailscaled, so stopping requires an explicit
    ``tailscale funnel off`` on top of terminating the CLI process.
    """

    id = "tailscale"
    name = "Tailscale Funnel"
    supports_named_tunnels = False

    def __init__(
        self,
        binary: str = "tailscale",
        settle_delay: float = SETTLE_DELAY,
        funnel_off_timeout: float = FUNNEL_OFF_TIMEOUT,
    ) -> None:
        self._binary = binary
        self._settle_delay = settle_delay
        self._funnel_off_timeout = funnel_off_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task] = []

    async def _status(self) -> dict:
        status = await exec_json(self._binary, "status", "--json")
        return status if isinstance(status, dict) else {}

    async def is_available(self) -> bool:
        if not await binary_exists(self._binary):
            return False
        try:
            status = await self._status()
        except Exception as e:
            logger.debug("tailscale status failed: %s", e)
            return False
        return status.get("BackendState") == "Running"

    async def hostname(self) -> str | None:
        status = await self._status()
        node = status.get("Self")
        dns_name = node.get("DNSName") if isinstance(node, dict) else None
        if not isinstance(dns_name, str):
            return None
        return dns_name.rstrip(".") or None

    async def start(self, local_port: int, named_url: str | None = None) -> TunnelInstance:
        hostname = await self.hostname()
        if not hostname:
            raise TunnelError("Could not determine Tailscale hostname")

        proc = await spawn_tunnel_process(self._binary, "funnel", str(local_port))
        self._process = proc
        self._readers = drain_process(proc, "tailscale")

        await asyncio.sleep(self._settle_delay)
        public_url = f"https://{hostname}"
        logger.info("Tailscale funnel URL: %s", public_url)

        async def _stop() -> None:
            await self._funnel_off()
            terminate_process(proc)
            if self._process is proc:
                self._process = None
            logger.info("Stopped tailscale funnel")

        return TunnelInstance(provider_id=self.id, public_url=public_url, stop=_stop)

    async def _funnel_off(self) -> None:
        """Run `tailscale funnel off` and wait, bounded, for it to exit."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary, "funnel", "off",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning("Failed to run tailscale funnel off: %s", e)
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._funnel_off_timeout)
        except asyncio.TimeoutError:
            logger.warning("tailscale funnel off did not finish in %ss", self._funnel_off_timeout)
            terminate_process(proc)

    async def stop(self) -> None:
        proc, self._process = self._process, None
        if proc is None:
            return
        await self._funnel_off()
        terminate_process(proc)
