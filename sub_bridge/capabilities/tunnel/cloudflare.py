"""Cloudflare provider — quick tunnels through cloudflared, or a named hostname."""
from __future__ import annotations

import asyncio
import logging
import re

from sub_bridge.capabilities.tunnel.base import (
    TunnelError,
    TunnelInstance,
    TunnelTimeoutError,
)
from sub_bridge.capabilities.tunnel.utils import (
    binary_exists,
    drain_stream,
    spawn_tunnel_process,
    terminate_process,
)

logger = logging.getLogger(__name__)

_CLOUDFLARED_URL_RE = re.compile(r"(https://[a-zA-Z0-9-]+\.trycloudflare\.com)")

START_TIMEOUT = 30.0


class QuickTunnel:
    """An anonymous ``cloudflared tunnel --url`` session.

    Exposes two one-shot signals: :attr:`url` resolves with the assigned
    trycloudflare.com address, :attr:`error` resolves with a TunnelError if
    cloudflared exits before printing one.  Exactly one of them fires.
    """

    def __init__(self, local_url: str, binary: str = "cloudflared") -> None:
        self._local_url = local_url
        self._binary = binary
        self._process: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None
        self.url: asyncio.Future[str] | None = None
        self.error: asyncio.Future[TunnelError] | None = None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def open(self) -> None:
        loop = asyncio.get_running_loop()
        self.url = loop.create_future()
        self.error = loop.create_future()
        try:
            self._process = await spawn_tunnel_process(
                self._binary, "tunnel", "--url", self._local_url,
            )
        except OSError as e:
            self._fail(f"Failed to start cloudflared: {e}")
            return

        self._readers = [
            asyncio.create_task(drain_stream(self._process.stdout, "cloudflared(out)")),
            asyncio.create_task(
                drain_stream(self._process.stderr, "cloudflared", self._on_line)
            ),
        ]
        self._watcher = asyncio.create_task(self._watch_exit())

    def _on_line(self, text: str) -> None:
        match = _CLOUDFLARED_URL_RE.search(text)
        if match and self.url is not None and not self._settled:
            self.url.set_result(match.group(1))

    def _fail(self, message: str) -> None:
        if self.error is not None and not self._settled:
            self.error.set_result(TunnelError(message))

    @property
    def _settled(self) -> bool:
        return bool(
            (self.url is not None and self.url.done())
            or (self.error is not None and self.error.done())
        )

    async def _watch_exit(self) -> None:
        if self._process is None:
            return
        code = await self._process.wait()
        # Let the readers flush the last lines before deciding.
        await asyncio.gather(*self._readers, return_exceptions=True)
        self._fail(f"cloudflared exited with code {code} before a URL was assigned")

    async def stop(self) -> None:
        terminate_process(self._process)
        if self._watcher is not None:
            self._watcher.cancel()
        for task in self._readers:
            task.cancel()
        self._watcher = None
        self._readers = []


class CloudflareTunnelProvider:
    """Cloudflare tunnels.

    With a named hostname the tunnel is assumed to be run out-of-band
    (configured in the Cloudflare dashboard) and the hostname is reported
    as-is.  Without one, an anonymous quick tunnel is started.
    """

    id = "cloudflare"
    name = "Cloudflare"
    supports_named_tunnels = True

    def __init__(self, binary: str = "cloudflared", timeout: float = START_TIMEOUT) -> None:
        self._binary = binary
        self._timeout = timeout
        self._tunnel: QuickTunnel | None = None

    async def is_available(self) -> bool:
        return await binary_exists(self._binary)

    async def start(self, local_port: int, named_url: str | None = None) -> TunnelInstance:
        if named_url:
            public_url = named_url if named_url.startswith("https://") else f"https://{named_url}"
            logger.info("Using named Cloudflare hostname %s", public_url)
            return TunnelInstance(provider_id=self.id, public_url=public_url)

        tunnel = QuickTunnel(f"http://localhost:{local_port}", binary=self._binary)
        self._tunnel = tunnel
        await tunnel.open()

        done, _ = await asyncio.wait(
            {tunnel.url, tunnel.error},
            timeout=self._timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if tunnel.url in done:
            url = tunnel.url.result()
            logger.info("Cloudflare tunnel URL: %s", url)
            return TunnelInstance(provider_id=self.id, public_url=url, stop=tunnel.stop)
        if tunnel.error in done:
            raise tunnel.error.result()
        raise TunnelTimeoutError(f"Tunnel timeout ({self._timeout:g}s)")

    async def stop(self) -> None:
        tunnel, self._tunnel = self._tunnel, None
        if tunnel is not None:
            await tunnel.stop()
