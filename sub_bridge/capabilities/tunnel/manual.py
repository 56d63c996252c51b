"""Custom URL provider — the user already exposes the port themselves."""
from __future__ import annotations

import logging

from sub_bridge.capabilities.tunnel.base import TunnelError, TunnelInstance

logger = logging.getLogger(__name__)


def normalize_url(url: str) -> str:
    """Ensure a scheme is present and drop one trailing slash."""
    public_url = url.strip()
    if not public_url.startswith(("http://", "https://")):
        public_url = "https://" + public_url
    if public_url.endswith("/"):
        public_url = public_url[:-1]
    return public_url


class ManualTunnelProvider:
    """No process is started; the given URL is reported as-is."""

    id = "manual"
    name = "Custom URL"
    supports_named_tunnels = False

    async def is_available(self) -> bool:
        return True

    async def is_authenticated(self) -> bool:
        return True

    async def list_tunnels(self) -> list[str]:
        return []

    async def start(self, local_port: int, named_url: str | None = None) -> TunnelInstance:
        if not named_url or not named_url.strip():
            raise TunnelError(
                "Custom URL is required. Enter your public URL "
                "(e.g., https://api.mydomain.com)"
            )
        public_url = normalize_url(named_url)
        logger.info("Using custom URL %s for port %d", public_url, local_port)
        return TunnelInstance(provider_id=self.id, public_url=public_url)

    async def stop(self) -> None:
        return None
