"""Tunnel registry — known providers plus the single active tunnel."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable

from sub_bridge.capabilities.tunnel.base import (
    ProviderInfo,
    ProviderUnavailableError,
    TunnelInstance,
    TunnelProvider,
    TunnelStatus,
    UnknownProviderError,
)
from sub_bridge.capabilities.tunnel.cloudflare import CloudflareTunnelProvider
from sub_bridge.capabilities.tunnel.manual import ManualTunnelProvider
from sub_bridge.capabilities.tunnel.ngrok import NgrokTunnelProvider
from sub_bridge.capabilities.tunnel.tailscale import TailscaleTunnelProvider

logger = logging.getLogger(__name__)


def default_providers() -> list[TunnelProvider]:
    return [
        CloudflareTunnelProvider(),
        NgrokTunnelProvider(),
        TailscaleTunnelProvider(),
        ManualTunnelProvider(),
    ]


class TunnelRegistry:
    """Owns the provider set and at most one active tunnel.

    ``start`` and ``stop`` are serialized by a lock: each spans several
    awaits, and two interleaved starts would otherwise leave an untracked
    tunnel process running.
    """

    def __init__(self, providers: Iterable[TunnelProvider] | None = None) -> None:
        self._providers: dict[str, TunnelProvider] = {}
        for provider in default_providers() if providers is None else providers:
            if provider.id in self._providers:
                raise ValueError(f"Duplicate tunnel provider id: {provider.id}")
            self._providers[provider.id] = provider
        self._active: TunnelInstance | None = None
        self._started_at: str | None = None
        self._last_error: str | None = None
        self._lock = asyncio.Lock()

    @property
    def providers(self) -> dict[str, TunnelProvider]:
        return dict(self._providers)

    async def list_providers(self) -> list[ProviderInfo]:
        """List every provider with its current availability."""
        providers = list(self._providers.values())
        available = await asyncio.gather(*(p.is_available() for p in providers))
        return [
            ProviderInfo(
                id=p.id,
                name=p.name,
                available=bool(ok),
                supports_named_tunnels=p.supports_named_tunnels,
            )
            for p, ok in zip(providers, available)
        ]

    def status(self) -> TunnelStatus:
        if self._active is not None:
            return TunnelStatus(
                active=True,
                provider_id=self._active.provider_id,
                public_url=self._active.public_url,
                started_at=self._started_at,
            )
        return TunnelStatus(active=False, error=self._last_error)

    def public_url(self) -> str | None:
        return self._active.public_url if self._active is not None else None

    async def start(
        self, provider_id: str, local_port: int, named_url: str | None = None,
    ) -> TunnelStatus:
        """Start a tunnel, replacing the active one.

        Raises UnknownProviderError before touching the active tunnel,
        ProviderUnavailableError if the backend can't be used, and
        re-raises whatever the provider's start raised.
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            raise UnknownProviderError(f"Unknown tunnel provider: {provider_id}")

        async with self._lock:
            await self._stop_active()

            if not await provider.is_available():
                message = f"Tunnel provider {provider.name} is not available"
                self._last_error = message
                raise ProviderUnavailableError(message)

            self._last_error = None
            logger.info("Starting %s tunnel for port %d", provider.name, local_port)
            try:
                instance = await provider.start(local_port, named_url)
            except Exception as e:
                self._last_error = str(e) or type(e).__name__
                logger.warning("Failed to start %s tunnel: %s", provider.name, self._last_error)
                await self._release(provider)
                raise
            except asyncio.CancelledError:
                self._last_error = f"{provider.name} tunnel start was cancelled"
                logger.warning("Start of %s tunnel cancelled", provider.name)
                await self._release(provider)
                raise

            self._active = instance
            self._started_at = datetime.now(timezone.utc).isoformat()
            logger.info("Tunnel active: %s", instance.public_url)
            return self.status()

    async def stop(self) -> TunnelStatus:
        """Stop the active tunnel, if any. Safe to call when idle."""
        async with self._lock:
            await self._stop_active()
            return self.status()

    async def shutdown(self) -> None:
        await self.stop()

    @staticmethod
    async def _release(provider: TunnelProvider) -> None:
        """Reap anything a failed start left behind."""
        try:
            await provider.stop()
        except Exception as e:
            logger.warning("Error cleaning up %s after failed start: %s", provider.id, e)

    async def _stop_active(self) -> None:
        active, self._active = self._active, None
        self._started_at = None
        if active is None:
            return
        try:
            await active.close()
        except Exception as e:
            logger.warning("Error stopping %s tunnel: %s", active.provider_id, e)
        logger.info("Stopped %s tunnel", active.provider_id)
