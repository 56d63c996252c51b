"""Shared types for tunnel capability."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol, runtime_checkable


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TunnelError(RuntimeError):
    """A tunnel could not be started or queried."""


class UnknownProviderError(TunnelError):
    """No provider is registered under the requested id."""


class ProviderUnavailableError(TunnelError):
    """The provider's backend cannot be used right now."""


class TunnelTimeoutError(TunnelError):
    """A provider did not become ready before its deadline."""


class PollTimeoutError(TunnelTimeoutError):
    """poll_until() ran out of time."""


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

async def _noop() -> None:
    return None


@dataclass
class TunnelInstance:
    """A live tunnel session.

    ``stop`` closes over whatever the provider must tear down.  Use
    :meth:`close` rather than calling ``stop`` directly so teardown runs
    at most once.
    """

    provider_id: str
    public_url: str
    stop: Callable[[], Awaitable[None]] = _noop
    _closed: bool = field(default=False, init=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.stop()


@dataclass
class TunnelStatus:
    """Point-in-time snapshot of the registry."""

    active: bool
    provider_id: str | None = None
    public_url: str | None = None
    started_at: str | None = None  # ISO-8601, UTC
    error: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"active": self.active}
        if self.provider_id is not None:
            data["providerId"] = self.provider_id
        if self.public_url is not None:
            data["publicUrl"] = self.public_url
        if self.started_at is not None:
            data["startedAt"] = self.started_at
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class ProviderInfo:
    """Listing entry for a registered provider."""

    id: str
    name: str
    available: bool
    supports_named_tunnels: bool

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "available": self.available,
            "supportsNamedTunnels": self.supports_named_tunnels,
        }


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------

@runtime_checkable
class TunnelProvider(Protocol):
    """Common interface for tunnel backends.

    Each backend picks its own readiness strategy inside ``start``; callers
    only see the resulting :class:`TunnelInstance`.
    """

    id: str
    name: str
    supports_named_tunnels: bool

    async def is_available(self) -> bool: ...

    async def start(self, local_port: int, named_url: str | None = None) -> TunnelInstance: ...

    async def stop(self) -> None: ...
