"""Tests for TunnelRegistry state transitions."""
from __future__ import annotations

import asyncio

import pytest

from sub_bridge.capabilities.tunnel.base import (
    ProviderUnavailableError,
    TunnelError,
    TunnelInstance,
    UnknownProviderError,
)
from sub_bridge.capabilities.tunnel.registry import TunnelRegistry, default_providers


class FakeProvider:
    """Records every lifecycle call into a shared event log."""

    supports_named_tunnels = True

    def __init__(
        self,
        provider_id: str,
        events: list[str],
        available: bool = True,
        fail_with: Exception | None = None,
        start_delay: float = 0.0,
    ) -> None:
        self.id = provider_id
        self.name = provider_id.title()
        self._events = events
        self._available = available
        self._fail_with = fail_with
        self._start_delay = start_delay
        self.live = 0

    async def is_available(self) -> bool:
        return self._available

    async def start(self, local_port: int, named_url: str | None = None) -> TunnelInstance:
        self._events.append(f"{self.id}:start")
        if self._start_delay:
            await asyncio.sleep(self._start_delay)
        if self._fail_with is not None:
            raise self._fail_with
        self.live += 1

        async def _stop() -> None:
            self.live -= 1
            self._events.append(f"{self.id}:stop")

        url = named_url or f"https://{self.id}.example.com:{local_port}"
        return TunnelInstance(provider_id=self.id, public_url=url, stop=_stop)

    async def stop(self) -> None:
        self._events.append(f"{self.id}:release")


def _assert_consistent(registry: TunnelRegistry) -> None:
    status = registry.status()
    assert status.active == (registry.public_url() is not None)
    assert (status.started_at is not None) == status.active


@pytest.fixture
def events() -> list[str]:
    return []


class TestConstruction:
    def test_default_providers(self):
        registry = TunnelRegistry()
        assert list(registry.providers) == ["cloudflare", "ngrok", "tailscale", "manual"]

    def test_default_providers_fresh_each_time(self):
        a, b = default_providers(), default_providers()
        assert all(x is not y for x, y in zip(a, b))

    def test_duplicate_ids_rejected(self, events):
        with pytest.raises(ValueError, match="Duplicate"):
            TunnelRegistry([FakeProvider("a", events), FakeProvider("a", events)])


class TestListProviders:
    @pytest.mark.asyncio
    async def test_unavailable_providers_listed(self, events):
        registry = TunnelRegistry([
            FakeProvider("up", events),
            FakeProvider("down", events, available=False),
        ])
        infos = await registry.list_providers()
        assert [(i.id, i.available) for i in infos] == [("up", True), ("down", False)]
        assert infos[0].to_dict() == {
            "id": "up", "name": "Up", "available": True, "supportsNamedTunnels": True,
        }


class TestStatus:
    def test_initially_inactive(self, events):
        registry = TunnelRegistry([FakeProvider("a", events)])
        status = registry.status()
        assert status.active is False
        assert status.to_dict() == {"active": False}
        assert registry.public_url() is None

    @pytest.mark.asyncio
    async def test_active_status(self, events):
        registry = TunnelRegistry([FakeProvider("a", events)])
        status = await registry.start("a", 8787)
        assert status.active is True
        assert status.provider_id == "a"
        assert status.public_url == "https://a.example.com:8787"
        assert status.started_at is not None
        assert set(status.to_dict()) == {"active", "providerId", "publicUrl", "startedAt"}
        _assert_consistent(registry)


class TestStart:
    @pytest.mark.asyncio
    async def test_named_url_passed_through(self, events):
        registry = TunnelRegistry([FakeProvider("a", events)])
        await registry.start("a", 8787, "https://mine.example.com")
        assert registry.public_url() == "https://mine.example.com"

    @pytest.mark.asyncio
    async def test_replacing_stops_previous_first(self, events):
        a, b = FakeProvider("a", events), FakeProvider("b", events)
        registry = TunnelRegistry([a, b])
        await registry.start("a", 8787)
        await registry.start("b", 8787)

        assert events == ["a:start", "a:stop", "b:start"]
        assert registry.status().provider_id == "b"
        assert a.live == 0 and b.live == 1
        _assert_consistent(registry)

    @pytest.mark.asyncio
    async def test_unknown_provider_leaves_active_tunnel(self, events):
        registry = TunnelRegistry([FakeProvider("a", events)])
        await registry.start("a", 8787)
        with pytest.raises(UnknownProviderError, match="Unknown tunnel provider: does-not-exist"):
            await registry.start("does-not-exist", 8787)
        assert registry.status().active is True
        assert events == ["a:start"]

    @pytest.mark.asyncio
    async def test_unavailable_provider(self, events):
        registry = TunnelRegistry([FakeProvider("down", events, available=False)])
        with pytest.raises(ProviderUnavailableError, match="not available"):
            await registry.start("down", 8787)
        status = registry.status()
        assert status.active is False
        assert "not available" in status.error
        assert events == []

    @pytest.mark.asyncio
    async def test_failed_start_records_error(self, events):
        a = FakeProvider("a", events)
        bad = FakeProvider("bad", events, fail_with=TunnelError("ngrok tunnel timeout"))
        registry = TunnelRegistry([a, bad])
        await registry.start("a", 8787)

        with pytest.raises(TunnelError, match="ngrok tunnel timeout"):
            await registry.start("bad", 8787)

        status = registry.status()
        assert status.active is False
        assert status.error == "ngrok tunnel timeout"
        assert status.started_at is None
        assert a.live == 0
        # The failed provider is asked to release whatever it spawned.
        assert events == ["a:start", "a:stop", "bad:start", "bad:release"]
        _assert_consistent(registry)

    @pytest.mark.asyncio
    async def test_cancelled_start_releases_provider(self, events):
        slow = FakeProvider("slow", events, start_delay=5.0)
        registry = TunnelRegistry([slow])

        task = asyncio.create_task(registry.start("slow", 8787))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert events == ["slow:start", "slow:release"]
        status = registry.status()
        assert status.active is False
        assert "cancelled" in status.error
        _assert_consistent(registry)

    @pytest.mark.asyncio
    async def test_registry_usable_after_cancelled_start(self, events):
        slow = FakeProvider("slow", events, start_delay=5.0)
        a = FakeProvider("a", events)
        registry = TunnelRegistry([slow, a])

        task = asyncio.create_task(registry.start("slow", 8787))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        status = await registry.start("a", 8787)
        assert status.active is True
        assert status.provider_id == "a"

    @pytest.mark.asyncio
    async def test_success_clears_previous_error(self, events):
        registry = TunnelRegistry([
            FakeProvider("bad", events, fail_with=TunnelError("boom")),
            FakeProvider("a", events),
        ])
        with pytest.raises(TunnelError):
            await registry.start("bad", 8787)
        status = await registry.start("a", 8787)
        assert status.error is None
        assert registry.status().to_dict().get("error") is None

    @pytest.mark.asyncio
    async def test_concurrent_starts_leave_one_tunnel(self, events):
        a = FakeProvider("a", events, start_delay=0.05)
        b = FakeProvider("b", events, start_delay=0.01)
        registry = TunnelRegistry([a, b])

        await asyncio.gather(registry.start("a", 8787), registry.start("b", 8787))

        assert a.live + b.live == 1
        assert registry.status().provider_id == "b"
        assert events == ["a:start", "a:stop", "b:start"]
        _assert_consistent(registry)


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_when_idle(self, events):
        registry = TunnelRegistry([FakeProvider("a", events)])
        status = await registry.stop()
        assert status.active is False
        assert events == []

    @pytest.mark.asyncio
    async def test_stop_active(self, events):
        a = FakeProvider("a", events)
        registry = TunnelRegistry([a])
        await registry.start("a", 8787)
        status = await registry.stop()
        assert status.active is False
        assert status.started_at is None
        assert a.live == 0
        assert registry.public_url() is None

        await registry.stop()
        assert events == ["a:start", "a:stop"]

    @pytest.mark.asyncio
    async def test_stop_error_still_clears_state(self, events):
        async def _boom() -> None:
            raise OSError("already gone")

        registry = TunnelRegistry([FakeProvider("a", events)])
        await registry.start("a", 8787)
        registry._active.stop = _boom
        status = await registry.stop()
        assert status.active is False
        _assert_consistent(registry)

    @pytest.mark.asyncio
    async def test_shutdown(self, events):
        a = FakeProvider("a", events)
        registry = TunnelRegistry([a])
        await registry.start("a", 8787)
        await registry.shutdown()
        assert a.live == 0


class TestManualThroughRegistry:
    @pytest.mark.asyncio
    async def test_manual_url(self):
        registry = TunnelRegistry()
        status = await registry.start("manual", 8787, "example.com")
        assert status.public_url == "https://example.com"
        assert status.provider_id == "manual"

    @pytest.mark.asyncio
    async def test_manual_without_url(self):
        registry = TunnelRegistry()
        with pytest.raises(TunnelError, match="URL is required"):
            await registry.start("manual", 8787)
        assert registry.status().active is False
        assert "URL is required" in registry.status().error
