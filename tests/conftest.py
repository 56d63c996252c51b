from __future__ import annotations

import contextlib
import socket
import stat
from pathlib import Path
from typing import AsyncIterator, Callable

import pytest
from aiohttp import web


def _find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def free_port() -> int:
    """A loopback port nothing is listening on (at the time of the call)."""
    return _find_free_port()


@pytest.fixture
def serve() -> Callable[[web.Application, int], contextlib.AbstractAsyncContextManager]:
    """Factory: ``async with serve(app, port):`` runs *app* on 127.0.0.1:port."""

    @contextlib.asynccontextmanager
    async def _serve(app: web.Application, port: int) -> AsyncIterator[None]:
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", port)
        await site.start()
        try:
            yield
        finally:
            await runner.cleanup()

    return _serve


@pytest.fixture
def fake_binary(tmp_path: Path) -> Callable[[str, str], str]:
    """Factory: write an executable shell script and return its path."""

    def _make(name: str, body: str) -> str:
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make
