"""Subprocess and polling helpers shared by tunnel providers."""
from __future__ import annotations

import asyncio
import json
import logging
import shutil
from typing import Any, Awaitable, Callable, TypeVar

from sub_bridge.capabilities.tunnel.base import PollTimeoutError, TunnelError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def binary_exists(binary: str) -> bool:
    """Return True if *binary* is found on PATH."""
    return shutil.which(binary) is not None


async def spawn_tunnel_process(command: str, *args: str) -> asyncio.subprocess.Process:
    """Spawn a tunnel process with stdin detached and output captured."""
    proc = await asyncio.create_subprocess_exec(
        command, *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    logger.debug("Spawned %s %s (pid %d)", command, " ".join(args), proc.pid)
    return proc


async def drain_stream(
    stream: asyncio.StreamReader | None,
    label: str,
    on_line: Callable[[str], None] | None = None,
) -> None:
    """Read *stream* to EOF, logging each line at debug level.

    Tunnel binaries block once an unread pipe fills up, so every piped
    stream of a long-running process needs a reader.
    """
    if stream is None:
        return
    while True:
        line = await stream.readline()
        if not line:
            return
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            continue
        logger.debug("%s: %s", label, text)
        if on_line is not None:
            on_line(text)


def drain_process(proc: asyncio.subprocess.Process, label: str) -> list[asyncio.Task]:
    """Start background readers for both output pipes of *proc*."""
    return [
        asyncio.create_task(drain_stream(proc.stdout, f"{label}(out)")),
        asyncio.create_task(drain_stream(proc.stderr, f"{label}(err)")),
    ]


def terminate_process(proc: asyncio.subprocess.Process | None) -> None:
    """Send SIGTERM without waiting for the process to exit."""
    if proc is None or proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        pass


async def exec_json(*argv: str) -> Any:
    """Run a command and parse its stdout as JSON.

    Raises TunnelError if the binary is missing, exits non-zero, or
    prints something that is not JSON.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise TunnelError(f"{argv[0]} not found in PATH") from e

    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()
        raise TunnelError(
            f"{' '.join(argv)} exited with code {proc.returncode}: {detail}"
        )
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise TunnelError(f"{' '.join(argv)} did not print JSON: {e}") from e


async def poll_until(
    probe: Callable[[], Awaitable[T | None]],
    timeout: float = 30.0,
    interval: float = 0.5,
) -> T:
    """Await *probe* until it returns something other than None.

    Exceptions raised by *probe* count as "not ready yet".  Raises
    PollTimeoutError once *timeout* seconds have passed.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        try:
            result = await probe()
        except Exception as e:
            logger.debug("Poll probe failed: %s", e)
        else:
            if result is not None:
                return result
        await asyncio.sleep(interval)
    raise PollTimeoutError(f"Polling timeout ({timeout:g}s)")
