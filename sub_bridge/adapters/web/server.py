"""HTTP service — health contract, tunnel management API and MCP tool endpoint."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiohttp import web

from sub_bridge.capabilities.tunnel.manual import normalize_url
from sub_bridge.core.port import find_free_port, health_payload

if TYPE_CHECKING:
    from sub_bridge.capabilities.tunnel.registry import TunnelRegistry
    from sub_bridge.config import Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _public_url(app: web.Application) -> str:
    """Active tunnel URL, else the configured tunnel URL, else localhost."""
    registry: TunnelRegistry = app["registry"]
    url = registry.public_url()
    if url:
        return url
    tunnel_url = app["tunnel_url"]
    if tunnel_url:
        return normalize_url(tunnel_url)
    return f"http://localhost:{app['port']}"


def _status_text(public_url: str) -> str:
    base_url = f"{public_url.rstrip('/')}/v1"
    return "\n".join([
        "This proxy lets apps like Cursor use Claude models via the OpenAI API format.",
        "You can route any model name to any Claude model using a single API key.",
        "",
        "To get started:",
        f"1. Open {public_url} in your external browser where the user is logged in",
        "2. Authenticate with your Claude and OpenAI account",
        "3. Configure model routing (e.g., o3 → opus-4.5, o3-mini → sonnet-4.5)",
        "4. Copy the generated API key with routing embedded",
        "5. Paste the API key in Cursor Settings -> Models -> API Keys",
        f"6. Set the OpenAI base URL to {base_url}",
        "The API key format is: <mappings>:<token>",
        "  - Mappings: cursor_model=claude_model (comma-separated)",
        "  - Token: your Claude OAuth token (sk-ant-...)",
    ])


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

async def _handle_health(request: web.Request) -> web.Response:
    return web.json_response(health_payload(request.app["port"]))


async def _handle_config(request: web.Request) -> web.Response:
    return web.json_response({
        "publicUrl": _public_url(request.app),
        "port": request.app["port"],
    })


# -- Tunnels ----------------------------------------------------------------

async def _handle_tunnels(request: web.Request) -> web.Response:
    """GET /api/tunnels — providers and current status."""
    registry: TunnelRegistry = request.app["registry"]
    providers = await registry.list_providers()
    return web.json_response({
        "providers": [p.to_dict() for p in providers],
        "status": registry.status().to_dict(),
    })


async def _handle_tunnel_status(request: web.Request) -> web.Response:
    registry: TunnelRegistry = request.app["registry"]
    return web.json_response(registry.status().to_dict())


async def _handle_tunnel_start(request: web.Request) -> web.Response:
    """POST /api/tunnels/{provider}/start — body: {"namedUrl": "..."} (optional)."""
    registry: TunnelRegistry = request.app["registry"]
    provider_id = request.match_info["provider"]

    named_url: str | None = None
    if request.can_read_body:
        try:
            body = await request.json()
        except ValueError:
            body = {}
        if isinstance(body, dict):
            named_url = body.get("namedUrl") or None

    try:
        status = await registry.start(provider_id, request.app["port"], named_url)
    except Exception as e:
        return web.json_response({"success": False, "error": str(e)})
    return web.json_response({"success": True, "status": status.to_dict()})


async def _handle_tunnel_stop(request: web.Request) -> web.Response:
    registry: TunnelRegistry = request.app["registry"]
    status = await registry.stop()
    return web.json_response({"success": True, "status": status.to_dict()})


# -- MCP tool forwarding ----------------------------------------------------

async def _handle_mcp_tool(request: web.Request) -> web.Response:
    """POST /mcp/tools/{name} — tools forwarded by the proxy process."""
    tool_name = request.match_info["name"]
    if tool_name == "get_status":
        text = _status_text(_public_url(request.app))
        return web.json_response({"content": [{"type": "text", "text": text}]})
    return web.json_response({"error": f"Unknown tool: {tool_name}"}, status=404)


# ---------------------------------------------------------------------------
# App factory & server class
# ---------------------------------------------------------------------------

def _build_app(registry: TunnelRegistry, port: int, tunnel_url: str = "") -> web.Application:
    app = web.Application()
    app["registry"] = registry
    app["port"] = port
    app["tunnel_url"] = tunnel_url

    app.router.add_get("/health", _handle_health)
    app.router.add_get("/api/config", _handle_config)

    # Tunnels
    app.router.add_get("/api/tunnels", _handle_tunnels)
    app.router.add_get("/api/tunnels/status", _handle_tunnel_status)
    app.router.add_post("/api/tunnels/stop", _handle_tunnel_stop)
    app.router.add_post("/api/tunnels/{provider}/start", _handle_tunnel_start)

    app.router.add_post("/mcp/tools/{name}", _handle_mcp_tool)
    return app


class HttpServer:
    """aiohttp-based HTTP service.

    Binds *port*, or the first free port from discovery when none is given.
    Stopping the server also stops any active tunnel.
    """

    def __init__(
        self,
        registry: TunnelRegistry,
        config: Config,
        port: int | None = None,
    ) -> None:
        self._registry = registry
        self._config = config
        self._port = port if port is not None else config.port
        self._runner: web.AppRunner | None = None

    @property
    def port(self) -> int | None:
        return self._port

    @property
    def public_url(self) -> str:
        if self._runner is None:
            raise RuntimeError("Server is not running")
        return _public_url(self._runner.app)

    async def start(self) -> int:
        """Start serving. Returns the bound port."""
        if self._port is None:
            self._port = await find_free_port()
        app = _build_app(self._registry, self._port, self._config.tunnel_url)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._port)
        await site.start()
        logger.info("sub-bridge HTTP server running at http://localhost:%d", self._port)
        return self._port

    async def stop(self) -> None:
        await self._registry.shutdown()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("sub-bridge HTTP server stopped")
