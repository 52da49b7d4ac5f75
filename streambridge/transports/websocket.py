"""WebSocket transports for StreamBridge.

Provides the realtime-API client transport, the telephony-side server
transport and a standalone server, using the ``websockets`` library with
asyncio.

When an ``http_handler`` is provided, the server uses ``aiohttp`` instead
of plain ``websockets`` so that the gateway's call webhook (the cXML/TwiML
document that points the call at the media stream) can be served on the
**same** port as the WebSocket endpoint.
"""

from __future__ import annotations

import asyncio
from typing import Any

import websockets
import websockets.asyncio.client
import websockets.asyncio.server
from loguru import logger
from websockets.protocol import State

from streambridge.transports.base import BaseTransport

REALTIME_URL = "wss://api.openai.com/v1/realtime"


class RealtimeClientTransport(BaseTransport):
    """WebSocket client transport for the realtime API.

    StreamBridge connects as a client, authenticating with a bearer API key.
    """

    def __init__(
        self,
        url: str = REALTIME_URL,
        model: str = "",
        open_timeout: float = 10.0,
        **ws_kwargs: Any,
    ) -> None:
        self._url = url
        self._model = model
        self._open_timeout = open_timeout
        self._ws: Any | None = None
        self._ws_kwargs = ws_kwargs

    @property
    def url(self) -> str:
        if self._model and "model=" not in self._url:
            sep = "&" if "?" in self._url else "?"
            return f"{self._url}{sep}model={self._model}"
        return self._url

    async def connect(self, **kwargs) -> None:
        api_key = kwargs.get("api_key", "")
        if not api_key:
            raise ValueError("An API key is required to connect to the realtime API")
        headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        logger.info(f"Connecting to realtime API: {self.url}")
        self._ws = await websockets.asyncio.client.connect(
            self.url,
            additional_headers=headers,
            open_timeout=self._open_timeout,
            **self._ws_kwargs,
        )
        logger.info("Connected to realtime API")

    async def send(self, data: bytes | str) -> None:
        if not self._ws:
            raise RuntimeError("Not connected")
        await self._ws.send(data)

    async def recv(self) -> bytes | str:
        if not self._ws:
            raise RuntimeError("Not connected")
        return await self._ws.recv()

    async def disconnect(self) -> None:
        if self._ws:
            await self._ws.close()
            self._ws = None
            logger.info("Realtime WebSocket disconnected")

    def is_connected(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN


class WebSocketServerTransport(BaseTransport):
    """Transport wrapping an already-accepted gateway WebSocket."""

    def __init__(self, websocket: Any = None) -> None:
        self._ws = websocket

    async def connect(self, **kwargs) -> None:
        ws = kwargs.get("websocket")
        if ws:
            self._ws = ws
        if not self._ws:
            raise ValueError("An accepted WebSocket connection is required")
        logger.info("Gateway WebSocket connection accepted")

    async def send(self, data: bytes | str) -> None:
        if not self._ws:
            raise RuntimeError("Not connected")
        await self._ws.send(data)

    async def recv(self) -> bytes | str:
        if not self._ws:
            raise RuntimeError("Not connected")
        return await self._ws.recv()

    async def disconnect(self) -> None:
        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Gateway WebSocket close failed: {e}")
            self._ws = None
            logger.info("Gateway WebSocket disconnected")

    def is_connected(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN


class WebSocketServer:
    """Standalone server that accepts gateway media-stream connections.

    Each new connection is wrapped in a ``WebSocketServerTransport`` and
    handed to the handler callback.

    Usage:
        async def on_connection(transport: WebSocketServerTransport):
            ...

        server = WebSocketServer(host="0.0.0.0", port=8765, handler=on_connection)
        await server.serve_forever()
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8765,
        path: str = "/media-stream",
        handler=None,
        http_handler=None,
    ) -> None:
        self.host = host
        self.port = port
        self.path = path
        self._handler = handler
        self._http_handler = http_handler
        self._server: Any = None
        self._runner: Any = None  # aiohttp runner (hybrid mode only)

    async def _ws_handler(self, websocket) -> None:
        """Internal handler for each accepted WebSocket connection."""
        request = getattr(websocket, "request", None)
        request_path = (getattr(request, "path", None) or "/").split("?")[0]
        if self.path and self.path != "/" and not request_path.startswith(self.path):
            logger.warning(f"Rejected connection to {request_path} (expected {self.path})")
            return

        await self._dispatch(WebSocketServerTransport(websocket=websocket))

    async def _dispatch(self, transport: WebSocketServerTransport) -> None:
        if not self._handler:
            logger.warning("No handler registered for incoming connections")
            return
        try:
            await self._handler(transport)
        except Exception as e:
            logger.error(f"Handler error: {e}")

    # ------------------------------------------------------------------
    # aiohttp hybrid mode: HTTP + WebSocket on one port
    # ------------------------------------------------------------------

    async def _aiohttp_route_handler(self, request):
        """Upgrade to WS if requested, else serve HTTP."""
        import aiohttp.web as aioweb

        if request.headers.get("Upgrade", "").lower() == "websocket":
            if self.path and self.path != "/" and not request.path.startswith(self.path):
                logger.warning(f"Rejected connection to {request.path} (expected {self.path})")
                return aioweb.Response(status=404, text="Not Found")
            ws = aioweb.WebSocketResponse()
            await ws.prepare(request)
            await self._dispatch(WebSocketServerTransport(websocket=_AiohttpWebSocketShim(ws)))
            return ws

        if self._http_handler:
            try:
                status, content_type, body = await self._http_handler(request)
                return aioweb.Response(status=status, body=body, content_type=content_type)
            except Exception as e:
                logger.error(f"HTTP handler error: {e}")
                return aioweb.Response(status=500, text="Internal Server Error")
        return aioweb.Response(status=404, text="Not Found")

    async def _start_hybrid(self) -> None:
        import aiohttp.web as aioweb

        app = aioweb.Application()
        app.router.add_route("*", "/{path_info:.*}", self._aiohttp_route_handler)

        self._runner = aioweb.AppRunner(app)
        await self._runner.setup()
        site = aioweb.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"Hybrid HTTP+WebSocket server listening on http://{self.host}:{self.port}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._http_handler:
            await self._start_hybrid()
        else:
            self._server = await websockets.asyncio.server.serve(
                self._ws_handler,
                self.host,
                self.port,
            )
            logger.info(f"WebSocket server listening on ws://{self.host}:{self.port}{self.path}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Hybrid server stopped")
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("WebSocket server stopped")

    async def serve_forever(self) -> None:
        """Start and run the server until cancelled."""
        await self.start()
        try:
            await asyncio.Future()
        except asyncio.CancelledError:
            await self.stop()


class _AiohttpWebSocketShim:
    """Makes an ``aiohttp.WebSocketResponse`` look like a ``websockets``
    server connection so :class:`WebSocketServerTransport` can use it unchanged.
    """

    def __init__(self, ws) -> None:
        self._ws = ws
        self.state = State.OPEN

    async def send(self, data: bytes | str) -> None:
        if isinstance(data, bytes):
            await self._ws.send_bytes(data)
        else:
            await self._ws.send_str(data)

    async def recv(self) -> bytes | str:
        import aiohttp

        msg = await self._ws.receive()
        if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
            return msg.data
        self.state = State.CLOSED
        raise websockets.exceptions.ConnectionClosed(None, None)

    async def close(self) -> None:
        self.state = State.CLOSED
        await self._ws.close()
