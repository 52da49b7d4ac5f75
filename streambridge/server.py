"""Built-in HTTP/WebSocket server for StreamBridge.

Provides a FastAPI-based server that accepts the gateway's media-stream
WebSocket and bridges each call to the realtime API. Also serves the call
webhook document and health/status endpoints.

Requires: pip install streambridge[server]
"""

from __future__ import annotations

from typing import Any

import websockets
from loguru import logger

from streambridge.bridge import StreamBridge
from streambridge.config import BridgeConfig, load_config
from streambridge.transports.base import BaseTransport
from streambridge.webhook import stream_document


def _fastapi_available() -> bool:
    try:
        import fastapi  # noqa: F401
        import uvicorn  # noqa: F401
        return True
    except ImportError:
        return False


def create_app(config: BridgeConfig | dict | str | None = None, bridge: StreamBridge | None = None) -> Any:
    """Create a FastAPI application with the StreamBridge media-stream endpoint.

    Args:
        config: Bridge configuration (YAML path, dict, or BridgeConfig).
        bridge: An existing StreamBridge to serve (its handlers are kept).

    Returns:
        A FastAPI application instance.

    Requires: pip install streambridge[server]
    """
    if not _fastapi_available():
        raise ImportError(
            "FastAPI server requires fastapi and uvicorn. "
            "Install with: pip install streambridge[server]"
        )

    from fastapi import FastAPI, WebSocket
    from fastapi.responses import JSONResponse, Response

    if bridge is None:
        bridge = StreamBridge(load_config(config))
    bridge_config = bridge.config

    app = FastAPI(
        title="StreamBridge",
        description="Telephony media stream to realtime API audio bridge",
        version="0.1.0",
    )

    @app.get("/health")
    async def health():
        return JSONResponse({"status": "ok", "active_calls": bridge.sessions.active_count})

    @app.get("/status")
    async def status():
        sessions = []
        for s in bridge.sessions.all_sessions:
            sessions.append({
                "session_id": s.session_id,
                "call_id": s.call_id,
                "stream_sid": s.stream_sid,
                "state": s.state.value,
                "audio_format": s.audio_format.value if s.audio_format else None,
                "duration_ms": s.duration_ms,
                "frames_dropped": s.frames_dropped,
            })
        return JSONResponse({
            "telephony": bridge_config.telephony.type,
            "model": bridge_config.realtime.model,
            "audio_format": bridge_config.audio.format.value,
            "active_calls": bridge.sessions.active_count,
            "sessions": sessions,
        })

    @app.api_route(bridge_config.telephony.webhook_path, methods=["GET", "POST"])
    async def incoming_call():
        logger.info("Incoming call webhook")
        return Response(content=stream_document(bridge_config), media_type="application/xml")

    @app.websocket(bridge_config.telephony.listen_path)
    async def media_stream(websocket: WebSocket):
        await websocket.accept()
        logger.info(f"Gateway WebSocket connected: {websocket.client}")
        try:
            await bridge.handle_connection(_FastAPIWebSocketAdapter(websocket))
        except Exception as e:
            logger.error(f"WebSocket handler error: {e}")

    app.state.bridge = bridge
    return app


class _FastAPIWebSocketAdapter(BaseTransport):
    """Adapter to make FastAPI's WebSocket work with StreamBridge's transport interface."""

    def __init__(self, ws) -> None:
        self._ws = ws
        self._connected = True

    async def connect(self, **kwargs) -> None:
        pass  # Already accepted by FastAPI

    async def send(self, data: bytes | str) -> None:
        if isinstance(data, bytes):
            await self._ws.send_bytes(data)
        else:
            await self._ws.send_text(data)

    async def recv(self) -> bytes | str:
        msg = await self._ws.receive()
        if msg.get("text") is not None:
            return msg["text"]
        if msg.get("bytes") is not None:
            return msg["bytes"]
        self._connected = False
        raise websockets.exceptions.ConnectionClosed(None, None)

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        try:
            await self._ws.close()
        except RuntimeError as e:
            logger.debug(f"Gateway WebSocket already closed: {e}")

    def is_connected(self) -> bool:
        return self._connected


def run_server(config: BridgeConfig | dict | str, host: str | None = None, port: int | None = None) -> None:
    """Run the StreamBridge server with uvicorn.

    Args:
        config: Bridge configuration.
        host: Override the listen host.
        port: Override the listen port.
    """
    if not _fastapi_available():
        raise ImportError(
            "FastAPI server requires fastapi and uvicorn. "
            "Install with: pip install streambridge[server]"
        )

    import uvicorn

    bridge_config = load_config(config)
    app = create_app(bridge_config)

    uvicorn.run(
        app,
        host=host or bridge_config.telephony.listen_host,
        port=port or bridge_config.telephony.listen_port,
        log_level=bridge_config.logging.level.lower(),
    )
