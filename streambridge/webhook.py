"""Call webhook for the telephony gateway.

When a call comes in, the gateway fetches a cXML/TwiML document telling it
where to stream the call's audio. StreamBridge serves that document from
the same port as the media-stream WebSocket (hybrid aiohttp mode).
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable
from xml.sax.saxutils import quoteattr

from loguru import logger

from streambridge.config import BridgeConfig
from streambridge.core.events import AudioFormat

# SignalWire codec attribute for 24kHz linear PCM streams
PCM16_STREAM_CODEC = "L16@24000h"


def stream_document(config: BridgeConfig) -> str:
    """Build the ``<Connect><Stream>`` document pointing the call at the bridge."""
    attrs = f"url={quoteattr(config.telephony.public_url)}"
    if config.audio.format is AudioFormat.PCM16:
        attrs += f" codec={quoteattr(PCM16_STREAM_CODEC)}"
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<Response>\n"
        "  <Connect>\n"
        f"    <Stream {attrs} />\n"
        "  </Connect>\n"
        "</Response>\n"
    )


def webhook_handler(config: BridgeConfig) -> Callable[[Any], Awaitable[tuple[int, str, bytes]]]:
    """HTTP handler for :class:`WebSocketServer` hybrid mode.

    Serves the stream document on the configured webhook path and 404s
    everything else.
    """
    document = stream_document(config).encode("utf-8")

    async def handle(request: Any) -> tuple[int, str, bytes]:
        if request.path != config.telephony.webhook_path:
            return 404, "text/plain", b"Not Found"
        logger.info(f"Incoming call webhook: streaming to {config.telephony.public_url}")
        return 200, "application/xml", document

    return handle
