"""StreamBridge - Telephony media stream to realtime API audio bridge.

Bridges a phone call's Media Streams WebSocket (SignalWire, Twilio) to the
OpenAI Realtime API: caller audio flows to the model, the model's audio
flows back to the caller, and the caller can interrupt it mid-sentence.

Quick start (config-driven):
    $ pip install streambridge
    $ streambridge init          # generates bridge.yaml
    $ streambridge run --config bridge.yaml

Quick start (programmatic):
    from streambridge import StreamBridge

    bridge = StreamBridge({
        "telephony": "signalwire",
        "listen_port": 8765,
        "audio_format": "pcm16",
    })

    @bridge.on("tool_start")
    async def on_tool(call):
        print(f"Model called {call.name}({call.arguments})")

    bridge.run()
"""

__version__ = "0.1.0"

# Core
from streambridge.bridge import ConnectionBridge, StreamBridge
from streambridge.config import BridgeConfig, load_config
from streambridge.session import BargeInDetector, BridgeSession, SessionState, SessionStore
from streambridge.interruption import Interruption, InterruptionController, InterruptionMark
from streambridge.translator import ProtocolTranslator

# Events
from streambridge.core.bus import EventBus
from streambridge.core.errors import (
    BackpressureExceededError,
    BridgeError,
    ConnectError,
    MalformedFrameError,
    UnsupportedFormatError,
)
from streambridge.core.events import (
    AudioFormat,
    AudioFrame,
    ClearAudio,
    ErrorEvent,
    Event,
    EventType,
    FormatNegotiated,
    Mark,
    RawMessage,
    ResponseCreate,
    ResponseDone,
    Side,
    SpeechStarted,
    StreamStarted,
    StreamStopped,
    ToolCall,
    Truncate,
)

# Audio
from streambridge.audio.codecs import CodecAdapter, codec_adapter
from streambridge.audio.policy import AudioFormatPolicy

# Serializers
from streambridge.serializers.base import BaseSerializer
from streambridge.serializers.realtime import RealtimeSerializer
from streambridge.serializers.twilio import (
    GATEWAY_SERIALIZERS,
    SignalWireSerializer,
    TwilioSerializer,
    create_telephony_serializer,
)

# Transports
from streambridge.transports.base import BaseTransport, BoundedSender
from streambridge.transports.websocket import (
    RealtimeClientTransport,
    WebSocketServer,
    WebSocketServerTransport,
)

__all__ = [
    # Core
    "StreamBridge",
    "ConnectionBridge",
    "BridgeConfig",
    "load_config",
    "BridgeSession",
    "SessionState",
    "SessionStore",
    "BargeInDetector",
    "InterruptionController",
    "Interruption",
    "InterruptionMark",
    "ProtocolTranslator",
    # Events
    "EventBus",
    "Event",
    "EventType",
    "Side",
    "AudioFormat",
    "AudioFrame",
    "StreamStarted",
    "StreamStopped",
    "Mark",
    "ClearAudio",
    "FormatNegotiated",
    "SpeechStarted",
    "Truncate",
    "ResponseCreate",
    "ResponseDone",
    "ToolCall",
    "RawMessage",
    "ErrorEvent",
    # Errors
    "BridgeError",
    "ConnectError",
    "MalformedFrameError",
    "UnsupportedFormatError",
    "BackpressureExceededError",
    # Audio
    "CodecAdapter",
    "codec_adapter",
    "AudioFormatPolicy",
    # Serializers
    "BaseSerializer",
    "TwilioSerializer",
    "SignalWireSerializer",
    "RealtimeSerializer",
    "GATEWAY_SERIALIZERS",
    "create_telephony_serializer",
    # Transports
    "BaseTransport",
    "BoundedSender",
    "RealtimeClientTransport",
    "WebSocketServerTransport",
    "WebSocketServer",
]
