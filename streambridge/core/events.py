"""Unified event model for StreamBridge.

Both serializers (telephony Media Streams and the realtime API) convert
their wire messages into these canonical events. The bridge routes events
between the two sides using this common language, and re-publishes every
one of them to application listeners.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AudioFormat(str, Enum):
    """Audio encodings shared by both protocols.

    The bridge never resamples: one format is used end-to-end per session.
    """

    G711_ULAW = "g711_ulaw"
    PCM16 = "pcm16"

    @property
    def sample_rate(self) -> int:
        return 8000 if self is AudioFormat.G711_ULAW else 24000

    @property
    def sample_width(self) -> int:
        return 1 if self is AudioFormat.G711_ULAW else 2

    @property
    def bytes_per_ms(self) -> int:
        return self.sample_rate * self.sample_width // 1000


class Side(str, Enum):
    TELEPHONY = "telephony"
    REALTIME = "realtime"


class EventType(str, Enum):
    AUDIO_FRAME = "audio_frame"
    STREAM_STARTED = "start"
    STREAM_STOPPED = "stop"
    MARK = "mark"
    CLEAR_AUDIO = "clear"
    FORMAT_NEGOTIATED = "media_format_negotiated"
    SPEECH_STARTED = "speech_started"
    TRUNCATE = "truncate"
    RESPONSE_CREATE = "response_create"
    RESPONSE_DONE = "response_done"
    TOOL_CALL = "tool_call"
    RAW = "raw"
    ERROR = "error"


class Event(BaseModel):
    """Base event that all StreamBridge events inherit from."""

    event_type: EventType
    side: Side = Side.TELEPHONY
    call_id: str = ""
    timestamp: float = Field(default_factory=time.time)


class AudioFrame(Event):
    """A chunk of encoded audio flowing through the bridge.

    ``data`` holds raw (base64-decoded) bytes in ``format``. Telephony frames
    carry the gateway's media clock in ``timestamp_ms``; realtime frames carry
    the id of the response item they belong to.
    """

    event_type: EventType = EventType.AUDIO_FRAME
    format: AudioFormat = AudioFormat.G711_ULAW
    data: bytes = b""
    item_id: str = ""
    timestamp_ms: int | None = None

    @property
    def duration_ms(self) -> float:
        return len(self.data) / self.format.bytes_per_ms


class StreamStarted(Event):
    """The telephony gateway opened a media stream for a call."""

    event_type: EventType = EventType.STREAM_STARTED
    stream_sid: str = ""
    account_sid: str = ""
    tracks: list[str] = Field(default_factory=list)
    custom_parameters: dict[str, Any] = Field(default_factory=dict)
    media_format: dict[str, Any] = Field(default_factory=dict)


class StreamStopped(Event):
    """The media stream ended (hangup) or the session was told to terminate."""

    event_type: EventType = EventType.STREAM_STOPPED
    reason: str = "normal"


class Mark(Event):
    """Named playback checkpoint.

    The bridge sends a mark after every chunk of AI audio; the gateway echoes
    it back once everything before it has been played to the caller.
    """

    event_type: EventType = EventType.MARK
    name: str = ""


class ClearAudio(Event):
    """Control event: the gateway must discard buffered, unplayed audio."""

    event_type: EventType = EventType.CLEAR_AUDIO


class FormatNegotiated(Event):
    """Audio formats resolved for the session and sent to the realtime API."""

    event_type: EventType = EventType.FORMAT_NEGOTIATED
    side: Side = Side.REALTIME
    input_format: AudioFormat = AudioFormat.G711_ULAW
    output_format: AudioFormat = AudioFormat.G711_ULAW
    session: dict[str, Any] = Field(default_factory=dict)


class SpeechStarted(Event):
    """Barge-in indicator: the caller started speaking."""

    event_type: EventType = EventType.SPEECH_STARTED
    side: Side = Side.REALTIME
    audio_start_ms: int = 0
    item_id: str = ""


class Truncate(Event):
    """Tell the realtime API how much of an assistant item was actually heard."""

    event_type: EventType = EventType.TRUNCATE
    side: Side = Side.REALTIME
    item_id: str = ""
    content_index: int = 0
    audio_end_ms: int = 0


class ResponseCreate(Event):
    """Explicit response trigger (e.g. the greeting at call start)."""

    event_type: EventType = EventType.RESPONSE_CREATE
    side: Side = Side.REALTIME
    response: dict[str, Any] = Field(default_factory=dict)


class ResponseDone(Event):
    """The realtime API finished a response."""

    event_type: EventType = EventType.RESPONSE_DONE
    side: Side = Side.REALTIME
    response: dict[str, Any] = Field(default_factory=dict)


class ToolCall(Event):
    """A function call item appeared in (``start``) or completed in (``end``) a response."""

    event_type: EventType = EventType.TOOL_CALL
    side: Side = Side.REALTIME
    phase: str = "start"  # "start" or "end"
    tool_call_id: str = ""
    name: str = ""
    arguments: str = ""


class RawMessage(Event):
    """A message with no cross-side mapping.

    Published on the wildcard channel for observation; never forwarded to
    the other socket.
    """

    event_type: EventType = EventType.RAW
    message_type: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


class ErrorEvent(Event):
    """Error signalled by either side or raised inside the bridge."""

    event_type: EventType = EventType.ERROR
    code: str = ""
    message: str = ""
    recoverable: bool = True


# Type alias for any event
AnyEvent = (
    AudioFrame
    | StreamStarted
    | StreamStopped
    | Mark
    | ClearAudio
    | FormatNegotiated
    | SpeechStarted
    | Truncate
    | ResponseCreate
    | ResponseDone
    | ToolCall
    | RawMessage
    | ErrorEvent
)

# Control events are everything except audio
ControlEvent = (
    StreamStarted
    | StreamStopped
    | Mark
    | ClearAudio
    | FormatNegotiated
    | SpeechStarted
    | Truncate
    | ResponseCreate
    | ResponseDone
    | ToolCall
    | RawMessage
    | ErrorEvent
)

# Map event types to their classes for deserialization
EVENT_TYPE_MAP: dict[EventType, type[Event]] = {
    EventType.AUDIO_FRAME: AudioFrame,
    EventType.STREAM_STARTED: StreamStarted,
    EventType.STREAM_STOPPED: StreamStopped,
    EventType.MARK: Mark,
    EventType.CLEAR_AUDIO: ClearAudio,
    EventType.FORMAT_NEGOTIATED: FormatNegotiated,
    EventType.SPEECH_STARTED: SpeechStarted,
    EventType.TRUNCATE: Truncate,
    EventType.RESPONSE_CREATE: ResponseCreate,
    EventType.RESPONSE_DONE: ResponseDone,
    EventType.TOOL_CALL: ToolCall,
    EventType.RAW: RawMessage,
    EventType.ERROR: ErrorEvent,
}
