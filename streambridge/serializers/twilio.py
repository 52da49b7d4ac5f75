"""Twilio-compatible Media Streams WebSocket serializer.

Translates between the Media Streams WebSocket protocol and StreamBridge's
unified event model. Audio arrives as base64-encoded payloads in the
session's negotiated format: mu-law at 8kHz by default, or L16 at 24kHz.

SignalWire's cXML streams speak the same protocol, so
:class:`SignalWireSerializer` only differs by name.

Protocol reference:
    https://www.twilio.com/docs/voice/media-streams/websocket-messages
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from streambridge.audio import codecs
from streambridge.core.errors import MalformedFrameError
from streambridge.core.events import (
    AnyEvent,
    AudioFrame,
    ClearAudio,
    Mark,
    RawMessage,
    Side,
    StreamStarted,
    StreamStopped,
)
from streambridge.serializers.base import BaseSerializer


class TwilioSerializer(BaseSerializer):
    """Serializer for the Media Streams WebSocket protocol.

    The gateway sends JSON messages with an ``event`` field that indicates
    the message type. Audio payloads arrive base64-encoded in ``media``
    events and are decoded (and validated) before being wrapped in an
    :class:`AudioFrame`.

    State kept across the lifetime of a single stream:
        stream_sid: The unique identifier for the media stream.
        call_sid:   The call identifier associated with this stream.
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.stream_sid: str = ""
        self.call_sid: str = ""

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "twilio"

    @property
    def side(self) -> Side:
        return Side.TELEPHONY

    # ------------------------------------------------------------------
    # Deserialization (gateway -> StreamBridge events)
    # ------------------------------------------------------------------

    async def deserialize(self, raw: bytes | str | dict) -> list[AnyEvent]:
        """Parse a Media Streams message into StreamBridge events.

        Message types handled:
            * ``start`` -- stream metadata; produces :class:`StreamStarted`.
            * ``media`` -- audio payload; produces :class:`AudioFrame`.
            * ``mark``  -- playback checkpoint echo; produces :class:`Mark`.
            * ``clear`` -- produces :class:`ClearAudio` (observed only).
            * ``stop``  -- stream ended; produces :class:`StreamStopped`.

        Anything else (``connected``, ``dtmf``, ...) is surfaced as a
        :class:`RawMessage`.
        """
        msg = self._parse_message(raw)
        try:
            return self._to_events(msg)
        except ValidationError as e:
            raise self._invalid(msg, e) from e

    def _to_events(self, msg: dict[str, Any]) -> list[AnyEvent]:
        event_type = self._require(msg, "event")

        if event_type == "start":
            return self._handle_start(msg)

        if event_type == "media":
            return self._handle_media(msg)

        if event_type == "mark":
            return self._handle_mark(msg)

        if event_type == "clear":
            self._update_stream_sid(msg)
            return [ClearAudio(side=Side.TELEPHONY, call_id=self.call_sid)]

        if event_type == "stop":
            self._update_stream_sid(msg)
            return [StreamStopped(side=Side.TELEPHONY, call_id=self.call_sid, reason="stop")]

        return [
            RawMessage(
                side=Side.TELEPHONY,
                call_id=self.call_sid,
                message_type=event_type,
                payload=msg,
            )
        ]

    # ------------------------------------------------------------------
    # Serialization (StreamBridge events -> gateway wire format)
    # ------------------------------------------------------------------

    async def serialize(self, event: AnyEvent) -> str | None:
        """Convert an event to a Media Streams message.

        Supported outbound events:
            * :class:`AudioFrame` -- ``media`` message with base64 payload.
            * :class:`ClearAudio` -- ``clear`` message.
            * :class:`Mark`       -- ``mark`` message.

        Returns ``None`` for event types the gateway does not accept.
        """
        if isinstance(event, AudioFrame):
            return json.dumps(
                {
                    "event": "media",
                    "streamSid": self.stream_sid,
                    "media": {
                        "payload": codecs.encode(event.data, self.audio_format),
                    },
                }
            )

        if isinstance(event, ClearAudio):
            return self.build_clear_message()

        if isinstance(event, Mark):
            return self.build_mark_message(event.name)

        return None

    # ------------------------------------------------------------------
    # Control message builders
    # ------------------------------------------------------------------

    def build_clear_message(self) -> str:
        """Build a ``clear`` control message.

        Sending this message instructs the gateway to discard any buffered
        audio that has not yet been played to the caller. Used for barge-in.
        """
        return json.dumps(
            {
                "event": "clear",
                "streamSid": self.stream_sid,
            }
        )

    def build_mark_message(self, name: str) -> str:
        """Build a ``mark`` control message.

        When all audio before the mark has been played, the gateway sends a
        ``mark`` event back with the same name.
        """
        return json.dumps(
            {
                "event": "mark",
                "streamSid": self.stream_sid,
                "mark": {"name": name},
            }
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _update_stream_sid(self, msg: dict) -> None:
        if msg.get("streamSid") and isinstance(msg["streamSid"], str):
            self.stream_sid = msg["streamSid"]

    def _handle_start(self, msg: dict) -> list[AnyEvent]:
        """Process a ``start`` message."""
        start_data = msg.get("start")
        if not isinstance(start_data, dict):
            raise MalformedFrameError("Frame is missing required field 'start'", msg)

        stream_sid = start_data.get("streamSid") or msg.get("streamSid")
        if not stream_sid:
            raise MalformedFrameError("Frame is missing required field 'start.streamSid'", msg)

        # Validate before touching per-stream state
        started = StreamStarted(
            side=Side.TELEPHONY,
            call_id=start_data.get("callSid", ""),
            stream_sid=stream_sid,
            account_sid=start_data.get("accountSid", ""),
            tracks=start_data.get("tracks") or [],
            custom_parameters=start_data.get("customParameters") or {},
            media_format=start_data.get("mediaFormat") or {},
        )
        self.stream_sid = started.stream_sid
        self.call_sid = started.call_id
        return [started]

    def _handle_media(self, msg: dict) -> list[AnyEvent]:
        """Process a ``media`` message."""
        payload = self._require(msg, "media", "payload")
        audio_bytes = codecs.decode(payload, self.audio_format)
        self._update_stream_sid(msg)

        timestamp_ms = self._optional_int(msg["media"], "timestamp")

        return [
            AudioFrame(
                side=Side.TELEPHONY,
                call_id=self.call_sid,
                format=self.audio_format,
                data=audio_bytes,
                timestamp_ms=timestamp_ms,
            )
        ]

    def _handle_mark(self, msg: dict) -> list[AnyEvent]:
        """Process a ``mark`` echo (playback reached this checkpoint)."""
        name = self._require(msg, "mark", "name")
        self._update_stream_sid(msg)
        return [Mark(side=Side.TELEPHONY, call_id=self.call_sid, name=name)]


class SignalWireSerializer(TwilioSerializer):
    """SignalWire cXML Media Streams (wire-compatible with Twilio)."""

    @property
    def name(self) -> str:
        return "signalwire"


# Telephony gateway name -> serializer
GATEWAY_SERIALIZERS: dict[str, type[TwilioSerializer]] = {
    "twilio": TwilioSerializer,
    "signalwire": SignalWireSerializer,
}


def create_telephony_serializer(gateway: str, **kwargs: Any) -> TwilioSerializer:
    """Build the serializer for a telephony gateway.

    Raises:
        KeyError: If ``gateway`` is not a known gateway name.
    """
    try:
        cls = GATEWAY_SERIALIZERS[gateway]
    except KeyError:
        available = ", ".join(sorted(GATEWAY_SERIALIZERS))
        raise KeyError(f"Unknown telephony gateway '{gateway}'. Available: {available}") from None
    return cls(**kwargs)
