"""OpenAI Realtime API WebSocket serializer.

Translates between the realtime API's JSON events (``type`` discriminator)
and StreamBridge's unified event model. Output audio arrives as base64 in
``response.audio.delta`` events; input audio is sent as base64 in
``input_audio_buffer.append`` events.

Protocol reference:
    https://platform.openai.com/docs/api-reference/realtime
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from streambridge.audio import codecs
from streambridge.core.events import (
    AnyEvent,
    AudioFrame,
    ErrorEvent,
    FormatNegotiated,
    RawMessage,
    ResponseCreate,
    ResponseDone,
    Side,
    SpeechStarted,
    ToolCall,
    Truncate,
)
from streambridge.serializers.base import BaseSerializer

# Both the beta and GA names for output audio chunks
AUDIO_DELTA_TYPES = ("response.audio.delta", "response.output_audio.delta")


class RealtimeSerializer(BaseSerializer):
    """Serializer for the realtime API event protocol."""

    @property
    def name(self) -> str:
        return "openai"

    @property
    def side(self) -> Side:
        return Side.REALTIME

    # ------------------------------------------------------------------
    # Deserialization (server events -> StreamBridge events)
    # ------------------------------------------------------------------

    async def deserialize(self, raw: bytes | str | dict) -> list[AnyEvent]:
        """Parse a realtime server event.

        Message types handled:
            * ``response.audio.delta`` -- produces :class:`AudioFrame`.
            * ``input_audio_buffer.speech_started`` -- :class:`SpeechStarted`.
            * ``response.done`` -- :class:`ResponseDone`.
            * ``response.output_item.added`` / ``.done`` for function calls
              -- :class:`ToolCall` (``start`` / ``end``).
            * ``error`` -- :class:`ErrorEvent`.

        Everything else (session, transcript, rate limit events...) becomes
        a :class:`RawMessage`.
        """
        msg = self._parse_message(raw)
        try:
            return self._to_events(msg)
        except ValidationError as e:
            raise self._invalid(msg, e) from e

    def _to_events(self, msg: dict[str, Any]) -> list[AnyEvent]:
        msg_type = self._require(msg, "type")

        if msg_type in AUDIO_DELTA_TYPES:
            delta = self._require(msg, "delta")
            return [
                AudioFrame(
                    side=Side.REALTIME,
                    format=self.audio_format,
                    data=codecs.decode(delta, self.audio_format),
                    item_id=msg.get("item_id", ""),
                )
            ]

        if msg_type == "input_audio_buffer.speech_started":
            return [
                SpeechStarted(
                    audio_start_ms=self._optional_int(msg, "audio_start_ms") or 0,
                    item_id=msg.get("item_id", ""),
                )
            ]

        if msg_type == "response.done":
            return [ResponseDone(response=self._optional_dict(msg, "response"))]

        if msg_type in ("response.output_item.added", "response.output_item.done"):
            item = self._optional_dict(msg, "item")
            if item.get("type") == "function_call":
                return [
                    ToolCall(
                        phase="start" if msg_type.endswith("added") else "end",
                        tool_call_id=item.get("call_id", ""),
                        name=item.get("name", ""),
                        arguments=item.get("arguments", "") or "",
                    )
                ]

        if msg_type == "error":
            error = self._optional_dict(msg, "error")
            return [
                ErrorEvent(
                    side=Side.REALTIME,
                    code=str(error.get("code") or error.get("type") or "realtime_error"),
                    message=str(error.get("message", "")),
                    recoverable=True,
                )
            ]

        return [RawMessage(side=Side.REALTIME, message_type=msg_type, payload=msg)]

    # ------------------------------------------------------------------
    # Serialization (StreamBridge events -> client events)
    # ------------------------------------------------------------------

    async def serialize(self, event: AnyEvent) -> str | None:
        """Convert an event to a realtime client event.

        Supported outbound events:
            * :class:`AudioFrame` -- ``input_audio_buffer.append``.
            * :class:`FormatNegotiated` -- ``session.update``.
            * :class:`ResponseCreate` -- ``response.create``.
            * :class:`Truncate` -- ``conversation.item.truncate``.
        """
        message: dict[str, Any]

        if isinstance(event, AudioFrame):
            message = {
                "type": "input_audio_buffer.append",
                "audio": codecs.encode(event.data, self.audio_format),
            }
        elif isinstance(event, FormatNegotiated):
            message = {"type": "session.update", "session": event.session}
        elif isinstance(event, ResponseCreate):
            message = {"type": "response.create"}
            if event.response:
                message["response"] = event.response
        elif isinstance(event, Truncate):
            message = {
                "type": "conversation.item.truncate",
                "item_id": event.item_id,
                "content_index": event.content_index,
                "audio_end_ms": event.audio_end_ms,
            }
        else:
            return None

        return json.dumps(message)
