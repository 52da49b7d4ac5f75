"""Protocol message translator.

Binds a telephony serializer and a realtime serializer to one session's
negotiated audio format and decides which events may cross sides. Only
audio crosses: telephony ``media`` becomes ``input_audio_buffer.append``
and ``response.audio.delta`` becomes telephony ``media``. Every other event
is returned to the bridge for its own handling or for publication on the
wildcard channel, never written to the opposite socket.
"""

from __future__ import annotations

from streambridge.audio.codecs import resolve_format
from streambridge.core.events import AnyEvent, AudioFormat, AudioFrame, Side
from streambridge.serializers.base import BaseSerializer
from streambridge.serializers.realtime import RealtimeSerializer
from streambridge.serializers.twilio import TwilioSerializer


class ProtocolTranslator:
    """Maps telephony frames and realtime events to each other."""

    def __init__(
        self,
        telephony: BaseSerializer | None = None,
        realtime: BaseSerializer | None = None,
        audio_format: AudioFormat | str = AudioFormat.G711_ULAW,
    ) -> None:
        self.telephony = telephony or TwilioSerializer()
        self.realtime = realtime or RealtimeSerializer()
        self.audio_format = AudioFormat.G711_ULAW
        self.set_format(audio_format)

    def set_format(self, audio_format: AudioFormat | str) -> None:
        fmt = resolve_format(audio_format)
        self.audio_format = fmt
        self.telephony.audio_format = fmt
        self.realtime.audio_format = fmt

    # ------------------------------------------------------------------
    # Per-side parse / build
    # ------------------------------------------------------------------

    async def from_telephony(self, frame: bytes | str | dict) -> list[AnyEvent]:
        return await self.telephony.deserialize(frame)

    async def to_telephony(self, event: AnyEvent) -> str | None:
        return await self.telephony.serialize(event)

    async def from_realtime(self, message: bytes | str | dict) -> list[AnyEvent]:
        return await self.realtime.deserialize(message)

    async def to_realtime(self, event: AnyEvent) -> str | None:
        return await self.realtime.serialize(event)

    # ------------------------------------------------------------------
    # Cross-side forwarding
    # ------------------------------------------------------------------

    async def forward(self, event: AnyEvent) -> str | None:
        """Wire message for the opposite side, or None if ``event`` must not cross."""
        if not isinstance(event, AudioFrame):
            return None
        if event.side is Side.TELEPHONY:
            return await self.realtime.serialize(event)
        return await self.telephony.serialize(event)
