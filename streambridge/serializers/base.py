"""Base serializer interface for StreamBridge.

Both sides of the bridge implement this interface. Serializers are pure
message translators with no I/O - they convert between a wire format and
StreamBridge's unified event model.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from pydantic import ValidationError

from streambridge.core.errors import MalformedFrameError
from streambridge.core.events import AnyEvent, AudioFormat, Side


class BaseSerializer(ABC):
    """Abstract base class for protocol serializers.

    Key principles:
    - Serializers do NO I/O (no network calls, no file access)
    - Per-stream identifiers live on the serializer, call state lives in
      the BridgeSession
    - A frame that cannot be parsed raises MalformedFrameError; anything
      parseable but unmapped becomes a RawMessage
    """

    def __init__(self, audio_format: AudioFormat = AudioFormat.G711_ULAW) -> None:
        self.audio_format = audio_format

    @abstractmethod
    async def deserialize(self, raw: bytes | str | dict) -> list[AnyEvent]:
        """Parse a raw wire message into StreamBridge events.

        Args:
            raw: The raw message from the WebSocket. Could be:
                - bytes: UTF-8 JSON
                - str: JSON text message
                - dict: already-parsed JSON

        Returns:
            List of events. Empty list if the message should be ignored.

        Raises:
            MalformedFrameError: If the message is missing a required field.
        """
        ...

    @abstractmethod
    async def serialize(self, event: AnyEvent) -> str | None:
        """Convert an event to this protocol's wire format.

        Returns:
            The JSON text ready to send, or None if this protocol has no
            mapping for the event.
        """
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name of this serializer (e.g., 'twilio', 'openai')."""
        ...

    @property
    @abstractmethod
    def side(self) -> Side:
        """Which side of the bridge this protocol belongs to."""
        ...

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_message(raw: bytes | str | dict) -> dict[str, Any]:
        """Normalise the raw WebSocket frame into a dict."""
        if isinstance(raw, dict):
            return raw
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            msg = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedFrameError(f"Frame is not valid JSON: {e}", raw) from e
        if not isinstance(msg, dict):
            raise MalformedFrameError("Frame is not a JSON object", raw)
        return msg

    @staticmethod
    def _require(msg: dict[str, Any], *path: str, kind: type = str) -> Any:
        """Return ``msg[path[0]][path[1]]...`` or raise MalformedFrameError.

        The value must also be an instance of ``kind`` (a string unless
        told otherwise).
        """
        field = ".".join(path)
        value: Any = msg
        for key in path:
            if not isinstance(value, dict) or value.get(key) in (None, ""):
                raise MalformedFrameError(f"Frame is missing required field '{field}'", msg)
            value = value[key]
        if not isinstance(value, kind):
            raise MalformedFrameError(
                f"Field '{field}' must be {kind.__name__}, got {type(value).__name__}", msg
            )
        return value

    @staticmethod
    def _optional_int(msg: dict[str, Any], key: str) -> int | None:
        """Return ``msg[key]`` as an int, or None when the field is absent."""
        value = msg.get(key)
        if value is None or value == "":
            return None
        if isinstance(value, (bool, dict, list)):
            raise MalformedFrameError(f"Field '{key}' must be numeric, got {value!r}", msg)
        try:
            return int(value)
        except (TypeError, ValueError, OverflowError):
            raise MalformedFrameError(f"Field '{key}' must be numeric, got {value!r}", msg) from None

    @staticmethod
    def _optional_dict(msg: dict[str, Any], key: str) -> dict[str, Any]:
        """Return ``msg[key]`` if it is an object, ``{}`` when absent."""
        value = msg.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise MalformedFrameError(
                f"Field '{key}' must be an object, got {type(value).__name__}", msg
            )
        return value

    @staticmethod
    def _invalid(msg: dict[str, Any], error: ValidationError) -> MalformedFrameError:
        """Wrap a model validation failure as a per-frame error."""
        fields = ", ".join(".".join(str(p) for p in e["loc"]) for e in error.errors())
        return MalformedFrameError(f"Frame has invalid field values: {fields}", msg)
