"""Audio format selection for a bridge session.

The format policy is handed to the bridge as a value. Explicit fields in
the session configuration win; anything left unset falls back to the
policy's default (``g711_ulaw``, the gateway's native telephony codec).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger

from streambridge.audio.codecs import resolve_format
from streambridge.core.errors import UnsupportedFormatError
from streambridge.core.events import AudioFormat


@dataclass(frozen=True)
class AudioFormatPolicy:
    """Resolves the input/output audio format fields of a session config."""

    default_format: AudioFormat = AudioFormat.G711_ULAW

    def __post_init__(self) -> None:
        object.__setattr__(self, "default_format", resolve_format(self.default_format))

    def resolve(self, partial_config: dict[str, Any] | None = None) -> dict[str, Any]:
        """Return a session config with both audio format fields filled in.

        Raises:
            UnsupportedFormatError: If a field names an unknown format, or the
                input and output formats differ (the bridge never transcodes
                between them).
        """
        config = dict(partial_config or {})
        input_format = resolve_format(config.get("input_audio_format") or self.default_format)
        output_format = resolve_format(config.get("output_audio_format") or self.default_format)
        if input_format is not output_format:
            raise UnsupportedFormatError(f"{input_format.value}->{output_format.value}")

        config["input_audio_format"] = input_format.value
        config["output_audio_format"] = output_format.value
        logger.debug(f"Audio format resolved: {input_format.value}")
        return config

    def negotiated_format(self, partial_config: dict[str, Any] | None = None) -> AudioFormat:
        return AudioFormat(self.resolve(partial_config)["input_audio_format"])
