"""Audio codec adapter for StreamBridge.

Both protocols carry audio as base64 text inside JSON. The adapter turns
raw audio bytes into that wire payload and back, validating the payload
against the session's negotiated format on the way. It never resamples:
``g711_ulaw`` stays 8kHz and ``pcm16`` stays 24kHz end to end.

G.711 mu-law lookup tables are kept for analysing caller audio (energy-based
barge-in detection works on PCM16 samples).
"""

from __future__ import annotations

import base64
import binascii
import struct

from loguru import logger

from streambridge.core.errors import MalformedFrameError, UnsupportedFormatError
from streambridge.core.events import AudioFormat

# ---------------------------------------------------------------------------
# G.711 mu-law lookup tables
# ---------------------------------------------------------------------------

_MULAW_BIAS = 0x84
_MULAW_CLIP = 32635


def _mulaw_encode_sample(sample: int) -> int:
    """Encode a single 16-bit PCM sample to mu-law (ITU-T G.711)."""
    if sample < 0:
        sign = 0x80
        sample = -sample
    else:
        sign = 0

    if sample > _MULAW_CLIP:
        sample = _MULAW_CLIP
    sample = sample + _MULAW_BIAS

    # Exponent is the position of the highest set bit above bit 7
    exponent = 7
    exp_mask = 0x4000
    for _ in range(8):
        if sample & exp_mask:
            break
        exponent -= 1
        exp_mask >>= 1

    mantissa = (sample >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


# mu-law byte -> PCM16 sample
#   t = ((mantissa << 3) + 0x84) << exponent
#   sample = t - 0x84
MULAW_DECODE_TABLE: list[int] = []
for _i in range(256):
    _v = ~_i & 0xFF
    _exponent = (_v >> 4) & 0x07
    _t = ((_v & 0x0F) << 3) + _MULAW_BIAS
    _t <<= _exponent
    _sample = _t - _MULAW_BIAS
    MULAW_DECODE_TABLE.append(-_sample if _v & 0x80 else _sample)

# 16-bit unsigned index -> mu-law byte
_MULAW_ENCODE_TABLE: list[int] = [
    _mulaw_encode_sample(_i if _i < 32768 else _i - 65536) for _i in range(65536)
]


def mulaw_decode(data: bytes) -> bytes:
    """Decode mu-law bytes to PCM16 little-endian bytes."""
    out = bytearray(len(data) * 2)
    for i, b in enumerate(data):
        struct.pack_into("<h", out, i * 2, MULAW_DECODE_TABLE[b])
    return bytes(out)


def mulaw_encode(data: bytes) -> bytes:
    """Encode PCM16 little-endian bytes to mu-law bytes."""
    n_samples = len(data) // 2
    out = bytearray(n_samples)
    for i in range(n_samples):
        sample = struct.unpack_from("<h", data, i * 2)[0]
        out[i] = _MULAW_ENCODE_TABLE[sample & 0xFFFF]
    return bytes(out)


# ---------------------------------------------------------------------------
# Format handling
# ---------------------------------------------------------------------------


def resolve_format(fmt: AudioFormat | str) -> AudioFormat:
    """Coerce a format name to :class:`AudioFormat`.

    Raises:
        UnsupportedFormatError: for anything but ``g711_ulaw`` / ``pcm16``.
    """
    if isinstance(fmt, AudioFormat):
        return fmt
    try:
        return AudioFormat(fmt)
    except ValueError:
        raise UnsupportedFormatError(fmt) from None


def duration_ms(nbytes: int, fmt: AudioFormat | str) -> float:
    """Playback duration of ``nbytes`` of audio in ``fmt``."""
    return nbytes / resolve_format(fmt).bytes_per_ms


def _validate(raw: bytes, fmt: AudioFormat) -> None:
    if len(raw) % fmt.sample_width:
        raise MalformedFrameError(
            f"{fmt.value} audio must be a whole number of "
            f"{fmt.sample_width}-byte samples (got {len(raw)} bytes)"
        )


def encode(raw: bytes, target_format: AudioFormat | str) -> str:
    """Encode raw audio bytes into a base64 wire payload for ``target_format``."""
    fmt = resolve_format(target_format)
    _validate(raw, fmt)
    return base64.b64encode(raw).decode("ascii")


def decode(payload: str | bytes, source_format: AudioFormat | str) -> bytes:
    """Decode a base64 wire payload in ``source_format`` into raw audio bytes."""
    fmt = resolve_format(source_format)
    if not isinstance(payload, (str, bytes)):
        raise MalformedFrameError(f"Audio payload must be base64 text, got {type(payload).__name__}")
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise MalformedFrameError(f"Invalid base64 audio payload: {e}") from e
    _validate(raw, fmt)
    return raw


class CodecAdapter:
    """Codec adapter bound to a session's negotiated format.

    Usage:
        adapter = CodecAdapter(AudioFormat.PCM16)
        payload = adapter.encode(pcm_bytes)
        pcm_bytes = adapter.decode(payload)
    """

    def __init__(self, audio_format: AudioFormat | str = AudioFormat.G711_ULAW) -> None:
        self.format = resolve_format(audio_format)
        logger.debug(
            f"Codec adapter using {self.format.value} "
            f"({self.format.sample_rate}Hz, {self.format.sample_width} byte/sample)"
        )

    def encode(self, raw: bytes) -> str:
        return encode(raw, self.format)

    def decode(self, payload: str | bytes) -> bytes:
        return decode(payload, self.format)

    def duration_ms(self, nbytes: int) -> float:
        return nbytes / self.format.bytes_per_ms

    @property
    def supported_formats(self) -> list[AudioFormat]:
        return list(AudioFormat)


# Default adapter (g711_ulaw)
codec_adapter = CodecAdapter()
