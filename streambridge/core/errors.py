"""Error taxonomy for StreamBridge.

Per-frame errors (:class:`MalformedFrameError`, and
:class:`UnsupportedFormatError` when it hits a single mid-stream frame) are
isolated to that frame: the bridge logs them and drops the frame.
Connection-level errors end the session and are surfaced once on the
``error`` topic. Nothing is retried automatically.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all StreamBridge errors."""

    code = "bridge_error"
    fatal = True


class ConnectError(BridgeError):
    """The realtime connection could not be opened or negotiated."""

    code = "connect_error"


class MalformedFrameError(BridgeError):
    """A frame is missing a required field or cannot be parsed."""

    code = "malformed_frame"
    fatal = False

    def __init__(self, message: str, frame: object = None) -> None:
        super().__init__(message)
        self.frame = frame


class UnsupportedFormatError(BridgeError):
    """An audio format outside ``g711_ulaw`` / ``pcm16`` was requested."""

    code = "unsupported_format"

    def __init__(self, fmt: object) -> None:
        super().__init__(f"Unsupported audio format: {fmt!r}")
        self.format = fmt


class BackpressureExceededError(BridgeError):
    """A peer socket fell behind and its bounded outbox overflowed."""

    code = "backpressure_exceeded"

    def __init__(self, side: str, limit: int) -> None:
        super().__init__(f"Outbound queue for {side} side exceeded {limit} frames")
        self.side = side
        self.limit = limit
