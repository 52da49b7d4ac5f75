"""Bridge session management for StreamBridge.

Each phone call gets one BridgeSession that tracks its lifecycle state,
negotiated audio format, interruption timing and counters. The SessionStore
keeps the sessions of a running server.
"""

from __future__ import annotations

import struct
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from streambridge.audio.codecs import MULAW_DECODE_TABLE
from streambridge.core.errors import UnsupportedFormatError
from streambridge.core.events import AudioFormat
from streambridge.interruption import InterruptionController


class SessionState(str, Enum):
    CONNECTING = "connecting"
    NEGOTIATING_FORMAT = "negotiating_format"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


_TRANSITIONS: dict[SessionState, tuple[SessionState, ...]] = {
    SessionState.CONNECTING: (SessionState.NEGOTIATING_FORMAT, SessionState.CLOSING),
    SessionState.NEGOTIATING_FORMAT: (SessionState.ACTIVE, SessionState.CLOSING),
    SessionState.ACTIVE: (SessionState.CLOSING,),
    SessionState.CLOSING: (SessionState.CLOSED,),
    SessionState.CLOSED: (),
}


# ---------------------------------------------------------------------------
# Audio energy helpers for local barge-in VAD
# ---------------------------------------------------------------------------


def compute_audio_energy(data: bytes, audio_format: AudioFormat | str = AudioFormat.G711_ULAW) -> float:
    """Compute RMS energy of an audio frame.

    Returns:
        RMS energy as a float (0.0 = silence, ~32768.0 = max).
    """
    if not data:
        return 0.0

    if AudioFormat(audio_format) is AudioFormat.G711_ULAW:
        total = 0
        for b in data:
            s = MULAW_DECODE_TABLE[b]
            total += s * s
        return (total / len(data)) ** 0.5

    n_samples = len(data) // 2
    if n_samples == 0:
        return 0.0
    samples = struct.unpack(f"<{n_samples}h", data[: n_samples * 2])
    total = sum(s * s for s in samples)
    return (total / n_samples) ** 0.5


@dataclass
class BargeInDetector:
    """Energy-based voice activity detector on caller audio.

    A telephony-side barge-in indicator for deployments that do not rely on
    the realtime API's server VAD. The caller's audio energy has to stay
    above a threshold for a number of consecutive frames before it counts
    as speech.

    Attributes:
        energy_threshold: RMS energy threshold to consider "speech" (0-32768).
        min_speech_frames: Consecutive above-threshold frames required
            (default 3, ~60ms at 20ms/frame).
        audio_format: Format of incoming frames.
    """

    energy_threshold: float = 200.0
    min_speech_frames: int = 3
    audio_format: AudioFormat = AudioFormat.G711_ULAW
    _consecutive_speech_frames: int = 0
    _triggered: bool = False

    def check(self, audio_data: bytes) -> bool:
        """Returns True once per speaking turn, when speech is detected."""
        if self._triggered:
            return False

        energy = compute_audio_energy(audio_data, self.audio_format)

        if energy >= self.energy_threshold:
            self._consecutive_speech_frames += 1
            if self._consecutive_speech_frames >= self.min_speech_frames:
                self._triggered = True
                logger.debug(
                    f"Barge-in VAD triggered: energy={energy:.0f} "
                    f"(threshold={self.energy_threshold}), "
                    f"frames={self._consecutive_speech_frames}"
                )
                return True
        else:
            self._consecutive_speech_frames = 0

        return False

    def reset(self) -> None:
        """Reset the detector for a new AI speaking turn."""
        self._consecutive_speech_frames = 0
        self._triggered = False


@dataclass
class BridgeSession:
    """A single phone call flowing through the bridge.

    The negotiated audio format is write-once: negotiating a different
    format later raises UnsupportedFormatError.
    """

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Identifiers from the gateway
    stream_sid: str = ""
    call_sid: str = ""
    custom_parameters: dict[str, Any] = field(default_factory=dict)

    state: SessionState = SessionState.CONNECTING
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None
    close_reason: str = ""

    interruption: InterruptionController = field(default_factory=InterruptionController)
    barge_in_detector: BargeInDetector | None = None

    # Counters
    audio_bytes_in: int = 0
    audio_bytes_out: int = 0
    frames_dropped: int = 0

    _audio_format: AudioFormat | None = None

    @property
    def audio_format(self) -> AudioFormat | None:
        return self._audio_format

    def negotiate(self, audio_format: AudioFormat) -> None:
        if self._audio_format is not None and self._audio_format is not audio_format:
            raise UnsupportedFormatError(
                f"{audio_format.value} (session already negotiated {self._audio_format.value})"
            )
        self._audio_format = audio_format
        self.interruption.audio_format = audio_format
        if self.barge_in_detector:
            self.barge_in_detector.audio_format = audio_format

    def transition(self, new_state: SessionState) -> bool:
        """Move to ``new_state`` if allowed from the current state."""
        if new_state not in _TRANSITIONS[self.state]:
            logger.debug(f"Session {self.session_id}: ignoring {self.state.value} -> {new_state.value}")
            return False
        logger.debug(f"Session {self.session_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state is SessionState.CLOSED:
            self.ended_at = time.time()
        return True

    @property
    def call_id(self) -> str:
        return self.call_sid or self.stream_sid

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.state in (SessionState.CLOSING, SessionState.CLOSED)

    @property
    def output_bytes_since_checkpoint(self) -> int:
        return self.interruption.output_bytes

    @property
    def output_ms_since_checkpoint(self) -> float:
        return self.interruption.output_ms

    @property
    def duration_ms(self) -> int:
        """Call duration in milliseconds."""
        end = self.ended_at or time.time()
        return int((end - self.started_at) * 1000)


class SessionStore:
    """Store for the active sessions of one server process."""

    def __init__(self) -> None:
        self._sessions: dict[str, BridgeSession] = {}

    def add(self, session: BridgeSession) -> BridgeSession:
        self._sessions[session.session_id] = session
        logger.info(f"Session created: {session.session_id}")
        return session

    def get(self, session_id: str) -> BridgeSession | None:
        return self._sessions.get(session_id)

    def get_by_stream_sid(self, stream_sid: str) -> BridgeSession | None:
        for session in self._sessions.values():
            if session.stream_sid == stream_sid:
                return session
        return None

    def remove(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session:
            logger.info(
                f"Session removed: {session.session_id} "
                f"(duration: {session.duration_ms}ms)"
            )

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if not s.is_closed)

    @property
    def all_sessions(self) -> list[BridgeSession]:
        return list(self._sessions.values())
