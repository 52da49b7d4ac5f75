"""Barge-in / interruption timing.

Every chunk of AI audio sent to the gateway is followed by a named mark.
The controller keeps those marks until the gateway echoes them back
(playback reached that point) or until the caller barges in.
Mark names carry a sequence number that never restarts within a session,
so an echo from a cleared segment cannot match a live mark.

On barge-in the bridge must:
1. Tell the gateway to drop audio it has buffered but not yet played
   (``clear``).
2. Tell the realtime API how much of the assistant item the caller
   actually heard (``conversation.item.truncate``), so its conversation
   state matches what was played.

Clock source: the gateway's ``media.timestamp`` (milliseconds since stream
start) on inbound caller audio. Caller audio flows continuously in real
time, so the latest timestamp is the best available "now" on the gateway's
playback clock. Elapsed playback is ``now - segment start``, capped at the
duration derived from the bytes actually sent (the caller cannot have heard
more than that). When no media timestamps have been seen yet, the offset of
the last acknowledged mark is used instead. Both are approximations; this
is not sample-accurate.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

from loguru import logger

from streambridge.core.events import AudioFormat, ClearAudio, Side, Truncate


@dataclass(frozen=True)
class InterruptionMark:
    """Checkpoint after a chunk of AI audio.

    ``offset_ms`` is the cumulative output duration of ``item_id`` at the end
    of the chunk.
    """

    name: str
    item_id: str
    offset_ms: float


@dataclass(frozen=True)
class Interruption:
    """The control pair emitted for one barge-in."""

    clear: ClearAudio
    truncate: Truncate


class InterruptionController:
    """Tracks in-flight AI audio and turns barge-in indicators into clear/truncate pairs."""

    def __init__(self, audio_format: AudioFormat = AudioFormat.G711_ULAW) -> None:
        self.audio_format = audio_format
        self._marks: deque[InterruptionMark] = deque()
        self._clock_ms: int | None = None
        self._segment_start_ms: int | None = None
        self._item_id = ""
        # Mark names stay unique for the whole session
        self._mark_seq = 0
        self._truncated: set[str] = set()
        self._output_bytes = 0
        self._output_ms = 0.0
        self._acked_ms = 0.0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_speaking(self) -> bool:
        """Whether AI audio is currently streaming out (marks outstanding)."""
        return bool(self._marks)

    @property
    def marks(self) -> list[InterruptionMark]:
        return list(self._marks)

    @property
    def item_id(self) -> str:
        return self._item_id

    @property
    def output_bytes(self) -> int:
        """AI audio bytes sent for the current item since the last checkpoint."""
        return self._output_bytes

    @property
    def output_ms(self) -> float:
        return self._output_ms

    def is_truncated(self, item_id: str) -> bool:
        """Whether ``item_id`` was cut off by a barge-in; its late audio must not play."""
        return item_id in self._truncated

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def on_media_timestamp(self, timestamp_ms: int) -> None:
        """Advance the gateway clock from an inbound ``media`` frame."""
        if self._clock_ms is None or timestamp_ms > self._clock_ms:
            self._clock_ms = timestamp_ms

    def on_output_audio(self, item_id: str, nbytes: int) -> InterruptionMark:
        """Record a chunk of AI audio about to be sent; returns the mark to send after it."""
        if not self._marks:
            self._reset()
            self._segment_start_ms = self._clock_ms
            self._item_id = item_id
        elif item_id != self._item_id:
            self._start_next_item(item_id)

        self._mark_seq += 1
        self._output_bytes += nbytes
        self._output_ms += nbytes / self.audio_format.bytes_per_ms

        mark = InterruptionMark(
            name=f"{item_id}:{self._mark_seq}",
            item_id=item_id,
            offset_ms=self._output_ms,
        )
        self._marks.append(mark)
        return mark

    def acknowledge(self, name: str) -> bool:
        """The gateway echoed mark ``name``: it and every older mark have played.

        Returns False for marks this controller does not know (stale marks
        from a cleared segment, or marks sent by someone else).
        """
        if not any(mark.name == name for mark in self._marks):
            return False

        while self._marks:
            mark = self._marks.popleft()
            if mark.item_id == self._item_id:
                self._acked_ms = mark.offset_ms
            if mark.name == name:
                break

        if not self._marks:
            logger.debug(f"Playback of {self._item_id} completed ({self._output_ms:.0f}ms)")
            self._reset()
        return True

    def elapsed_ms(self) -> int:
        """Approximate playback position within the current item."""
        if self._clock_ms is not None and self._segment_start_ms is not None:
            elapsed = float(self._clock_ms - self._segment_start_ms)
        else:
            elapsed = self._acked_ms
        return int(round(max(0.0, min(elapsed, self._output_ms))))

    def interrupt(self, call_id: str = "") -> Interruption | None:
        """Handle a barge-in indicator.

        Returns the clear/truncate pair, or None when no AI audio is in
        flight. Calling it again before new AI audio arrives returns None.
        """
        if not self._marks:
            logger.debug("Barge-in ignored: no AI audio in flight")
            return None

        audio_end_ms = self.elapsed_ms()
        item_id = self._item_id
        logger.info(
            f"Barge-in: truncating {item_id} at {audio_end_ms}ms "
            f"of {self._output_ms:.0f}ms sent"
        )
        if item_id:
            self._truncated.add(item_id)
        self._reset()

        return Interruption(
            clear=ClearAudio(side=Side.TELEPHONY, call_id=call_id),
            truncate=Truncate(
                call_id=call_id,
                item_id=item_id,
                content_index=0,
                audio_end_ms=audio_end_ms,
            ),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _start_next_item(self, item_id: str) -> None:
        # The new item plays once the previous one's queued audio has drained
        if self._segment_start_ms is not None:
            queued_until = self._segment_start_ms + int(self._output_ms)
            self._segment_start_ms = max(queued_until, self._clock_ms or 0)
        self._item_id = item_id
        self._output_bytes = 0
        self._output_ms = 0.0
        self._acked_ms = 0.0

    def _reset(self) -> None:
        self._marks.clear()
        self._segment_start_ms = None
        self._item_id = ""
        self._output_bytes = 0
        self._output_ms = 0.0
        self._acked_ms = 0.0

