"""
Utterance buffering and turn-end detection.

`UtteranceBuffer` holds the mu-law chunks of the caller's current turn, from
speech onset up to the end-of-turn silence (trailing silence included).
`PendingAudio` is the side buffer that collects caller speech while a turn is
being processed.
"""

from __future__ import annotations

import time
from typing import Callable, List, Optional

from src.callcore.audio import TWILIO_SAMPLE_RATE


class UtteranceBuffer:
    """
    Chunks of the in-progress utterance with a hard byte cap.

    `byte_length` always equals the summed length of `chunks` and never
    exceeds `max_bytes`: a chunk that would overflow the cap is refused and
    the caller is expected to end the turn.
    """

    def __init__(self, max_bytes: int, clock: Callable[[], float] = time.monotonic):
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self.max_bytes = max_bytes
        self._clock = clock
        self.chunks: List[bytes] = []
        self.byte_length = 0
        self.speech_started_at: Optional[float] = None
        self.silence_started_at: Optional[float] = None

    def __len__(self) -> int:
        return self.byte_length

    @property
    def is_empty(self) -> bool:
        return self.byte_length == 0

    def begin(self, now: Optional[float] = None) -> None:
        """Start a new utterance at speech onset."""
        self.clear()
        self.speech_started_at = self._clock() if now is None else now

    def would_overflow(self, chunk: bytes) -> bool:
        return self.byte_length + len(chunk) > self.max_bytes

    def append(self, chunk: bytes, *, is_speech: bool, now: Optional[float] = None) -> bool:
        """
        Append a classified chunk.

        Speech clears the silence run; silence starts it if not already running.

        Returns:
            False if the chunk was refused because it would exceed the cap
        """
        if self.would_overflow(chunk):
            return False

        self.chunks.append(chunk)
        self.byte_length += len(chunk)

        if is_speech:
            self.silence_started_at = None
        elif self.silence_started_at is None:
            self.silence_started_at = self._clock() if now is None else now
        return True

    def start_silence(self, now: Optional[float] = None) -> None:
        """Start the silence run now unless one is already running."""
        if self.silence_started_at is None:
            self.silence_started_at = self._clock() if now is None else now

    def speech_duration_ms(self, now: Optional[float] = None) -> float:
        if self.speech_started_at is None:
            return 0.0
        now = self._clock() if now is None else now
        return (now - self.speech_started_at) * 1000

    def silence_duration_ms(self, now: Optional[float] = None) -> float:
        if self.silence_started_at is None:
            return 0.0
        now = self._clock() if now is None else now
        return (now - self.silence_started_at) * 1000

    def turn_ended(
        self,
        *,
        silence_trigger_ms: float,
        min_speech_ms: float,
        now: Optional[float] = None,
    ) -> bool:
        """
        Dual end-of-turn condition.

        Silence must have run for `silence_trigger_ms` AND the utterance must
        span at least `min_speech_ms` since onset.
        """
        if self.silence_started_at is None or self.speech_started_at is None:
            return False
        now = self._clock() if now is None else now
        return (
            self.silence_duration_ms(now) >= silence_trigger_ms
            and self.speech_duration_ms(now) >= min_speech_ms
        )

    def take(self) -> bytes:
        """Return the assembled utterance and reset the buffer."""
        audio = b"".join(self.chunks)
        self.clear()
        return audio

    def clear(self) -> None:
        self.chunks = []
        self.byte_length = 0
        self.speech_started_at = None
        self.silence_started_at = None


class PendingAudio:
    """Bounded side buffer for caller speech that arrives mid-processing."""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self._chunks: List[bytes] = []
        self.byte_length = 0
        self.dropped_bytes = 0

    def __len__(self) -> int:
        return self.byte_length

    def __bool__(self) -> bool:
        return self.byte_length > 0

    @property
    def duration_ms(self) -> float:
        return self.byte_length * 1000 / TWILIO_SAMPLE_RATE

    def append(self, chunk: bytes) -> bool:
        if self.byte_length + len(chunk) > self.max_bytes:
            self.dropped_bytes += len(chunk)
            return False
        self._chunks.append(chunk)
        self.byte_length += len(chunk)
        return True

    def drain(self) -> List[bytes]:
        chunks = self._chunks
        self._chunks = []
        self.byte_length = 0
        return chunks

    def clear(self) -> None:
        self._chunks = []
        self.byte_length = 0
        self.dropped_bytes = 0
