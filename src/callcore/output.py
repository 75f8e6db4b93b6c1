"""
Outbound audio transport.

Slices mu-law audio into 20ms frames, paces them towards Twilio, emits the
completion mark, and sends `clear` on barge-in. Every send is a no-op once the
connection is closed; transport failures are logged, never raised.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from src.callcore.audio import TWILIO_FRAME_SIZE, chunk_audio
from src.callcore.cancellation import CancellationToken
from src.callcore.twilio_protocol import TwilioProtocolHandler

logger = structlog.get_logger(__name__)

SendMessage = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class SendResult:
    frames_sent: int
    completed: bool


class AudioOutputTransport:
    """
    Per-call outbound audio path.

    The first `prebuffer_frames` frames of a send go out back-to-back so the far
    end has a small jitter buffer; the rest follow a 20ms deadline schedule.
    `frame_interval_ms=0` disables pacing.
    """

    def __init__(
        self,
        send_message: SendMessage,
        protocol: TwilioProtocolHandler,
        *,
        is_open: Optional[Callable[[], bool]] = None,
        frame_size: int = TWILIO_FRAME_SIZE,
        frame_interval_ms: int = 20,
        prebuffer_frames: int = 5,
    ):
        self._send_message = send_message
        self._protocol = protocol
        self._is_open = is_open
        self._closed = False
        self.frame_size = frame_size
        self.frame_interval_ms = frame_interval_ms
        self.prebuffer_frames = max(0, prebuffer_frames)

        self.frames_sent = 0
        self.marks_sent = 0
        self.clears_sent = 0
        self.last_mark_name: Optional[str] = None

    @property
    def protocol(self) -> TwilioProtocolHandler:
        return self._protocol

    @property
    def is_open(self) -> bool:
        if self._closed or not self._protocol.is_active:
            return False
        if self._is_open is None:
            return True
        try:
            return bool(self._is_open())
        except Exception as e:
            logger.warning("Connection state check failed", error=str(e))
            return False

    def close(self) -> None:
        self._closed = True

    async def _send(self, message: str) -> bool:
        if not message or not self.is_open:
            return False
        try:
            await self._send_message(message)
            return True
        except Exception as e:
            # A failed write means the socket is gone; stop trying for this call.
            logger.warning("Outbound send failed, closing transport", error=str(e))
            self._closed = True
            return False

    async def send_audio(self, ulaw_bytes: bytes, token: CancellationToken) -> SendResult:
        """
        Stream mu-law audio as paced 20ms media frames.

        Stops before the next frame as soon as `token` is cancelled or the
        connection closes. Cancellation is not an error: the result simply
        reports `completed=False`.
        """
        if not ulaw_bytes:
            return SendResult(frames_sent=0, completed=True)

        frame_duration = self.frame_interval_ms / 1000.0
        next_send_time = time.monotonic()
        sent = 0

        for frame in chunk_audio(ulaw_bytes, self.frame_size):
            if token.cancelled or not self.is_open:
                break

            if frame_duration > 0 and sent >= self.prebuffer_frames:
                wait_time = next_send_time - time.monotonic()
                if wait_time > 0:
                    await asyncio.sleep(wait_time)
                # Re-check after the pause: a barge-in may have happened meanwhile.
                if token.cancelled or not self.is_open:
                    break

            if not await self._send(self._protocol.create_media(frame)):
                break

            sent += 1
            self.frames_sent += 1
            if sent == self.prebuffer_frames:
                next_send_time = time.monotonic() + frame_duration
            elif sent > self.prebuffer_frames:
                next_send_time += frame_duration
                # Falling more than two frames behind: reset the schedule.
                if time.monotonic() > next_send_time + 2 * frame_duration:
                    next_send_time = time.monotonic()
            await asyncio.sleep(0)

        total_frames = -(-len(ulaw_bytes) // self.frame_size)
        completed = sent == total_frames
        if not completed:
            logger.debug(
                "Audio send stopped early",
                frames_sent=sent,
                total_frames=total_frames,
                cancelled=token.cancelled,
                reason=token.reason,
            )
        return SendResult(frames_sent=sent, completed=completed)

    async def send_mark(self, name: Optional[str] = None) -> Optional[str]:
        """Emit a completion mark; returns its name, or None if nothing was sent."""
        if not self.is_open:
            return None
        mark_name, message = self._protocol.create_mark(name)
        if not await self._send(message):
            return None
        self.marks_sent += 1
        self.last_mark_name = mark_name
        return mark_name

    def is_current_mark(self, name: str) -> bool:
        return bool(name) and name == self.last_mark_name

    def forget_last_mark(self) -> None:
        """A new playback is starting; echoes of earlier marks no longer end it."""
        self.last_mark_name = None

    async def clear(self) -> None:
        """
        Ask the far end to drop audio it has buffered but not yet played.

        Marks sent before the clear belong to the old playback generation and
        will be ignored when they echo back.
        """
        self._protocol.bump_playback_generation()
        self.last_mark_name = None
        if await self._send(self._protocol.create_clear()):
            self.clears_sent += 1
