"""
Per-call session state machine.

Owns the turn-taking loop for one phone call:
inbound audio -> VAD -> utterance buffer -> (turn end) -> transcribe ->
language lock -> translate -> reason -> translate back -> speak.

All handlers run on one asyncio event loop. State is only mutated in the
synchronous stretches between awaits, so a media frame can never observe a
half-finished transition. Inbound audio handling is synchronous and never
waits on the pipeline, which runs in its own task.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Coroutine, Deque, Dict, FrozenSet, Optional, Set

import structlog

from src.callcore.cancellation import CancellationToken
from src.callcore.config import Config, get_config
from src.callcore.gateway import AIGateway, ConversationTurn, Role, create_gateway
from src.callcore.language import (
    GREETING_TEXT,
    LANGUAGE_ACK_TEXT,
    RECOVERY_TEXT,
    LanguageLock,
    language_name,
)
from src.callcore.output import AudioOutputTransport
from src.callcore.twilio_protocol import (
    TwilioEventType,
    TwilioProtocolHandler,
    parse_twilio_message,
)
from src.callcore.utterance import PendingAudio, UtteranceBuffer
from src.callcore.vad import VoiceActivityDetector

logger = structlog.get_logger(__name__)

SendMessage = Callable[[str], Awaitable[None]]

_LOG_TEXT_LIMIT = 120


class CallState(str, Enum):
    """
    Turn-taking state of a call.

    SPEAKING normally ends in LISTENING, or RECORDING on barge-in. The one
    exception is SPEAKING -> PROCESSING: the first-turn language
    acknowledgement is spoken mid-pipeline and hands control back to
    PROCESSING so the same utterance can still be answered.
    """
    IDLE = "idle"
    GREETING = "greeting"
    LISTENING = "listening"
    RECORDING = "recording"
    PROCESSING = "processing"
    SPEAKING = "speaking"


# IDLE is reachable from every state (call teardown) and is not listed here.
ALLOWED_TRANSITIONS: Dict[CallState, FrozenSet[CallState]] = {
    CallState.IDLE: frozenset({CallState.GREETING}),
    CallState.GREETING: frozenset({CallState.SPEAKING, CallState.LISTENING}),
    CallState.LISTENING: frozenset({CallState.RECORDING}),
    CallState.RECORDING: frozenset({CallState.PROCESSING, CallState.LISTENING}),
    CallState.PROCESSING: frozenset({CallState.SPEAKING, CallState.LISTENING}),
    # SPEAKING -> PROCESSING: see CallState.
    CallState.SPEAKING: frozenset({CallState.LISTENING, CallState.RECORDING, CallState.PROCESSING}),
}


def is_allowed_transition(current: CallState, target: CallState) -> bool:
    return target == current or target == CallState.IDLE or target in ALLOWED_TRANSITIONS[current]


class IllegalTransitionError(RuntimeError):
    """A transition outside the allowed table was attempted."""

    def __init__(self, current: CallState, target: CallState):
        super().__init__(f"Illegal transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class SpeakOutcome(str, Enum):
    """How a speak operation ended."""
    COMPLETED = "completed"  # all audio sent and the completion mark emitted
    CANCELLED = "cancelled"  # barge-in or teardown
    EMPTY = "empty"  # nothing to play
    FAILED = "failed"  # synthesis or send raised
    SKIPPED = "skipped"  # call already over


def _truncate(text: str, limit: int = _LOG_TEXT_LIMIT) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


class CallSession:
    """
    State for one active call.

    Created on WebSocket connect, torn down on `stop` or disconnect. Nothing
    here is shared with other calls.
    """

    def __init__(
        self,
        send_message: SendMessage,
        gateway: AIGateway,
        *,
        config: Optional[Config] = None,
        is_open: Optional[Callable[[], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or get_config()
        self.gateway = gateway
        self._clock = clock

        self.protocol = TwilioProtocolHandler()
        self.transport = AudioOutputTransport(
            send_message,
            self.protocol,
            is_open=is_open,
            frame_interval_ms=self.config.outbound_frame_interval_ms,
            prebuffer_frames=self.config.outbound_prebuffer_frames,
        )
        self.vad = VoiceActivityDetector(
            threshold=self.config.energy_threshold,
            barge_in_factor=self.config.barge_in_factor,
        )

        self.state = CallState.IDLE
        self.utterance = UtteranceBuffer(self.config.max_utterance_bytes, clock=clock)
        self.pending = PendingAudio(self.config.max_utterance_bytes)
        self.language = LanguageLock(
            working_language=self.config.working_language,
            fallback_language=self.config.fallback_language,
        )
        self.history: Deque[ConversationTurn] = deque(maxlen=self.config.max_history_turns)
        self.turn_count = 0
        self.interruptions = 0
        self.interrupt_requested = False
        self.output_token: Optional[CancellationToken] = None

        self._log = logger
        self._started_at: Optional[float] = None
        self._stopped = False
        self._silence_task: Optional[asyncio.Task] = None
        self._pipeline_task: Optional[asyncio.Task] = None
        self._greeting_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()

    @property
    def call_sid(self) -> str:
        return self.protocol.call_sid

    @property
    def stream_sid(self) -> str:
        return self.protocol.stream_sid

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def _thinking_pause(self) -> float:
        return self.config.thinking_pause_ms / 1000.0

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, target: CallState, reason: str = "") -> None:
        current = self.state
        if target == current:
            return
        if not is_allowed_transition(current, target):
            self._log.error(
                "Illegal state transition",
                from_state=current.value,
                to_state=target.value,
                reason=reason,
            )
            raise IllegalTransitionError(current, target)

        self.state = target
        self._log.debug("State transition", from_state=current.value, to_state=target.value, reason=reason)

        if current == CallState.RECORDING:
            self._stop_silence_monitor()
        if target == CallState.RECORDING:
            self._start_silence_monitor()

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Greet the caller, then start listening."""
        if self.state != CallState.IDLE or self._stopped:
            self._log.warning("Session already started", state=self.state.value)
            return

        self._started_at = time.time()
        self._transition(CallState.GREETING, "call_start")
        greeting = GREETING_TEXT.format(company=self.config.company_name)
        outcome = await self.speak(greeting)

        # A barge-in over the greeting leaves us RECORDING; keep that.
        if self.state in (CallState.GREETING, CallState.SPEAKING):
            self._transition(CallState.LISTENING, "greeting_done")
        self._log.info("Greeting finished", outcome=outcome.value, state=self.state.value)

    async def stop(self) -> None:
        """Tear the session down; safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True

        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._pipeline_task, self._greeting_task, self._silence_task, *self._background_tasks)
            if task is not None and not task.done() and task is not current
        ]

        if self.output_token is not None:
            self.output_token.cancel("call_ended")
        self._transition(CallState.IDLE, "call_ended")
        self.transport.close()

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self.utterance.clear()
        self.pending.clear()
        self.history.clear()

        stream_state = self.protocol.stream_state
        duration = time.time() - self._started_at if self._started_at else 0.0
        self._log.info(
            "Call ended",
            metrics={
                "duration_seconds": round(duration, 2),
                "turns": self.turn_count,
                "interruptions": self.interruptions,
                "language": self.language.code,
                "frames_sent": self.transport.frames_sent,
                "marks_sent": self.transport.marks_sent,
                "mark_rtt_ms": round(stream_state.avg_mark_rtt_ms, 2) if stream_state else 0.0,
            },
        )

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Args:
            raw_message: Raw JSON message string
        """
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            self._log.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            self._log.debug("Twilio connected")

        elif event_type == TwilioEventType.START:
            self.protocol.handle_start(event)
            self._log = logger.bind(call_sid=event.call_sid, stream_sid=event.stream_sid)
            if self._greeting_task is None:
                self._greeting_task = asyncio.create_task(self.start(), name="greeting")

        elif event_type == TwilioEventType.MEDIA:
            if event.payload:
                self.handle_audio(event.payload)

        elif event_type == TwilioEventType.MARK:
            ack = self.protocol.handle_mark(event)
            if not ack.stale:
                self.handle_mark(ack.name)

        elif event_type == TwilioEventType.STOP:
            self.protocol.handle_stop()
            await self.stop()

    def handle_audio(self, chunk: bytes) -> None:
        """Route one inbound mu-law frame according to the current state."""
        if not chunk or self._stopped:
            return

        state = self.state
        if state in (CallState.IDLE, CallState.GREETING):
            return

        if state == CallState.SPEAKING:
            if self.vad.is_speech(chunk, during_playback=True):
                self.interrupt(chunk)
            return

        is_speech = self.vad.is_speech(chunk)

        if state == CallState.PROCESSING:
            if is_speech and not self.pending.append(chunk):
                self._log.debug("Pending buffer full, dropping chunk", dropped_bytes=self.pending.dropped_bytes)
            return

        if state == CallState.LISTENING:
            if is_speech:
                self._begin_recording(chunk, reason="speech_detected")
            return

        self._append_to_utterance(chunk, is_speech=is_speech)

    def handle_mark(self, name: str) -> bool:
        """
        Playback-finished acknowledgement.

        Only the completion mark of the current playback generation counts,
        and only while still SPEAKING without an interruption.
        """
        if self.state != CallState.SPEAKING or self.interrupt_requested:
            return False
        if not self.transport.is_current_mark(name):
            self._log.debug("Ignoring foreign mark", mark_name=name)
            return False
        self._transition(CallState.LISTENING, "playback_finished")
        return True

    # ------------------------------------------------------------------
    # Recording & turn end
    # ------------------------------------------------------------------

    def _begin_recording(self, first_chunk: bytes, *, reason: str) -> None:
        now = self._clock()
        self._transition(CallState.RECORDING, reason)
        self.utterance.begin(now - self.pending.duration_ms / 1000.0)
        for chunk in self.pending.drain():
            self.utterance.append(chunk, is_speech=True, now=now)
        self._append_to_utterance(first_chunk, is_speech=True, now=now)

    def _append_to_utterance(self, chunk: bytes, *, is_speech: bool, now: Optional[float] = None) -> None:
        if self.utterance.append(chunk, is_speech=is_speech, now=now):
            return
        self._log.info("Utterance reached maximum length, ending turn", bytes=self.utterance.byte_length)
        if is_speech:
            self.pending.append(chunk)
        self.end_turn(reason="max_length")

    def _resume_from_pending(self) -> None:
        """Start a recording from speech that arrived while processing."""
        if self.state != CallState.LISTENING or not self.pending or self._stopped:
            return
        now = self._clock()
        duration_ms = self.pending.duration_ms
        self._transition(CallState.RECORDING, "pending_speech")
        self.utterance.begin(now - duration_ms / 1000.0)
        for chunk in self.pending.drain():
            if not self.utterance.append(chunk, is_speech=True, now=now):
                break
        self.utterance.start_silence(now)
        self._log.debug("Resumed recording from pending audio", pending_ms=round(duration_ms))

    def _start_silence_monitor(self) -> None:
        self._stop_silence_monitor()
        self._silence_task = asyncio.create_task(self._silence_monitor(), name="silence_monitor")

    def _stop_silence_monitor(self) -> None:
        task = self._silence_task
        self._silence_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _silence_monitor(self) -> None:
        interval = self.config.silence_check_interval_ms / 1000.0
        while self.state == CallState.RECORDING:
            await asyncio.sleep(interval)
            if self.check_turn_end():
                return

    def check_turn_end(self) -> bool:
        """Evaluate the end-of-turn condition; True when the turn was ended."""
        if self.state != CallState.RECORDING:
            return False
        if not self.utterance.turn_ended(
            silence_trigger_ms=self.config.silence_trigger_ms,
            min_speech_ms=self.config.min_speech_ms,
        ):
            return False
        self.end_turn(reason="silence")
        return True

    def end_turn(self, reason: str = "silence") -> bool:
        """
        RECORDING -> PROCESSING and hand the utterance to the pipeline.

        Returns:
            True if a pipeline run was scheduled
        """
        if self.state != CallState.RECORDING:
            return False

        speech_ms = self.utterance.speech_duration_ms()
        audio = self.utterance.take()
        self._transition(CallState.PROCESSING, reason)

        if len(audio) < self.config.min_audio_bytes:
            self._log.debug("Utterance too short, discarding", bytes=len(audio), reason=reason)
            self._transition(CallState.LISTENING, "short_utterance")
            self._resume_from_pending()
            return False

        self._log.info("Turn ended", reason=reason, bytes=len(audio), speech_ms=round(speech_ms))
        self._pipeline_task = asyncio.create_task(self._run_pipeline(audio), name="pipeline")
        return True

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run_pipeline(self, audio: bytes) -> None:
        try:
            await self._process_utterance(audio)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error("Pipeline failed", error=str(e), error_type=type(e).__name__, state=self.state.value)
            await self._recover()
        finally:
            self._resume_from_pending()

    async def _process_utterance(self, audio: bytes) -> None:
        started = time.time()
        result = await self.gateway.transcribe(audio)
        text = (result.text or "").strip()
        if not text:
            self._log.info("No speech recognized")
            self._transition(CallState.LISTENING, "empty_transcript")
            return

        first_turn = not self.language.is_locked
        language = self.language.lock(result.detected_language)
        working = self.language.working_language
        self._log.info("Caller said", transcript=_truncate(text), language=language)

        if first_turn and language != working:
            ack = LANGUAGE_ACK_TEXT.format(language=language_name(language))
            ack = await self.gateway.translate(ack, working, language) or ack
            await self.speak(ack, resume_state=CallState.PROCESSING)
            if self.state != CallState.PROCESSING:
                # Interrupted; the caller's new utterance replaces this one.
                return

        query = text
        if self.language.needs_translation:
            query = (await self.gateway.translate(text, language, working)).strip()
            if not query:
                self._transition(CallState.LISTENING, "empty_translation")
                return

        reply = (await self.gateway.reason(query, tuple(self.history))).strip()
        if not reply:
            self._transition(CallState.LISTENING, "empty_reply")
            return

        self.history.append(ConversationTurn(role=Role.USER, text=query))
        self.history.append(ConversationTurn(role=Role.AGENT, text=reply))

        spoken = reply
        if self.language.needs_translation:
            spoken = (await self.gateway.translate(reply, working, language)).strip()
            if not spoken:
                self._transition(CallState.LISTENING, "empty_translation")
                return

        self.turn_count += 1
        self._log.info(
            "Agent reply",
            turn=self.turn_count,
            reply=_truncate(spoken),
            processing_ms=round((time.time() - started) * 1000, 2),
        )
        await self.speak(spoken)

    async def _recover(self) -> None:
        """Best-effort "please repeat"; always ends in LISTENING."""
        if self.state not in (CallState.PROCESSING, CallState.SPEAKING):
            return

        text = RECOVERY_TEXT
        language = self.language.current
        if language != self.language.working_language:
            try:
                text = await self.gateway.translate(RECOVERY_TEXT, self.language.working_language, language) or RECOVERY_TEXT
            except Exception as e:
                self._log.warning("Recovery prompt translation failed", error=str(e))

        if self.state not in (CallState.PROCESSING, CallState.SPEAKING):
            return
        outcome = await self.speak(text)
        if self.state in (CallState.PROCESSING, CallState.SPEAKING):
            self._transition(CallState.LISTENING, "recovered")
        self._log.info("Recovery prompt finished", outcome=outcome.value, state=self.state.value)

    # ------------------------------------------------------------------
    # Speaking & barge-in
    # ------------------------------------------------------------------

    async def speak(self, text: str, *, resume_state: Optional[CallState] = None) -> SpeakOutcome:
        """
        Synthesize and play `text`.

        Enters SPEAKING with a fresh cancellation token, waits the thinking
        pause, synthesizes, streams the frames and emits the completion mark.
        A barge-in at any point aborts without raising. On normal completion
        the session moves to `resume_state` (LISTENING by default).
        """
        if self._stopped or self.state == CallState.IDLE:
            return SpeakOutcome.SKIPPED

        self._transition(CallState.SPEAKING, "speak")
        self.interrupt_requested = False
        # A late echo of the previous playback's mark must not end this one.
        self.transport.forget_last_mark()
        token = CancellationToken()
        self.output_token = token
        language = self.language.current

        try:
            if await token.wait(self._thinking_pause):
                return SpeakOutcome.CANCELLED

            audio = await self.gateway.synthesize(text, language) if text and text.strip() else b""
            if token.cancelled or self.interrupt_requested:
                self._log.debug("Discarding synthesized audio after interruption", bytes=len(audio))
                return SpeakOutcome.CANCELLED

            if not audio:
                self._log.debug("Nothing to play", chars=len(text or ""))
                self._finish_speaking(resume_state, "empty_audio")
                return SpeakOutcome.EMPTY

            result = await self.transport.send_audio(audio, token)
            if token.cancelled or self.interrupt_requested:
                return SpeakOutcome.CANCELLED
            if not result.completed:
                self._log.warning("Connection closed while speaking", frames_sent=result.frames_sent)
                self._finish_speaking(resume_state, "connection_closed")
                return SpeakOutcome.SKIPPED

            await self.transport.send_mark()
            self._finish_speaking(resume_state, "spoken")
            return SpeakOutcome.COMPLETED
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error("Speaking failed", error=str(e), error_type=type(e).__name__)
            if self.state == CallState.SPEAKING:
                self._transition(CallState.LISTENING, "speak_failed")
            return SpeakOutcome.FAILED
        finally:
            if self.output_token is token:
                self.output_token = None

    def _finish_speaking(self, resume_state: Optional[CallState], reason: str) -> None:
        if self.state == CallState.SPEAKING:
            self._transition(resume_state or CallState.LISTENING, reason)

    def interrupt(self, chunk: bytes) -> bool:
        """
        Barge-in: stop playback and start recording with `chunk`.

        Repeated calls for the same playback do nothing.
        """
        if self.state != CallState.SPEAKING:
            return False
        token = self.output_token
        if token is None or not token.cancel("barge_in"):
            return False

        self.interrupt_requested = True
        self.interruptions += 1
        self._log.info("Barge-in detected", energy=round(self.vad.energy(chunk), 1), interruptions=self.interruptions)
        self._spawn(self.transport.clear(), "clear")
        self._begin_recording(chunk, reason="barge_in")
        return True


def create_session(
    send_message: SendMessage,
    *,
    config: Optional[Config] = None,
    gateway: Optional[AIGateway] = None,
    is_open: Optional[Callable[[], bool]] = None,
) -> CallSession:
    """
    Create a session for a new call connection.

    Args:
        send_message: Function to send messages to the Twilio WebSocket
        gateway: Shared AI gateway (built from config when omitted)

    Returns:
        A session waiting for the Twilio `start` event
    """
    config = config or get_config()
    return CallSession(
        send_message,
        gateway or create_gateway(config),
        config=config,
        is_open=is_open,
    )
