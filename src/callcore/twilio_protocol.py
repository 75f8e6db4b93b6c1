"""
Twilio Media Streams wire protocol.

Inbound events (JSON text frames):
- connected: socket is up, nothing else to read
- start: carries streamSid, callSid and the inbound media format
- media: one base64 mu-law 8kHz frame
- mark: echo of a mark we sent, once the audio queued before it has played
- stop: the call is over

Outbound messages:
- media: base64 mu-law 8kHz audio for playback
- mark: ask Twilio to echo a name back after everything queued so far
- clear: drop whatever audio Twilio still has buffered (barge-in)

The wire schema is declared as msgspec Structs; callers work with the plain
event dataclasses below.
"""

import base64
import binascii
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

MARK_RTT_SAMPLES = 20


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    STOP = "stop"


class MediaFormat(msgspec.Struct, frozen=True, rename="camel"):
    """Inbound media format announced in the start event."""
    encoding: str = "audio/x-mulaw"
    sample_rate: int = 8000
    channels: int = 1

    @property
    def is_mulaw_8k_mono(self) -> bool:
        return (
            "mulaw" in self.encoding.lower()
            and self.sample_rate == 8000
            and self.channels == 1
        )


# Inbound wire schema. Unknown keys (sequenceNumber, protocol, ...) are ignored.

class _StartBody(msgspec.Struct, rename="camel"):
    stream_sid: str = ""
    call_sid: str = ""
    account_sid: str = ""
    tracks: List[str] = []
    custom_parameters: Dict[str, Any] = {}
    media_format: MediaFormat = msgspec.field(default_factory=MediaFormat)


class _MediaBody(msgspec.Struct):
    track: str = "inbound"
    chunk: int = 0
    timestamp: Union[str, int] = ""
    payload: str = ""


class _MarkBody(msgspec.Struct):
    name: str = ""


class _Envelope(msgspec.Struct, rename="camel"):
    event: str = ""
    stream_sid: str = ""
    start: Optional[_StartBody] = None
    media: Optional[_MediaBody] = None
    mark: Optional[_MarkBody] = None


# Outbound wire schema; the tag becomes the "event" key.

class _MediaOut(msgspec.Struct):
    payload: str


class _MarkOut(msgspec.Struct):
    name: str


class _OutboundMedia(msgspec.Struct, rename="camel", tag_field="event", tag="media"):
    stream_sid: str
    media: _MediaOut


class _OutboundMark(msgspec.Struct, rename="camel", tag_field="event", tag="mark"):
    stream_sid: str
    mark: _MarkOut


class _OutboundClear(msgspec.Struct, rename="camel", tag_field="event", tag="clear"):
    stream_sid: str


# Twilio sends chunk numbers as strings; strict=False coerces them.
decoder = msgspec.json.Decoder(_Envelope, strict=False)
encoder = msgspec.json.Encoder()


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    custom_parameters: Dict[str, Any] = field(default_factory=dict)
    media_format: MediaFormat = field(default_factory=MediaFormat)


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str


@dataclass
class StreamState:
    """Transport state for an active Twilio media stream."""
    stream_sid: str = ""
    call_sid: str = ""
    account_sid: str = ""
    media_format: MediaFormat = field(default_factory=MediaFormat)
    is_active: bool = True
    playback_generation_id: int = 0
    mark_sequence: int = 0
    pending_marks: Dict[str, float] = field(default_factory=dict)  # mark_name -> send_time
    mark_rtt_samples: List[float] = field(default_factory=list)  # RTT samples in ms

    @property
    def avg_mark_rtt_ms(self) -> float:
        """Average mark round-trip time in ms."""
        if not self.mark_rtt_samples:
            return 0.0
        return sum(self.mark_rtt_samples) / len(self.mark_rtt_samples)


@dataclass(frozen=True)
class MarkAck:
    """Outcome of a mark echo from Twilio."""
    name: str
    stale: bool = False
    rtt_ms: float = 0.0


def _decode_payload(payload_b64: str) -> bytes:
    try:
        return base64.b64decode(payload_b64, validate=True)
    except (binascii.Error, ValueError):
        return b""


def _to_event(event_type: TwilioEventType, envelope: _Envelope) -> Any:
    if event_type == TwilioEventType.START:
        start = envelope.start or _StartBody()
        return TwilioStartEvent(
            stream_sid=envelope.stream_sid or start.stream_sid,
            call_sid=start.call_sid,
            account_sid=start.account_sid,
            tracks=list(start.tracks),
            custom_parameters=dict(start.custom_parameters),
            media_format=start.media_format,
        )
    if event_type == TwilioEventType.MEDIA:
        media = envelope.media or _MediaBody()
        return TwilioMediaEvent(
            stream_sid=envelope.stream_sid,
            track=media.track,
            chunk=media.chunk,
            timestamp=str(media.timestamp),
            payload=_decode_payload(media.payload),
        )
    if event_type == TwilioEventType.MARK:
        mark = envelope.mark or _MarkBody()
        return TwilioMarkEvent(stream_sid=envelope.stream_sid, name=mark.name)
    return envelope


def parse_twilio_message(raw_message: Union[str, bytes]) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Returns:
        (event_type, event). Start, media and mark events come back as the
        dataclasses above; connected and stop as the raw envelope.

    Raises:
        ValueError: If the message is not valid JSON, not an object, or has
            an event type we do not handle
    """
    try:
        envelope = decoder.decode(raw_message)
    except msgspec.ValidationError as e:
        raise ValueError(f"Malformed Twilio message: {e}") from e
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}") from e

    try:
        event_type = TwilioEventType(envelope.event)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=envelope.event)
        raise ValueError(f"Unknown event type: {envelope.event}")

    return event_type, _to_event(event_type, envelope)


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """Media message for one frame (160 bytes = 20ms at 8kHz)."""
    payload = base64.b64encode(audio_payload).decode("ascii")
    return encoder.encode(_OutboundMedia(stream_sid, _MediaOut(payload))).decode("utf-8")


def create_mark_message(stream_sid: str, name: str) -> str:
    """
    Create a Twilio mark message.

    Twilio echoes the mark back once all audio queued before it has played.
    """
    return encoder.encode(_OutboundMark(stream_sid, _MarkOut(name))).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """Clear message; Twilio discards the audio it has not played yet."""
    return encoder.encode(_OutboundClear(stream_sid)).decode("utf-8")


def create_connect_twiml(ws_url: str) -> str:
    """TwiML that bridges the call audio to our media stream endpoint."""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url="{ws_url}" />
    </Connect>
</Response>"""


class TwilioProtocolHandler:
    """
    Per-stream protocol state.

    Tracks the stream identifiers, the playback generation used to tell
    current marks from stale ones, and mark round-trip times.
    """

    def __init__(self):
        self.stream_state: Optional[StreamState] = None

    @property
    def stream_sid(self) -> str:
        return self.stream_state.stream_sid if self.stream_state else ""

    @property
    def call_sid(self) -> str:
        return self.stream_state.call_sid if self.stream_state else ""

    @property
    def is_active(self) -> bool:
        return self.stream_state is not None and self.stream_state.is_active

    def handle_start(self, event: TwilioStartEvent) -> None:
        self.stream_state = StreamState(
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
            account_sid=event.account_sid,
            media_format=event.media_format,
        )
        if not event.media_format.is_mulaw_8k_mono:
            logger.warning(
                "Unexpected inbound media format",
                encoding=event.media_format.encoding,
                sample_rate=event.media_format.sample_rate,
                channels=event.media_format.channels,
            )
        logger.info("Stream started", stream_sid=event.stream_sid, call_sid=event.call_sid)

    def handle_stop(self) -> None:
        if not self.stream_state:
            return
        self.stream_state.is_active = False
        logger.info(
            "Stream stopped",
            stream_sid=self.stream_state.stream_sid,
            call_sid=self.stream_state.call_sid,
        )

    def handle_mark(self, event: TwilioMarkEvent) -> MarkAck:
        """
        Match a mark echo against the marks we sent.

        Marks from an earlier playback generation (sent before a `clear`) are
        reported as stale, as is anything arriving before `start`.
        """
        state = self.stream_state
        if not state:
            return MarkAck(name=event.name, stale=True)

        generation = self._parse_mark_generation(event.name)
        if generation is not None and generation != state.playback_generation_id:
            logger.debug(
                "Ignoring stale mark acknowledgment",
                mark_name=event.name,
                mark_generation=generation,
                current_generation=state.playback_generation_id,
            )
            return MarkAck(name=event.name, stale=True)

        rtt_ms = 0.0
        sent_at = state.pending_marks.pop(event.name, None)
        if sent_at:
            rtt_ms = (time.time() - sent_at) * 1000
            state.mark_rtt_samples.append(rtt_ms)
            del state.mark_rtt_samples[:-MARK_RTT_SAMPLES]
        logger.debug("Mark acknowledged", mark_name=event.name, rtt_ms=round(rtt_ms, 2))
        return MarkAck(name=event.name, stale=False, rtt_ms=rtt_ms)

    def create_media(self, frame: bytes) -> str:
        """Media message for one outbound frame; empty before `start`."""
        if not self.stream_state:
            return ""
        return create_media_message(self.stream_state.stream_sid, frame)

    def create_mark(self, name: Optional[str] = None) -> tuple[str, str]:
        """
        Create a mark message.

        Args:
            name: Optional mark name (auto-generated as `g{gen}_m{seq}` if not provided)

        Returns:
            (mark_name, JSON message); both empty before the stream started
        """
        state = self.stream_state
        if not state:
            return "", ""

        if name is None:
            state.mark_sequence += 1
            name = f"g{state.playback_generation_id}_m{state.mark_sequence}"

        state.pending_marks[name] = time.time()
        return name, create_mark_message(state.stream_sid, name)

    def bump_playback_generation(self) -> int:
        """
        Start a new playback generation.

        Called together with a `clear`; every mark sent before it becomes stale.
        """
        state = self.stream_state
        if not state:
            return 0

        state.playback_generation_id += 1
        state.mark_sequence = 0
        state.pending_marks.clear()
        logger.debug("Playback generation bumped", playback_generation_id=state.playback_generation_id)
        return state.playback_generation_id

    def create_clear(self) -> str:
        if not self.stream_state:
            return ""
        logger.info("Clearing Twilio audio buffer", stream_sid=self.stream_state.stream_sid)
        return create_clear_message(self.stream_state.stream_sid)

    @staticmethod
    def _parse_mark_generation(mark_name: str) -> Optional[int]:
        """Generation id from a `g{gen}_m{seq}` mark name, None for other names."""
        if not isinstance(mark_name, str) or not mark_name.startswith("g"):
            return None
        try:
            return int(mark_name.split("_", 1)[0][1:])
        except ValueError:
            return None
