"""
Pytest configuration and fixtures.
"""

import dataclasses
import os
from typing import List, Optional, Sequence, Tuple
from unittest.mock import AsyncMock, patch

import numpy as np
import pytest

from src.callcore.gateway.base import AIGateway, ConversationTurn, TranscriptionResult


@pytest.fixture(autouse=True)
def mock_env_vars(tmp_path):
    """Mock environment variables for tests."""
    knowledge = tmp_path / "product-info.txt"
    knowledge.write_text("Examplinib 10 mg tablets. Take once daily with food.\n", encoding="utf-8")

    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "OPENAI_API_KEY": "test_openai_key",
        "KNOWLEDGE_PATH": str(knowledge),
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.callcore.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


def tone_chunk(amplitude: float, size: int = 160) -> bytes:
    """Mu-law chunk whose decoded samples alternate +/- amplitude."""
    from src.callcore.audio import samples_to_ulaw

    value = int(amplitude)
    samples = np.tile(np.array([value, -value], dtype=np.int16), size // 2)
    return samples_to_ulaw(samples)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms / 1000.0


class FakeGateway(AIGateway):
    """In-memory gateway that records every call."""

    def __init__(self) -> None:
        self.transcript = "What is the dose?"
        self.detected_language: Optional[str] = "en"
        self.reply = "Take one tablet daily."
        self.audio = b"\x7f" * 800
        self.errors: dict = {}

        self.transcribe_calls: List[bytes] = []
        self.translate_calls: List[Tuple[str, str, str]] = []
        self.reason_calls: List[Tuple[str, tuple]] = []
        self.synthesize_calls: List[Tuple[str, str]] = []

    def _maybe_fail(self, operation: str) -> None:
        error = self.errors.get(operation)
        if error is not None:
            raise error

    async def transcribe(self, audio_ulaw: bytes) -> TranscriptionResult:
        self.transcribe_calls.append(audio_ulaw)
        self._maybe_fail("transcribe")
        return TranscriptionResult(text=self.transcript, detected_language=self.detected_language)

    async def _translate(self, text: str, source: str, target: str) -> str:
        self.translate_calls.append((text, source, target))
        self._maybe_fail("translate")
        return f"[{target}] {text}"

    async def reason(self, query: str, history: Sequence[ConversationTurn]) -> str:
        self.reason_calls.append((query, tuple(history)))
        self._maybe_fail("reason")
        return self.reply

    async def synthesize(self, text: str, language: str) -> bytes:
        self.synthesize_calls.append((text, language))
        self._maybe_fail("synthesize")
        return self.audio


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def test_config():
    """Config with pacing and the thinking pause disabled."""
    from src.callcore.config import get_config

    return dataclasses.replace(
        get_config(),
        thinking_pause_ms=0,
        outbound_frame_interval_ms=0,
    )


@pytest.fixture
def make_session(fake_gateway, fake_clock, test_config):
    """Factory for a started-stream session wired to an AsyncMock socket."""
    from src.callcore.session import CallSession
    from src.callcore.twilio_protocol import TwilioStartEvent

    def _make(**overrides):
        config = dataclasses.replace(test_config, **overrides) if overrides else test_config
        send_message = AsyncMock()
        session = CallSession(send_message, fake_gateway, config=config, clock=fake_clock)
        session.protocol.handle_start(
            TwilioStartEvent(
                stream_sid="MZ123456",
                call_sid="CA789012",
                account_sid="AC345678",
                tracks=["inbound"],
            )
        )
        return session, send_message

    return _make


@pytest.fixture
def speech_chunk():
    """20ms chunk well above both VAD thresholds."""
    return tone_chunk(2000)


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def sample_pcm_audio():
    """Generate sample PCM audio (silence)."""
    return b"\x00\x00" * 160  # 20ms of silence at 8kHz


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    import json
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
            "mediaFormat": {
                "encoding": "audio/x-mulaw",
                "sampleRate": 8000,
                "channels": 1,
            },
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    import json
    import base64

    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    import json
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })


@pytest.fixture
def make_tone():
    return tone_chunk
