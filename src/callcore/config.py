"""
Configuration management for the phone call core.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # AI gateway (OpenAI-compatible API)
    openai_api_key: str = ""
    openai_base_url: str = ""
    transcribe_model: str = "whisper-1"
    reasoning_model: str = "gpt-4o-mini"
    translation_model: str = "gpt-4o-mini"
    tts_model: str = "gpt-4o-mini-tts"
    tts_voice: str = "alloy"
    # Per-language overrides from TTS_VOICE_<LANG>, e.g. TTS_VOICE_HI=nova
    tts_voices: Dict[str, str] = field(default_factory=dict)
    gateway_max_retries: int = 2
    gateway_timeout_seconds: float = 20.0
    knowledge_path: str = "data/product-info.txt"

    # Language
    # - working_language is the language the reasoning model thinks in
    # - fallback_language is locked when transcription reports no language
    working_language: str = "en"
    fallback_language: str = "en"

    # Agent settings
    agent_name: str = "Ava"
    company_name: str = "the medical information service"
    max_history_turns: int = 20

    # Voice activity / turn taking
    energy_threshold: float = 350.0
    barge_in_factor: float = 1.5
    silence_trigger_ms: int = 1500
    min_speech_ms: int = 500
    min_audio_bytes: int = 2400
    max_utterance_seconds: int = 30
    silence_check_interval_ms: int = 100

    # Outbound audio
    thinking_pause_ms: int = 350
    outbound_frame_interval_ms: int = 20
    outbound_prebuffer_frames: int = 5

    @property
    def max_utterance_bytes(self) -> int:
        """Hard cap on a single utterance (mu-law 8kHz = 1 byte per sample)."""
        return self.max_utterance_seconds * 8000

    @property
    def barge_in_threshold(self) -> float:
        return self.energy_threshold * self.barge_in_factor

    def voice_for(self, language: str) -> str:
        return self.tts_voices.get(language, self.tts_voice)

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.knowledge_path:
            missing.append("KNOWLEDGE_PATH")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.energy_threshold <= 0:
            raise ConfigError(f"ENERGY_THRESHOLD must be positive, got {self.energy_threshold}")
        if self.barge_in_factor < 1.0:
            raise ConfigError(f"BARGE_IN_FACTOR must be >= 1.0, got {self.barge_in_factor}")
        if self.max_utterance_bytes < self.min_audio_bytes:
            raise ConfigError(
                "MAX_UTTERANCE_SECONDS is too small for MIN_AUDIO_BYTES "
                f"({self.max_utterance_bytes} < {self.min_audio_bytes})"
            )
        if self.silence_check_interval_ms <= 0:
            raise ConfigError("SILENCE_CHECK_INTERVAL_MS must be positive")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            transcribe_model=self.transcribe_model,
            reasoning_model=self.reasoning_model,
            translation_model=self.translation_model,
            tts_model=self.tts_model,
            tts_voice=self.tts_voice,
            tts_voices=self.tts_voices,
            knowledge_path=self.knowledge_path,
            working_language=self.working_language,
            energy_threshold=self.energy_threshold,
            barge_in_threshold=self.barge_in_threshold,
            silence_trigger_ms=self.silence_trigger_ms,
            min_speech_ms=self.min_speech_ms,
            max_utterance_seconds=self.max_utterance_seconds,
            agent_name=self.agent_name,
            openai_key_set=bool(self.openai_api_key),
            openai_base_url=self.openai_base_url or "default",
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_language(key: str, default: str) -> str:
    value = os.getenv(key, default).strip().lower()
    return value.split("-", 1)[0] or default



def _get_voice_map(prefix: str) -> Dict[str, str]:
    """Collect `<prefix><LANG>=voice` variables into a language -> voice map."""
    voices = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix) or not value.strip():
            continue
        language = key[len(prefix):].strip().lower().replace("_", "-").split("-", 1)[0]
        if language:
            voices[language] = value.strip()
    return voices

@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # AI gateway
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_base_url=os.getenv("OPENAI_BASE_URL", ""),
        transcribe_model=os.getenv("TRANSCRIBE_MODEL", "whisper-1"),
        reasoning_model=os.getenv("REASONING_MODEL", "gpt-4o-mini"),
        translation_model=os.getenv("TRANSLATION_MODEL", "gpt-4o-mini"),
        tts_model=os.getenv("TTS_MODEL", "gpt-4o-mini-tts"),
        tts_voice=os.getenv("TTS_VOICE", "alloy"),
        tts_voices=_get_voice_map("TTS_VOICE_"),
        gateway_max_retries=_get_int("GATEWAY_MAX_RETRIES", 2),
        gateway_timeout_seconds=_get_float("GATEWAY_TIMEOUT_SECONDS", 20.0),
        knowledge_path=os.getenv("KNOWLEDGE_PATH", "data/product-info.txt"),

        # Language
        working_language=_get_language("WORKING_LANGUAGE", "en"),
        fallback_language=_get_language("FALLBACK_LANGUAGE", "en"),

        # Agent settings
        agent_name=os.getenv("AGENT_NAME", "Ava"),
        company_name=os.getenv("COMPANY_NAME", "the medical information service"),
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 20),

        # Voice activity / turn taking
        energy_threshold=_get_float("ENERGY_THRESHOLD", 350.0),
        barge_in_factor=_get_float("BARGE_IN_FACTOR", 1.5),
        silence_trigger_ms=_get_int("SILENCE_TRIGGER_MS", 1500),
        min_speech_ms=_get_int("MIN_SPEECH_MS", 500),
        min_audio_bytes=_get_int("MIN_AUDIO_BYTES", 2400),
        max_utterance_seconds=_get_int("MAX_UTTERANCE_SECONDS", 30),
        silence_check_interval_ms=_get_int("SILENCE_CHECK_INTERVAL_MS", 100),

        # Outbound audio
        thinking_pause_ms=_get_int("THINKING_PAUSE_MS", 350),
        outbound_frame_interval_ms=_get_int("OUTBOUND_FRAME_INTERVAL_MS", 20),
        outbound_prebuffer_frames=_get_int("OUTBOUND_PREBUFFER_FRAMES", 5),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
