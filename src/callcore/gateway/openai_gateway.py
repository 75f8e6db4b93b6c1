"""
OpenAI-backed AI gateway.

- Speech-to-text: audio.transcriptions (verbose_json gives the detected language)
- Translation + reasoning: chat completions
- Text-to-speech: audio.speech as raw 24kHz PCM, downsampled to 8kHz mu-law here

Retries are left to the SDK (`max_retries`); this module only maps failures to
`GatewayError`.
"""

from __future__ import annotations

import inspect
import time
from typing import Any, Optional, Sequence

import openai
import structlog
from openai import AsyncOpenAI

from src.callcore.audio import TTS_SAMPLE_RATE, tts_pcm_to_twilio_ulaw, ulaw_8k_to_wav
from src.callcore.config import Config, get_config
from src.callcore.gateway.base import (
    AIGateway,
    ConversationTurn,
    GatewayError,
    Role,
    TranscriptionResult,
)
from src.callcore.gateway.knowledge import KnowledgeBase
from src.callcore.language import language_name, normalize_detected_language

logger = structlog.get_logger(__name__)

MIN_TRANSCRIBE_BYTES = 100
MAX_TTS_CHARS = 4096
REASONING_TEMPERATURE = 0.4
REASONING_MAX_TOKENS = 400
EMPTY_QUERY_REPLY = "I didn't catch that. Could you repeat your question?"
EMPTY_ANSWER_REPLY = "I'm sorry, could you repeat that?"


def build_system_prompt(config: Config, knowledge: KnowledgeBase) -> str:
    """System prompt for the reasoning model, grounded in the knowledge text."""
    return f"""You are {config.agent_name}, a medical information representative for {config.company_name}. You give scientific and administrative information to healthcare professionals over the phone.

RULES:
- Only use facts from the PRODUCT INFORMATION section. If the answer is not there, say: "That information is not specified in the publicly available product information I have access to."
- Keep answers to 1-3 short, natural sentences; this is a phone call.
- Be warm, professional and direct. No filler openers like "Great question!".
- Ask a brief clarifying question when the query is ambiguous.
- End with a short follow-up such as "Is there anything else I can help with?"
- Keep drug names, mechanism names, trial names, dosages and units in English.
- Never mention AI, models, prompts, translation or any technology. If asked who you are, you are a medical information representative.
- Never make unsupported claims, discuss off-label use or give patient-specific advice.
- No lists, markdown or formatting; speak like a person.

PRODUCT INFORMATION:
---
{knowledge.text}
---"""


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError)):
        return True
    if isinstance(error, openai.APIStatusError):
        return error.status_code >= 500
    return False


class OpenAIGateway(AIGateway):
    """Gateway over one shared `AsyncOpenAI` client."""

    def __init__(
        self,
        knowledge: KnowledgeBase,
        config: Optional[Config] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.config = config or get_config()
        self.knowledge = knowledge
        self._system_prompt = build_system_prompt(self.config, knowledge)
        self._client = client or AsyncOpenAI(
            api_key=self.config.openai_api_key,
            base_url=self.config.openai_base_url or None,
            max_retries=self.config.gateway_max_retries,
            timeout=self.config.gateway_timeout_seconds,
        )

    async def close(self) -> None:
        await self._client.close()

    def _wrap(self, operation: str, error: Exception) -> GatewayError:
        retryable = _is_retryable(error)
        logger.warning(
            "Gateway call failed",
            operation=operation,
            error=str(error),
            error_type=type(error).__name__,
            retryable=retryable,
        )
        return GatewayError(f"{operation} failed: {error}", operation=operation, retryable=retryable)

    async def transcribe(self, audio_ulaw: bytes) -> TranscriptionResult:
        if not audio_ulaw or len(audio_ulaw) < MIN_TRANSCRIBE_BYTES:
            return TranscriptionResult(text="", detected_language=None)

        wav_bytes = ulaw_8k_to_wav(audio_ulaw)
        start = time.time()
        try:
            response = await self._client.audio.transcriptions.create(
                model=self.config.transcribe_model,
                file=("utterance.wav", wav_bytes, "audio/wav"),
                response_format="verbose_json",
            )
        except openai.OpenAIError as e:
            raise self._wrap("transcribe", e) from e

        text = (getattr(response, "text", "") or "").strip()
        raw_language = getattr(response, "language", None)
        detected = normalize_detected_language(raw_language)
        logger.debug(
            "Transcription complete",
            chars=len(text),
            raw_language=raw_language,
            detected_language=detected,
            latency_ms=round((time.time() - start) * 1000, 2),
        )
        return TranscriptionResult(text=text, detected_language=detected)

    async def _chat(self, operation: str, messages: list[dict[str, str]], **kwargs: Any) -> str:
        try:
            response = await self._client.chat.completions.create(messages=messages, **kwargs)
        except openai.OpenAIError as e:
            raise self._wrap(operation, e) from e

        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()

    async def _translate(self, text: str, source: str, target: str) -> str:
        instruction = (
            f"Translate the user's text from {language_name(source)} to {language_name(target)}. "
            "Keep drug names, trial names, dosages and units unchanged. "
            "Reply with the translation only."
        )
        translated = await self._chat(
            "translate",
            [
                {"role": "system", "content": instruction},
                {"role": "user", "content": text},
            ],
            model=self.config.translation_model,
            temperature=0.0,
        )
        return translated or text

    async def reason(self, query: str, history: Sequence[ConversationTurn]) -> str:
        if not query or not query.strip():
            return EMPTY_QUERY_REPLY

        messages: list[dict[str, str]] = [{"role": "system", "content": self._system_prompt}]
        window = list(history)[-self.config.max_history_turns:] if self.config.max_history_turns > 0 else []
        for turn in window:
            role = "assistant" if turn.role == Role.AGENT else "user"
            messages.append({"role": role, "content": turn.text})
        messages.append({"role": "user", "content": query})

        answer = await self._chat(
            "reason",
            messages,
            model=self.config.reasoning_model,
            temperature=REASONING_TEMPERATURE,
            max_tokens=REASONING_MAX_TOKENS,
        )
        return answer or EMPTY_ANSWER_REPLY

    async def synthesize(self, text: str, language: str) -> bytes:
        if not text or not text.strip():
            return b""

        if len(text) > MAX_TTS_CHARS:
            text = text[: MAX_TTS_CHARS - 3] + "..."

        voice = self.config.voice_for(language)
        try:
            response = await self._client.audio.speech.create(
                model=self.config.tts_model,
                voice=voice,
                input=text,
                response_format="pcm",
            )
            pcm = await _read_binary(response)
        except openai.OpenAIError as e:
            raise self._wrap("synthesize", e) from e

        ulaw = tts_pcm_to_twilio_ulaw(pcm, source_rate=TTS_SAMPLE_RATE)
        logger.debug("Synthesis complete", language=language, voice=voice, pcm_bytes=len(pcm), ulaw_bytes=len(ulaw))
        return ulaw


async def _read_binary(response: Any) -> bytes:
    # SDKs have varied over time; handle several shapes.
    data = getattr(response, "content", None)
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    read = getattr(response, "read", None)
    if callable(read):
        result = read()
        if inspect.isawaitable(result):
            result = await result
        return bytes(result)
    return bytes(response)
