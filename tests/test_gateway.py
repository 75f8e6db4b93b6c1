"""
Tests for the OpenAI gateway and knowledge loading (no network).
"""

import dataclasses
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import numpy as np
import openai
import pytest

from src.callcore.config import ConfigError, get_config
from src.callcore.gateway import (
    ConversationTurn,
    GatewayError,
    KnowledgeBase,
    Role,
    create_gateway,
    load_knowledge,
)
from src.callcore.gateway.openai_gateway import (
    EMPTY_ANSWER_REPLY,
    OpenAIGateway,
    build_system_prompt,
)


def _chat_response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.fixture
def knowledge():
    return KnowledgeBase(text="Examplinib 10 mg once daily.", source="test")


@pytest.fixture
def client():
    client = MagicMock()
    client.audio.transcriptions.create = AsyncMock(
        return_value=SimpleNamespace(text=" what is the dose ", language="hindi")
    )
    client.audio.speech.create = AsyncMock(
        return_value=SimpleNamespace(content=np.zeros(480, dtype="<i2").tobytes())
    )
    client.chat.completions.create = AsyncMock(return_value=_chat_response("Once daily."))
    client.close = AsyncMock()
    return client


@pytest.fixture
def gateway(knowledge, client):
    return OpenAIGateway(knowledge=knowledge, config=get_config(), client=client)


class TestTranscribe:

    @pytest.mark.asyncio
    async def test_transcribe_returns_text_and_language(self, gateway, client):
        result = await gateway.transcribe(b"\xff" * 1600)

        assert result.text == "what is the dose"
        assert result.detected_language == "hi"
        kwargs = client.audio.transcriptions.create.await_args.kwargs
        assert kwargs["response_format"] == "verbose_json"
        filename, wav_bytes, content_type = kwargs["file"]
        assert filename.endswith(".wav")
        assert wav_bytes.startswith(b"RIFF")
        assert content_type == "audio/wav"

    @pytest.mark.asyncio
    async def test_tiny_audio_is_not_sent(self, gateway, client):
        result = await gateway.transcribe(b"\xff" * 10)

        assert result.text == ""
        client.audio.transcriptions.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_is_retryable_gateway_error(self, gateway, client):
        request = httpx.Request("POST", "https://api.openai.com/v1/audio/transcriptions")
        client.audio.transcriptions.create.side_effect = openai.APITimeoutError(request=request)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.transcribe(b"\xff" * 1600)

        assert exc_info.value.operation == "transcribe"
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_generic_error_is_not_retryable(self, gateway, client):
        client.audio.transcriptions.create.side_effect = openai.OpenAIError("bad input")

        with pytest.raises(GatewayError) as exc_info:
            await gateway.transcribe(b"\xff" * 1600)

        assert not exc_info.value.retryable


class TestTranslateAndReason:

    @pytest.mark.asyncio
    async def test_translate_same_language_is_identity(self, gateway, client):
        assert await gateway.translate("hello", "en", "en") == "hello"
        client.chat.completions.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_translate_calls_model(self, gateway, client):
        client.chat.completions.create.return_value = _chat_response("नमस्ते")

        assert await gateway.translate("hello", "en", "hi") == "नमस्ते"
        messages = client.chat.completions.create.await_args.kwargs["messages"]
        assert "English" in messages[0]["content"]
        assert "Hindi" in messages[0]["content"]
        assert messages[1] == {"role": "user", "content": "hello"}

    @pytest.mark.asyncio
    async def test_reason_maps_history_roles(self, gateway, client):
        history = (
            ConversationTurn(role=Role.USER, text="first question"),
            ConversationTurn(role=Role.AGENT, text="first answer"),
        )

        reply = await gateway.reason("second question", history)

        assert reply == "Once daily."
        messages = client.chat.completions.create.await_args.kwargs["messages"]
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert "Examplinib 10 mg once daily." in messages[0]["content"]
        assert messages[-1]["content"] == "second question"

    @pytest.mark.asyncio
    async def test_empty_model_reply_becomes_apology(self, gateway, client):
        client.chat.completions.create.return_value = _chat_response(None)

        assert await gateway.reason("question", ()) == EMPTY_ANSWER_REPLY

    def test_system_prompt_names_agent(self, knowledge):
        prompt = build_system_prompt(get_config(), knowledge)

        assert "Ava" in prompt
        assert knowledge.text in prompt


class TestSynthesize:

    @pytest.mark.asyncio
    async def test_synthesize_returns_twilio_ulaw(self, gateway, client):
        audio = await gateway.synthesize("Hello", "en")

        assert len(audio) == 160
        kwargs = client.audio.speech.create.await_args.kwargs
        assert kwargs["response_format"] == "pcm"
        assert kwargs["input"] == "Hello"

    @pytest.mark.asyncio
    async def test_voice_follows_language(self, knowledge, client):
        config = dataclasses.replace(get_config(), tts_voice="alloy", tts_voices={"hi": "nova"})
        gateway = OpenAIGateway(knowledge=knowledge, config=config, client=client)

        await gateway.synthesize("Namaste", "hi")
        assert client.audio.speech.create.await_args.kwargs["voice"] == "nova"

        await gateway.synthesize("Hello", "en")
        assert client.audio.speech.create.await_args.kwargs["voice"] == "alloy"

    @pytest.mark.asyncio
    async def test_empty_text_synthesizes_nothing(self, gateway, client):
        assert await gateway.synthesize("  ", "en") == b""
        client.audio.speech.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_closes_client(self, gateway, client):
        await gateway.close()
        client.close.assert_awaited_once()


class TestKnowledge:

    def test_load_knowledge(self, tmp_path):
        path = tmp_path / "info.txt"
        path.write_text("  Some facts.  \n", encoding="utf-8")

        knowledge = load_knowledge(path)

        assert knowledge.text == "Some facts."
        assert knowledge.source == str(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_knowledge(tmp_path / "missing.txt")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.txt"
        path.write_text("\n", encoding="utf-8")

        with pytest.raises(ConfigError):
            load_knowledge(path)

    def test_create_gateway_loads_configured_knowledge(self):
        gateway = create_gateway(get_config())

        assert isinstance(gateway, OpenAIGateway)
        assert "Examplinib" in gateway.knowledge.text
