from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence


class Role(str, Enum):
    """Speaker of a conversation turn."""

    USER = "user"
    AGENT = "agent"


@dataclass(frozen=True)
class ConversationTurn:
    role: Role
    text: str


@dataclass(frozen=True)
class TranscriptionResult:
    """
    Result of batch transcription.

    Empty `text` means no speech was recognized.
    """

    text: str
    detected_language: Optional[str] = None


class GatewayError(Exception):
    """Raised when a remote speech/language service call fails."""

    def __init__(self, message: str, *, operation: str = "", retryable: bool = False):
        super().__init__(message)
        self.operation = operation
        self.retryable = retryable


class AIGateway(ABC):
    """
    Speech recognition, translation, reasoning and synthesis for one deployment.

    The call core only consumes this contract; implementations own retries,
    timeouts, prompts and any static knowledge they need.
    """

    @abstractmethod
    async def transcribe(self, audio_ulaw: bytes) -> TranscriptionResult:
        raise NotImplementedError

    async def translate(self, text: str, source: str, target: str) -> str:
        """Translate `text`; identity when the languages match."""
        if not text or not text.strip():
            return ""
        if source == target:
            return text
        return await self._translate(text, source, target)

    @abstractmethod
    async def _translate(self, text: str, source: str, target: str) -> str:
        raise NotImplementedError

    @abstractmethod
    async def reason(self, query: str, history: Sequence[ConversationTurn]) -> str:
        """Answer `query` given prior turns. `history` must not be mutated."""
        raise NotImplementedError

    @abstractmethod
    async def synthesize(self, text: str, language: str) -> bytes:
        """Return Twilio-ready mu-law 8kHz audio; empty bytes means nothing to play."""
        raise NotImplementedError

    async def close(self) -> None:
        return None
