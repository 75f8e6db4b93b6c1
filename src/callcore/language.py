"""
Language utilities for the call core.

The caller's language is detected from the first recognized utterance and then
locked for the rest of the call. Reasoning always happens in the working
language; queries and replies are translated across that boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
import unicodedata
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)

WORKING_LANGUAGE = "en"
FALLBACK_LANGUAGE = "en"

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English", "hi": "Hindi", "es": "Spanish", "fr": "French",
    "de": "German", "pt": "Portuguese", "zh": "Chinese", "ja": "Japanese",
    "ko": "Korean", "ar": "Arabic", "ru": "Russian", "it": "Italian",
    "nl": "Dutch", "pl": "Polish", "tr": "Turkish", "vi": "Vietnamese",
    "th": "Thai", "bn": "Bengali", "ta": "Tamil", "te": "Telugu",
    "mr": "Marathi", "gu": "Gujarati", "ur": "Urdu", "pa": "Punjabi",
    "id": "Indonesian", "ms": "Malay", "cs": "Czech", "ro": "Romanian",
    "hu": "Hungarian", "el": "Greek", "sv": "Swedish", "da": "Danish",
    "fi": "Finnish", "no": "Norwegian", "he": "Hebrew", "fa": "Persian",
    "uk": "Ukrainian", "ca": "Catalan", "sk": "Slovak", "hr": "Croatian",
    "sr": "Serbian", "bg": "Bulgarian", "sl": "Slovenian", "lv": "Latvian",
    "lt": "Lithuanian", "et": "Estonian", "sw": "Swahili", "ne": "Nepali",
    "si": "Sinhala", "af": "Afrikaans", "tl": "Tagalog", "cy": "Welsh",
}

_NAME_TO_CODE: dict[str, str] = {name.lower(): code for code, name in LANGUAGE_NAMES.items()}
# Names some transcription APIs report that differ from the display names above.
_NAME_TO_CODE.update({
    "mandarin": "zh",
    "cantonese": "zh",
    "farsi": "fa",
    "filipino": "tl",
    "castilian": "es",
    "flemish": "nl",
    "panjabi": "pa",
    "moldavian": "ro",
})

_BCP47_RE = re.compile(r"^[a-z]{2,3}(?:[-_][a-z0-9]+)*$")

GREETING_TEXT = (
    "Hello! Welcome to {company}. "
    "Please go ahead, you may speak in any language you are comfortable with."
)
LANGUAGE_ACK_TEXT = "I will be speaking with you in {language}. Let me answer your question."
RECOVERY_TEXT = "I'm sorry, I didn't quite catch that. Could you please repeat your question?"


def language_name(code: Optional[str]) -> str:
    """Display name for an ISO-639-1 code (the code itself when unknown)."""
    if not code:
        return LANGUAGE_NAMES[FALLBACK_LANGUAGE]
    return LANGUAGE_NAMES.get(code, code)


def bcp47_to_iso(tag: Optional[str], fallback: str = FALLBACK_LANGUAGE) -> str:
    """
    Extract the ISO-639-1 code from a BCP-47 language tag.

    'hi-IN' -> 'hi', 'en-US' -> 'en', 'cmn-CN' -> 'zh', '' -> fallback
    """
    if not tag:
        return fallback
    norm = tag.strip().lower()
    if norm.startswith("cmn") or norm.startswith("yue"):
        return "zh"
    return re.split(r"[-_]", norm, maxsplit=1)[0] or fallback


def _strip_accents(text: str) -> str:
    text = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in text if not unicodedata.combining(ch))


def normalize_detected_language(detected_language: Optional[str]) -> Optional[str]:
    """
    Normalize a detected language into an ISO-639-1 code.

    Accepts BCP-47 tags ("hi-IN") and English language names ("hindi"), which
    is what Whisper-style transcription reports. Returns None when unknown.
    """
    if not detected_language:
        return None
    norm = _strip_accents(detected_language.strip().lower())
    if not norm:
        return None

    if norm in _NAME_TO_CODE:
        return _NAME_TO_CODE[norm]

    if _BCP47_RE.match(norm):
        code = bcp47_to_iso(norm)
        if code in LANGUAGE_NAMES or len(code) == 2:
            return code
    return None


@dataclass
class LanguageLock:
    """
    Per-call language lock.

    Unset until the first completed utterance; set exactly once after that.
    """

    working_language: str = WORKING_LANGUAGE
    fallback_language: str = FALLBACK_LANGUAGE
    code: Optional[str] = None

    @property
    def is_locked(self) -> bool:
        return self.code is not None

    @property
    def current(self) -> str:
        """Language to speak in right now (working language until locked)."""
        return self.code or self.working_language

    @property
    def needs_translation(self) -> bool:
        return self.code is not None and self.code != self.working_language

    def lock(self, detected_language: Optional[str]) -> str:
        """
        Lock the call language from a detection result.

        Later calls do not change the lock; they return the existing code.
        """
        if self.code is not None:
            if detected_language and normalize_detected_language(detected_language) != self.code:
                logger.debug(
                    "Ignoring language detection after lock",
                    locked_language=self.code,
                    detected_language=detected_language,
                )
            return self.code

        self.code = normalize_detected_language(detected_language) or self.fallback_language
        logger.info(
            "Language locked",
            language=self.code,
            language_name=language_name(self.code),
            detected_language=detected_language,
        )
        return self.code
