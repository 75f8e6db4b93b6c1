"""Static product knowledge injected into the reasoning prompt."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import structlog

from src.callcore.config import ConfigError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class KnowledgeBase:
    text: str
    source: str = ""

    def __len__(self) -> int:
        return len(self.text)


def load_knowledge(path: str | Path) -> KnowledgeBase:
    """
    Read the knowledge text once at startup.

    Raises:
        ConfigError: If the file is missing, unreadable or empty
    """
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read knowledge file {file_path}: {e}") from e

    text = text.strip()
    if not text:
        raise ConfigError(f"Knowledge file {file_path} is empty")

    logger.info("Knowledge loaded", source=str(file_path), chars=len(text))
    return KnowledgeBase(text=text, source=str(file_path))
