"""
AI gateway: speech-to-text, translation, reasoning and speech synthesis.

`create_gateway()` wires the OpenAI implementation with the knowledge text
loaded from `KNOWLEDGE_PATH`.
"""

from __future__ import annotations

from typing import Optional

from src.callcore.config import Config, get_config
from src.callcore.gateway.base import (
    AIGateway,
    ConversationTurn,
    GatewayError,
    Role,
    TranscriptionResult,
)
from src.callcore.gateway.knowledge import KnowledgeBase, load_knowledge

__all__ = [
    "AIGateway",
    "ConversationTurn",
    "GatewayError",
    "KnowledgeBase",
    "Role",
    "TranscriptionResult",
    "create_gateway",
    "load_knowledge",
]


def create_gateway(
    config: Optional[Config] = None,
    knowledge: Optional[KnowledgeBase] = None,
) -> AIGateway:
    """Build the production gateway (imports the OpenAI SDK lazily)."""
    from src.callcore.gateway.openai_gateway import OpenAIGateway

    config = config or get_config()
    if knowledge is None:
        knowledge = load_knowledge(config.knowledge_path)
    return OpenAIGateway(knowledge=knowledge, config=config)
