"""
Per-call voice agent core.

The public names are resolved lazily: `src.callcore.audio`, `vad` and
`utterance` only need numpy, and importing them should not pull in the
OpenAI SDK or read the environment.
"""

from __future__ import annotations

import importlib
from typing import Any

_EXPORTS = {
    "Config": "src.callcore.config",
    "get_config": "src.callcore.config",
    "CallSession": "src.callcore.session",
    "CallState": "src.callcore.session",
    "SpeakOutcome": "src.callcore.session",
    "create_session": "src.callcore.session",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(importlib.import_module(module), name)
