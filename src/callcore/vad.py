"""
Energy-based voice activity detection.

A chunk counts as speech when the RMS of its decoded linear samples exceeds a
fixed threshold. While the agent is playing audio the bar is raised so that
line noise and echo do not register as a barge-in.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from src.callcore.audio import ulaw_to_samples


def rms_energy(ulaw_chunk: bytes) -> float:
    """Root-mean-square of the linear samples in a mu-law chunk (0.0 when empty)."""
    if not ulaw_chunk:
        return 0.0
    samples = ulaw_to_samples(ulaw_chunk).astype(np.float64)
    return float(np.sqrt(np.mean(samples * samples)))


@dataclass(frozen=True)
class VadResult:
    energy: float
    is_speech: bool


class VoiceActivityDetector:
    """Stateless speech/silence classifier over mu-law chunks."""

    def __init__(self, threshold: float = 350.0, barge_in_factor: float = 1.5):
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.threshold = float(threshold)
        self.barge_in_factor = float(barge_in_factor)

    @property
    def barge_in_threshold(self) -> float:
        return self.threshold * self.barge_in_factor

    def energy(self, chunk: bytes) -> float:
        return rms_energy(chunk)

    def threshold_for(self, *, during_playback: bool = False) -> float:
        return self.barge_in_threshold if during_playback else self.threshold

    def is_speech(self, chunk: bytes, *, during_playback: bool = False) -> bool:
        return self.energy(chunk) > self.threshold_for(during_playback=during_playback)

    def classify(self, chunk: bytes, *, during_playback: bool = False) -> VadResult:
        energy = self.energy(chunk)
        return VadResult(
            energy=energy,
            is_speech=energy > self.threshold_for(during_playback=during_playback),
        )
