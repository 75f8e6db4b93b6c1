"""
Tests for audio conversion utilities.
"""

import io
import wave

import pytest
import numpy as np

from src.callcore.audio import (
    ulaw_to_linear16,
    linear16_to_ulaw,
    linear_to_ulaw_sample,
    ulaw_to_linear_sample,
    ulaw_quantization_step,
    ulaw_to_samples,
    samples_to_ulaw,
    downsample_pcm16,
    tts_pcm_to_twilio_ulaw,
    chunk_audio,
    chunk_audio_list,
    get_audio_duration_ms,
    ulaw_8k_to_wav,
    TWILIO_FRAME_SIZE,
    TWILIO_SAMPLE_RATE,
    TTS_SAMPLE_RATE,
    ULAW_SILENCE,
)


def _rms(samples: np.ndarray) -> float:
    values = samples.astype(np.float64)
    return float(np.sqrt(np.mean(values * values)))


def _tone_pcm(freq_hz: float, sample_rate: int, num_samples: int, amplitude: float = 10000) -> bytes:
    t = np.arange(num_samples) / sample_rate
    return (np.sin(2 * np.pi * freq_hz * t) * amplitude).astype("<i2").tobytes()


class TestUlawConversion:
    """Tests for mu-law conversion."""

    def test_ulaw_to_linear16_empty(self):
        """Test conversion of empty bytes."""
        assert ulaw_to_linear16(b"") == b""

    def test_ulaw_to_linear16_basic(self):
        """Silence decodes to zero and output is two bytes per sample."""
        result = ulaw_to_linear16(b"\xff" * 100)

        assert len(result) == 200
        samples = np.frombuffer(result, dtype=np.int16)
        assert np.abs(samples).max() == 0

    def test_linear16_to_ulaw_empty(self):
        """Test conversion of empty bytes."""
        assert linear16_to_ulaw(b"") == b""

    def test_linear16_to_ulaw_basic(self):
        """Zero samples encode to the mu-law silence byte."""
        result = linear16_to_ulaw(b"\x00\x00" * 100)

        assert len(result) == 100
        assert set(result) == {ULAW_SILENCE}

    def test_linear16_to_ulaw_ignores_odd_trailing_byte(self):
        result = linear16_to_ulaw(b"\x00\x00" * 10 + b"\x01")
        assert len(result) == 10

    def test_roundtrip_within_one_step_for_full_range(self):
        """Every 16-bit sample survives encode+decode within one quantization step."""
        original = np.arange(-32768, 32768, dtype=np.int32)
        encoded = samples_to_ulaw(original)
        decoded = ulaw_to_samples(encoded).astype(np.int32)

        steps = np.array([ulaw_quantization_step(b) for b in range(256)], dtype=np.int32)
        allowed = steps[np.frombuffer(encoded, dtype=np.uint8)]

        assert len(encoded) == original.size
        assert np.all(np.abs(decoded - original) <= allowed)

    def test_vectorized_matches_scalar(self):
        values = [-32768, -32635, -1000, -33, -1, 0, 1, 31, 132, 500, 4095, 32635, 32767]
        encoded = samples_to_ulaw(np.array(values, dtype=np.int32))

        for value, byte in zip(values, encoded):
            assert linear_to_ulaw_sample(value) == byte
            assert ulaw_to_linear_sample(byte) == int(ulaw_to_samples(bytes([byte]))[0])

    def test_sign_is_preserved(self):
        assert ulaw_to_linear_sample(linear_to_ulaw_sample(1000)) > 0
        assert ulaw_to_linear_sample(linear_to_ulaw_sample(-1000)) < 0

    def test_roundtrip_conversion(self):
        """Test that a tone survives the codec with high correlation."""
        samples = np.sin(np.linspace(0, 4 * np.pi, 100)) * 16000
        original_pcm = samples.astype(np.int16).tobytes()

        recovered_pcm = ulaw_to_linear16(linear16_to_ulaw(original_pcm))

        original_samples = np.frombuffer(original_pcm, dtype=np.int16)
        recovered_samples = np.frombuffer(recovered_pcm, dtype=np.int16)
        correlation = np.corrcoef(original_samples, recovered_samples)[0, 1]
        assert correlation > 0.99


class TestDownsampling:
    """Tests for the FIR decimator."""

    def test_empty(self):
        assert downsample_pcm16(b"", 24000, 8000) == b""

    def test_same_rate_is_identity(self):
        pcm = _tone_pcm(440, 8000, 160)
        assert downsample_pcm16(pcm, 8000, 8000) == pcm

    def test_length_is_one_third(self):
        pcm = np.zeros(2400, dtype="<i2").tobytes()
        result = downsample_pcm16(pcm, 24000, 8000)
        assert len(result) // 2 == 800

    def test_constant_signal_unchanged_including_edges(self):
        """Edge outputs are normalized by the taps that fall inside the buffer."""
        pcm = np.full(300, 1000, dtype="<i2").tobytes()
        out = np.frombuffer(downsample_pcm16(pcm, 24000, 8000), dtype="<i2")
        assert np.all(out == 1000)

    def test_edge_normalization_values(self):
        pcm = np.array([100, 200, 300, 400, 500, 600], dtype="<i2").tobytes()
        out = np.frombuffer(downsample_pcm16(pcm, 24000, 8000), dtype="<i2")

        # First output only sees taps 0.30, 0.15, 0.05 (sum 0.5).
        assert out.tolist() == [150, 350]

    def test_output_is_clamped(self):
        pcm = np.full(60, 32767, dtype="<i2").tobytes()
        out = np.frombuffer(downsample_pcm16(pcm, 24000, 8000), dtype="<i2")
        assert out.max() == 32767

    def test_high_frequency_is_attenuated(self):
        """An 11kHz tone would alias to 3kHz without the low-pass filter."""
        pcm = _tone_pcm(11000, TTS_SAMPLE_RATE, 2400)
        naive = np.frombuffer(pcm, dtype="<i2")[::3]
        filtered = np.frombuffer(downsample_pcm16(pcm, TTS_SAMPLE_RATE, TWILIO_SAMPLE_RATE), dtype="<i2")

        assert _rms(filtered[5:-5]) < 0.2 * _rms(naive[5:-5])

    def test_passband_is_preserved(self):
        pcm = _tone_pcm(500, TTS_SAMPLE_RATE, 2400)
        original = np.frombuffer(pcm, dtype="<i2")
        filtered = np.frombuffer(downsample_pcm16(pcm, TTS_SAMPLE_RATE, TWILIO_SAMPLE_RATE), dtype="<i2")

        assert _rms(filtered[5:-5]) > 0.9 * _rms(original)

    def test_non_integer_ratio_rejected(self):
        with pytest.raises(ValueError):
            downsample_pcm16(b"\x00\x00" * 10, 22050, 8000)

    def test_empty_taps_rejected(self):
        with pytest.raises(ValueError):
            downsample_pcm16(b"\x00\x00" * 10, 24000, 8000, taps=())


class TestTwilioConversion:
    """Tests for Twilio-specific conversion functions."""

    def test_tts_pcm_to_twilio_ulaw_empty(self):
        assert tts_pcm_to_twilio_ulaw(b"") == b""

    def test_tts_pcm_to_twilio_ulaw_produces_8k_ulaw(self):
        """20ms at 24kHz PCM becomes one 160-byte Twilio frame."""
        pcm_24k = np.zeros(480, dtype=np.int16).tobytes()

        result = tts_pcm_to_twilio_ulaw(pcm_24k)

        assert len(result) == TWILIO_FRAME_SIZE
        assert set(result) == {ULAW_SILENCE}

    def test_ulaw_8k_to_wav(self):
        ulaw = b"\xff" * 800
        with wave.open(io.BytesIO(ulaw_8k_to_wav(ulaw)), "rb") as wf:
            assert wf.getnchannels() == 1
            assert wf.getsampwidth() == 2
            assert wf.getframerate() == TWILIO_SAMPLE_RATE
            assert wf.getnframes() == 800


class TestChunking:
    """Tests for audio chunking."""

    def test_chunk_audio_empty(self):
        assert list(chunk_audio(b"")) == []

    def test_chunk_audio_exact_multiple(self):
        chunks = list(chunk_audio(b"\x00" * 480))

        assert len(chunks) == 3
        assert all(len(c) == TWILIO_FRAME_SIZE for c in chunks)

    def test_chunk_audio_pads_remainder_with_silence(self):
        chunks = list(chunk_audio(b"\x00" * 200))

        assert len(chunks) == 2
        assert len(chunks[1]) == TWILIO_FRAME_SIZE
        assert chunks[1][:40] == b"\x00" * 40
        assert set(chunks[1][40:]) == {ULAW_SILENCE}

    def test_chunk_audio_without_padding(self):
        chunks = list(chunk_audio(b"\x00" * 200, pad=False))
        assert [len(c) for c in chunks] == [160, 40]

    def test_chunk_audio_list(self):
        chunks = chunk_audio_list(b"\x00" * 320)
        assert isinstance(chunks, list)
        assert len(chunks) == 2


class TestAudioUtilities:
    """Tests for duration and silence helpers."""

    def test_get_audio_duration_ms_ulaw(self):
        assert get_audio_duration_ms(b"\x00" * 8000) == 1000.0

    def test_get_audio_duration_ms_pcm(self):
        assert get_audio_duration_ms(b"\x00" * 16000, is_ulaw=False) == 1000.0

    def test_get_audio_duration_ms_empty(self):
        assert get_audio_duration_ms(b"") == 0.0

    def test_frame_size_is_20ms(self):
        assert TWILIO_FRAME_SIZE == 160
        assert get_audio_duration_ms(b"\x00" * TWILIO_FRAME_SIZE) == 20.0
