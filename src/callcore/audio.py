"""
Audio conversion utilities for the call core.

- Twilio media streams carry mu-law (G.711) 8kHz mono, 20ms per frame
- The speech synthesizer returns linear PCM 16-bit at 24kHz
- Outbound path: 24kHz PCM -> 6-tap FIR low-pass + 3:1 decimation -> mu-law 8kHz

The companding law is implemented here with numpy lookups instead of `audioop`
(removed from the standard library in Python 3.13).
"""

import io
import wave
from typing import Generator, List, Sequence

import numpy as np

TWILIO_SAMPLE_RATE = 8000
TTS_SAMPLE_RATE = 24000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms

ULAW_SILENCE = 0xFF
ULAW_BIAS = 0x84
ULAW_CLIP = 32635

# Symmetric low-pass kernel for 3:1 decimation (cutoff ~3.5kHz at 24kHz input).
DOWNSAMPLE_TAPS: tuple[float, ...] = (0.05, 0.15, 0.30, 0.30, 0.15, 0.05)

# Exponent (segment) of a biased magnitude, indexed by `magnitude >> 7`.
_EXPONENT_LUT = np.array(
    [max(0, value.bit_length() - 1) for value in range(256)],
    dtype=np.int32,
)


def linear_to_ulaw_sample(sample: int) -> int:
    """
    Compress one signed 16-bit sample to a mu-law byte.

    Layout of the (inverted) byte: sign bit, 3-bit exponent, 4-bit mantissa.
    """
    sign = 0
    if sample < 0:
        sign = 0x80
        sample = -sample
    if sample > ULAW_CLIP:
        sample = ULAW_CLIP
    sample += ULAW_BIAS

    exponent = int(_EXPONENT_LUT[sample >> 7])
    mantissa = (sample >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


def ulaw_to_linear_sample(ulaw_byte: int) -> int:
    """Expand one mu-law byte back to a signed 16-bit sample."""
    value = ~ulaw_byte & 0xFF
    sign = value & 0x80
    exponent = (value >> 4) & 0x07
    mantissa = value & 0x0F
    magnitude = (((mantissa << 3) + ULAW_BIAS) << exponent) - ULAW_BIAS
    return -magnitude if sign else magnitude


_DECODE_TABLE = np.array(
    [ulaw_to_linear_sample(b) for b in range(256)],
    dtype=np.int16,
)


def ulaw_quantization_step(ulaw_byte: int) -> int:
    """Width of the quantization interval a mu-law byte represents."""
    exponent = ((~ulaw_byte & 0xFF) >> 4) & 0x07
    return 1 << (exponent + 3)


def ulaw_to_samples(ulaw_bytes: bytes) -> np.ndarray:
    """Decode mu-law bytes to an int16 sample array."""
    if not ulaw_bytes:
        return np.zeros(0, dtype=np.int16)
    return _DECODE_TABLE[np.frombuffer(ulaw_bytes, dtype=np.uint8)]


def samples_to_ulaw(samples: np.ndarray) -> bytes:
    """Encode an array of int16-range samples to mu-law bytes."""
    if samples.size == 0:
        return b""

    pcm = samples.astype(np.int32)
    sign = np.where(pcm < 0, 0x80, 0).astype(np.int32)
    magnitude = np.minimum(np.abs(pcm), ULAW_CLIP) + ULAW_BIAS
    exponent = _EXPONENT_LUT[magnitude >> 7]
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    encoded = ~(sign | (exponent << 4) | mantissa) & 0xFF
    return encoded.astype(np.uint8).tobytes()


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law 8kHz audio to linear PCM 16-bit.

    Args:
        ulaw_bytes: Raw mu-law encoded bytes at 8kHz

    Returns:
        Linear PCM 16-bit little-endian bytes at 8kHz
    """
    if not ulaw_bytes:
        return b""
    return ulaw_to_samples(ulaw_bytes).astype("<i2").tobytes()


def linear16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit to mu-law.

    A trailing odd byte (half a sample) is ignored.
    """
    if not pcm_bytes:
        return b""
    usable = len(pcm_bytes) - (len(pcm_bytes) % 2)
    samples = np.frombuffer(pcm_bytes[:usable], dtype="<i2")
    return samples_to_ulaw(samples)


def downsample_pcm16(
    pcm_bytes: bytes,
    source_rate: int,
    target_rate: int,
    taps: Sequence[float] = DOWNSAMPLE_TAPS,
) -> bytes:
    """
    Decimate linear PCM 16-bit by an integer ratio with an FIR low-pass filter.

    Each output sample is the weighted sum of the input samples around
    `floor(i * ratio)`. Near the buffer edges only the taps that land inside the
    buffer contribute, and the sum is normalized by those taps' total weight.

    Args:
        pcm_bytes: Linear PCM 16-bit little-endian bytes at `source_rate`
        source_rate: Input sample rate in Hz (e.g. 24000)
        target_rate: Output sample rate in Hz (e.g. 8000)
        taps: Symmetric filter kernel

    Returns:
        Linear PCM 16-bit bytes at `target_rate`

    Raises:
        ValueError: If the rates are not an integer ratio or taps are empty
    """
    if source_rate == target_rate or not pcm_bytes:
        return pcm_bytes
    if target_rate <= 0 or source_rate < target_rate or source_rate % target_rate:
        raise ValueError(
            f"Unsupported resampling ratio {source_rate}->{target_rate}; "
            "only integer downsampling is supported"
        )
    if not taps:
        raise ValueError("Filter kernel must have at least one tap")

    ratio = source_rate // target_rate
    usable = len(pcm_bytes) - (len(pcm_bytes) % 2)
    samples = np.frombuffer(pcm_bytes[:usable], dtype="<i2").astype(np.float64)
    in_count = samples.size
    out_count = in_count // ratio
    if out_count == 0:
        return b""

    kernel = np.asarray(taps, dtype=np.float64)
    half = len(kernel) // 2
    centers = np.arange(out_count, dtype=np.int64) * ratio

    acc = np.zeros(out_count, dtype=np.float64)
    weight = np.zeros(out_count, dtype=np.float64)
    for j, tap in enumerate(kernel):
        idx = centers - half + j
        valid = (idx >= 0) & (idx < in_count)
        safe_idx = np.clip(idx, 0, in_count - 1)
        acc += np.where(valid, samples[safe_idx] * tap, 0.0)
        weight += np.where(valid, tap, 0.0)

    filtered = np.floor(acc / weight + 0.5)
    clamped = np.clip(filtered, -32768, 32767).astype("<i2")
    return clamped.tobytes()


def tts_pcm_to_twilio_ulaw(pcm_bytes: bytes, source_rate: int = TTS_SAMPLE_RATE) -> bytes:
    """
    Convert synthesizer PCM output to Twilio mu-law format.

    Skipping the low-pass step before decimation folds everything above 4kHz
    back into the audible band, so the FIR filter always runs.
    """
    if not pcm_bytes:
        return b""
    pcm_8k = downsample_pcm16(pcm_bytes, source_rate, TWILIO_SAMPLE_RATE)
    return linear16_to_ulaw(pcm_8k)


def chunk_audio(
    audio_bytes: bytes,
    chunk_size: int = TWILIO_FRAME_SIZE,
    pad: bool = True,
) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For Twilio, we want 20ms frames = 160 bytes of mu-law at 8kHz.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Size of each chunk in bytes (default: 160 for 20ms mu-law)
        pad: Pad the last chunk with mu-law silence to a full frame

    Yields:
        Audio chunks of the specified size
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        if pad and len(chunk) < chunk_size:
            chunk = chunk + bytes([ULAW_SILENCE]) * (chunk_size - len(chunk))
        yield chunk


def chunk_audio_list(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> List[bytes]:
    """Chunk audio into fixed-size frames and return as a list."""
    return list(chunk_audio(audio_bytes, chunk_size))


def get_audio_duration_ms(
    audio_bytes: bytes,
    sample_rate: int = TWILIO_SAMPLE_RATE,
    is_ulaw: bool = True,
) -> float:
    """
    Calculate the duration of audio in milliseconds.

    Args:
        audio_bytes: Audio bytes
        sample_rate: Sample rate in Hz
        is_ulaw: Whether the audio is mu-law (1 byte per sample) or PCM (2 bytes per sample)

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes:
        return 0.0

    bytes_per_sample = 1 if is_ulaw else 2
    num_samples = len(audio_bytes) // bytes_per_sample
    duration_seconds = num_samples / sample_rate

    return duration_seconds * 1000


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def ulaw_8k_to_wav(ulaw_bytes: bytes) -> bytes:
    """
    Wrap Twilio 8kHz mu-law bytes as a PCM16 WAV file.

    Used for file-based transcription APIs that do not accept raw mu-law.
    """
    return write_wav_mono_pcm16(ulaw_to_linear16(ulaw_bytes), TWILIO_SAMPLE_RATE)
