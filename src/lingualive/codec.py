"""PCM16 codec between float samples and the wire format."""

from __future__ import annotations

import base64
import binascii
from typing import Optional, Sequence, Union

import numpy as np

from .errors import CodecError
from .models import AudioChunk, EncodedAudio

INT16_SCALE = 32767.0
PCM_MIME_PREFIX = "audio/pcm"

Samples = Union[np.ndarray, Sequence[float]]


def pcm_mime_type(sample_rate_hz: int) -> str:
    return f"{PCM_MIME_PREFIX};rate={sample_rate_hz}"


def parse_mime_rate(mime_type: Optional[str], default_rate_hz: int) -> int:
    """Return the sample rate declared by a PCM mime type.

    Payloads without a mime type or without a ``rate`` parameter are assumed
    to be at ``default_rate_hz``. Non-PCM payloads are rejected.
    """
    if not mime_type:
        return default_rate_hz
    parts = [part.strip() for part in mime_type.split(";")]
    if parts[0].lower() not in (PCM_MIME_PREFIX, "audio/l16"):
        raise CodecError(f"Unsupported audio payload type: {mime_type}")
    for param in parts[1:]:
        key, _, value = param.partition("=")
        if key.strip().lower() == "rate":
            try:
                rate = int(value)
            except ValueError as exc:
                raise CodecError(f"Invalid sample rate in {mime_type!r}") from exc
            if rate <= 0:
                raise CodecError(f"Invalid sample rate in {mime_type!r}")
            return rate
    return default_rate_hz


def float_to_pcm16(samples: Samples) -> bytes:
    data = np.asarray(samples, dtype=np.float32).reshape(-1)
    data = np.clip(data, -1.0, 1.0)
    int16 = np.round(data * INT16_SCALE).astype("<i2")
    return int16.tobytes()


def pcm16_to_float(data: bytes) -> np.ndarray:
    if len(data) % 2:
        raise CodecError(f"PCM16 payload has odd length ({len(data)} bytes).")
    int16 = np.frombuffer(data, dtype="<i2")
    return np.clip(int16.astype(np.float32) / INT16_SCALE, -1.0, 1.0)


def resample_linear(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    if src_rate == dst_rate or samples.size == 0:
        return samples
    dst_length = max(1, int(round(samples.size * float(dst_rate) / float(src_rate))))
    src_positions = np.arange(samples.size, dtype=np.float64)
    dst_positions = np.linspace(0.0, samples.size - 1, dst_length)
    return np.interp(dst_positions, src_positions, samples).astype(np.float32)


def encode(samples: Samples, sample_rate_hz: int = 16000) -> EncodedAudio:
    return EncodedAudio(mime_type=pcm_mime_type(sample_rate_hz), data=float_to_pcm16(samples))


def decode(
    data: bytes,
    target_sample_rate_hz: int,
    channels: int = 1,
    source_sample_rate_hz: Optional[int] = None,
) -> AudioChunk:
    if channels < 1:
        raise CodecError("channels must be >= 1.")
    if len(data) % (2 * channels):
        raise CodecError(
            f"PCM16 payload of {len(data)} bytes is not a whole number of "
            f"{channels}-channel frames."
        )
    samples = pcm16_to_float(data)
    if channels > 1:
        samples = samples.reshape(-1, channels).mean(axis=1).astype(np.float32)
    source_rate = source_sample_rate_hz or target_sample_rate_hz
    samples = resample_linear(samples, source_rate, target_sample_rate_hz)
    return AudioChunk(
        samples=samples,
        sample_rate_hz=target_sample_rate_hz,
        duration=samples.size / float(target_sample_rate_hz),
    )


def b64encode_audio(audio: EncodedAudio) -> str:
    return base64.b64encode(audio.data).decode("ascii")


def b64decode_audio(payload: str) -> bytes:
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CodecError("Audio payload is not valid base64.") from exc
