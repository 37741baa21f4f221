"""Encoding of raw PCM audio into a canonical WAV container."""

import struct
from dataclasses import dataclass

import numpy as np

HEADER_SIZE = 44
PCM_FORMAT_TAG = 1

# Conversion factor for s16 to float32
INT16_TO_FLOAT32 = 1.0 / 32768.0

# RIFF header, fmt sub-chunk and data sub-chunk header, all little-endian
_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


@dataclass(frozen=True)
class WavInfo:
    """Parsed contents of a canonical WAV container."""

    sample_rate: int
    channels: int
    bits_per_sample: int
    pcm: bytes


def encode(
    pcm: bytes,
    sample_rate: int = 16000,
    channels: int = 1,
    bits_per_sample: int = 16,
) -> bytes:
    """Wrap raw PCM samples in a 44-byte WAV header.

    Args:
        pcm: Raw little-endian PCM samples.
        sample_rate: Samples per second.
        channels: Number of interleaved channels.
        bits_per_sample: Sample width in bits.

    Returns:
        The header followed by the untouched PCM payload.

    Raises:
        ValueError: If a parameter is out of range or the payload is not a
            whole number of frames.
    """
    if sample_rate <= 0:
        raise ValueError(f"Invalid sample rate: {sample_rate}")
    if channels <= 0:
        raise ValueError(f"Invalid channel count: {channels}")
    if bits_per_sample <= 0 or bits_per_sample % 8:
        raise ValueError(f"Invalid bits per sample: {bits_per_sample}")

    block_align = channels * bits_per_sample // 8
    if len(pcm) % block_align:
        raise ValueError(
            f"PCM payload of {len(pcm)} bytes is not a multiple of the "
            f"{block_align}-byte frame size"
        )

    data_size = len(pcm)
    header = _HEADER.pack(
        b"RIFF",
        HEADER_SIZE + data_size - 8,
        b"WAVE",
        b"fmt ",
        16,  # fmt sub-chunk size
        PCM_FORMAT_TAG,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        bits_per_sample,
        b"data",
        data_size,
    )
    return header + bytes(pcm)


def decode(container: bytes) -> WavInfo:
    """Parse a canonical 44-byte-header WAV container.

    Raises:
        ValueError: If the container is not canonical PCM WAV.
    """
    if len(container) < HEADER_SIZE:
        raise ValueError("Audio container is shorter than a WAV header")

    (
        riff,
        _riff_size,
        wave,
        fmt,
        fmt_size,
        format_tag,
        channels,
        sample_rate,
        _byte_rate,
        _block_align,
        bits_per_sample,
        data,
        data_size,
    ) = _HEADER.unpack_from(container)

    if riff != b"RIFF" or wave != b"WAVE" or fmt != b"fmt " or data != b"data":
        raise ValueError("Not a canonical WAV container")
    if fmt_size != 16 or format_tag != PCM_FORMAT_TAG:
        raise ValueError("Only uncompressed PCM WAV is supported")

    pcm = container[HEADER_SIZE : HEADER_SIZE + data_size]
    if len(pcm) != data_size:
        raise ValueError("WAV data chunk is truncated")

    return WavInfo(
        sample_rate=sample_rate,
        channels=channels,
        bits_per_sample=bits_per_sample,
        pcm=pcm,
    )


def pcm16_to_float32(pcm: bytes) -> np.ndarray:
    """Convert signed 16-bit PCM bytes to a float32 array in [-1, 1)."""
    return np.frombuffer(pcm, dtype=np.int16).astype(np.float32) * INT16_TO_FLOAT32
