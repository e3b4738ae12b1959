"""G.711-style companding between 16-bit linear PCM and 8-bit codes.

The u-law variant here keeps the sign and the top seven magnitude bits of
each sample and inverts the result, as the wire format expects.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, List


class G711Type(Enum):
    """Companding law."""

    ULAW = "ulaw"
    ALAW = "alaw"


class G711Error(ValueError):
    """Raised for unsupported laws or samples outside the 16-bit range."""


_INT16_MIN = -0x8000
_INT16_MAX = 0x7FFF


def linear16_to_ulaw(sample: int) -> int:
    """Compress one signed 16-bit sample to an 8-bit code."""
    if not _INT16_MIN <= sample <= _INT16_MAX:
        raise G711Error(f"sample out of 16-bit range: {sample}")
    negative = sample < 0
    magnitude = -sample if negative else sample
    code = (magnitude >> 7) & 0x7F
    if negative:
        code |= 0x80
    return ~code & 0xFF


def ulaw_to_linear16(code: int) -> int:
    """Expand one 8-bit code to a signed 16-bit sample."""
    if not 0 <= code <= 0xFF:
        raise G711Error(f"code out of 8-bit range: {code}")
    value = ~code & 0xFF
    magnitude = (value & 0x7F) << 7
    return -magnitude if value & 0x80 else magnitude


def _require_ulaw(law: G711Type) -> None:
    if law is not G711Type.ULAW:
        raise G711Error(f"unsupported companding law: {law}")


def encode(samples: Iterable[int], law: G711Type = G711Type.ULAW) -> bytes:
    """Encode linear PCM samples; one byte per sample."""
    _require_ulaw(law)
    return bytes(linear16_to_ulaw(sample) for sample in samples)


def decode(data: bytes, law: G711Type = G711Type.ULAW) -> List[int]:
    """Decode bytes to linear PCM samples; one sample per byte."""
    _require_ulaw(law)
    return [ulaw_to_linear16(code) for code in data]