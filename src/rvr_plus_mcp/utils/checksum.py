"""Frame checksum used by every Sphero frame shape.

The checksum is the one's complement of the 8-bit sum of all bytes between
the start marker and the checksum byte itself.
"""

from __future__ import annotations


def checksum(data: bytes) -> int:
    """Return the one's-complement sum checksum of ``data``."""
    return (~sum(data)) & 0xFF


def verify(frame: bytes) -> bool:
    """Check the checksum byte of a complete ``8D ... chk D8`` frame."""
    if len(frame) < 4:
        return False
    return checksum(frame[1:-2]) == frame[-2]
