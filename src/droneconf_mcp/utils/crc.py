"""CRC-16/MCRF4XX (the X.25 "accumulate" variant used by MAVLink-style links).

Polynomial 0x1021 reflected, initial value 0xFFFF, no final XOR. The check
value for ``b"123456789"`` is ``0x6F91``.
"""

from __future__ import annotations

CRC_INIT = 0xFFFF


def crc_accumulate(byte: int, crc: int) -> int:
    """Fold a single byte into a running checksum."""
    tmp = (byte ^ (crc & 0xFF)) & 0xFF
    tmp = (tmp ^ (tmp << 4)) & 0xFF
    return ((crc >> 8) ^ (tmp << 8) ^ (tmp << 3) ^ (tmp >> 4)) & 0xFFFF


def crc16(data: bytes, crc: int = CRC_INIT) -> int:
    """Compute the frame checksum over ``data``."""
    for byte in data:
        crc = crc_accumulate(byte, crc)
    return crc
