"""Frame builder and streaming decoder for the autopilot link.

Frame layout::

    +--------+--------+------------+------------------+----------+
    |  Sync  | Length | Message ID |     Payload      | Checksum |
    | 1 byte | 1 byte |   1 byte   | ``Length`` bytes |  2 bytes |
    +--------+--------+------------+------------------+----------+

- Sync: 0xFE
- Length: payload length only (0-255)
- Checksum: CRC-16/MCRF4XX over (length + message id + payload), little-endian

A frame whose checksum does not verify costs only its sync byte: the
decoder rescans from the following byte, so a corrupted length byte cannot
swallow the valid frames it claims to cover. A checksum-valid frame with the
wrong length for its message id is discarded whole.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from ..exceptions import FrameError
from ..utils.crc import crc16

SYNC = 0xFE
HEADER_SIZE = 3  # sync + length + message id
CHECKSUM_SIZE = 2
MAX_PAYLOAD = 255
MIN_FRAME_SIZE = HEADER_SIZE + CHECKSUM_SIZE


@dataclass
class Frame:
    """A decoded protocol frame."""

    message_id: int
    payload: bytes

    def to_bytes(self) -> bytes:
        return build_frame(self.message_id, self.payload)

    def __repr__(self) -> str:
        return (
            f"Frame(message_id={self.message_id}, "
            f"payload={self.payload.hex(' ') if self.payload else '(empty)'})"
        )


def build_frame(message_id: int, payload: bytes = b"") -> bytes:
    """Encode one frame ready to hand to a transport.

    Args:
        message_id: Single-byte message identifier.
        payload: Message-specific payload bytes.
    """
    if not 0 <= message_id <= 0xFF:
        raise ValueError(f"Message id must be 0-255, got {message_id}")
    if len(payload) > MAX_PAYLOAD:
        raise ValueError(
            f"Payload must be at most {MAX_PAYLOAD} bytes, got {len(payload)}"
        )
    body = bytes([len(payload), message_id]) + payload
    checksum = crc16(body).to_bytes(2, "little")
    return bytes([SYNC]) + body + checksum


def parse_frame(data: bytes) -> Frame | None:
    """Parse a buffer holding exactly one frame.

    Returns:
        The ``Frame``, or ``None`` if the sync byte, length or checksum
        is wrong.
    """
    if len(data) < MIN_FRAME_SIZE or data[0] != SYNC:
        return None
    length = data[1]
    if len(data) != HEADER_SIZE + length + CHECKSUM_SIZE:
        return None
    body = data[1 : HEADER_SIZE + length]
    expected = int.from_bytes(data[HEADER_SIZE + length :], "little")
    if crc16(body) != expected:
        return None
    return Frame(message_id=data[2], payload=bytes(data[HEADER_SIZE : HEADER_SIZE + length]))


class FrameDecoder:
    """Incremental decoder turning a byte stream into frames.

    ``feed`` returns decoded :class:`Frame` objects interleaved with
    :class:`FrameError` instances for frames that were rejected, in stream
    order, so the caller can track runs of consecutive failures.

    Args:
        expected_lengths: Optional mapping of message id to its fixed payload
            length. A known message with a different length is rejected.
    """

    def __init__(self, expected_lengths: Mapping[int, int] | None = None) -> None:
        self._buffer = bytearray()
        self._expected_lengths = dict(expected_lengths or {})
        self.frames_decoded = 0
        self.errors = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> list[Frame | FrameError]:
        self._buffer.extend(data)
        results: list[Frame | FrameError] = []
        buf = self._buffer

        while buf:
            start = buf.find(SYNC)
            if start < 0:
                buf.clear()
                break
            if start > 0:
                del buf[:start]
            if len(buf) < HEADER_SIZE:
                break

            length = buf[1]
            total = HEADER_SIZE + length + CHECKSUM_SIZE
            if len(buf) < total:
                break  # wait for more data

            message_id = buf[2]
            body = bytes(buf[1 : HEADER_SIZE + length])
            received = int.from_bytes(buf[HEADER_SIZE + length : total], "little")
            expected_len = self._expected_lengths.get(message_id)

            if crc16(body) != received:
                # The length byte is unverified, so only the sync byte goes
                results.append(self._reject(
                    f"checksum mismatch on message {message_id}"
                ))
                del buf[:1]
                continue
            if expected_len is not None and expected_len != length:
                results.append(self._reject(
                    f"length {length} for message {message_id}, expected {expected_len}"
                ))
            else:
                self.frames_decoded += 1
                results.append(Frame(message_id=message_id, payload=body[2:]))
            del buf[:total]

        return results

    def discard_partial(self) -> list[Frame | FrameError]:
        """Give up on the incomplete frame at the head of the buffer.

        Used at datagram boundaries, where a truncated frame can never be
        completed by the next datagram. Only its sync byte is dropped and the
        rest is rescanned, since a corrupted length byte can make a complete
        frame look truncated and hide the frames behind it.
        """
        results: list[Frame | FrameError] = []
        while self._buffer:
            results.append(self._reject("truncated frame at datagram boundary"))
            del self._buffer[:1]
            results.extend(self.feed(b""))
        return results

    def reset(self) -> None:
        self._buffer.clear()

    def _reject(self, reason: str) -> FrameError:
        self.errors += 1
        return FrameError(reason)
