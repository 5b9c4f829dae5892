"""Tests for frame building, parsing and stream decoding."""

import pytest

from droneconf_mcp.exceptions import FrameError
from droneconf_mcp.protocol.framing import (
    SYNC,
    Frame,
    FrameDecoder,
    build_frame,
    parse_frame,
)
from droneconf_mcp.protocol.messages import (
    PAYLOAD_LENGTHS,
    MessageId,
    build_command_ack,
    build_heartbeat,
)
from droneconf_mcp.utils.crc import crc16


def test_build_frame_layout():
    """[sync][len][msgid][payload][crc lo][crc hi]."""
    frame = build_frame(0x4D, b"\x90\x01\x00")
    assert frame[0] == SYNC
    assert frame[1] == 3  # payload length
    assert frame[2] == 0x4D
    assert frame[3:6] == b"\x90\x01\x00"
    expected_crc = crc16(bytes([3, 0x4D, 0x90, 0x01, 0x00]))
    assert frame[6] == expected_crc & 0xFF
    assert frame[7] == (expected_crc >> 8) & 0xFF
    assert len(frame) == 8


def test_build_frame_rejects_bad_arguments():
    with pytest.raises(ValueError):
        build_frame(256)
    with pytest.raises(ValueError):
        build_frame(1, bytes(256))


def test_parse_frame_empty_payload():
    """Messages with no payload should parse."""
    parsed = parse_frame(build_frame(21))
    assert parsed == Frame(message_id=21, payload=b"")


def test_parse_bad_checksum():
    """Frames with corrupt checksum should return None."""
    frame = bytearray(build_frame(77, b"\x01\x02\x00"))
    frame[-1] ^= 0xFF
    assert parse_frame(bytes(frame)) is None


def test_parse_wrong_sync():
    frame = bytearray(build_frame(77, b"\x01\x02\x00"))
    frame[0] = 0xAA
    assert parse_frame(bytes(frame)) is None


def test_decoder_split_across_chunks():
    """A frame delivered one byte at a time is decoded once complete."""
    decoder = FrameDecoder()
    data = build_heartbeat()
    results = []
    for i in range(len(data)):
        results.extend(decoder.feed(data[i:i + 1]))
    assert len(results) == 1
    assert results[0].message_id == MessageId.HEARTBEAT
    assert decoder.buffered == 0


def test_decoder_multiple_frames_in_one_chunk():
    decoder = FrameDecoder()
    data = build_heartbeat() + build_command_ack(400, 0) + build_frame(21)
    frames = decoder.feed(data)
    assert [f.message_id for f in frames] == [0, 77, 21]
    assert decoder.frames_decoded == 3


def test_decoder_skips_leading_garbage():
    decoder = FrameDecoder()
    frames = decoder.feed(b"\x00\x13\x37" + build_command_ack(400, 0))
    assert len(frames) == 1
    assert frames[0].message_id == MessageId.COMMAND_ACK


def test_decoder_bad_checksum_discards_only_that_frame():
    """A corrupt frame yields a FrameError; the following frame still decodes."""
    decoder = FrameDecoder()
    bad = bytearray(build_command_ack(400, 0))
    bad[4] ^= 0x01
    results = decoder.feed(bytes(bad) + build_command_ack(246, 0))
    assert isinstance(results[0], FrameError)
    assert isinstance(results[1], Frame)
    assert results[1].payload[:2] == (246).to_bytes(2, "little")
    assert decoder.errors == 1


def test_decoder_rejects_wrong_length_for_known_message():
    """A checksum-valid frame with the wrong payload size for its id is an error."""
    decoder = FrameDecoder(PAYLOAD_LENGTHS)
    results = decoder.feed(build_frame(MessageId.COMMAND_ACK, b"\x01\x02"))
    assert len(results) == 1
    assert isinstance(results[0], FrameError)


def test_decoder_unknown_message_any_length():
    """Ids with no registered length pass through."""
    decoder = FrameDecoder(PAYLOAD_LENGTHS)
    results = decoder.feed(build_frame(99, b"\x01\x02\x03\x04\x05"))
    assert results == [Frame(99, b"\x01\x02\x03\x04\x05")]


def test_discard_partial_at_datagram_boundary():
    """A truncated frame is dropped instead of being spliced onto the next datagram."""
    decoder = FrameDecoder()
    whole = build_command_ack(400, 0)
    assert decoder.feed(whole[:4]) == []
    results = decoder.discard_partial()
    assert len(results) == 1
    assert isinstance(results[0], FrameError)
    assert decoder.buffered == 0
    assert len(decoder.feed(whole)) == 1


def test_discard_partial_nothing_buffered():
    decoder = FrameDecoder()
    assert decoder.discard_partial() == []


def test_frame_to_bytes():
    frame = Frame(77, b"\x90\x01\x00")
    assert frame.to_bytes() == build_frame(77, b"\x90\x01\x00")


def _corrupt_length(frame: bytes, length: int) -> bytes:
    data = bytearray(frame)
    data[1] = length
    return bytes(data)


def test_corrupted_length_does_not_swallow_following_frames():
    """A bad length byte claiming 40 bytes must not take the frames it covers."""
    decoder = FrameDecoder(PAYLOAD_LENGTHS)
    good = [build_heartbeat(2, 3)] * 3 + [build_command_ack(241, 0)]
    stream = _corrupt_length(build_command_ack(400, 0), 40) + b"".join(good)
    assert len(stream) >= 3 + 40 + 2

    results = decoder.feed(stream)
    frames = [r for r in results if isinstance(r, Frame)]
    assert [f.message_id for f in frames] == [0, 0, 0, 77]
    assert isinstance(results[0], FrameError)
    assert decoder.buffered == 0


def test_datagram_with_corrupted_length_keeps_its_frames():
    """A length byte pointing past the datagram end still yields the frames behind it."""
    decoder = FrameDecoder(PAYLOAD_LENGTHS)
    datagram = _corrupt_length(build_command_ack(400, 0), 200) + build_heartbeat(2, 3)
    assert decoder.feed(datagram) == []

    results = decoder.discard_partial()
    frames = [r for r in results if isinstance(r, Frame)]
    assert [f.message_id for f in frames] == [MessageId.HEARTBEAT]
    assert isinstance(results[0], FrameError)
    assert decoder.buffered == 0
