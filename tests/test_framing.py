"""Tests for report encoding and decoding."""

import pytest

from knx_usb_hid.protocol.constants import MAX_PAYLOAD_SIZE, DecodeError, PacketType, ProtocolId
from knx_usb_hid.protocol.framing import (
    DecodedMessage,
    decode,
    decode_emi_header,
    decode_packet_info,
    decode_report_identifier,
    decode_usb_protocol_header,
    encode,
    encode_emi_header,
    encode_packet_info,
    encode_report_header,
    encode_usb_protocol_header,
    extract_payload,
)

# cEMI L_Data.ind from 1.1.188 to 0/0/1
PAYLOAD = bytes([0x29, 0x00, 0xBC, 0xE0, 0x00, 0x01, 0xAB, 0xCC])
REPORT = bytes([
    0x01, 0x13, 0x13,
    0x00, 0x08, 0x00, 0x0B, 0x01, 0x00, 0x00, 0x00,
    0x03, 0x00, 0x00,
]) + PAYLOAD


def test_decode_known_report():
    """A captured report should decode into its header fields and payload."""
    msg = decode(REPORT)
    assert isinstance(msg, DecodedMessage)
    assert msg.report_id == 0x01
    assert msg.sequence_number == 1
    assert msg.packet_type is PacketType.ALL_IN_ONE
    assert msg.data_length == 0x13
    assert msg.protocol_version == 0x00
    assert msg.header_length == 0x08
    assert msg.body_length == 0x0B
    assert msg.protocol_id is ProtocolId.KNX_TUNNEL
    assert msg.emi_id == 3
    assert msg.payload == PAYLOAD


def test_encode_matches_known_report():
    """Encoding with default options reproduces the captured report."""
    assert encode(PAYLOAD) == REPORT


def test_encode_length():
    """Every report is 14 bytes of headers plus the payload."""
    for size in (0, 1, 8, 50):
        assert len(encode(bytes(size))) == 3 + 8 + 3 + size


def test_encode_length_fields():
    """body_length covers EMI header + payload, data_length adds the 8-byte header."""
    msg = decode(encode(bytes(range(20))))
    assert msg.body_length == 3 + 20
    assert msg.data_length == 8 + msg.body_length


def test_encode_layers():
    """Each layer prepends its own header."""
    emi = encode_emi_header(b"\x29\x00\xBC", 0x03)
    assert emi == b"\x03\x00\x00\x29\x00\xBC"

    body = encode_usb_protocol_header(emi, ProtocolId.KNX_TUNNEL)
    assert body[:8] == b"\x00\x08\x00\x06\x01\x00\x00\x00"
    assert body[8:] == emi

    report = encode_report_header(body, 1, PacketType.ALL_IN_ONE)
    assert report[:3] == bytes([0x01, 0x13, len(body)])
    assert report[3:] == body


def test_encode_packet_info():
    """Sequence number goes in the high nibble, packet type in the low nibble."""
    assert encode_packet_info(1, PacketType.ALL_IN_ONE) == 0x13
    assert encode_packet_info(2, PacketType.START) == 0x25
    assert encode_packet_info(15, PacketType.END) == 0xF6


def test_encode_packet_info_truncates_sequence():
    """Out-of-range sequence numbers keep only their low 4 bits."""
    assert encode_packet_info(0x11, PacketType.ALL_IN_ONE) == 0x13


def test_sequence_and_packet_type_roundtrip():
    """All 16 sequence numbers and every packet type survive a round trip."""
    for seq in range(16):
        for packet_type in (
            PacketType.ALL_IN_ONE,
            PacketType.PARTIAL,
            PacketType.START,
            PacketType.END,
        ):
            report = encode(b"\xAB", sequence_number=seq, packet_type=packet_type)
            assert report[1] == (seq << 4) | packet_type.value
            msg = decode(report)
            assert msg.sequence_number == seq
            assert msg.packet_type is packet_type


def test_roundtrip_options():
    """Protocol id and EMI id round-trip, including symbolic names."""
    report = encode(
        b"\x01\x02\x03",
        sequence_number=7,
        packet_type="start",
        protocol_id="mbus_tunnel",
        emi_id=0x02,
    )
    msg = decode(report)
    assert msg.payload == b"\x01\x02\x03"
    assert msg.sequence_number == 7
    assert msg.packet_type is PacketType.START
    assert msg.protocol_id is ProtocolId.MBUS_TUNNEL
    assert msg.emi_id == 0x02


def test_roundtrip_empty_payload():
    """Reports without payload should round-trip."""
    msg = decode(encode(b""))
    assert msg.payload == b""
    assert msg.body_length == 3


def test_encode_unknown_packet_type():
    """Unknown symbolic names are a programming error."""
    with pytest.raises(ValueError):
        encode(b"\x00", packet_type="middle")


def test_encode_largest_payload():
    """data_length still equals 8 + body_length at the one-byte limit."""
    report = encode(bytes(MAX_PAYLOAD_SIZE))
    assert MAX_PAYLOAD_SIZE == 244
    assert report[2] == 0xFF
    msg = decode(report)
    assert msg.data_length == 8 + msg.body_length
    assert msg.payload == bytes(MAX_PAYLOAD_SIZE)


def test_encode_oversized_payload():
    """A payload whose length does not fit data_length is rejected, not truncated."""
    with pytest.raises(ValueError):
        encode(bytes(MAX_PAYLOAD_SIZE + 1))
    with pytest.raises(ValueError):
        encode_report_header(bytes(256))


def test_encode_emi_id_out_of_range():
    with pytest.raises(ValueError):
        encode(PAYLOAD, emi_id=0x100)
    with pytest.raises(ValueError):
        encode_emi_header(PAYLOAD, emi_id=-1)


def test_decode_invalid_report_identifier():
    """Reports must start with 0x01."""
    assert decode(b"\x02") is DecodeError.INVALID_REPORT_IDENTIFIER


def test_decode_empty():
    assert decode(b"") is DecodeError.INSUFFICIENT_DATA


def test_decode_truncated_packet_info():
    """A report ID and one more byte is not enough for the packet info."""
    assert decode(b"\x01\x13") is DecodeError.INSUFFICIENT_DATA


def test_decode_truncated_usb_header():
    assert decode(REPORT[:7]) is DecodeError.INSUFFICIENT_DATA


def test_decode_truncated_emi_header():
    assert decode(REPORT[:12]) is DecodeError.INSUFFICIENT_DATA


def test_decode_unknown_packet_type():
    bad = bytearray(REPORT)
    bad[1] = 0x17
    assert decode(bytes(bad)) is DecodeError.UNKNOWN_PACKET_TYPE


def test_decode_unknown_protocol_id():
    bad = bytearray(REPORT)
    bad[7] = 0x09
    assert decode(bytes(bad)) is DecodeError.UNKNOWN_PROTOCOL_ID


def test_decode_ignores_reserved_bytes():
    """Reserved bytes are discarded, whatever their value."""
    odd = bytearray(REPORT)
    odd[8:11] = b"\xFF\xFF\xFF"
    odd[12:14] = b"\xEE\xEE"
    assert decode(bytes(odd)).payload == PAYLOAD


def test_decode_accepts_bytearray():
    assert decode(bytearray(REPORT)).payload == PAYLOAD


def test_layer_decoders():
    """Each layer consumes its fixed number of bytes."""
    assert decode_report_identifier(b"\x01\x13\x09") == (0x01, b"\x13\x09")
    assert decode_packet_info(b"\x25\x10") == (2, PacketType.START, 16, b"")
    assert decode_usb_protocol_header(b"\x00\x08\x00\x05\x01\x00\x00\x00\xAA") == (
        0x00, 0x08, 5, ProtocolId.KNX_TUNNEL, b"\xAA",
    )
    assert decode_emi_header(b"\x03\x00\x00\x29\x00\xBC") == (0x03, b"\x29\x00\xBC")


def test_extract_payload():
    assert extract_payload(REPORT) == PAYLOAD


def test_extract_payload_propagates_error():
    assert extract_payload(b"\x02\x13") is DecodeError.INVALID_REPORT_IDENTIFIER


def test_decoded_message_repr():
    """DecodedMessage repr should be readable."""
    r = repr(decode(REPORT))
    assert "ALL_IN_ONE" in r
    assert "29 00 bc" in r
