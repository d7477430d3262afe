"""Report builder and parser for KNX USB HID reports.

Report layout::

    +---------------+----------------------+------------+----------+
    | Report header | USB protocol header  | EMI header | Payload  |
    | 3 bytes       | 8 bytes              | 3 bytes    | variable |
    +---------------+----------------------+------------+----------+

- Report ID: always 0x01 (KNX data exchange)
- Packet info: sequence number in the high nibble, packet type in the low nibble
- Data length: number of bytes following the 3-byte report header
- USB protocol header: version 0x00, header length 0x08, big-endian length
  of (EMI header + payload), protocol id, three reserved zero bytes
- EMI header: EMI id followed by two reserved zero bytes

Decoding never raises for malformed input: every layer returns either
its parsed fields or a :class:`DecodeError` kind.
"""

from __future__ import annotations

from dataclasses import dataclass

from .constants import (
    DEFAULT_EMI_ID,
    DEFAULT_SEQUENCE_NUMBER,
    EMI_HEADER_SIZE,
    KNX_DATA_EXCHANGE,
    KNX_USB_TRANSFER_PROTOCOL,
    KNX_USB_TRANSFER_PROTOCOL_HEADER_LENGTH,
    MAX_PAYLOAD_SIZE,
    USB_PROTOCOL_HEADER_SIZE,
    DecodeError,
    PacketType,
    ProtocolId,
    byte_to_packet_type,
    byte_to_protocol_id,
    packet_type_to_byte,
    protocol_id_to_byte,
)

USB_HEADER_RESERVED = b"\x00\x00\x00"
EMI_HEADER_RESERVED = b"\x00\x00"


@dataclass(frozen=True)
class DecodedMessage:
    """A fully decoded report."""

    report_id: int
    sequence_number: int
    packet_type: PacketType
    data_length: int
    protocol_version: int
    header_length: int
    body_length: int
    protocol_id: ProtocolId
    emi_id: int
    payload: bytes

    def __repr__(self) -> str:
        return (
            f"DecodedMessage(seq={self.sequence_number}, "
            f"type={self.packet_type.name}, protocol={self.protocol_id.name}, "
            f"emi=0x{self.emi_id:02X}, "
            f"payload={self.payload.hex(' ') if self.payload else '(empty)'})"
        )


# ─── ENCODING ────────────────────────────────────────────────────────

def encode_packet_info(sequence_number: int, packet_type: PacketType | str) -> int:
    """Pack a sequence number (high nibble) and packet type (low nibble).

    Sequence numbers outside 0-15 are truncated to their low 4 bits.
    """
    return ((sequence_number & 0x0F) << 4) | packet_type_to_byte(packet_type)


def encode_emi_header(payload: bytes, emi_id: int = DEFAULT_EMI_ID) -> bytes:
    """Prefix the payload with the 3-byte EMI header."""
    if not 0 <= emi_id <= 0xFF:
        raise ValueError(f"EMI id must fit in one byte, got {emi_id!r}")
    return bytes([emi_id]) + EMI_HEADER_RESERVED + bytes(payload)


def encode_usb_protocol_header(
    emi_data: bytes, protocol_id: ProtocolId | str = ProtocolId.KNX_TUNNEL
) -> bytes:
    """Prefix EMI header + payload with the 8-byte USB protocol header."""
    header = bytes([
        KNX_USB_TRANSFER_PROTOCOL,
        KNX_USB_TRANSFER_PROTOCOL_HEADER_LENGTH,
    ])
    header += len(emi_data).to_bytes(2, "big")
    header += bytes([protocol_id_to_byte(protocol_id)]) + USB_HEADER_RESERVED
    return header + emi_data


def encode_report_header(
    body: bytes,
    sequence_number: int = DEFAULT_SEQUENCE_NUMBER,
    packet_type: PacketType | str = PacketType.ALL_IN_ONE,
) -> bytes:
    """Prefix the report body with the 3-byte report header."""
    if len(body) > 0xFF:
        raise ValueError(f"Report body is {len(body)} bytes, at most 255 fit in data_length")
    packet_info = encode_packet_info(sequence_number, packet_type)
    return bytes([KNX_DATA_EXCHANGE, packet_info, len(body)]) + body


def encode(
    payload: bytes,
    sequence_number: int = DEFAULT_SEQUENCE_NUMBER,
    packet_type: PacketType | str = PacketType.ALL_IN_ONE,
    protocol_id: ProtocolId | str = ProtocolId.KNX_TUNNEL,
    emi_id: int = DEFAULT_EMI_ID,
) -> bytes:
    """Wrap a payload in all three headers.

    Args:
        payload: Application data (e.g. a cEMI frame).
        sequence_number: 4-bit report sequence number.
        packet_type: Framing role of the report.
        protocol_id: Sub-protocol carried in the body.
        emi_id: EMI dialect of the payload (0x03 is commonEmi).

    Returns:
        The complete report, ``14 + len(payload)`` bytes long.

    Raises:
        ValueError: On an unknown packet type or protocol id, an EMI id
            outside 0-255, or a payload longer than ``MAX_PAYLOAD_SIZE``.
    """
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise ValueError(
            f"Payload is {len(payload)} bytes, a single report carries at most {MAX_PAYLOAD_SIZE}"
        )
    emi_data = encode_emi_header(payload, emi_id)
    body = encode_usb_protocol_header(emi_data, protocol_id)
    return encode_report_header(body, sequence_number, packet_type)


# ─── DECODING ────────────────────────────────────────────────────────

def decode_report_identifier(data: bytes):
    """Return ``(report_id, rest)`` or a DecodeError."""
    if len(data) < 1:
        return DecodeError.INSUFFICIENT_DATA
    if data[0] != KNX_DATA_EXCHANGE:
        return DecodeError.INVALID_REPORT_IDENTIFIER
    return data[0], data[1:]


def decode_packet_info(data: bytes):
    """Return ``(sequence_number, packet_type, data_length, rest)`` or a DecodeError."""
    if len(data) < 2:
        return DecodeError.INSUFFICIENT_DATA
    sequence_number = (data[0] >> 4) & 0x0F
    packet_type = byte_to_packet_type(data[0] & 0x0F)
    if isinstance(packet_type, DecodeError):
        return packet_type
    return sequence_number, packet_type, data[1], data[2:]


def decode_usb_protocol_header(data: bytes):
    """Return ``(version, header_length, body_length, protocol_id, rest)`` or a DecodeError.

    The three reserved bytes after the protocol id are discarded.
    """
    if len(data) < USB_PROTOCOL_HEADER_SIZE:
        return DecodeError.INSUFFICIENT_DATA
    version = data[0]
    header_length = data[1]
    body_length = (data[2] << 8) | data[3]
    protocol_id = byte_to_protocol_id(data[4])
    if isinstance(protocol_id, DecodeError):
        return protocol_id
    return version, header_length, body_length, protocol_id, data[USB_PROTOCOL_HEADER_SIZE:]


def decode_emi_header(data: bytes):
    """Return ``(emi_id, payload)`` or a DecodeError."""
    if len(data) < EMI_HEADER_SIZE:
        return DecodeError.INSUFFICIENT_DATA
    return data[0], data[EMI_HEADER_SIZE:]


def decode(data: bytes) -> DecodedMessage | DecodeError:
    """Parse a raw report into a :class:`DecodedMessage`.

    Args:
        data: One report as read from the device.

    Returns:
        The decoded message, or the DecodeError of the first layer that
        failed.
    """
    data = bytes(data)

    result = decode_report_identifier(data)
    if isinstance(result, DecodeError):
        return result
    report_id, rest = result

    result = decode_packet_info(rest)
    if isinstance(result, DecodeError):
        return result
    sequence_number, packet_type, data_length, rest = result

    result = decode_usb_protocol_header(rest)
    if isinstance(result, DecodeError):
        return result
    version, header_length, body_length, protocol_id, rest = result

    result = decode_emi_header(rest)
    if isinstance(result, DecodeError):
        return result
    emi_id, payload = result

    return DecodedMessage(
        report_id=report_id,
        sequence_number=sequence_number,
        packet_type=packet_type,
        data_length=data_length,
        protocol_version=version,
        header_length=header_length,
        body_length=body_length,
        protocol_id=protocol_id,
        emi_id=emi_id,
        payload=payload,
    )


def extract_payload(data: bytes) -> bytes | DecodeError:
    """Decode a report and return only its payload."""
    message = decode(data)
    if isinstance(message, DecodeError):
        return message
    return message.payload
