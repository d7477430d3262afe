"""KNX USB HID protocol constants and identifier tables.

Each identifier is a single byte on the wire. The ``*_to_byte`` helpers
accept either an enum member or its lowercase name (``"knx_tunnel"``);
the ``byte_to_*`` helpers return the member, or a :class:`DecodeError`
kind when the byte is not in the table.
"""

from __future__ import annotations

from enum import Enum, IntEnum

# Report header
KNX_DATA_EXCHANGE = 0x01

# USB protocol header
KNX_USB_TRANSFER_PROTOCOL = 0x00
KNX_USB_TRANSFER_PROTOCOL_HEADER_LENGTH = 0x08

REPORT_HEADER_SIZE = 3
USB_PROTOCOL_HEADER_SIZE = 8
EMI_HEADER_SIZE = 3
HID_REPORT_SIZE = 64

# data_length is one byte and counts the USB protocol and EMI headers
MAX_PAYLOAD_SIZE = 0xFF - USB_PROTOCOL_HEADER_SIZE - EMI_HEADER_SIZE

# commonEmi
DEFAULT_EMI_ID = 0x03
DEFAULT_SEQUENCE_NUMBER = 1


class DecodeError(Enum):
    """Reasons a report (or a single identifier byte) failed to decode."""

    INVALID_REPORT_IDENTIFIER = "invalid_report_identifier"
    INSUFFICIENT_DATA = "insufficient_data"
    UNKNOWN_PACKET_TYPE = "unknown_packet_type"
    UNKNOWN_PROTOCOL_ID = "unknown_protocol_id"
    UNKNOWN_SERVICE_ID = "unknown_service_id"
    UNKNOWN_FEATURE_ID = "unknown_feature_id"


class PacketType(IntEnum):
    """Framing role of a report (low nibble of the packet info byte)."""

    RESERVED = 0x00
    ALL_IN_ONE = 0x03
    PARTIAL = 0x04
    START = 0x05
    END = 0x06


class ProtocolId(IntEnum):
    """Sub-protocol carried in the report body."""

    RESERVED = 0x00
    KNX_TUNNEL = 0x01
    MBUS_TUNNEL = 0x02
    BATIBUS_TUNNEL = 0x03
    BUS_ACCESS_SERVER_FEATURE_SERVICE = 0x0F


class ServiceId(IntEnum):
    """Bus Access Server feature service identifiers."""

    RESERVED = 0x00
    DEVICE_FEATURE_GET = 0x01
    DEVICE_FEATURE_RESPONSE = 0x02
    DEVICE_FEATURE_SET = 0x03
    DEVICE_FEATURE_INFO = 0x04


class FeatureId(IntEnum):
    """Bus Access Server feature identifiers."""

    SUPPORTED_EMI_TYPE = 0x01
    HOST_DEVICE_DESCRIPTOR_TYPE = 0x02
    BUS_CONNECTION_STATUS = 0x03
    KNX_MANUFACTURER_CODE = 0x04
    ACTIVE_EMI_TYPE = 0x05


def _to_byte(enum_cls: type[IntEnum], value: IntEnum | str) -> int:
    if isinstance(value, enum_cls):
        return value.value
    if isinstance(value, str):
        try:
            return enum_cls[value.upper()].value
        except KeyError:
            pass
    raise ValueError(
        f"Unknown {enum_cls.__name__} {value!r}. "
        f"Valid: {[m.name.lower() for m in enum_cls]}"
    )


def _from_byte(enum_cls, value: int, error: DecodeError):
    try:
        return enum_cls(value)
    except ValueError:
        return error


def packet_type_to_byte(packet_type: PacketType | str) -> int:
    return _to_byte(PacketType, packet_type)


def byte_to_packet_type(value: int) -> PacketType | DecodeError:
    return _from_byte(PacketType, value, DecodeError.UNKNOWN_PACKET_TYPE)


def protocol_id_to_byte(protocol_id: ProtocolId | str) -> int:
    return _to_byte(ProtocolId, protocol_id)


def byte_to_protocol_id(value: int) -> ProtocolId | DecodeError:
    return _from_byte(ProtocolId, value, DecodeError.UNKNOWN_PROTOCOL_ID)


def service_id_to_byte(service_id: ServiceId | str) -> int:
    return _to_byte(ServiceId, service_id)


def byte_to_service_id(value: int) -> ServiceId | DecodeError:
    return _from_byte(ServiceId, value, DecodeError.UNKNOWN_SERVICE_ID)


def feature_id_to_byte(feature_id: FeatureId | str) -> int:
    return _to_byte(FeatureId, feature_id)


def byte_to_feature_id(value: int) -> FeatureId | DecodeError:
    return _from_byte(FeatureId, value, DecodeError.UNKNOWN_FEATURE_ID)
