"""Bus Access Server feature service messages.

Feature service reports use protocol id 0x0F. The EMI id slot of the
report carries the service identifier and the payload starts with the
feature identifier, followed by feature-specific data.
"""

from __future__ import annotations

from dataclasses import dataclass

from .constants import (
    DecodeError,
    FeatureId,
    ProtocolId,
    ServiceId,
    byte_to_feature_id,
    byte_to_service_id,
    feature_id_to_byte,
    service_id_to_byte,
)
from .framing import DecodedMessage, encode


@dataclass(frozen=True)
class FeatureMessage:
    """A parsed feature service message."""

    service: ServiceId
    feature: FeatureId
    data: bytes

    def __repr__(self) -> str:
        return (
            f"FeatureMessage(service={self.service.name}, feature={self.feature.name}, "
            f"data={self.data.hex(' ') if self.data else '(empty)'})"
        )


def build_feature_request(
    service: ServiceId | str,
    feature: FeatureId | str,
    data: bytes = b"",
    sequence_number: int = 1,
) -> bytes:
    """Build a complete feature service report."""
    return encode(
        bytes([feature_id_to_byte(feature)]) + bytes(data),
        sequence_number=sequence_number,
        protocol_id=ProtocolId.BUS_ACCESS_SERVER_FEATURE_SERVICE,
        emi_id=service_id_to_byte(service),
    )


def build_feature_get(feature: FeatureId | str) -> bytes:
    """Build a DeviceFeatureGet request for one feature."""
    return build_feature_request(ServiceId.DEVICE_FEATURE_GET, feature)


def build_feature_set(feature: FeatureId | str, data: bytes) -> bytes:
    """Build a DeviceFeatureSet request.

    Args:
        feature: Feature to change, e.g. ``FeatureId.ACTIVE_EMI_TYPE``.
        data: New feature value as raw bytes.
    """
    if not data:
        raise ValueError("DeviceFeatureSet requires a value")
    return build_feature_request(ServiceId.DEVICE_FEATURE_SET, feature, data)


def parse_feature_message(message: DecodedMessage) -> FeatureMessage | DecodeError | None:
    """Interpret a decoded report as a feature service message.

    Returns:
        The parsed message, a DecodeError if the service or feature byte
        is unknown, or ``None`` if the report is not a feature service
        report.
    """
    if message.protocol_id != ProtocolId.BUS_ACCESS_SERVER_FEATURE_SERVICE:
        return None

    service = byte_to_service_id(message.emi_id)
    if isinstance(service, DecodeError):
        return service

    if len(message.payload) < 1:
        return DecodeError.INSUFFICIENT_DATA

    feature = byte_to_feature_id(message.payload[0])
    if isinstance(feature, DecodeError):
        return feature

    return FeatureMessage(service=service, feature=feature, data=message.payload[1:])


def parse_bus_connection_status(message: FeatureMessage) -> bool | None:
    """Return True if the device reports an active KNX bus connection."""
    if message.feature != FeatureId.BUS_CONNECTION_STATUS or not message.data:
        return None
    return bool(message.data[0] & 0x01)


def parse_manufacturer_code(message: FeatureMessage) -> int | None:
    """Return the 16-bit KNX manufacturer code."""
    if message.feature != FeatureId.KNX_MANUFACTURER_CODE or len(message.data) < 2:
        return None
    return int.from_bytes(message.data[:2], "big")


def parse_active_emi_type(message: FeatureMessage) -> int | None:
    """Return the EMI type currently selected on the device."""
    if message.feature != FeatureId.ACTIVE_EMI_TYPE or not message.data:
        return None
    return message.data[0]
