"""KNX over USB HID: report codec and device connection."""

__version__ = "0.1.0"

from .protocol.constants import (
    MAX_PAYLOAD_SIZE,
    DecodeError,
    FeatureId,
    PacketType,
    ProtocolId,
    ServiceId,
)
from .protocol.framing import DecodedMessage, decode, encode, extract_payload
from .handler import Continue, DeviceInfo, Handler, Ok, Reply, Stop
from .transport.connection import Connection, HandlerInitFailed
