"""Protocol layer: identifier tables, report framing, and feature service messages."""

from .constants import DecodeError, FeatureId, PacketType, ProtocolId, ServiceId
from .framing import DecodedMessage, decode, encode, extract_payload
from .features import FeatureMessage, build_feature_get, parse_feature_message
