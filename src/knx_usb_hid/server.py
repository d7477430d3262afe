"""MCP server entry point for a KNX USB interface.

Exposes the report codec and a single managed device connection as
tools via the Model Context Protocol, using the official Python MCP SDK
with stdio transport.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any

from mcp.server.fastmcp import FastMCP

from . import __version__
from .handler import Continue, Handler, Ok
from .protocol.constants import (
    DecodeError,
    ProtocolId,
    ServiceId,
    feature_id_to_byte,
)
from .protocol.features import parse_feature_message
from .protocol.framing import decode, encode
from .transport.connection import Connection, HandlerInitFailed

logger = logging.getLogger(__name__)

MAX_RECENT_FRAMES = 500
STOP_TIMEOUT_S = 2.0
CONNECT_GRACE_S = 0.2

mcp = FastMCP(
    "knx-usb-hid",
    instructions="MCP server for KNX USB HID bus interfaces",
)


class RecordingHandler(Handler):
    """Keeps the most recent bus frames for the tools to read back."""

    def __init__(self, maxlen: int = MAX_RECENT_FRAMES) -> None:
        self.frames: deque[dict[str, Any]] = deque(maxlen=maxlen)
        self.events: deque[dict[str, Any]] = deque(maxlen=50)
        self._lock = threading.Lock()

    def _event(self, kind: str, detail: Any) -> None:
        with self._lock:
            self.events.append({"time": time.time(), "event": kind, "detail": str(detail)})

    def init(self, config):
        return Ok({"frames_received": 0})

    def handle_connected(self, device_info, state):
        self._event("connected", device_info.path)
        return Continue(state)

    def handle_frame(self, payload, state):
        with self._lock:
            self.frames.append({"time": time.time(), "payload_hex": payload.hex(" ")})
        return Continue({**state, "frames_received": state["frames_received"] + 1})

    def handle_disconnected(self, reason, state):
        self._event("disconnected", reason)
        return Continue(state)

    def terminate(self, reason, state):
        self._event("terminated", reason)

    def snapshot(self, limit: int) -> list[dict[str, Any]]:
        with self._lock:
            return list(self.frames)[-limit:] if limit > 0 else []


# Global connection state
_connection: Connection | None = None
_handler: RecordingHandler | None = None


def _get_connection() -> Connection:
    """Get the running connection, raising if not connected."""
    if _connection is None or not _connection.running:
        raise RuntimeError(
            "Not connected to device. Use the 'connect' tool first."
        )
    return _connection


def _parse_hex(value: str) -> bytes:
    return bytes.fromhex(value.replace(":", " "))


def _message_to_dict(message) -> dict[str, Any]:
    result: dict[str, Any] = {
        "report_id": message.report_id,
        "sequence_number": message.sequence_number,
        "packet_type": message.packet_type.name.lower(),
        "data_length": message.data_length,
        "protocol_version": message.protocol_version,
        "header_length": message.header_length,
        "body_length": message.body_length,
        "protocol_id": message.protocol_id.name.lower(),
        "emi_id": message.emi_id,
        "payload_hex": message.payload.hex(" "),
    }
    feature = parse_feature_message(message)
    if isinstance(feature, DecodeError):
        result["feature_error"] = feature.value
    elif feature is not None:
        result["service"] = feature.service.name.lower()
        result["feature"] = feature.feature.name.lower()
        result["feature_data_hex"] = feature.data.hex(" ")
    return result


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def connect(device: str = "/dev/hidraw0") -> dict[str, Any]:
    """Open a KNX USB interface and start listening to the bus.

    Args:
        device: hidraw path (default /dev/hidraw0), ``hidapi:<path>``,
                or ``usb:VVVV:PPPP``.
    """
    global _connection, _handler
    if _connection is not None and _connection.running:
        return {"connected": True, "message": "Already connected", "device": _connection.device_info.path}

    _handler = RecordingHandler()
    try:
        _connection = Connection(_handler, device)
        _connection.start()
    except (HandlerInitFailed, ValueError) as e:
        return {"connected": False, "error": str(e)}

    # Open failures terminate the connection almost immediately
    if _connection.join(timeout=CONNECT_GRACE_S):
        return {"connected": False, "error": str(_connection.termination_reason)}

    return {"connected": True, "device": device}


@mcp.tool()
def disconnect() -> dict[str, Any]:
    """Close the connection to the interface."""
    global _connection
    if _connection is None:
        return {"disconnected": True}
    stopped = _connection.stop(timeout=STOP_TIMEOUT_S)
    _connection = None
    return {"disconnected": stopped}


@mcp.tool()
def connection_status() -> dict[str, Any]:
    """Report the connection phase, device identity, and recent lifecycle events."""
    if _connection is None:
        return {"connected": False, "version": __version__}

    info = _connection.device_info
    result: dict[str, Any] = {
        "connected": _connection.running,
        "phase": _connection.phase.value,
        "device": info.path,
        "vendor_id": f"0x{info.vendor_id:04x}" if info.vendor_id is not None else None,
        "product_id": f"0x{info.product_id:04x}" if info.product_id is not None else None,
        "product": info.product,
        "version": __version__,
    }
    if _connection.termination_reason is not None:
        result["termination_reason"] = str(_connection.termination_reason)
    if _handler is not None:
        result["events"] = list(_handler.events)
    return result


# ─── FRAME TOOLS ──────────────────────────────────────────────────────

@mcp.tool()
def send_frame(
    payload_hex: str,
    sequence_number: int = 1,
    packet_type: str = "all_in_one",
    protocol_id: str = "knx_tunnel",
    emi_id: int = 0x03,
) -> dict[str, Any]:
    """Send a payload (e.g. a cEMI frame) to the bus.

    Args:
        payload_hex: Payload bytes as hex, e.g. "11 00 bc e0 00 00 09 01 01 00 81".
        sequence_number: Report sequence number 0-15.
        packet_type: all_in_one, partial, start, end, or reserved.
        protocol_id: knx_tunnel, mbus_tunnel, batibus_tunnel, ...
        emi_id: EMI id byte (3 = commonEmi).
    """
    try:
        payload = _parse_hex(payload_hex)
        report = encode(payload, sequence_number, packet_type, protocol_id, emi_id)
    except ValueError as e:
        return {"error": str(e)}

    conn = _get_connection()
    conn.send_frame(
        payload,
        sequence_number=sequence_number,
        packet_type=packet_type,
        protocol_id=protocol_id,
        emi_id=emi_id,
    )
    return {"queued": True, "report_hex": report.hex(" ")}


@mcp.tool()
def request_feature(feature: str) -> dict[str, Any]:
    """Send a DeviceFeatureGet request to the interface.

    Args:
        feature: supported_emi_type, host_device_descriptor_type,
                 bus_connection_status, knx_manufacturer_code, or active_emi_type.
    """
    try:
        feature_byte = feature_id_to_byte(feature)
    except ValueError as e:
        return {"error": str(e)}

    conn = _get_connection()
    conn.send_frame(
        bytes([feature_byte]),
        protocol_id=ProtocolId.BUS_ACCESS_SERVER_FEATURE_SERVICE,
        emi_id=ServiceId.DEVICE_FEATURE_GET.value,
    )
    return {"queued": True, "feature": feature}


@mcp.tool()
def recent_frames(limit: int = 20) -> dict[str, Any]:
    """Return the most recent payloads received from the bus.

    Args:
        limit: Maximum number of frames, newest last.
    """
    if _handler is None:
        return {"frames": []}
    return {"frames": _handler.snapshot(limit)}


@mcp.tool()
def encode_frame(
    payload_hex: str,
    sequence_number: int = 1,
    packet_type: str = "all_in_one",
    protocol_id: str = "knx_tunnel",
    emi_id: int = 0x03,
) -> dict[str, Any]:
    """Wrap a payload in KNX USB HID report headers without sending it."""
    try:
        report = encode(_parse_hex(payload_hex), sequence_number, packet_type, protocol_id, emi_id)
    except ValueError as e:
        return {"error": str(e)}
    return {"report_hex": report.hex(" "), "length": len(report)}


@mcp.tool()
def decode_report(report_hex: str) -> dict[str, Any]:
    """Decode a raw KNX USB HID report into its header fields and payload."""
    try:
        data = _parse_hex(report_hex)
    except ValueError as e:
        return {"error": str(e)}

    message = decode(data)
    if isinstance(message, DecodeError):
        return {"error": message.value}
    return _message_to_dict(message)


# ─── PROMPTS ─────────────────────────────────────────────────────────

@mcp.prompt()
def monitor_bus(device: str = "/dev/hidraw0") -> str:
    """Watch bus traffic and summarize it."""
    return f"""Connect to {device} using the connect tool, then poll recent_frames.
Summarize the traffic you see:
- Which group addresses are active
- Read requests versus responses and writes
- Anything that looks like repeated or failed telegrams

Use decode_report on any raw report you need to inspect."""


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
