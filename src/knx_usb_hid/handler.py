"""Handler contract for KNX USB HID connections.

Subclass :class:`Handler` and override the callbacks you need; every
callback has a no-op default. The :class:`~knx_usb_hid.transport.connection.Connection`
calls them from its own thread, one at a time.

Every callback except ``terminate`` returns an action:

- ``Continue(state)``: keep going with the new state
- ``Reply(payload, state)``: send ``payload`` to the bus, then continue
- ``Stop(reason, state)``: shut the connection down

Usage::

    class Counter(Handler):
        def init(self, config):
            return Ok(0)

        def handle_frame(self, payload, state):
            return Continue(state + 1)

    conn = Connection(Counter(), "/dev/hidraw0")
    conn.start()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Union

logger = logging.getLogger(__name__)


@dataclass
class DeviceInfo:
    """Identification of an opened device."""

    path: str
    vendor_id: int | None = None
    product_id: int | None = None
    manufacturer: str = ""
    product: str = ""


@dataclass(frozen=True)
class Ok:
    """Successful ``init`` result."""

    state: Any


@dataclass(frozen=True)
class Continue:
    state: Any


@dataclass(frozen=True)
class Reply:
    payload: bytes
    state: Any


@dataclass(frozen=True)
class Stop:
    """Stop the connection. ``state`` is unused when returned from ``init``."""

    reason: Any
    state: Any = None


Action = Union[Continue, Reply, Stop]


class Handler:
    """Base class for connection event handlers."""

    def init(self, config: Any) -> Ok | Stop:
        """Build the initial state. Called once, before the device is opened."""
        return Ok({})

    def handle_connected(self, device_info: DeviceInfo, state: Any) -> Action:
        """Called once after the device has been opened."""
        return Continue(state)

    def handle_frame(self, payload: bytes, state: Any) -> Action:
        """Called for every report that decodes successfully."""
        return Continue(state)

    def handle_disconnected(self, reason: Any, state: Any) -> Action:
        """Called once when the connection is lost.

        The connection terminates afterwards whatever the result; a
        ``Stop`` result only chooses the termination reason.
        """
        return Continue(state)

    def terminate(self, reason: Any, state: Any) -> None:
        """Called exactly once as the connection ends. Return value is ignored."""


# ─── EXAMPLE HANDLERS ────────────────────────────────────────────────

class LoggingHandler(Handler):
    """Logs every frame received from the bus and counts them."""

    def init(self, config):
        logger.info("LoggingHandler initialized")
        return Ok({"frame_count": 0})

    def handle_connected(self, device_info, state):
        logger.info("Connected to KNX device: %s", device_info.path)
        return Continue(state)

    def handle_frame(self, payload, state):
        count = state["frame_count"] + 1
        logger.info(
            "Frame #%d received (%d bytes): %s",
            count, len(payload), payload.hex(" "),
        )
        return Continue({**state, "frame_count": count})

    def handle_disconnected(self, reason, state):
        logger.warning("Disconnected from KNX device: %s", reason)
        logger.info("Total frames received: %d", state["frame_count"])
        return Continue(state)

    def terminate(self, reason, state):
        logger.info("LoggingHandler terminating: %s (frames=%d)", reason, state["frame_count"])


class EchoHandler(Handler):
    """Sends every received payload straight back to the bus."""

    def init(self, config):
        return Ok({"echoed": 0})

    def handle_frame(self, payload, state):
        logger.debug("Echoing %d bytes", len(payload))
        return Reply(payload, {**state, "echoed": state["echoed"] + 1})
