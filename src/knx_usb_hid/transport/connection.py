"""Connection actor for a single KNX USB HID device.

The connection owns the device and the handler state. All of its work
happens on one thread that takes messages from a mailbox one at a time:

- ``SendFrame``: encode a payload and write it to the device
- ``FrameData``: a raw report from the reader thread, decoded and passed
  to ``Handler.handle_frame``
- ``ReaderFailure``: the reader hit an I/O error, end-of-stream, or died
- ``StopRequest``: shut down

A separate reader thread blocks on ``device.read`` and forwards whatever
it gets to the mailbox. It never writes to the device. Before the device
is closed the reader is interrupted and joined, so a closed connection
leaves no thread reading from the device.

Lifecycle::

    INIT -> CONNECTING -> CONNECTED -> DISCONNECTING -> TERMINATED

``Handler.terminate`` runs exactly once on every path except a failed
``Handler.init``.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..handler import Continue, DeviceInfo, Handler, Ok, Reply, Stop
from ..protocol.constants import HID_REPORT_SIZE, DecodeError
from ..protocol.framing import decode, encode
from .device import HidDevice, create_device

logger = logging.getLogger(__name__)

DEFAULT_READ_SIZE = HID_REPORT_SIZE
ENCODE_OPTIONS = frozenset({"sequence_number", "packet_type", "protocol_id", "emi_id"})
END_OF_STREAM = "eof"
NORMAL = "normal"
READER_JOIN_TIMEOUT_S = 2.0


class Phase(Enum):
    INIT = "init"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    TERMINATED = "terminated"


class LifecycleError(Enum):
    """Failures that end a connection."""

    HANDLER_INIT_FAILED = "handler_init_failed"
    DEVICE_OPEN_FAILED = "device_open_failed"
    DEVICE_WRITE_FAILED = "device_write_failed"
    READER_IO_ERROR = "reader_io_error"
    READER_TASK_DIED = "reader_task_died"


@dataclass(frozen=True)
class Failure:
    """A lifecycle failure and the error (or marker) that caused it."""

    kind: LifecycleError
    cause: Any = None

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.cause}"


@dataclass(frozen=True)
class Disconnected:
    """Termination reason after a disconnect the handler did not override."""

    failure: Failure


class HandlerInitFailed(Exception):
    """``Handler.init`` returned ``Stop``; the device was never opened."""

    def __init__(self, reason: Any) -> None:
        super().__init__(f"Handler init failed: {reason!r}")
        self.reason = reason


# Mailbox messages

@dataclass(frozen=True)
class SendFrame:
    payload: bytes
    options: dict = field(default_factory=dict)


@dataclass(frozen=True)
class FrameData:
    data: bytes
    reader_id: int


@dataclass(frozen=True)
class ReaderFailure:
    failure: Failure
    reader_id: int


@dataclass(frozen=True)
class StopRequest:
    reason: Any = NORMAL


@dataclass
class ConnectionState:
    """Mutable state, touched only by the connection thread."""

    device_path: str
    device: HidDevice
    handler: Handler
    handler_state: Any = None
    read_size: int = DEFAULT_READ_SIZE
    device_open: bool = False
    reader_id: int | None = None
    reader_stop: threading.Event | None = None
    reader: threading.Thread | None = None


class Connection:
    """Drives one device on behalf of a :class:`Handler`.

    Usage::

        conn = Connection(LoggingHandler(), "/dev/hidraw0")
        conn.start()
        conn.send_frame(b"\\x11\\x00\\xbc\\xe0\\x00\\x00\\x09\\x01\\x01\\x00\\x81")
        conn.stop()

    Args:
        handler: Receives connection and frame events.
        device: A device path (see :func:`~knx_usb_hid.transport.device.create_device`)
            or an unopened :class:`HidDevice`.
        config: Passed unchanged to ``handler.init``.
        read_size: Bytes requested per blocking read.
        name: Used for thread names and log messages.
    """

    def __init__(
        self,
        handler: Handler,
        device: str | HidDevice,
        config: Any = None,
        read_size: int = DEFAULT_READ_SIZE,
        name: str | None = None,
    ) -> None:
        if isinstance(device, str):
            device = create_device(device)
        self._config = config
        self._name = name or f"knx-usb-hid:{device.path}"
        self._state = ConnectionState(
            device_path=device.path,
            device=device,
            handler=handler,
            read_size=read_size,
        )
        self._phase = Phase.INIT
        self._mailbox: queue.Queue = queue.Queue()
        self._reader_ids = itertools.count(1)
        self._thread: threading.Thread | None = None
        self._done = threading.Event()
        self._termination_reason: Any = None

    # ─── PUBLIC API ──────────────────────────────────────────────────

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._done.is_set()

    @property
    def termination_reason(self) -> Any:
        return self._termination_reason

    @property
    def device_info(self) -> DeviceInfo:
        return self._state.device.device_info

    def start(self) -> None:
        """Initialize the handler and start the connection thread.

        ``handler.init`` runs on the calling thread; the device is opened
        on the connection thread.

        Raises:
            HandlerInitFailed: If ``handler.init`` returned ``Stop``.
            RuntimeError: If the connection was already started.
        """
        if self._thread is not None or self._done.is_set():
            raise RuntimeError(f"{self._name} already started")

        result = self._state.handler.init(self._config)
        if isinstance(result, Stop):
            self._termination_reason = Failure(LifecycleError.HANDLER_INIT_FAILED, result.reason)
            self._phase = Phase.TERMINATED
            self._done.set()
            logger.error("%s: handler init failed: %r", self._name, result.reason)
            raise HandlerInitFailed(result.reason)
        if not isinstance(result, Ok):
            raise TypeError(f"Handler.init must return Ok or Stop, got {result!r}")

        self._state.handler_state = result.state
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def send_frame(self, payload: bytes, **options: Any) -> None:
        """Queue a payload for the device. Never blocks.

        Options are passed to :func:`~knx_usb_hid.protocol.framing.encode`.
        A failed write shows up later as a disconnection, not here.
        """
        unknown = set(options) - ENCODE_OPTIONS
        if unknown:
            raise TypeError(f"Unknown encode options: {sorted(unknown)}")
        if self._done.is_set():
            logger.debug("%s: connection terminated, dropping frame", self._name)
            return
        self._mailbox.put(SendFrame(bytes(payload), options))

    def stop(self, reason: Any = NORMAL, timeout: float | None = None) -> bool:
        """Ask the connection to terminate.

        Safe to call at any time and more than once. Waits for
        termination unless called from the connection thread itself.

        Returns:
            True if the connection has terminated.
        """
        if self._done.is_set():
            return True
        if self._thread is None:
            raise RuntimeError(f"{self._name} was never started")
        self._mailbox.put(StopRequest(reason))
        if threading.current_thread() is self._thread:
            return False
        return self.join(timeout)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for termination. Returns False on timeout."""
        return self._done.wait(timeout)

    def __enter__(self) -> Connection:
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    def __repr__(self) -> str:
        return f"Connection({self._name!r}, phase={self._phase.value})"

    # ─── CONNECTION THREAD ───────────────────────────────────────────

    def _run(self) -> None:
        reason = None
        try:
            reason = self._connect()
            while reason is None:
                reason = self._dispatch(self._mailbox.get())
        except Exception as e:
            logger.exception("%s: handler raised, terminating", self._name)
            reason = e
        except BaseException as e:
            logger.error("%s: interrupted by %r, terminating", self._name, e)
            reason = e
            raise
        finally:
            self._terminate(reason)

    def _connect(self) -> Any:
        state = self._state
        self._phase = Phase.CONNECTING
        try:
            device_info = state.device.open()
        except (ConnectionError, OSError) as e:
            logger.error("%s: failed to open device %s: %s", self._name, state.device_path, e)
            return Failure(LifecycleError.DEVICE_OPEN_FAILED, e)
        state.device_open = True
        logger.info("%s: connected to %s", self._name, state.device_path)

        action = state.handler.handle_connected(device_info, state.handler_state)
        reason = self._apply(action)
        if reason is not None:
            return reason

        self._spawn_reader()
        self._phase = Phase.CONNECTED
        return None

    def _dispatch(self, message) -> Any:
        """Handle one mailbox message. Returns a termination reason or None."""
        if isinstance(message, StopRequest):
            logger.info("%s: stop requested: %s", self._name, message.reason)
            return message.reason

        if isinstance(message, SendFrame):
            return self._write(message.payload, message.options)

        if isinstance(message, FrameData):
            if message.reader_id != self._state.reader_id:
                return None
            return self._handle_report(message.data)

        if isinstance(message, ReaderFailure):
            if message.reader_id != self._state.reader_id:
                return None
            logger.error("%s: reader failed: %s", self._name, message.failure)
            return self._disconnect(message.failure)

        logger.warning("%s: ignoring unexpected message %r", self._name, message)
        return None

    def _handle_report(self, data: bytes) -> Any:
        message = decode(data)
        if isinstance(message, DecodeError):
            logger.warning(
                "%s: dropping report (%s): %s", self._name, message.value, data.hex(" ")
            )
            return None
        logger.debug("%s: received %r", self._name, message)
        action = self._state.handler.handle_frame(message.payload, self._state.handler_state)
        return self._apply(action)

    def _apply(self, action) -> Any:
        """Apply a handler action. Returns a termination reason or None."""
        if not isinstance(action, (Continue, Reply, Stop)):
            raise TypeError(f"Handler must return Continue, Reply or Stop, got {action!r}")
        self._state.handler_state = action.state
        if isinstance(action, Stop):
            logger.info("%s: handler requested stop: %s", self._name, action.reason)
            return action.reason
        if isinstance(action, Reply):
            return self._write(action.payload, {})
        return None

    def _write(self, payload: bytes, options: dict) -> Any:
        try:
            report = encode(payload, **options)
        except ValueError as e:
            logger.error("%s: cannot encode frame: %s", self._name, e)
            return None
        try:
            self._state.device.write(report)
        except OSError as e:
            logger.error("%s: failed to write frame: %s", self._name, e)
            return self._disconnect(Failure(LifecycleError.DEVICE_WRITE_FAILED, e))
        logger.debug("%s: sent %s", self._name, report.hex(" "))
        return None

    def _disconnect(self, failure: Failure) -> Any:
        state = self._state
        self._phase = Phase.DISCONNECTING
        self._stop_reader()
        self._close_device()
        logger.info("%s: disconnected: %s", self._name, failure)

        action = state.handler.handle_disconnected(failure, state.handler_state)
        if not isinstance(action, (Continue, Reply, Stop)):
            raise TypeError(f"Handler must return Continue, Reply or Stop, got {action!r}")
        state.handler_state = action.state
        if isinstance(action, Stop):
            return action.reason
        if isinstance(action, Reply):
            logger.debug("%s: device closed, dropping reply", self._name)
        return Disconnected(failure)

    def _terminate(self, reason: Any) -> None:
        state = self._state
        self._stop_reader()
        self._close_device()
        try:
            state.handler.terminate(reason, state.handler_state)
        except Exception:
            logger.exception("%s: handler terminate raised", self._name)
        self._termination_reason = reason
        self._phase = Phase.TERMINATED
        self._done.set()
        logger.info("%s: terminated: %s", self._name, reason)

    def _close_device(self) -> None:
        if self._state.device_open:
            self._state.device_open = False
            self._state.device.close()

    # ─── READER ──────────────────────────────────────────────────────

    def _spawn_reader(self) -> None:
        state = self._state
        reader_id = next(self._reader_ids)
        stop = threading.Event()
        thread = threading.Thread(
            target=_reader_loop,
            args=(self._mailbox, state.device, state.read_size, reader_id, stop),
            name=f"{self._name}-reader-{reader_id}",
            daemon=True,
        )
        state.reader_id = reader_id
        state.reader_stop = stop
        state.reader = thread
        thread.start()

    def _stop_reader(self) -> None:
        """Interrupt the reader and wait for it. The device stays open."""
        state = self._state
        thread = state.reader
        if state.reader_stop is not None:
            state.reader_stop.set()
        state.reader_id = None
        state.reader_stop = None
        state.reader = None
        if thread is None:
            return

        if state.device_open:
            try:
                state.device.interrupt()
            except OSError as e:
                logger.warning("%s: could not interrupt reader: %s", self._name, e)
        thread.join(READER_JOIN_TIMEOUT_S)
        if thread.is_alive():
            # Anything it still posts carries a stale id and is ignored
            logger.warning("%s: reader %s did not exit", self._name, thread.name)


def _reader_loop(
    mailbox: queue.Queue,
    device: HidDevice,
    read_size: int,
    reader_id: int,
    stop: threading.Event,
) -> None:
    """Blocking read loop; forwards data and failures to the mailbox."""
    try:
        while not stop.is_set():
            try:
                data = device.read(read_size)
            except OSError as e:
                mailbox.put(ReaderFailure(Failure(LifecycleError.READER_IO_ERROR, e), reader_id))
                return
            if data is None:
                # interrupted
                return
            if not data:
                mailbox.put(
                    ReaderFailure(Failure(LifecycleError.READER_IO_ERROR, END_OF_STREAM), reader_id)
                )
                return
            mailbox.put(FrameData(bytes(data), reader_id))
    except Exception as e:
        if not stop.is_set():
            logger.exception("Reader %d died", reader_id)
        mailbox.put(ReaderFailure(Failure(LifecycleError.READER_TASK_DIED, e), reader_id))
