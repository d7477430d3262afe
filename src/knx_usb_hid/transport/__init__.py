"""Transport layer: device backends and the connection actor."""

from .device import HidDevice, HidrawDevice, HidapiDevice, PyUsbDevice, create_device, open_device
from .connection import (
    Connection,
    Disconnected,
    Failure,
    HandlerInitFailed,
    LifecycleError,
    Phase,
)
