"""Device backends for KNX USB interfaces.

Three backends share the :class:`HidDevice` interface:

- ``HidrawDevice``: the Linux ``/dev/hidrawN`` character device (default)
- ``HidapiDevice``: an ``hidapi`` device opened by path (``hidapi:<path>``)
- ``PyUsbDevice``: ``pyusb`` + libusb by vendor/product id (``usb:VVVV:PPPP``)

Reads block until a report arrives or another thread calls
``interrupt()``. ``read`` returns ``b""`` at end-of-stream, ``None`` once
interrupted, and raises ``OSError`` on I/O failure; ``write`` raises
``OSError`` on failure; ``open`` raises ``ConnectionError``.

``close`` must not race a pending read: interrupt the reader and wait
for it first.
"""

from __future__ import annotations

import logging
import os
import select
import threading
from pathlib import Path

from ..handler import DeviceInfo
from ..protocol.constants import HID_REPORT_SIZE

logger = logging.getLogger(__name__)

HIDAPI_PREFIX = "hidapi:"
PYUSB_PREFIX = "usb:"
SYSFS_HIDRAW = Path("/sys/class/hidraw")
USB_INTERFACE = 0
# Library reads wake up this often to check for interrupt()
READ_POLL_MS = 100


class HidDevice:
    """Byte-stream device interface used by the connection.

    Usage::

        with create_device("/dev/hidraw0") as dev:
            dev.write(report)
            data = dev.read(64)
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._device_info = DeviceInfo(path=path)

    @property
    def path(self) -> str:
        return self._path

    @property
    def device_info(self) -> DeviceInfo:
        return self._device_info

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    def open(self) -> DeviceInfo:
        raise NotImplementedError

    def read(self, size: int = HID_REPORT_SIZE) -> bytes | None:
        raise NotImplementedError

    def interrupt(self) -> None:
        """Make a pending (or the next) ``read`` return ``None``."""
        raise NotImplementedError

    def write(self, data: bytes) -> int:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> HidDevice:
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._path!r})"


class HidrawDevice(HidDevice):
    """Linux hidraw character device.

    Reads wait in ``poll`` on the device and on a wake pipe, so
    ``interrupt`` can end them without a timeout.
    """

    def __init__(self, path: str) -> None:
        super().__init__(path)
        self._fd: int | None = None
        self._wake_r: int | None = None
        self._wake_w: int | None = None

    @property
    def is_open(self) -> bool:
        return self._fd is not None

    def open(self) -> DeviceInfo:
        try:
            self._fd = os.open(self._path, os.O_RDWR)
        except OSError as e:
            raise ConnectionError(f"Could not open {self._path}: {e}") from e
        self._wake_r, self._wake_w = os.pipe()

        vendor_id, product_id, product = _read_sysfs_ids(self._path)
        self._device_info = DeviceInfo(
            path=self._path,
            vendor_id=vendor_id,
            product_id=product_id,
            product=product,
        )
        logger.info("Opened hidraw device %s", self._path)
        return self._device_info

    def read(self, size: int = HID_REPORT_SIZE) -> bytes | None:
        fd, wake_r = self._fd, self._wake_r
        if fd is None or wake_r is None:
            raise OSError(f"{self._path} is not open")
        poller = select.poll()
        poller.register(fd, select.POLLIN)
        poller.register(wake_r, select.POLLIN)
        # POLLHUP/POLLERR on fd fall through to os.read, which reports them
        events = dict(poller.poll())
        if wake_r in events:
            return None
        return os.read(fd, size)

    def interrupt(self) -> None:
        # The pipe stays readable, so every later read returns at once too
        if self._wake_w is not None:
            os.write(self._wake_w, b"\x00")

    def write(self, data: bytes) -> int:
        fd = self._fd
        if fd is None:
            raise OSError(f"{self._path} is not open")
        return os.write(fd, data)

    def close(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        for wake_fd in (self._wake_r, self._wake_w):
            if wake_fd is not None:
                os.close(wake_fd)
        self._wake_r = self._wake_w = None
        try:
            os.close(fd)
        except OSError as e:
            logger.warning("Error closing %s: %s", self._path, e)
        else:
            logger.info("Closed %s", self._path)


def _read_sysfs_ids(path: str) -> tuple[int | None, int | None, str]:
    """Look up vendor/product ids of a hidraw node in sysfs.

    The uevent file contains lines such as ``HID_ID=0003:0000147B:00005120``
    and ``HID_NAME=...``.
    """
    uevent = SYSFS_HIDRAW / Path(path).name / "device" / "uevent"
    try:
        lines = uevent.read_text().splitlines()
    except OSError:
        return None, None, ""

    fields = dict(line.split("=", 1) for line in lines if "=" in line)
    vendor_id = product_id = None
    hid_id = fields.get("HID_ID", "").split(":")
    if len(hid_id) == 3:
        try:
            vendor_id = int(hid_id[1], 16)
            product_id = int(hid_id[2], 16)
        except ValueError:
            logger.debug("Malformed HID_ID in %s: %s", uevent, fields["HID_ID"])
    return vendor_id, product_id, fields.get("HID_NAME", "")


class HidapiDevice(HidDevice):
    """Device opened through the hidapi library.

    ``hid_read`` cannot be woken from another thread, so reads use a short
    library timeout and loop until data arrives or ``interrupt`` is called.
    """

    def __init__(self, path: str) -> None:
        super().__init__(path)
        self._device = None
        self._interrupted = threading.Event()

    @property
    def is_open(self) -> bool:
        return self._device is not None

    def open(self) -> DeviceInfo:
        import hid

        try:
            device = hid.device()
            device.open_path(self._path.encode())
            device.set_nonblocking(False)
        except (OSError, ValueError) as e:
            raise ConnectionError(f"Could not open {self._path} via hidapi: {e}") from e

        self._interrupted.clear()
        self._device = device
        info = next(
            (d for d in hid.enumerate() if d.get("path") == self._path.encode()),
            {},
        )
        self._device_info = DeviceInfo(
            path=self._path,
            vendor_id=info.get("vendor_id"),
            product_id=info.get("product_id"),
            manufacturer=device.get_manufacturer_string() or "",
            product=device.get_product_string() or "",
        )
        logger.info(
            "Connected via hidapi: %s %s",
            self._device_info.manufacturer,
            self._device_info.product,
        )
        return self._device_info

    def read(self, size: int = HID_REPORT_SIZE) -> bytes | None:
        device = self._device
        if device is None:
            raise OSError(f"{self._path} is not open")
        while not self._interrupted.is_set():
            try:
                data = device.read(size, READ_POLL_MS)
            except ValueError as e:
                raise OSError(str(e)) from e
            if data:
                return bytes(data)
        return None

    def interrupt(self) -> None:
        self._interrupted.set()

    def write(self, data: bytes) -> int:
        device = self._device
        if device is None:
            raise OSError(f"{self._path} is not open")
        try:
            written = device.write(data)
        except ValueError as e:
            raise OSError(str(e)) from e
        if written < 0:
            raise OSError(f"hidapi write failed on {self._path}: {device.error()}")
        return written

    def close(self) -> None:
        if self._device is None:
            return
        device, self._device = self._device, None
        try:
            device.close()
        except (OSError, ValueError) as e:
            logger.warning("Error closing device: %s", e)
        else:
            logger.info("Disconnected")


class PyUsbDevice(HidDevice):
    """Device driven directly over libusb interrupt endpoints."""

    def __init__(self, vendor_id: int, product_id: int, interface: int = USB_INTERFACE) -> None:
        super().__init__(f"{PYUSB_PREFIX}{vendor_id:04x}:{product_id:04x}")
        self._vendor_id = vendor_id
        self._product_id = product_id
        self._interface = interface
        self._device = None
        self._ep_in = None
        self._ep_out = None
        self._interrupted = threading.Event()

    @property
    def is_open(self) -> bool:
        return self._device is not None

    def open(self) -> DeviceInfo:
        import usb.core
        import usb.util

        dev = usb.core.find(idVendor=self._vendor_id, idProduct=self._product_id)
        if dev is None:
            raise ConnectionError(
                f"Device {self._vendor_id:#06x}:{self._product_id:#06x} not found via pyusb"
            )

        try:
            # Detach kernel driver if needed
            if dev.is_kernel_driver_active(self._interface):
                dev.detach_kernel_driver(self._interface)
            usb.util.claim_interface(dev, self._interface)

            intf = dev.get_active_configuration()[(self._interface, 0)]
            self._ep_in = usb.util.find_descriptor(
                intf,
                custom_match=lambda e: usb.util.endpoint_direction(e.bEndpointAddress)
                == usb.util.ENDPOINT_IN,
            )
            self._ep_out = usb.util.find_descriptor(
                intf,
                custom_match=lambda e: usb.util.endpoint_direction(e.bEndpointAddress)
                == usb.util.ENDPOINT_OUT,
            )
        except usb.core.USBError as e:
            raise ConnectionError(f"Could not claim {self._path}: {e}") from e

        if self._ep_in is None or self._ep_out is None:
            usb.util.release_interface(dev, self._interface)
            raise ConnectionError(f"{self._path} has no interrupt IN/OUT endpoints")

        self._interrupted.clear()
        self._device = dev
        self._device_info = DeviceInfo(
            path=self._path,
            vendor_id=self._vendor_id,
            product_id=self._product_id,
            manufacturer=usb.util.get_string(dev, dev.iManufacturer) or "",
            product=usb.util.get_string(dev, dev.iProduct) or "",
        )
        logger.info(
            "Connected via pyusb: %s %s",
            self._device_info.manufacturer,
            self._device_info.product,
        )
        return self._device_info

    def read(self, size: int = HID_REPORT_SIZE) -> bytes | None:
        import usb.core

        if self._device is None:
            raise OSError(f"{self._path} is not open")
        while not self._interrupted.is_set():
            try:
                return bytes(
                    self._device.read(self._ep_in.bEndpointAddress, size, timeout=READ_POLL_MS)
                )
            except usb.core.USBTimeoutError:
                continue
        return None

    def interrupt(self) -> None:
        self._interrupted.set()

    def write(self, data: bytes) -> int:
        if self._device is None:
            raise OSError(f"{self._path} is not open")
        # Interrupt OUT transfers are always a full report
        report = bytes(data).ljust(self._ep_out.wMaxPacketSize, b"\x00")
        return self._device.write(self._ep_out.bEndpointAddress, report, timeout=0)

    def close(self) -> None:
        if self._device is None:
            return
        import usb.core
        import usb.util

        dev, self._device = self._device, None
        try:
            usb.util.release_interface(dev, self._interface)
            usb.util.dispose_resources(dev)
        except usb.core.USBError as e:
            logger.warning("Error closing device: %s", e)
        else:
            logger.info("Disconnected")


def create_device(path: str) -> HidDevice:
    """Pick a backend for ``path`` without opening it.

    Raises:
        ValueError: If a ``usb:`` path is not ``usb:VVVV:PPPP``.
    """
    if path.startswith(PYUSB_PREFIX):
        ids = path[len(PYUSB_PREFIX):].split(":")
        try:
            vendor_id, product_id = (int(x, 16) for x in ids)
        except ValueError:
            raise ValueError(f"Expected usb:VVVV:PPPP, got {path!r}") from None
        return PyUsbDevice(vendor_id, product_id)
    if path.startswith(HIDAPI_PREFIX):
        return HidapiDevice(path[len(HIDAPI_PREFIX):])
    return HidrawDevice(path)


def open_device(path: str) -> HidDevice:
    """Create and open a device for ``path``.

    Raises:
        ConnectionError: If the device cannot be opened.
    """
    device = create_device(path)
    device.open()
    return device
