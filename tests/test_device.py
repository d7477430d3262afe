"""Tests for device backend selection and the hidraw and hidapi backends."""

import os
import threading

import pytest

from knx_usb_hid.transport import device as device_module
from knx_usb_hid.transport.device import (
    READ_POLL_MS,
    HidapiDevice,
    HidrawDevice,
    PyUsbDevice,
    create_device,
    open_device,
)


def test_create_device_hidraw():
    dev = create_device("/dev/hidraw0")
    assert isinstance(dev, HidrawDevice)
    assert dev.path == "/dev/hidraw0"
    assert not dev.is_open


def test_create_device_hidapi():
    dev = create_device("hidapi:/dev/hidraw3")
    assert isinstance(dev, HidapiDevice)
    assert dev.path == "/dev/hidraw3"


def test_create_device_pyusb():
    dev = create_device("usb:147b:5120")
    assert isinstance(dev, PyUsbDevice)
    assert dev.path == "usb:147b:5120"


def test_create_device_bad_usb_path():
    with pytest.raises(ValueError):
        create_device("usb:147b")
    with pytest.raises(ValueError):
        create_device("usb:zzzz:5120")


def test_open_missing_device():
    """Open failures surface as ConnectionError."""
    with pytest.raises(ConnectionError):
        open_device("/nonexistent/hidraw9")


def test_hidraw_read_write(tmp_path):
    """A hidraw device is a plain read/write byte stream."""
    node = tmp_path / "hidraw7"
    node.write_bytes(b"\x01\x13\x0e")

    with HidrawDevice(str(node)) as dev:
        assert dev.is_open
        assert dev.device_info.path == str(node)
        assert dev.read(64) == b"\x01\x13\x0e"
        assert dev.read(64) == b""  # end-of-stream
        assert dev.write(b"\xAA\xBB") == 2

    assert not dev.is_open
    assert node.read_bytes() == b"\x01\x13\x0e\xAA\xBB"


def test_hidraw_closed_raises(tmp_path):
    node = tmp_path / "hidraw7"
    node.write_bytes(b"")
    dev = HidrawDevice(str(node))
    with pytest.raises(OSError):
        dev.read(64)
    with pytest.raises(OSError):
        dev.write(b"\x00")
    dev.close()  # closing an unopened device is a no-op


def test_hidraw_sysfs_ids(tmp_path, monkeypatch):
    """Vendor and product ids come from the sysfs uevent file."""
    sysfs = tmp_path / "sys"
    uevent = sysfs / "hidraw7" / "device" / "uevent"
    uevent.parent.mkdir(parents=True)
    uevent.write_text(
        "DRIVER=hid-generic\n"
        "HID_ID=0003:0000147B:00005120\n"
        "HID_NAME=Weinzierl KNX-USB Interface\n"
    )
    monkeypatch.setattr(device_module, "SYSFS_HIDRAW", sysfs)

    node = tmp_path / "hidraw7"
    node.write_bytes(b"")
    with HidrawDevice(str(node)) as dev:
        info = dev.device_info
    assert info.vendor_id == 0x147B
    assert info.product_id == 0x5120
    assert info.product == "Weinzierl KNX-USB Interface"


def test_hidraw_without_sysfs(tmp_path, monkeypatch):
    monkeypatch.setattr(device_module, "SYSFS_HIDRAW", tmp_path / "missing")
    node = tmp_path / "hidraw7"
    node.write_bytes(b"")
    with HidrawDevice(str(node)) as dev:
        assert dev.device_info.vendor_id is None
        assert dev.device_info.product_id is None


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="needs named pipes")
def test_hidraw_interrupt_wakes_read(tmp_path, monkeypatch):
    """interrupt() ends a read that is blocked with nothing to read."""
    monkeypatch.setattr(device_module, "SYSFS_HIDRAW", tmp_path / "sys")
    node = tmp_path / "hidraw8"
    os.mkfifo(node)
    results = []

    with HidrawDevice(str(node)) as dev:
        reader = threading.Thread(target=lambda: results.append(dev.read(64)))
        reader.start()
        reader.join(0.2)
        assert reader.is_alive()

        dev.interrupt()
        reader.join(2.0)
        assert not reader.is_alive()
        assert results == [None]
        assert dev.read(64) is None  # stays interrupted until reopened


def test_hidraw_interrupt_before_read(tmp_path):
    node = tmp_path / "hidraw7"
    node.write_bytes(b"\x01\x13\x0e")
    with HidrawDevice(str(node)) as dev:
        dev.interrupt()
        assert dev.read(64) is None
    with HidrawDevice(str(node)) as dev:
        assert dev.read(64) == b"\x01\x13\x0e"


def test_hidapi_read_loops_until_interrupted():
    """hidapi reads time out in short slices and stop once interrupted."""
    dev = HidapiDevice("/dev/hidraw3")

    class SilentHandle:
        def __init__(self):
            self.timeouts = []

        def read(self, size, timeout_ms=0):
            self.timeouts.append(timeout_ms)
            if len(self.timeouts) == 3:
                dev.interrupt()
            return []

    handle = SilentHandle()
    dev._device = handle
    assert dev.read(64) is None
    assert handle.timeouts == [READ_POLL_MS] * 3


def test_hidapi_read_returns_report():
    dev = HidapiDevice("/dev/hidraw3")

    class Handle:
        def read(self, size, timeout_ms=0):
            return [0x01, 0x13, 0x0E]

    dev._device = Handle()
    assert dev.read(64) == b"\x01\x13\x0e"
