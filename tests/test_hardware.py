import dataclasses
import threading
import time

import pytest

from ecudiag.hardware import (
    CanChannel,
    CanFrame,
    ChannelError,
    ChannelErrorKind,
    Hardware,
    HardwareCapabilities,
    HardwareError,
    HardwareErrorKind,
    HardwareInfo,
    IsoTPChannel,
    IsoTPSettings,
    SharedHardware,
)


class RecordingIsoTp(IsoTPChannel):
    def __init__(self):
        self.events = []

    def open(self):
        self.events.append("open")

    def close(self):
        self.events.append("close")

    def set_ids(self, send, recv):
        self.events.append(("ids", send, recv))

    def read_bytes(self, timeout_ms):
        return b"\x01"

    def write_bytes(self, addr, ext_id, buffer, timeout_ms):
        self.events.append(("write", addr, bytes(buffer)))

    def clear_rx_buffer(self):
        pass

    def clear_tx_buffer(self):
        pass

    def set_iso_tp_cfg(self, cfg):
        self.events.append(cfg)


class RecordingCan(CanChannel):
    def __init__(self):
        self.events = []

    def open(self):
        self.events.append("open")

    def close(self):
        self.events.append("close")

    def write_packets(self, packets, timeout_ms):
        self.events.extend(packets)

    def read_packets(self, max_packets, timeout_ms):
        return []

    def clear_rx_buffer(self):
        pass

    def clear_tx_buffer(self):
        pass

    def set_can_cfg(self, baud, use_extended):
        pass


class FakeHardware(Hardware):
    def __init__(self):
        self._info = HardwareInfo(name="bench", capabilities=HardwareCapabilities(can=True))
        self.reads = 0

    def create_iso_tp_channel(self):
        return RecordingIsoTp()

    def create_can_channel(self):
        return RecordingCan()

    def is_iso_tp_channel_open(self):
        return False

    def is_can_channel_open(self):
        return True

    def read_battery_voltage(self):
        current = self.reads
        time.sleep(0.0001)
        self.reads = current + 1
        return 12.5

    def read_ignition_voltage(self):
        return None

    @property
    def info(self):
        return self._info

    def is_connected(self):
        return True


def test_hardware_error_messages():
    assert str(HardwareError(HardwareErrorKind.DEVICE_NOT_FOUND)) == "Device not found"
    err = HardwareError.api(5, "bad")
    assert err.kind is HardwareErrorKind.API_ERROR
    assert err.code == 5
    assert str(err) == "Device library API error. Code 5, Description: 'bad'"


def test_channel_error_default_message_is_kind_description():
    err = ChannelError(ChannelErrorKind.BUFFER_EMPTY)
    assert str(err) == ChannelErrorKind.BUFFER_EMPTY.value
    assert ChannelError(ChannelErrorKind.OTHER, "custom").message == "custom"


def test_can_frame_rejects_long_payload():
    with pytest.raises(ValueError):
        CanFrame(0x100, bytes(9))


def test_can_frame_normalises_data_to_bytes():
    frame = CanFrame(0x100, bytearray([1, 2, 3]))
    assert frame == CanFrame(0x100, b"\x01\x02\x03", False)
    assert isinstance(frame.data, bytes)


def test_capabilities_default_to_unsupported():
    caps = HardwareCapabilities()
    assert caps.iso_tp is False
    assert caps.can is False
    assert caps.kline is False
    assert caps.kline_kwp is False
    assert caps.sae_j1850 is False
    assert caps.sci is False
    assert caps.ip is False
    assert caps != HardwareCapabilities(can=True)


def test_iso_tp_settings_replace_keeps_other_fields():
    base = IsoTPSettings()
    changed = dataclasses.replace(base, extended_addresses=(0x10, 0x20))
    assert changed.extended_addresses == (0x10, 0x20)
    assert changed.block_size == base.block_size
    assert base.extended_addresses is None


def test_abstract_hardware_cannot_be_created():
    with pytest.raises(TypeError):
        Hardware()


def test_iso_tp_context_manager_opens_and_closes_on_error():
    shared = SharedHardware(FakeHardware())
    channel = shared.create_iso_tp_channel()
    with pytest.raises(RuntimeError):
        with channel as opened:
            assert opened is channel
            raise RuntimeError("boom")
    assert channel.events == ["open", "close"]


def test_can_context_manager():
    channel = RecordingCan()
    with channel:
        channel.write_packets([CanFrame(1, b"\x00")], 10)
    assert channel.events == ["open", CanFrame(1, b"\x00"), "close"]


def test_shared_hardware_delegates():
    inner = FakeHardware()
    shared = SharedHardware(inner)
    assert shared.info == inner.info
    assert shared.is_can_channel_open() is True
    assert shared.is_iso_tp_channel_open() is False
    assert shared.read_ignition_voltage() is None
    assert shared.is_connected() is True
    assert isinstance(shared.create_can_channel(), RecordingCan)
    assert isinstance(shared.create_iso_tp_channel(), RecordingIsoTp)


def test_shared_hardware_cannot_wrap_itself():
    shared = SharedHardware(FakeHardware())
    with pytest.raises(TypeError):
        SharedHardware(shared)


def test_shared_hardware_serialises_access():
    inner = FakeHardware()
    shared = SharedHardware(inner)

    def worker():
        for _ in range(50):
            shared.read_battery_voltage()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert inner.reads == 200