import pytest

from ecudiag.hardware import (
    CanFrame,
    ChannelError,
    ChannelErrorKind,
    HardwareError,
    HardwareErrorKind,
    IsoTPSettings,
)
from ecudiag.socketcan import (
    SOCKET_CAN_CAPABILITIES,
    SocketCanCanChannel,
    SocketCanDevice,
    SocketCanIsoTPChannel,
    SocketCanScanner,
    _pack_can_frame,
    _unpack_can_frame,
    single_frame_payload,
)


@pytest.fixture
def net_dir(tmp_path):
    for name in ("can0", "vcan1", "eth0", "lo"):
        (tmp_path / name).mkdir()
    return tmp_path


def test_scanner_lists_only_can_interfaces(net_dir):
    scanner = SocketCanScanner(net_dir)
    names = [info.name for info in scanner.list_devices()]
    assert names == ["can0", "vcan1"]
    assert all(info.capabilities == SOCKET_CAN_CAPABILITIES for info in scanner.list_devices())


def test_capabilities_are_can_and_isotp_only(net_dir):
    caps = SocketCanDevice("can0", net_dir).info.capabilities
    assert caps.can is True
    assert caps.iso_tp is True
    assert caps.kline is False
    assert caps.kline_kwp is False
    assert caps.sae_j1850 is False
    assert caps.sci is False
    assert caps.ip is False


def test_scanner_missing_directory_is_empty(tmp_path):
    assert SocketCanScanner(tmp_path / "missing").list_devices() == []


def test_open_by_index_and_name(net_dir):
    scanner = SocketCanScanner(net_dir)
    assert scanner.open_device_by_index(1).info.name == "vcan1"
    assert scanner.open_device_by_name("can0").info.name == "can0"


@pytest.mark.parametrize("idx", [2, -1, 50])
def test_open_by_index_out_of_range(net_dir, idx):
    with pytest.raises(HardwareError) as err:
        SocketCanScanner(net_dir).open_device_by_index(idx)
    assert err.value.kind is HardwareErrorKind.DEVICE_NOT_FOUND


def test_open_by_unknown_name(net_dir):
    with pytest.raises(HardwareError) as err:
        SocketCanScanner(net_dir).open_device_by_name("eth0")
    assert err.value.kind is HardwareErrorKind.DEVICE_NOT_FOUND


def test_is_connected_follows_interface_presence(net_dir):
    device = SocketCanDevice("can0", net_dir)
    assert device.is_connected() is True
    (net_dir / "can0").rmdir()
    assert device.is_connected() is False


def test_device_has_no_voltage_readings(net_dir):
    device = SocketCanDevice("can0", net_dir)
    assert device.read_battery_voltage() is None
    assert device.read_ignition_voltage() is None


def test_new_device_has_no_open_channels(net_dir):
    device = SocketCanDevice("can0", net_dir)
    device.create_can_channel().close()
    device.create_iso_tp_channel().close()
    assert device.is_can_channel_open() is False
    assert device.is_iso_tp_channel_open() is False


def test_can_channel_requires_open(net_dir):
    channel = SocketCanCanChannel(SocketCanDevice("can0", net_dir))
    with pytest.raises(ChannelError) as err:
        channel.write_packets([CanFrame(0x7E0, b"\x01")], 10)
    assert err.value.kind is ChannelErrorKind.INTERFACE_NOT_OPEN
    with pytest.raises(ChannelError) as err:
        channel.read_packets(1, 0)
    assert err.value.kind is ChannelErrorKind.INTERFACE_NOT_OPEN


def test_isotp_read_requires_open(net_dir):
    channel = SocketCanIsoTPChannel(SocketCanDevice("can0", net_dir))
    with pytest.raises(ChannelError) as err:
        channel.read_bytes(10)
    assert err.value.kind is ChannelErrorKind.INTERFACE_NOT_OPEN
    with pytest.raises(ChannelError) as err:
        channel.clear_rx_buffer()
    assert err.value.kind is ChannelErrorKind.INTERFACE_NOT_OPEN


def test_isotp_write_on_own_address_requires_open(net_dir):
    channel = SocketCanIsoTPChannel(SocketCanDevice("can0", net_dir))
    channel.set_ids(0x7E0, 0x7E8)
    with pytest.raises(ChannelError) as err:
        channel.write_bytes(0x7E0, None, b"\x3e\x00", 10)
    assert err.value.kind is ChannelErrorKind.INTERFACE_NOT_OPEN


def test_isotp_alternate_address_long_payload_unsupported(net_dir):
    channel = SocketCanIsoTPChannel(SocketCanDevice("can0", net_dir))
    channel.set_ids(0x7E0, 0x7E8)
    with pytest.raises(ChannelError) as err:
        channel.write_bytes(0x7DF, None, bytes(8), 10)
    assert err.value.kind is ChannelErrorKind.UNSUPPORTED_REQUEST


def test_isotp_alternate_address_ext_limit(net_dir):
    channel = SocketCanIsoTPChannel(SocketCanDevice("can0", net_dir))
    channel.set_iso_tp_cfg(IsoTPSettings(extended_addresses=(0x10, 0x20)))
    channel.set_ids(0x7E0, 0x7E8)
    with pytest.raises(ChannelError) as err:
        channel.write_bytes(0x7DF, None, bytes(7), 10)
    assert err.value.kind is ChannelErrorKind.UNSUPPORTED_REQUEST
    assert channel.cfg_complete is True


def test_single_frame_payload_padded():
    assert single_frame_payload(b"\x3e\x00", None, True) == b"\x02\x3e\x00" + bytes(5)


def test_single_frame_payload_unpadded():
    assert single_frame_payload(b"\x3e\x00", None, False) == b"\x02\x3e\x00"


def test_single_frame_payload_extended_address():
    data = single_frame_payload(b"\x3e\x00", (0xF1, 0x00), True)
    assert data[:4] == b"\xf1\x02\x3e\x00"
    assert len(data) == 8


@pytest.mark.parametrize(
    "frame",
    [
        CanFrame(0x7E8, b"\x02\x7e\x00", False),
        CanFrame(0x18DAF110, b"\x01\x02\x03\x04\x05\x06\x07\x08", True),
        CanFrame(0x123, b"", False),
    ],
)
def test_frame_pack_roundtrip(frame):
    raw = _pack_can_frame(frame)
    assert len(raw) == 16
    assert _unpack_can_frame(raw) == frame


def test_remote_frames_are_ignored():
    raw = _pack_can_frame(CanFrame(0x123, b"\x01"))
    can_id = int.from_bytes(raw[:4], "little") | 0x40000000
    rtr = can_id.to_bytes(4, "little") + raw[4:]
    assert _unpack_can_frame(rtr) is None