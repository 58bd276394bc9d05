"""SocketCAN adapter: raw CAN and kernel ISO-TP sockets on Linux network interfaces."""

from __future__ import annotations

import dataclasses
import logging
import socket
import struct
import time
from pathlib import Path
from typing import Iterable, Optional, Union

from .hardware import (
    CanChannel,
    CanFrame,
    ChannelError,
    ChannelErrorKind,
    Hardware,
    HardwareCapabilities,
    HardwareError,
    HardwareErrorKind,
    HardwareInfo,
    HardwareScanner,
    IsoTPChannel,
    IsoTPSettings,
)

log = logging.getLogger(__name__)

SOCKET_CAN_CAPABILITIES = HardwareCapabilities(iso_tp=True, can=True)
DEFAULT_NET_DIR = "/sys/class/net"

# Linux SocketCAN constants (fallbacks for platforms whose socket module lacks them).
_AF_CAN = getattr(socket, "AF_CAN", 29)
_CAN_RAW = getattr(socket, "CAN_RAW", 1)
_CAN_ISOTP = getattr(socket, "CAN_ISOTP", 6)
_SOL_CAN_RAW = getattr(socket, "SOL_CAN_RAW", 101)
_CAN_RAW_FILTER = getattr(socket, "CAN_RAW_FILTER", 1)
_CAN_RAW_ERR_FILTER = getattr(socket, "CAN_RAW_ERR_FILTER", 2)
_SOL_CAN_ISOTP = 106
_CAN_ISOTP_OPTS = 1
_CAN_ISOTP_RECV_FC = 2
_CAN_ISOTP_LL_OPTS = 5

_CAN_EFF_FLAG = 0x80000000
_CAN_RTR_FLAG = 0x40000000
_CAN_ERR_FLAG = 0x20000000
_CAN_EFF_MASK = 0x1FFFFFFF
_CAN_SFF_MASK = 0x000007FF

_ISOTP_EXTEND_ADDR = 0x002
_ISOTP_TX_PADDING = 0x004
_ISOTP_RX_PADDING = 0x008
_ISOTP_RX_EXT_ADDR = 0x200

_PAD_CONTENT = 0xCC
_CAN_FRAME = struct.Struct("=IB3x8s")
_ISOTP_OPTIONS = struct.Struct("=IIBBBB")
_ISOTP_FC_OPTIONS = struct.Struct("=BBB")
_ISOTP_LL_OPTIONS = struct.Struct("=BBB")
_ISOTP_MAX_READ = 4096


def _io_error(exc: OSError) -> ChannelError:
    if isinstance(exc, (BlockingIOError, TimeoutError, socket.timeout)):
        return ChannelError(ChannelErrorKind.BUFFER_EMPTY)
    return ChannelError(ChannelErrorKind.IO_ERROR, str(exc))


def _pack_can_frame(frame: CanFrame) -> bytes:
    if frame.extended:
        can_id = (frame.address & _CAN_EFF_MASK) | _CAN_EFF_FLAG
    else:
        can_id = frame.address & _CAN_SFF_MASK
    return _CAN_FRAME.pack(can_id, len(frame.data), frame.data.ljust(8, b"\x00"))


def _unpack_can_frame(raw: bytes) -> Optional[CanFrame]:
    """Decode a kernel can_frame; None for remote and error frames."""
    can_id, dlc, data = _CAN_FRAME.unpack(raw[: _CAN_FRAME.size])
    if can_id & (_CAN_RTR_FLAG | _CAN_ERR_FLAG):
        return None
    if can_id & _CAN_EFF_FLAG:
        return CanFrame(can_id & _CAN_EFF_MASK, data[: min(dlc, 8)], True)
    return CanFrame(can_id & _CAN_SFF_MASK, data[: min(dlc, 8)], False)


def single_frame_payload(
    buffer: bytes, ext_addresses: Optional[tuple[int, int]], pad_frame: bool
) -> bytes:
    """Build the data of an ISO-TP single frame carrying buffer."""
    data = bytearray()
    if ext_addresses is not None:
        data.append(ext_addresses[0])
    data.append(len(buffer))
    data.extend(buffer)
    if pad_frame:
        data = data[:8].ljust(8, b"\x00")
    return bytes(data)


class SocketCanDevice(Hardware):
    """A SocketCAN network interface."""

    def __init__(self, if_name: str, net_dir: Union[str, Path] = DEFAULT_NET_DIR) -> None:
        self._info = HardwareInfo(name=if_name, capabilities=SOCKET_CAN_CAPABILITIES)
        self.net_dir = Path(net_dir)
        self.canbus_active = False
        self.isotp_active = False

    def create_iso_tp_channel(self) -> IsoTPChannel:
        return SocketCanIsoTPChannel(self)

    def create_can_channel(self) -> CanChannel:
        return SocketCanCanChannel(self)

    def is_iso_tp_channel_open(self) -> bool:
        return self.isotp_active

    def is_can_channel_open(self) -> bool:
        return self.canbus_active

    def read_battery_voltage(self) -> Optional[float]:
        return None

    def read_ignition_voltage(self) -> Optional[float]:
        return None

    @property
    def info(self) -> HardwareInfo:
        return self._info

    def is_connected(self) -> bool:
        return (self.net_dir / self._info.name).exists()

    def __repr__(self) -> str:
        return f"SocketCanDevice({self._info.name!r})"


class SocketCanCanChannel(CanChannel):
    """Raw CAN channel on a SocketCAN interface."""

    def __init__(self, device: SocketCanDevice) -> None:
        self.device = device
        self._sock: Optional[socket.socket] = None

    def _socket(self) -> socket.socket:
        if self._sock is None:
            raise ChannelError(ChannelErrorKind.INTERFACE_NOT_OPEN)
        return self._sock

    def open(self) -> None:
        if self._sock is not None:
            return
        try:
            sock = socket.socket(_AF_CAN, socket.SOCK_RAW, _CAN_RAW)
        except OSError as exc:
            raise _io_error(exc) from exc
        try:
            sock.bind((self.device.info.name,))
            sock.setsockopt(_SOL_CAN_RAW, _CAN_RAW_ERR_FILTER, struct.pack("=I", 0))
            sock.setsockopt(_SOL_CAN_RAW, _CAN_RAW_FILTER, struct.pack("=II", 0, 0))
        except OSError as exc:
            sock.close()
            raise _io_error(exc) from exc
        self._sock = sock
        self.device.canbus_active = True

    def close(self) -> None:
        if self._sock is None:
            return
        self._sock.close()
        self._sock = None
        self.device.canbus_active = False

    def write_packets(self, packets: Iterable[CanFrame], timeout_ms: int) -> None:
        sock = self._socket()
        try:
            if timeout_ms == 0:
                sock.setblocking(False)
            else:
                sock.settimeout(timeout_ms / 1000.0)
            for packet in packets:
                sock.send(_pack_can_frame(packet))
        except OSError as exc:
            raise _io_error(exc) from exc

    def read_packets(self, max_packets: int, timeout_ms: int) -> list[CanFrame]:
        sock = self._socket()
        result: list[CanFrame] = []
        try:
            if timeout_ms == 0:
                sock.setblocking(False)
                while len(result) < max_packets:
                    try:
                        raw = sock.recv(_CAN_FRAME.size)
                    except OSError:
                        break
                    frame = _unpack_can_frame(raw)
                    if frame is not None:
                        result.append(frame)
            else:
                sock.settimeout(timeout_ms / 1000.0)
                start = time.monotonic()
                while (time.monotonic() - start) * 1000.0 <= timeout_ms:
                    frame = _unpack_can_frame(sock.recv(_CAN_FRAME.size))
                    if frame is not None:
                        result.append(frame)
                    if len(result) == max_packets:
                        break
        except OSError as exc:
            raise _io_error(exc) from exc
        if not result:
            raise ChannelError(ChannelErrorKind.BUFFER_EMPTY)
        return result

    def clear_rx_buffer(self) -> None:
        while True:
            try:
                self.read_packets(1, 0)
            except ChannelError:
                return

    def clear_tx_buffer(self) -> None:
        pass

    def set_can_cfg(self, baud: int, use_extended: bool) -> None:
        """Ignored: the kernel configures the interface."""


class SocketCanIsoTPChannel(IsoTPChannel):
    """ISO-TP channel using the kernel's CAN_ISOTP sockets."""

    def __init__(self, device: SocketCanDevice) -> None:
        self.device = device
        self._sock: Optional[socket.socket] = None
        self.ids: tuple[int, int] = (0, 0)
        self.cfg = IsoTPSettings()
        self.cfg_complete = False

    def _socket(self) -> socket.socket:
        if self._sock is None:
            raise ChannelError(ChannelErrorKind.INTERFACE_NOT_OPEN)
        return self._sock

    def _can_id(self, ident: int) -> int:
        if self.cfg.can_use_ext_addr:
            return (ident & _CAN_EFF_MASK) | _CAN_EFF_FLAG
        return ident & 0xFFFF

    def open(self) -> None:
        if self._sock is not None:
            return
        cfg = self.cfg
        flags = 0
        if cfg.pad_frame:
            flags |= _ISOTP_RX_PADDING | _ISOTP_TX_PADDING
        ext_address = rx_ext_address = 0
        if cfg.extended_addresses is not None:
            flags |= _ISOTP_EXTEND_ADDR | _ISOTP_RX_EXT_ADDR
            ext_address, rx_ext_address = cfg.extended_addresses
        opts = _ISOTP_OPTIONS.pack(
            flags, 0, ext_address, _PAD_CONTENT, _PAD_CONTENT, rx_ext_address
        )
        fc_opts = _ISOTP_FC_OPTIONS.pack(cfg.block_size, cfg.st_min, 0)
        ll_opts = _ISOTP_LL_OPTIONS.pack(16, 8, 0)
        try:
            sock = socket.socket(_AF_CAN, socket.SOCK_DGRAM, _CAN_ISOTP)
        except OSError as exc:
            raise _io_error(exc) from exc
        try:
            sock.setsockopt(_SOL_CAN_ISOTP, _CAN_ISOTP_OPTS, opts)
            sock.setsockopt(_SOL_CAN_ISOTP, _CAN_ISOTP_RECV_FC, fc_opts)
            sock.setsockopt(_SOL_CAN_ISOTP, _CAN_ISOTP_LL_OPTS, ll_opts)
            sock.bind(
                (self.device.info.name, self._can_id(self.ids[1]), self._can_id(self.ids[0]))
            )
            sock.setblocking(False)
        except OSError as exc:
            sock.close()
            raise ChannelError(ChannelErrorKind.HARDWARE_ERROR, str(exc)) from exc
        self.device.isotp_active = True
        self._sock = sock

    def close(self) -> None:
        if self._sock is None:
            return
        self._sock.close()
        self._sock = None
        self.device.isotp_active = False

    def set_ids(self, send: int, recv: int) -> None:
        self.ids = (send, recv)

    def read_bytes(self, timeout_ms: int) -> bytes:
        sock = self._socket()
        timeout = max(1, timeout_ms)
        start = time.monotonic()
        while (time.monotonic() - start) * 1000.0 <= timeout:
            try:
                return sock.recv(_ISOTP_MAX_READ)
            except OSError:
                time.sleep(0.001)
        if timeout_ms == 0:
            raise ChannelError(ChannelErrorKind.BUFFER_EMPTY)
        raise ChannelError(ChannelErrorKind.READ_TIMEOUT)

    def write_bytes(
        self, addr: int, ext_id: Optional[int], buffer: bytes, timeout_ms: int
    ) -> None:
        """Send buffer to addr.

        On an address other than the configured send ID only single-frame
        payloads are possible; they go out through a parallel raw CAN channel.
        Longer payloads then raise UNSUPPORTED_REQUEST.
        """
        buffer = bytes(buffer)
        ext_addresses = self.cfg.extended_addresses
        if ext_id is not None:
            log.warning("extended_addresses was specified but ext_id also was. ext_id overriding")
            ext_addresses = (ext_id, 0)

        if addr != self.ids[0]:
            fits = (len(buffer) <= 7 and ext_addresses is None) or (
                len(buffer) <= 6 and ext_addresses is not None
            )
            if not fits:
                raise ChannelError(ChannelErrorKind.UNSUPPORTED_REQUEST)
            data = single_frame_payload(buffer, ext_addresses, self.cfg.pad_frame)
            frame = CanFrame(addr, data, self.cfg.can_use_ext_addr)
            channel = self.device.create_can_channel()
            try:
                channel.open()
                channel.write_packets([frame], timeout_ms)
            finally:
                channel.close()
        elif ext_id is not None and self.cfg.extended_addresses is None:
            temp = SocketCanIsoTPChannel(self.device)
            temp.set_iso_tp_cfg(dataclasses.replace(self.cfg, extended_addresses=(ext_id, 0)))
            temp.set_ids(*self.ids)
            try:
                temp.open()
                temp.write_bytes(addr, None, buffer, timeout_ms)
            finally:
                temp.close()
        else:
            sock = self._socket()
            try:
                sock.send(buffer)
            except OSError as exc:
                raise _io_error(exc) from exc

    def clear_rx_buffer(self) -> None:
        sock = self._socket()
        while True:
            try:
                sock.recv(_ISOTP_MAX_READ)
            except OSError:
                return

    def clear_tx_buffer(self) -> None:
        pass

    def set_iso_tp_cfg(self, cfg: IsoTPSettings) -> None:
        self.cfg = cfg
        self.cfg_complete = True

    def __repr__(self) -> str:
        return f"SocketCanIsoTPChannel(device={self.device!r})"


class SocketCanScanner(HardwareScanner):
    """Lists the CAN network interfaces present on the system."""

    def __init__(self, net_dir: Union[str, Path] = DEFAULT_NET_DIR) -> None:
        self.net_dir = Path(net_dir)
        try:
            names = sorted(entry.name for entry in self.net_dir.iterdir() if "can" in entry.name)
        except OSError:
            names = []
        self._devices = [
            HardwareInfo(name=name, capabilities=SOCKET_CAN_CAPABILITIES) for name in names
        ]

    def list_devices(self) -> list[HardwareInfo]:
        return list(self._devices)

    def open_device_by_index(self, idx: int) -> SocketCanDevice:
        if not 0 <= idx < len(self._devices):
            raise HardwareError(HardwareErrorKind.DEVICE_NOT_FOUND)
        return SocketCanDevice(self._devices[idx].name, self.net_dir)

    def open_device_by_name(self, name: str) -> SocketCanDevice:
        for info in self._devices:
            if info.name == name:
                return SocketCanDevice(info.name, self.net_dir)
        raise HardwareError(HardwareErrorKind.DEVICE_NOT_FOUND)